"""Map resource resolution via the Earth Engine ``maps:compute`` endpoint."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Protocol, Union

import httpx

from tileproxy.credentials import CredentialProvider
from tileproxy.exceptions import (
    ResolverError,
    UnexpectedResolverShapeError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from tileproxy.sessions import SessionRegistry
from tileproxy.utils import legacy_map_template, proxy_url_template, short_id

logger = logging.getLogger("ee_tile_proxy")


@dataclass(frozen=True)
class PublicTileTemplate:
    """Tile template the client may fetch directly, no credential needed."""

    url_template: str


@dataclass(frozen=True)
class BackendResource:
    """Opaque map name that needs a bearer token on every tile fetch."""

    name: str


ResolvedMap = Union[PublicTileTemplate, BackendResource]


class MapResourceResolver(Protocol):
    async def resolve(self, computation: Mapping[str, Any]) -> ResolvedMap:
        ...


def classify_compute_response(data: Any, api_base_url: str) -> ResolvedMap:
    """
    Decide which branch a ``maps:compute`` response belongs to.

    Public templates win over map names, matching what the backend prefers
    to hand out.

    Args:
        data: Decoded JSON response body.
        api_base_url: Base URL used to expand legacy ``mapid`` responses.

    Returns:
        PublicTileTemplate or BackendResource.

    Raises:
        UnexpectedResolverShapeError: If neither shape matches.
    """
    if not isinstance(data, dict):
        raise UnexpectedResolverShapeError([])

    template = data.get("tileUrlTemplate")
    if isinstance(template, str) and template:
        return PublicTileTemplate(template)

    mapid = data.get("mapid")
    token = data.get("token")
    if isinstance(mapid, str) and mapid and isinstance(token, str) and token:
        return PublicTileTemplate(legacy_map_template(api_base_url, mapid, token))

    name = data.get("name")
    if isinstance(name, str) and name:
        return BackendResource(name)

    raise UnexpectedResolverShapeError(list(data.keys()))


class EarthEngineMapResolver:
    """
    Resolves computation payloads to tile sources through ``maps:compute``.

    The payload (expression, visualization, ...) is forwarded as-is.
    """

    def __init__(
        self,
        credential_provider: CredentialProvider,
        http_client: httpx.AsyncClient,
        project_id: str,
        api_base_url: str,
    ) -> None:
        self.credential_provider = credential_provider
        self.http_client = http_client
        self.project_id = project_id
        self.api_base_url = api_base_url.rstrip("/")

    @property
    def compute_url(self) -> str:
        return f"{self.api_base_url}/v1beta/projects/{self.project_id}/maps:compute"

    async def resolve(self, computation: Mapping[str, Any]) -> ResolvedMap:
        access = await self.credential_provider.get_token()
        url = self.compute_url

        try:
            response = await self.http_client.post(
                url,
                json=dict(computation),
                headers={
                    "Authorization": f"Bearer {access.token}",
                    "x-goog-user-project": self.project_id,
                },
            )
        except httpx.TimeoutException as e:
            raise UpstreamTimeoutError(url) from e
        except httpx.RequestError as e:
            raise UpstreamUnavailableError(url, str(e)) from e

        if not response.is_success:
            logger.warning("maps:compute returned %d", response.status_code)
            raise ResolverError(response.status_code, response.text)

        try:
            data = response.json()
        except ValueError as e:
            raise UnexpectedResolverShapeError([]) from e

        return classify_compute_response(data, self.api_base_url)


async def create_tile_layer(
    resolver: MapResourceResolver,
    registry: SessionRegistry,
    computation: Mapping[str, Any],
    proxy_prefix: str,
) -> Dict[str, Any]:
    """
    Resolve a computation into the tile URL pattern returned to clients.

    A public template is passed through unchanged and creates no session. A
    backend resource creates exactly one session whose id is embedded in a
    proxy URL pattern.

    Returns:
        Dictionary with ``urlTemplate`` and ``proxied``; proxied layers also
        carry ``sessionId`` and ``expiresIn`` (seconds).
    """
    resolved = await resolver.resolve(computation)

    if isinstance(resolved, PublicTileTemplate):
        logger.info("Resolved public tile template")
        return {"urlTemplate": resolved.url_template, "proxied": False}

    session_id = registry.create(resolved.name)
    logger.info(
        "Resolved %s behind proxy session %s", resolved.name, short_id(session_id)
    )
    layer: Dict[str, Any] = {
        "urlTemplate": proxy_url_template(proxy_prefix, session_id),
        "proxied": True,
        "sessionId": session_id,
        "expiresIn": registry.ttl,
    }
    return layer
