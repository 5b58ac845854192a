"""Authenticated tile proxy: session lookup, credential attach, upstream stream."""

import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict

import httpx

from tileproxy.credentials import CredentialProvider
from tileproxy.exceptions import (
    UpstreamTileError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)
from tileproxy.sessions import SessionRegistry
from tileproxy.utils import media_type_or_default, short_id, upstream_tile_url

logger = logging.getLogger("ee_tile_proxy")

# Upstream headers mirrored onto the proxied response. Content-Encoding must
# travel with the raw (still encoded) body.
PASSTHROUGH_HEADERS = ("content-encoding", "cache-control", "etag", "last-modified")


@dataclass
class UpstreamTile:
    """An open upstream tile response, ready to be streamed to the client."""

    response: httpx.Response
    media_type: str
    headers: Dict[str, str] = field(default_factory=dict)

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        """Yield the raw upstream body; always closes the upstream stream."""
        try:
            async for chunk in self.response.aiter_raw():
                yield chunk
        finally:
            await self.response.aclose()


class TileProxy:
    """
    Forwards tile requests for registered sessions to the backend.

    Holds no lock across I/O and never writes to a live session, so any
    number of tile fetches for one session can run at once.

    Attributes:
        registry: Session registry shared with the layer endpoint.
        credential_provider: Source of bearer tokens.
        http_client: Shared async HTTP client with the upstream timeout.
        api_base_url: Backend base URL, e.g. "https://earthengine.googleapis.com".
    """

    def __init__(
        self,
        registry: SessionRegistry,
        credential_provider: CredentialProvider,
        http_client: httpx.AsyncClient,
        api_base_url: str,
    ) -> None:
        self.registry = registry
        self.credential_provider = credential_provider
        self.http_client = http_client
        self.api_base_url = api_base_url

    async def open_tile(self, session_id: str, z: str, x: str, y: str) -> UpstreamTile:
        """
        Resolve a session and open the upstream tile stream.

        Args:
            session_id: Id from the proxy URL.
            z: Zoom segment, forwarded verbatim.
            x: Column segment, forwarded verbatim.
            y: Row segment, forwarded verbatim.

        Returns:
            UpstreamTile whose body has not been read yet.

        Raises:
            SessionNotFoundError: Unknown or evicted session.
            SessionExpiredError: Session past its TTL.
            CredentialUnavailableError: No token; the upstream is not contacted.
            UpstreamTileError: Backend answered with a non-success status.
            UpstreamTimeoutError: Backend did not answer in time.
            UpstreamUnavailableError: Backend could not be reached.
        """
        resource_name = self.registry.resolve(session_id)
        access = await self.credential_provider.get_token()

        url = upstream_tile_url(self.api_base_url, resource_name, z, x, y)
        request = self.http_client.build_request(
            "GET", url, headers={"Authorization": f"Bearer {access.token}"}
        )

        try:
            response = await self.http_client.send(request, stream=True)
        except httpx.TimeoutException as e:
            logger.warning("Upstream timeout for session %s", short_id(session_id))
            raise UpstreamTimeoutError(url) from e
        except httpx.RequestError as e:
            logger.warning("Upstream request failed for %s: %s", url, e)
            raise UpstreamUnavailableError(url, str(e)) from e

        if not response.is_success:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            finally:
                await response.aclose()
            logger.warning(
                "Upstream tile error %d for %s/%s/%s (session %s)",
                response.status_code,
                z,
                x,
                y,
                short_id(session_id),
            )
            raise UpstreamTileError(response.status_code, body)

        headers = {
            name: response.headers[name]
            for name in PASSTHROUGH_HEADERS
            if name in response.headers
        }
        return UpstreamTile(
            response=response,
            media_type=media_type_or_default(response.headers.get("content-type")),
            headers=headers,
        )
