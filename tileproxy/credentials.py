"""Bearer token acquisition backed by Google Application Default Credentials."""

import asyncio
import datetime
import logging
from dataclasses import dataclass
from typing import Any, Optional, Protocol, Sequence

import google.auth
import google.auth.exceptions
import google.auth.transport.requests

from tileproxy.exceptions import CredentialUnavailableError

logger = logging.getLogger("ee_tile_proxy")

EARTHENGINE_READONLY_SCOPE = "https://www.googleapis.com/auth/earthengine.readonly"


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and, when the provider states one, its expiry (UTC)."""

    token: str
    expiry: Optional[datetime.datetime] = None


class CredentialProvider(Protocol):
    async def get_token(self) -> AccessToken:
        """Return a bearer token or raise CredentialUnavailableError."""
        ...


class GoogleCredentialProvider:
    """
    Credential provider using Application Default Credentials.

    The token is reused while ``credentials.valid`` holds (google-auth
    accounts for clock skew) and refreshed in a worker thread otherwise.
    Concurrent callers share one refresh via ``refresh_lock``.

    Attributes:
        scopes: OAuth scopes requested from ADC.
        refresh_lock: Serializes refreshes of the shared credentials object.
    """

    def __init__(
        self,
        scopes: Sequence[str] = (EARTHENGINE_READONLY_SCOPE,),
        credentials: Optional[Any] = None,
    ) -> None:
        self.scopes = list(scopes)
        self.refresh_lock: asyncio.Lock = asyncio.Lock()
        self._credentials = credentials

    def _load_default_credentials(self) -> Any:
        credentials, project = google.auth.default(scopes=self.scopes)
        logger.info("Loaded application default credentials (project: %s)", project)
        return credentials

    def _refresh(self) -> None:
        request = google.auth.transport.requests.Request()
        self._credentials.refresh(request)

    async def get_token(self) -> AccessToken:
        """
        Return a valid bearer token, refreshing it if needed.

        Raises:
            CredentialUnavailableError: If ADC cannot be loaded or refreshed,
                or the refresh yields no token.
        """
        credentials = self._credentials
        if credentials is not None and credentials.valid:
            return AccessToken(credentials.token, credentials.expiry)

        async with self.refresh_lock:
            try:
                if self._credentials is None:
                    self._credentials = await asyncio.to_thread(
                        self._load_default_credentials
                    )
                # Another caller may have refreshed while we waited
                if not self._credentials.valid:
                    await asyncio.to_thread(self._refresh)
            except google.auth.exceptions.GoogleAuthError as e:
                logger.error("Failed to obtain access token: %s", e)
                raise CredentialUnavailableError(str(e)) from e

            token = self._credentials.token
            if not token:
                raise CredentialUnavailableError(
                    "Failed to obtain ADC access token. "
                    "Run `gcloud auth application-default login`."
                )
            return AccessToken(token, self._credentials.expiry)
