"""Custom exceptions for the tile proxy with HTTP status codes."""

from typing import Any, Dict, Optional


class TileProxyError(Exception):
    """
    Base exception for tile proxy errors.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code to return.
        error_code: Machine-readable error code for API responses.
        details: Extra fields merged into the JSON error body.
    """

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)


class SessionNotFoundError(TileProxyError):
    """Raised when a session id was never issued or has already been evicted."""

    def __init__(self, session_id: str) -> None:
        super().__init__(
            "Tile session not found",
            status_code=404,
            error_code="SESSION_NOT_FOUND",
        )
        self.session_id = session_id


class SessionExpiredError(TileProxyError):
    """Raised when a session exists but is older than the session TTL."""

    def __init__(self, session_id: str, age_seconds: float) -> None:
        super().__init__(
            f"Tile session expired {age_seconds:.0f}s after creation. "
            "Request a new tile layer.",
            status_code=410,
            error_code="SESSION_EXPIRED",
        )
        self.session_id = session_id
        self.age_seconds = age_seconds


class CredentialUnavailableError(TileProxyError):
    """Raised when no bearer token could be obtained from the credential provider."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            f"Auth token unavailable: {reason}",
            status_code=500,
            error_code="CREDENTIAL_UNAVAILABLE",
        )
        self.reason = reason


class UpstreamTileError(TileProxyError):
    """Raised when the backend answers a tile fetch with a non-success status."""

    def __init__(self, upstream_status: int, upstream_body: str) -> None:
        super().__init__(
            f"Upstream tile error: {upstream_status} {upstream_body}".rstrip(),
            status_code=502,
            error_code="UPSTREAM_FAILURE",
            details={
                "upstream_status": upstream_status,
                "upstream_body": upstream_body,
            },
        )
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body


class UpstreamTimeoutError(TileProxyError):
    """Raised when the backend does not answer within the request timeout."""

    def __init__(self, url: str) -> None:
        super().__init__(
            f"Upstream request timed out: {url}",
            status_code=504,
            error_code="UPSTREAM_TIMEOUT",
        )


class UpstreamUnavailableError(TileProxyError):
    """Raised when the backend cannot be reached at all (DNS, connect, reset)."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(
            f"Upstream request failed for {url}: {reason}",
            status_code=502,
            error_code="UPSTREAM_UNREACHABLE",
        )


class ResolverError(TileProxyError):
    """Raised when the maps:compute call itself returns a non-success status."""

    def __init__(self, upstream_status: int, upstream_body: str) -> None:
        super().__init__(
            f"maps:compute failed: {upstream_status} {upstream_body}".rstrip(),
            status_code=502,
            error_code="RESOLVER_FAILURE",
            details={
                "upstream_status": upstream_status,
                "upstream_body": upstream_body,
            },
        )
        self.upstream_status = upstream_status


class UnexpectedResolverShapeError(TileProxyError):
    """Raised when maps:compute returns neither a public template nor a map name."""

    def __init__(self, keys: list) -> None:
        message = "Unexpected response from maps:compute"
        if keys:
            message += f" (keys: {', '.join(sorted(keys))})"
        super().__init__(message, status_code=502, error_code="UNEXPECTED_RESOLVER_SHAPE")
        self.keys = keys


class SessionCollisionError(RuntimeError):
    """
    Raised when a freshly generated session id is already registered.

    With 128 bits of entropy this indicates a broken random source. Not a
    TileProxyError: it is never translated into an HTTP error body.
    """
