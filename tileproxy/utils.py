"""Utility functions for session ids, tile URLs and media types."""

import secrets
from typing import Optional

# ---- Constants ----
DEFAULT_TILE_MEDIA_TYPE = "image/png"
SESSION_ID_BYTES = 16  # 128 bits of entropy


def generate_session_id() -> str:
    """
    Generate an unguessable session identifier.

    Returns:
        URL-safe base64 string (alphabet ``A-Z a-z 0-9 - _``) that can be
        embedded in a path segment without escaping.
    """
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def normalize_proxy_prefix(prefix: str) -> str:
    """
    Normalize a proxy route prefix to ``/segment[/segment...]`` form.

    Args:
        prefix: Raw prefix, e.g. "api/ee-tiles/" or "/api/ee-tiles".

    Returns:
        Prefix with exactly one leading slash and no trailing slash.

    Raises:
        ValueError: If the prefix is empty after stripping slashes.
    """
    stripped = prefix.strip().strip("/")
    if not stripped:
        raise ValueError("Proxy prefix must contain at least one path segment")
    return "/" + stripped


def proxy_url_template(prefix: str, session_id: str) -> str:
    """
    Build the tile URL pattern handed to tile-layer clients for a session.

    Args:
        prefix: Normalized proxy prefix (e.g., "/api/ee-tiles").
        session_id: Registered session identifier.

    Returns:
        Template such as "/api/ee-tiles/<id>/{z}/{x}/{y}".
    """
    return f"{prefix}/{session_id}/{{z}}/{{x}}/{{y}}"


def upstream_tile_url(api_base_url: str, resource_name: str, z: str, x: str, y: str) -> str:
    """
    Build the authenticated backend URL for one tile of a map resource.

    Coordinates are forwarded verbatim; range checks are the backend's job.
    """
    base = api_base_url.rstrip("/")
    name = resource_name.strip("/")
    return f"{base}/v1/{name}/tiles/{z}/{x}/{y}"


def legacy_map_template(api_base_url: str, mapid: str, token: str) -> str:
    """Build the public tile template for a legacy ``mapid`` + ``token`` response."""
    base = api_base_url.rstrip("/")
    return f"{base}/map/{mapid}/{{z}}/{{x}}/{{y}}?token={token}"


def media_type_or_default(content_type: Optional[str]) -> str:
    """
    Return the upstream content type, or the default tile type if absent.

    Args:
        content_type: Value of the upstream Content-Type header, if any.

    Returns:
        The header value unchanged, or "image/png".
    """
    if content_type and content_type.strip():
        return content_type
    return DEFAULT_TILE_MEDIA_TYPE


def short_id(session_id: str) -> str:
    """Truncate a session id for log output."""
    return session_id[:6] + "..." if len(session_id) > 6 else session_id
