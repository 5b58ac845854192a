"""
FastAPI application for the Earth Engine tile proxy.

Turns Earth Engine map computations into tile URL patterns a browser tile
layer can use. Maps that need an OAuth bearer token per tile are wrapped in
short-lived proxy sessions, so the token never reaches the browser.

Usage:
    python -m tileproxy [config_file] -p [port] -b [bind address]

    Or run directly with uvicorn:
    uvicorn tileproxy.main:get_app --factory --host 0.0.0.0 --port 8000
"""

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import httpx
from fastapi import Body, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from tileproxy.config import load_proxy_config
from tileproxy.credentials import CredentialProvider, GoogleCredentialProvider
from tileproxy.exceptions import TileProxyError
from tileproxy.proxy import TileProxy
from tileproxy.resolver import (
    EarthEngineMapResolver,
    MapResourceResolver,
    create_tile_layer,
)
from tileproxy.sessions import SessionRegistry

logger = logging.getLogger("ee_tile_proxy")

VERSION = "1.0.0"


async def _sweep_periodically(registry: SessionRegistry, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            registry.sweep_expired()
        except Exception as e:
            logger.error("Failed to sweep expired sessions: %s", e, exc_info=True)


def create_app(
    config_path: Optional[str] = None,
    *,
    credential_provider: Optional[CredentialProvider] = None,
    resolver: Optional[MapResourceResolver] = None,
    registry: Optional[SessionRegistry] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application for proxying map tiles.

    Args:
        config_path: Optional path to a JSON settings file.
        credential_provider: Token source; defaults to Application Default
            Credentials.
        resolver: Map resource resolver; defaults to Earth Engine maps:compute.
        registry: Session registry; a fresh in-memory one by default.
        transport: httpx transport for upstream calls (tests use MockTransport).

    Returns:
        Configured FastAPI application instance.

    Raises:
        ValueError: If configuration is invalid.
    """
    # Configure logging for worker processes (basicConfig is idempotent)
    pid = os.getpid()
    logging.basicConfig(
        level=logging.INFO,
        format=f"%(levelname)s:\t[WORKER {pid}] %(message)s",
    )

    try:
        settings = load_proxy_config(config_path, show_warnings=False)
    except ValueError as e:
        logger.error("Configuration error: %s", e)
        raise

    proxy_prefix = settings["proxy_prefix"]
    session_registry = registry if registry is not None else SessionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Tile proxy starting for project '%s' (prefix %s)",
            settings["project_id"],
            proxy_prefix,
        )

        http_client = httpx.AsyncClient(
            transport=transport,
            timeout=httpx.Timeout(settings["request_timeout"]),
        )
        provider = credential_provider or GoogleCredentialProvider(settings["scopes"])
        map_resolver = resolver or EarthEngineMapResolver(
            provider,
            http_client,
            project_id=settings["project_id"],
            api_base_url=settings["api_base_url"],
        )

        app.state.settings = settings
        app.state.registry = session_registry
        app.state.resolver = map_resolver
        app.state.tile_proxy = TileProxy(
            session_registry, provider, http_client, settings["api_base_url"]
        )

        sweeper: Optional[asyncio.Task] = None
        if settings["sweep_interval"] > 0:
            sweeper = asyncio.create_task(
                _sweep_periodically(session_registry, settings["sweep_interval"])
            )
            logger.info("Expired sessions swept every %.0fs", settings["sweep_interval"])

        logger.info("Tile proxy ready")
        try:
            yield
        finally:
            logger.info("Tile proxy shutting down...")
            if sweeper is not None:
                sweeper.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await sweeper
            await http_client.aclose()

    app = FastAPI(
        title="Earth Engine Tile Proxy",
        description="Anonymous, time-limited tile URLs for authenticated Earth Engine maps",
        version=VERSION,
        lifespan=lifespan,
    )

    # Security + CORS
    # WARNING: `allow_origins=["*"]` lets any page embed these tiles. Restrict
    # it before exposing a deployment whose quota you care about.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    @app.exception_handler(TileProxyError)
    async def tile_proxy_error_handler(request: Request, exc: TileProxyError):
        error_code = exc.error_code or "INTERNAL_ERROR"
        logger.warning("%s - %s [%s]", error_code, exc.message, request.url.path)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "error": error_code,
                "message": exc.message,
                "path": str(request.url.path),
                **exc.details,
            },
        )

    @app.get("/health", summary="Health check endpoint")
    async def health_check():
        return {"status": "healthy", "service": "ee-tile-proxy"}

    @app.get("/", summary="Service information and status")
    async def root(request: Request):
        return {
            "service": "Earth Engine Tile Proxy",
            "version": VERSION,
            "project_id": request.app.state.settings["project_id"],
            "active_sessions": len(request.app.state.registry),
            "session_ttl_seconds": request.app.state.registry.ttl,
            "health_check_url": "/health",
            "tile_layer_url": "/api/tile-layers",
            "tile_url_format": f"{proxy_prefix}/{{session_id}}/{{z}}/{{x}}/{{y}}",
            "admin_endpoints": {
                "session_status": "/admin/sessions",
                "sweep_expired": "/admin/sweep",
            },
        }

    @app.post("/api/tile-layers", summary="Resolve a map computation to a tile URL pattern")
    async def tile_layer(request: Request, computation: Dict[str, Any] = Body(...)):
        """
        Forward an opaque computation payload to the map resolver.

        Public templates come back unchanged; maps needing authorization come
        back as a proxy URL pattern bound to a new session.
        """
        return await create_tile_layer(
            request.app.state.resolver,
            request.app.state.registry,
            computation,
            proxy_prefix,
        )

    @app.get("/admin/sessions", summary="Get session registry status")
    async def session_status(request: Request):
        return request.app.state.registry.status()

    @app.post("/admin/sweep", summary="Remove expired sessions now")
    async def sweep_sessions(request: Request):
        removed = request.app.state.registry.sweep_expired()
        return {"status": "success", "removed": removed}

    @app.get(
        proxy_prefix + "/{session_id}/{z}/{x}/{y}",
        summary="Proxy a single tile for a session",
    )
    async def get_tile(session_id: str, z: str, x: str, y: str, request: Request):
        """
        Stream one tile from the backend for a proxy session.

        Coordinates are passed to the backend as received.
        """
        tile_proxy: TileProxy = request.app.state.tile_proxy

        try:
            tile = await tile_proxy.open_tile(session_id, z, x, y)
        except TileProxyError:
            raise
        except Exception as e:
            logger.error("Tile proxy error: %s", e, exc_info=True)
            raise TileProxyError(
                f"Tile proxy error: {e}", status_code=500, error_code="TILE_PROXY_ERROR"
            )

        # The background close also runs when the client disconnects mid-stream
        return StreamingResponse(
            tile.iter_bytes(),
            media_type=tile.media_type,
            headers=dict(tile.headers),
            background=BackgroundTask(tile.response.aclose),
        )

    return app


def get_app() -> FastAPI:
    """
    Uvicorn factory entry point.

    Reads configuration from environment variables:
        PROXY_CONFIG_PATH: Optional path to a JSON settings file.
        GCP_PROJECT_ID, EE_API_BASE_URL, TILE_PROXY_PREFIX,
        TILE_REQUEST_TIMEOUT, SESSION_SWEEP_INTERVAL: Setting overrides.

    Returns:
        Configured FastAPI application instance.
    """
    config_path = os.getenv("PROXY_CONFIG_PATH") or None
    return create_app(config_path)
