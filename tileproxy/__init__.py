"""
Earth Engine Tile Proxy - anonymous, time-limited tile URLs for authenticated maps.

A FastAPI service that resolves Earth Engine map computations to tile URL
patterns. Maps that require a bearer token per tile are served through
short-lived proxy sessions so the token never reaches the browser.

Usage:
    # As a module
    python -m tileproxy config.json -p 8000

    # With uvicorn directly
    uvicorn tileproxy.main:get_app --factory --host 0.0.0.0 --port 8000

    # Programmatically
    from tileproxy import create_app
    app = create_app("config.json")
"""

from tileproxy.main import create_app, get_app

__all__ = ["create_app", "get_app"]
