"""Integration tests for the tile proxy API endpoints."""

import gzip
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from tests.conftest import streamed_response
from tileproxy.main import create_app
from tileproxy.sessions import SESSION_TTL_SECONDS

# Note: client, registry, clock, credentials and upstream fixtures come from conftest.py

COMPUTATION = {
    "expression": {"expression": "ImageCollection('NOAA/GFS0P25').first()"},
    "visualization": {"range": {"min": -30, "max": 45}},
}


def create_layer(client):
    response = client.post("/api/tile-layers", json=COMPUTATION)
    assert response.status_code == 200
    return response.json()


def test_health_endpoint(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_root_endpoint(client):
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["active_sessions"] == 0
    assert data["session_ttl_seconds"] == SESSION_TTL_SECONDS
    assert data["tile_url_format"] == "/api/ee-tiles/{session_id}/{z}/{x}/{y}"


def test_security_headers(client):
    response = client.get("/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["Referrer-Policy"] == "no-referrer"


def test_proxied_layer_end_to_end(client, credentials, upstream):
    """One tile request costs exactly one credential fetch and one upstream fetch."""
    layer = create_layer(client)
    assert layer["proxied"] is True
    session_id = layer["sessionId"]
    assert layer["urlTemplate"] == f"/api/ee-tiles/{session_id}/{{z}}/{{x}}/{{y}}"

    calls_before = credentials.calls
    response = client.get(f"/api/ee-tiles/{session_id}/3/2/1")

    assert response.status_code == 200
    assert response.content == b"\x89PNG tile"
    assert response.headers["content-type"] == "image/png"
    assert credentials.calls - calls_before == 1

    assert len(upstream.tile_requests) == 1
    tile_request = upstream.tile_requests[0]
    assert str(tile_request.url) == (
        "https://earthengine.googleapis.com/v1/projects/p/maps/m/tiles/3/2/1"
    )
    assert tile_request.headers["Authorization"] == "Bearer test-token"
    assert "x-tile-server" not in response.headers
    assert all(stream.closed for stream in upstream.streams)


def test_maps_compute_request(client, upstream):
    create_layer(client)
    compute = upstream.requests[0]
    assert compute.url.path == "/v1beta/projects/california-weather-maps/maps:compute"
    assert compute.headers["x-goog-user-project"] == "california-weather-maps"


def test_upstream_failure_passes_status_and_body(client, upstream):
    upstream.tile_handler = lambda request: httpx.Response(503, text="backend overloaded")
    layer = create_layer(client)

    response = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert response.status_code == 502
    data = response.json()
    assert data["error"] == "UPSTREAM_FAILURE"
    assert data["upstream_status"] == 503
    assert data["upstream_body"] == "backend overloaded"
    assert "503" in data["message"]


def test_upstream_failure_does_not_break_session(client, upstream):
    layer = create_layer(client)
    upstream.tile_handler = lambda request: httpx.Response(500, text="boom")
    assert client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1").status_code == 502

    upstream.tile_handler = lambda request: streamed_response(
        200, b"ok", headers={"Content-Type": "image/png"}
    )
    assert client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/2").status_code == 200


def test_public_template_passes_through(client, registry, upstream):
    upstream.compute_response = {"tileUrlTemplate": "https://x/{z}/{x}/{y}"}

    layer = create_layer(client)

    assert layer == {"urlTemplate": "https://x/{z}/{x}/{y}", "proxied": False}
    assert len(registry) == 0


def test_unexpected_resolver_shape(client, registry, upstream):
    upstream.compute_response = {"something": "else"}

    response = client.post("/api/tile-layers", json=COMPUTATION)

    assert response.status_code == 502
    assert response.json()["error"] == "UNEXPECTED_RESOLVER_SHAPE"
    assert len(registry) == 0


def test_unknown_session_is_not_found(client, credentials, upstream):
    response = client.get("/api/ee-tiles/does-not-exist/3/2/1")
    assert response.status_code == 404
    assert response.json()["error"] == "SESSION_NOT_FOUND"
    assert credentials.calls == 0
    assert upstream.tile_requests == []


def test_expired_session_is_gone_then_not_found(client, clock, upstream):
    layer = create_layer(client)
    clock.advance(SESSION_TTL_SECONDS + 1)

    first = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")
    second = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert first.status_code == 410
    assert first.json()["error"] == "SESSION_EXPIRED"
    assert second.status_code == 404
    assert upstream.tile_requests == []


def test_credential_failure_is_server_error(client, credentials, upstream):
    layer = create_layer(client)
    credentials.fail = "grant revoked"

    response = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert response.status_code == 500
    assert response.json()["error"] == "CREDENTIAL_UNAVAILABLE"
    assert upstream.tile_requests == []


def test_content_type_defaults_to_png(client, upstream):
    upstream.tile_handler = lambda request: streamed_response(200, b"raw")
    layer = create_layer(client)

    response = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.content == b"raw"


def test_coordinates_forwarded_verbatim(client, upstream):
    layer = create_layer(client)

    client.get(f"/api/ee-tiles/{layer['sessionId']}/30/99999999/-1")

    assert upstream.tile_requests[0].url.path == "/v1/projects/p/maps/m/tiles/30/99999999/-1"


def test_compressed_body_passes_through_unchanged(client, upstream):
    """A gzip-encoded upstream body reaches the caller byte for byte, still encoded."""
    compressed = gzip.compress(b"\x89PNG compressed tile" * 20)
    upstream.tile_handler = lambda request: streamed_response(
        200,
        compressed[:10],
        compressed[10:],
        headers={"Content-Type": "image/png", "Content-Encoding": "gzip"},
    )
    layer = create_layer(client)

    with client.stream("GET", f"/api/ee-tiles/{layer['sessionId']}/3/2/1") as response:
        raw = b"".join(response.iter_raw())

    assert response.status_code == 200
    assert response.headers["content-encoding"] == "gzip"
    assert raw == compressed
    assert upstream.streams[0].closed


def test_unreachable_upstream(client, upstream):
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    upstream.tile_handler = refuse
    layer = create_layer(client)

    response = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert response.status_code == 502
    assert response.json()["error"] == "UPSTREAM_UNREACHABLE"


def test_unexpected_error_is_tile_proxy_error(client, credentials, upstream):
    layer = create_layer(client)
    credentials.error = RuntimeError("provider exploded")

    response = client.get(f"/api/ee-tiles/{layer['sessionId']}/3/2/1")

    assert response.status_code == 500
    data = response.json()
    assert data["error"] == "TILE_PROXY_ERROR"
    assert "provider exploded" in data["message"]
    assert upstream.tile_requests == []


def test_periodic_sweep_removes_expired_sessions(registry, clock, credentials, upstream, monkeypatch):
    monkeypatch.setenv("SESSION_SWEEP_INTERVAL", "0.02")
    for i in range(3):
        registry.create(f"projects/p/maps/{i}")
    clock.advance(SESSION_TTL_SECONDS + 1)

    app = create_app(
        credential_provider=credentials,
        registry=registry,
        transport=httpx.MockTransport(upstream),
    )
    with TestClient(app):
        deadline = time.monotonic() + 5
        while len(registry) and time.monotonic() < deadline:
            time.sleep(0.02)

    assert len(registry) == 0


def test_admin_sessions_and_sweep(client, clock):
    create_layer(client)
    create_layer(client)

    status = client.get("/admin/sessions").json()
    assert status["sessions"] == 2
    assert status["active"] == 2

    clock.advance(SESSION_TTL_SECONDS + 1)
    response = client.post("/admin/sweep")
    assert response.status_code == 200
    assert response.json()["removed"] == 2
    assert client.get("/admin/sessions").json()["sessions"] == 0


def test_custom_proxy_prefix(registry, credentials, upstream, monkeypatch):
    monkeypatch.setenv("TILE_PROXY_PREFIX", "tiles/")
    app = create_app(
        credential_provider=credentials,
        registry=registry,
        transport=httpx.MockTransport(upstream),
    )
    with TestClient(app) as client:
        layer = create_layer(client)
        assert layer["urlTemplate"].startswith("/tiles/")
        response = client.get(f"/tiles/{layer['sessionId']}/1/0/0")
        assert response.status_code == 200


def test_invalid_config_fails_fast(monkeypatch):
    monkeypatch.setenv("TILE_REQUEST_TIMEOUT", "-5")
    with pytest.raises(ValueError, match="request_timeout"):
        create_app()
