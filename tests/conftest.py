"""
Pytest configuration and shared fixtures for tile proxy tests.

The Earth Engine backend is replaced by an ``httpx.MockTransport`` and the
credential provider by a counting fake, so no test touches the network.
"""

from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from tileproxy.credentials import AccessToken
from tileproxy.exceptions import CredentialUnavailableError
from tileproxy.main import create_app
from tileproxy.sessions import SessionRegistry


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ChunkedStream(httpx.AsyncByteStream):
    """Async body stream, read lazily like a socket; remembers being closed."""

    def __init__(self, chunks: List[bytes]) -> None:
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self) -> AsyncIterator[bytes]:
        for chunk in self.chunks:
            yield chunk

    async def aclose(self) -> None:
        self.closed = True


def streamed_response(
    status_code: int, *chunks: bytes, headers: Optional[Dict[str, str]] = None
) -> httpx.Response:
    """Build an upstream response whose body has not been read yet."""
    return httpx.Response(status_code, stream=ChunkedStream(list(chunks)), headers=headers)


class FakeCredentialProvider:
    """Returns a fixed token and counts calls; can be switched to failing."""

    def __init__(self, token: str = "test-token") -> None:
        self.token = token
        self.calls = 0
        self.fail: Optional[str] = None
        self.error: Optional[Exception] = None

    async def get_token(self) -> AccessToken:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.fail:
            raise CredentialUnavailableError(self.fail)
        return AccessToken(self.token)


class FakeUpstream:
    """
    Records requests and answers through a replaceable handler.

    The default handler answers maps:compute with ``compute_response`` and
    every tile URL with a small PNG-typed streamed body.
    """

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.streams: List[ChunkedStream] = []
        self.compute_response: Dict[str, Any] = {"name": "projects/p/maps/m"}
        self.tile_handler: Callable[[httpx.Request], httpx.Response] = (
            lambda request: streamed_response(
                200, b"\x89PNG", b" tile", headers={"Content-Type": "image/png"}
            )
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("maps:compute"):
            return httpx.Response(200, json=self.compute_response)
        response = self.tile_handler(request)
        if isinstance(response.stream, ChunkedStream):
            self.streams.append(response.stream)
        return response

    @property
    def tile_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if "/tiles/" in r.url.path]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock=clock)


@pytest.fixture
def credentials():
    return FakeCredentialProvider()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def client(registry, credentials, upstream, monkeypatch):
    """
    TestClient for an app wired to the fake backend and credentials.

    Environment overrides are cleared so a developer's shell cannot leak in.
    """
    for var in (
        "GCP_PROJECT_ID",
        "EE_API_BASE_URL",
        "TILE_PROXY_PREFIX",
        "TILE_REQUEST_TIMEOUT",
        "SESSION_SWEEP_INTERVAL",
    ):
        monkeypatch.delenv(var, raising=False)

    app = create_app(
        credential_provider=credentials,
        registry=registry,
        transport=httpx.MockTransport(upstream),
    )
    with TestClient(app) as test_client:
        yield test_client
