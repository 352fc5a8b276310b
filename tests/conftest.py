"""Test configuration and fixtures."""

import json

import httpx
import pytest

from config import Settings
from db import configure, init_db, reset_connection
from server import create_app
from tracking import RateLimiter

ADMIN_KEY = "test-admin-key"


class RecordingTransport(httpx.MockTransport):
    """Mock transport that remembers every request it served.

    routes maps a URL prefix to either a response factory taking the
    request, or an exception instance to raise. Unmatched URLs fail with
    a connection error.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        for prefix, route in self.routes.items():
            if url.startswith(prefix):
                if isinstance(route, Exception):
                    raise route
                return route(request)
        raise httpx.ConnectError(f"no route for {url}", request=request)

    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]

    def bodies(self, path_suffix: str) -> list[dict]:
        return [
            json.loads(r.content)
            for r in self.requests
            if r.url.path.endswith(path_suffix)
        ]


def json_response(payload, status_code: int = 200):
    """Route handler returning a fixed JSON body."""
    return lambda request: httpx.Response(status_code, json=payload)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path}/analytics.db"


@pytest.fixture
def db_ready(database_url):
    """Configured, empty database for direct tracker tests."""
    configure(database_url)
    init_db()
    yield
    reset_connection()


@pytest.fixture
def settings(database_url):
    return Settings(database_url=database_url, admin_key=ADMIN_KEY)


@pytest.fixture
def ip_transport():
    """Outbound IP services all unreachable unless a test adds routes."""
    return RecordingTransport()


@pytest.fixture
def rate_limiter():
    return RateLimiter()


@pytest.fixture
def app(settings, ip_transport, rate_limiter):
    app = create_app(
        settings,
        rate_limiter=rate_limiter,
        http_client=httpx.Client(transport=ip_transport),
    )
    app.config["TESTING"] = True
    yield app
    reset_connection()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


def track(client, tool_id="qr-generator", tool_name="QR Generator", session="s1", **extra):
    """POST a tracking event through the API."""
    body = {"toolId": tool_id, "toolName": tool_name, "userSession": session}
    body.update(extra)
    return client.post("/api/track-usage", json=body)
