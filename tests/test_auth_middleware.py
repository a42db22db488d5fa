import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

import gemini_web_mcp.server as server
from gemini_web_mcp.server import APIKeyAuthMiddleware


async def models(request):
    return JSONResponse({"models": ["gemini-2.5-flash"]})


async def health(request):
    return JSONResponse({"status": "healthy"})


@pytest.fixture
def make_client(monkeypatch):
    """Build a middleware-wrapped app with the given server API key."""
    def factory(api_key):
        # The middleware reads the module global on every request
        monkeypatch.setattr(server, "_api_key", api_key)
        app = Starlette(
            routes=[Route("/api/models", models), Route("/health", health)],
            middleware=[Middleware(APIKeyAuthMiddleware)],
        )
        return TestClient(app)
    return factory


def test_no_api_key_configured(make_client):
    """Without a configured key every route is open."""
    client = make_client(None)

    response = client.get("/api/models")
    assert response.status_code == 200
    assert response.json() == {"models": ["gemini-2.5-flash"]}
    assert client.get("/health").status_code == 200


def test_correct_bearer_token(make_client):
    client = make_client("secret_key")

    response = client.get("/api/models", headers={"Authorization": "Bearer secret_key"})
    assert response.status_code == 200


def test_missing_header(make_client):
    client = make_client("secret_key")

    response = client.get("/api/models")
    assert response.status_code == 401
    assert "Bearer" in response.json()["error"]


def test_wrong_scheme(make_client):
    client = make_client("secret_key")

    response = client.get("/api/models", headers={"Authorization": "Basic secret_key"})
    assert response.status_code == 401


def test_wrong_key(make_client):
    client = make_client("secret_key")

    response = client.get("/api/models", headers={"Authorization": "Bearer wrong_key"})
    assert response.status_code == 401
    assert response.json()["error"] == "Invalid API key"


def test_health_check_bypass(make_client):
    """Load balancers reach /health without credentials."""
    client = make_client("secret_key")

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}
