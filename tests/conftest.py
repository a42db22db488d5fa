import json

import httpx
import pytest

from gemini_web_mcp.auth import MemoryRotationCache
from gemini_web_mcp.constants import IDENTITY_COOKIE, ROTATING_COOKIE

ACCESS_TOKEN = "test_access_token"
APP_PAGE = f'<script>window.WIZ_global_data = {{"SNlM0e":"{ACCESS_TOKEN}","other":"x"}};</script>'


def make_candidate(rcid, text, extra=None):
    """Build a raw candidate array; ``extra`` maps positions to values."""
    candidate = [None] * 46
    candidate[0] = rcid
    candidate[1] = [text]
    for index, value in (extra or {}).items():
        candidate[index] = value
    return candidate


def make_body(candidates, metadata=("c_1", "r_1")):
    return [None, list(metadata), None, None, candidates]


def wrap_envelope(envelope):
    return ")]}'\n\n" + json.dumps(envelope) + "\n"


def wrap_body(body, leading_parts=()):
    """Frame a body the way StreamGenerate does: prefix line, size line, envelope."""
    return wrap_envelope([*leading_parts, ["wrb.fr", None, json.dumps(body)], ["di", 97]])


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def cookies():
    return {IDENTITY_COOKIE: "psid_value", ROTATING_COOKIE: "psidts_value"}


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rotation_cache(clock):
    return MemoryRotationCache(clock=clock)


@pytest.fixture(autouse=True)
def isolated_cache_dir(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.gemini-web-mcp."""
    monkeypatch.setenv("GEMINI_WEB_MCP_CACHE_DIR", str(tmp_path / "cache"))
    for var in ("GEMINI_SECURE_1PSID", "GEMINI_SECURE_1PSIDTS", "GEMINI_COOKIES"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path / "cache"


class GeminiBackend:
    """httpx.MockTransport handler that plays the Gemini endpoints."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.init_status = 200
        self.app_page = APP_PAGE
        self.generate_status = 200
        self.generate_bodies: list[str] = []
        self.rotate_status = 200
        self.rotate_value: str | None = "rotated_psidts"
        self.redirect_to_login = False

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if request.url.host == "www.google.com":
            return httpx.Response(200, headers={"set-cookie": "NID=landing_nid; Path=/"})
        if path == "/app" and self.redirect_to_login:
            return httpx.Response(302, headers={"location": "https://accounts.google.com/ServiceLogin"})
        if path == "/ServiceLogin":
            return httpx.Response(200, text="<html>Sign in</html>")
        if path == "/app":
            return httpx.Response(self.init_status, text=self.app_page)
        if path.endswith("/StreamGenerate"):
            if self.generate_status != 200:
                return httpx.Response(self.generate_status, text="")
            body = self.generate_bodies.pop(0) if self.generate_bodies else wrap_body(
                make_body([make_candidate("rc_1", "hello")])
            )
            return httpx.Response(200, text=body)
        if path == "/RotateCookies":
            headers = {}
            if self.rotate_value:
                headers["set-cookie"] = f"{ROTATING_COOKIE}={self.rotate_value}; Path=/; Secure"
            return httpx.Response(self.rotate_status, headers=headers)
        return httpx.Response(404)


@pytest.fixture
def backend():
    return GeminiBackend()


@pytest.fixture
def transport(backend):
    return httpx.MockTransport(backend)
