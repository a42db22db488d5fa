"""Credential storage for Gemini Web MCP.

Holds the in-memory cookie store shared by a session and its rotation task,
the on-disk cookie cache written by ``gemini-web-mcp-auth``, and the
rotation cache that debounces ``__Secure-1PSIDTS`` refreshes across processes.
"""

import hashlib
import json
import logging
import os
import time
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path

from .constants import ACCESS_TOKEN_PATTERN, IDENTITY_COOKIE, ROTATING_COOKIE

logger = logging.getLogger("gemini_web_mcp.session")

# Cookies worth keeping from a full browser cookie header
ESSENTIAL_COOKIES = [
    IDENTITY_COOKIE,
    ROTATING_COOKIE,
    "__Secure-1PSIDCC",
    "SID", "HSID", "SSID", "APISID", "SAPISID",
    "NID",
]


class CredentialBag:
    """Ordered cookie store.

    Both the rotation task and request building go through this interface.
    Requests read a ``snapshot()`` at build time, so a concurrent ``set`` never
    changes a request that is already on the wire.
    """

    def __init__(self, cookies: Mapping[str, str] | None = None):
        self._cookies: dict[str, str] = dict(cookies or {})

    def snapshot(self) -> dict[str, str]:
        return dict(self._cookies)

    def get(self, name: str, default: str | None = None) -> str | None:
        return self._cookies.get(name, default)

    def set(self, name: str, value: str) -> None:
        self._cookies[name] = value

    def update(self, cookies: Mapping[str, str]) -> None:
        self._cookies.update(cookies)

    def cookie_header(self) -> str:
        """Get cookies as a header string."""
        return format_cookie_header(self._cookies)

    def __contains__(self, name: object) -> bool:
        return name in self._cookies

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._cookies)

    def __repr__(self) -> str:
        return f"CredentialBag({sorted(self._cookies)})"


def format_cookie_header(cookies: Mapping[str, str]) -> str:
    return "; ".join(f"{k}={v}" for k, v in cookies.items())


def parse_cookie_header(cookie_header: str) -> dict[str, str]:
    """
    Parse a copy-pasted Cookie header value into a dict.

    Usage:
    1. Go to gemini.google.com in Chrome
    2. Open DevTools > Network tab
    3. Copy the Cookie header value of any request to gemini.google.com
    4. Pass it to this function
    """
    cookies = {}
    for part in cookie_header.split(";"):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            cookies[key.strip()] = value.strip()
    return cookies


def extract_access_token(html: str) -> str | None:
    """Extract the access token (WIZ_global_data.SNlM0e) from the app page."""
    match = ACCESS_TOKEN_PATTERN.search(html)
    if match and match.group(1):
        return match.group(1)
    return None


def validate_cookies(cookies: Mapping[str, str]) -> bool:
    """Check that the identity cookie is present."""
    return bool(cookies.get(IDENTITY_COOKIE))


# =============================================================================
# Cache locations
# =============================================================================

def _is_serverless() -> bool:
    return any(
        os.environ.get(var)
        for var in ("VERCEL", "AWS_LAMBDA_FUNCTION_NAME", "LAMBDA_TASK_ROOT")
    )


def get_cache_dir() -> Path:
    """Directory for cookie and rotation caches.

    ``GEMINI_WEB_MCP_CACHE_DIR`` wins; serverless hosts only allow writes to /tmp.
    """
    override = os.environ.get("GEMINI_WEB_MCP_CACHE_DIR")
    if override:
        cache_dir = Path(override).expanduser()
    elif _is_serverless():
        cache_dir = Path("/tmp") / "gemini-web-mcp"
    else:
        cache_dir = Path.home() / ".gemini-web-mcp"
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


def get_cache_path() -> Path:
    """Get the path to the auth cache file."""
    return get_cache_dir() / "auth.json"


# =============================================================================
# Saved cookies
# =============================================================================

@dataclass
class AuthTokens:
    """Cookies saved by the auth CLI (the access token is always re-fetched)."""

    cookies: dict[str, str]
    extracted_at: float = 0.0

    def to_dict(self) -> dict:
        return {
            "cookies": self.cookies,
            "extracted_at": self.extracted_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuthTokens":
        return cls(
            cookies=data["cookies"],
            extracted_at=data.get("extracted_at", 0),
        )

    def is_expired(self, max_age_hours: float = 168) -> bool:
        """Check if cookies are older than max_age_hours.

        The rotating cookie is refreshed by the session, so this is only a hint.
        """
        age_seconds = time.time() - self.extracted_at
        return age_seconds > (max_age_hours * 3600)


def load_cached_tokens() -> AuthTokens | None:
    """Load saved cookies if they exist.

    Age is not a rejection criterion: the access token fetch is the real
    validity test.
    """
    cache_path = get_cache_path()
    if not cache_path.exists():
        return None

    try:
        with open(cache_path) as f:
            data = json.load(f)
        tokens = AuthTokens.from_dict(data)
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        logger.warning(f"Failed to load cached cookies: {e}")
        return None

    if tokens.is_expired():
        logger.info("Cached cookies are older than 1 week. They may still work.")
    return tokens


def save_tokens_to_cache(tokens: AuthTokens) -> Path:
    """Save cookies to the auth cache and return its path."""
    cache_path = get_cache_path()
    with open(cache_path, "w") as f:
        json.dump(tokens.to_dict(), f, indent=2)
    logger.info(f"Cookies cached to {cache_path}")
    return cache_path


# =============================================================================
# Rotation cache
# =============================================================================

@dataclass
class CachedCookie:
    value: str
    updated_at: float


class RotationCache:
    """Last rotated ``__Secure-1PSIDTS`` per identity cookie, with its timestamp."""

    def get(self, key: str) -> CachedCookie | None:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError


class FileRotationCache(RotationCache):
    """One file per identity cookie; the file mtime is the rotation time.

    Lives on disk so the debounce window survives process restarts.
    """

    def __init__(self, directory: Path | None = None):
        self._directory = directory

    @property
    def directory(self) -> Path:
        if self._directory is None:
            self._directory = get_cache_dir()
        return self._directory

    def path_for(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]
        return self.directory / f".cached_1psidts_{digest}.txt"

    def get(self, key: str) -> CachedCookie | None:
        path = self.path_for(key)
        try:
            value = path.read_text(encoding="utf-8").strip()
            updated_at = path.stat().st_mtime
        except FileNotFoundError:
            return None
        return CachedCookie(value=value, updated_at=updated_at)

    def set(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        self.path_for(key).write_text(value, encoding="utf-8")


class MemoryRotationCache(RotationCache):
    """Process-local cache, for hosts without a writable disk and for tests."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, CachedCookie] = {}

    def get(self, key: str) -> CachedCookie | None:
        return self._entries.get(key)

    def set(self, key: str, value: str) -> None:
        self._entries[key] = CachedCookie(value=value, updated_at=self._clock())
