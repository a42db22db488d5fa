"""Session lifecycle: access token handshake and background cookie rotation."""

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable, Mapping
from enum import Enum

import httpx

from .auth import (
    CredentialBag,
    FileRotationCache,
    RotationCache,
    extract_access_token,
    format_cookie_header,
)
from .constants import (
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_TIMEOUT,
    GEMINI_HEADERS,
    GOOGLE_URL,
    IDENTITY_COOKIE,
    INIT_URL,
    LOGIN_HOST,
    ROTATE_COOKIES_BODY,
    ROTATE_COOKIES_HEADERS,
    ROTATE_COOKIES_URL,
    ROTATING_COOKIE,
    ROTATING_COOKIE_PATTERN,
    ROTATION_DEBOUNCE_SECONDS,
    SET_COOKIE_PATTERN,
)
from .exceptions import (
    AuthenticationError,
    InvalidArgumentError,
    NotInitializedError,
    TransportError,
)

logger = logging.getLogger("gemini_web_mcp.session")

RotationErrorCallback = Callable[[Exception], None]


def open_http_client(
    proxy: str | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> httpx.AsyncClient:
    """Create a short-lived client; every request gets its own."""
    kwargs = {"follow_redirects": True, "timeout": timeout}
    if transport is not None:
        kwargs["transport"] = transport
    if proxy:
        kwargs["proxy"] = proxy
    return httpx.AsyncClient(**kwargs)


def harvest_set_cookies(response: httpx.Response) -> dict[str, str]:
    """Collect name=value pairs from Set-Cookie headers, redirects included."""
    cookies = {}
    for hop in [*response.history, response]:
        for header in hop.headers.get_list("set-cookie"):
            match = SET_COOKIE_PATTERN.match(header.strip())
            if match:
                cookies[match.group(1)] = match.group(2)
    return cookies


def find_rotated_cookie(response: httpx.Response) -> str | None:
    """Return the new __Secure-1PSIDTS value from Set-Cookie headers, if any."""
    for hop in [*response.history, response]:
        for header in hop.headers.get_list("set-cookie"):
            match = ROTATING_COOKIE_PATTERN.search(header)
            if match and match.group(1):
                return match.group(1)
    return None


class TokenAcquirer:
    """Two-step handshake that yields the access token and supplementary cookies."""

    def __init__(
        self,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.proxy = proxy
        self.transport = transport

    async def acquire(
        self, cookies: Mapping[str, str], timeout: float = DEFAULT_TIMEOUT
    ) -> tuple[str, dict[str, str]]:
        """Fetch the landing page for extra cookies, then the app page for the token.

        Returns:
            (access_token, merged_cookies); caller cookies win over harvested ones.

        Raises:
            AuthenticationError: Cookies rejected or token marker missing.
            TransportError: Any other failed request.
        """
        async with open_http_client(self.proxy, self.transport, timeout) as client:
            try:
                landing = await client.get(GOOGLE_URL)
                extra_cookies = harvest_set_cookies(landing)
                merged = {**extra_cookies, **cookies}

                response = await client.get(
                    INIT_URL,
                    headers={**GEMINI_HEADERS, "Cookie": format_cookie_header(merged)},
                )
            except httpx.TimeoutException as e:
                raise TransportError(f"Timed out fetching access token: {e}") from e
            except httpx.HTTPError as e:
                raise TransportError(f"Failed to fetch access token: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Authentication failed. Please check your cookies.")

        # Expired cookies end up on the login page after redirects
        if response.url.host == LOGIN_HOST:
            raise AuthenticationError(
                "Authentication expired (redirected to login). Refresh your cookies."
            )

        if response.status_code != 200:
            raise TransportError(
                f"Failed to fetch access token. Status: {response.status_code}",
                status_code=response.status_code,
            )

        access_token = extract_access_token(response.text)
        if not access_token:
            raise AuthenticationError(
                "Failed to extract access token from response. Cookies may be invalid."
            )

        logger.info("Successfully obtained access token")
        return access_token, merged


class CookieRotator:
    """Refreshes __Secure-1PSIDTS through the accounts endpoint.

    The endpoint rate-limits hard, so a rotation younger than the debounce
    window (tracked per identity cookie in the rotation cache) is a no-op.
    """

    def __init__(
        self,
        cache: RotationCache,
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
        debounce_seconds: float = ROTATION_DEBOUNCE_SECONDS,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.cache = cache
        self.proxy = proxy
        self.transport = transport
        self.clock = clock
        self.debounce_seconds = debounce_seconds
        self.timeout = timeout

    def is_debounced(self, identity: str) -> bool:
        cached = self.cache.get(identity)
        return cached is not None and self.clock() - cached.updated_at <= self.debounce_seconds

    async def rotate(self, cookies: Mapping[str, str]) -> str | None:
        """Run one rotation.

        Returns:
            The new __Secure-1PSIDTS value, or None when debounced or not rotated.

        Raises:
            AuthenticationError: HTTP 401/403 from the endpoint.
            TransportError: Server error, connection failure or timeout.
        """
        identity = cookies.get(IDENTITY_COOKIE)
        if not identity:
            raise InvalidArgumentError(f"{IDENTITY_COOKIE} cookie is required for rotation")

        if self.is_debounced(identity):
            logger.debug("Rotation cache recently updated, skipping refresh")
            return None

        async with open_http_client(self.proxy, self.transport, self.timeout) as client:
            try:
                response = await client.post(
                    ROTATE_COOKIES_URL,
                    headers={**ROTATE_COOKIES_HEADERS, "Cookie": format_cookie_header(cookies)},
                    content=ROTATE_COOKIES_BODY,
                )
            except httpx.TimeoutException as e:
                raise TransportError(f"Cookie rotation timed out: {e}") from e
            except httpx.HTTPError as e:
                raise TransportError(f"Cookie rotation failed: {e}") from e

        if response.status_code in (401, 403):
            raise AuthenticationError("Authentication failed during cookie rotation")
        if response.status_code >= 500:
            raise TransportError(
                f"Cookie rotation failed. Status: {response.status_code}",
                status_code=response.status_code,
            )

        new_value = find_rotated_cookie(response)
        if not new_value:
            logger.debug(f"No {ROTATING_COOKIE} in rotation response (status {response.status_code})")
            return None

        self.cache.set(identity, new_value)
        logger.info(f"Successfully refreshed {ROTATING_COOKIE}")
        return new_value


class SessionState(Enum):
    UNINITIALIZED = "uninitialized"
    ACQUIRING = "acquiring"
    READY = "ready"
    REFRESHING = "refreshing"
    CLOSED = "closed"
    FAILED = "failed"


class GeminiSession:
    """Credentials, access token and the background rotation task.

    Lifecycle: UNINITIALIZED -> ACQUIRING -> READY <-> REFRESHING -> CLOSED.
    Any step can end in FAILED, which holds until ``initialize`` is called again.
    """

    def __init__(
        self,
        cookies: Mapping[str, str],
        proxy: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        rotation_cache: RotationCache | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.credentials = CredentialBag(cookies)
        self.proxy = proxy
        self.transport = transport
        self.access_token: str | None = None
        self.state = SessionState.UNINITIALIZED
        self.timeout = DEFAULT_TIMEOUT
        self.refresh_interval = DEFAULT_REFRESH_INTERVAL
        self.last_error: Exception | None = None

        self.rotation_cache = rotation_cache if rotation_cache is not None else FileRotationCache()
        self.acquirer = TokenAcquirer(proxy=proxy, transport=transport)
        self.rotator = CookieRotator(
            self.rotation_cache, proxy=proxy, transport=transport, clock=clock
        )

        self._rotation_task: asyncio.Task | None = None
        self._on_rotation_error: RotationErrorCallback | None = None

    @property
    def is_ready(self) -> bool:
        return self.state in (SessionState.READY, SessionState.REFRESHING)

    @property
    def rotation_running(self) -> bool:
        return self._rotation_task is not None and not self._rotation_task.done()

    def _load_cached_rotating_cookie(self) -> None:
        if ROTATING_COOKIE in self.credentials:
            return
        try:
            cached = self.rotation_cache.get(self.credentials.get(IDENTITY_COOKIE))
        except OSError as e:
            logger.warning(f"Could not read rotation cache, continuing without it: {e}")
            return
        if cached and cached.value:
            self.credentials.set(ROTATING_COOKIE, cached.value)
            logger.info(f"Loaded cached {ROTATING_COOKIE}")

    async def initialize(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        auto_refresh: bool = True,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        on_rotation_error: RotationErrorCallback | None = None,
    ) -> None:
        """Fetch the access token and optionally start cookie rotation.

        Raises:
            InvalidArgumentError: The identity cookie is missing.
            AuthenticationError: Cookies rejected; the session is FAILED.
            TransportError: Handshake request failed; the session is FAILED.
        """
        if not self.credentials.get(IDENTITY_COOKIE):
            raise InvalidArgumentError(f"{IDENTITY_COOKIE} cookie is required")

        await self._stop_rotation()
        self.timeout = timeout
        self.refresh_interval = refresh_interval
        self._on_rotation_error = on_rotation_error
        self.state = SessionState.ACQUIRING
        self.last_error = None
        logger.info("Initializing Gemini session...")

        try:
            self._load_cached_rotating_cookie()
            access_token, cookies = await self.acquirer.acquire(
                self.credentials.snapshot(), timeout=timeout
            )
        except Exception as e:
            self.state = SessionState.FAILED
            self.last_error = e
            raise

        self.credentials.update(cookies)
        self.access_token = access_token
        self.state = SessionState.READY

        if auto_refresh:
            self.start_rotation(refresh_interval)
            logger.info(f"Gemini session ready, refreshing cookies every {refresh_interval}s")
        else:
            logger.info("Gemini session ready, auto-refresh disabled")

    def start_rotation(self, interval: float | None = None) -> None:
        """Schedule the recurring rotation task, replacing any existing one."""
        if not self.is_ready:
            raise NotInitializedError("Session not initialized. Call initialize() first.")
        if interval is not None:
            self.refresh_interval = interval
        if self._rotation_task is not None:
            self._rotation_task.cancel()
        self._rotation_task = asyncio.create_task(self._rotation_loop(self.refresh_interval))
        logger.debug("Background refresh task started")

    async def _rotation_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_cookies()
            except Exception as e:
                logger.warning(f"Failed to refresh cookies: {e}. Background refresh will keep trying.")
                self._report_rotation_error(e)

    def _report_rotation_error(self, error: Exception) -> None:
        if self._on_rotation_error is None:
            return
        try:
            self._on_rotation_error(error)
        except Exception:
            logger.exception("Rotation error callback raised")

    async def refresh_cookies(self) -> str | None:
        """Run a single rotation tick and store the new cookie.

        Failures propagate to the caller but never change the session state;
        the last-known-good cookies stay in use.
        """
        if not self.is_ready:
            raise NotInitializedError("Session not initialized. Call initialize() first.")

        self.state = SessionState.REFRESHING
        try:
            new_value = await self.rotator.rotate(self.credentials.snapshot())
        finally:
            if self.state is SessionState.REFRESHING:
                self.state = SessionState.READY

        if new_value:
            self.credentials.set(ROTATING_COOKIE, new_value)
        return new_value

    def mark_failed(self, error: Exception) -> None:
        """Record an auth failure; initialize() must be called again."""
        self.state = SessionState.FAILED
        self.last_error = error
        self.access_token = None
        if self._rotation_task is not None:
            self._rotation_task.cancel()
            self._rotation_task = None

    async def _stop_rotation(self) -> None:
        task, self._rotation_task = self._rotation_task, None
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def close(self) -> None:
        """Stop rotation and mark the session closed. In-flight requests are left alone."""
        await self._stop_rotation()
        self.state = SessionState.CLOSED
        logger.debug("Session closed")
