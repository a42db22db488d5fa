#!/usr/bin/env python3
"""Gemini web API client (gemini.google.com).

Internal, cookie-authenticated API. Requests go to the StreamGenerate
endpoint as a form body with the access token (``at``) and a doubly
JSON-encoded envelope (``f.req``).
"""

import asyncio
import dataclasses
import json
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from .auth import RotationCache, format_cookie_header
from .constants import (
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_TIMEOUT,
    GEMINI_HEADERS,
    GENERATE_URL,
    IDENTITY_COOKIE,
    ROTATING_COOKIE,
    Model,
)
from .exceptions import (
    AuthenticationError,
    IndexOutOfRangeError,
    InvalidArgumentError,
    NoPriorResultError,
    NotInitializedError,
    TransportError,
)
from .models import ContinuationPointer, GenerationResult
from .parser import decode_response
from .session import GeminiSession, RotationErrorCallback, open_http_client

# Configure logger (API internals only logged at DEBUG level, usually disabled)
logger = logging.getLogger("gemini_web_mcp.api")
logger.setLevel(logging.WARNING)


def _format_debug_json(data: Any, max_length: int = 2000) -> str:
    """Format data as pretty-printed JSON for debug logging."""
    try:
        formatted = json.dumps(data, indent=2, ensure_ascii=False)
        if len(formatted) > max_length:
            return formatted[:max_length] + "\n  ... (truncated)"
        return formatted
    except (TypeError, ValueError):
        result = str(data)
        if len(result) > max_length:
            return result[:max_length] + "... (truncated)"
        return result


def _decode_request_body(body: Mapping[str, str]) -> dict[str, Any]:
    """Unwrap the f.req envelope for debug display (the token is never logged)."""
    result: dict[str, Any] = {}
    f_req = body.get("f.req")
    if f_req:
        try:
            envelope = json.loads(f_req)
            result["params"] = json.loads(envelope[1])
        except (json.JSONDecodeError, IndexError, TypeError):
            result["f.req"] = f_req
    if "at" in body:
        result["at"] = "(access_token)"
    return result


def build_generate_body(
    access_token: str, prompt: str, metadata: list | None = None
) -> dict[str, str]:
    """Build the form fields for a generate request.

    Envelope: [null, json([[prompt], null, metadata])], where metadata is the
    [cid, rid, rcid] continuation triple or null for a fresh conversation.

    Raises:
        InvalidArgumentError: If the prompt is empty after trimming.
    """
    if not prompt or not prompt.strip():
        raise InvalidArgumentError("Prompt cannot be empty")

    inner = json.dumps([[prompt], None, metadata])
    return {
        "at": access_token,
        "f.req": json.dumps([None, inner]),
    }


def build_generate_headers(model: Model, cookies: Mapping[str, str]) -> dict[str, str]:
    return {
        **GEMINI_HEADERS,
        **model.headers,
        "Cookie": format_cookie_header(cookies),
    }


class GeminiClient:
    """Client for the Gemini web app.

    Owns one GeminiSession; any number of ChatSession objects may share it.
    """

    def __init__(
        self,
        secure_1psid: str | None = None,
        secure_1psidts: str | None = None,
        cookies: Mapping[str, str] | None = None,
        proxy: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
        rotation_cache: RotationCache | None = None,
    ):
        """
        Initialize the client.

        Args:
            secure_1psid: __Secure-1PSID cookie value (the account identity)
            secure_1psidts: __Secure-1PSIDTS value (optional - loaded from the rotation cache)
            cookies: Any other cookies to send; explicit values above win
            proxy: Optional HTTP proxy URL
            timeout: Default per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            rotation_cache: Where rotated cookies and their timestamps are kept
        """
        all_cookies = dict(cookies or {})
        if secure_1psid:
            all_cookies[IDENTITY_COOKIE] = secure_1psid
        if secure_1psidts:
            all_cookies[ROTATING_COOKIE] = secure_1psidts

        self.proxy = proxy
        self.timeout = timeout
        self.transport = transport
        self.session = GeminiSession(
            all_cookies, proxy=proxy, transport=transport, rotation_cache=rotation_cache
        )

    @property
    def running(self) -> bool:
        return self.session.is_ready

    @property
    def cookies(self) -> dict[str, str]:
        return self.session.credentials.snapshot()

    async def init(
        self,
        timeout: float | None = None,
        auto_refresh: bool = True,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        on_rotation_error: RotationErrorCallback | None = None,
    ) -> None:
        """Fetch the access token and start automatic cookie refresh."""
        if timeout is not None:
            self.timeout = timeout
        await self.session.initialize(
            timeout=self.timeout,
            auto_refresh=auto_refresh,
            refresh_interval=refresh_interval,
            on_rotation_error=on_rotation_error,
        )

    async def close(self) -> None:
        await self.session.close()

    async def __aenter__(self) -> "GeminiClient":
        await self.init()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def generate_content(
        self,
        prompt: str,
        model: Model | str = Model.UNSPECIFIED,
        chat: "ChatSession | None" = None,
        timeout: float | None = None,
    ) -> GenerationResult:
        """Send one prompt and decode the reply.

        When ``chat`` is given its continuation pointer is sent and then
        updated from the result.

        Raises:
            InvalidArgumentError: Empty prompt.
            NotInitializedError: Session is not ready.
            AuthenticationError: HTTP 401/403; the session is marked FAILED.
            TransportError: Other HTTP failures, connection errors, timeouts.
            ParseError: The reply does not have the expected shape.
        """
        if not prompt or not prompt.strip():
            raise InvalidArgumentError("Prompt cannot be empty")
        if not self.session.is_ready:
            raise NotInitializedError("Client not initialized. Call init() first.")

        model = Model.from_name(model)
        body = build_generate_body(
            self.session.access_token, prompt, chat.metadata if chat else None
        )
        headers = build_generate_headers(model, self.session.credentials.snapshot())
        effective_timeout = timeout if timeout is not None else self.timeout

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("=" * 70)
            logger.debug(f"Generate: model={model.model_name} timeout={effective_timeout}")
            logger.debug("-" * 70)
            logger.debug("Request Params:")
            logger.debug(_format_debug_json(_decode_request_body(body)))

        try:
            async with open_http_client(self.proxy, self.transport, effective_timeout) as client:
                response = await client.post(GENERATE_URL, headers=headers, data=body)
        except httpx.TimeoutException as e:
            raise TransportError(
                "Request timed out. Consider increasing timeout value."
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(f"Request failed: {e}") from e

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("-" * 70)
            logger.debug(f"Response Status: {response.status_code}")
            logger.debug(response.text[:2000])
            logger.debug("=" * 70)

        if response.status_code in (401, 403):
            error = AuthenticationError(
                "Authentication failed. Cookies may have expired. Please reinitialize."
            )
            self.session.mark_failed(error)
            raise error
        if response.status_code != 200:
            raise TransportError(
                f"Request failed with status {response.status_code}",
                status_code=response.status_code,
            )

        output = decode_response(response.text)

        if chat is not None:
            chat.absorb(output)
        return output

    def start_chat(
        self, model: Model | str = Model.UNSPECIFIED, metadata: list | None = None
    ) -> "ChatSession":
        return ChatSession(self, model=model, metadata=metadata)


class ChatSession:
    """A conversation bound to a client, a model and a [cid, rid, rcid] pointer.

    Turns on one ChatSession are not serialized: issuing ``send_message``
    concurrently on the same instance interleaves pointer updates in
    arbitrary order. Await each turn before sending the next.
    """

    def __init__(
        self,
        client: GeminiClient,
        model: Model | str = Model.UNSPECIFIED,
        metadata: list | None = None,
    ):
        self.client = client
        self.model = Model.from_name(model)
        self.pointer = ContinuationPointer(metadata)
        self.last_output: GenerationResult | None = None

    @property
    def metadata(self) -> list:
        return self.pointer.as_list()

    @metadata.setter
    def metadata(self, values: list) -> None:
        self.set_metadata(values)

    def set_metadata(self, values: list | tuple) -> None:
        """Overwrite the leading pointer slots (at most 3)."""
        self.pointer.update(values)

    @property
    def cid(self) -> Any:
        return self.pointer.cid

    @property
    def rid(self) -> Any:
        return self.pointer.rid

    @property
    def rcid(self) -> Any:
        return self.pointer.rcid

    async def send_message(self, prompt: str, timeout: float | None = None) -> GenerationResult:
        return await self.client.generate_content(
            prompt, model=self.model, chat=self, timeout=timeout
        )

    def absorb(self, output: GenerationResult) -> None:
        """Take the pointer for the next turn from a decoded result."""
        self.last_output = output
        if isinstance(output.metadata, list):
            self.pointer.update(output.metadata[:2])
        self.pointer.rcid = output.rcid

    def choose_candidate(self, index: int) -> GenerationResult:
        """Continue the conversation from another candidate of the last turn."""
        if self.last_output is None:
            raise NoPriorResultError("No previous output in this chat session")
        count = len(self.last_output.candidates)
        if not 0 <= index < count:
            raise IndexOutOfRangeError(f"Index {index} is out of range for {count} candidates")

        chosen = dataclasses.replace(self.last_output, chosen=index)
        self.pointer.rcid = chosen.rcid
        return chosen

    def __repr__(self) -> str:
        return f"ChatSession(cid={self.cid!r}, rid={self.rid!r}, rcid={self.rcid!r})"


async def generate_once(
    prompt: str,
    cookies: Mapping[str, str],
    model: Model | str = Model.UNSPECIFIED,
    proxy: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> GenerationResult:
    """Initialize a throwaway client without auto-refresh, generate, close."""
    client = GeminiClient(cookies=cookies, proxy=proxy, timeout=timeout)
    await client.init(auto_refresh=False)
    try:
        return await client.generate_content(prompt, model=model)
    finally:
        await client.close()


if __name__ == "__main__":
    import sys

    from .auth import parse_cookie_header

    if len(sys.argv) < 3:
        print("Usage: python -m gemini_web_mcp.api_client 'COOKIE_HEADER' 'PROMPT'")
        sys.exit(1)

    result = asyncio.run(generate_once(sys.argv[2], parse_cookie_header(sys.argv[1])))
    print(result.text)
