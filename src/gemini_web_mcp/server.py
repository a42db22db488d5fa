"""Gemini Web MCP Server."""

import argparse
import asyncio
import functools
import json
import logging
import os
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Any

from fastmcp import FastMCP
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from . import __version__
from .api_client import ChatSession, GeminiClient
from .auth import (
    ESSENTIAL_COOKIES,
    AuthTokens,
    load_cached_tokens,
    parse_cookie_header,
    save_tokens_to_cache,
)
from .constants import (
    DEFAULT_MODEL,
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_TIMEOUT,
    IDENTITY_COOKIE,
    ROTATING_COOKIE,
    Model,
)
from .exceptions import AuthenticationError, InvalidArgumentError, NotInitializedError

# MCP request/response logger
mcp_logger = logging.getLogger("gemini_web_mcp.mcp")

# Initialize MCP server
mcp = FastMCP(
    name="gemini",
    instructions="""Gemini Web MCP - Chat with Gemini (gemini.google.com) using browser cookies.

**Auth:** If you get authentication errors, run `gemini-web-mcp-auth --file cookies.txt` via your Bash/terminal tool, then call refresh_auth. Only use save_auth_cookies as a fallback.
**Chats:** chat_start returns a chat_id; pass it to chat_send for follow-ups and to chat_end when done.
**Candidates:** Gemini may return several drafts; chat_choose_candidate continues from another one.""",
)


# Health check endpoint for load balancers and monitoring
@mcp.custom_route("/health", methods=["GET"])
async def health_check(request: Request) -> JSONResponse:
    """Health check endpoint for load balancers and monitoring."""
    return JSONResponse({
        "status": "healthy",
        "service": "gemini-web-mcp",
        "version": __version__,
        "client_ready": bool(_client and _client.running),
    })


# Global state
_client: GeminiClient | None = None
_client_lock = asyncio.Lock()
_timeout: float = float(os.environ.get("GEMINI_TIMEOUT", str(DEFAULT_TIMEOUT)))
_refresh_interval: float = float(os.environ.get("GEMINI_REFRESH_INTERVAL", str(DEFAULT_REFRESH_INTERVAL)))
_proxy: str | None = os.environ.get("GEMINI_PROXY") or None
_api_key: str | None = os.environ.get("GEMINI_API_KEY")


@dataclass
class ChatEntry:
    chat: ChatSession
    owned_client: GeminiClient | None  # temporary client from request cookies; None means shared
    created_at: float


_chats: dict[str, ChatEntry] = {}


class ChatNotFoundError(LookupError):
    """Raised when a chat_id is unknown."""


def validate_api_key(request: Request) -> JSONResponse | None:
    """Validate API key from Authorization header.

    Returns None if auth passes, JSONResponse with error if auth fails.
    """
    # Skip auth if no API key configured
    if not _api_key:
        return None

    # Allow health check without auth (for load balancers)
    if request.url.path == "/health":
        return None

    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return JSONResponse(
            {"error": "Missing or invalid Authorization header. Use 'Bearer <api_key>'"},
            status_code=401
        )

    provided_key = auth_header[7:]
    if not secrets.compare_digest(provided_key, _api_key):
        return JSONResponse({"error": "Invalid API key"}, status_code=401)

    return None


class APIKeyAuthMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce API key authentication for HTTP transport."""

    async def dispatch(self, request: Request, call_next):
        auth_error = validate_api_key(request)
        if auth_error:
            return auth_error
        return await call_next(request)


def logged_tool():
    """Decorator that combines @mcp.tool() with MCP request/response logging."""
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            tool_name = func.__name__
            if mcp_logger.isEnabledFor(logging.DEBUG):
                params = {k: v for k, v in kwargs.items() if v is not None}
                mcp_logger.debug(f"MCP Request: {tool_name}({json.dumps(params, default=str)})")

            result = await func(*args, **kwargs)

            if mcp_logger.isEnabledFor(logging.DEBUG):
                result_str = json.dumps(result, default=str)
                if len(result_str) > 1000:
                    result_str = result_str[:1000] + "..."
                mcp_logger.debug(f"MCP Response: {tool_name} -> {result_str}")

            return result
        return mcp.tool()(wrapper)
    return decorator


# =============================================================================
# Client management
# =============================================================================

def normalize_cookies(cookies: dict[str, str] | str | None) -> dict[str, str] | None:
    """Accept request cookies as a header string or a dict with loose key names.

    ``secure1PSID``, ``SECURE_1PSID`` and ``__Secure-1PSID`` all map to the
    identity cookie (likewise for ``...PSIDTS``); other keys pass through.
    """
    if not cookies:
        return None
    raw = parse_cookie_header(cookies) if isinstance(cookies, str) else dict(cookies)

    normalized = {}
    for key, value in raw.items():
        compact = key.lower().replace("_", "").replace("-", "")
        if compact.endswith("secure1psidts"):
            normalized[ROTATING_COOKIE] = value
        elif compact.endswith("secure1psid"):
            normalized[IDENTITY_COOKIE] = value
        else:
            normalized[key] = value

    if not normalized.get(IDENTITY_COOKIE):
        raise InvalidArgumentError(f"cookies must include {IDENTITY_COOKIE} (or secure1PSID)")
    return normalized


def load_default_cookies() -> dict[str, str]:
    """Cookies for the shared client: environment first, then the auth cache."""
    cookie_header = os.environ.get("GEMINI_COOKIES", "")
    secure_1psid = os.environ.get("GEMINI_SECURE_1PSID", "")
    secure_1psidts = os.environ.get("GEMINI_SECURE_1PSIDTS", "")

    cookies = parse_cookie_header(cookie_header) if cookie_header else {}
    if secure_1psid:
        cookies[IDENTITY_COOKIE] = secure_1psid
    if secure_1psidts:
        cookies[ROTATING_COOKIE] = secure_1psidts
    if cookies.get(IDENTITY_COOKIE):
        return cookies

    cached = load_cached_tokens()
    if cached and cached.cookies.get(IDENTITY_COOKIE):
        return cached.cookies

    raise NotInitializedError(
        "No authentication found. Either:\n"
        "1. Run 'gemini-web-mcp-auth --file cookies.txt' to save your cookies, or\n"
        "2. Set GEMINI_SECURE_1PSID (and optionally GEMINI_SECURE_1PSIDTS) environment variables"
    )


async def get_client() -> GeminiClient:
    """Get or create the shared API client (auto-refresh enabled)."""
    global _client
    async with _client_lock:
        if _client is None or not _client.running:
            if _client is not None:
                await _client.close()
            client = GeminiClient(cookies=load_default_cookies(), proxy=_proxy, timeout=_timeout)
            await client.init(refresh_interval=_refresh_interval)
            _client = client
    return _client


async def reset_client() -> None:
    global _client
    async with _client_lock:
        if _client is not None:
            await _client.close()
        _client = None


async def _client_for(cookies: dict[str, str] | str | None) -> tuple[GeminiClient, bool]:
    """Return (client, is_temporary). Request cookies get their own client."""
    normalized = normalize_cookies(cookies)
    if normalized:
        client = GeminiClient(cookies=normalized, proxy=_proxy, timeout=_timeout)
        await client.init(auto_refresh=False)
        return client, True
    return await get_client(), False


def _get_chat(chat_id: str) -> ChatEntry:
    entry = _chats.get(chat_id)
    if entry is None:
        raise ChatNotFoundError(f"Chat session not found: {chat_id}")
    return entry


# =============================================================================
# Operations (shared by MCP tools and REST routes)
# =============================================================================

def list_models_data() -> dict[str, Any]:
    return {
        "models": [{"name": m.model_name, "header": m.headers} for m in Model],
        "default": DEFAULT_MODEL.model_name,
    }


async def generate_data(
    prompt: str,
    model: str | None = None,
    cookies: dict[str, str] | str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    resolved = Model.from_name(model or DEFAULT_MODEL)
    client, is_temporary = await _client_for(cookies)
    try:
        result = await client.generate_content(prompt, model=resolved, timeout=timeout)
    finally:
        if is_temporary:
            await client.close()
    return {**result.to_dict(), "model": resolved.model_name}


async def chat_start_data(
    model: str | None = None,
    cookies: dict[str, str] | str | None = None,
    metadata: list | None = None,
) -> dict[str, Any]:
    resolved = Model.from_name(model or DEFAULT_MODEL)
    client, is_temporary = await _client_for(cookies)
    try:
        chat = client.start_chat(model=resolved, metadata=metadata)
    except Exception:
        if is_temporary:
            await client.close()
        raise

    chat_id = f"chat_{uuid.uuid4().hex[:16]}"
    _chats[chat_id] = ChatEntry(
        chat=chat,
        owned_client=client if is_temporary else None,
        created_at=time.time(),
    )
    return {
        "chat_id": chat_id,
        "model": resolved.model_name,
        "metadata": chat.metadata,
        "using_custom_cookies": is_temporary,
    }


async def chat_send_data(chat_id: str, message: str, timeout: float | None = None) -> dict[str, Any]:
    entry = _get_chat(chat_id)
    if entry.owned_client is None:
        # The shared client may have been replaced by refresh_auth or after a 401
        entry.chat.client = await get_client()
    result = await entry.chat.send_message(message, timeout=timeout)
    return {"chat_id": chat_id, **result.to_dict(), "pointer": entry.chat.metadata}


async def chat_choose_data(chat_id: str, index: int) -> dict[str, Any]:
    entry = _get_chat(chat_id)
    result = entry.chat.choose_candidate(index)
    return {"chat_id": chat_id, **result.to_dict(), "pointer": entry.chat.metadata}


async def chat_end_data(chat_id: str) -> dict[str, Any]:
    entry = _get_chat(chat_id)
    del _chats[chat_id]
    if entry.owned_client is not None:
        await entry.owned_client.close()
    return {"chat_id": chat_id, "message": "Chat session ended"}


async def refresh_auth_data() -> dict[str, Any]:
    await reset_client()
    client = await get_client()
    return {"message": "Access token refreshed.", "cookie_count": len(client.cookies)}


def chat_list_data() -> dict[str, Any]:
    return {
        "active_sessions": [
            {"chat_id": chat_id, "model": e.chat.model.model_name, "metadata": e.chat.metadata}
            for chat_id, e in _chats.items()
        ],
        "count": len(_chats),
    }


# =============================================================================
# MCP tools
# =============================================================================

@logged_tool()
async def list_models() -> dict[str, Any]:
    """List the selectable Gemini models and the default one."""
    return {"status": "success", **list_models_data()}


@logged_tool()
async def generate(
    prompt: str,
    model: str | None = None,
    cookies: str | None = None,
    timeout: float | None = None,
) -> dict[str, Any]:
    """Single-shot generation without conversation state.

    Args:
        prompt: The prompt text
        model: Model name (see list_models; default gemini-2.5-flash)
        cookies: Optional cookie header to use instead of the server's account
        timeout: Request timeout in seconds (default: GEMINI_TIMEOUT or 300)
    """
    try:
        return {"status": "success", **await generate_data(prompt, model, cookies, timeout)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def chat_start(
    model: str | None = None,
    cookies: str | None = None,
    metadata: list | None = None,
) -> dict[str, Any]:
    """Start a chat session and return its chat_id.

    Args:
        model: Model name (default gemini-2.5-flash)
        cookies: Optional cookie header to use instead of the server's account
        metadata: Optional [cid, rid, rcid] to resume an existing conversation
    """
    try:
        return {"status": "success", **await chat_start_data(model, cookies, metadata)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def chat_send(chat_id: str, message: str, timeout: float | None = None) -> dict[str, Any]:
    """Send a message in an existing chat session.

    Args:
        chat_id: ID returned by chat_start
        message: The message text
        timeout: Request timeout in seconds
    """
    try:
        return {"status": "success", **await chat_send_data(chat_id, message, timeout)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def chat_choose_candidate(chat_id: str, index: int) -> dict[str, Any]:
    """Continue the chat from another candidate of the last reply.

    Args:
        chat_id: ID returned by chat_start
        index: 0-based candidate index (the reply's 'candidates' field is the count)
    """
    try:
        return {"status": "success", **await chat_choose_data(chat_id, index)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def chat_end(chat_id: str) -> dict[str, Any]:
    """End a chat session and release its resources."""
    try:
        return {"status": "success", **await chat_end_data(chat_id)}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def chat_list() -> dict[str, Any]:
    """List active chat sessions."""
    return {"status": "success", **chat_list_data()}


@logged_tool()
async def refresh_auth() -> dict[str, Any]:
    """Reload cookies from the environment or disk and fetch a fresh access token.

    Call this after running gemini-web-mcp-auth to pick up new cookies.
    """
    try:
        return {"status": "success", **await refresh_auth_data()}
    except Exception as e:
        return {"status": "error", "error": str(e)}


@logged_tool()
async def save_auth_cookies(cookies: str) -> dict[str, Any]:
    """Save Gemini cookies (FALLBACK method - try gemini-web-mcp-auth first!).

    Args:
        cookies: Cookie header copied from a gemini.google.com request in Chrome DevTools
    """
    try:
        all_cookies = parse_cookie_header(cookies)
        if not all_cookies.get(IDENTITY_COOKIE):
            return {"status": "error", "error": f"Missing required cookie: {IDENTITY_COOKIE}"}

        cookie_dict = {k: v for k, v in all_cookies.items() if k in ESSENTIAL_COOKIES}
        cache_path = save_tokens_to_cache(AuthTokens(cookies=cookie_dict, extracted_at=time.time()))
        await reset_client()

        return {
            "status": "success",
            "message": f"Saved {len(cookie_dict)} essential cookies (filtered from {len(all_cookies)}).",
            "cache_path": str(cache_path),
        }
    except Exception as e:
        return {"status": "error", "error": str(e)}


# =============================================================================
# REST routes
# =============================================================================

def _error_response(error: Exception) -> JSONResponse:
    if isinstance(error, ChatNotFoundError):
        status = 404
    elif isinstance(error, ValueError):
        status = 400
    elif isinstance(error, AuthenticationError):
        status = 401
    elif isinstance(error, NotInitializedError):
        status = 503
    else:
        status = 500
    return JSONResponse(
        {"success": False, "error": type(error).__name__, "message": str(error)},
        status_code=status,
    )


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except json.JSONDecodeError as e:
        raise InvalidArgumentError(f"Invalid JSON body: {e}") from e
    if not isinstance(body, dict):
        raise InvalidArgumentError("JSON body must be an object")
    return body


@mcp.custom_route("/api/models", methods=["GET"])
async def api_models(request: Request) -> JSONResponse:
    return JSONResponse({"success": True, "data": list_models_data()})


@mcp.custom_route("/api/generate", methods=["POST"])
async def api_generate(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
        if not body.get("prompt"):
            raise InvalidArgumentError("prompt is required")
        data = await generate_data(
            body["prompt"], body.get("model"), body.get("cookies"), body.get("timeout")
        )
        return JSONResponse({"success": True, "data": data})
    except Exception as e:
        mcp_logger.error(f"Error in /api/generate: {e}")
        return _error_response(e)


@mcp.custom_route("/api/chat/start", methods=["POST"])
async def api_chat_start(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
        data = await chat_start_data(body.get("model"), body.get("cookies"), body.get("metadata"))
        return JSONResponse({"success": True, "data": data})
    except Exception as e:
        mcp_logger.error(f"Error in /api/chat/start: {e}")
        return _error_response(e)


@mcp.custom_route("/api/chat/message", methods=["POST"])
async def api_chat_message(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
        if not body.get("chat_id") or not body.get("message"):
            raise InvalidArgumentError("chat_id and message are required")
        data = await chat_send_data(body["chat_id"], body["message"], body.get("timeout"))
        return JSONResponse({"success": True, "data": data})
    except Exception as e:
        mcp_logger.error(f"Error in /api/chat/message: {e}")
        return _error_response(e)


@mcp.custom_route("/api/chat/choose", methods=["POST"])
async def api_chat_choose(request: Request) -> JSONResponse:
    try:
        body = await _json_body(request)
        if not body.get("chat_id") or not isinstance(body.get("index"), int):
            raise InvalidArgumentError("chat_id and integer index are required")
        data = await chat_choose_data(body["chat_id"], body["index"])
        return JSONResponse({"success": True, "data": data})
    except Exception as e:
        return _error_response(e)


@mcp.custom_route("/api/chat/sessions", methods=["GET"])
async def api_chat_sessions(request: Request) -> JSONResponse:
    return JSONResponse({"success": True, "data": chat_list_data()})


@mcp.custom_route("/api/chat/{chat_id}", methods=["DELETE"])
async def api_chat_end(request: Request) -> JSONResponse:
    try:
        data = await chat_end_data(request.path_params["chat_id"])
        return JSONResponse({"success": True, "data": data})
    except Exception as e:
        mcp_logger.error(f"Error in DELETE /api/chat: {e}")
        return _error_response(e)


def main():
    """Run the MCP server.

    Supports multiple transports:
    - stdio (default): For desktop apps like Claude Desktop
    - http: Streamable HTTP for network access (REST routes included)
    - sse: Legacy SSE transport (backwards compatibility)

    Configuration via CLI args or environment variables.
    """
    global _timeout, _refresh_interval, _proxy, _api_key

    parser = argparse.ArgumentParser(
        description="Gemini Web MCP Server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  GEMINI_SECURE_1PSID          __Secure-1PSID cookie for the shared client
  GEMINI_SECURE_1PSIDTS        __Secure-1PSIDTS cookie (optional)
  GEMINI_COOKIES               Full cookie header (alternative to the two above)
  GEMINI_PROXY                 HTTP proxy URL
  GEMINI_TIMEOUT               Request timeout in seconds (default: 300)
  GEMINI_REFRESH_INTERVAL      Cookie refresh interval in seconds (default: 540)
  GEMINI_WEB_MCP_CACHE_DIR     Cookie/rotation cache directory (default: ~/.gemini-web-mcp)
  GEMINI_MCP_TRANSPORT         Transport type (stdio, http, sse)
  GEMINI_MCP_HOST              Host to bind (default: 127.0.0.1)
  GEMINI_MCP_PORT              Port to listen on (default: 8000)
  GEMINI_MCP_PATH              MCP endpoint path (default: /mcp)
  GEMINI_MCP_STATELESS         Enable stateless mode for scaling (true/false)
  GEMINI_MCP_DEBUG             Enable debug logging for MCP + API traffic (true/false)
  GEMINI_API_KEY               Bearer API key required on HTTP requests

Examples:
  gemini-web-mcp                              # Default stdio transport
  gemini-web-mcp --transport http             # HTTP on localhost:8000
  gemini-web-mcp --transport http --port 3000 # HTTP on custom port
  gemini-web-mcp --debug                      # Log MCP calls + Gemini API traffic
  gemini-web-mcp --timeout 600                # Allow 10 minute generations
        """
    )

    parser.add_argument(
        "--transport", "-t",
        choices=["stdio", "http", "sse"],
        default=os.environ.get("GEMINI_MCP_TRANSPORT", "stdio"),
        help="Transport protocol (default: stdio)"
    )
    parser.add_argument(
        "--host", "-H",
        default=os.environ.get("GEMINI_MCP_HOST", "127.0.0.1"),
        help="Host to bind for HTTP/SSE (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=int(os.environ.get("GEMINI_MCP_PORT", "8000")),
        help="Port for HTTP/SSE transport (default: 8000)"
    )
    parser.add_argument(
        "--path",
        default=os.environ.get("GEMINI_MCP_PATH", "/mcp"),
        help="MCP endpoint path for HTTP (default: /mcp)"
    )
    parser.add_argument(
        "--stateless",
        action="store_true",
        default=os.environ.get("GEMINI_MCP_STATELESS", "").lower() == "true",
        help="Enable stateless mode for horizontal scaling"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=os.environ.get("GEMINI_MCP_DEBUG", "").lower() == "true",
        help="Enable debug logging (MCP tool calls + Gemini API requests/responses)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_timeout,
        help=f"Request timeout in seconds (default: {DEFAULT_TIMEOUT})"
    )
    parser.add_argument(
        "--refresh-interval",
        type=float,
        default=_refresh_interval,
        help=f"Cookie refresh interval in seconds (default: {DEFAULT_REFRESH_INTERVAL})"
    )
    parser.add_argument(
        "--proxy",
        default=_proxy,
        help="HTTP proxy URL (also via GEMINI_PROXY env var)"
    )
    parser.add_argument(
        "--api-key",
        default=_api_key,
        help="API key for authentication (also via GEMINI_API_KEY env var)"
    )
    args = parser.parse_args()

    _timeout = args.timeout
    _refresh_interval = args.refresh_interval
    _proxy = args.proxy
    _api_key = args.api_key

    if args.debug:
        logging.basicConfig(
            level=logging.WARNING,  # Suppress most logs
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))

        for name in ("gemini_web_mcp.mcp", "gemini_web_mcp.api", "gemini_web_mcp.session"):
            debug_logger = logging.getLogger(name)
            debug_logger.setLevel(logging.DEBUG)
            debug_logger.addHandler(handler)
            debug_logger.propagate = False

        print("Debug logging: ENABLED (MCP tool calls + Gemini API requests/responses)")

    if args.transport in ("http", "sse"):
        endpoint = args.path if args.transport == "http" else "/sse"
        print(f"Starting Gemini Web MCP server ({args.transport.upper()}) on http://{args.host}:{args.port}{endpoint}")
        print(f"Health check: http://{args.host}:{args.port}/health")
        if _api_key:
            print("API key authentication: ENABLED")
        else:
            print("WARNING: No API key set. Server is publicly accessible!")
            print("         Use --api-key or GEMINI_API_KEY to secure your server.")
        if args.stateless:
            print("Stateless mode: ENABLED (suitable for horizontal scaling)")

        if _api_key:
            import uvicorn

            if args.transport == "http":
                base_app = mcp.http_app(path=args.path, stateless_http=args.stateless)
            else:
                base_app = mcp.http_app(transport="sse")

            uvicorn.run(APIKeyAuthMiddleware(base_app), host=args.host, port=args.port)
        elif args.transport == "http":
            mcp.run(
                transport="http",
                host=args.host,
                port=args.port,
                path=args.path,
                stateless_http=args.stateless,
            )
        else:
            mcp.run(transport="sse", host=args.host, port=args.port)
    else:
        # Default: stdio transport (no message - stdio should be silent)
        mcp.run()

    return 0


if __name__ == "__main__":
    exit(main())
