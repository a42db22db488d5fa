"""
Constants and mappings for the Gemini web API.

This module acts as the Single Source of Truth for endpoints, fixed headers,
the model catalogue, backend error codes and the positional-payload patterns.
It decouples data definitions from the client logic and presentation layer.
"""

import re
from enum import Enum


# =============================================================================
# Endpoints
# =============================================================================
GOOGLE_URL = "https://www.google.com"
INIT_URL = "https://gemini.google.com/app"
GENERATE_URL = (
    "https://gemini.google.com/_/BardChatUi/data/"
    "assistant.lamda.BardFrontendService/StreamGenerate"
)
ROTATE_COOKIES_URL = "https://accounts.google.com/RotateCookies"
LOGIN_HOST = "accounts.google.com"

# =============================================================================
# Headers
# =============================================================================
GEMINI_HEADERS = {
    "Content-Type": "application/x-www-form-urlencoded;charset=utf-8",
    "Host": "gemini.google.com",
    "Origin": "https://gemini.google.com",
    "Referer": "https://gemini.google.com/",
    "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "X-Same-Domain": "1",
}

ROTATE_COOKIES_HEADERS = {
    "Content-Type": "application/json",
}

# Fixed body the accounts endpoint expects for a rotation request
ROTATE_COOKIES_BODY = '[000,"-0000000000000000000"]'

MODEL_HEADER_KEY = "x-goog-ext-525001261-jspb"

# =============================================================================
# Cookies
# =============================================================================
IDENTITY_COOKIE = "__Secure-1PSID"
ROTATING_COOKIE = "__Secure-1PSIDTS"

# The rotation endpoint answers 429 when hit more than once a minute
ROTATION_DEBOUNCE_SECONDS = 60.0

DEFAULT_TIMEOUT = 300.0
DEFAULT_REFRESH_INTERVAL = 540.0


# =============================================================================
# Models
# =============================================================================
class Model(Enum):
    """Closed set of selectable models.

    Each member carries its display name and the opaque capability tag sent
    in the ``x-goog-ext-525001261-jspb`` header (None for the server default).
    """

    UNSPECIFIED = ("unspecified", None)
    G_2_5_FLASH = (
        "gemini-2.5-flash",
        '[1,null,null,null,"71c2d248d3b102ff",null,null,0,[4]]',
    )
    G_2_5_PRO = (
        "gemini-2.5-pro",
        '[1,null,null,null,"4af6c7f5da75d65d",null,null,0,[4]]',
    )
    G_2_0_FLASH = (
        "gemini-2.0-flash",
        '[1,null,null,null,"f299729663a2343f"]',
    )

    def __init__(self, model_name: str, header_value: str | None):
        self.model_name = model_name
        self.header_value = header_value

    @property
    def headers(self) -> dict[str, str]:
        if self.header_value is None:
            return {}
        return {MODEL_HEADER_KEY: self.header_value}

    @classmethod
    def names(cls) -> list[str]:
        return [m.model_name for m in cls]

    @classmethod
    def from_name(cls, name: "str | Model") -> "Model":
        """Resolve a display name (case-insensitive) to a model.

        Raises:
            ValueError: If the name is unknown.
        """
        if isinstance(name, cls):
            return name
        for model in cls:
            if model.model_name == str(name).lower():
                return model
        raise ValueError(f"Unknown model '{name}'. Must be one of: {', '.join(cls.names())}")


DEFAULT_MODEL = Model.G_2_5_FLASH

# =============================================================================
# Backend error codes (found in the envelope when no body is returned)
# =============================================================================
ERROR_USAGE_LIMIT_EXCEEDED = 1037
ERROR_MODEL_INCONSISTENT = 1050
ERROR_MODEL_HEADER_INVALID = 1052
ERROR_IP_TEMPORARILY_BLOCKED = 1060

ERROR_CODES: dict[int, str] = {
    ERROR_USAGE_LIMIT_EXCEEDED: "usage_limit_exceeded",
    ERROR_MODEL_INCONSISTENT: "model_inconsistent",
    ERROR_MODEL_HEADER_INVALID: "model_header_invalid",
    ERROR_IP_TEMPORARILY_BLOCKED: "ip_temporarily_blocked",
}

# =============================================================================
# Payload patterns
# =============================================================================
ACCESS_TOKEN_PATTERN = re.compile(r'"SNlM0e":"(.*?)"')
ROTATING_COOKIE_PATTERN = re.compile(rf"{re.escape(ROTATING_COOKIE)}=([^;]+)")
SET_COOKIE_PATTERN = re.compile(r"([^=;\s]+)=([^;]*)")
CARD_CONTENT_PATTERN = re.compile(r"^http://googleusercontent\.com/card_content/\d+")
IMMERSIVE_CHIP_PATTERN = re.compile(r"http://googleusercontent\.com/immersive_entry_chip/\d+")
FENCED_CODE_PATTERN = re.compile(r"```(\w+)?\n([\s\S]*?)```")

# =============================================================================
# File attachments
# =============================================================================
DEFAULT_ATTACHMENT_NAME = "file.txt"
DEFAULT_MIME_TYPE = "text/plain"

MIME_TYPES = {
    # Programming languages
    "js": "text/javascript",
    "ts": "text/typescript",
    "py": "text/x-python",
    "cpp": "text/x-c++",
    "c": "text/x-c",
    "h": "text/x-c",
    "hpp": "text/x-c++",
    "java": "text/x-java",
    "cs": "text/x-csharp",
    "php": "text/x-php",
    "rb": "text/x-ruby",
    "go": "text/x-go",
    "rs": "text/x-rust",
    "swift": "text/x-swift",
    "kt": "text/x-kotlin",
    # Web
    "html": "text/html",
    "css": "text/css",
    "json": "application/json",
    "xml": "application/xml",
    # Shell
    "sh": "application/x-sh",
    "bash": "application/x-sh",
    # Text
    "txt": "text/plain",
    "md": "text/markdown",
    # Other
    "sql": "application/sql",
    "yaml": "text/yaml",
    "yml": "text/yaml",
}


def detect_mime_type(file_name: str | None) -> str:
    """Guess a MIME type from the file extension."""
    if not file_name:
        return DEFAULT_MIME_TYPE
    ext = file_name.rsplit(".", 1)[-1].lower()
    return MIME_TYPES.get(ext, DEFAULT_MIME_TYPE)
