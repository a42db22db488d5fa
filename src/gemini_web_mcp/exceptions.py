"""Error types raised by the Gemini web client."""


class GeminiError(Exception):
    """Base class for all client errors."""


class InvalidArgumentError(GeminiError, ValueError):
    """Raised for caller mistakes: empty prompt, bad metadata, bad index."""


class IndexOutOfRangeError(InvalidArgumentError, IndexError):
    """Raised when a candidate index is outside the last result."""


class NotInitializedError(GeminiError):
    """Raised when a request is made before the session is ready."""


class NoPriorResultError(GeminiError):
    """Raised when choosing a candidate before any successful turn."""


class AuthenticationError(GeminiError):
    """Raised when cookies or the access token are rejected (HTTP 401/403)."""


class TransportError(GeminiError):
    """Raised for non-auth HTTP failures, connection errors and timeouts."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ParseError(GeminiError):
    """Raised when a response does not have the expected shape."""

    def __init__(self, message: str, code: int | None = None):
        super().__init__(message)
        self.code = code
