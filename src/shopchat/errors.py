"""Exception hierarchy for the chat mediation layer.

Everything raised on purpose inherits from ShopChatError so the outer
handler can catch broad or specific failures.
"""

from __future__ import annotations

from typing import Any


class ShopChatError(Exception):
    """Base exception for all shopchat errors."""


class ConfigurationError(ShopChatError):
    """A required capability or setting is missing at construction time."""


class ToolValidationError(ShopChatError):
    """Unknown tool name or arguments that do not match the registered schema."""

    def __init__(self, tool: str, message: str):
        super().__init__(message)
        self.tool = tool


class TransientError(ShopChatError):
    """Failure worth retrying: network error, timeout, 5xx-equivalent."""


class FatalError(ShopChatError):
    """Failure that must not be retried."""


class ToolServiceError(ShopChatError):
    """Structured error reported by the tool-execution service.

    ``status`` is the HTTP status code when the failure came from the
    transport, or the ``status`` field of a structured ``{status, message}``
    error body.
    """

    def __init__(self, message: str, status: int | str | None = None, payload: Any = None):
        super().__init__(message)
        self.status = status
        self.payload = payload

    @property
    def is_transient(self) -> bool:
        """5xx, 429 and the service's own timeout/unavailable statuses are worth retrying."""
        if isinstance(self.status, str) and self.status.lower() in _TRANSIENT_STATUSES:
            return True
        code = _status_code(self.status)
        return code is not None and (code >= 500 or code in (408, 429))


class ToolTimeoutError(TransientError):
    """A single tool-execution attempt exceeded its timeout."""


class RetryExhaustedError(ShopChatError):
    """Every attempt failed with a transient error."""

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.last_error = last_error
        self.attempts = attempts


class ModelError(ShopChatError):
    """The language model call failed or timed out."""


class SessionClosedError(ShopChatError):
    """A turn was requested on a session that is closed or archived."""


class RateLimitedError(ShopChatError):
    """Too many turns for one session inside the rate-limit window."""


class StorageError(ShopChatError):
    """Durable storage failure that retrying will not fix (e.g. schema mismatch)."""


_TRANSIENT_STATUSES = frozenset({"timeout", "unavailable", "internal", "rate_limited"})


def _status_code(status: int | str | None) -> int | None:
    if isinstance(status, int):
        return status
    if isinstance(status, str) and status.isdigit():
        return int(status)
    return None
