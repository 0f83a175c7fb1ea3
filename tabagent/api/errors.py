"""Error taxonomy for the conversation loop.

Only transport failures and token overflow are recoverable (one local
retry each). Cancellation is cooperative and not an error in the usual
sense; it still travels as an exception so every suspension point can
short-circuit the same way.
"""

from __future__ import annotations

# Substrings the API uses when the prompt no longer fits the context window
_OVERFLOW_MARKERS = ("too long", "maximum", "tokens")


class TaskCancelled(Exception):
    """The tab's cancel signal was set while the task was in flight."""

    def __init__(self, tab_id: str | None = None) -> None:
        super().__init__(f"Task cancelled (tab={tab_id})")
        self.tab_id = tab_id


class TransportError(RuntimeError):
    """Network-level failure reaching the model API (connect, read, timeout)."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Network error: {message}")


class ApiError(RuntimeError):
    """Non-200 response from the model API."""

    def __init__(self, message: str, status_code: int | None = None, error_type: str = "") -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_type = error_type


class ContextOverflowError(ApiError):
    """The request exceeded the model's context window."""


class ModelStreamError(RuntimeError):
    """In-stream error event (HTTP 200 but an error in the SSE body).

    The stream_error notification has already been forwarded when this
    is raised, so the task boundary must not emit another one.
    """

    notified = True

    def __init__(self, error_type: str, message: str) -> None:
        super().__init__(f"{error_type}: {message}")
        self.error_type = error_type


def is_token_overflow(error: BaseException) -> bool:
    if isinstance(error, ContextOverflowError):
        return True
    if isinstance(error, (TaskCancelled, TransportError)):
        return False
    message = str(error).lower()
    return any(marker in message for marker in _OVERFLOW_MARKERS)


def is_network_error(error: BaseException) -> bool:
    return isinstance(error, TransportError)
