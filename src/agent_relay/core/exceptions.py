"""Exception hierarchy shared by the relay core and its integrations."""

from __future__ import annotations

from typing import Optional


class RelayError(Exception):
    """Base error for all agent-relay failures."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(RelayError):
    """Failure that may succeed when retried (disconnects, busy sinks)."""

    recoverable = True
    severity = "warning"


class PermanentError(RelayError):
    """Failure that will not go away by retrying."""

    recoverable = False
    severity = "error"


class ConfigError(PermanentError):
    """Raised when the relay configuration is invalid or unreadable."""


class QueueCancelled(RelayError):
    """The current turn or wait was canceled. Normal control flow."""

    severity = "info"

    def __init__(self, message: str = "Canceled") -> None:
        super().__init__(message, user_message="Aborted by user")


class AdapterError(RelayError):
    """Base error raised by agent adapters."""


class AdapterStartFailed(AdapterError, PermanentError):
    """The backend could not be started (missing binary, spawn failure)."""

    def __init__(self, message: str) -> None:
        super().__init__(
            message, user_message=f"Failed to start the agent: {message}"
        )


class AdapterStreamError(AdapterError, TransientError):
    """The backend failed mid-turn."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None) -> None:
        super().__init__(message, user_message="Process exited unexpectedly")
        self.exit_code = exit_code


class DuplicateCallId(PermanentError):
    """A permission request reused a call id that is still pending."""

    def __init__(self, call_id: str) -> None:
        super().__init__(f"Permission request {call_id!r} is already pending")
        self.call_id = call_id


class SinkDeliveryError(TransientError):
    """The outbound sink could not accept an event right now."""


__all__ = [
    "AdapterError",
    "AdapterStartFailed",
    "AdapterStreamError",
    "ConfigError",
    "DuplicateCallId",
    "PermanentError",
    "QueueCancelled",
    "RelayError",
    "SinkDeliveryError",
    "TransientError",
]
