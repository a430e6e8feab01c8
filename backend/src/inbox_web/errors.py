from __future__ import annotations


class InboxError(Exception):
    """Base class for errors raised by inbox services."""


class ValidationError(InboxError):
    """Raised when input is malformed or a requested transition is not allowed."""


class NotFoundError(InboxError, KeyError):
    """Raised when an operation references a conversation or message that does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class PermissionDeniedError(InboxError):
    """Raised when an agent's role does not allow the requested action."""


class WindowClosedError(InboxError):
    """Raised when a freeform send is attempted outside the customer session window."""

    def __init__(self, conversation_id: str, reason: str) -> None:
        super().__init__(f"24-hour window closed for conversation {conversation_id}; use a template reply")
        self.conversation_id = conversation_id
        self.reason = reason


class ProviderError(InboxError):
    """Raised by provider clients when the messaging API rejects or never answers a request."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message


class InternalError(InboxError):
    """Raised for unexpected faults; callers may retry at their discretion."""


class DuplicateEventError(InboxError):
    """Raised when a second SUCCESS ledger entry is written for the same event key."""

    def __init__(self, idempotency_key: str, event_type: str) -> None:
        super().__init__(f"event already processed: {event_type}:{idempotency_key}")
        self.idempotency_key = idempotency_key
        self.event_type = event_type
