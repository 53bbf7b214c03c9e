"""Error taxonomy for the conversation engine.

Only :class:`ValidationError` escapes ``handle_message``. Eligibility, billing
and backend errors are turned into structured results; filter, persistence
and audit errors are logged where they happen and never reach the caller.
"""

from __future__ import annotations


class ChatgateError(Exception):
    """Base class for all engine errors."""

    default_user_message = "There was an error processing your message. Please try again."

    def __init__(self, message: str, user_message: str | None = None) -> None:
        self.user_message = user_message or self.default_user_message
        super().__init__(message)


class ValidationError(ChatgateError):
    """Malformed request. Raised before any side effect."""

    default_user_message = "That request could not be understood. Please check it and try again."


class EligibilityError(ChatgateError):
    """The user has not satisfied the age gate for the requested content."""

    default_user_message = (
        "Age verification required: this topic is only available to verified 21+ members. "
        "Please verify your age with a moderator."
    )

    def __init__(self, message: str, reason: str = "", user_message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message, user_message)


class BillingError(ChatgateError):
    """Insufficient credit. Raised before any generation call."""

    default_user_message = "Insufficient credits to use the AI assistant. Earn more and try again."

    def __init__(
        self,
        message: str,
        balance: int = 0,
        required: int = 0,
        user_message: str | None = None,
    ) -> None:
        self.balance = balance
        self.required = required
        super().__init__(message, user_message)


_BACKEND_USER_MESSAGES: dict[str, str] = {
    "quota_exceeded": "The AI service has reached its usage limit. Please try again later.",
    "rate_limited": "The AI service is busy. Please wait a moment before sending another message.",
    "invalid_credential": (
        "The AI service credential was rejected. If you use your own API key, please update it."
    ),
    "timeout": "The AI service took too long to answer. Please try again shortly.",
}


class BackendError(ChatgateError):
    """A backend call failed.

    ``code`` is one of ``rate_limited``, ``quota_exceeded``,
    ``invalid_credential``, ``timeout``, ``run_failed``, ``empty_response``
    or ``unknown``.
    """

    default_user_message = (
        "The AI service is temporarily unavailable. Please try again in a few minutes."
    )

    def __init__(self, message: str, code: str = "unknown", user_message: str | None = None) -> None:
        self.code = code
        super().__init__(message, user_message or _BACKEND_USER_MESSAGES.get(code))


class FilterError(ChatgateError):
    """Internal compliance-filter failure. Never surfaced to users."""


class PersistenceError(ChatgateError):
    """A repository or audit write failed. Logged, never blocks a response."""
