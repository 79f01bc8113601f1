"""Exception types raised across the chat pipeline."""

from __future__ import annotations


class OnboardingError(Exception):
    """Base class for errors with a short, user-presentable message."""

    user_message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(OnboardingError):
    user_message = "Please check your input and try again."


class NotFoundError(OnboardingError):
    """Resource is missing or belongs to another user; reported as 404 either way."""

    user_message = "Conversation not found or access denied."


class PersistenceError(OnboardingError):
    user_message = "I'm having trouble saving your conversation. Please try again in a moment."


class UpstreamError(OnboardingError):
    """Failure reported by the language model backend. Never leaves the gateway."""

    def __init__(self, kind: str, message: str) -> None:
        super().__init__(message)
        self.kind = kind
