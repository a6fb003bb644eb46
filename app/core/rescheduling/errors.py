"""Exceptions raised by the rescheduling engine."""

from typing import Optional


class ReschedulingError(Exception):
    """Base class for rescheduling engine errors."""
    pass


class RequestValidationFailed(ReschedulingError):
    """Raised when a rescheduling request is missing required data."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class InvalidTransitionError(ReschedulingError):
    """Raised when a stage change would move a request backwards."""
    pass


class StorageError(ReschedulingError):
    """Raised when the storage backend cannot be reached or fails.

    Not handled by the workflow engine: it propagates to the caller.
    """
    pass


class CalendarProviderError(ReschedulingError):
    """Raised when an external calendar provider call fails."""

    def __init__(self, message: str, provider: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class NotificationDeliveryError(ReschedulingError):
    """Raised by a channel adapter when a message cannot be delivered."""

    def __init__(self, message: str, channel: str):
        super().__init__(message)
        self.channel = channel
