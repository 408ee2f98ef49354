"""Shared exceptions for bookmark sync operations."""


class BookmarkSyncError(Exception):
    """Base class for errors surfaced by the sync controller."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class BookmarkValidationError(BookmarkSyncError):
    """
    Raised when bookmark input fails validation.

    No remote call is made when this is raised.
    """

    def __init__(self, message: str, field: str | None = None) -> None:
        self.field = field
        super().__init__(message)


class AuthError(BookmarkSyncError):
    """Raised when session resolution, login, or logout fails."""


class RequestError(BookmarkSyncError):
    """
    Raised when a storage request (fetch, insert, delete) fails.

    `category` mirrors the categories in shared.api_errors so callers can
    distinguish auth failures from validation or server errors.
    """

    def __init__(self, message: str, category: str = "internal") -> None:
        self.category = category
        super().__init__(message)


class SubscriptionError(BookmarkSyncError):
    """Raised when a change-feed subscription cannot be opened."""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        super().__init__(f"Subscription to '{channel}' failed: {reason}")
