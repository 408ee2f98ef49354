"""Session and connection state types for the sync controller."""
from dataclasses import dataclass
from enum import StrEnum


class AuthStatus(StrEnum):
    """Authentication state of the client session."""

    LOGGING_IN = "logging_in"
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    LOGGING_OUT = "logging_out"


class SubscriptionStatus(StrEnum):
    """State of the change-feed subscription while authenticated."""

    IDLE = "idle"  # No subscription (logged out)
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True)
class SessionUser:
    """
    Authenticated principal for the current session.

    Built from the auth service's user payload; only the fields the client
    needs to scope queries and display the account are kept.
    """

    id: str
    email: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "SessionUser":
        """Build a SessionUser from an auth service user object."""
        return cls(id=str(payload["id"]), email=payload.get("email"))
