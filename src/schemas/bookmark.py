"""Pydantic schemas for bookmarks."""
import re
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from core.config import get_settings

# Optimistic records carry a client-generated id with this prefix until
# the server-assigned id arrives.
PLACEHOLDER_ID_PREFIX = "temp-"

DEFAULT_URL_SCHEME = "https://"
_SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)


def normalize_url(url: str) -> str:
    """
    Trim a URL and prepend the default scheme when none is present.

    Args:
        url: The user-entered URL (e.g. 'example.com').

    Returns:
        The normalized URL (e.g. 'https://example.com').
    """
    trimmed = url.strip()
    if not trimmed or _SCHEME_PATTERN.match(trimmed):
        return trimmed
    return f"{DEFAULT_URL_SCHEME}{trimmed}"


def validate_title(title: str | None) -> str:
    """Validate that a title is present and doesn't exceed maximum length."""
    settings = get_settings()
    trimmed = (title or "").strip()
    if not trimmed:
        raise ValueError("Title and URL are required!")
    if len(trimmed) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(trimmed):,} characters).",
        )
    return trimmed


def validate_url(url: str | None) -> str:
    """Validate that a URL is present, normalize it, and check its length."""
    settings = get_settings()
    normalized = normalize_url(url or "")
    if not normalized:
        raise ValueError("Title and URL are required!")
    if len(normalized) > settings.max_url_length:
        raise ValueError(
            f"URL exceeds maximum length of {settings.max_url_length:,} characters "
            f"(got {len(normalized):,} characters).",
        )
    return normalized


def is_placeholder_id(bookmark_id: str) -> bool:
    """Check whether an id belongs to an optimistic, unconfirmed record."""
    return bookmark_id.startswith(PLACEHOLDER_ID_PREFIX)


class Bookmark(BaseModel):
    """
    A bookmark as held in the client collection.

    Confirmed records come from storage or the change feed; optimistic
    records are built locally with a placeholder id.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    title: str
    url: str
    user_id: str | None = None
    created_at: datetime | None = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def coerce_identifier(cls, v: Any) -> Any:
        """Accept integer and UUID identifiers from storage as strings."""
        if v is None or isinstance(v, str):
            return v
        return str(v)

    @property
    def is_placeholder(self) -> bool:
        """True for optimistic records that have not been confirmed yet."""
        return is_placeholder_id(self.id)


class BookmarkCreate(BaseModel):
    """Schema for user input when creating a bookmark."""

    title: str
    url: str

    @field_validator("title", mode="before")
    @classmethod
    def check_title(cls, v: str | None) -> str:
        """Trim and validate the title."""
        return validate_title(v)

    @field_validator("url", mode="before")
    @classmethod
    def check_url(cls, v: str | None) -> str:
        """Trim, normalize, and validate the URL."""
        return validate_url(v)

    def to_record(self, user_id: str) -> dict[str, str]:
        """Build the storage insert payload for the given owner."""
        return {"title": self.title, "url": self.url, "user_id": user_id}
