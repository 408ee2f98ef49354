"""Schemas for row-level change notifications delivered by the change feed."""
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Row event names used by the database's change stream, mapped to our kinds
_EVENT_TYPE_ALIASES = {
    "INSERT": "created",
    "UPDATE": "updated",
    "DELETE": "deleted",
}


class ChangeKind(StrEnum):
    """Kind of row-level change."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class ChangeEvent(BaseModel):
    """
    A change notification for one bookmark row.

    Accepts both the database's wire format (`eventType` of INSERT/UPDATE/DELETE)
    and our own kind names. `new` is set for created/updated events, `old` for
    deleted events (it may carry only the primary key).
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: ChangeKind = Field(validation_alias="eventType")
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        """Map database event names (INSERT, UPDATE, DELETE) to change kinds."""
        if isinstance(v, str):
            return _EVENT_TYPE_ALIASES.get(v.upper(), v.lower())
        return v

    @field_validator("new", "old", mode="before")
    @classmethod
    def empty_record_to_none(cls, v: Any) -> Any:
        """The database sends `{}` for the absent side of an event."""
        if v == {}:
            return None
        return v

    @property
    def record(self) -> dict[str, Any] | None:
        """The record the event refers to (`old` for deletes, otherwise `new`)."""
        if self.kind is ChangeKind.DELETED:
            return self.old or self.new
        return self.new

    @property
    def record_id(self) -> str | None:
        """Id of the affected row, as a string."""
        record = self.record
        if not record or record.get("id") is None:
            return None
        return str(record["id"])

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the wire format used by the change feed."""
        event_type = {v: k for k, v in _EVENT_TYPE_ALIASES.items()}[self.kind.value]
        return {"eventType": event_type, "new": self.new or {}, "old": self.old or {}}
