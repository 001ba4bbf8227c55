"""
Typed change events.

Raw change-feed payloads are loosely typed dictionaries
(``{"schema", "table", "eventType", "new", "old", "commit_timestamp"}``).
They are narrowed into an immutable ChangeEvent as soon as they are received;
nothing past the router sees the raw form.
"""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping


class MalformedEventError(ValueError):
    """Raised when a raw change payload cannot be narrowed into a ChangeEvent."""


class Operation(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


_EMPTY: Mapping[str, Any] = MappingProxyType({})


@dataclass(frozen=True)
class ChangeEvent:
    """A single row change delivered by the change feed."""
    table: str
    operation: Operation
    payload: Mapping[str, Any] = field(default_factory=lambda: _EMPTY)
    old_record: Mapping[str, Any] | None = None
    received_at: float = field(default_factory=time.time)
    topic: str | None = None

    @property
    def record_id(self) -> str | None:
        """Stable identity of the changed row, used as the dedup key."""
        value = self.payload.get("id")
        if value is None and self.old_record is not None:
            value = self.old_record.get("id")
        return str(value) if value is not None else None

    @classmethod
    def from_raw(cls, raw: Any, topic: str | None = None) -> ChangeEvent:
        if not isinstance(raw, Mapping):
            raise MalformedEventError(f"payload is not an object: {type(raw).__name__}")

        table = raw.get("table")
        if not isinstance(table, str) or not table:
            raise MalformedEventError("missing table")

        event_type = raw.get("eventType", raw.get("type"))
        try:
            operation = Operation(str(event_type).upper())
        except ValueError:
            raise MalformedEventError(f"unknown event type: {event_type!r}") from None

        new = raw.get("new") or {}
        old = raw.get("old")
        if not isinstance(new, Mapping):
            raise MalformedEventError("'new' is not an object")
        if old is not None and not isinstance(old, Mapping):
            raise MalformedEventError("'old' is not an object")
        if operation is not Operation.DELETE and not new:
            raise MalformedEventError(f"{operation.value} without a new record")

        return cls(
            table=table,
            operation=operation,
            payload=MappingProxyType(dict(new)),
            old_record=MappingProxyType(dict(old)) if old else None,
            topic=topic,
        )
