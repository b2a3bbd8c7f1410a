"""Bucket and event records exchanged between event stores."""

import copy
import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from jsonschema import Draft7Validator

from .errors import MalformedRecord

BUCKET_SCHEMA = {
    "type": "object",
    "required": ["id", "type", "hostname", "client"],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "type": {"type": "string"},
        "hostname": {"type": "string"},
        "client": {"type": "string"},
        "metadata": {"type": "object"},
        "created": {"type": ["string", "null"]},
    },
}

EVENT_SCHEMA = {
    "type": "object",
    "required": ["timestamp", "duration", "data"],
    "properties": {
        "id": {"type": ["string", "integer", "null"]},
        "timestamp": {"type": "string", "minLength": 1},
        "duration": {"type": "number", "minimum": 0},
        "data": {"type": "object"},
    },
}

_bucket_validator = Draft7Validator(BUCKET_SCHEMA)
_event_validator = Draft7Validator(EVENT_SCHEMA)

# Python's isoformat parser stops at microseconds
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime.

    Naive timestamps are assumed to be UTC.
    """
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(r"\1", text)
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an RFC 3339 UTC string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _validate(validator: Draft7Validator, data: Any, kind: str) -> None:
    errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
    if not errors:
        return

    messages = []
    for error in errors:
        path = ".".join(str(p) for p in error.path) if error.path else "root"
        messages.append(f"{path}: {error.message}")
    raise MalformedRecord(f"Malformed {kind}: " + "; ".join(messages), data)


@dataclass
class Bucket:
    """A named event log belonging to one device."""

    id: str
    type: str
    hostname: str
    client: str
    metadata: dict[str, Any] = field(default_factory=dict)
    created: datetime | None = None

    def copy_as(self, bucket_id: str) -> "Bucket":
        """Return a deep copy of this bucket under another id."""
        return replace(
            self,
            id=bucket_id,
            metadata=copy.deepcopy(self.metadata),
            created=None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "type": self.type,
            "hostname": self.hostname,
            "client": self.client,
            "metadata": self.metadata,
            "created": format_timestamp(self.created) if self.created else None,
        }

    @classmethod
    def from_dict(cls, data: Any) -> "Bucket":
        """Create from dictionary, raising MalformedRecord on bad shape."""
        _validate(_bucket_validator, data, "bucket")
        try:
            created = parse_timestamp(data["created"]) if data.get("created") else None
        except ValueError as e:
            raise MalformedRecord(f"Malformed bucket: created: {e}", data) from e

        return cls(
            id=data["id"],
            type=data["type"],
            hostname=data["hostname"],
            client=data["client"],
            metadata=dict(data.get("metadata") or {}),
            created=created,
        )


@dataclass
class Event:
    """One timestamped record in a bucket."""

    timestamp: datetime
    duration: timedelta = field(default_factory=timedelta)
    data: dict[str, Any] = field(default_factory=dict)
    id: str | None = None  # store-local, never carried across stores

    def __post_init__(self) -> None:
        if self.timestamp.tzinfo is None:
            self.timestamp = self.timestamp.replace(tzinfo=timezone.utc)
        if self.duration < timedelta(0):
            raise MalformedRecord(f"Negative duration: {self.duration}", self)

    @property
    def end(self) -> datetime:
        """The instant this event ends."""
        return self.timestamp + self.duration

    @property
    def identity(self) -> tuple:
        """Cross-store identity: content, never the store-local id."""
        return (self.timestamp, self.duration, _freeze(self.data))

    def stripped(self) -> "Event":
        """Return a transfer-ready copy without the store-local id."""
        return replace(self, id=None, data=copy.deepcopy(self.data))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        result: dict[str, Any] = {
            "timestamp": format_timestamp(self.timestamp),
            "duration": self.duration.total_seconds(),
            "data": self.data,
        }
        if self.id is not None:
            result["id"] = self.id
        return result

    @classmethod
    def from_dict(cls, data: Any) -> "Event":
        """Create from dictionary, raising MalformedRecord on bad shape."""
        _validate(_event_validator, data, "event")
        try:
            timestamp = parse_timestamp(data["timestamp"])
        except ValueError as e:
            raise MalformedRecord(f"Malformed event: timestamp: {e}", data) from e

        event_id = data.get("id")
        return cls(
            id=str(event_id) if event_id is not None else None,
            timestamp=timestamp,
            duration=timedelta(seconds=data["duration"]),
            data=dict(data["data"]),
        )


def _freeze(value: Any) -> Any:
    """Make a JSON value hashable for identity comparisons."""
    if isinstance(value, dict):
        return tuple(sorted((k, _freeze(v)) for k, v in value.items()))
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value
