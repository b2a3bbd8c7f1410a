"""The capability contract shared by every event store backend."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, TypeVar

from ..errors import MalformedRecord
from ..models import Bucket, Event

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventStore(ABC):
    """Abstract base for bucket/event stores.

    Implemented by the embedded SQLite datastore and by the HTTP client to a
    remote event-store service, so the sync engine never needs to know which
    one it is talking to. Concurrent calls on different bucket ids must not
    interfere with each other.

    Every operation may raise BackendError on transport or storage failure.
    """

    @property
    @abstractmethod
    def descriptor(self) -> str:
        """Short human-readable identifier used in logs and reports."""
        pass

    @abstractmethod
    async def list_buckets(self) -> dict[str, Bucket]:
        """Get all buckets keyed by id.

        Malformed bucket records are logged and left out.
        """
        pass

    @abstractmethod
    async def get_bucket(self, bucket_id: str) -> Bucket:
        """Get a single bucket.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        pass

    @abstractmethod
    async def create_bucket(self, bucket: Bucket) -> None:
        """Durably create a bucket.

        Raises:
            BucketAlreadyExists: If the id is already taken.
        """
        pass

    @abstractmethod
    async def get_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        """Get events with start <= timestamp < end, oldest first.

        Args:
            bucket_id: Bucket to read from.
            start: Inclusive lower bound, unbounded if None.
            end: Exclusive upper bound, unbounded if None.
            limit: Keep only the newest `limit` events. limit=1 returns
                the single most recent event.

        Raises:
            NoSuchBucket: If the bucket does not exist.
        """
        pass

    @abstractmethod
    async def insert_events(self, bucket_id: str, events: list[Event]) -> None:
        """Insert events without merging.

        An event carrying an id replaces the stored event with that id.
        """
        pass

    @abstractmethod
    async def heartbeat(
        self, bucket_id: str, event: Event, pulsetime: float
    ) -> Event:
        """Merge-write an event.

        If the latest event has the same data and the new event starts
        within [latest.timestamp, latest.end + pulsetime], the latest event
        is extended to cover the new one and returned. Otherwise the new
        event is inserted and returned.
        """
        pass

    @abstractmethod
    async def count_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        """Count events with start <= timestamp < end."""
        pass

    async def close(self) -> None:
        """Release connection resources."""

    def __repr__(self) -> str:
        return self.descriptor


def merge_heartbeat(last: Event, event: Event, pulsetime: float) -> Event | None:
    """Return `last` extended to cover `event`, or None if they don't merge."""
    if last.data != event.data:
        return None
    if event.timestamp < last.timestamp:
        return None
    if event.timestamp > last.end + timedelta(seconds=pulsetime):
        return None

    new_end = max(last.end, event.end)
    return Event(
        id=last.id,
        timestamp=last.timestamp,
        duration=new_end - last.timestamp,
        data=last.data,
    )


def parse_records(
    records: Iterable[Any],
    parser: Callable[[Any], T],
    source: str,
) -> list[T]:
    """Parse raw records, logging and skipping malformed ones."""
    parsed = []
    for record in records:
        try:
            parsed.append(parser(record))
        except MalformedRecord as e:
            logger.warning(f"Skipping malformed record from {source}: {e} ({record!r})")
    return parsed
