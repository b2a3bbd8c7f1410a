"""Per-bucket outcomes of a sync pass and their logging."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .stores.base import EventStore

logger = logging.getLogger(__name__)


class BucketState(Enum):
    """Steps a bucket goes through during a pass."""

    DISCOVER = "discover"
    RESOLVE_DESTINATION = "resolve_destination"
    RESOLVE_CURSOR = "resolve_cursor"
    FETCH = "fetch"
    NORMALIZE = "normalize"
    SORT = "sort"
    COMMIT = "commit"
    REPORTED = "reported"


class BucketStatus(Enum):
    """Final status of a bucket in a pass."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class BucketOutcome:
    """What happened to one source bucket.

    `state` is the last step reached; for a failed bucket it is the step
    that failed.
    """

    source_bucket_id: str
    status: BucketStatus = BucketStatus.FAILED
    state: BucketState = BucketState.DISCOVER
    destination_bucket_id: str | None = None
    count_before: int | None = None
    count_after: int | None = None
    resumed_at: datetime | None = None
    fetched: int = 0
    error: str | None = None

    @property
    def delta(self) -> int | None:
        """New events in the destination, None if the bucket didn't finish."""
        if self.count_before is None or self.count_after is None:
            return None
        return self.count_after - self.count_before

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_bucket_id": self.source_bucket_id,
            "destination_bucket_id": self.destination_bucket_id,
            "status": self.status.value,
            "state": self.state.value,
            "count_before": self.count_before,
            "count_after": self.count_after,
            "delta": self.delta,
            "resumed_at": self.resumed_at.isoformat() if self.resumed_at else None,
            "fetched": self.fetched,
            "error": self.error,
        }


@dataclass
class PassReport:
    """Outcome of one source -> destination pass."""

    source: str
    destination: str
    outcomes: list[BucketOutcome] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: str | None = None  # pass-level failure, e.g. listing source buckets

    def _with_status(self, status: BucketStatus) -> list[BucketOutcome]:
        return [o for o in self.outcomes if o.status == status]

    @property
    def succeeded(self) -> list[BucketOutcome]:
        return self._with_status(BucketStatus.SUCCESS)

    @property
    def failed(self) -> list[BucketOutcome]:
        return self._with_status(BucketStatus.FAILED)

    @property
    def cancelled(self) -> list[BucketOutcome]:
        return self._with_status(BucketStatus.CANCELLED)

    @property
    def total_delta(self) -> int:
        return sum(o.delta or 0 for o in self.succeeded)

    @property
    def ok(self) -> bool:
        """True when the pass itself and every bucket succeeded."""
        return self.error is None and len(self.succeeded) == len(self.outcomes)

    def outcome(self, source_bucket_id: str) -> BucketOutcome | None:
        for o in self.outcomes:
            if o.source_bucket_id == source_bucket_id:
                return o
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "destination": self.destination,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "total_delta": self.total_delta,
            "buckets": [o.to_dict() for o in self.outcomes],
        }


def log_report(report: PassReport) -> None:
    """Log one line per bucket plus a summary."""
    if report.error:
        logger.error(f"Sync {report.source} -> {report.destination} failed: {report.error}")
        return

    for o in report.outcomes:
        if o.status == BucketStatus.SUCCESS:
            logger.info(
                f" - {o.source_bucket_id} -> {o.destination_bucket_id}: "
                f"{o.delta} new events ({o.count_after} total)"
            )
        else:
            logger.warning(
                f" - {o.source_bucket_id}: {o.status.value} at {o.state.value}: {o.error}"
            )

    logger.info(
        f"Synced {report.source} -> {report.destination}: "
        f"{report.total_delta} new events, "
        f"{len(report.succeeded)} ok, {len(report.failed)} failed, "
        f"{len(report.cancelled)} cancelled"
    )


async def log_buckets(store: EventStore) -> dict[str, int]:
    """Log every bucket in a store with its event count.

    Returns:
        Mapping of bucket id to event count.
    """
    buckets = await store.list_buckets()
    counts: dict[str, int] = {}

    logger.info(f"Buckets in {store.descriptor}:")
    for bucket_id in sorted(buckets):
        counts[bucket_id] = await store.count_events(bucket_id)
        logger.info(f" - {bucket_id}")
        logger.info(f"   eventcount: {counts[bucket_id]}")

    return counts
