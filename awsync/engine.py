"""One-directional sync of every bucket of one store into another.

A pass mirrors each source bucket into a namespaced bucket in the
destination ("<id>-synced-from-<hostname>"), fetching only the events newer
than what the destination already holds and writing them in chronological
order through heartbeat. A pass keeps no state of its own: re-running it
after a crash resumes from the destination's contents.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Iterable

from .config import SyncConfig
from .cursor import resume_point
from .errors import PassCancelled, SyncError
from .mapper import resolve_destination_bucket
from .models import Bucket, Event
from .report import BucketOutcome, BucketState, BucketStatus, PassReport, log_report
from .stores.base import EventStore

logger = logging.getLogger(__name__)

# Mirrored events are written as-is, never coalesced
MERGE_WINDOW = 0.0


def _check_stop(stop_event: asyncio.Event | None) -> None:
    if stop_event is not None and stop_event.is_set():
        raise PassCancelled("pass cancelled")


class SyncEngine:
    """Runs sync passes between event stores.

    Buckets are processed concurrently, bounded by `workers` across every
    pass this engine runs. Writes to the same destination bucket are
    serialized even when they come from concurrent passes.
    """

    def __init__(
        self,
        workers: int = 4,
        bucket_timeout: float | None = 300.0,
    ):
        """Initialize the engine.

        Args:
            workers: Maximum buckets synced at the same time.
            bucket_timeout: Seconds before a single bucket is given up on,
                None to wait indefinitely.
        """
        if workers < 1:
            raise ValueError(f"workers must be at least 1, got {workers}")

        self.workers = workers
        self.bucket_timeout = bucket_timeout
        self._semaphore = asyncio.Semaphore(workers)
        self._bucket_locks: dict[tuple[str, str], asyncio.Lock] = {}

    @classmethod
    def from_config(cls, config: SyncConfig) -> "SyncEngine":
        return cls(
            workers=config.workers,
            bucket_timeout=config.bucket_timeout_seconds,
        )

    def _bucket_lock(self, destination: EventStore, bucket_id: str) -> asyncio.Lock:
        key = (destination.descriptor, bucket_id)
        lock = self._bucket_locks.get(key)
        if lock is None:
            lock = self._bucket_locks[key] = asyncio.Lock()
        return lock

    async def sync_once(
        self,
        source: EventStore,
        destination: EventStore,
        stop_event: asyncio.Event | None = None,
    ) -> PassReport:
        """Sync all buckets of `source` into `destination`.

        Never raises for store failures: a failing bucket is recorded in the
        report and its siblings carry on. If the source buckets cannot be
        listed, the report carries a pass-level error and no outcomes.
        """
        report = PassReport(
            source=source.descriptor,
            destination=destination.descriptor,
            started_at=datetime.now(timezone.utc),
        )
        logger.info(f"Syncing {source.descriptor} to {destination.descriptor}")

        try:
            buckets = await source.list_buckets()
        except SyncError as e:
            report.error = str(e)
            report.finished_at = datetime.now(timezone.utc)
            log_report(report)
            return report

        outcomes = await asyncio.gather(*(
            self._run_bucket(buckets[bucket_id], source, destination, stop_event)
            for bucket_id in sorted(buckets)
        ))

        report.outcomes = list(outcomes)
        report.finished_at = datetime.now(timezone.utc)
        log_report(report)
        return report

    async def sync_many(
        self,
        sources: Iterable[EventStore],
        destination: EventStore,
        stop_event: asyncio.Event | None = None,
    ) -> list[PassReport]:
        """Run one pass per source into the same destination, concurrently.

        Returns:
            Reports in the order of `sources`.
        """
        reports = await asyncio.gather(*(
            self.sync_once(source, destination, stop_event) for source in sources
        ))
        return list(reports)

    async def _run_bucket(
        self,
        bucket: Bucket,
        source: EventStore,
        destination: EventStore,
        stop_event: asyncio.Event | None,
    ) -> BucketOutcome:
        outcome = BucketOutcome(source_bucket_id=bucket.id)
        context = {"bucket_id": bucket.id, "store": source.descriptor}

        async with self._semaphore:
            try:
                _check_stop(stop_event)
                await asyncio.wait_for(
                    self._sync_bucket(bucket, source, destination, outcome, stop_event),
                    timeout=self.bucket_timeout,
                )
                outcome.status = BucketStatus.SUCCESS
            except PassCancelled as e:
                outcome.status = BucketStatus.CANCELLED
                outcome.error = str(e)
                logger.info(f"Bucket {bucket.id} cancelled at {outcome.state.value}", extra=context)
            except asyncio.TimeoutError:
                outcome.status = BucketStatus.FAILED
                outcome.error = f"timed out after {self.bucket_timeout}s"
                logger.error(f"Bucket {bucket.id} timed out at {outcome.state.value}", extra=context)
            except SyncError as e:
                outcome.status = BucketStatus.FAILED
                outcome.error = f"{type(e).__name__}: {e}"
                logger.error(
                    f"Failed to sync bucket {bucket.id} at {outcome.state.value}: {e}",
                    extra=context,
                )
            except Exception as e:
                outcome.status = BucketStatus.FAILED
                outcome.error = f"{type(e).__name__}: {e}"
                logger.error(
                    f"Unexpected error syncing bucket {bucket.id}: {e}",
                    exc_info=True,
                    extra=context,
                )

        return outcome

    async def _sync_bucket(
        self,
        bucket: Bucket,
        source: EventStore,
        destination: EventStore,
        outcome: BucketOutcome,
        stop_event: asyncio.Event | None,
    ) -> None:
        outcome.state = BucketState.RESOLVE_DESTINATION
        bucket_to = await resolve_destination_bucket(bucket, destination)
        outcome.destination_bucket_id = bucket_to.id

        # Cursor and writes must see a consistent destination bucket
        async with self._bucket_lock(destination, bucket_to.id):
            _check_stop(stop_event)
            outcome.count_before = await destination.count_events(bucket_to.id)

            _check_stop(stop_event)
            outcome.state = BucketState.RESOLVE_CURSOR
            resume_at = await resume_point(destination, bucket_to.id)
            outcome.resumed_at = resume_at
            logger.info(f"Resumed {bucket_to.id} at: {resume_at}")

            _check_stop(stop_event)
            outcome.state = BucketState.FETCH
            fetched = await source.get_events(bucket.id, start=resume_at)
            outcome.fetched = len(fetched)

            outcome.state = BucketState.NORMALIZE
            events = [event.stripped() for event in fetched]
            if resume_at is not None:
                events = await self._drop_mirrored(destination, bucket_to.id, resume_at, events)

            # heartbeat only merges correctly when applied chronologically
            outcome.state = BucketState.SORT
            events.sort(key=lambda e: e.timestamp)

            outcome.state = BucketState.COMMIT
            for event in events:
                _check_stop(stop_event)
                await destination.heartbeat(bucket_to.id, event, MERGE_WINDOW)

            outcome.count_after = await destination.count_events(bucket_to.id)

        outcome.state = BucketState.REPORTED
        logger.info(
            f"Synced {outcome.delta} new events into {bucket_to.id}",
            extra={"bucket_id": bucket.id, "store": destination.descriptor},
        )

    async def _drop_mirrored(
        self,
        destination: EventStore,
        bucket_id: str,
        resume_at: datetime,
        events: list[Event],
    ) -> list[Event]:
        """Remove events the destination already holds at or after the cursor.

        Several events can start on the cursor instant. heartbeat only
        compares against the latest one, so the rest would be re-inserted.
        """
        mirrored = await destination.get_events(bucket_id, start=resume_at)
        known = {event.identity for event in mirrored}
        fresh = [event for event in events if event.identity not in known]
        if len(fresh) < len(events):
            logger.debug(
                f"Skipping {len(events) - len(fresh)} events already in {bucket_id}"
            )
        return fresh


async def sync_once(
    source: EventStore,
    destination: EventStore,
    workers: int = 4,
    bucket_timeout: float | None = 300.0,
    stop_event: asyncio.Event | None = None,
) -> PassReport:
    """Run a single pass with a fresh engine."""
    engine = SyncEngine(workers=workers, bucket_timeout=bucket_timeout)
    return await engine.sync_once(source, destination, stop_event=stop_event)
