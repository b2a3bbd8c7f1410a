"""Embedded SQLite event store.

Used for the per-host staging datastores kept in the sync folder, and for
syncing against a datastore file directly without a running server.
"""

import asyncio
import json
import logging
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from ..errors import BackendError, BucketAlreadyExists, MalformedRecord, NoSuchBucket
from ..models import Bucket, Event, format_timestamp
from .base import EventStore, merge_heartbeat, parse_records

logger = logging.getLogger(__name__)

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS buckets (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL,
    client TEXT NOT NULL,
    hostname TEXT NOT NULL,
    created TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}'
);

-- starttime/endtime are microseconds since the Unix epoch (UTC)
CREATE TABLE IF NOT EXISTS events (
    id TEXT PRIMARY KEY,
    bucket_id TEXT NOT NULL REFERENCES buckets(id),
    starttime INTEGER NOT NULL,
    endtime INTEGER NOT NULL,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_events_bucket_start ON events(bucket_id, starttime);
"""

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
MICROSECOND = timedelta(microseconds=1)


def _to_us(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - EPOCH) // MICROSECOND


def _from_us(value: int) -> datetime:
    return EPOCH + timedelta(microseconds=value)


def _row_to_event(row: sqlite3.Row) -> Event:
    try:
        data = json.loads(row["data"])
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedRecord(f"Malformed event data: {e}", dict(row)) from e

    return Event.from_dict({
        "id": row["id"],
        "timestamp": format_timestamp(_from_us(row["starttime"])),
        "duration": (row["endtime"] - row["starttime"]) / 1_000_000,
        "data": data,
    })


def _row_to_bucket(row: sqlite3.Row) -> Bucket:
    try:
        metadata = json.loads(row["data"])
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedRecord(f"Malformed bucket data: {e}", dict(row)) from e

    return Bucket.from_dict({
        "id": row["id"],
        "type": row["type"],
        "client": row["client"],
        "hostname": row["hostname"],
        "created": row["created"],
        "metadata": metadata,
    })


class LocalDatastore(EventStore):
    """SQLite-backed bucket/event store.

    Every write is committed immediately so it is durable and visible to
    any other connection on the same file. Queries run in the default
    thread pool, one at a time per datastore, so a locked or slow file
    never blocks the event loop.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0):
        """Initialize the datastore.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
            busy_timeout: Seconds SQLite waits on a file locked by another
                connection before failing.
        """
        self.db_path = Path(db_path).expanduser()
        self.busy_timeout = busy_timeout
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def descriptor(self) -> str:
        if str(self.db_path) == ":memory:":
            return f"LocalDatastore(:memory:@{id(self):x})"
        return f"LocalDatastore({self.db_path})"

    def connect(self) -> None:
        """Initialize database connection and schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=self.busy_timeout,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
            self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise BackendError(f"Cannot open datastore: {e}", self.descriptor) from e

        logger.info(f"LocalDatastore connected to {self.db_path}")

    async def close(self) -> None:
        """Close database connection once in-flight queries finish."""
        if self._conn:
            await self._run(self._close)
            logger.debug(f"{self.descriptor} closed")

    def _close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking database call in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._locked, func, *args)

    def _locked(self, func: Callable[..., T], *args: Any) -> T:
        # One connection is shared by every worker thread
        with self._lock:
            return func(*args)

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    @contextmanager
    def _backend_errors(self) -> Iterator[sqlite3.Connection]:
        """Yield the connection, converting sqlite errors to BackendError."""
        conn = self._ensure_connected()
        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise BackendError(str(e), self.descriptor) from e

    def _require_bucket(self, conn: sqlite3.Connection, bucket_id: str) -> None:
        row = conn.execute("SELECT 1 FROM buckets WHERE id = ?", (bucket_id,)).fetchone()
        if row is None:
            raise NoSuchBucket(bucket_id)

    # ==================== Buckets ====================

    async def list_buckets(self) -> dict[str, Bucket]:
        rows = await self._run(self._fetch_bucket_rows)
        buckets = parse_records(rows, _row_to_bucket, self.descriptor)
        return {bucket.id: bucket for bucket in buckets}

    def _fetch_bucket_rows(self) -> list[sqlite3.Row]:
        with self._backend_errors() as conn:
            return conn.execute(
                "SELECT id, type, client, hostname, created, data FROM buckets"
            ).fetchall()

    async def get_bucket(self, bucket_id: str) -> Bucket:
        row = await self._run(self._fetch_bucket_row, bucket_id)
        if row is None:
            raise NoSuchBucket(bucket_id)
        try:
            return _row_to_bucket(row)
        except MalformedRecord as e:
            raise BackendError(str(e), self.descriptor) from e

    def _fetch_bucket_row(self, bucket_id: str) -> sqlite3.Row | None:
        with self._backend_errors() as conn:
            return conn.execute(
                """
                SELECT id, type, client, hostname, created, data
                FROM buckets WHERE id = ?
                """,
                (bucket_id,),
            ).fetchone()

    async def create_bucket(self, bucket: Bucket) -> None:
        await self._run(self._create_bucket, bucket)
        logger.debug(f"Created bucket {bucket.id} in {self.descriptor}")

    def _create_bucket(self, bucket: Bucket) -> None:
        created = bucket.created or datetime.now(timezone.utc)
        with self._backend_errors() as conn:
            try:
                conn.execute(
                    """
                    INSERT INTO buckets (id, type, client, hostname, created, data)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bucket.id,
                        bucket.type,
                        bucket.client,
                        bucket.hostname,
                        format_timestamp(created),
                        json.dumps(bucket.metadata),
                    ),
                )
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise BucketAlreadyExists(bucket.id) from e
            conn.commit()

    # ==================== Events ====================

    def _where(
        self,
        bucket_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> tuple[str, list[Any]]:
        clauses = ["bucket_id = ?"]
        params: list[Any] = [bucket_id]
        if start is not None:
            clauses.append("starttime >= ?")
            params.append(_to_us(start))
        if end is not None:
            clauses.append("starttime < ?")
            params.append(_to_us(end))
        return " AND ".join(clauses), params

    async def get_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        rows = await self._run(self._fetch_event_rows, bucket_id, start, end, limit)
        # Newest first from the query so LIMIT keeps the latest events
        rows.reverse()
        return parse_records(rows, _row_to_event, self.descriptor)

    def _fetch_event_rows(
        self,
        bucket_id: str,
        start: datetime | None,
        end: datetime | None,
        limit: int | None,
    ) -> list[sqlite3.Row]:
        where, params = self._where(bucket_id, start, end)
        with self._backend_errors() as conn:
            self._require_bucket(conn, bucket_id)
            return conn.execute(
                f"""
                SELECT id, starttime, endtime, data FROM events
                WHERE {where}
                ORDER BY starttime DESC, rowid DESC
                LIMIT ?
                """,
                (*params, limit if limit is not None else -1),
            ).fetchall()

    def _write_event(self, conn: sqlite3.Connection, bucket_id: str, event: Event) -> str:
        event_id = event.id or str(uuid.uuid4())
        conn.execute(
            """
            INSERT OR REPLACE INTO events (id, bucket_id, starttime, endtime, data)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event_id,
                bucket_id,
                _to_us(event.timestamp),
                _to_us(event.end),
                json.dumps(event.data),
            ),
        )
        return event_id

    async def insert_events(self, bucket_id: str, events: list[Event]) -> None:
        if not events:
            return

        await self._run(self._insert_events, bucket_id, events)
        logger.debug(f"Inserted {len(events)} events into {bucket_id}")

    def _insert_events(self, bucket_id: str, events: list[Event]) -> None:
        with self._backend_errors() as conn:
            self._require_bucket(conn, bucket_id)
            for event in events:
                self._write_event(conn, bucket_id, event)
            conn.commit()

    async def heartbeat(
        self, bucket_id: str, event: Event, pulsetime: float
    ) -> Event:
        return await self._run(self._heartbeat, bucket_id, event, pulsetime)

    def _heartbeat(self, bucket_id: str, event: Event, pulsetime: float) -> Event:
        with self._backend_errors() as conn:
            self._require_bucket(conn, bucket_id)
            row = conn.execute(
                """
                SELECT id, starttime, endtime, data FROM events
                WHERE bucket_id = ?
                ORDER BY starttime DESC, rowid DESC
                LIMIT 1
                """,
                (bucket_id,),
            ).fetchone()

            merged = None
            if row is not None:
                try:
                    merged = merge_heartbeat(_row_to_event(row), event, pulsetime)
                except MalformedRecord as e:
                    logger.warning(f"Latest event in {bucket_id} is malformed, not merging: {e}")

            if merged is not None:
                conn.execute(
                    "UPDATE events SET endtime = ? WHERE id = ?",
                    (_to_us(merged.end), merged.id),
                )
                result = merged
            else:
                event_id = self._write_event(conn, bucket_id, event)
                result = Event(
                    id=event_id,
                    timestamp=event.timestamp,
                    duration=event.duration,
                    data=event.data,
                )
            conn.commit()

        return result

    async def count_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        return await self._run(self._count_events, bucket_id, start, end)

    def _count_events(
        self,
        bucket_id: str,
        start: datetime | None,
        end: datetime | None,
    ) -> int:
        where, params = self._where(bucket_id, start, end)
        with self._backend_errors() as conn:
            self._require_bucket(conn, bucket_id)
            row = conn.execute(
                f"SELECT COUNT(*) FROM events WHERE {where}", params
            ).fetchone()
        return row[0]
