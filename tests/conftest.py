"""Shared fixtures: in-memory datastores and a fake event-store server."""

from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import pytest
from fastapi import Body, FastAPI, Request
from fastapi.responses import JSONResponse, Response

from awsync.errors import BucketAlreadyExists, NoSuchBucket
from awsync.models import Bucket, Event, parse_timestamp
from awsync.stores import LocalDatastore, RemoteStore

T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def at(seconds: float, duration: float = 0, **data: Any) -> Event:
    """Event starting `seconds` after T0."""
    return Event(
        timestamp=T0 + timedelta(seconds=seconds),
        duration=timedelta(seconds=duration),
        data=data,
    )


def make_bucket(bucket_id: str = "b", hostname: str = "laptop", **metadata: Any) -> Bucket:
    return Bucket(
        id=bucket_id,
        type="test",
        hostname=hostname,
        client="test",
        metadata=metadata,
    )


def create_aw_app(store: LocalDatastore) -> FastAPI:
    """Minimal ActivityWatch-style REST API serving a LocalDatastore."""
    app = FastAPI()

    def to_wire(bucket: Bucket) -> dict[str, Any]:
        return {
            "id": bucket.id,
            "name": None,
            "type": bucket.type,
            "client": bucket.client,
            "hostname": bucket.hostname,
            "created": bucket.created.isoformat() if bucket.created else None,
            "data": bucket.metadata,
        }

    def bound(value: str | None) -> datetime | None:
        return parse_timestamp(value) if value else None

    @app.exception_handler(NoSuchBucket)
    async def no_such_bucket(request: Request, exc: NoSuchBucket):
        return JSONResponse({"message": str(exc)}, status_code=404)

    @app.get("/api/0/buckets/")
    async def list_buckets():
        buckets = await store.list_buckets()
        return {bucket_id: to_wire(b) for bucket_id, b in buckets.items()}

    @app.get("/api/0/buckets/{bucket_id}")
    async def get_bucket(bucket_id: str):
        return to_wire(await store.get_bucket(bucket_id))

    @app.post("/api/0/buckets/{bucket_id}")
    async def create_bucket(bucket_id: str, body: dict[str, Any] = Body(...)):
        bucket = Bucket(
            id=bucket_id,
            type=body["type"],
            hostname=body["hostname"],
            client=body["client"],
            metadata=body.get("data") or {},
        )
        try:
            await store.create_bucket(bucket)
        except BucketAlreadyExists:
            return Response(status_code=304)
        return Response(status_code=200)

    @app.get("/api/0/buckets/{bucket_id}/events")
    async def get_events(
        bucket_id: str,
        start: str | None = None,
        end: str | None = None,
        limit: int | None = None,
    ):
        events = await store.get_events(bucket_id, bound(start), bound(end), limit)
        # Newest first, like the real server
        return [e.to_dict() for e in reversed(events)]

    @app.post("/api/0/buckets/{bucket_id}/events")
    async def insert_events(bucket_id: str, body: list[dict[str, Any]] = Body(...)):
        await store.insert_events(bucket_id, [Event.from_dict(e) for e in body])
        return Response(status_code=200)

    @app.post("/api/0/buckets/{bucket_id}/heartbeat")
    async def heartbeat(bucket_id: str, pulsetime: float, body: dict[str, Any] = Body(...)):
        event = await store.heartbeat(bucket_id, Event.from_dict(body), pulsetime)
        return event.to_dict()

    @app.get("/api/0/buckets/{bucket_id}/events/count")
    async def count_events(bucket_id: str, start: str | None = None, end: str | None = None):
        return await store.count_events(bucket_id, bound(start), bound(end))

    return app


@pytest.fixture
async def source():
    """In-memory source datastore."""
    store = LocalDatastore(":memory:")
    store.connect()
    yield store
    await store.close()


@pytest.fixture
async def destination():
    """In-memory destination datastore."""
    store = LocalDatastore(":memory:")
    store.connect()
    yield store
    await store.close()


@pytest.fixture
async def server_store():
    """Datastore behind the fake server."""
    store = LocalDatastore(":memory:")
    store.connect()
    yield store
    await store.close()


@pytest.fixture
async def remote(server_store):
    """RemoteStore talking to the fake server in-process."""
    store = RemoteStore(
        host="testserver",
        port=5600,
        backoff_seconds=0,
        transport=httpx.ASGITransport(app=create_aw_app(server_store)),
    )
    yield store
    await store.close()
