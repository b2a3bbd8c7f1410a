"""Tests for the HTTP RemoteStore against an in-process fake server."""

import httpx
import pytest
from datetime import timedelta

from awsync.errors import BackendError, BucketAlreadyExists, NoSuchBucket
from awsync.stores import RemoteStore

from conftest import T0, at, make_bucket


def mock_remote(handler) -> RemoteStore:
    """RemoteStore whose requests are answered by `handler`."""
    return RemoteStore(
        host="testserver",
        backoff_seconds=0,
        max_retries=3,
        transport=httpx.MockTransport(handler),
    )


class TestRemoteStoreInit:
    """Tests for RemoteStore construction."""

    def test_descriptor(self):
        """Test descriptor names the server URL."""
        store = RemoteStore(host="example", port=5666)

        assert store.base_url == "http://example:5666"
        assert store.descriptor == "RemoteStore(http://example:5666)"

    def test_max_retries_at_least_one(self):
        """Test a zero retry count still makes one attempt."""
        assert RemoteStore(max_retries=0).max_retries == 1


class TestRemoteBuckets:
    """Tests for bucket operations over HTTP."""

    async def test_create_and_get(self, remote, server_store):
        """Test created bucket keeps its metadata on the server."""
        await remote.create_bucket(make_bucket("b", **{"sync.id": "orig"}))

        bucket = await remote.get_bucket("b")

        assert bucket.hostname == "laptop"
        assert bucket.metadata == {"sync.id": "orig"}
        assert (await server_store.get_bucket("b")).metadata == {"sync.id": "orig"}

    async def test_get_missing(self, remote):
        """Test 404 maps to NoSuchBucket."""
        with pytest.raises(NoSuchBucket):
            await remote.get_bucket("missing")

    async def test_create_existing(self, remote):
        """Test 304 maps to BucketAlreadyExists."""
        await remote.create_bucket(make_bucket("b"))

        with pytest.raises(BucketAlreadyExists):
            await remote.create_bucket(make_bucket("b"))

    async def test_list_buckets(self, remote, server_store):
        """Test listing buckets."""
        await server_store.create_bucket(make_bucket("a"))
        await server_store.create_bucket(make_bucket("b", hostname="desktop"))

        buckets = await remote.list_buckets()

        assert set(buckets) == {"a", "b"}
        assert buckets["b"].hostname == "desktop"

    async def test_list_skips_malformed(self):
        """Test a bucket missing required fields is skipped."""
        def handler(request):
            return httpx.Response(200, json={
                "ok": {"id": "ok", "type": "t", "client": "c", "hostname": "h"},
                "bad": {"id": "bad", "type": "t"},
            })

        store = mock_remote(handler)
        buckets = await store.list_buckets()

        assert set(buckets) == {"ok"}
        await store.close()


@pytest.fixture
async def bucket(server_store):
    """Server-side bucket holding events at t=0,10,20."""
    await server_store.create_bucket(make_bucket("b"))
    await server_store.insert_events("b", [at(0, n=0), at(10, n=1), at(20, n=2)])
    return "b"


class TestRemoteEvents:
    """Tests for event operations over HTTP."""

    async def test_get_events_ascending(self, remote, bucket):
        """Test events are returned oldest first despite the wire order."""
        events = await remote.get_events(bucket)

        assert [e.data["n"] for e in events] == [0, 1, 2]

    async def test_limit_one_is_latest(self, remote, bucket):
        """Test limit=1 returns the most recent event."""
        latest = await remote.get_events(bucket, limit=1)

        assert [e.data["n"] for e in latest] == [2]

    async def test_start_is_inclusive(self, remote, bucket):
        """Test the start bound filters by timestamp."""
        events = await remote.get_events(bucket, start=T0 + timedelta(seconds=10))

        assert [e.data["n"] for e in events] == [1, 2]

    async def test_get_events_missing_bucket(self, remote):
        """Test NoSuchBucket on unknown bucket."""
        with pytest.raises(NoSuchBucket):
            await remote.get_events("missing")

    async def test_insert_and_count(self, remote, bucket):
        """Test bulk insert and count."""
        await remote.insert_events(bucket, [at(30, n=3), at(40, n=4)])

        assert await remote.count_events(bucket) == 5

    async def test_heartbeat(self, remote, bucket):
        """Test heartbeat merges identical content and returns the event."""
        merged = await remote.heartbeat(bucket, at(20, n=2), pulsetime=0)
        inserted = await remote.heartbeat(bucket, at(30, n=3), pulsetime=0)

        assert merged.timestamp == T0 + timedelta(seconds=20)
        assert inserted.data == {"n": 3}
        assert await remote.count_events(bucket) == 4

    async def test_bounded_count_by_start_time(self):
        """Test a bounded count ignores events that only overlap the range."""
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("/count"):
                return httpx.Response(200, json=99)
            return httpx.Response(200, json=[
                {"timestamp": "2026-01-01T12:00:20Z", "duration": 0, "data": {"n": 2}},
                {"timestamp": "2026-01-01T12:00:10Z", "duration": 0, "data": {"n": 1}},
                {"timestamp": "2026-01-01T12:00:00Z", "duration": 15, "data": {"n": 0}},
            ])

        store = mock_remote(handler)
        count = await store.count_events("b", start=T0 + timedelta(seconds=10))

        assert count == 2
        assert not any(path.endswith("/count") for path in paths)
        await store.close()

    async def test_bounded_count_matches_local(self, remote, bucket, server_store):
        """Test bounded counts agree with the datastore behind the server."""
        start = T0 + timedelta(seconds=10)

        assert await remote.count_events(bucket, start=start) == 2
        assert await remote.count_events(bucket, start=start) == (
            await server_store.count_events(bucket, start=start)
        )

    async def test_event_ids_are_strings(self, remote, bucket):
        """Test store-local ids come back as strings."""
        events = await remote.get_events(bucket)

        assert all(isinstance(e.id, str) for e in events)

    async def test_skips_malformed_event(self):
        """Test malformed events in a listing are skipped."""
        def handler(request):
            return httpx.Response(200, json=[
                {"timestamp": "2026-01-01T12:00:10Z", "duration": 0, "data": {"n": 1}},
                {"timestamp": "2026-01-01T12:00:05Z", "duration": -3, "data": {}},
                {"timestamp": "2026-01-01T12:00:00Z", "duration": 0, "data": {"n": 0}},
            ])

        store = mock_remote(handler)
        events = await store.get_events("b")

        assert [e.data["n"] for e in events] == [0, 1]
        await store.close()


class TestRemoteFailures:
    """Tests for transport failures and retries."""

    async def test_read_retried_on_server_error(self):
        """Test reads are retried on 5xx then succeed."""
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json=7)

        store = mock_remote(handler)
        assert await store.count_events("b") == 7
        assert len(calls) == 3
        await store.close()

    async def test_read_gives_up(self):
        """Test exhausted retries raise BackendError."""
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused", request=request)

        store = mock_remote(handler)
        with pytest.raises(BackendError) as exc_info:
            await store.list_buckets()

        assert len(calls) == 3
        assert "RemoteStore(http://testserver:5600)" in str(exc_info.value)
        await store.close()

    async def test_write_not_retried(self):
        """Test writes are attempted exactly once."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text="boom")

        store = mock_remote(handler)
        with pytest.raises(BackendError):
            await store.heartbeat("b", at(0), pulsetime=0)

        assert len(calls) == 1
        await store.close()

    async def test_client_error_not_retried(self):
        """Test 4xx other than 404 is a BackendError without retry."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, text="bad request")

        store = mock_remote(handler)
        with pytest.raises(BackendError):
            await store.get_events("b")

        assert len(calls) == 1
        await store.close()

    async def test_invalid_json(self):
        """Test an unparsable body is a BackendError."""
        store = mock_remote(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(BackendError):
            await store.list_buckets()
        await store.close()
