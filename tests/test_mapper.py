"""Tests for destination bucket identity."""

import pytest
from unittest.mock import AsyncMock

from awsync.errors import BackendError, BucketAlreadyExists, NoSuchBucket
from awsync.mapper import destination_bucket_id, resolve_destination_bucket

from conftest import make_bucket


class TestDestinationBucketId:
    """Tests for the naming scheme."""

    def test_appends_hostname(self):
        """Test the mirror id embeds the source host."""
        bucket = make_bucket("aw-watcher-window_laptop", hostname="laptop")

        assert destination_bucket_id(bucket) == "aw-watcher-window_laptop-synced-from-laptop"

    def test_deterministic(self):
        """Test the same source always maps to the same id."""
        bucket = make_bucket("b", hostname="laptop")

        assert destination_bucket_id(bucket) == destination_bucket_id(bucket)

    def test_distinct_hosts_do_not_collide(self):
        """Test equal bucket ids from two hosts get distinct mirrors."""
        a = make_bucket("b", hostname="laptop")
        b = make_bucket("b", hostname="desktop")

        assert destination_bucket_id(a) != destination_bucket_id(b)

    def test_no_double_suffix(self):
        """Test re-mirroring a mirror doesn't stack suffixes."""
        mirror = make_bucket("b-synced-from-laptop", hostname="laptop")

        result = destination_bucket_id(mirror)

        assert result == "b-from-laptop-synced-from-laptop"
        assert result.count("-synced") == 1


class TestResolveDestinationBucket:
    """Tests for get-or-create of the mirror bucket."""

    async def test_creates_with_provenance(self, destination):
        """Test a missing mirror is created with provenance metadata."""
        source_bucket = make_bucket("b", hostname="laptop", tag="kept")

        mirror = await resolve_destination_bucket(source_bucket, destination)

        assert mirror.id == "b-synced-from-laptop"
        assert mirror.type == source_bucket.type
        assert mirror.client == source_bucket.client
        assert mirror.metadata == {
            "tag": "kept",
            "sync.origin": "laptop",
            "sync.id": "b",
        }
        assert source_bucket.metadata == {"tag": "kept"}

    async def test_existing_returned_unchanged(self, destination):
        """Test an existing mirror is returned as-is."""
        await destination.create_bucket(
            make_bucket("b-synced-from-laptop", **{"sync.origin": "laptop", "sync.id": "b", "x": 1})
        )

        mirror = await resolve_destination_bucket(make_bucket("b"), destination)

        assert mirror.metadata == {"sync.origin": "laptop", "sync.id": "b", "x": 1}

    async def test_idempotent(self, destination):
        """Test two resolutions return the same bucket."""
        first = await resolve_destination_bucket(make_bucket("b"), destination)
        second = await resolve_destination_bucket(make_bucket("b"), destination)

        assert first.id == second.id
        assert len(await destination.list_buckets()) == 1

    async def test_creation_race_uses_existing(self):
        """Test BucketAlreadyExists during creation is treated as success."""
        existing = make_bucket("b-synced-from-laptop")
        store = AsyncMock()
        store.descriptor = "mock"
        store.get_bucket.side_effect = [NoSuchBucket("b-synced-from-laptop"), existing]
        store.create_bucket.side_effect = BucketAlreadyExists("b-synced-from-laptop")

        mirror = await resolve_destination_bucket(make_bucket("b"), store)

        assert mirror is existing
        assert store.get_bucket.await_count == 2

    async def test_backend_error_propagates(self):
        """Test other lookup failures are not swallowed."""
        store = AsyncMock()
        store.descriptor = "mock"
        store.get_bucket.side_effect = BackendError("disk on fire")

        with pytest.raises(BackendError):
            await resolve_destination_bucket(make_bucket("b"), store)

        store.create_bucket.assert_not_awaited()

    async def test_create_failure_propagates(self):
        """Test a failed create is fatal for the bucket."""
        store = AsyncMock()
        store.descriptor = "mock"
        store.get_bucket.side_effect = NoSuchBucket("b-synced-from-laptop")
        store.create_bucket.side_effect = BackendError("read-only")

        with pytest.raises(BackendError):
            await resolve_destination_bucket(make_bucket("b"), store)
