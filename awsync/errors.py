"""Error taxonomy shared by the stores and the sync engine."""

from typing import Any


class SyncError(Exception):
    """Base class for all awsync errors."""


class NoSuchBucket(SyncError):
    """The requested bucket does not exist in the store."""

    def __init__(self, bucket_id: str):
        super().__init__(f"No such bucket: {bucket_id}")
        self.bucket_id = bucket_id


class BucketAlreadyExists(SyncError):
    """A bucket with the same id was already created."""

    def __init__(self, bucket_id: str):
        super().__init__(f"Bucket already exists: {bucket_id}")
        self.bucket_id = bucket_id


class BackendError(SyncError):
    """Transport or storage failure inside a store."""

    def __init__(self, message: str, store: str | None = None):
        if store:
            message = f"{store}: {message}"
        super().__init__(message)
        self.store = store


class MalformedRecord(SyncError):
    """A bucket or event record failed shape validation."""

    def __init__(self, message: str, record: Any = None):
        super().__init__(message)
        self.record = record


class PassCancelled(SyncError):
    """The pass was asked to stop before this bucket finished."""
