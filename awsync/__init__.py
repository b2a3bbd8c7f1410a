"""awsync: one-directional bucket/event sync between event stores."""

from .engine import SyncEngine, sync_once
from .errors import (
    BackendError,
    BucketAlreadyExists,
    MalformedRecord,
    NoSuchBucket,
    PassCancelled,
    SyncError,
)
from .models import Bucket, Event
from .report import BucketOutcome, BucketState, BucketStatus, PassReport
from .stores import EventStore, LocalDatastore, RemoteStore, open_store

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "Bucket",
    "BucketAlreadyExists",
    "BucketOutcome",
    "BucketState",
    "BucketStatus",
    "Event",
    "EventStore",
    "LocalDatastore",
    "MalformedRecord",
    "NoSuchBucket",
    "PassCancelled",
    "PassReport",
    "RemoteStore",
    "SyncEngine",
    "SyncError",
    "open_store",
    "sync_once",
]
