"""Destination identity for mirrored buckets."""

import logging

from .errors import BucketAlreadyExists, NoSuchBucket
from .models import Bucket
from .stores.base import EventStore

logger = logging.getLogger(__name__)

SYNCED_MARKER = "-synced"
ORIGIN_KEY = "sync.origin"
SOURCE_ID_KEY = "sync.id"


def destination_bucket_id(source_bucket: Bucket) -> str:
    """Namespaced id of the mirror of `source_bucket`.

    Earlier "-synced" markers are removed first, so re-syncing a mirror
    never stacks suffixes.
    """
    base = source_bucket.id.replace(SYNCED_MARKER, "")
    return f"{base}{SYNCED_MARKER}-from-{source_bucket.hostname}"


async def resolve_destination_bucket(
    source_bucket: Bucket, destination: EventStore
) -> Bucket:
    """Return the mirror of `source_bucket` in `destination`, creating it if needed.

    A newly created mirror carries provenance metadata pointing at the
    source host and bucket id. An existing mirror is returned unchanged.

    Raises:
        BackendError: If the destination fails. Not retried here.
    """
    dest_id = destination_bucket_id(source_bucket)

    try:
        return await destination.get_bucket(dest_id)
    except NoSuchBucket:
        pass

    mirror = source_bucket.copy_as(dest_id)
    mirror.metadata[ORIGIN_KEY] = source_bucket.hostname
    mirror.metadata[SOURCE_ID_KEY] = source_bucket.id

    try:
        await destination.create_bucket(mirror)
        logger.info(f"Created bucket {dest_id} in {destination.descriptor}")
    except BucketAlreadyExists:
        # Another process created it between our lookup and create
        logger.debug(f"Bucket {dest_id} appeared concurrently, using it")

    return await destination.get_bucket(dest_id)
