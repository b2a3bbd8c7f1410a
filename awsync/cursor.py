"""Resume point for incremental passes."""

import logging
from datetime import datetime

from .errors import NoSuchBucket
from .stores.base import EventStore

logger = logging.getLogger(__name__)


async def resume_point(destination: EventStore, bucket_id: str) -> datetime | None:
    """Instant right after the last mirrored event ends, or None for a full sync.

    The result is an inclusive lower bound for the next source fetch, so
    events sitting exactly on the boundary are fetched again. The engine
    drops the ones the mirror already holds before writing.
    """
    try:
        latest = await destination.get_events(bucket_id, limit=1)
    except NoSuchBucket:
        logger.debug(f"{bucket_id} missing in {destination.descriptor}, syncing full history")
        return None

    if not latest:
        return None

    last = latest[-1]
    return last.timestamp + last.duration
