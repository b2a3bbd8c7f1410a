"""HTTP client store for a running ActivityWatch-compatible server.

Talks to the REST API under /api/0/. Reads are retried on connection
failures, timeouts and server errors with exponential backoff; writes are
attempted once so a partially applied write is never replayed blindly.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any
from urllib.parse import quote

import httpx

from ..errors import BackendError, BucketAlreadyExists, MalformedRecord, NoSuchBucket
from ..models import Bucket, Event, format_timestamp
from .base import EventStore, parse_records

logger = logging.getLogger(__name__)


def _bucket_from_wire(payload: Any) -> Bucket:
    """The server calls the provenance map `data`."""
    if not isinstance(payload, dict):
        raise MalformedRecord("Malformed bucket: not an object", payload)
    return Bucket.from_dict({
        "id": payload.get("id"),
        "type": payload.get("type"),
        "hostname": payload.get("hostname"),
        "client": payload.get("client"),
        "created": payload.get("created"),
        "metadata": payload.get("data") or {},
    })


class RemoteStore(EventStore):
    """Event store backed by a remote server over HTTP."""

    def __init__(
        self,
        host: str = "localhost",
        port: int = 5600,
        client_name: str = "aw-sync",
        timeout: float = 30.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the remote store.

        Args:
            host: Server hostname.
            port: Server port.
            client_name: Client identifier sent with created buckets.
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts for read requests.
            backoff_seconds: Initial delay between read retries.
            transport: Optional httpx transport (used by tests).
        """
        self.host = host
        self.port = port
        self.client_name = client_name
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @property
    def descriptor(self) -> str:
        return f"RemoteStore({self.base_url})"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.base_url}/api/0",
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        retry: bool = False,
    ) -> httpx.Response:
        """Make an HTTP request, retrying reads with exponential backoff.

        Returns:
            The response for any status below 500. 4xx handling is left to
            the caller.

        Raises:
            BackendError: On transport failure or a server error once the
                attempts are exhausted.
        """
        client = await self._get_client()
        attempts = self.max_retries if retry else 1
        backoff = self.backoff_seconds
        error = "no attempt made"

        for attempt in range(attempts):
            try:
                response = await client.request(method, path, params=params, json=json_data)
                if response.status_code < 500:
                    return response
                error = f"HTTP {response.status_code}: {response.text}"
                logger.warning(
                    f"Server error {response.status_code} on {method} {path}, "
                    f"attempt {attempt + 1}/{attempts}"
                )
            except (httpx.ConnectError, httpx.TimeoutException) as e:
                error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"Request to {self.base_url} failed ({error}), "
                    f"attempt {attempt + 1}/{attempts}"
                )
            except httpx.HTTPError as e:
                raise BackendError(f"{method} {path} failed: {e}", self.descriptor) from e

            if attempt < attempts - 1:
                await asyncio.sleep(backoff)
                backoff *= 2

        raise BackendError(f"{method} {path} failed: {error}", self.descriptor)

    def _json(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise BackendError(f"Invalid JSON response: {e}", self.descriptor) from e

    def _check(self, response: httpx.Response, bucket_id: str | None = None) -> None:
        if response.status_code == 404 and bucket_id is not None:
            raise NoSuchBucket(bucket_id)
        if response.status_code >= 400:
            raise BackendError(
                f"HTTP {response.status_code}: {response.text}", self.descriptor
            )

    @staticmethod
    def _bucket_path(bucket_id: str, suffix: str = "") -> str:
        return f"/buckets/{quote(bucket_id, safe='')}{suffix}"

    @staticmethod
    def _bounds(start: datetime | None, end: datetime | None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        if start is not None:
            params["start"] = format_timestamp(start)
        if end is not None:
            params["end"] = format_timestamp(end)
        return params

    # ==================== Buckets ====================

    async def list_buckets(self) -> dict[str, Bucket]:
        response = await self._request("GET", "/buckets/", retry=True)
        self._check(response)
        payload = self._json(response)
        if not isinstance(payload, dict):
            raise BackendError("Bucket listing is not an object", self.descriptor)

        buckets = parse_records(payload.values(), _bucket_from_wire, self.descriptor)
        return {bucket.id: bucket for bucket in buckets}

    async def get_bucket(self, bucket_id: str) -> Bucket:
        response = await self._request("GET", self._bucket_path(bucket_id), retry=True)
        self._check(response, bucket_id)
        try:
            return _bucket_from_wire(self._json(response))
        except MalformedRecord as e:
            raise BackendError(str(e), self.descriptor) from e

    async def create_bucket(self, bucket: Bucket) -> None:
        body = {
            "client": bucket.client or self.client_name,
            "type": bucket.type,
            "hostname": bucket.hostname,
            "data": bucket.metadata,
        }
        response = await self._request("POST", self._bucket_path(bucket.id), json_data=body)

        # The server answers 304 Not Modified when the bucket exists
        if response.status_code == 304:
            raise BucketAlreadyExists(bucket.id)
        self._check(response)
        logger.debug(f"Created bucket {bucket.id} in {self.descriptor}")

    # ==================== Events ====================

    async def get_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[Event]:
        params = self._bounds(start, end)
        if limit is not None:
            params["limit"] = limit

        response = await self._request(
            "GET", self._bucket_path(bucket_id, "/events"), params=params, retry=True
        )
        self._check(response, bucket_id)
        payload = self._json(response)
        if not isinstance(payload, list):
            raise BackendError("Event listing is not a list", self.descriptor)

        events = parse_records(payload, Event.from_dict, self.descriptor)
        # The server selects by overlap, the port contract by start time
        if start is not None:
            events = [e for e in events if e.timestamp >= start]
        if end is not None:
            events = [e for e in events if e.timestamp < end]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def insert_events(self, bucket_id: str, events: list[Event]) -> None:
        if not events:
            return

        response = await self._request(
            "POST",
            self._bucket_path(bucket_id, "/events"),
            json_data=[e.to_dict() for e in events],
        )
        self._check(response, bucket_id)
        logger.debug(f"Inserted {len(events)} events into {bucket_id}")

    async def heartbeat(
        self, bucket_id: str, event: Event, pulsetime: float
    ) -> Event:
        response = await self._request(
            "POST",
            self._bucket_path(bucket_id, "/heartbeat"),
            params={"pulsetime": pulsetime},
            json_data=event.to_dict(),
        )
        self._check(response, bucket_id)
        try:
            return Event.from_dict(self._json(response))
        except MalformedRecord as e:
            raise BackendError(f"Invalid heartbeat response: {e}", self.descriptor) from e

    async def count_events(
        self,
        bucket_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> int:
        if start is not None or end is not None:
            # The server's count endpoint selects by overlap too
            return len(await self.get_events(bucket_id, start=start, end=end))

        response = await self._request(
            "GET",
            self._bucket_path(bucket_id, "/events/count"),
            params=self._bounds(start, end),
            retry=True,
        )
        self._check(response, bucket_id)
        count = self._json(response)
        if not isinstance(count, int) or count < 0:
            raise BackendError(f"Invalid event count: {count!r}", self.descriptor)
        return count
