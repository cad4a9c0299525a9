"""
On-demand requests for records that are referenced but not yet stored.

When the resolver finds a missing dependency it asks the upstream system to
publish that record again. Requests are de-duplicated through a cache
backend with a time-to-live, so a burst of children waiting on the same
parent produces one request per window rather than one per child.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from trainee_sync.core.cache.backend import CacheBackend, CacheError
from trainee_sync.core.entities.models import EntityKey

logger = logging.getLogger(__name__)


class RequestPublishError(Exception):
    """A data request could not be handed to the upstream system."""


class DataRequest(BaseModel):
    """Message asking upstream to (re)publish one record."""

    model_config = ConfigDict(frozen=True)

    table: str
    id: str
    requested_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def for_key(cls, key: EntityKey) -> DataRequest:
        return cls(table=key.kind.value, id=key.natural_id)

    def body(self) -> dict[str, str]:
        """Wire body understood by the upstream request handler."""
        return {"table": self.table, "id": self.id}


@runtime_checkable
class RequestPublisher(Protocol):
    """Outbound channel for data requests."""

    def publish(self, request: DataRequest) -> None:
        """
        Send one request.

        Raises:
            RequestPublishError: If the request could not be sent
        """
        ...


@runtime_checkable
class DataRequester(Protocol):
    """What the resolver needs: ask for a key, learn whether a request went out."""

    def request(self, key: EntityKey) -> bool: ...


class InMemoryRequestPublisher:
    """Publisher that records requests in order. Used by replays and tests."""

    def __init__(self) -> None:
        self._requests: list[DataRequest] = []
        self._lock = threading.Lock()

    def publish(self, request: DataRequest) -> None:
        with self._lock:
            self._requests.append(request)

    @property
    def requests(self) -> list[DataRequest]:
        with self._lock:
            return list(self._requests)


class RequestService:
    """
    De-duplicating data requester.

    Args:
        publisher: Where requests are sent
        cache: Backend used to remember recent requests
        ttl_seconds: How long a request suppresses repeats for the same key
        prefix: Namespace for the de-duplication keys

    Example:
        >>> service = RequestService(InMemoryRequestPublisher(), InMemoryCache())
        >>> service.request(EntityKey.of(EntityKind.POST, 42))
        True
        >>> service.request(EntityKey.of(EntityKind.POST, 42))
        False
    """

    def __init__(
        self,
        publisher: RequestPublisher,
        cache: CacheBackend,
        *,
        ttl_seconds: int = 300,
        prefix: str = "trainee-sync",
    ) -> None:
        self.publisher = publisher
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.prefix = prefix

    def _marker_key(self, key: EntityKey) -> str:
        return f"{self.prefix}:request:{key.kind.value}:{key.natural_id}"

    def request(self, key: EntityKey) -> bool:
        """
        Ask upstream for ``key`` unless it was asked for recently.

        Returns:
            True if a request was published
        """
        request = DataRequest.for_key(key)
        marker = self._marker_key(key)
        try:
            if not self.cache.add(marker, request.requested_at.isoformat(), self.ttl_seconds):
                logger.debug("Already requested %s", key)
                return False
        except CacheError as e:
            # Without the marker we may request twice; that is harmless.
            logger.warning("Request cache unavailable for %s: %s", key, e)

        try:
            self.publisher.publish(request)
        except RequestPublishError as e:
            logger.error("Failed to request %s: %s", key, e)
            try:
                self.cache.invalidate(marker)
            except CacheError as e:
                logger.debug("Could not clear request marker for %s: %s", key, e)
            return False

        logger.info("Sent request for %s", key)
        return True
