"""
Runtime wiring: build every component from configuration.

:class:`SyncRuntime` owns the lifecycle of the explicitly created deferred
queue: ``start()`` restores a snapshot when durability is ``file`` and
``shutdown()`` stops the workers, saves the snapshot and closes the store.

Example:
    >>> runtime = SyncRuntime.from_config(load_config(), InMemoryTransport())
    >>> runtime.start()
    >>> runtime.pool.run_until_idle()
    >>> runtime.shutdown()
"""

from __future__ import annotations

import logging
from pathlib import Path

from trainee_sync.core.cache.backend import CacheBackend, get_cache
from trainee_sync.core.cache.readthrough import ReadThroughCache
from trainee_sync.core.config.models import SyncConfig
from trainee_sync.core.deferred.models import RepairPolicy
from trainee_sync.core.deferred.persistence import DeferredSnapshot
from trainee_sync.core.deferred.queue import DeferredQueue
from trainee_sync.core.engine.retry import RetryPolicy
from trainee_sync.core.engine.service import SyncEngine
from trainee_sync.core.entities.models import EntityKey, Record
from trainee_sync.core.entities.registry import EntityModel, default_entity_model
from trainee_sync.core.gateway.pool import WorkerPool
from trainee_sync.core.gateway.service import InboundGateway
from trainee_sync.core.gateway.transport import Transport
from trainee_sync.core.resolver.requests import (
    InMemoryRequestPublisher,
    RequestPublisher,
    RequestService,
)
from trainee_sync.core.resolver.resolver import DependencyResolver
from trainee_sync.core.store.backend import StoreBackend, get_store

logger = logging.getLogger(__name__)


def _resolve_path(path: str, project_dir: Path | None) -> Path:
    resolved = Path(path).expanduser()
    if not resolved.is_absolute() and project_dir is not None:
        resolved = project_dir / resolved
    return resolved


class SyncRuntime:
    """All components of a running sync service."""

    def __init__(
        self,
        config: SyncConfig,
        *,
        entity_model: EntityModel,
        store: StoreBackend,
        cache_backend: CacheBackend,
        records: ReadThroughCache,
        publisher: RequestPublisher,
        deferred: DeferredQueue,
        engine: SyncEngine,
        transport: Transport,
        gateway: InboundGateway,
        pool: WorkerPool,
        snapshot: DeferredSnapshot | None = None,
    ) -> None:
        self.config = config
        self.entity_model = entity_model
        self.store = store
        self.cache_backend = cache_backend
        self.records = records
        self.publisher = publisher
        self.deferred = deferred
        self.engine = engine
        self.transport = transport
        self.gateway = gateway
        self.pool = pool
        self.snapshot = snapshot
        self._started = False

    @classmethod
    def from_config(
        cls,
        config: SyncConfig,
        transport: Transport,
        *,
        publisher: RequestPublisher | None = None,
        entity_model: EntityModel | None = None,
        project_dir: Path | None = None,
    ) -> SyncRuntime:
        """
        Build a runtime.

        Args:
            config: Effective configuration
            transport: Inbound message source
            publisher: Outbound channel for data requests (in-memory if omitted)
            entity_model: Entity definitions (the standard model if omitted)
            project_dir: Base for relative file paths in the config

        Raises:
            EntityModelError: If the entity model is invalid
            ValueError: If a configured backend is not registered
        """
        entity_model = entity_model or default_entity_model()

        store_config = config.store
        if store_config.backend == "sqlite":
            store_config = store_config.model_copy(
                update={"path": str(_resolve_path(store_config.path, project_dir))}
            )
        store = get_store(store_config)
        cache_backend = get_cache(config.cache)
        records = ReadThroughCache(
            cache_backend,
            store,
            ttl_seconds=config.cache.ttl_seconds,
            prefix=config.cache.prefix,
        )

        publisher = publisher or InMemoryRequestPublisher()
        requester = None
        if config.requests.enabled:
            requester = RequestService(
                publisher,
                cache_backend,
                ttl_seconds=config.requests.dedupe_ttl_seconds,
                prefix=config.cache.prefix,
            )

        deferred = DeferredQueue(RepairPolicy.from_config(config.repair))
        engine = SyncEngine(
            entity_model,
            store,
            DependencyResolver(entity_model, store, requester),
            deferred,
            cache=records,
            retry=RetryPolicy.from_config(config.retry),
        )
        gateway = InboundGateway(
            engine,
            transport,
            entity_model,
            max_receive_count=config.gateway.max_receive_count,
        )
        pool = WorkerPool(
            gateway,
            transport,
            engine,
            workers=config.workers.workers,
            batch_size=config.gateway.batch_size,
            poll_wait_seconds=config.gateway.poll_wait_seconds,
            sweep_interval_seconds=config.workers.sweep_interval_seconds,
        )

        snapshot = None
        if (snapshot_path := config.snapshot_path()) is not None:
            snapshot = DeferredSnapshot(_resolve_path(snapshot_path, project_dir))

        return cls(
            config,
            entity_model=entity_model,
            store=store,
            cache_backend=cache_backend,
            records=records,
            publisher=publisher,
            deferred=deferred,
            engine=engine,
            transport=transport,
            gateway=gateway,
            pool=pool,
            snapshot=snapshot,
        )

    def start(self) -> int:
        """
        Restore deferred notifications from the snapshot, if configured.

        Restored notifications have no in-flight message; once they settle
        the transport's own redelivery of the same message is applied
        idempotently and acknowledged.

        Returns:
            Number of notifications restored

        Raises:
            DeferredSnapshotError: If the snapshot cannot be read
        """
        if self._started:
            return 0
        self._started = True
        if self.snapshot is None:
            return 0

        restored = self.deferred.restore(self.snapshot.load())
        self.snapshot.clear()
        if restored:
            logger.info("Restored %d deferred notifications", restored)
            self.engine.reconcile()
        return restored

    def get_record(self, key: EntityKey) -> Record | None:
        """Current record for ``key`` through the read-through cache."""
        return self.records.get(key)

    def shutdown(self) -> int:
        """
        Stop workers, persist the deferred queue if configured, close the store.

        Returns:
            Number of deferred notifications saved to the snapshot
        """
        if self.pool.running:
            self.pool.stop()

        saved = 0
        if self.snapshot is not None:
            saved = self.snapshot.save(self.deferred.drain())
        elif len(self.deferred):
            logger.info(
                "%d deferred notifications left to transport redelivery", len(self.deferred)
            )
        self.store.close()
        self._started = False
        return saved
