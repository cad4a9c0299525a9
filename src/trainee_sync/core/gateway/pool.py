"""
Worker pool pulling messages from the transport.

Workers run in a bounded ThreadPoolExecutor. Different keys are processed
in parallel; the engine's key locks serialize work on the same key. A
separate sweeper thread applies deferred notifications that outlive the
repair window.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field

from trainee_sync.core.engine.service import SyncEngine

from .models import GatewayAction, GatewayResult, TransportMessage
from .service import InboundGateway
from .transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class PoolSummary:
    """Counts of gateway actions taken by the pool."""

    actions: Counter[GatewayAction] = field(default_factory=Counter)
    errors: int = 0

    def record(self, result: GatewayResult) -> None:
        self.actions[result.action] += 1

    @property
    def handled(self) -> int:
        return sum(self.actions.values()) + self.errors

    def count(self, action: GatewayAction) -> int:
        return self.actions[action]


class WorkerPool:
    """
    Bounded pool of workers feeding the gateway.

    Args:
        gateway: Handles each message
        transport: Source of messages
        engine: Swept periodically while serving
        workers: Concurrent workers
        batch_size: Messages fetched per receive call
        poll_wait_seconds: How long an idle receive waits
        sweep_interval_seconds: Delay between sweeps while serving
    """

    def __init__(
        self,
        gateway: InboundGateway,
        transport: Transport,
        engine: SyncEngine,
        *,
        workers: int = 4,
        batch_size: int = 10,
        poll_wait_seconds: float = 1.0,
        sweep_interval_seconds: float = 30.0,
    ) -> None:
        self.gateway = gateway
        self.transport = transport
        self.engine = engine
        self.workers = workers
        self.batch_size = batch_size
        self.poll_wait_seconds = poll_wait_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self.summary = PoolSummary()
        self._summary_lock = threading.Lock()
        self._stop = threading.Event()
        self._executor: ThreadPoolExecutor | None = None
        self._workers: list[Future[None]] = []
        self._sweeper: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._executor is not None

    def _handle(self, message: TransportMessage) -> GatewayResult | None:
        try:
            result = self.gateway.handle(message)
        except Exception:
            # Left in flight; the transport redelivers it.
            logger.exception("Worker failed handling message %s", message.message_id)
            with self._summary_lock:
                self.summary.errors += 1
            return None
        with self._summary_lock:
            self.summary.record(result)
        return result

    def run_until_idle(self) -> PoolSummary:
        """
        Process messages until a receive returns nothing.

        Messages released for redelivery are picked up again in later
        batches, so this returns only once every message is acknowledged,
        deferred or dead-lettered.
        """
        with ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="trainee-sync-worker"
        ) as executor:
            while True:
                batch = self.transport.receive(self.batch_size * self.workers, 0.0)
                if not batch:
                    break
                futures: list[Future[GatewayResult | None]] = [
                    executor.submit(self._handle, message) for message in batch
                ]
                for future in as_completed(futures):
                    future.result()
        return self.summary

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            try:
                batch = self.transport.receive(self.batch_size, self.poll_wait_seconds)
            except Exception:
                logger.exception("Receive failed, backing off")
                self._stop.wait(self.poll_wait_seconds or 1.0)
                continue
            for message in batch:
                self._handle(message)

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval_seconds):
            try:
                self.engine.sweep()
            except Exception:
                logger.exception("Deferred sweep failed")

    def serve(self) -> None:
        """Start workers and the sweeper in the background."""
        if self.running:
            raise RuntimeError("Worker pool is already running")
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.workers, thread_name_prefix="trainee-sync-worker"
        )
        self._workers = [self._executor.submit(self._worker_loop) for _ in range(self.workers)]
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="trainee-sync-sweeper", daemon=True
        )
        self._sweeper.start()
        logger.info("Started %d workers", self.workers)

    def stop(self, timeout: float = 5.0) -> None:
        """Signal workers to finish their current batch and wait for them."""
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        for worker in self._workers:
            error = worker.exception()
            if error is not None:
                logger.error("Worker exited with an error: %s", error)
        self._workers = []
        if self._sweeper is not None:
            self._sweeper.join(timeout=timeout)
            self._sweeper = None
        logger.info("Worker pool stopped")
