"""Bounded worker pool that decouples frame receipt from command processing."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Coroutine

from ..utils.logging import get_logger

logger = get_logger(__name__)


class EnvelopeStatus(str, Enum):
    """Processing status of a queued envelope."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class QueuedEnvelope:
    """An envelope waiting for, or being handled by, a worker."""

    envelope_id: str
    envelope: Any
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: datetime | None = None
    error: str | None = None


EnvelopeHandler = Callable[[Any], Coroutine[Any, Any, None]]


class EnvelopeRouter:
    """
    Async envelope router with a fixed set of workers.

    Features:
    - Bounded queue; enqueue waits when it is full
    - Concurrent processing with configurable workers
    - Duplicate envelope ids are dropped while the first is still in flight
    - Handler errors are logged and never stop a worker
    """

    def __init__(
        self,
        handler: EnvelopeHandler,
        max_workers: int = 4,
        max_queue_size: int = 100,
    ) -> None:
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size
        self._handler = handler

        self._queue: asyncio.Queue[QueuedEnvelope] = asyncio.Queue(maxsize=max_queue_size)
        self._in_flight: dict[str, QueuedEnvelope] = {}
        self._lock = asyncio.Lock()

        self._workers: list[asyncio.Task[None]] = []
        self._running = False
        self._completed = 0
        self._failed = 0

    @property
    def running(self) -> bool:
        return self._running

    async def enqueue(self, envelope_id: str, envelope: Any) -> bool:
        """
        Queue an envelope for processing.

        Returns False if an envelope with the same id is already pending or
        being processed.
        """
        async with self._lock:
            if envelope_id in self._in_flight:
                logger.debug("Duplicate envelope ignored", envelope_id=envelope_id)
                return False
            item = QueuedEnvelope(envelope_id=envelope_id, envelope=envelope)
            self._in_flight[envelope_id] = item

        await self._queue.put(item)
        logger.debug("Envelope enqueued", envelope_id=envelope_id, queue_size=self._queue.qsize())
        return True

    async def _process(self, item: QueuedEnvelope) -> None:
        item.status = EnvelopeStatus.PROCESSING
        try:
            await self._handler(item.envelope)
            item.status = EnvelopeStatus.COMPLETED
            self._completed += 1
        except Exception as e:
            item.status = EnvelopeStatus.FAILED
            item.error = str(e)
            self._failed += 1
            logger.error(
                "Envelope processing failed",
                envelope_id=item.envelope_id,
                error=str(e),
                exc_info=True,
            )
        finally:
            item.processed_at = datetime.now(timezone.utc)
            async with self._lock:
                self._in_flight.pop(item.envelope_id, None)

    async def _worker(self, worker_id: int) -> None:
        logger.debug("Worker started", worker_id=worker_id)
        while True:
            item = await self._queue.get()
            try:
                await self._process(item)
            finally:
                self._queue.task_done()

    async def start(self) -> None:
        """Start the workers."""
        if self._running:
            return
        self._running = True
        for i in range(self.max_workers):
            self._workers.append(asyncio.create_task(self._worker(i)))
        logger.info("Envelope router started", workers=self.max_workers)

    async def join(self) -> None:
        """Wait until every queued envelope has been handled."""
        await self._queue.join()

    async def stop(self, timeout: float = 30.0) -> None:
        """
        Stop the router gracefully.

        Args:
            timeout: Maximum time to wait for queued and in-flight envelopes
        """
        if not self._running:
            return
        self._running = False

        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Queue drain timeout, cancelling workers", pending=self._queue.qsize())

        for task in self._workers:
            task.cancel()
        if self._workers:
            await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Envelope router stopped")

    def get_stats(self) -> dict[str, Any]:
        return {
            "queue_size": self._queue.qsize(),
            "in_flight": len(self._in_flight),
            "running": self._running,
            "workers": len(self._workers),
            "completed": self._completed,
            "failed": self._failed,
        }
