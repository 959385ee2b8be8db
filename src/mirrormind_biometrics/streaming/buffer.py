"""Bounded in-memory buffer that hands batches of readings to persistence.

Readings are appended on the event-loop thread.  A batch is taken out of the
buffer synchronously (so readings arriving while a write is in flight land
in the next batch) and written asynchronously.  Failed batches are dropped;
the persistence backend records the error in its ``last_error`` slot.
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable

import structlog

from mirrormind_biometrics.errors import StorageError
from mirrormind_biometrics.models import Reading
from mirrormind_biometrics.storage.repository import PersistenceBackend

logger = structlog.get_logger(__name__)


class SessionBuffer:
    """FIFO ring buffer with threshold and periodic drains."""

    def __init__(
        self,
        backend: PersistenceBackend,
        *,
        capacity: int = 50,
        flush_threshold: int | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        if flush_threshold is not None and not 1 <= flush_threshold <= capacity:
            raise ValueError("flush_threshold must be between 1 and capacity")
        self._backend = backend
        self._items: deque[Reading] = deque(maxlen=capacity)
        self.capacity = capacity
        self.flush_threshold = flush_threshold
        self.on_error: Callable[[StorageError], None] | None = None

        self._timer: asyncio.Task | None = None
        self._writes: set[asyncio.Task] = set()
        self.drained_batches = 0
        self.drained_readings = 0
        self.evicted = 0

    def __len__(self) -> int:
        return len(self._items)

    @property
    def readings(self) -> list[Reading]:
        return list(self._items)

    # ── Producer side ─────────────────────────────────────────

    def append(self, reading: Reading) -> None:
        if len(self._items) == self.capacity:
            self.evicted += 1
        self._items.append(reading)
        if self.flush_threshold is not None and len(self._items) >= self.flush_threshold:
            batch = self._take()
            task = asyncio.get_running_loop().create_task(self._write(batch))
            self._writes.add(task)
            task.add_done_callback(self._writes.discard)

    def clear(self) -> None:
        self._items.clear()

    # ── Draining ──────────────────────────────────────────────

    async def drain(self) -> int:
        """Write the whole buffer as one batch.  Returns the batch size."""
        batch = self._take()
        if not batch:
            return 0
        await self._write(batch)
        return len(batch)

    def start(self, interval: float | None) -> None:
        """Drain every *interval* seconds until :meth:`stop`; ``None`` disables it."""
        if interval is None or self._timer is not None:
            return
        self._timer = asyncio.get_running_loop().create_task(self._drain_periodically(interval))
        logger.info("buffer.timer_started", interval=interval)

    async def stop(self) -> None:
        """Cancel the drain timer and wait for in-flight writes."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            await asyncio.gather(timer, return_exceptions=True)
        if self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)

    async def _drain_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.drain()

    # ── Internals ─────────────────────────────────────────────

    def _take(self) -> list[Reading]:
        batch = list(self._items)
        self._items.clear()
        return batch

    async def _write(self, batch: list[Reading]) -> None:
        await self._backend.store_batch(batch)
        error = self._backend.last_error
        if error is not None:
            logger.warning("buffer.batch_dropped", size=len(batch), error=error.message)
            if self.on_error is not None:
                self.on_error(error)
            return
        self.drained_batches += 1
        self.drained_readings += len(batch)
        logger.debug("buffer.drained", size=len(batch), total=self.drained_readings)
