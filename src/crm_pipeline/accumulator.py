"""Size- and time-bounded batching of queue deliveries."""

import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .clients.queue_broker import Delivery
from .config.settings import RetryConfig
from .utils.logging import log_performance
from .utils.retry import retry_with_config


logger = logging.getLogger(__name__)

BatchSink = Callable[[List[Delivery]], Awaitable[Any]]


class FlushTimer:
    """Single-shot deferred callback. Cancelling is always safe."""

    def __init__(self, timeout: float, callback: Callable[[], None]):
        self.timeout = timeout
        self._callback = callback
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def pending(self) -> bool:
        return self._handle is not None

    def start(self, delay: Optional[float] = None):
        self.cancel()
        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(
            self.timeout if delay is None else max(delay, 0.0), self._fire
        )

    def cancel(self):
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _fire(self):
        self._handle = None
        self._callback()


class BatchAccumulator:
    """
    Buffers deliveries for one queue and hands them to a sink in batches.

    A batch is flushed when it reaches ``max_size`` or ``flush_timeout``
    seconds after its first message arrived, whichever comes first. Every
    delivery is acknowledged only after the sink call for its batch returns.

    Sink errors listed in ``retry_on`` are retried under ``retry`` before the
    batch is given up on. Errors listed in ``isolate_on`` mean the sink
    refused particular records: the batch is split in halves until those
    deliveries are found, the rest are written and acknowledged, and only
    the refused ones are negatively acknowledged. Any other failure
    negatively acknowledges and requeues the whole batch.

    States: IDLE (empty, no timer), ACCUMULATING (non-empty, timer running),
    FLUSHING (a sink call in flight). Messages added while FLUSHING go into
    a fresh buffer; the sink is never called for two batches at once.
    """

    def __init__(
        self,
        name: str,
        sink: BatchSink,
        max_size: int,
        flush_timeout: float,
        retry: Optional[RetryConfig] = None,
        retry_on: tuple = (),
        isolate_on: tuple = ()
    ):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.name = name
        self.sink = sink
        self.max_size = max_size
        self.flush_timeout = flush_timeout
        self.retry = retry
        self.retry_on = retry_on
        self.isolate_on = isolate_on

        self._buffer: List[Delivery] = []
        self._first_added_at: Optional[float] = None
        self._timer = FlushTimer(flush_timeout, self._on_timer)
        self._sink_lock = asyncio.Lock()
        self._in_flight = 0
        self._flush_tasks: Set[asyncio.Task] = set()

        self.stats = {
            "messages_added": 0,
            "batches_flushed": 0,
            "records_flushed": 0,
            "batches_failed": 0,
            "records_requeued": 0,
            "records_dead_lettered": 0,
            "records_rejected": 0,
            "size_flushes": 0,
            "timeout_flushes": 0,
            "last_flush_time": None
        }

        logger.info(
            f"BatchAccumulator[{name}] initialized: max_size={max_size}, "
            f"flush_timeout={flush_timeout}s"
        )

    @property
    def state(self) -> str:
        if self._in_flight:
            return "FLUSHING"
        if self._buffer:
            return "ACCUMULATING"
        return "IDLE"

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    @property
    def timer_pending(self) -> bool:
        return self._timer.pending

    async def add(self, delivery: Delivery):
        """Buffer one delivery, flushing first if the batch is now full."""
        if not self._buffer:
            self._first_added_at = time.monotonic()
        self._buffer.append(delivery)
        self.stats["messages_added"] += 1

        if len(self._buffer) >= self.max_size:
            await self.flush(reason="size")
        elif not self._timer.pending and not self._in_flight:
            self._timer.start()

    async def flush(self, reason: str = "manual"):
        """Detach the current buffer and persist it."""
        self._timer.cancel()
        if not self._buffer:
            return

        batch, self._buffer = self._buffer, []
        first_added_at, self._first_added_at = self._first_added_at, None
        self._in_flight += 1
        try:
            async with self._sink_lock:
                await self._write(batch, reason, first_added_at)
        finally:
            self._in_flight -= 1
            self._rearm()

    async def drain(self):
        """Flush whatever is buffered and wait for every in-flight flush."""
        logger.info(f"Draining {self.name} accumulator ({len(self._buffer)} buffered)")
        self._timer.cancel()

        if self._flush_tasks:
            await asyncio.gather(*list(self._flush_tasks), return_exceptions=True)

        await self.flush(reason="shutdown")

        # flush() returns early on an empty buffer; wait out any sink call still running
        async with self._sink_lock:
            pass
        self._timer.cancel()

    def _rearm(self):
        """Start the timer for messages that arrived during a flush."""
        if self._buffer and not self._in_flight and not self._timer.pending:
            elapsed = time.monotonic() - (self._first_added_at or time.monotonic())
            self._timer.start(self.flush_timeout - elapsed)

    def _on_timer(self):
        task = asyncio.create_task(self.flush(reason="timeout"))
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_done)

    def _flush_done(self, task: asyncio.Task):
        self._flush_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Timed flush of {self.name} failed unexpectedly",
                exc_info=task.exception()
            )

    async def _write(self, batch: List[Delivery], reason: str, first_added_at: Optional[float]):
        start_time = time.monotonic()
        try:
            rejected = await self._persist(batch)
        except Exception as e:
            logger.error(f"Error processing {self.name} batch of {len(batch)}: {e}", exc_info=True)
            self.stats["batches_failed"] += 1
            await self._settle(batch, success=False)
            return

        rejected_ids = {delivery.message_id for delivery in rejected}
        written = [delivery for delivery in batch if delivery.message_id not in rejected_ids]
        await self._settle(written, success=True)
        if rejected:
            self.stats["records_rejected"] += len(rejected)
            logger.warning(
                f"{len(rejected)} of {len(batch)} {self.name} records were rejected; "
                f"returning them to the queue"
            )
            await self._settle(rejected, success=False)

        duration_ms = (time.monotonic() - start_time) * 1000
        self.stats["batches_flushed"] += 1
        self.stats["records_flushed"] += len(written)
        self.stats["last_flush_time"] = datetime.now()
        if reason in ("size", "timeout"):
            self.stats[f"{reason}_flushes"] += 1

        logger.info(f"Processed batch of {len(written)} {self.name} ({reason})")
        log_performance(
            logger, f"{self.name}.flush", duration_ms,
            batch_size=len(batch), reason=reason,
            batch_age_ms=(start_time - first_added_at) * 1000 if first_added_at else None
        )

    async def _persist(self, batch: List[Delivery]) -> List[Delivery]:
        """Write ``batch`` and return the deliveries the sink refused."""
        try:
            await self._call_sink(batch)
            return []
        except self.isolate_on as e:
            if len(batch) == 1:
                logger.warning(f"Rejected {self.name} message {batch[0].message_id}: {e}")
                return list(batch)

        middle = len(batch) // 2
        return await self._persist(batch[:middle]) + await self._persist(batch[middle:])

    async def _call_sink(self, batch: List[Delivery]):
        if self.retry is None or not self.retry_on:
            return await self.sink(batch)

        return await retry_with_config(
            lambda: self.sink(batch),
            self.retry,
            exceptions=self.retry_on,
            operation=f"Write of {len(batch)} {self.name}"
        )

    async def _settle(self, batch: List[Delivery], success: bool):
        for delivery in batch:
            try:
                if success:
                    await delivery.ack()
                elif await delivery.nack(requeue=True):
                    self.stats["records_requeued"] += 1
                else:
                    self.stats["records_dead_lettered"] += 1
            except Exception as e:
                # The message stays in the broker's processing list and is recovered on restart
                logger.error(
                    f"Failed to {'ack' if success else 'nack'} message "
                    f"{delivery.message_id} on {delivery.queue}: {e}"
                )

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "state": self.state,
            "buffered": len(self._buffer),
            "max_size": self.max_size,
            "flush_timeout_seconds": self.flush_timeout
        }
