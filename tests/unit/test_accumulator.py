"""Tests for size- and time-bounded batching."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from crm_pipeline.accumulator import BatchAccumulator, FlushTimer
from crm_pipeline.config.settings import RetryConfig
from crm_pipeline.exceptions import RejectedRecordsError


class RecordingSink:
    """Sink that records each batch and can be slowed down or made to fail."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.batches = []
        self.fail = False
        self.outages = 0
        self.reject = set()
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def __call__(self, batch):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls += 1
            if self.outages:
                self.outages -= 1
                raise OSError("connection refused")
            if self.fail:
                raise RuntimeError("database unavailable")
            if any(d.message_id in self.reject for d in batch):
                raise RejectedRecordsError("foreign key violation", "orders", len(batch))
            self.batches.append([d.message_id for d in batch])
        finally:
            self.active -= 1

    @property
    def sizes(self):
        return [len(batch) for batch in self.batches]


@pytest.mark.unit
class TestFlushTimer:
    """Test the deferred flush callback."""

    @pytest.mark.asyncio
    async def test_fires_once_after_timeout(self):
        fired = []
        timer = FlushTimer(0.05, lambda: fired.append(True))

        timer.start()
        assert timer.pending is True

        await asyncio.sleep(0.1)
        assert fired == [True]
        assert timer.pending is False

    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(self):
        fired = []
        timer = FlushTimer(0.05, lambda: fired.append(True))

        timer.cancel()
        timer.start()
        timer.cancel()
        timer.cancel()

        await asyncio.sleep(0.1)
        assert fired == []
        assert timer.pending is False

    @pytest.mark.asyncio
    async def test_restart_replaces_pending_callback(self):
        fired = []
        timer = FlushTimer(0.05, lambda: fired.append(True))

        timer.start()
        timer.start()

        await asyncio.sleep(0.1)
        assert fired == [True]


@pytest.mark.unit
class TestBatchAccumulator:
    """Test BatchAccumulator flush triggers and acknowledgment."""

    def test_rejects_zero_max_size(self):
        with pytest.raises(ValueError):
            BatchAccumulator("customers", RecordingSink(), max_size=0, flush_timeout=1.0)

    @pytest.mark.asyncio
    async def test_size_flush(self, make_delivery, broker):
        """The max_size-th add flushes synchronously and leaves an empty buffer."""
        sink = RecordingSink()
        accumulator = BatchAccumulator("customers", sink, max_size=3, flush_timeout=10.0)

        deliveries = [make_delivery() for _ in range(3)]
        for delivery in deliveries[:2]:
            await accumulator.add(delivery)
        assert sink.batches == []
        assert accumulator.timer_pending is True
        assert accumulator.state == "ACCUMULATING"

        await accumulator.add(deliveries[2])

        assert sink.batches == [[d.message_id for d in deliveries]]
        assert accumulator.buffered == 0
        assert accumulator.timer_pending is False
        assert accumulator.state == "IDLE"
        assert broker.acked == [d.message_id for d in deliveries]
        assert accumulator.stats["size_flushes"] == 1

    @pytest.mark.asyncio
    async def test_timeout_flush(self, make_delivery, broker):
        """A partial batch is flushed flush_timeout after its first add."""
        sink = RecordingSink()
        accumulator = BatchAccumulator("orders", sink, max_size=50, flush_timeout=0.2)

        for _ in range(3):
            await accumulator.add(make_delivery())

        await asyncio.sleep(0.1)
        assert sink.batches == []

        await asyncio.sleep(0.2)
        assert sink.sizes == [3]
        assert len(broker.acked) == 3
        assert accumulator.stats["timeout_flushes"] == 1
        assert accumulator.state == "IDLE"

    @pytest.mark.asyncio
    async def test_timer_measured_from_first_add(self, make_delivery):
        """Later adds do not push the deadline back."""
        sink = RecordingSink()
        accumulator = BatchAccumulator("orders", sink, max_size=50, flush_timeout=0.2)

        await accumulator.add(make_delivery())
        await asyncio.sleep(0.15)
        await accumulator.add(make_delivery())
        await asyncio.sleep(0.1)

        assert sink.sizes == [2]

    @pytest.mark.asyncio
    async def test_empty_flush_is_noop(self):
        sink = RecordingSink()
        accumulator = BatchAccumulator("customers", sink, max_size=10, flush_timeout=0.1)

        await accumulator.flush()
        await asyncio.sleep(0.15)

        assert sink.batches == []
        assert accumulator.stats["batches_flushed"] == 0

    @pytest.mark.asyncio
    async def test_customers_split_into_full_and_timed_batch(self, make_delivery):
        """150 customers with max_size 100 flush as 100 at once, then 50 at the timeout."""
        sink = RecordingSink()
        accumulator = BatchAccumulator("customers", sink, max_size=100, flush_timeout=0.2)

        for _ in range(150):
            await accumulator.add(make_delivery())

        assert sink.sizes == [100]
        assert accumulator.buffered == 50

        await asyncio.sleep(0.3)
        assert sink.sizes == [100, 50]
        assert accumulator.buffered == 0

    @pytest.mark.asyncio
    async def test_adds_during_flush_go_to_next_batch(self, make_delivery):
        """Messages arriving while a sink call is in flight wait for the next batch."""
        sink = RecordingSink(delay=0.2)
        accumulator = BatchAccumulator("customers", sink, max_size=2, flush_timeout=0.5)

        first = [make_delivery(), make_delivery()]
        await accumulator.add(first[0])
        flushing = asyncio.create_task(accumulator.add(first[1]))
        await asyncio.sleep(0.05)
        assert accumulator.state == "FLUSHING"

        late = make_delivery()
        await accumulator.add(late)
        assert accumulator.buffered == 1
        # No timer while a flush is in flight
        assert accumulator.timer_pending is False

        await flushing
        assert sink.batches == [[d.message_id for d in first]]
        assert accumulator.timer_pending is True

        await asyncio.sleep(0.45)
        assert sink.batches[1] == [late.message_id]
        assert sink.max_active == 1

    @pytest.mark.asyncio
    async def test_sink_failure_requeues_whole_batch(self, make_delivery, broker):
        sink = RecordingSink()
        sink.fail = True
        accumulator = BatchAccumulator("orders", sink, max_size=3, flush_timeout=10.0)

        deliveries = [make_delivery(queue="order_queue") for _ in range(3)]
        for delivery in deliveries:
            await accumulator.add(delivery)

        assert broker.acked == []
        assert broker.nacked == [d.message_id for d in deliveries]
        assert len(broker.ready["order_queue"]) == 3
        assert accumulator.stats["batches_failed"] == 1
        assert accumulator.stats["records_requeued"] == 3
        assert accumulator.state == "IDLE"

    @pytest.mark.asyncio
    async def test_outage_is_retried_before_requeue(self, make_delivery, broker):
        sink = RecordingSink()
        sink.outages = 2
        accumulator = BatchAccumulator(
            "orders", sink, max_size=3, flush_timeout=10.0,
            retry=RetryConfig(max_attempts=3, initial_backoff_seconds=0.01, jitter=False),
            retry_on=(OSError,)
        )

        deliveries = [make_delivery(queue="order_queue") for _ in range(3)]
        for delivery in deliveries:
            await accumulator.add(delivery)

        assert sink.calls == 3
        assert sink.sizes == [3]
        assert broker.acked == [d.message_id for d in deliveries]
        assert broker.nacked == []
        assert accumulator.stats["batches_failed"] == 0

    @pytest.mark.asyncio
    async def test_outage_outlasting_retries_requeues_batch(self, make_delivery, broker):
        sink = RecordingSink()
        sink.outages = 5
        accumulator = BatchAccumulator(
            "orders", sink, max_size=2, flush_timeout=10.0,
            retry=RetryConfig(max_attempts=2, initial_backoff_seconds=0.01, jitter=False),
            retry_on=(OSError,)
        )

        for _ in range(2):
            await accumulator.add(make_delivery(queue="order_queue"))

        assert sink.calls == 2
        assert len(broker.nacked) == 2
        assert accumulator.stats["batches_failed"] == 1
        assert accumulator.stats["records_requeued"] == 2

    @pytest.mark.asyncio
    async def test_rejected_record_does_not_sink_the_batch(self, make_delivery, broker):
        sink = RecordingSink()
        accumulator = BatchAccumulator(
            "orders", sink, max_size=8, flush_timeout=10.0, isolate_on=(RejectedRecordsError,)
        )
        deliveries = [make_delivery(queue="order_queue") for _ in range(8)]
        bad = deliveries[5]
        sink.reject = {bad.message_id}

        for delivery in deliveries:
            await accumulator.add(delivery)

        good = [d.message_id for d in deliveries if d is not bad]
        written = [message_id for batch in sink.batches for message_id in batch]
        assert written == good
        assert sorted(broker.acked) == sorted(good)
        assert broker.nacked == [bad.message_id]
        assert list(broker.ready["order_queue"])[0]["id"] == bad.message_id
        assert accumulator.stats["records_rejected"] == 1
        assert accumulator.stats["records_flushed"] == 7
        assert accumulator.stats["batches_failed"] == 0

    @pytest.mark.asyncio
    async def test_dead_lettered_records_are_not_counted_as_requeued(self, make_delivery, broker):
        sink = RecordingSink()
        sink.fail = True
        accumulator = BatchAccumulator("orders", sink, max_size=3, flush_timeout=10.0)

        deliveries = [make_delivery(queue="order_queue") for _ in range(3)]
        # Broker allows 3 deliveries
        deliveries[0].deliveries = 3
        for delivery in deliveries:
            await accumulator.add(delivery)

        assert accumulator.stats["records_requeued"] == 2
        assert accumulator.stats["records_dead_lettered"] == 1
        assert [e["id"] for e in broker.dead["order_queue"]] == [deliveries[0].message_id]

    @pytest.mark.asyncio
    async def test_settle_failure_does_not_stop_batch(self, make_delivery):
        sink = RecordingSink()
        accumulator = BatchAccumulator("customers", sink, max_size=2, flush_timeout=10.0)

        broken = make_delivery()
        broken.broker = AsyncMock()
        broken.broker.ack.side_effect = ConnectionError("redis went away")
        healthy = make_delivery()

        await accumulator.add(broken)
        await accumulator.add(healthy)

        assert healthy.settled is True
        assert accumulator.stats["batches_flushed"] == 1

    @pytest.mark.asyncio
    async def test_drain_flushes_buffer(self, make_delivery, broker):
        sink = RecordingSink()
        accumulator = BatchAccumulator("customers", sink, max_size=100, flush_timeout=10.0)

        for _ in range(5):
            await accumulator.add(make_delivery())

        await accumulator.drain()

        assert sink.sizes == [5]
        assert len(broker.acked) == 5
        assert accumulator.timer_pending is False
        assert accumulator.state == "IDLE"

    @pytest.mark.asyncio
    async def test_drain_waits_for_in_flight_flush(self, make_delivery, broker):
        sink = RecordingSink(delay=0.1)
        accumulator = BatchAccumulator("customers", sink, max_size=2, flush_timeout=10.0)

        await accumulator.add(make_delivery())
        flushing = asyncio.create_task(accumulator.add(make_delivery()))
        await asyncio.sleep(0.02)

        await accumulator.drain()

        assert sink.sizes == [2]
        assert len(broker.acked) == 2
        await flushing

    @pytest.mark.asyncio
    async def test_get_stats(self, make_delivery):
        accumulator = BatchAccumulator("orders", RecordingSink(), max_size=5, flush_timeout=10.0)
        await accumulator.add(make_delivery())

        stats = accumulator.get_stats()

        assert stats["buffered"] == 1
        assert stats["messages_added"] == 1
        assert stats["state"] == "ACCUMULATING"
        assert stats["max_size"] == 5

        await accumulator.drain()
