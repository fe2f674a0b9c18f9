"""Queue consumers that feed decoded payloads into batch accumulators."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Type

from pydantic import ValidationError

from .accumulator import BatchAccumulator, BatchSink
from .clients.queue_broker import Delivery, QueueBroker
from .config.settings import CRMSettings
from .db_writer import TRANSIENT_ERRORS, DatabaseWriter
from .exceptions import DecodeError, RejectedRecordsError, TransientPersistenceError
from .models import CustomerInput, OrderInput, PayloadModel, format_errors


logger = logging.getLogger(__name__)

# Pool checkouts raise the driver errors unwrapped
WRITE_RETRY_ERRORS = (TransientPersistenceError,) + TRANSIENT_ERRORS


def decode_payload(delivery: Delivery, model: Type[PayloadModel]) -> PayloadModel:
    """Validate a delivery body against ``model``, raising DecodeError."""
    try:
        return model.model_validate(delivery.body)
    except ValidationError as e:
        raise DecodeError(
            f"Message {delivery.message_id} on {delivery.queue} is not a valid "
            f"{model.__name__}",
            errors=format_errors(e)
        ) from e


def customer_sink(writer: DatabaseWriter) -> BatchSink:
    async def sink(batch: List[Delivery]):
        await writer.write_customers([delivery.payload for delivery in batch])
    return sink


def order_sink(writer: DatabaseWriter) -> BatchSink:
    # The broker message id doubles as the order's ingest key
    async def sink(batch: List[Delivery]):
        await writer.write_orders([(delivery.message_id, delivery.payload) for delivery in batch])
    return sink


class QueueConsumer:
    """
    Consumes one queue and hands each decoded delivery to an accumulator.

    Deliveries are handled one at a time. A body that fails validation is
    negatively acknowledged with requeue, so the broker's redelivery limit
    eventually moves it to the dead-letter list. Errors raised by the broker
    while consuming are logged and consumption resumes after a pause.
    """

    def __init__(
        self,
        name: str,
        queue: str,
        broker: QueueBroker,
        model: Type[PayloadModel],
        accumulator: BatchAccumulator,
        error_backoff_seconds: float = 5.0
    ):
        self.name = name
        self.queue = queue
        self.broker = broker
        self.model = model
        self.accumulator = accumulator
        self.error_backoff_seconds = error_backoff_seconds

        self._running = False
        self._handling = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            "messages_received": 0,
            "decode_errors": 0,
            "loop_errors": 0,
            "recovered_on_start": 0,
            "last_message_time": None
        }

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self):
        """Recover unacknowledged messages, then start the consume loop."""
        logger.info(f"Starting {self.name} consumer on {self.queue}")
        self.stats["recovered_on_start"] = await self.broker.recover(self.queue)
        self._running = True
        self._task = asyncio.create_task(self._consume_loop(), name=f"{self.name}-consumer")

    async def stop(self):
        """
        Stop consuming and drain the accumulator.

        A loop blocked on the broker is cancelled right away; one that is
        handling a delivery finishes it first.
        """
        logger.info(f"Stopping {self.name} consumer")
        self._running = False

        if self._task:
            if not self._handling:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.accumulator.drain()
        logger.info(f"{self.name} consumer stopped")

    async def _consume_loop(self):
        while self._running:
            deliveries = self.broker.consume(self.queue)
            try:
                async for delivery in deliveries:
                    self._handling = True
                    try:
                        await self._handle(delivery)
                    finally:
                        self._handling = False
                    if not self._running:
                        break
                else:
                    if self._running:
                        # The broker stopped yielding without being asked to
                        logger.warning(f"{self.name} consumer stream ended, resubscribing")
                        await asyncio.sleep(self.error_backoff_seconds)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["loop_errors"] += 1
                logger.error(f"Error in {self.name} consume loop: {e}", exc_info=True)
                await asyncio.sleep(self.error_backoff_seconds)
            finally:
                await deliveries.aclose()

    async def _handle(self, delivery: Delivery):
        self.stats["messages_received"] += 1
        self.stats["last_message_time"] = datetime.now()

        try:
            delivery.payload = decode_payload(delivery, self.model)
        except DecodeError as e:
            self.stats["decode_errors"] += 1
            logger.warning(
                f"{e} (delivery {delivery.deliveries}); requeueing",
                extra={"errors": e.errors}
            )
            await delivery.nack(requeue=True)
            return

        await self.accumulator.add(delivery)

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy" if self.running else "unhealthy",
            "queue": self.queue,
            "stats": self.stats.copy(),
            "accumulator": self.accumulator.get_stats()
        }
        if not self.running:
            health_status["error"] = "Consumer loop is not running"
        return health_status


def build_consumers(
    settings: CRMSettings,
    broker: QueueBroker,
    writer: DatabaseWriter
) -> List[QueueConsumer]:
    """Create the customer and order consumers described by ``settings``."""
    customers = settings.pipeline.customers
    orders = settings.pipeline.orders
    write_policy = {
        "retry": settings.pipeline.write_retry,
        "retry_on": WRITE_RETRY_ERRORS,
        "isolate_on": (RejectedRecordsError,),
    }

    return [
        QueueConsumer(
            name="customers",
            queue=settings.broker.customer_queue,
            broker=broker,
            model=CustomerInput,
            accumulator=BatchAccumulator(
                "customers", customer_sink(writer),
                max_size=customers.max_size,
                flush_timeout=customers.flush_timeout_seconds,
                **write_policy
            ),
        ),
        QueueConsumer(
            name="orders",
            queue=settings.broker.order_queue,
            broker=broker,
            model=OrderInput,
            accumulator=BatchAccumulator(
                "orders", order_sink(writer),
                max_size=orders.max_size,
                flush_timeout=orders.flush_timeout_seconds,
                **write_policy
            ),
        ),
    ]
