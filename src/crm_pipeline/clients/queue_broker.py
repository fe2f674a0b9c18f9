"""Durable named queues with manual acknowledgment, backed by Redis lists.

Each queue ``q`` owns three lists under the configured prefix:

- ``<prefix>:q``             ready messages (pushed left, popped right)
- ``<prefix>:q:processing``  delivered but not yet acknowledged
- ``<prefix>:q:dead``        messages that exhausted their redeliveries

A delivery is atomically moved from ready to processing with ``BLMOVE``, so a
consumer that dies before acknowledging leaves its messages in processing,
where ``recover()`` finds them on the next start.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import ConnectionError, RedisError, TimeoutError, WatchError

from ..config.settings import BrokerConfig
from ..exceptions import BrokerError


logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """One message handed to a consumer, plus the handle needed to settle it."""
    queue: str
    message_id: str
    body: Any
    deliveries: int
    raw: str
    broker: "QueueBroker" = field(repr=False)
    published_at: Optional[float] = None
    payload: Any = None  # decoded entity, set by the consumer
    settled: bool = False

    async def ack(self):
        await self.broker.ack(self)

    async def nack(self, requeue: bool = True) -> bool:
        return await self.broker.nack(self, requeue=requeue)


class QueueBroker:
    """Interface shared by the Redis broker and test doubles."""

    async def connect(self):
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str:
        raise NotImplementedError

    def consume(self, queue: str) -> AsyncIterator[Delivery]:
        raise NotImplementedError

    async def ack(self, delivery: Delivery):
        raise NotImplementedError

    async def nack(self, delivery: Delivery, requeue: bool = True) -> bool:
        """Settle a delivery negatively; True when it went back to the queue."""
        raise NotImplementedError

    async def recover(self, queue: str) -> int:
        return 0

    async def requeue_dead_letters(self, queue: str) -> int:
        return 0

    async def queue_depths(self, queue: str) -> Dict[str, int]:
        return {}

    async def health_check(self) -> Dict[str, Any]:
        return {"status": "healthy"}


def encode_envelope(message_id: str, body: Any, deliveries: int = 0,
                    published_at: Optional[float] = None) -> str:
    return json.dumps({
        "id": message_id,
        "body": body,
        "deliveries": deliveries,
        "publishedAt": published_at if published_at is not None else time.time(),
    }, separators=(',', ':'))


def decode_envelope(raw: str) -> Dict[str, Any]:
    """Parse an envelope, raising ValueError when it is not one."""
    envelope = json.loads(raw)
    if not isinstance(envelope, dict) or "id" not in envelope or "body" not in envelope:
        raise ValueError("Message is not a queue envelope")
    return envelope


class RedisQueueBroker(QueueBroker):
    """Reliable-queue broker over redis.asyncio."""

    def __init__(self, config: BrokerConfig, client: Optional[redis.Redis] = None):
        self.config = config
        self.redis_client: Optional[redis.Redis] = client
        self._running = False

        self.stats = {
            "published": 0,
            "delivered": 0,
            "acked": 0,
            "requeued": 0,
            "dead_lettered": 0,
            "connection_errors": 0,
            "last_delivery_time": None
        }

        logger.info(f"RedisQueueBroker initialized for {config.url}")

    # Keys

    def ready_key(self, queue: str) -> str:
        return f"{self.config.key_prefix}:{queue}"

    def processing_key(self, queue: str) -> str:
        return f"{self.config.key_prefix}:{queue}:processing"

    def dead_key(self, queue: str) -> str:
        return f"{self.config.key_prefix}:{queue}:dead"

    # Lifecycle

    async def connect(self):
        """Open the Redis connection and verify it."""
        try:
            if self.redis_client is None:
                self.redis_client = redis.Redis.from_url(
                    self.config.url,
                    socket_timeout=self.config.socket_timeout + self.config.block_timeout_seconds,
                    socket_connect_timeout=self.config.socket_timeout,
                    health_check_interval=30,
                    decode_responses=True
                )
            await self.redis_client.ping()
            self._running = True
            logger.info("Redis broker connection established")
        except (ConnectionError, TimeoutError) as e:
            self.stats["connection_errors"] += 1
            raise BrokerError(f"Could not connect to Redis at {self.config.url}: {e}") from e

    async def close(self):
        self._running = False
        if self.redis_client:
            logger.info("Closing Redis broker connection")
            await self.redis_client.aclose()
            self.redis_client = None

    def _client(self) -> redis.Redis:
        if self.redis_client is None:
            raise BrokerError("Broker not connected")
        return self.redis_client

    # Producer side

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str:
        """Enqueue one payload; returns the broker message id."""
        message_id = uuid.uuid4().hex
        raw = encode_envelope(message_id, payload)
        try:
            await self._client().lpush(self.ready_key(queue), raw)
        except RedisError as e:
            self.stats["connection_errors"] += 1
            raise BrokerError(f"Failed to publish to {queue}: {e}") from e

        self.stats["published"] += 1
        return message_id

    # Consumer side

    async def consume(self, queue: str) -> AsyncIterator[Delivery]:
        """Yield deliveries one at a time until the broker is closed."""
        ready = self.ready_key(queue)
        processing = self.processing_key(queue)

        while self._running:
            try:
                raw = await self._client().blmove(
                    ready, processing, self.config.block_timeout_seconds, "RIGHT", "LEFT"
                )
            except (ConnectionError, TimeoutError) as e:
                self.stats["connection_errors"] += 1
                raise BrokerError(f"Lost connection while consuming {queue}: {e}") from e

            if raw is None:
                continue

            try:
                envelope = decode_envelope(raw)
            except ValueError as e:
                logger.error(f"Unreadable message on {queue}, dead-lettering: {e}")
                await self._dead_letter_raw(queue, raw)
                continue

            self.stats["delivered"] += 1
            self.stats["last_delivery_time"] = datetime.now()

            yield Delivery(
                queue=queue,
                message_id=envelope["id"],
                body=envelope["body"],
                deliveries=int(envelope.get("deliveries", 0)) + 1,
                raw=raw,
                broker=self,
                published_at=envelope.get("publishedAt"),
            )

    async def ack(self, delivery: Delivery):
        """Drop a delivery from the processing list."""
        if delivery.settled:
            return
        await self._client().lrem(self.processing_key(delivery.queue), 1, delivery.raw)
        delivery.settled = True
        self.stats["acked"] += 1

    async def nack(self, delivery: Delivery, requeue: bool = True) -> bool:
        """
        Return a delivery to its queue, or dead-letter it.

        Requeued messages go to the back of the queue carrying their delivery
        count. Once ``max_redeliveries`` is reached, or when ``requeue`` is
        false, the message moves to the dead-letter list instead. Returns
        True when the message was requeued.
        """
        if delivery.settled:
            return False

        envelope = encode_envelope(
            delivery.message_id, delivery.body, delivery.deliveries, delivery.published_at
        )
        dead = not requeue or delivery.deliveries >= self.config.max_redeliveries
        target = self.dead_key(delivery.queue) if dead else self.ready_key(delivery.queue)

        async with self._client().pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key(delivery.queue), 1, delivery.raw)
            pipe.lpush(target, envelope)
            await pipe.execute()

        delivery.settled = True
        if dead:
            self.stats["dead_lettered"] += 1
            logger.warning(
                f"Dead-lettered message {delivery.message_id} from {delivery.queue} "
                f"after {delivery.deliveries} deliveries"
            )
        else:
            self.stats["requeued"] += 1
        return not dead

    async def _dead_letter_raw(self, queue: str, raw: str):
        async with self._client().pipeline(transaction=True) as pipe:
            pipe.lrem(self.processing_key(queue), 1, raw)
            pipe.lpush(self.dead_key(queue), raw)
            await pipe.execute()
        self.stats["dead_lettered"] += 1

    def _recovered(self, raw: str) -> Tuple[str, bool]:
        """Count the interrupted delivery; returns the new raw and whether it is dead."""
        try:
            envelope = decode_envelope(raw)
        except ValueError:
            return raw, True

        deliveries = int(envelope.get("deliveries", 0)) + 1
        bumped = encode_envelope(envelope["id"], envelope["body"], deliveries, envelope.get("publishedAt"))
        return bumped, deliveries >= self.config.max_redeliveries

    async def recover(self, queue: str) -> int:
        """
        Move unacknowledged messages left by a previous consumer back to ready.

        The interrupted delivery counts toward ``max_redeliveries``, so a
        message that keeps crashing its consumer ends up dead-lettered.
        Recovered messages are redelivered oldest first, ahead of anything
        already waiting. Returns the number moved back to ready.
        """
        processing = self.processing_key(queue)
        ready = self.ready_key(queue)

        async with self._client().pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(processing)
                    pending = await pipe.lrange(processing, 0, -1)
                    if not pending:
                        return 0

                    pipe.multi()
                    recovered = dead = 0
                    # Newest is leftmost; pushing in that order leaves the oldest at the consuming end
                    for raw in pending:
                        bumped, exhausted = self._recovered(raw)
                        if exhausted:
                            pipe.lpush(self.dead_key(queue), bumped)
                            dead += 1
                        else:
                            pipe.rpush(ready, bumped)
                            recovered += 1
                    pipe.delete(processing)
                    await pipe.execute()
                    break
                except WatchError:
                    continue

        self.stats["dead_lettered"] += dead
        logger.info(
            f"Recovered {recovered} unacknowledged messages on {queue}"
            + (f", dead-lettered {dead}" if dead else "")
        )
        return recovered

    async def requeue_dead_letters(self, queue: str) -> int:
        """
        Replay dead letters, oldest first, with a fresh delivery count.

        Each message moves in one transaction. Unreadable entries stay on
        the dead-letter list.
        """
        dead = self.dead_key(queue)
        ready = self.ready_key(queue)
        replayed = skipped = 0

        try:
            async with self._client().pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(dead)
                        raw = await pipe.lindex(dead, -1 - skipped)
                        if raw is None:
                            break

                        try:
                            envelope = decode_envelope(raw)
                        except ValueError:
                            logger.warning(f"Leaving unreadable dead letter on {queue}")
                            skipped += 1
                            continue

                        pipe.multi()
                        pipe.lrem(dead, -1, raw)
                        pipe.lpush(ready, encode_envelope(
                            envelope["id"], envelope["body"], 0, envelope.get("publishedAt")
                        ))
                        await pipe.execute()
                        replayed += 1
                    except WatchError:
                        continue
        except RedisError as e:
            raise BrokerError(f"Failed to requeue dead letters on {queue}: {e}") from e

        logger.info(f"Requeued {replayed} dead letters on {queue}")
        return replayed

    async def queue_depths(self, queue: str) -> Dict[str, int]:
        try:
            async with self._client().pipeline(transaction=False) as pipe:
                pipe.llen(self.ready_key(queue))
                pipe.llen(self.processing_key(queue))
                pipe.llen(self.dead_key(queue))
                ready, in_flight, dead = await pipe.execute()
        except RedisError as e:
            raise BrokerError(f"Failed to read depths of {queue}: {e}") from e
        return {"ready": ready, "in_flight": in_flight, "dead": dead}

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "stats": self.stats.copy()
        }

        try:
            if not self.redis_client:
                health_status["status"] = "unhealthy"
                health_status["error"] = "Broker not connected"
                return health_status

            await self.redis_client.ping()

            health_status["queues"] = {
                queue: await self.queue_depths(queue)
                for queue in (self.config.customer_queue, self.config.order_queue)
            }
            if any(depths["dead"] for depths in health_status["queues"].values()):
                health_status["status"] = "degraded"
                health_status["warning"] = "Dead-lettered messages awaiting inspection"

        except (RedisError, BrokerError) as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)

        return health_status
