"""Queue broker clients."""

from .queue_broker import Delivery, QueueBroker, RedisQueueBroker

__all__ = ["Delivery", "QueueBroker", "RedisQueueBroker"]
