"""Pytest configuration and shared fixtures."""

import asyncio
import uuid
from collections import defaultdict, deque
from typing import Any, Dict, List, Optional

import pytest

from crm_pipeline.clients.queue_broker import Delivery, QueueBroker, encode_envelope
from crm_pipeline.config.settings import (
    BatchConfig,
    BrokerConfig,
    CRMSettings,
    DatabaseConfig,
    PipelineConfig,
    RetryConfig,
)
from crm_pipeline.db_writer import CUSTOMER_COLUMNS, ORDER_COLUMNS
from crm_pipeline.exceptions import BrokerError


class InMemoryBroker(QueueBroker):
    """Broker double with the same ack/nack contract as the Redis broker."""

    def __init__(self, max_redeliveries: int = 5):
        self.max_redeliveries = max_redeliveries
        self.ready: Dict[str, deque] = defaultdict(deque)
        self.processing: Dict[str, List[Delivery]] = defaultdict(list)
        self.dead: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.published: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.acked: List[str] = []
        self.nacked: List[str] = []
        self.fail_publish = False
        self._running = False

    async def connect(self):
        self._running = True

    async def close(self):
        self._running = False

    async def publish(self, queue: str, payload: Dict[str, Any]) -> str:
        if self.fail_publish:
            raise BrokerError("broker unavailable")
        message_id = uuid.uuid4().hex
        self.ready[queue].append({"id": message_id, "body": payload, "deliveries": 0})
        self.published[queue].append(payload)
        return message_id

    async def consume(self, queue: str):
        while self._running:
            if not self.ready[queue]:
                await asyncio.sleep(0.01)
                continue
            envelope = self.ready[queue].popleft()
            delivery = Delivery(
                queue=queue,
                message_id=envelope["id"],
                body=envelope["body"],
                deliveries=envelope["deliveries"] + 1,
                raw=encode_envelope(envelope["id"], envelope["body"], envelope["deliveries"]),
                broker=self,
            )
            self.processing[queue].append(delivery)
            yield delivery

    async def ack(self, delivery: Delivery):
        if delivery.settled:
            return
        self.processing[delivery.queue].remove(delivery)
        delivery.settled = True
        self.acked.append(delivery.message_id)

    async def nack(self, delivery: Delivery, requeue: bool = True) -> bool:
        if delivery.settled:
            return False
        self.processing[delivery.queue].remove(delivery)
        delivery.settled = True
        self.nacked.append(delivery.message_id)
        envelope = {"id": delivery.message_id, "body": delivery.body, "deliveries": delivery.deliveries}
        if requeue and delivery.deliveries < self.max_redeliveries:
            self.ready[delivery.queue].append(envelope)
            return True
        self.dead[delivery.queue].append(envelope)
        return False

    async def recover(self, queue: str) -> int:
        return 0

    async def requeue_dead_letters(self, queue: str) -> int:
        replayed = len(self.dead[queue])
        for envelope in self.dead.pop(queue, []):
            self.ready[queue].append(dict(envelope, deliveries=0))
        return replayed

    async def queue_depths(self, queue: str) -> Dict[str, int]:
        return {
            "ready": len(self.ready[queue]),
            "in_flight": len(self.processing[queue]),
            "dead": len(self.dead[queue]),
        }


class FakeConnection:
    """
    Minimal asyncpg connection that applies the bulk statements to dicts.

    Customers are keyed by email and overwritten on conflict; orders are
    keyed by ingest key and skipped on conflict, matching the SQL the
    writer generates.
    """

    def __init__(self, store: "FakePool"):
        self.store = store

    async def execute(self, query: str, *args):
        self.store.statements.append((query, args))
        if self.store.delay:
            await asyncio.sleep(self.store.delay)
        if self.store.fail_on is not None:
            failure = self.store.fail_on(query, args)
            if isinstance(failure, BaseException):
                raise failure
            if failure:
                raise OSError("connection reset by peer")

        if "INSERT INTO customers" in query:
            width = len(CUSTOMER_COLUMNS)
            for i in range(0, len(args), width):
                row = dict(zip(CUSTOMER_COLUMNS, args[i:i + width]))
                self.store.customers[row["email"]] = row
            return f"INSERT 0 {len(args) // width}"

        if "INSERT INTO orders" in query:
            width = len(ORDER_COLUMNS)
            inserted = 0
            for i in range(0, len(args), width):
                row = dict(zip(ORDER_COLUMNS, args[i:i + width]))
                if row["ingest_key"] not in self.store.orders:
                    self.store.orders[row["ingest_key"]] = row
                    inserted += 1
            return f"INSERT 0 {inserted}"

        return "CREATE TABLE"

    async def fetchval(self, query: str, *args):
        if "FROM customers" in query:
            return len(self.store.customers)
        if "FROM orders" in query:
            return len(self.store.orders)
        return 1


class _Acquire:
    def __init__(self, store: "FakePool"):
        self.store = store

    async def __aenter__(self) -> FakeConnection:
        self.store.active += 1
        self.store.max_active = max(self.store.max_active, self.store.active)
        return FakeConnection(self.store)

    async def __aexit__(self, exc_type, exc, tb):
        self.store.active -= 1
        return False


class FakePool:
    def __init__(self):
        self.customers: Dict[str, Dict[str, Any]] = {}
        self.orders: Dict[str, Dict[str, Any]] = {}
        self.statements: List[tuple] = []
        self.delay = 0.0
        self.fail_on = None
        self.active = 0
        self.max_active = 0
        self.closed = False

    def acquire(self) -> _Acquire:
        return _Acquire(self)

    async def close(self):
        self.closed = True

    def get_size(self):
        return 1

    def get_max_size(self):
        return 10

    def get_min_size(self):
        return 1

    def get_idle_size(self):
        return 1


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker(max_redeliveries=3)


@pytest.fixture
def fake_pool() -> FakePool:
    return FakePool()


@pytest.fixture
def broker_config() -> BrokerConfig:
    return BrokerConfig(key_prefix="test", block_timeout_seconds=0.1, max_redeliveries=3)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Short timeouts so timer-driven flushes happen within a test."""
    return PipelineConfig(
        customers=BatchConfig(max_size=100, flush_timeout_seconds=0.3, write_chunk_size=100, write_concurrency=1),
        orders=BatchConfig(max_size=50, flush_timeout_seconds=0.2, write_chunk_size=50, write_concurrency=4),
    )


@pytest.fixture
def test_config(broker_config, pipeline_config) -> CRMSettings:
    """Create test configuration."""
    return CRMSettings(
        service_name="test-crm-ingest",
        environment="local",
        mode="all",
        broker=broker_config,
        database=DatabaseConfig(name="crm_test", create_schema=False),
        pipeline=pipeline_config,
        retry=RetryConfig(max_attempts=2, initial_backoff_seconds=0.01, jitter=False)
    )


@pytest.fixture
def make_delivery(broker):
    """Build deliveries that settle against the in-memory broker."""
    def _make(body: Optional[Dict[str, Any]] = None, queue: str = "test_queue",
              message_id: Optional[str] = None) -> Delivery:
        message_id = message_id or uuid.uuid4().hex
        delivery = Delivery(
            queue=queue,
            message_id=message_id,
            body=body or {},
            deliveries=1,
            raw=encode_envelope(message_id, body or {}),
            broker=broker,
        )
        broker.processing[queue].append(delivery)
        return delivery
    return _make


@pytest.fixture
def sample_customer() -> Dict[str, Any]:
    """Sample customer payload as posted to the API."""
    return {
        "firstName": "Ada",
        "lastName": "Lovelace",
        "email": "Ada@Example.com",
        "phone": "555-123-4567",
        "company": "Analytical Engines",
        "city": "London",
        "tags": ["vip", "newsletter"],
    }


@pytest.fixture
def sample_order() -> Dict[str, Any]:
    """Sample order payload as posted to the API."""
    return {
        "customerId": "8d7f4a38-3c39-4c8e-9a9c-1f2b3c4d5e6f",
        "items": [
            {"productId": "SKU-1", "name": "Keyboard", "price": 49.99, "quantity": 2},
            {"productId": "SKU-2", "name": "Mouse", "price": 19.5, "quantity": 1},
        ],
        "totalAmount": 119.48,
        "paymentMethod": "card",
        "shippingAddress": {"street": "1 Main St", "city": "Springfield", "zipCode": "12345"},
    }
