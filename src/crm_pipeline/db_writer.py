"""Bulk writes of customer and order batches to PostgreSQL."""

import asyncio
import json
import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import asyncpg
from asyncpg import Connection, Pool

from .config.settings import DatabaseConfig, PipelineConfig
from .exceptions import PersistenceError, RejectedRecordsError, TransientPersistenceError
from .models import CustomerInput, OrderInput


logger = logging.getLogger(__name__)


CUSTOMER_COLUMNS = [
    "id", "first_name", "last_name", "email", "phone", "company", "job_title",
    "address", "city", "state", "zip_code", "country", "notes", "tags",
]

# Columns overwritten when an existing email is ingested again
CUSTOMER_MUTABLE_COLUMNS = [
    column for column in CUSTOMER_COLUMNS if column not in ("id", "email")
]

ORDER_COLUMNS = [
    "id", "ingest_key", "customer_id", "items", "total_amount", "status",
    "payment_method", "payment_status", "shipping_address", "metadata",
]

JSONB_COLUMNS = {"tags", "items", "shipping_address", "metadata"}

# Lost connections and timeouts; retrying the same statement may succeed
TRANSIENT_ERRORS = (
    OSError,
    asyncio.TimeoutError,
    asyncpg.PostgresConnectionError,
    asyncpg.CannotConnectNowError,
)

# The rows themselves were refused; retrying the same rows fails again
REJECTED_ROW_ERRORS = (
    asyncpg.IntegrityConstraintViolationError,
    asyncpg.DataError,
)


def chunked(rows: Sequence, size: int) -> List[Sequence]:
    return [rows[i:i + size] for i in range(0, len(rows), size)]


def _placeholders(columns: List[str], row_count: int) -> str:
    """Build ``($1, $2::jsonb, ...), (...)`` for a multi-row VALUES clause."""
    groups = []
    width = len(columns)
    for row in range(row_count):
        cells = []
        for offset, column in enumerate(columns, 1):
            cell = f"${row * width + offset}"
            if column in JSONB_COLUMNS:
                cell += "::jsonb"
            cells.append(cell)
        groups.append(f"({', '.join(cells)})")
    return ",\n".join(groups)


def build_customer_upsert(row_count: int) -> str:
    updates = ",\n".join(
        f"{column} = EXCLUDED.{column}" for column in CUSTOMER_MUTABLE_COLUMNS
    )
    return f"""
        INSERT INTO customers ({', '.join(CUSTOMER_COLUMNS)})
        VALUES {_placeholders(CUSTOMER_COLUMNS, row_count)}
        ON CONFLICT (email) DO UPDATE SET
        {updates},
        updated_at = NOW()
    """


def build_order_insert(row_count: int) -> str:
    return f"""
        INSERT INTO orders ({', '.join(ORDER_COLUMNS)})
        VALUES {_placeholders(ORDER_COLUMNS, row_count)}
        ON CONFLICT (ingest_key) DO NOTHING
    """


def customer_row(customer: CustomerInput) -> Tuple:
    return (
        uuid.uuid4(),
        customer.first_name,
        customer.last_name,
        customer.email,
        customer.phone,
        customer.company,
        customer.job_title,
        customer.address,
        customer.city,
        customer.state,
        customer.zip_code,
        customer.country,
        customer.notes,
        json.dumps(customer.tags),
    )


def order_row(ingest_key: str, order: OrderInput) -> Tuple:
    message = order.to_message()
    return (
        uuid.uuid4(),
        ingest_key,
        order.customer_id,
        json.dumps(message["items"]),
        Decimal(str(order.total_amount)),
        order.status,
        order.payment_method,
        order.payment_status,
        json.dumps(message["shippingAddress"]) if order.shipping_address else None,
        json.dumps(order.metadata) if order.metadata is not None else None,
    )


def dedupe_by_email(customers: Sequence[CustomerInput]) -> List[CustomerInput]:
    """Keep the last payload per email, ordered by each email's last position.

    One INSERT ... ON CONFLICT cannot touch the same row twice, and the last
    payload must win to match sequential application.
    """
    latest: Dict[str, CustomerInput] = {}
    for customer in customers:
        latest.pop(customer.email, None)
        latest[customer.email] = customer
    return list(latest.values())


class DatabaseWriter:
    """Handles PostgreSQL pool, schema, and bulk writes."""

    def __init__(self, config: DatabaseConfig, pipeline: PipelineConfig):
        self.config = config
        self.pipeline = pipeline
        self.pool: Optional[Pool] = None

        self.stats = {
            "customers_upserted": 0,
            "orders_inserted": 0,
            "orders_skipped": 0,
            "statements_executed": 0,
            "write_errors": 0,
            "last_write_time": None
        }

        logger.info("DatabaseWriter initialized")

    async def initialize(self):
        """Initialize database connection pool."""
        logger.info("Initializing database connection pool")

        try:
            self.pool = await asyncpg.create_pool(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.name,
                min_size=self.config.pool_min_size,
                max_size=self.config.pool_max_size,
                command_timeout=self.config.command_timeout
            )

            if self.config.create_schema:
                await self._create_tables()

            logger.info("Database connection pool initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            raise

    async def close(self):
        if self.pool:
            logger.info("Closing database connection pool")
            await self.pool.close()
            self.pool = None

    async def _create_tables(self):
        """Create database tables if they don't exist."""
        async with self.pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS customers (
                    id UUID PRIMARY KEY,
                    first_name VARCHAR(255) NOT NULL,
                    last_name VARCHAR(255) NOT NULL,
                    email VARCHAR(255) NOT NULL UNIQUE,
                    phone VARCHAR(64),
                    company VARCHAR(255),
                    job_title VARCHAR(255),
                    address VARCHAR(255),
                    city VARCHAR(255),
                    state VARCHAR(255),
                    zip_code VARCHAR(32),
                    country VARCHAR(255),
                    notes TEXT,
                    tags JSONB NOT NULL DEFAULT '[]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE TABLE IF NOT EXISTS orders (
                    id UUID PRIMARY KEY,
                    ingest_key VARCHAR(64) NOT NULL UNIQUE,
                    customer_id UUID NOT NULL REFERENCES customers(id),
                    items JSONB NOT NULL,
                    total_amount NUMERIC(10,2) NOT NULL,
                    status VARCHAR(20) NOT NULL DEFAULT 'pending',
                    payment_method VARCHAR(100) NOT NULL,
                    payment_status VARCHAR(20) NOT NULL DEFAULT 'unpaid',
                    shipping_address JSONB,
                    metadata JSONB,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
                )
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_customer_id
                ON orders(customer_id)
            """)

            await conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_orders_created_at
                ON orders(created_at)
            """)

            logger.info("Database tables and indexes created successfully")

    async def write_customers(self, customers: Sequence[CustomerInput]) -> int:
        """
        Upsert customers keyed on email.

        Sub-chunks run one after another so a later payload for the same
        email always overwrites an earlier one. The first failing sub-chunk
        stops the write and raises PersistenceError.
        """
        if not customers:
            return 0

        chunk_size = self.pipeline.customers.write_chunk_size
        written = 0

        async with self.pool.acquire() as conn:
            for chunk in chunked(list(customers), chunk_size):
                rows = [customer_row(c) for c in dedupe_by_email(chunk)]
                await self._execute_chunk(conn, build_customer_upsert(len(rows)), rows, "customers")
                written += len(rows)

        self.stats["customers_upserted"] += written
        self.stats["last_write_time"] = datetime.now()
        logger.debug(f"Upserted {written} customers")
        return written

    async def write_orders(self, orders: Sequence[Tuple[str, OrderInput]]) -> int:
        """
        Insert orders, skipping ingest keys that were already written.

        Sub-chunks are written concurrently, at most ``write_concurrency`` at
        a time. When one fails, sub-chunks not yet started are cancelled and
        the error is raised.
        """
        if not orders:
            return 0

        config = self.pipeline.orders
        semaphore = asyncio.Semaphore(config.write_concurrency)

        async def write_chunk(chunk) -> int:
            async with semaphore:
                rows = [order_row(key, order) for key, order in chunk]
                async with self.pool.acquire() as conn:
                    return await self._execute_chunk(conn, build_order_insert(len(rows)), rows, "orders")

        tasks = [
            asyncio.create_task(write_chunk(chunk))
            for chunk in chunked(list(orders), config.write_chunk_size)
        ]
        try:
            inserted = sum(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        self.stats["orders_inserted"] += inserted
        self.stats["orders_skipped"] += len(orders) - inserted
        self.stats["last_write_time"] = datetime.now()
        if inserted < len(orders):
            logger.info(f"Skipped {len(orders) - inserted} already ingested orders")
        return inserted

    async def _execute_chunk(self, conn: Connection, query: str, rows: List[Tuple], entity: str) -> int:
        """Run one multi-row statement; returns the affected row count."""
        args = [value for row in rows for value in row]
        try:
            status = await conn.execute(query, *args)
        except REJECTED_ROW_ERRORS as e:
            self.stats["write_errors"] += 1
            raise RejectedRecordsError(
                f"Bulk write of {len(rows)} {entity} rejected: {e}", entity, len(rows)
            ) from e
        except TRANSIENT_ERRORS as e:
            self.stats["write_errors"] += 1
            raise TransientPersistenceError(
                f"Bulk write of {len(rows)} {entity} interrupted: {e}", entity, len(rows)
            ) from e
        except asyncpg.PostgresError as e:
            self.stats["write_errors"] += 1
            raise PersistenceError(
                f"Bulk write of {len(rows)} {entity} failed: {e}", entity, len(rows)
            ) from e

        self.stats["statements_executed"] += 1
        return _affected_rows(status)

    async def health_check(self) -> Dict[str, Any]:
        """Perform health check on database connection."""
        health_status = {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "stats": self.stats.copy()
        }

        try:
            if not self.pool:
                health_status["status"] = "unhealthy"
                health_status["error"] = "Database pool not initialized"
                return health_status

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")

            health_status["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "min_size": self.pool.get_min_size(),
                "idle_size": self.pool.get_idle_size()
            }

        except Exception as e:
            health_status["status"] = "unhealthy"
            health_status["error"] = str(e)

        return health_status


def _affected_rows(status: str) -> int:
    """Parse asyncpg's command tag, e.g. ``INSERT 0 50``."""
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0
