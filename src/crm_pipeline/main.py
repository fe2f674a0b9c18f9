"""CRM Ingest Service - HTTP intake, queue consumers and bulk persistence."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
from redis.exceptions import RedisError

from .api import APIServer
from .clients.queue_broker import RedisQueueBroker
from .config.settings import load_settings
from .consumer import QueueConsumer, build_consumers
from .db_writer import DatabaseWriter
from .exceptions import BrokerError
from .utils.logging import setup_logging
from .utils.retry import retry_with_config


logger = logging.getLogger(__name__)


class CRMIngestService:
    """Main ingestion service; runs the API, the consumers, or both."""

    def __init__(self, config_file: str = "config/local.yaml"):
        self.config = load_settings(config_file)
        self.broker: Optional[RedisQueueBroker] = None
        self.db_writer: Optional[DatabaseWriter] = None
        self.consumers: List[QueueConsumer] = []
        self.api_server: Optional[APIServer] = None
        self._shutdown_event = asyncio.Event()

        setup_logging(self.config.logging, self.config.service_name)
        logger.info(
            f"CRM Ingest Service initialized (mode={self.config.mode}, "
            f"environment={self.config.environment})"
        )

    async def start(self):
        """Start all components, run until signalled, then shut down."""
        logger.info("Starting CRM Ingest Service")

        try:
            await self._start_components()
            self._setup_signal_handlers()
            logger.info("CRM Ingest Service started")

            await self._shutdown_event.wait()
        finally:
            await self.stop()

    async def _start_components(self):
        self.broker = RedisQueueBroker(self.config.broker)
        await retry_with_config(
            self.broker.connect, self.config.retry,
            exceptions=(BrokerError, RedisError, OSError),
            operation="Broker connection"
        )

        if self.config.runs_consumers:
            self.db_writer = DatabaseWriter(self.config.database, self.config.pipeline)
            await retry_with_config(
                self.db_writer.initialize, self.config.retry,
                exceptions=(OSError, asyncio.TimeoutError, asyncpg.CannotConnectNowError),
                operation="Database initialization"
            )

            self.consumers = build_consumers(self.config, self.broker, self.db_writer)
            for consumer in self.consumers:
                await consumer.start()

        if self.config.runs_api:
            self.api_server = APIServer(
                self.config.api, self.broker, self.config.broker,
                health_check=self.health_check,
                service_name=self.config.service_name
            )
            await self.api_server.start()

    async def stop(self):
        """
        Graceful shutdown.

        HTTP intake stops first, then each consumer stops and drains its
        accumulator, so every buffered delivery is written and acknowledged
        before the database pool and broker connection close.
        """
        logger.info("Shutting down CRM Ingest Service")

        if self.api_server:
            await self.api_server.stop()
            self.api_server = None

        for consumer in self.consumers:
            try:
                await consumer.stop()
            except Exception as e:
                logger.error(f"Error stopping {consumer.name} consumer: {e}", exc_info=True)
        self.consumers = []

        if self.db_writer:
            await self.db_writer.close()
            self.db_writer = None

        if self.broker:
            await self.broker.close()
            self.broker = None

        logger.info("CRM Ingest Service stopped")

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            logger.info(f"Received signal {signum}, initiating shutdown")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    async def health_check(self) -> Dict[str, Any]:
        """Aggregate component health."""
        health_status = {
            "service": self.config.service_name,
            "status": "healthy",
            "mode": self.config.mode,
            "timestamp": datetime.now().isoformat(),
            "components": {}
        }

        if self.broker:
            health_status["components"]["broker"] = await self.broker.health_check()

        if self.db_writer:
            health_status["components"]["database"] = await self.db_writer.health_check()

        for consumer in self.consumers:
            health_status["components"][f"{consumer.name}_consumer"] = await consumer.health_check()

        if self.api_server:
            health_status["components"]["api"] = {
                "status": "healthy",
                "stats": self.api_server.ingest_stats
            }

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if any(status == "unhealthy" for status in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(status == "degraded" for status in component_statuses):
            health_status["status"] = "degraded"

        return health_status


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE", "config/local.yaml")
    service = CRMIngestService(config_file)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
