"""HTTP intake: validate customer and order payloads and publish them."""

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Type

from aiohttp import web, web_request
from aiohttp.web_response import Response
from pydantic import ValidationError

from .clients.queue_broker import QueueBroker
from .config.settings import APIConfig, BrokerConfig
from .exceptions import BrokerError
from .health import HealthCheckHandler, HealthSource
from .models import CustomerInput, OrderInput, PayloadModel, format_errors


logger = logging.getLogger(__name__)


def _error(message: str, status: int, errors: Optional[List[Dict[str, str]]] = None) -> Response:
    body: Dict[str, Any] = {"status": "error", "message": message}
    if errors is not None:
        body["errors"] = errors
    return web.json_response(body, status=status)


def _accepted(message: str) -> Response:
    return web.json_response(
        {"status": "success", "message": message, "requestId": uuid.uuid4().hex},
        status=202
    )


class IngestHandler:
    """Request handlers for the ingestion endpoints.

    Nothing is written to the database here; a valid payload is published to
    its queue and acknowledged with 202.
    """

    def __init__(self, broker: QueueBroker, config: BrokerConfig):
        self.broker = broker
        self.config = config

        self.stats = {
            "accepted": 0,
            "rejected": 0,
            "publish_errors": 0
        }

    async def add_customer(self, request: web_request.Request) -> Response:
        return await self._ingest_one(request, CustomerInput, self.config.customer_queue, "Customer")

    async def add_customers_bulk(self, request: web_request.Request) -> Response:
        return await self._ingest_many(request, CustomerInput, self.config.customer_queue, "customers")

    async def add_order(self, request: web_request.Request) -> Response:
        return await self._ingest_one(request, OrderInput, self.config.order_queue, "Order")

    async def add_orders_bulk(self, request: web_request.Request) -> Response:
        return await self._ingest_many(request, OrderInput, self.config.order_queue, "orders")

    async def _ingest_one(
        self,
        request: web_request.Request,
        model: Type[PayloadModel],
        queue: str,
        label: str
    ) -> Response:
        body, error = await self._read_json(request)
        if error:
            return error

        try:
            payload = model.model_validate(body)
        except ValidationError as e:
            self.stats["rejected"] += 1
            return _error("Validation failed", 400, format_errors(e))

        try:
            await self.broker.publish(queue, payload.to_message())
        except BrokerError as e:
            self.stats["publish_errors"] += 1
            logger.error(f"Error publishing {label.lower()} to {queue}: {e}")
            return _error(f"Failed to process {label.lower()} data", 500)

        self.stats["accepted"] += 1
        return _accepted(f"{label} data accepted for processing")

    async def _ingest_many(
        self,
        request: web_request.Request,
        model: Type[PayloadModel],
        queue: str,
        plural: str
    ) -> Response:
        """
        Validate every element before publishing any of them.

        One invalid element rejects the whole request; the errors carry the
        element index, e.g. ``[3].items[0].quantity``.
        """
        body, error = await self._read_json(request)
        if error:
            return error

        if not isinstance(body, list):
            self.stats["rejected"] += 1
            return _error(f"Request body should be an array of {plural}", 400)

        payloads = []
        errors = []
        for index, element in enumerate(body):
            try:
                payloads.append(model.model_validate(element))
            except ValidationError as e:
                errors.extend(format_errors(e, prefix=f"[{index}]"))

        if errors:
            self.stats["rejected"] += 1
            return _error("Validation failed", 400, errors)

        try:
            await asyncio.gather(*(
                self.broker.publish(queue, payload.to_message()) for payload in payloads
            ))
        except BrokerError as e:
            self.stats["publish_errors"] += 1
            logger.error(f"Error bulk publishing {len(payloads)} {plural} to {queue}: {e}")
            return _error(f"Failed to process {plural[:-1]} data", 500)

        self.stats["accepted"] += len(payloads)
        return _accepted(f"{len(payloads)} {plural} accepted for processing")

    async def _read_json(self, request: web_request.Request) -> Tuple[Any, Optional[Response]]:
        try:
            return await request.json(), None
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.stats["rejected"] += 1
            return None, _error("Malformed JSON body", 400)


class QueueAdminHandler:
    """Operator endpoints: queue depths and dead-letter replay."""

    def __init__(self, broker: QueueBroker, config: BrokerConfig):
        self.broker = broker
        self.queues = [config.customer_queue, config.order_queue]

    async def depths(self, request: web_request.Request) -> Response:
        try:
            depths = {queue: await self.broker.queue_depths(queue) for queue in self.queues}
        except BrokerError as e:
            logger.error(f"Error reading queue depths: {e}")
            return _error("Failed to read queue depths", 500)
        return web.json_response({"status": "success", "queues": depths})

    async def requeue_dead_letters(self, request: web_request.Request) -> Response:
        queue = request.match_info["queue"]
        if queue not in self.queues:
            return _error(f"Unknown queue: {queue}", 404)

        try:
            requeued = await self.broker.requeue_dead_letters(queue)
        except BrokerError as e:
            logger.error(f"Error requeueing dead letters on {queue}: {e}")
            return _error(f"Failed to requeue dead letters on {queue}", 500)

        logger.info(f"Operator requeued {requeued} dead letters on {queue}")
        return web.json_response({"status": "success", "queue": queue, "requeued": requeued})

    def register(self, app: web.Application):
        app.router.add_get('/api/queues', self.depths)
        app.router.add_post('/api/queues/{queue}/dead-letters/requeue', self.requeue_dead_letters)


INGEST_HANDLER = web.AppKey("ingest_handler", IngestHandler)


def create_app(
    broker: QueueBroker,
    broker_config: BrokerConfig,
    health_check: Optional[HealthSource] = None,
    max_body_bytes: int = 10 * 1024 * 1024,
    service_name: str = "crm-ingest"
) -> web.Application:
    """Build the aiohttp application with intake, queue admin and health routes."""
    app = web.Application(client_max_size=max_body_bytes)

    ingest = IngestHandler(broker, broker_config)
    app[INGEST_HANDLER] = ingest
    app.router.add_post('/api/customers', ingest.add_customer)
    app.router.add_post('/api/customers/bulk', ingest.add_customers_bulk)
    app.router.add_post('/api/orders', ingest.add_order)
    app.router.add_post('/api/orders/bulk', ingest.add_orders_bulk)
    QueueAdminHandler(broker, broker_config).register(app)

    if health_check is not None:
        HealthCheckHandler(health_check, service_name).register(app)

    return app


class APIServer:
    """Runs the intake application on its own TCP site."""

    def __init__(
        self,
        config: APIConfig,
        broker: QueueBroker,
        broker_config: BrokerConfig,
        health_check: Optional[HealthSource] = None,
        service_name: str = "crm-ingest"
    ):
        self.config = config
        self.app = create_app(
            broker, broker_config,
            health_check=health_check,
            max_body_bytes=config.max_body_bytes,
            service_name=service_name
        )
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    @property
    def ingest_stats(self) -> Dict[str, int]:
        return self.app[INGEST_HANDLER].stats.copy()

    async def start(self):
        logger.info(f"Starting API server on {self.config.host}:{self.config.port}")

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
        await self.site.start()

        logger.info(f"API server started on http://{self.config.host}:{self.config.port}")

    async def stop(self):
        """Stop accepting requests."""
        logger.info("Stopping API server")

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("API server stopped")
