"""Health check endpoints for the ingestion service."""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict

from aiohttp import web, web_request
from aiohttp.web_response import Response


logger = logging.getLogger(__name__)

HealthSource = Callable[[], Awaitable[Dict[str, Any]]]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler."""

    def __init__(self, health_check: HealthSource, service_name: str = "crm-ingest"):
        self.health_check = health_check
        self.service_name = service_name

    async def health(self, request: web_request.Request) -> Response:
        """Component health; 503 unless every component is healthy."""
        try:
            health_data = await self.health_check()
            status = 200 if health_data["status"] == "healthy" else 503
            return web.json_response(health_data, status=status, dumps=_dumps)

        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "service": self.service_name,
                    "status": "unhealthy",
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )

    async def ready(self, request: web_request.Request) -> Response:
        """Readiness probe; a degraded service still takes traffic."""
        try:
            health_data = await self.health_check()
            is_ready = health_data["status"] in ["healthy", "degraded"]
            return web.json_response(
                {
                    "ready": is_ready,
                    "status": health_data["status"],
                    "timestamp": _now()
                },
                status=200 if is_ready else 503
            )

        except Exception as e:
            logger.error(f"Readiness check failed: {e}", exc_info=True)
            return web.json_response(
                {
                    "ready": False,
                    "error": str(e),
                    "timestamp": _now()
                },
                status=503
            )

    async def live(self, request: web_request.Request) -> Response:
        """Liveness probe."""
        return web.json_response({"alive": True, "timestamp": _now()}, status=200)

    def register(self, app: web.Application):
        app.router.add_get('/health', self.health)
        app.router.add_get('/ready', self.ready)
        app.router.add_get('/live', self.live)


def _dumps(data: Any) -> str:
    # stats dicts carry datetimes
    return json.dumps(data, default=str)
