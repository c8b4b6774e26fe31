"""Operational HTTP server: health probes, CORS and error handling."""

import logging
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from aiohttp.web_request import Request
from aiohttp.web_response import Response

from .config.settings import ServerConfig


logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthCheckHandler:
    """Health check HTTP handler. ``service`` must provide ``health_check()``."""

    def __init__(self, service):
        self.service = service

    async def health(self, request: Request) -> Response:
        """Full component health."""
        health_data = await self.service.health_check()
        status = 200 if health_data["status"] == "healthy" else 503
        return web.json_response(health_data, status=status)

    async def ready(self, request: Request) -> Response:
        """Readiness probe: the pipeline is running and not unhealthy."""
        health_data = await self.service.health_check()
        is_ready = health_data["status"] in ("healthy", "degraded")
        return web.json_response(
            {
                "ready": is_ready,
                "status": health_data["status"],
                "timestamp": _now()
            },
            status=200 if is_ready else 503
        )

    async def live(self, request: Request) -> Response:
        """Liveness probe. The HTTP layer stays up even when the pipeline failed to start."""
        return web.json_response({"alive": True, "timestamp": _now()}, status=200)


def cors_middleware(allowed_origin: str):
    @web.middleware
    async def _cors(request: Request, handler):
        if request.method == "OPTIONS":
            response = web.Response(status=204)
        else:
            response = await handler(request)
        response.headers['Access-Control-Allow-Origin'] = allowed_origin
        response.headers['Access-Control-Allow-Methods'] = 'GET, POST, PUT, DELETE'
        response.headers['Access-Control-Allow-Headers'] = 'Content-Type, Authorization'
        return response
    return _cors


@web.middleware
async def error_middleware(request: Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.error(f"Unhandled error serving {request.method} {request.path}: {e}", exc_info=True)
        return web.Response(status=500, text="Something broke!")


def create_app(service, config: ServerConfig) -> web.Application:
    # Error middleware is innermost so CORS headers are still added to 500s
    app = web.Application(middlewares=[cors_middleware(config.cors_origin), error_middleware])

    handler = HealthCheckHandler(service)
    app.router.add_get('/health', handler.health)
    app.router.add_get('/ready', handler.ready)
    app.router.add_get('/live', handler.live)
    return app


class HealthCheckServer:
    """HTTP server for health check endpoints."""

    def __init__(self, service, config: ServerConfig):
        self.service = service
        self.config = config
        self.app: Optional[web.Application] = None
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

    async def start(self):
        logger.info(f"Starting HTTP server on {self.config.host}:{self.config.port}")

        self.app = create_app(self.service, self.config)
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()

        self.site = web.TCPSite(self.runner, self.config.host, self.config.port)
        await self.site.start()

        logger.info(f"Server running on port {self.config.port}")
        logger.info(f"Environment: {self.config.environment}")

    async def stop(self):
        logger.info("Closing HTTP server")

        if self.site:
            await self.site.stop()

        if self.runner:
            await self.runner.cleanup()

        logger.info("HTTP server closed")
