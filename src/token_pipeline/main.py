"""Token Pipeline Service - polls token data and persists it in batches."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .clients.provider import TokenProviderClient
from .config.settings import PipelineServiceConfig, load_config
from .exceptions import StoreConnectionError
from .health import HealthCheckServer
from .lifecycle import LifecycleController
from .store import create_store
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class TokenPipelineService:
    """Process bootstrap: HTTP probes, store connection and pipeline lifecycle."""

    def __init__(
        self,
        config_file: Optional[str] = None,
        config: Optional[PipelineServiceConfig] = None,
        store=None,
        provider=None
    ):
        self.config = config or load_config(config_file)
        setup_logging(self.config.logging)

        store = store or create_store(self.config.database)
        provider = provider or TokenProviderClient(
            self.config.provider, endpoint=self.config.provider_endpoint
        )
        self.lifecycle = LifecycleController(
            store, provider, self.config.pipeline, identifiers=self.config.provider.identifiers
        )
        self.http_server: Optional[HealthCheckServer] = None
        self._shutdown_event = asyncio.Event()

        logger.info("Token Pipeline Service initialized")

    async def start(self):
        """Run until a shutdown signal arrives."""
        logger.info("Starting Token Pipeline Service")

        self._setup_signal_handlers()

        if self.config.server.enabled:
            self.http_server = HealthCheckServer(self, self.config.server)
            await self.http_server.start()

        try:
            await self.lifecycle.connect_store()
        except StoreConnectionError as e:
            # Probes keep answering; the pipeline just never runs
            logger.error(f"Token pipeline not started: {e}")

        await self._shutdown_event.wait()
        await self.stop()

    async def stop(self):
        logger.info("Shutting down Token Pipeline Service")

        if self.http_server:
            await self.http_server.stop()
            self.http_server = None

        await self.lifecycle.shutdown()
        logger.info("Token Pipeline Service stopped")

    def request_shutdown(self):
        self._shutdown_event.set()

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown")
            loop.call_soon_threadsafe(self._shutdown_event.set)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    async def health_check(self) -> dict:
        pipeline_health = await self.lifecycle.health_check()
        return {
            "service": "token-pipeline",
            "status": pipeline_health["status"],
            "environment": self.config.server.environment,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {"pipeline": pipeline_health}
        }


async def main():
    """Main entry point."""
    config_file = os.getenv("CONFIG_FILE", "config/local.yaml")
    service = TokenPipelineService(config_file)

    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    asyncio.run(main())


if __name__ == "__main__":
    run()
