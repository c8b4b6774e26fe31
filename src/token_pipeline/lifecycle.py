"""Lifecycle controller: starts the pipeline once the store is live, stops it in reverse."""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Sequence

from .batch_queue import BatchQueue
from .config.settings import PipelineConfig
from .exceptions import LifecycleError, StoreConnectionError
from .processor import BatchProcessor
from .scheduler import FetchScheduler
from .store.base import TokenStore
from .worker import FetchWorker


logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    CREATED = "created"
    CONNECTING = "connecting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"


class LifecycleController:
    """
    Owns the pipeline components and their start/stop order.

    The store and provider client are injected; the queue, worker, scheduler
    and processor are built here and handed their collaborators explicitly.
    """

    def __init__(
        self,
        store: TokenStore,
        provider,
        config: PipelineConfig,
        identifiers: Optional[Sequence[str]] = None
    ):
        self.store = store
        self.provider = provider
        self.config = config

        self.queue = BatchQueue(config.queue_capacity)
        self.worker = FetchWorker(provider, self.queue, config, identifiers)
        self.scheduler = FetchScheduler(self.worker, config)
        self.processor = BatchProcessor(self.queue, store, config)

        self.state = LifecycleState.CREATED
        self.started_at: Optional[datetime] = None
        self.error: Optional[str] = None
        self._store_ready_fired = False

    async def connect_store(self):
        """
        Confirm the store connection, then start the pipeline.

        Raises:
            StoreConnectionError: the store could not be reached. The pipeline
                stays stopped and the state becomes FAILED.
        """
        self.state = LifecycleState.CONNECTING
        try:
            await self.store.connect()
            if not await self.store.ping():
                raise StoreConnectionError("Token store did not answer ping")
        except StoreConnectionError as e:
            self._fail(e)
            raise
        except Exception as e:
            self._fail(e)
            raise StoreConnectionError(f"Token store connection failed: {e}") from e

        logger.info("Connected to token store")
        await self.on_store_ready()

    async def on_store_ready(self):
        """Start the batch processor and fetch scheduler. Allowed exactly once."""
        if self._store_ready_fired:
            raise LifecycleError("on_store_ready() may only be invoked once")
        self._store_ready_fired = True

        # Consumer first so the first fetch cycle never waits on an idle queue
        await self.processor.start()
        await self.scheduler.start()

        self.state = LifecycleState.RUNNING
        self.started_at = datetime.now(timezone.utc)
        logger.info("Token pipeline started")

    async def shutdown(self):
        """Stop fetching, flush the queue into the store, then release connections."""
        if self.state in (LifecycleState.STOPPING, LifecycleState.STOPPED):
            return

        was_running = self.state == LifecycleState.RUNNING
        self.state = LifecycleState.STOPPING
        logger.info("Shutting down token pipeline")

        try:
            if was_running:
                await self.scheduler.stop()
                await self.processor.stop(final_drain=True)
        finally:
            try:
                await self.provider.close()
            except Exception as e:
                logger.warning(f"Error closing provider client: {e}")

            try:
                await self.store.close()
                logger.info("Token store connection closed")
            except Exception as e:
                logger.error(f"Error closing token store: {e}", exc_info=True)

            self.state = LifecycleState.STOPPED

        logger.info("Token pipeline stopped")

    def _fail(self, error: Exception):
        self.state = LifecycleState.FAILED
        self.error = str(error)
        logger.error(
            f"Token store connection error: {error}. Pipeline will not start; "
            f"token data will not be updated",
            exc_info=True
        )

    async def health_check(self) -> Dict[str, Any]:
        health_status = {
            "status": "healthy",
            "state": self.state.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "components": {}
        }

        if self.state == LifecycleState.FAILED:
            health_status["status"] = "unhealthy"
            health_status["error"] = self.error
            return health_status

        health_status["components"]["store"] = await self.store.health_check()
        health_status["components"]["scheduler"] = self.scheduler.health_check()
        health_status["components"]["processor"] = self.processor.health_check()

        component_statuses = [
            comp.get("status", "unknown")
            for comp in health_status["components"].values()
        ]

        if self.state != LifecycleState.RUNNING or any(s == "unhealthy" for s in component_statuses):
            health_status["status"] = "unhealthy"
        elif any(s in ("degraded", "stopped") for s in component_statuses):
            health_status["status"] = "degraded"

        return health_status
