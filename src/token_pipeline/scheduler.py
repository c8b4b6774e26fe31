"""Scheduler for periodic token data fetching."""

import asyncio
import logging
import random
from collections import deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from .config.settings import PipelineConfig
from .models import CycleStatus, FetchCycle
from .worker import FetchWorker


logger = logging.getLogger(__name__)


class FetchScheduler:
    """
    Drives the fetch worker on a jittered timer.

    At most one fetch cycle is in flight. A tick that fires while the previous
    cycle is still running is skipped and logged. Failed cycles never stop the
    scheduler; the next tick simply tries again.
    """

    HISTORY_SIZE = 50

    def __init__(self, worker: FetchWorker, config: PipelineConfig):
        self.worker = worker
        self.config = config
        self.cycle_timeout = config.cycle_timeout_ms / 1000.0

        self.interval = config.fetch_interval_ms / 1000.0
        self.jitter = config.fetch_jitter_ms / 1000.0

        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self.history: Deque[FetchCycle] = deque(maxlen=self.HISTORY_SIZE)

        self.stats = {
            "ticks": 0,
            "cycles_started": 0,
            "cycles_failed": 0,
            "cycles_timed_out": 0,
            "skipped_cycles": 0,
            "last_cycle_time": None
        }

        logger.info(f"Scheduler initialized with interval={self.interval}s jitter={self.jitter}s")

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cycle_in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def start(self, interval: Optional[float] = None, jitter: Optional[float] = None):
        """Begin periodic fetching. ``interval`` and ``jitter`` are in seconds."""
        if self._running:
            return

        if interval is not None:
            self.interval = interval
        if jitter is not None:
            self.jitter = jitter
        if self.interval <= 0 or self.jitter < 0:
            raise ValueError("interval must be positive and jitter non-negative")

        self._running = True
        self._stop_event.clear()
        self._loop_task = asyncio.create_task(self._tick_loop())
        logger.info("Starting token fetch scheduler")

    async def stop(self):
        """Stop ticking and wait for the in-flight cycle to finish or time out."""
        if not self._running:
            return

        logger.info("Stopping token fetch scheduler")
        self._running = False
        self._stop_event.set()

        if self._loop_task:
            await self._loop_task
            self._loop_task = None

        if self._inflight is not None:
            # Cycles are bounded by cycle_timeout, so this wait is bounded too
            await asyncio.gather(self._inflight, return_exceptions=True)
            self._inflight = None

        logger.info("Scheduler stopped")

    async def run_cycle_now(self) -> FetchCycle:
        """Run one cycle immediately, outside the timer."""
        if self.cycle_in_flight:
            raise RuntimeError("A fetch cycle is already in flight")
        self._inflight = asyncio.create_task(self._run_cycle())
        return await self._inflight

    async def _tick_loop(self):
        while self._running:
            self.stats["ticks"] += 1

            if self.cycle_in_flight:
                self.stats["skipped_cycles"] += 1
                logger.warning(
                    f"Skipped fetch cycle: previous cycle still running "
                    f"(skipped_total={self.stats['skipped_cycles']})"
                )
            else:
                self._inflight = asyncio.create_task(self._run_cycle())

            if await self._wait_for_next_tick():
                break

        logger.info("Fetch tick loop stopped")

    async def _wait_for_next_tick(self) -> bool:
        """Sleep until the next tick. Returns True if stop was requested meanwhile."""
        delay = self.interval + (random.uniform(0, self.jitter) if self.jitter else 0.0)
        logger.debug(f"Waiting {delay:.2f} seconds for next fetch cycle")

        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _run_cycle(self) -> FetchCycle:
        cycle = FetchCycle()
        self.stats["cycles_started"] += 1
        self.history.append(cycle)

        try:
            await asyncio.wait_for(self.worker.run_cycle(cycle), timeout=self.cycle_timeout)
        except asyncio.TimeoutError:
            cycle.error_message = f"Fetch cycle exceeded {self.cycle_timeout}s"
            cycle.finish(CycleStatus.TIMED_OUT)
            self.stats["cycles_timed_out"] += 1
            logger.error(f"Fetch cycle {cycle.cycle_id} timed out after {self.cycle_timeout}s")
        except Exception as e:
            cycle.errors += 1
            cycle.error_message = str(e)
            cycle.finish(CycleStatus.FAILED)
            logger.error(f"Fetch cycle {cycle.cycle_id} error: {e}", exc_info=True)

        if cycle.status == CycleStatus.FAILED:
            self.stats["cycles_failed"] += 1
        self.stats["last_cycle_time"] = cycle.ended_at.isoformat() if cycle.ended_at else None
        return cycle

    def health_check(self) -> Dict[str, Any]:
        last_cycle = self.history[-1].to_dict() if self.history else None
        return {
            "status": "healthy" if self._running else "stopped",
            "interval_seconds": self.interval,
            "jitter_seconds": self.jitter,
            "cycle_in_flight": self.cycle_in_flight,
            "stats": self.stats.copy(),
            "last_cycle": last_cycle,
            "checked_at": datetime.now(timezone.utc).isoformat()
        }
