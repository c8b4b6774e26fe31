"""Fetch worker: one retrieval pass from the provider into the batch queue."""

import logging
from typing import List, Dict, Any, Optional, Sequence

from .batch_queue import BatchQueue
from .config.settings import PipelineConfig
from .exceptions import ProviderError, QueueFullTimeout, ValidationError
from .models import CycleStatus, FetchCycle
from .normalize import normalize_entry
from .utils.logging import log_error_with_context
from .utils.retry import exponential_backoff


logger = logging.getLogger(__name__)


class FetchWorker:
    """Calls the provider, validates entries and hands valid records to the queue."""

    def __init__(
        self,
        provider,
        queue: BatchQueue,
        config: PipelineConfig,
        identifiers: Optional[Sequence[str]] = None
    ):
        self.provider = provider
        self.queue = queue
        self.config = config
        self.identifiers = list(identifiers or [])

        self.stats = {
            "cycles": 0,
            "records_enqueued": 0,
            "validation_failures": 0,
            "provider_failures": 0,
            "retries": 0,
            "queue_timeouts": 0
        }

    async def run_cycle(self, cycle: FetchCycle) -> FetchCycle:
        """
        Perform one fetch cycle and record its outcome on ``cycle``.

        Provider failures are recorded, not raised: the scheduler's next tick
        is the outer retry.
        """
        self.stats["cycles"] += 1

        try:
            entries = await self._fetch_with_retry(cycle)
        except ProviderError as e:
            self.stats["provider_failures"] += 1
            cycle.errors += 1
            cycle.error_message = str(e)
            kind = "transient" if e.transient else "permanent"
            logger.error(
                f"Fetch cycle {cycle.cycle_id} failed after {cycle.attempts} attempt(s) "
                f"({kind} provider error): {e}"
            )
            cycle.finish(CycleStatus.FAILED)
            return cycle

        cycle.records_retrieved = len(entries)
        await self._enqueue_entries(cycle, entries)

        cycle.finish()
        logger.info(
            f"Fetch cycle {cycle.cycle_id} completed: retrieved={cycle.records_retrieved} "
            f"enqueued={cycle.records_enqueued} invalid={cycle.validation_failures} errors={cycle.errors}"
        )
        return cycle

    async def _fetch_with_retry(self, cycle: FetchCycle) -> List[Dict[str, Any]]:
        async def _fetch():
            cycle.attempts += 1
            return await self.provider.fetch(self.identifiers or None)

        def _on_retry(attempt, error, delay):
            self.stats["retries"] += 1

        return await exponential_backoff(
            _fetch,
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_initial_backoff_ms / 1000.0,
            max_delay=self.config.retry_max_backoff_ms / 1000.0,
            should_retry=lambda e: isinstance(e, ProviderError) and e.transient,
            on_retry=_on_retry
        )

    async def _enqueue_entries(self, cycle: FetchCycle, entries: List[Any]):
        push_timeout = self.config.queue_push_timeout_ms / 1000.0

        for index, entry in enumerate(entries):
            try:
                record = normalize_entry(entry)
            except ValidationError as e:
                cycle.validation_failures += 1
                self.stats["validation_failures"] += 1
                log_error_with_context(
                    logger, e, "validate_entry",
                    level=logging.WARNING,
                    cycle_id=cycle.cycle_id,
                    identifier=e.identifier,
                    field=e.field,
                    timestamp=entry.get("timestamp") if isinstance(entry, dict) else None
                )
                continue

            try:
                await self.queue.push(record, timeout=push_timeout)
            except QueueFullTimeout as e:
                # Stop enqueuing for this cycle; the next poll fetches fresh data anyway
                remaining = len(entries) - index
                cycle.errors += remaining
                self.stats["queue_timeouts"] += 1
                log_error_with_context(
                    logger, e, "enqueue",
                    level=logging.WARNING,
                    cycle_id=cycle.cycle_id,
                    identifier=record.identifier,
                    timestamp=record.source_ts.isoformat(),
                    entries_not_enqueued=remaining
                )
                break

            cycle.records_enqueued += 1
            self.stats["records_enqueued"] += 1
