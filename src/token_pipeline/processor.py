"""Batch processor: drains the queue and commits deduplicated batches to the store."""

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Tuple

from .batch_queue import BatchQueue
from .config.settings import PipelineConfig
from .exceptions import (
    PermanentStoreError,
    PoisonRecord,
    StoreUnavailableError,
    TransientStoreError,
)
from .models import BatchJob, BatchReport, BatchTrigger, TokenRecord
from .store.base import TokenStore, UpsertOutcome
from .utils.logging import log_error_with_context


logger = logging.getLogger(__name__)


class ProcessorState(str, Enum):
    IDLE = "idle"
    DRAINING = "draining"
    COMMITTING = "committing"
    RETRYING = "retrying"
    STOPPED = "stopped"


class _CommitProgress:
    """Per-batch commit bookkeeping that survives a timed-out commit attempt."""

    def __init__(self, records: List[TokenRecord]):
        self.pending: List[TokenRecord] = list(records)
        self.requeue: List[TokenRecord] = []
        self.committed = 0
        self.stale = 0
        self.failed = 0


def deduplicate(records: List[TokenRecord]) -> Tuple[List[TokenRecord], int]:
    """
    Collapse records sharing an identifier, keeping the latest source timestamp.

    On equal timestamps the later arrival wins. Output keeps first-seen order.
    Returns the surviving records and the number collapsed.
    """
    latest: Dict[str, TokenRecord] = {}
    for record in records:
        current = latest.get(record.identifier)
        if current is None or not current.is_newer_than(record):
            if current is not None:
                record.commit_attempts = max(record.commit_attempts, current.commit_attempts)
            latest[record.identifier] = record
    return list(latest.values()), len(records) - len(latest)


class BatchProcessor:
    """
    Commits queued records to the token store.

    A pass runs on a timer or when the queue reaches the depth threshold,
    whichever comes first. State moves Idle -> Draining -> Committing -> Idle,
    with at most one Committing -> Retrying -> Committing detour per batch on a
    store-level failure.
    """

    def __init__(self, queue: BatchQueue, store: TokenStore, config: PipelineConfig):
        self.queue = queue
        self.store = store
        self.config = config

        self.batch_max_size = config.batch_max_size
        self.interval = config.batch_interval_ms / 1000.0
        self.depth_threshold = config.depth_threshold
        self.commit_timeout = config.commit_timeout_ms / 1000.0
        self.retry_backoff = config.commit_retry_backoff_ms / 1000.0
        self.max_requeue_attempts = config.max_requeue_attempts

        self.state = ProcessorState.IDLE
        self._carry_over: Deque[TokenRecord] = deque()
        self._running = False
        self._stop_event = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._pass_lock = asyncio.Lock()
        self.last_report: Optional[BatchReport] = None

        self.stats = {
            "batches": 0,
            "batches_failed": 0,
            "records_committed": 0,
            "records_stale": 0,
            "records_failed": 0,
            "records_requeued": 0,
            "poison_records": 0,
            "duplicates_collapsed": 0,
            "commit_retries": 0,
            "last_commit_time": None
        }

        logger.info(
            f"BatchProcessor initialized: max_size={self.batch_max_size} "
            f"interval={self.interval}s depth_threshold={self.depth_threshold}"
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def carry_over_size(self) -> int:
        return len(self._carry_over)

    async def start(self):
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self.state = ProcessorState.IDLE
        self._loop_task = asyncio.create_task(self._process_loop())
        logger.info("BatchProcessor started")

    async def stop(self, final_drain: bool = True):
        """Stop the timer loop, then optionally flush whatever is still queued."""
        if self._running:
            self._running = False
            self._stop_event.set()
            await self.queue.notify()

            if self._loop_task:
                await self._loop_task
                self._loop_task = None

        if final_drain:
            await self.flush()

        self.state = ProcessorState.STOPPED
        logger.info("BatchProcessor stopped")

    async def flush(self) -> List[BatchReport]:
        """Run final passes until the queue is empty."""
        reports = []
        while not self.queue.empty():
            report = await self.process_once(BatchTrigger.FINAL)
            reports.append(report)
            if report.drained == 0 or report.status == "failed":
                # Store is down; further passes would only burn the shutdown budget
                break

        # One last attempt for records that failed in the final passes
        if self._carry_over and (not reports or reports[-1].status != "failed"):
            reports.append(await self.process_once(BatchTrigger.FINAL))

        unpersisted = len(self._carry_over) + self.queue.depth
        if unpersisted:
            logger.error(
                f"{unpersisted} record(s) could not be persisted before shutdown "
                f"(carried over: {[r.identifier for r in self._carry_over]}, still queued: {self.queue.depth})"
            )
        return reports

    async def _process_loop(self):
        while self._running:
            try:
                reached = await self.queue.wait_for_depth(
                    self.depth_threshold,
                    timeout=self.interval,
                    interrupt=self._stop_event
                )
                if not self._running:
                    break

                trigger = BatchTrigger.DEPTH if reached else BatchTrigger.TIMER
                await self.process_once(trigger)

            except Exception as e:
                logger.error(f"Batch processing loop error: {e}", exc_info=True)
                self.state = ProcessorState.IDLE
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self.retry_backoff or 1.0)
                except asyncio.TimeoutError:
                    pass

        logger.info("Batch processing loop stopped")

    async def process_once(self, trigger: BatchTrigger = BatchTrigger.TIMER) -> BatchReport:
        """Drain up to batch_max_size records and commit them."""
        async with self._pass_lock:
            job = await self._drain(trigger)
            report = BatchReport(job_id=job.job_id, trigger=trigger, drained=len(job))

            if not job.records:
                self.state = ProcessorState.IDLE
                return report

            records, collapsed = deduplicate(job.records)
            report.duplicates_collapsed = collapsed
            self.stats["duplicates_collapsed"] += collapsed

            progress = _CommitProgress(records)
            succeeded = await self._commit_with_retry(progress, report)

            # Records never attempted after a failed batch, plus record-level transients
            leftovers = progress.requeue + ([] if succeeded else progress.pending)
            self._requeue(leftovers, report)

            report.committed = progress.committed
            report.stale = progress.stale
            report.failed = progress.failed
            report.status = "committed" if succeeded else "failed"
            if succeeded and (report.failed or report.requeued or report.poisoned):
                report.status = "partial"

            self._record_stats(report, succeeded)
            self.state = ProcessorState.IDLE
            self.last_report = report

            log = logger.info if succeeded else logger.error
            log(
                f"Batch {job.job_id} ({trigger.value}) {report.status}: drained={report.drained} "
                f"committed={report.committed} stale={report.stale} failed={report.failed} "
                f"requeued={report.requeued} poisoned={report.poisoned} retries={report.retries}"
            )
            return report

    async def _drain(self, trigger: BatchTrigger) -> BatchJob:
        self.state = ProcessorState.DRAINING

        # Requeued records are read before anything new
        records: List[TokenRecord] = []
        while self._carry_over and len(records) < self.batch_max_size:
            records.append(self._carry_over.popleft())

        remaining = self.batch_max_size - len(records)
        if remaining > 0:
            records.extend(await self.queue.drain(remaining))

        return BatchJob(records=records, trigger=trigger)

    async def _commit_with_retry(self, progress: _CommitProgress, report: BatchReport) -> bool:
        """Commit pending records, retrying the whole step once on a store-level failure."""
        for attempt in range(2):
            self.state = ProcessorState.COMMITTING
            try:
                await asyncio.wait_for(self._commit(progress), timeout=self.commit_timeout)
                return True
            except (StoreUnavailableError, asyncio.TimeoutError) as e:
                reason = str(e) or f"commit exceeded {self.commit_timeout}s"
                if attempt == 0:
                    self.state = ProcessorState.RETRYING
                    report.retries += 1
                    logger.warning(
                        f"Store-level failure committing batch {report.job_id}: {reason}. "
                        f"Retrying {len(progress.pending)} record(s) in {self.retry_backoff:.2f}s"
                    )
                    await asyncio.sleep(self.retry_backoff)
                else:
                    logger.error(
                        f"Batch {report.job_id} failed after retry: {reason}. "
                        f"{len(progress.pending)} record(s) will be requeued"
                    )
        return False

    async def _commit(self, progress: _CommitProgress):
        """Upsert pending records one by one. Record-level failures never abort the rest."""
        while progress.pending:
            record = progress.pending[0]
            try:
                outcome = await self.store.upsert(record)
            except StoreUnavailableError:
                raise
            except TransientStoreError as e:
                progress.pending.pop(0)
                progress.failed += 1
                progress.requeue.append(record)
                self._log_record_error(e, record)
                continue
            except PermanentStoreError as e:
                progress.pending.pop(0)
                progress.failed += 1
                self._log_record_error(e, record)
                continue
            except Exception as e:
                # Unclassified failure: requeued like a transient
                progress.pending.pop(0)
                progress.failed += 1
                progress.requeue.append(record)
                self._log_record_error(e, record)
                continue

            progress.pending.pop(0)
            if outcome == UpsertOutcome.STALE:
                progress.stale += 1
            else:
                progress.committed += 1

    def _requeue(self, records: List[TokenRecord], report: BatchReport):
        requeued = []
        for record in records:
            record.commit_attempts += 1
            if record.commit_attempts >= self.max_requeue_attempts:
                report.poisoned += 1
                poison = PoisonRecord(record.identifier, record.commit_attempts, record.source_ts)
                log_error_with_context(
                    logger, poison, "commit",
                    identifier=record.identifier,
                    timestamp=record.source_ts.isoformat(),
                    attempts=record.commit_attempts
                )
                continue
            requeued.append(record)

        # Front of the next read, relative order preserved
        self._carry_over.extendleft(reversed(requeued))
        report.requeued += len(requeued)

    def _log_record_error(self, error: Exception, record: TokenRecord):
        log_error_with_context(
            logger, error, "upsert",
            level=logging.WARNING,
            identifier=record.identifier,
            timestamp=record.source_ts.isoformat(),
            attempts=record.commit_attempts
        )

    def _record_stats(self, report: BatchReport, succeeded: bool):
        self.stats["batches"] += 1
        if not succeeded:
            self.stats["batches_failed"] += 1
        self.stats["records_committed"] += report.committed
        self.stats["records_stale"] += report.stale
        self.stats["records_failed"] += report.failed
        self.stats["records_requeued"] += report.requeued
        self.stats["poison_records"] += report.poisoned
        self.stats["commit_retries"] += report.retries
        self.stats["last_commit_time"] = datetime.now(timezone.utc).isoformat()

    def health_check(self) -> Dict[str, Any]:
        status = "healthy" if self._running else "stopped"
        if self._running and self.last_report is not None and self.last_report.status == "failed":
            status = "degraded"

        return {
            "status": status,
            "state": self.state.value,
            "queue": self.queue.get_stats(),
            "carry_over": len(self._carry_over),
            "stats": self.stats.copy(),
            "last_batch": self.last_report.to_dict() if self.last_report else None
        }
