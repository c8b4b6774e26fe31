"""Data model shared by the fetch and batch sides of the pipeline."""

import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenRecord:
    """
    Latest known metrics for one token.

    ``identifier`` is fixed once the record exists. Metrics and timestamps are
    the only fields that change between updates.
    """
    identifier: str
    metrics: Dict[str, float]
    source_ts: datetime
    updated_at: datetime = field(default_factory=utcnow)
    commit_attempts: int = field(default=0, compare=False)

    def __setattr__(self, name, value):
        if name == "identifier" and "identifier" in self.__dict__:
            raise AttributeError("TokenRecord.identifier is immutable")
        super().__setattr__(name, value)

    def is_newer_than(self, other: "TokenRecord") -> bool:
        return self.source_ts > other.source_ts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "metrics": dict(self.metrics),
            "source_ts": self.source_ts.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class CycleStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIAL = "partial"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


_cycle_ids = itertools.count(1)
_job_ids = itertools.count(1)


@dataclass
class FetchCycle:
    """One polling pass. Kept only for logging and health output."""
    cycle_id: int = field(default_factory=lambda: next(_cycle_ids))
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    records_retrieved: int = 0
    records_enqueued: int = 0
    validation_failures: int = 0
    errors: int = 0
    attempts: int = 0
    status: CycleStatus = CycleStatus.RUNNING
    error_message: Optional[str] = None

    def finish(self, status: Optional[CycleStatus] = None):
        self.ended_at = utcnow()
        if status is not None:
            self.status = status
        elif self.errors or self.validation_failures:
            self.status = CycleStatus.PARTIAL
        else:
            self.status = CycleStatus.SUCCEEDED

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return (self.ended_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "started_at": self.started_at.isoformat(),
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "records_retrieved": self.records_retrieved,
            "records_enqueued": self.records_enqueued,
            "validation_failures": self.validation_failures,
            "errors": self.errors,
            "attempts": self.attempts,
            "status": self.status.value,
            "error_message": self.error_message,
        }


class BatchTrigger(str, Enum):
    TIMER = "timer"
    DEPTH = "depth"
    FINAL = "final"


@dataclass
class BatchJob:
    """Records drained for one commit. Owned by the batch processor only."""
    records: List[TokenRecord]
    trigger: BatchTrigger = BatchTrigger.TIMER
    job_id: int = field(default_factory=lambda: next(_job_ids))
    created_at: datetime = field(default_factory=utcnow)

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class BatchReport:
    """Outcome of committing one BatchJob."""
    job_id: int
    trigger: BatchTrigger
    drained: int = 0
    duplicates_collapsed: int = 0
    committed: int = 0
    stale: int = 0
    failed: int = 0
    requeued: int = 0
    poisoned: int = 0
    retries: int = 0
    status: str = "empty"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "trigger": self.trigger.value,
            "drained": self.drained,
            "duplicates_collapsed": self.duplicates_collapsed,
            "committed": self.committed,
            "stale": self.stale,
            "failed": self.failed,
            "requeued": self.requeued,
            "poisoned": self.poisoned,
            "retries": self.retries,
            "status": self.status,
        }
