"""Error taxonomy for the token pipeline."""

from datetime import datetime
from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ConfigError(PipelineError):
    """Invalid or incomplete configuration."""


class LifecycleError(PipelineError):
    """Lifecycle hook invoked out of order or more than once."""


# Provider errors

class ProviderError(PipelineError):
    """Failure talking to the external token provider."""

    transient = False

    def __init__(self, message: str, status: Optional[int] = None, retry_after: Optional[float] = None):
        super().__init__(message)
        self.status = status
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    """Timeout, network failure, 5xx or rate limit. Safe to retry."""

    transient = True


class PermanentProviderError(ProviderError):
    """Auth failure, other 4xx or malformed response. Retrying will not help."""

    transient = False


# Entry validation

class ValidationError(PipelineError):
    """A single provider entry failed validation. Always non-fatal."""

    def __init__(self, message: str, identifier: Optional[str] = None, field: Optional[str] = None):
        super().__init__(message)
        self.identifier = identifier
        self.field = field


# Store errors

class StoreError(PipelineError):
    """Failure reported by the token store."""

    transient = False


class TransientStoreError(StoreError):
    """Record-level failure that may succeed on a later attempt."""

    transient = True


class StoreUnavailableError(TransientStoreError):
    """The store itself is unreachable (connection dropped, pool closed)."""


class PermanentStoreError(StoreError):
    """Record rejected by the store (constraint violation, bad data)."""


class StoreConnectionError(StoreError):
    """The initial store connection could not be established."""


# Queue / batch errors

class QueueFullTimeout(PipelineError):
    """Push into the batch queue timed out because the queue stayed full."""

    def __init__(self, capacity: int, timeout: float):
        super().__init__(f"Batch queue full (capacity={capacity}) for {timeout:.3f}s")
        self.capacity = capacity
        self.timeout = timeout


class PoisonRecord(PipelineError):
    """A record exceeded its requeue budget and was dropped."""

    def __init__(self, identifier: str, attempts: int, source_ts: Optional[datetime] = None):
        super().__init__(f"Record {identifier} dropped after {attempts} failed commit attempts")
        self.identifier = identifier
        self.attempts = attempts
        self.source_ts = source_ts
