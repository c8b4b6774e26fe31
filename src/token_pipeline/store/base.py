"""Token store adapter interface."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any, Optional

from ..models import TokenRecord


class UpsertOutcome(str, Enum):
    APPLIED = "applied"  # inserted, or replaced an older stored record
    STALE = "stale"      # stored record has a later source timestamp; left unchanged


class TokenStore(ABC):
    """
    Durable keyed storage for TokenRecords.

    Implementations must make ``upsert`` last-write-wins by ``source_ts``: an
    incoming record replaces the stored one only when its source timestamp is
    not older. Errors are reported as:

    - TransientStoreError: this record may succeed later
    - StoreUnavailableError: the store itself is unreachable
    - PermanentStoreError: this record will never be accepted
    """

    @abstractmethod
    async def connect(self):
        """Open the underlying connection. Raises StoreConnectionError on failure."""

    @abstractmethod
    async def close(self):
        """Release the underlying connection."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return True if the store answers a trivial query."""

    @abstractmethod
    async def upsert(self, record: TokenRecord) -> UpsertOutcome:
        """Insert or replace one record by identifier."""

    @abstractmethod
    async def get(self, identifier: str) -> Optional[TokenRecord]:
        """Return the stored record for ``identifier``, if any."""

    @abstractmethod
    async def count(self) -> int:
        """Number of stored records."""

    async def health_check(self) -> Dict[str, Any]:
        try:
            healthy = await self.ping()
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}
        return {"status": "healthy" if healthy else "unhealthy"}
