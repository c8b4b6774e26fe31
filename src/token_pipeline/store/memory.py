"""In-process token store for local runs and tests."""

import asyncio
import copy
from typing import Dict, Optional

from ..exceptions import StoreUnavailableError
from ..models import TokenRecord
from .base import TokenStore, UpsertOutcome


class InMemoryTokenStore(TokenStore):
    """Dictionary-backed store with the same last-write-wins rule as Postgres."""

    def __init__(self):
        self._records: Dict[str, TokenRecord] = {}
        self._lock = asyncio.Lock()
        self._connected = False
        self.upsert_calls = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self):
        self._connected = True

    async def close(self):
        self._connected = False

    async def ping(self) -> bool:
        return self._connected

    async def upsert(self, record: TokenRecord) -> UpsertOutcome:
        if not self._connected:
            raise StoreUnavailableError("In-memory store is closed")

        async with self._lock:
            self.upsert_calls += 1
            existing = self._records.get(record.identifier)
            if existing is not None and existing.is_newer_than(record):
                return UpsertOutcome.STALE

            stored = copy.deepcopy(record)
            stored.commit_attempts = 0
            self._records[record.identifier] = stored
            return UpsertOutcome.APPLIED

    async def get(self, identifier: str) -> Optional[TokenRecord]:
        record = self._records.get(identifier)
        return copy.deepcopy(record) if record is not None else None

    async def count(self) -> int:
        return len(self._records)
