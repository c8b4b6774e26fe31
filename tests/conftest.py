"""Pytest configuration and shared fixtures."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio

from token_pipeline.config.settings import PipelineConfig
from token_pipeline.exceptions import (
    PermanentStoreError,
    StoreError,
    StoreUnavailableError,
    TransientStoreError,
)
from token_pipeline.models import TokenRecord
from token_pipeline.store.memory import InMemoryTokenStore


BASE_TS = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_record(identifier: str, price: float = 1.0, offset_seconds: int = 0) -> TokenRecord:
    """TokenRecord whose source timestamp is BASE_TS + offset_seconds."""
    return TokenRecord(
        identifier=identifier,
        metrics={"price": price},
        source_ts=BASE_TS + timedelta(seconds=offset_seconds)
    )


def make_entry(identifier: str, price: Any = 1.0, timestamp: Any = 1704067200) -> Dict[str, Any]:
    """Raw provider entry in the shape the normalizer accepts."""
    return {"identifier": identifier, "price": price, "timestamp": timestamp}


class FakeProvider:
    """
    Scripted provider client.

    Each ``fetch`` pops the next scripted response; an Exception instance is
    raised instead of returned. When the script is exhausted the last
    response repeats.
    """

    def __init__(self, responses: Optional[List[Any]] = None, delay: float = 0.0):
        self.responses = list(responses or [[]])
        self.delay = delay
        self.calls: List[Optional[List[str]]] = []
        self.closed = False

    async def fetch(self, identifiers=None):
        self.calls.append(list(identifiers) if identifiers else None)
        if self.delay:
            await asyncio.sleep(self.delay)

        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return list(response)

    async def close(self):
        self.closed = True


class FlakyStore(InMemoryTokenStore):
    """
    In-memory store with failure injection.

    - ``unavailable_times``: the next N upserts raise StoreUnavailableError
    - ``transient_ids`` / ``permanent_ids``: upserts for these identifiers always fail
    - ``unexpected_ids``: upserts for these identifiers raise an unclassified StoreError
    - ``upsert_delay``: seconds each upsert takes
    - ``connect_error`` / ``ping_ok``: make start-up fail
    """

    def __init__(self):
        super().__init__()
        self.unavailable_times = 0
        self.transient_ids = set()
        self.permanent_ids = set()
        self.unexpected_ids = set()
        self.upsert_delay = 0.0
        self.connect_error = None
        self.ping_ok = True
        self.attempts: Dict[str, int] = {}
        self.events: List[str] = []

    async def connect(self):
        self.events.append("connect")
        if self.connect_error is not None:
            raise self.connect_error
        await super().connect()

    async def ping(self):
        return self.ping_ok and await super().ping()

    async def close(self):
        self.events.append("close")
        await super().close()

    async def upsert(self, record):
        self.attempts[record.identifier] = self.attempts.get(record.identifier, 0) + 1
        if self.upsert_delay:
            await asyncio.sleep(self.upsert_delay)

        if self.unavailable_times > 0:
            self.unavailable_times -= 1
            raise StoreUnavailableError("connection dropped")
        if record.identifier in self.transient_ids:
            raise TransientStoreError(f"lock timeout on {record.identifier}")
        if record.identifier in self.permanent_ids:
            raise PermanentStoreError(f"constraint violation on {record.identifier}")
        if record.identifier in self.unexpected_ids:
            raise StoreError(f"unexpected driver error for {record.identifier}")

        self.events.append(f"upsert:{record.identifier}")
        return await super().upsert(record)


@pytest.fixture
def pipeline_config() -> PipelineConfig:
    """Pipeline configuration with test-friendly timings."""
    return PipelineConfig(
        fetch_interval_ms=50,
        fetch_jitter_ms=0,
        cycle_timeout_ms=1000,
        queue_capacity=100,
        queue_push_timeout_ms=50,
        batch_max_size=5,
        batch_interval_ms=20,
        max_retries=2,
        retry_initial_backoff_ms=1,
        retry_max_backoff_ms=5,
        max_requeue_attempts=3,
        commit_timeout_ms=500,
        commit_retry_backoff_ms=1,
    )


@pytest_asyncio.fixture
async def memory_store():
    store = InMemoryTokenStore()
    await store.connect()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def flaky_store():
    store = FlakyStore()
    await store.connect()
    yield store
    await store.close()


@pytest.fixture(name="make_record")
def make_record_fixture():
    return make_record


@pytest.fixture(name="make_entry")
def make_entry_fixture():
    return make_entry


@pytest.fixture
def provider_factory():
    return FakeProvider


@pytest.fixture
def store_factory():
    return FlakyStore
