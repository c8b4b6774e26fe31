"""PostgreSQL token store backed by an asyncpg connection pool."""

import asyncio
import json
import logging
from typing import Optional

import asyncpg
from asyncpg import Pool

from ..config.settings import DatabaseConfig
from ..exceptions import (
    StoreConnectionError,
    StoreUnavailableError,
    TransientStoreError,
    PermanentStoreError,
)
from ..models import TokenRecord
from .base import TokenStore, UpsertOutcome


logger = logging.getLogger(__name__)


CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS tokens (
        identifier TEXT PRIMARY KEY,
        metrics JSONB NOT NULL,
        source_ts TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
"""

CREATE_INDEX_SQL = """
    CREATE INDEX IF NOT EXISTS idx_tokens_source_ts ON tokens(source_ts)
"""

# Only replace the stored row when the incoming source timestamp is not older.
UPSERT_SQL = """
    INSERT INTO tokens (identifier, metrics, source_ts, updated_at)
    VALUES ($1, $2::jsonb, $3, $4)
    ON CONFLICT (identifier) DO UPDATE
        SET metrics = EXCLUDED.metrics,
            source_ts = EXCLUDED.source_ts,
            updated_at = EXCLUDED.updated_at
        WHERE tokens.source_ts <= EXCLUDED.source_ts
    RETURNING identifier
"""

# Errors that mean the connection or server went away, not that the row is bad
_UNAVAILABLE_ERRORS = (
    asyncpg.PostgresConnectionError,
    asyncpg.InterfaceError,
    asyncpg.CannotConnectNowError,
    ConnectionError,
    OSError,
)

_TRANSIENT_ERRORS = (
    asyncpg.SerializationError,
    asyncpg.DeadlockDetectedError,
    asyncpg.LockNotAvailableError,
    asyncpg.QueryCanceledError,
)

_PERMANENT_ERRORS = (
    asyncpg.IntegrityConstraintViolationError,
    asyncpg.DataError,
)


class PostgresTokenStore(TokenStore):
    """Stores one row per token identifier in the ``tokens`` table."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.pool: Optional[Pool] = None

    async def connect(self):
        """Create the connection pool and the tokens table."""
        logger.info("Initializing database connection pool")

        try:
            if self.config.dsn:
                self.pool = await asyncpg.create_pool(
                    dsn=self.config.dsn,
                    min_size=self.config.pool_min_size,
                    max_size=self.config.pool_max_size,
                    timeout=self.config.connect_timeout_seconds,
                    command_timeout=60
                )
            else:
                self.pool = await asyncpg.create_pool(
                    host=self.config.host,
                    port=self.config.port,
                    user=self.config.user,
                    password=self.config.password,
                    database=self.config.name,
                    min_size=self.config.pool_min_size,
                    max_size=self.config.pool_max_size,
                    timeout=self.config.connect_timeout_seconds,
                    command_timeout=60
                )

            async with self.pool.acquire() as conn:
                await conn.execute(CREATE_TABLE_SQL)
                await conn.execute(CREATE_INDEX_SQL)

        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            await self.close()
            raise StoreConnectionError(f"Could not connect to PostgreSQL: {e}") from e

        logger.info("Database connection pool initialized successfully")

    async def close(self):
        if self.pool:
            logger.info("Closing database connection pool")
            await self.pool.close()
            self.pool = None

    async def ping(self) -> bool:
        if not self.pool:
            return False
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1

    async def upsert(self, record: TokenRecord) -> UpsertOutcome:
        if not self.pool:
            raise StoreUnavailableError("Database pool not initialized")

        try:
            async with self.pool.acquire() as conn:
                result = await conn.fetchval(
                    UPSERT_SQL,
                    record.identifier,
                    json.dumps(record.metrics),
                    record.source_ts,
                    record.updated_at
                )
        except _PERMANENT_ERRORS as e:
            raise PermanentStoreError(f"Rejected record {record.identifier}: {e}") from e
        except _TRANSIENT_ERRORS as e:
            raise TransientStoreError(f"Transient failure for {record.identifier}: {e}") from e
        except _UNAVAILABLE_ERRORS as e:
            raise StoreUnavailableError(f"Database unavailable: {e}") from e
        except asyncpg.PostgresError as e:
            raise TransientStoreError(f"Unclassified database error for {record.identifier}: {e}") from e

        return UpsertOutcome.APPLIED if result is not None else UpsertOutcome.STALE

    async def get(self, identifier: str) -> Optional[TokenRecord]:
        if not self.pool:
            raise StoreUnavailableError("Database pool not initialized")

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT identifier, metrics, source_ts, updated_at FROM tokens WHERE identifier = $1",
                identifier
            )

        if row is None:
            return None

        metrics = row["metrics"]
        if isinstance(metrics, str):
            metrics = json.loads(metrics)

        return TokenRecord(
            identifier=row["identifier"],
            metrics=metrics,
            source_ts=row["source_ts"],
            updated_at=row["updated_at"]
        )

    async def count(self) -> int:
        if not self.pool:
            return 0
        async with self.pool.acquire() as conn:
            return await conn.fetchval("SELECT COUNT(*) FROM tokens") or 0

    async def health_check(self):
        health_status = await super().health_check()
        if self.pool:
            health_status["pool_stats"] = {
                "size": self.pool.get_size(),
                "max_size": self.pool.get_max_size(),
                "min_size": self.pool.get_min_size(),
                "idle_size": self.pool.get_idle_size()
            }
        return health_status
