"""Token store adapters."""

from ..config.settings import DatabaseConfig
from ..exceptions import ConfigError
from .base import TokenStore, UpsertOutcome
from .memory import InMemoryTokenStore


def create_store(config: DatabaseConfig) -> TokenStore:
    """Build the store adapter named by ``config.backend``."""
    backend = config.backend.lower()
    if backend == "memory":
        return InMemoryTokenStore()
    if backend == "postgres":
        from .postgres import PostgresTokenStore
        return PostgresTokenStore(config)
    raise ConfigError(f"Unknown database backend: {config.backend}")


__all__ = ["TokenStore", "UpsertOutcome", "InMemoryTokenStore", "create_store"]
