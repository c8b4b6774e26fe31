"""Configuration settings for the token pipeline service."""

import os
import yaml
from dataclasses import dataclass, field, fields
from typing import List, Dict, Any, Optional

from ..exceptions import ConfigError


@dataclass
class ProviderConfig:
    """External token provider configuration."""
    endpoint: str = "http://localhost:8000/api/tokens"
    identifiers: List[str] = field(default_factory=list)  # empty means all known tokens
    api_key: Optional[str] = None
    request_timeout_seconds: float = 10.0
    rate_limit_requests_per_minute: int = 60


@dataclass
class PipelineConfig:
    """Timing, sizing and retry knobs for the fetch and batch loops."""
    fetch_interval_ms: int = 60000
    fetch_jitter_ms: int = 5000
    cycle_timeout_ms: int = 30000
    provider_endpoint: Optional[str] = None  # overrides provider.endpoint when set
    queue_capacity: int = 1000
    queue_push_timeout_ms: int = 5000
    batch_max_size: int = 100
    batch_interval_ms: int = 5000
    batch_depth_threshold: Optional[int] = None  # defaults to batch_max_size
    max_retries: int = 3
    retry_initial_backoff_ms: int = 500
    retry_max_backoff_ms: int = 10000
    max_requeue_attempts: int = 3
    commit_timeout_ms: int = 10000
    commit_retry_backoff_ms: int = 1000

    @property
    def depth_threshold(self) -> int:
        return self.batch_depth_threshold or self.batch_max_size

    def validate(self):
        positive = [
            "fetch_interval_ms", "cycle_timeout_ms", "queue_capacity", "queue_push_timeout_ms",
            "batch_max_size", "batch_interval_ms", "max_requeue_attempts", "commit_timeout_ms",
        ]
        for name in positive:
            if getattr(self, name) <= 0:
                raise ConfigError(f"pipeline.{name} must be positive, got {getattr(self, name)}")

        non_negative = ["fetch_jitter_ms", "max_retries", "retry_initial_backoff_ms", "commit_retry_backoff_ms"]
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ConfigError(f"pipeline.{name} must not be negative, got {getattr(self, name)}")

        if self.batch_depth_threshold is not None and self.batch_depth_threshold <= 0:
            raise ConfigError("pipeline.batch_depth_threshold must be positive")


@dataclass
class DatabaseConfig:
    """Token store configuration."""
    backend: str = "postgres"  # "postgres" or "memory"
    dsn: Optional[str] = None
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: Optional[str] = None
    name: str = "tokens"
    pool_min_size: int = 1
    pool_max_size: int = 5
    connect_timeout_seconds: float = 10.0


@dataclass
class ServerConfig:
    """Operational HTTP server configuration."""
    enabled: bool = True
    host: str = "0.0.0.0"
    port: int = 4002
    cors_origin: str = "*"
    environment: str = "development"


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    format: str = "text"
    output: str = "stdout"


@dataclass
class PipelineServiceConfig:
    """Main configuration for the token pipeline service."""
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def provider_endpoint(self) -> str:
        return self.pipeline.provider_endpoint or self.provider.endpoint


# camelCase option names accepted alongside the field names
_PIPELINE_ALIASES = {
    "fetchIntervalMs": "fetch_interval_ms",
    "fetchJitterMs": "fetch_jitter_ms",
    "cycleTimeoutMs": "cycle_timeout_ms",
    "providerEndpoint": "provider_endpoint",
    "queueCapacity": "queue_capacity",
    "queuePushTimeoutMs": "queue_push_timeout_ms",
    "batchMaxSize": "batch_max_size",
    "batchIntervalMs": "batch_interval_ms",
    "batchDepthThreshold": "batch_depth_threshold",
    "maxRetries": "max_retries",
    "maxRequeueAttempts": "max_requeue_attempts",
    "commitTimeoutMs": "commit_timeout_ms",
    "commitRetryBackoffMs": "commit_retry_backoff_ms",
}


def build_pipeline_config(options: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    """Build a PipelineConfig from snake_case or camelCase option names."""
    options = options or {}
    normalized = {}
    for key, value in options.items():
        normalized[_PIPELINE_ALIASES.get(key, key)] = value

    config = _build_section(PipelineConfig, normalized, "pipeline")
    config.validate()
    return config


def load_config(config_file: Optional[str] = None) -> PipelineServiceConfig:
    """Load configuration from a YAML file. A missing path yields defaults."""

    config_data: Dict[str, Any] = {}
    if config_file:
        if not os.path.exists(config_file):
            raise ConfigError(f"Config file not found: {config_file}")
        with open(config_file, 'r') as f:
            config_data = yaml.safe_load(f) or {}

    # Environment variable substitution
    config_data = _substitute_env_vars(config_data)

    return PipelineServiceConfig(
        provider=_build_section(ProviderConfig, config_data.get('provider'), 'provider'),
        pipeline=build_pipeline_config(config_data.get('pipeline')),
        database=_build_section(DatabaseConfig, config_data.get('database'), 'database'),
        server=_build_section(ServerConfig, config_data.get('server'), 'server'),
        logging=_build_section(LoggingConfig, config_data.get('logging'), 'logging'),
    )


def _build_section(cls, data: Optional[Dict[str, Any]], section: str):
    data = data or {}
    if not isinstance(data, dict):
        raise ConfigError(f"Section '{section}' must be a mapping")

    known = {f.name: f for f in fields(cls)}
    unknown = set(data) - set(known)
    if unknown:
        raise ConfigError(f"Unknown option(s) in '{section}': {', '.join(sorted(unknown))}")

    kwargs = {}
    for key, value in data.items():
        if value is None:
            continue
        kwargs[key] = _coerce(value, known[key].type, f"{section}.{key}")
    return cls(**kwargs)


def _coerce(value, field_type, name: str):
    """Coerce env-substituted strings to the declared field type."""
    if not isinstance(value, str):
        return value

    args = [arg for arg in getattr(field_type, '__args__', ()) if arg is not type(None)]
    origin = getattr(field_type, '__origin__', None)

    if origin is list:
        return [item.strip() for item in value.split(',') if item.strip()]
    if args and type(None) in field_type.__args__:
        # Optional[X]: an empty env default means "not set"
        if value == "":
            return None
        field_type = args[0]

    try:
        if field_type is bool:
            return value.strip().lower() in ("1", "true", "yes", "on")
        if field_type is int:
            return int(value)
        if field_type is float:
            return float(value)
    except ValueError:
        raise ConfigError(f"Invalid value for {name}: {value!r}")
    return value


def _substitute_env_vars(data):
    """Recursively substitute environment variables in configuration."""
    if isinstance(data, dict):
        return {key: _substitute_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [_substitute_env_vars(item) for item in data]
    elif isinstance(data, str) and data.startswith('${') and data.endswith('}'):
        # Extract environment variable name and default value
        env_spec = data[2:-1]  # Remove ${ and }

        if ':' in env_spec:
            env_name, default_value = env_spec.split(':', 1)
        else:
            env_name, default_value = env_spec, None

        return os.getenv(env_name, default_value)
    else:
        return data
