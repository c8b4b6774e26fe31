"""Configuration loading for the token pipeline."""

from .settings import (
    PipelineServiceConfig,
    ProviderConfig,
    PipelineConfig,
    DatabaseConfig,
    ServerConfig,
    LoggingConfig,
    build_pipeline_config,
    load_config,
)
