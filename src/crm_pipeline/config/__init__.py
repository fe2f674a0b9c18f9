"""Configuration for the CRM ingestion service."""

from .settings import (
    APIConfig,
    BatchConfig,
    BrokerConfig,
    CRMSettings,
    DatabaseConfig,
    LoggingConfig,
    PipelineConfig,
    RetryConfig,
    load_settings,
)

__all__ = [
    "APIConfig",
    "BatchConfig",
    "BrokerConfig",
    "CRMSettings",
    "DatabaseConfig",
    "LoggingConfig",
    "PipelineConfig",
    "RetryConfig",
    "load_settings",
]
