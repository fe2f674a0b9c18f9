"""Configuration settings using Pydantic for validation."""

from typing import Any, Optional
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import os
import re


class BrokerConfig(BaseModel):
    """Redis queue broker configuration."""
    url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")
    key_prefix: str = Field(default="crm", description="Prefix for all queue keys")
    customer_queue: str = Field(default="customer_queue", description="Queue for customer payloads")
    order_queue: str = Field(default="order_queue", description="Queue for order payloads")
    block_timeout_seconds: float = Field(default=1.0, description="Blocking pop timeout")
    max_redeliveries: int = Field(default=5, description="Deliveries before a message is dead-lettered")
    socket_timeout: float = Field(default=5.0, description="Redis socket timeout")


class DatabaseConfig(BaseModel):
    """PostgreSQL configuration."""
    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    user: str = Field(default="postgres", description="Database user")
    password: str = Field(default="", description="Database password")
    name: str = Field(default="crm", description="Database name")
    pool_min_size: int = Field(default=1, description="Minimum pool connections")
    pool_max_size: int = Field(default=10, description="Maximum pool connections")
    command_timeout: float = Field(default=60.0, description="Statement timeout in seconds")
    create_schema: bool = Field(default=True, description="Create tables on startup")


class RetryConfig(BaseModel):
    """Exponential backoff policy."""
    max_attempts: int = Field(default=5, description="Maximum retry attempts")
    initial_backoff_seconds: float = Field(default=1.0, description="Initial backoff delay")
    max_backoff_seconds: float = Field(default=30.0, description="Maximum backoff delay")
    backoff_multiplier: float = Field(default=2.0, description="Backoff multiplier")
    jitter: bool = Field(default=True, description="Add jitter to backoff")


class BatchConfig(BaseModel):
    """Batching parameters for one entity pipeline."""
    max_size: int = Field(default=100, gt=0, description="Flush when the buffer reaches this size")
    flush_timeout_seconds: float = Field(default=10.0, gt=0, description="Flush this long after the first buffered message")
    write_chunk_size: int = Field(default=100, gt=0, description="Rows per bulk statement")
    write_concurrency: int = Field(default=1, gt=0, description="Bulk statements allowed in flight")


def _customer_batch() -> BatchConfig:
    return BatchConfig(max_size=100, flush_timeout_seconds=10.0, write_chunk_size=100, write_concurrency=1)


def _order_batch() -> BatchConfig:
    return BatchConfig(max_size=50, flush_timeout_seconds=5.0, write_chunk_size=50, write_concurrency=4)


def _write_retry() -> RetryConfig:
    return RetryConfig(max_attempts=5, initial_backoff_seconds=0.5, max_backoff_seconds=10.0)


class PipelineConfig(BaseModel):
    """Per-entity batching configuration."""
    customers: BatchConfig = Field(default_factory=_customer_batch)
    orders: BatchConfig = Field(default_factory=_order_batch)
    # Applied to batch writes that fail because the database is unreachable
    write_retry: RetryConfig = Field(default_factory=_write_retry)


class APIConfig(BaseModel):
    """Ingestion HTTP server configuration."""
    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=3000, description="Bind port")
    max_body_bytes: int = Field(default=10 * 1024 * 1024, description="Largest accepted request body")


class LoggingConfig(BaseModel):
    """Logging configuration."""
    level: str = Field(default="INFO", description="Log level")
    format: str = Field(default="json", description="Log format: json or text")
    output: str = Field(default="stdout", description="Log output destination")


class CRMSettings(BaseSettings):
    """Main ingestion service settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Service configuration
    service_name: str = Field(default="crm-ingest", description="Service name")
    environment: str = Field(default="local", description="Environment: local, dev, prod")
    mode: str = Field(default="all", description="Run mode: api, consumer, or all")

    # Component configurations
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator('mode')
    @classmethod
    def validate_mode(cls, v):
        if v not in ['api', 'consumer', 'all']:
            raise ValueError("Mode must be 'api', 'consumer', or 'all'")
        return v

    @field_validator('environment')
    @classmethod
    def validate_environment(cls, v):
        if v not in ['local', 'dev', 'prod']:
            raise ValueError("Environment must be 'local', 'dev', or 'prod'")
        return v

    @property
    def runs_api(self) -> bool:
        return self.mode in ('api', 'all')

    @property
    def runs_consumers(self) -> bool:
        return self.mode in ('consumer', 'all')


def substitute_env_vars(obj: Any) -> Any:
    """
    Recursively substitute environment variables in configuration objects.

    Supports syntax:
    - ${VAR_NAME} - Required variable (raises error if not found)
    - ${VAR_NAME:-default} - Optional variable with default value

    Raises:
        ValueError: If required environment variable is not found
    """
    if isinstance(obj, dict):
        return {key: substitute_env_vars(value) for key, value in obj.items()}
    elif isinstance(obj, list):
        return [substitute_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        def replace_env_var(match):
            var_expr = match.group(1)

            if ':-' in var_expr:
                var_name, default_value = var_expr.split(':-', 1)
                return os.getenv(var_name.strip(), default_value)
            else:
                var_name = var_expr.strip()
                value = os.getenv(var_name)
                if value is None:
                    raise ValueError(f"Required environment variable '{var_name}' is not set")
                return value

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, obj)
    else:
        return obj


def load_settings(config_file: Optional[str] = None) -> CRMSettings:
    """
    Load settings from config file and environment variables.

    The config file supports environment variable substitution using ${VAR_NAME} syntax.

    Args:
        config_file: Path to YAML configuration file

    Returns:
        CRMSettings: Validated configuration object

    Raises:
        ValueError: If required environment variables are missing
        FileNotFoundError: If config file doesn't exist
    """
    if config_file and os.path.exists(config_file):
        import yaml

        with open(config_file, 'r') as f:
            raw_config = yaml.safe_load(f) or {}

        config_data = substitute_env_vars(raw_config)
        return CRMSettings(**config_data)

    elif config_file:
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    # Load from environment variables only
    return CRMSettings()
