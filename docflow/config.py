from __future__ import annotations

import logging
import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_BACKOFF_MULTIPLIER,
    DEFAULT_RETRY_DELAY_MS,
    DEFAULT_TIMEOUT_MINUTES,
)


class EngineConfig(BaseModel):
    """Retry and checkpoint policy for the workflow engine."""

    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)
    retry_delay_ms: int = Field(default=DEFAULT_RETRY_DELAY_MS, ge=0)
    retry_backoff_multiplier: float = Field(
        default=DEFAULT_RETRY_BACKOFF_MULTIPLIER, ge=1
    )
    timeout_minutes: int = Field(default=DEFAULT_TIMEOUT_MINUTES, gt=0)
    enable_checkpoints: bool = True


class DriverConfig(BaseModel):
    """Settings for the step dispatcher."""

    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    worker_id: Optional[str] = None
    lease_seconds: int = Field(default=DEFAULT_LEASE_SECONDS, gt=0)


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: str = "[%(asctime)s] %(levelname)s - %(name)s - %(message)s"


class DocflowConfig(BaseModel):
    """Top-level configuration model."""

    engine: EngineConfig = EngineConfig()
    driver: DriverConfig = DriverConfig()
    logging: LoggingConfig = LoggingConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> DocflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DOCFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DOCFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DocflowConfig(**data)
    else:
        config = DocflowConfig()

    env_db_url = os.getenv("DOCFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def configure_logging(config: LoggingConfig) -> None:
    """Apply ``config`` to the root logger."""
    logging.basicConfig(level=config.level, format=config.format, force=True)
