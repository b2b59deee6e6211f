from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
    DEFAULT_QUEUE_NAME,
    DEFAULT_RECOVERY_GRACE,
    DEFAULT_RECOVERY_INTERVAL,
    DEFAULT_STEP_TIMEOUT,
    DEFAULT_VISIBILITY_TIMEOUT,
)
from .credentials import ConnectionConfig


class RedisConfig(BaseModel):
    """Configuration for the Redis queue."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class QueueConfig(BaseModel):
    """Queue configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    name: str = DEFAULT_QUEUE_NAME
    visibility_timeout: float = DEFAULT_VISIBILITY_TIMEOUT
    poll_interval: float = 0.1
    redis: RedisConfig = Field(default_factory=RedisConfig)


class RetrySettings(BaseModel):
    """Execution-level retry defaults."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, gt=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, gt=0)
    jitter: float = Field(default=DEFAULT_JITTER, ge=0, lt=1)


class ExecutionSettings(BaseModel):
    default_step_timeout: float = Field(default=DEFAULT_STEP_TIMEOUT, gt=0)
    worker_concurrency: int = Field(default=1, ge=1)
    # Seconds between sweeps for executions whose queue job was lost; 0 disables.
    recovery_interval: float = Field(default=DEFAULT_RECOVERY_INTERVAL, ge=0)
    recovery_grace: float = Field(default=DEFAULT_RECOVERY_GRACE, ge=0)


class StepflowConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = Field(default_factory=QueueConfig)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    connections: Dict[str, ConnectionConfig] = Field(default_factory=dict)
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> StepflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepflowConfig(**data)
    else:
        config = StepflowConfig()

    env_db_url = os.getenv("STEPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_queue = os.getenv("STEPFLOW_QUEUE")
    if env_queue:
        config.queue.backend = env_queue.lower()  # type: ignore[assignment]
    env_log_level = os.getenv("STEPFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
