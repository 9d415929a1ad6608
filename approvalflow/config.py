from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_CONCURRENT_CALLS,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    NOTIFICATION_QUEUE,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis notification backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue: str = NOTIFICATION_QUEUE


class NotificationConfig(BaseModel):
    """Notification dispatcher settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Execution settings for the step executor and sweeper."""

    max_concurrent_calls: int = DEFAULT_MAX_CONCURRENT_CALLS
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    retry_backoff_base: float = 1.5
    retry_backoff_jitter: float = 0.5


class ServiceEndpointConfig(BaseModel):
    """An HTTP target reachable from SERVICE_CALL steps."""

    url: str
    method: str = "POST"
    timeout: float = 10.0


class ApprovalflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    notifications: NotificationConfig = NotificationConfig()
    engine: EngineConfig = EngineConfig()
    services: Dict[str, ServiceEndpointConfig] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> ApprovalflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to APPROVALFLOW_CONFIG
            env variable or 'approvalflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("APPROVALFLOW_CONFIG", "approvalflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ApprovalflowConfig(**data)
    else:
        config = ApprovalflowConfig()

    env_db_url = os.getenv("APPROVALFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
