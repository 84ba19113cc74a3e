from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    APPROVAL_CHECK_INTERVAL_SECONDS,
    APPROVAL_REMINDER_HOURS,
    APPROVAL_TIMEOUT_HOURS,
    DEFAULT_APPROVAL_THRESHOLD,
    DEFAULT_CONTEXT_TOKEN_BUDGET,
    DEFAULT_CONVERSATION_WINDOW,
    DEFAULT_STREAMING_THRESHOLD_SECONDS,
    SHARED_CONTEXT_BACKOFF_SECONDS,
    SHARED_CONTEXT_MAX_ATTEMPTS,
)


class RedisConfig(BaseModel):
    """Configuration for the Redis notification channel."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class NotificationConfig(BaseModel):
    """Notification channel settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Step execution tuning."""

    approval_threshold: float = DEFAULT_APPROVAL_THRESHOLD
    context_token_budget: int = DEFAULT_CONTEXT_TOKEN_BUDGET
    conversation_window: int = DEFAULT_CONVERSATION_WINDOW
    streaming_threshold_seconds: float = DEFAULT_STREAMING_THRESHOLD_SECONDS
    agent_timeout_seconds: Optional[float] = None
    shared_context_max_attempts: int = SHARED_CONTEXT_MAX_ATTEMPTS
    shared_context_backoff_seconds: float = SHARED_CONTEXT_BACKOFF_SECONDS


class ApprovalTimeoutConfig(BaseModel):
    """Thresholds for the approval timeout sweeper."""

    reminder_threshold_hours: float = APPROVAL_REMINDER_HOURS
    timeout_threshold_hours: float = APPROVAL_TIMEOUT_HOURS
    check_interval_seconds: float = APPROVAL_CHECK_INTERVAL_SECONDS


class BatonConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    definitions_path: Optional[str] = None
    log_level: str = "INFO"
    notifications: NotificationConfig = NotificationConfig()
    engine: EngineConfig = EngineConfig()
    approvals: ApprovalTimeoutConfig = ApprovalTimeoutConfig()


def load_config(path: Optional[str] = None) -> BatonConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to BATON_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("BATON_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = BatonConfig(**data)
    else:
        config = BatonConfig()

    env_db_url = os.getenv("BATON_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
