from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_LOOP_GUARD_THRESHOLD,
    DEFAULT_MAX_ACTION_RETRIES,
    DEFAULT_MAX_CASCADE_STEPS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_TICK_LEASE_SECONDS,
)


class EngineConfig(BaseModel):
    """Step executor settings."""

    loop_guard_threshold: int = Field(default=DEFAULT_LOOP_GUARD_THRESHOLD, ge=1)
    max_action_retries: int = Field(default=DEFAULT_MAX_ACTION_RETRIES, ge=0)
    retry_backoff_base: float = 2.0
    retry_backoff_jitter: float = 0.5
    retry_backoff_max: float = 3600.0
    cascade: bool = True
    max_cascade_steps: int = Field(default=DEFAULT_MAX_CASCADE_STEPS, ge=1)
    inactive_policy: Literal["continue", "freeze", "exit"] = "continue"
    tick_lease_seconds: float = Field(default=DEFAULT_TICK_LEASE_SECONDS, gt=0)


class SchedulerConfig(BaseModel):
    """Scheduler driver settings."""

    poll_interval: float = DEFAULT_POLL_INTERVAL
    batch_size: int = DEFAULT_BATCH_SIZE
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)


class ScoringConfig(BaseModel):
    """Lead scoring settings."""

    thresholds: List[int] = Field(default_factory=list)


class NurtureFlowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    log_level: str = "INFO"
    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    scoring: ScoringConfig = ScoringConfig()


def load_config(path: Optional[str] = None) -> NurtureFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to NURTUREFLOW_CONFIG env
            variable or 'nurtureflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("NURTUREFLOW_CONFIG", "nurtureflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = NurtureFlowConfig(**data)
    else:
        config = NurtureFlowConfig()

    env_db_url = os.getenv("NURTUREFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
