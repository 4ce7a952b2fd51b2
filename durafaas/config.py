from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    # Queue names are "<prefix>:activities" and "<prefix>:completions".
    prefix: str = "durafaas"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Tuning knobs for the orchestration scheduler."""

    worker_count: int = Field(default=4, ge=0)
    dispatch_max_attempts: int = Field(default=5, ge=1)
    dispatch_backoff_base: float = Field(default=1.5, gt=1.0)
    dispatch_backoff_jitter: float = Field(default=0.5, ge=0.0)
    poll_interval: float = Field(default=0.01, gt=0.0)


class HttpConfig(BaseModel):
    host: str = "127.0.0.1"
    port: int = 7071


class DurafaasConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    http: HttpConfig = HttpConfig()
    database_url: Optional[str] = None


def load_config(path: Optional[str] = None) -> DurafaasConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to DURAFAAS_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("DURAFAAS_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = DurafaasConfig(**data)
    else:
        config = DurafaasConfig()

    env_db_url = os.getenv("DURAFAAS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
