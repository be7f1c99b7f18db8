from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection settings shared by the Redis transport and lock manager."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class LockConfig(BaseModel):
    """Per-transaction lock settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    timeout_seconds: float = 300.0
    blocking_timeout_seconds: Optional[float] = 30.0
    redis: RedisConfig = RedisConfig()


class RetryConfig(BaseModel):
    """Backoff applied between step attempts."""

    backoff_base: float = Field(default=1.5, ge=0)
    jitter: float = Field(default=0.5, ge=0)
    max_delay: float = Field(default=60.0, ge=0)


class ScannerConfig(BaseModel):
    """Deadline scanner settings."""

    interval_seconds: float = Field(default=30.0, gt=0)


class RelayflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    transport: TransportConfig = TransportConfig()
    locks: LockConfig = LockConfig()
    retry: RetryConfig = RetryConfig()
    scanner: ScannerConfig = ScannerConfig()


def load_config(path: Optional[str] = None) -> RelayflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RELAYFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RELAYFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RelayflowConfig(**data)
    else:
        config = RelayflowConfig()

    env_db_url = os.getenv("RELAYFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
