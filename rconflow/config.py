from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import DEFAULT_EVENT_TOPIC


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class HttpConfig(BaseModel):
    """Settings shared by the HTTP based actions."""

    timeout_s: float = 30.0


class LuaConfig(BaseModel):
    """Limits applied to every Lua script run."""

    timeout_s: float = 30.0
    max_memory_mb: int = 64


class EngineConfig(BaseModel):
    """Execution limits and behaviour of the workflow engine."""

    execution_timeout_s: float = 300.0
    default_step_timeout_s: float = 60.0
    max_steps_per_execution: int = 1000
    max_concurrent_executions: Optional[int] = None
    record_running_transitions: bool = False
    persistence_retries: int = 3
    http: HttpConfig = HttpConfig()
    lua: LuaConfig = LuaConfig()


class ApiConfig(BaseModel):
    """Bind address of the REST API."""

    host: str = "127.0.0.1"
    port: int = 8080


class RconflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    event_topic: str = DEFAULT_EVENT_TOPIC
    api: ApiConfig = ApiConfig()
    engine: EngineConfig = EngineConfig()


def load_config(path: Optional[str] = None) -> RconflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to RCONFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("RCONFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = RconflowConfig(**data)
    else:
        config = RconflowConfig()

    env_db_url = os.getenv("RCONFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("RCONFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    return config
