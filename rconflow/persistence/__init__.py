"""Persistence layer for workflows, executions, step logs and the KV store."""

from __future__ import annotations

import logging
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

from ..config import RconflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import Execution, ExecutionLog, KVEntry, LogMessage, Workflow
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository
from .postgres import PostgresWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None
_repository_url: Optional[str] = None


def _redact(database_url: str) -> str:
    parts = urlsplit(database_url)
    if parts.password is None:
        return database_url
    netloc = parts.netloc.replace(f":{parts.password}@", ":***@", 1)
    return urlunsplit(parts._replace(netloc=netloc))


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Create a repository for ``database_url``.

    ``None``, ``""`` and ``memory://`` give an in-memory store,
    ``sqlite://<path>`` a SQLite file (``sqlite://:memory:`` works too) and
    ``postgres://``/``postgresql://`` a Postgres database.
    """
    if not database_url or database_url == "memory://":
        return InMemoryWorkflowRepository()
    if database_url.startswith("sqlite://"):
        return SQLiteWorkflowRepository(database_url[len("sqlite://"):])
    if database_url.startswith(("postgres://", "postgresql://")):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {_redact(database_url)}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[RconflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    Without arguments the existing repository is reused. Otherwise the URL
    comes from ``database_url`` or the loaded configuration (where
    ``RCONFLOW_DATABASE_URL`` and ``DATABASE_URL`` take precedence), and a new
    repository is opened whenever that URL changes.
    """
    global _repository_instance, _repository_url
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = database_url or config.database_url
    if _repository_instance is not None and database_url == _repository_url:
        return _repository_instance

    _repository_instance = open_repository(database_url)
    _repository_url = database_url
    logger.info(
        f"Using {type(_repository_instance).__name__} "
        f"({_redact(database_url) if database_url else 'in memory'})"
    )
    return _repository_instance


__all__ = [
    "Execution",
    "ExecutionLog",
    "KVEntry",
    "LogMessage",
    "Workflow",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
]
