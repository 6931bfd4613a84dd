"""Persistence layer for pipeline executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import SafeDeployConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .models import ActionRecord
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresExecutionRepository
except Exception:  # pragma: no cover - optional dependency
    PostgresExecutionRepository = None  # type: ignore

_repository_instance: ExecutionRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[SafeDeployConfig] = None
) -> ExecutionRepository:
    """Factory function to obtain an execution repository.

    The backend is selected from ``database_url``, which can be provided
    explicitly, via environment variable ``SAFEDEPLOY_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SAFEDEPLOY_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryExecutionRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteExecutionRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresExecutionRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresExecutionRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "ActionRecord",
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "SQLiteExecutionRepository",
    "PostgresExecutionRepository",
    "get_repository",
]
