"""Persistence layer for nurtureflow automation state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import NurtureFlowConfig, load_config
from .inmemory import InMemoryRepository
from .repository import AutomationRepository
from .sql import SQLRepository

_repository_instance: AutomationRepository | None = None

_SQL_PREFIXES = ("sqlite", "postgres", "postgresql")


def get_repository(
    database_url: Optional[str] = None, config: Optional[NurtureFlowConfig] = None
) -> AutomationRepository:
    """Factory function to obtain an automation repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``NURTUREFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("NURTUREFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryRepository()
        return _repository_instance

    scheme = database_url.split("://", 1)[0].split("+", 1)[0]
    if scheme not in _SQL_PREFIXES:
        raise ValueError(f"Unsupported database backend: {database_url}")
    _repository_instance = SQLRepository(database_url)
    return _repository_instance


def set_repository(repository: AutomationRepository | None) -> None:
    """Replace the process-wide default repository (``None`` resets it)."""
    global _repository_instance
    _repository_instance = repository


__all__ = [
    "AutomationRepository",
    "InMemoryRepository",
    "SQLRepository",
    "get_repository",
    "set_repository",
]
