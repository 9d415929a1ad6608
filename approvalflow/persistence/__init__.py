"""Persistence layer for approvalflow definitions and instances."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ApprovalflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import DefinitionStore, InstanceStore, WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

SQLITE_SCHEME = "sqlite://"
MEMORY_SCHEME = "memory://"

_repository_instance: WorkflowRepository | None = None


def repository_from_url(database_url: Optional[str]) -> WorkflowRepository:
    """Open the store named by ``database_url``.

    ``sqlite://approvals.db`` and ``sqlite:///var/lib/approvals.db`` select
    SQLite; an empty URL or ``memory://`` keeps everything in process.
    """
    if not database_url or database_url.startswith(MEMORY_SCHEME):
        return InMemoryWorkflowRepository()
    if database_url.startswith(SQLITE_SCHEME):
        return SQLiteWorkflowRepository(database_url[len(SQLITE_SCHEME):] or ":memory:")
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[ApprovalflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow store.

    Called without arguments this reuses the store opened earlier. Otherwise
    the URL comes from ``database_url``, ``APPROVALFLOW_DATABASE_URL``,
    ``DATABASE_URL`` or ``config.database_url``, in that order.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = (
        database_url
        or os.getenv("APPROVALFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or (config or load_config()).database_url
    )
    _repository_instance = repository_from_url(url)
    return _repository_instance


__all__ = [
    "DefinitionStore",
    "InstanceStore",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "repository_from_url",
]
