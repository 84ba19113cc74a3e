"""Persistence layer for baton workflow instances."""

from __future__ import annotations

import logging
import os
from typing import Optional

from ..config import BatonConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

logger = logging.getLogger(__name__)

_repository_instance: WorkflowRepository | None = None


def create_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Build a repository for ``database_url``; ``None`` means in-memory."""
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        from .postgres import PostgresWorkflowRepository

        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[BatonConfig] = None
) -> WorkflowRepository:
    """Return the process-wide workflow repository.

    The first call (or any call that passes ``database_url`` or ``config``)
    builds a new repository. The URL comes from the argument, then
    ``BATON_DATABASE_URL``/``DATABASE_URL``, then ``config.database_url``.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        config = config or load_config()
        database_url = (
            os.getenv("BATON_DATABASE_URL")
            or os.getenv("DATABASE_URL")
            or config.database_url
        )
    _repository_instance = create_repository(database_url)
    logger.debug(f"Using {type(_repository_instance).__name__} for workflow state")
    return _repository_instance


__all__ = [
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "InMemoryWorkflowRepository",
    "create_repository",
    "get_repository",
]
