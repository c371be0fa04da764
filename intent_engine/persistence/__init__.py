"""Persistence layer for intent workflows."""

from __future__ import annotations

from typing import Optional

from ..config import IntentEngineConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    Approval,
    ApprovalDecision,
    ApprovalEntity,
    CasResult,
    IdempotencyRecord,
    StepArtifact,
    UsageRecord,
    Workflow,
)
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository


def get_repository(
    database_url: Optional[str] = None, config: Optional[IntentEngineConfig] = None
) -> WorkflowRepository:
    """Return the workflow repository for ``database_url``.

    Without an explicit URL the configured ``database_url`` is used (which
    ``load_config`` already overrides from ``INTENT_ENGINE_DATABASE_URL`` or
    ``DATABASE_URL``). With no database configured, workflows live in memory.

    Supported URLs are ``sqlite://<path>`` and ``postgres[ql]://...``.
    """

    if database_url is None:
        database_url = (config or load_config()).database_url
    if not database_url:
        return InMemoryWorkflowRepository()

    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "Approval",
    "ApprovalDecision",
    "ApprovalEntity",
    "CasResult",
    "IdempotencyRecord",
    "StepArtifact",
    "UsageRecord",
    "Workflow",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
]
