from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuditEntry(SQLModel, table=True):
    """One audited action against a workflow."""

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    action: str = Field(index=True)
    workflow_id: Optional[str] = Field(default=None, index=True)
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: dict = Field(default_factory=dict, sa_column=Column(JSON))
    recorded_at: datetime = Field(default_factory=_utcnow)
