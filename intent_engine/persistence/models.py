"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..states import INITIAL_STATE, Step, WorkflowState


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalEntity(str, Enum):
    """Entity types a human approval can gate."""

    SEED_KEYWORDS = "seed_keywords"
    SUBTOPICS = "subtopics"


class ApprovalDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class Workflow(BaseModel):
    """One organization's run through the content pipeline."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    organization_id: str
    state: WorkflowState = INITIAL_STATE
    step_metadata: dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Approval(BaseModel):
    """Append-only record of a human review decision."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    organization_id: str
    entity_type: ApprovalEntity
    decision: ApprovalDecision
    approver_id: str
    feedback: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class IdempotencyRecord(BaseModel):
    """Marks one logical step completion as already processed."""

    workflow_id: str
    step: Step
    token: str
    created_at: datetime = Field(default_factory=utcnow)


class StepArtifact(BaseModel):
    """Output a step produced, stored alongside its idempotency record."""

    id: Optional[int] = None
    workflow_id: str
    organization_id: str
    step: Step
    token: str
    data: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class UsageRecord(BaseModel):
    """Billable usage reported by a step completion."""

    id: Optional[int] = None
    workflow_id: str
    organization_id: str
    step: Step
    token: str
    usage: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)


class CasResult(BaseModel):
    """Outcome of a compare-and-set on the workflow state column."""

    applied: bool
    current_state: Optional[WorkflowState] = None
