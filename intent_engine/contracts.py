"""Message contracts exchanged with background workers."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from pydantic import BaseModel, Field


class JobEvent(BaseModel):
    """Envelope published on the job transport to start background work.

    ``message_id`` is fixed at publish time and survives redelivery, which
    makes it usable as the idempotency token of the step execution it starts.
    """

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str
    workflow_id: str
    organization_id: str
    trigger_event: Optional[str] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    payload: Dict[str, Any] = Field(default_factory=dict)
    spec_version: str = "1.0"

    def to_json(self) -> str:
        """Serialize event to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "JobEvent":
        """Deserialize event from JSON."""
        return cls.model_validate_json(data)


class StepContext(BaseModel):
    """Everything a step handler is given to produce its output."""

    workflow_id: str
    organization_id: str
    step: str
    token: str
    step_metadata: Dict[str, Any] = Field(default_factory=dict)
    previous_artifacts: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    job: Optional[JobEvent] = None


class StepOutput(BaseModel):
    """Result returned by a step handler."""

    artifact: Dict[str, Any] = Field(default_factory=dict)
    usage: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, value: Any) -> "StepOutput":
        """Accept a ``StepOutput``, a plain artifact dict or ``None``."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls()
        if isinstance(value, dict):
            return cls(artifact=value)
        raise TypeError(f"Step handler returned unsupported type {type(value).__name__}")


StepHandler = Callable[[StepContext], Awaitable[Any]]
