"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from typing import Any, AsyncContextManager, Optional, Protocol

from ..states import Step, WorkflowState
from .models import (
    Approval,
    CasResult,
    IdempotencyRecord,
    StepArtifact,
    UsageRecord,
    Workflow,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Every method raises :class:`~intent_engine.exceptions.TransientStoreError`
    when the backing store fails. ``transaction()`` yields a session object that
    implements this same protocol; all calls made through the session commit or
    roll back together.
    """

    def transaction(self) -> AsyncContextManager["WorkflowRepository"]:
        """Open a unit of work."""

    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a new workflow."""

    async def get_workflow(
        self, workflow_id: str, organization_id: str
    ) -> Workflow | None:
        """Retrieve a workflow scoped to its organization."""

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[Workflow]:
        """Return all persisted workflows, optionally for one organization."""

    async def compare_and_set_state(
        self,
        workflow_id: str,
        organization_id: str,
        expected: WorkflowState,
        new: WorkflowState,
    ) -> CasResult:
        """Set ``state`` to ``new`` only if it currently equals ``expected``."""

    async def merge_step_metadata(
        self, workflow_id: str, organization_id: str, metadata: dict[str, Any]
    ) -> None:
        """Merge keys into the workflow's ``step_metadata``."""

    async def record_approval(self, approval: Approval) -> None:
        """Append a human decision."""

    async def list_approvals(
        self, workflow_id: str, organization_id: str
    ) -> list[Approval]:
        """Return decisions for a workflow, oldest first."""

    async def claim_idempotency_key(self, record: IdempotencyRecord) -> bool:
        """Insert ``record``; return ``False`` if it already exists."""

    async def save_artifact(self, artifact: StepArtifact) -> None:
        """Persist a step artifact."""

    async def list_artifacts(
        self, workflow_id: str, step: Optional[Step] = None
    ) -> list[StepArtifact]:
        """Return artifacts for a workflow, oldest first."""

    async def record_usage(self, usage: UsageRecord) -> None:
        """Persist a usage record."""

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        """Return usage records for a workflow, oldest first."""
