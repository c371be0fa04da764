"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple

from ..states import Step, WorkflowState
from .models import (
    Approval,
    CasResult,
    IdempotencyRecord,
    StepArtifact,
    UsageRecord,
    Workflow,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Transactions are serialized against
    each other and undone on error; writes inside an open transaction are
    visible to other callers before commit.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._approvals: List[Approval] = []
        self._idempotency: Dict[Tuple[str, str, str], IdempotencyRecord] = {}
        self._artifacts: List[StepArtifact] = []
        self._usage: List[UsageRecord] = []
        self._ids = {"artifact": 0, "usage": 0}
        self._tx_lock = asyncio.Lock()
        self._undo: Optional[List[Callable[[], None]]] = None

    def _remember(self, undo: Callable[[], None]) -> None:
        if self._undo is not None:
            self._undo.append(undo)

    def _next_id(self, kind: str) -> int:
        self._ids[kind] += 1
        return self._ids[kind]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryWorkflowRepository"]:
        async with self._tx_lock:
            session = _InMemorySession(self)
            try:
                yield session
            except BaseException:
                session.rollback()
                raise

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        if workflow.id in self._workflows:
            raise ValueError(f"Workflow {workflow.id} already exists")
        self._workflows[workflow.id] = workflow.model_copy(deep=True)
        self._remember(lambda: self._workflows.pop(workflow.id, None))

    async def get_workflow(
        self, workflow_id: str, organization_id: str
    ) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        if wf is None or wf.organization_id != organization_id:
            return None
        return wf.model_copy(deep=True)

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[Workflow]:
        return [
            wf.model_copy(deep=True)
            for wf in self._workflows.values()
            if organization_id is None or wf.organization_id == organization_id
        ]

    async def compare_and_set_state(
        self,
        workflow_id: str,
        organization_id: str,
        expected: WorkflowState,
        new: WorkflowState,
    ) -> CasResult:
        wf = self._workflows.get(workflow_id)
        if wf is None or wf.organization_id != organization_id:
            return CasResult(applied=False)
        if wf.state != expected:
            return CasResult(applied=False, current_state=wf.state)

        previous_state, previous_updated = wf.state, wf.updated_at
        wf.state = new
        wf.updated_at = utcnow()

        def undo() -> None:
            wf.state = previous_state
            wf.updated_at = previous_updated

        self._remember(undo)
        return CasResult(applied=True, current_state=new)

    async def merge_step_metadata(
        self, workflow_id: str, organization_id: str, metadata: dict[str, Any]
    ) -> None:
        wf = self._workflows.get(workflow_id)
        if wf is None or wf.organization_id != organization_id:
            return
        previous_metadata, previous_updated = dict(wf.step_metadata), wf.updated_at
        wf.step_metadata.update(metadata)
        wf.updated_at = utcnow()

        def undo() -> None:
            wf.step_metadata = previous_metadata
            wf.updated_at = previous_updated

        self._remember(undo)

    async def record_approval(self, approval: Approval) -> None:
        stored = approval.model_copy()
        self._approvals.append(stored)
        self._remember(lambda: self._approvals.remove(stored))

    async def list_approvals(
        self, workflow_id: str, organization_id: str
    ) -> list[Approval]:
        return [
            a.model_copy()
            for a in self._approvals
            if a.workflow_id == workflow_id and a.organization_id == organization_id
        ]

    async def claim_idempotency_key(self, record: IdempotencyRecord) -> bool:
        key = (record.workflow_id, record.step.value, record.token)
        if key in self._idempotency:
            return False
        self._idempotency[key] = record.model_copy()
        self._remember(lambda: self._idempotency.pop(key, None))
        return True

    async def save_artifact(self, artifact: StepArtifact) -> None:
        stored = artifact.model_copy(deep=True, update={"id": self._next_id("artifact")})
        self._artifacts.append(stored)
        self._remember(lambda: self._artifacts.remove(stored))

    async def list_artifacts(
        self, workflow_id: str, step: Optional[Step] = None
    ) -> list[StepArtifact]:
        return [
            a.model_copy(deep=True)
            for a in self._artifacts
            if a.workflow_id == workflow_id and (step is None or a.step == step)
        ]

    async def record_usage(self, usage: UsageRecord) -> None:
        stored = usage.model_copy(deep=True, update={"id": self._next_id("usage")})
        self._usage.append(stored)
        self._remember(lambda: self._usage.remove(stored))

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        return [u.model_copy(deep=True) for u in self._usage if u.workflow_id == workflow_id]


class _InMemorySession(InMemoryWorkflowRepository):
    """Transaction view sharing the parent's storage and journaling undo steps."""

    def __init__(self, parent: InMemoryWorkflowRepository) -> None:
        self.__dict__.update(parent.__dict__)
        self._undo = []

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["InMemoryWorkflowRepository"]:
        yield self

    def rollback(self) -> None:
        while self._undo:
            self._undo.pop()()
