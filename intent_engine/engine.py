"""Unified transition function.

Every state change of a workflow goes through :meth:`TransitionEngine.transition`:
guard, gate, compare-and-swap, then (for graph events) a job dispatch. Audit is
recorded for every outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from . import audit
from .audit import AuditEmitter, InMemoryAuditSink
from .automation import AutomationGraph, default_automation_graph
from .constants import SYSTEM_ACTOR_ID
from .contracts import JobEvent
from .exceptions import TransientStoreError
from .executor import AtomicTransitionExecutor
from .gates import GateResolver, gated_step
from .guard import is_replay, next_state
from .persistence import Workflow, WorkflowRepository
from .states import (
    INITIAL_STATE,
    WorkflowEvent,
    WorkflowState,
    definition_for_state,
    is_failed_state,
    is_running_state,
)
from .transports import BaseTransport

logger = logging.getLogger(__name__)


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    REPLAYED = "replayed"
    CONFLICT = "conflict"
    ILLEGAL_TRANSITION = "illegal_transition"
    GATE_BLOCKED = "gate_blocked"
    NOT_FOUND = "not_found"
    STORE_ERROR = "store_error"


_HTTP_STATUS = {
    TransitionOutcome.APPLIED: 200,
    TransitionOutcome.REPLAYED: 200,
    TransitionOutcome.CONFLICT: 409,
    TransitionOutcome.ILLEGAL_TRANSITION: 409,
    TransitionOutcome.GATE_BLOCKED: 423,
    TransitionOutcome.NOT_FOUND: 404,
    TransitionOutcome.STORE_ERROR: 503,
}

_AUDIT_ACTIONS = {
    TransitionOutcome.APPLIED: audit.TRANSITION_APPLIED,
    TransitionOutcome.REPLAYED: audit.TRANSITION_REPLAYED,
    TransitionOutcome.CONFLICT: audit.TRANSITION_CONFLICT,
    TransitionOutcome.ILLEGAL_TRANSITION: audit.TRANSITION_REJECTED,
    TransitionOutcome.GATE_BLOCKED: audit.TRANSITION_BLOCKED,
    TransitionOutcome.NOT_FOUND: audit.TRANSITION_NOT_FOUND,
    TransitionOutcome.STORE_ERROR: audit.TRANSITION_ERROR,
}


@dataclass
class TransitionResult:
    """Structured outcome of one transition request."""

    success: bool
    outcome: TransitionOutcome
    workflow_id: str
    event: WorkflowEvent
    applied: bool = False
    previous_state: Optional[WorkflowState] = None
    current_state: Optional[WorkflowState] = None
    error: Optional[str] = None
    message: Optional[str] = None
    emitted_event: Optional[str] = None
    emit_error: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    retryable: bool = False
    organization_id: Optional[str] = None
    actor_id: Optional[str] = None

    @property
    def http_status(self) -> int:
        return _HTTP_STATUS[self.outcome]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "outcome": self.outcome.value,
            "applied": self.applied,
            "workflow_id": self.workflow_id,
            "event": self.event.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "current_state": self.current_state.value if self.current_state else None,
            "error": self.error,
            "message": self.message,
            "emitted_event": self.emitted_event,
            "emit_error": self.emit_error,
            "blocked_by": list(self.blocked_by),
            "retryable": self.retryable,
        }


class TransitionEngine:
    """The single sanctioned mutator of workflow state."""

    def __init__(
        self,
        repository: WorkflowRepository,
        transport: BaseTransport,
        graph: AutomationGraph | None = None,
        audit_emitter: AuditEmitter | None = None,
        gates: GateResolver | None = None,
        validate_graph: bool = True,
    ) -> None:
        self.repository = repository
        self.transport = transport
        self.graph = graph if graph is not None else default_automation_graph()
        if validate_graph:
            self.graph.validate()
        self.audit = audit_emitter or AuditEmitter(InMemoryAuditSink())
        self.gates = gates or GateResolver(repository, self.audit)
        self.executor = AtomicTransitionExecutor(repository)

    async def create_workflow(
        self,
        organization_id: str,
        created_by: Optional[str] = None,
        step_metadata: Optional[Dict[str, Any]] = None,
    ) -> Workflow:
        workflow = Workflow(
            organization_id=organization_id,
            state=INITIAL_STATE,
            step_metadata=step_metadata or {},
            created_by=created_by,
        )
        await self.repository.create_workflow(workflow)
        logger.info(f"Created workflow_id={workflow.id} for organization {organization_id}")
        await self.audit.emit(
            audit.WORKFLOW_CREATED,
            workflow_id=workflow.id,
            organization_id=organization_id,
            actor_id=created_by or SYSTEM_ACTOR_ID,
            state=workflow.state.value,
        )
        return workflow

    async def transition(
        self,
        workflow_id: str,
        organization_id: str,
        event: WorkflowEvent,
        actor_id: Optional[str] = None,
        *,
        session: WorkflowRepository | None = None,
    ) -> TransitionResult:
        """Apply ``event`` to a workflow.

        With ``session`` the state change joins the caller's transaction and
        job emission plus audit are left to :meth:`publish_outcome`, which the
        caller invokes after commit.
        """
        actor_id = actor_id or SYSTEM_ACTOR_ID
        repo = session or self.repository
        result = TransitionResult(
            success=False,
            outcome=TransitionOutcome.STORE_ERROR,
            workflow_id=workflow_id,
            event=event,
            organization_id=organization_id,
            actor_id=actor_id,
        )

        try:
            await self._apply(result, repo, session)
        except TransientStoreError as e:
            logger.error(
                f"Store error while applying {event.value} to workflow_id={workflow_id}: {e}"
            )
            result.success = False
            result.applied = False
            result.outcome = TransitionOutcome.STORE_ERROR
            result.error = "STORE_ERROR"
            result.message = str(e)
            result.retryable = True

        if session is None:
            await self.publish_outcome(result)
        return result

    async def _apply(
        self,
        result: TransitionResult,
        repo: WorkflowRepository,
        session: WorkflowRepository | None,
    ) -> None:
        workflow_id = result.workflow_id
        organization_id = result.organization_id
        event = result.event

        workflow = await repo.get_workflow(workflow_id, organization_id)
        if workflow is None:
            result.outcome = TransitionOutcome.NOT_FOUND
            result.error = "NOT_FOUND"
            result.message = f"Workflow {workflow_id} not found"
            logger.warning(f"Transition {event.value} for unknown workflow_id={workflow_id}")
            return

        current = workflow.state
        result.previous_state = current
        result.current_state = current

        to_state = next_state(current, event)
        if to_state is None:
            if is_replay(current, event):
                result.success = True
                result.outcome = TransitionOutcome.REPLAYED
                result.message = (
                    f"{event.value} already processed; workflow is at {current.value}"
                )
                logger.info(
                    f"Replayed {event.value} for workflow_id={workflow_id} at {current.value}"
                )
                return
            result.outcome = TransitionOutcome.ILLEGAL_TRANSITION
            result.error = "ILLEGAL_TRANSITION"
            result.message = f"{event.value} is not allowed from {current.value}"
            logger.warning(
                f"Rejected {event.value} for workflow_id={workflow_id} at {current.value}"
            )
            return

        step = gated_step(event)
        if step is not None:
            gate = await self.gates.resolve(
                workflow_id, organization_id, step, session=session
            )
            if not gate.allowed:
                result.outcome = TransitionOutcome.GATE_BLOCKED
                result.error = "GATE_BLOCKED"
                result.message = gate.reason
                result.blocked_by = list(gate.blocked_by)
                logger.warning(
                    f"Gate {gate.gate_id} blocked {event.value} for workflow_id={workflow_id}: "
                    f"{', '.join(gate.blocked_by)}"
                )
                return

        execution = await self.executor.execute(
            workflow_id, organization_id, current, to_state, session=session
        )
        if not execution.applied:
            result.outcome = TransitionOutcome.CONFLICT
            result.error = "CONFLICT"
            result.current_state = execution.current_state
            result.message = (
                f"Workflow {workflow_id} left {current.value} before {event.value} applied"
            )
            logger.warning(
                f"Lost race applying {event.value} to workflow_id={workflow_id}"
            )
            return

        result.success = True
        result.applied = True
        result.outcome = TransitionOutcome.APPLIED
        result.current_state = to_state
        logger.info(
            f"Workflow {workflow_id}: {current.value} --{event.value}--> {to_state.value}"
        )

    async def publish_outcome(self, result: TransitionResult) -> None:
        """Emit the automation job (if any) and the audit entries for ``result``."""
        if result.applied:
            job_name = self.graph.job_for(result.event)
            if job_name is not None:
                await self._emit_job(result, job_name)

        await self.audit.emit(
            _AUDIT_ACTIONS[result.outcome],
            workflow_id=result.workflow_id,
            organization_id=result.organization_id,
            actor_id=result.actor_id,
            event=result.event.value,
            previous_state=result.previous_state.value if result.previous_state else None,
            current_state=result.current_state.value if result.current_state else None,
            error=result.error,
            blocked_by=list(result.blocked_by),
        )

    async def _emit_job(self, result: TransitionResult, job_name: str) -> None:
        job = JobEvent(
            name=job_name,
            workflow_id=result.workflow_id,
            organization_id=result.organization_id,
            trigger_event=result.event.value,
            payload={"workflow_id": result.workflow_id},
        )
        try:
            await self.transport.send(job)
        except Exception as e:
            logger.error(
                f"Failed to publish {job_name} for workflow_id={result.workflow_id}: {e}"
            )
            result.emit_error = str(e)
            await self.audit.emit(
                audit.AUTOMATION_EMIT_FAILED,
                workflow_id=result.workflow_id,
                organization_id=result.organization_id,
                actor_id=result.actor_id,
                event=result.event.value,
                job=job_name,
                error=str(e),
            )
            return

        result.emitted_event = job_name
        logger.info(
            f"Dispatched {job_name} for workflow_id={result.workflow_id} "
            f"(message_id={job.message_id})"
        )
        await self.audit.emit(
            audit.AUTOMATION_EMITTED,
            workflow_id=result.workflow_id,
            organization_id=result.organization_id,
            actor_id=result.actor_id,
            event=result.event.value,
            job=job_name,
            message_id=job.message_id,
        )

    async def redispatch(
        self,
        workflow_id: str,
        organization_id: str,
        actor_id: Optional[str] = None,
        force: bool = False,
    ) -> Optional[JobEvent]:
        """Re-publish the job for a workflow resting in an automated step.

        Recovers from a publish that failed after its transition committed, or
        from a lost message. Returns ``None`` when the workflow is not waiting
        on background work.

        A step that is already running may still have a live worker, and a
        second job would run its handler again. Running steps are therefore
        only redispatched with ``force=True``, once the worker is known to be
        gone.
        """
        workflow = await self.repository.get_workflow(workflow_id, organization_id)
        if workflow is None:
            return None
        definition = definition_for_state(workflow.state)
        if (
            definition is None
            or not definition.automated
            or is_failed_state(workflow.state)
        ):
            logger.info(
                f"Nothing to redispatch for workflow_id={workflow_id} at {workflow.state.value}"
            )
            return None
        if is_running_state(workflow.state) and not force:
            logger.warning(
                f"Not redispatching workflow_id={workflow_id}: {workflow.state.value} "
                f"may still be processed by a worker"
            )
            return None

        job = JobEvent(
            name=definition.job_event,
            workflow_id=workflow_id,
            organization_id=organization_id,
            trigger_event="REDISPATCH",
            payload={"workflow_id": workflow_id},
        )
        await self.transport.send(job)
        logger.info(f"Redispatched {job.name} for workflow_id={workflow_id}")
        await self.audit.emit(
            audit.AUTOMATION_EMITTED,
            workflow_id=workflow_id,
            organization_id=organization_id,
            actor_id=actor_id or SYSTEM_ACTOR_ID,
            event="REDISPATCH",
            job=job.name,
            message_id=job.message_id,
            forced=force,
        )
        return job
