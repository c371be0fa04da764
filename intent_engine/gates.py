"""Blocking condition resolver.

Each step a workflow can enter is guarded by a gate: a set of approvals that
must have been granted and ``step_metadata`` keys that must have been marked
complete. Gates fail closed: a missing workflow or any error while reading the
store blocks the transition.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from . import audit
from .audit import AuditEmitter
from .constants import SYSTEM_ACTOR_ID
from .guard import target_state
from .persistence import (
    Approval,
    ApprovalDecision,
    ApprovalEntity,
    Workflow,
    WorkflowRepository,
)
from .states import (
    FAILURE_EVENTS,
    TRANSITIONS,
    Step,
    WorkflowEvent,
    WorkflowState,
    is_running_state,
    step_of,
)

logger = logging.getLogger(__name__)

GATE_EVALUATION_ERROR = "gate_evaluation_error"
WORKFLOW_NOT_FOUND = "workflow_not_found"


@dataclass(frozen=True)
class GateRequirement:
    gate_id: str
    approvals: Tuple[ApprovalEntity, ...] = ()
    metadata: Tuple[str, ...] = ()
    blocking_reason: str = ""
    required_action: str = ""
    action_link_template: str = "/workflows/{workflow_id}"

    def action_link(self, workflow_id: str) -> str:
        return self.action_link_template.replace("{workflow_id}", workflow_id)


@dataclass
class GateResult:
    allowed: bool
    reason: Optional[str] = None
    blocked_by: List[str] = field(default_factory=list)
    gate_id: Optional[str] = None


@dataclass
class BlockingCondition:
    blocked_at_step: Step
    blocking_gate: str
    blocking_reason: str
    required_action: str
    action_link: str
    blocked_since: datetime
    blocked_by: List[str] = field(default_factory=list)


# Keyed by the step being entered.
GATES: Dict[Step, GateRequirement] = {
    Step.COMPETITORS: GateRequirement(
        gate_id="gate_icp_required",
        metadata=("icp_generation",),
        blocking_reason="ICP generation required before competitor analysis",
        required_action="Generate ICP document",
        action_link_template="/workflows/{workflow_id}/steps/generate-icp",
    ),
    Step.SEEDS: GateRequirement(
        gate_id="gate_competitors_required",
        metadata=("competitor_analysis",),
        blocking_reason="Competitor analysis required before seed keywords",
        required_action="Analyze competitors",
        action_link_template="/workflows/{workflow_id}/steps/analyze-competitors",
    ),
    Step.LONGTAILS: GateRequirement(
        gate_id="gate_seeds_approval_required",
        approvals=(ApprovalEntity.SEED_KEYWORDS,),
        metadata=("competitor_analysis",),
        blocking_reason="Seed keywords must be approved before longtail expansion",
        required_action="Review and approve seeds",
        action_link_template="/workflows/{workflow_id}/approvals/seeds",
    ),
    Step.FILTERING: GateRequirement(
        gate_id="gate_longtails_required",
        metadata=("longtail_expansion",),
        blocking_reason="Longtail expansion required before filtering",
        required_action="Expand longtail keywords",
        action_link_template="/workflows/{workflow_id}/steps/expand-longtails",
    ),
    Step.CLUSTERING: GateRequirement(
        gate_id="gate_filtering_required",
        metadata=("keyword_filtering",),
        blocking_reason="Keyword filtering required before clustering",
        required_action="Filter keywords",
        action_link_template="/workflows/{workflow_id}/steps/filter-keywords",
    ),
    Step.VALIDATION: GateRequirement(
        gate_id="gate_clustering_required",
        metadata=("keyword_clustering",),
        blocking_reason="Clustering required before cluster validation",
        required_action="Cluster keywords",
        action_link_template="/workflows/{workflow_id}/steps/cluster-keywords",
    ),
    Step.SUBTOPICS: GateRequirement(
        gate_id="gate_validation_required",
        metadata=("cluster_validation",),
        blocking_reason="Cluster validation required before subtopics",
        required_action="Validate clusters",
        action_link_template="/workflows/{workflow_id}/steps/validate-clusters",
    ),
    Step.ARTICLES: GateRequirement(
        gate_id="gate_subtopic_approval_required",
        approvals=(ApprovalEntity.SUBTOPICS,),
        metadata=("subtopic_generation",),
        blocking_reason="Subtopics must be approved before article generation",
        required_action="Review and approve subtopics",
        action_link_template="/workflows/{workflow_id}/approvals/subtopics",
    ),
}


def gated_step(event: WorkflowEvent) -> Optional[Step]:
    """Return the step whose gate ``event`` must pass, or ``None`` if ungated."""
    if event in FAILURE_EVENTS:
        return None
    return step_of(target_state(event))


def forward_event(state: WorkflowState) -> Optional[WorkflowEvent]:
    """Return the non-failure event legal from ``state``."""
    for (source, event) in TRANSITIONS:
        if source == state and event not in FAILURE_EVENTS:
            return event
    return None


def latest_decisions(approvals: List[Approval]) -> Dict[ApprovalEntity, ApprovalDecision]:
    """Collapse an approval history to the most recent decision per entity."""
    decisions: Dict[ApprovalEntity, ApprovalDecision] = {}
    for approval in sorted(approvals, key=lambda a: a.created_at):
        decisions[approval.entity_type] = approval.decision
    return decisions


class GateResolver:
    """Evaluates step gates against persisted approvals and step metadata."""

    def __init__(
        self,
        repository: WorkflowRepository,
        audit_emitter: AuditEmitter | None = None,
        gates: Dict[Step, GateRequirement] | None = None,
    ) -> None:
        self._repository = repository
        self._audit = audit_emitter
        self._gates = GATES if gates is None else gates

    def requirement(self, step: Step) -> Optional[GateRequirement]:
        return self._gates.get(step)

    async def resolve(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        session: WorkflowRepository | None = None,
    ) -> GateResult:
        """Decide whether ``step`` may be entered.

        Never raises; every failure is reported as a blocked result.
        """
        requirement = self._gates.get(step)
        if requirement is None:
            return GateResult(allowed=True)

        repo = session or self._repository
        try:
            workflow = await repo.get_workflow(workflow_id, organization_id)
            if workflow is None:
                return GateResult(
                    allowed=False,
                    reason="Workflow not found",
                    blocked_by=[WORKFLOW_NOT_FOUND],
                    gate_id=requirement.gate_id,
                )
            approvals = (
                await repo.list_approvals(workflow_id, organization_id)
                if requirement.approvals
                else []
            )
            blocked_by = self._unmet(requirement, workflow, approvals)
        except Exception as e:
            logger.error(
                f"Gate {requirement.gate_id} evaluation failed for workflow_id={workflow_id}: {e}"
            )
            return GateResult(
                allowed=False,
                reason=f"Gate evaluation failed: {e}",
                blocked_by=[GATE_EVALUATION_ERROR],
                gate_id=requirement.gate_id,
            )

        if blocked_by:
            return GateResult(
                allowed=False,
                reason=requirement.blocking_reason,
                blocked_by=blocked_by,
                gate_id=requirement.gate_id,
            )
        return GateResult(allowed=True, gate_id=requirement.gate_id)

    @staticmethod
    def _unmet(
        requirement: GateRequirement, workflow: Workflow, approvals: List[Approval]
    ) -> List[str]:
        decisions = latest_decisions(approvals)
        blocked_by = [
            f"approval:{entity.value}"
            for entity in requirement.approvals
            if decisions.get(entity) != ApprovalDecision.APPROVED
        ]
        blocked_by.extend(
            f"metadata:{key}"
            for key in requirement.metadata
            if not workflow.step_metadata.get(key)
        )
        return blocked_by

    async def blocking_condition(
        self, workflow_id: str, organization_id: str
    ) -> Optional[BlockingCondition]:
        """Explain why a workflow cannot move forward, or ``None`` if it can.

        Running workflows are never reported as blocked; their next gate is
        satisfied by the step currently executing.
        """
        workflow = await self._repository.get_workflow(workflow_id, organization_id)
        if workflow is None or is_running_state(workflow.state):
            return None

        event = forward_event(workflow.state)
        if event is None:
            return None
        step = gated_step(event)
        requirement = self._gates.get(step) if step else None
        if requirement is None:
            return None

        result = await self.resolve(workflow_id, organization_id, step)
        if result.allowed:
            return None

        condition = BlockingCondition(
            blocked_at_step=step_of(workflow.state),
            blocking_gate=requirement.gate_id,
            blocking_reason=requirement.blocking_reason,
            required_action=requirement.required_action,
            action_link=requirement.action_link(workflow_id),
            blocked_since=workflow.updated_at,
            blocked_by=result.blocked_by,
        )
        if self._audit is not None:
            await self._audit.emit(
                audit.BLOCKING_CONDITION_QUERIED,
                workflow_id=workflow_id,
                organization_id=organization_id,
                actor_id=SYSTEM_ACTOR_ID,
                blocked_at_step=condition.blocked_at_step.value,
                blocking_gate=condition.blocking_gate,
                blocking_reason=condition.blocking_reason,
                required_action=condition.required_action,
                blocked_by=condition.blocked_by,
            )
        return condition
