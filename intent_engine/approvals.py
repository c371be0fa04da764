"""Human review decisions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from . import audit
from .engine import TransitionEngine, TransitionOutcome, TransitionResult
from .persistence import Approval, ApprovalDecision, ApprovalEntity, WorkflowRepository
from .states import WorkflowEvent, WorkflowState

logger = logging.getLogger(__name__)

# Where each review happens and what an approval fires.
REVIEWS: Dict[ApprovalEntity, tuple[WorkflowState, WorkflowEvent]] = {
    ApprovalEntity.SEED_KEYWORDS: (
        WorkflowState.COMPETITOR_COMPLETED,
        WorkflowEvent.SEEDS_APPROVED,
    ),
    ApprovalEntity.SUBTOPICS: (
        WorkflowState.STEP_8_SUBTOPICS_REVIEW,
        WorkflowEvent.HUMAN_SUBTOPICS_APPROVED,
    ),
}


@dataclass
class ApprovalResult:
    recorded: bool
    approval: Optional[Approval] = None
    transition: Optional[TransitionResult] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.transition is not None:
            return self.transition.http_status
        if self.error == "NOT_FOUND":
            return 404
        if self.error == "ILLEGAL_TRANSITION":
            return 409
        return 200


class HumanApprovalProcessor:
    """Records review decisions and advances approved workflows."""

    def __init__(self, repository: WorkflowRepository, engine: TransitionEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def submit(
        self,
        workflow_id: str,
        organization_id: str,
        entity_type: ApprovalEntity,
        decision: ApprovalDecision,
        approver_id: str,
        feedback: Optional[str] = None,
    ) -> ApprovalResult:
        review_state, event = REVIEWS[entity_type]

        workflow = await self._repository.get_workflow(workflow_id, organization_id)
        if workflow is None:
            return ApprovalResult(
                recorded=False,
                error="NOT_FOUND",
                message=f"Workflow {workflow_id} not found",
            )
        if workflow.state != review_state:
            logger.warning(
                f"Rejected {entity_type.value} review for workflow_id={workflow_id} "
                f"at {workflow.state.value}"
            )
            return ApprovalResult(
                recorded=False,
                error="ILLEGAL_TRANSITION",
                message=(
                    f"{entity_type.value} can only be reviewed at {review_state.value}, "
                    f"workflow is at {workflow.state.value}"
                ),
            )

        approval = Approval(
            workflow_id=workflow_id,
            organization_id=organization_id,
            entity_type=entity_type,
            decision=decision,
            approver_id=approver_id,
            feedback=feedback,
        )
        await self._repository.record_approval(approval)
        logger.info(
            f"Recorded {decision.value} {entity_type.value} review for workflow_id={workflow_id}"
        )
        await self._engine.audit.emit(
            audit.APPROVAL_RECORDED,
            workflow_id=workflow_id,
            organization_id=organization_id,
            actor_id=approver_id,
            entity_type=entity_type.value,
            decision=decision.value,
            feedback=feedback,
        )

        if decision != ApprovalDecision.APPROVED:
            return ApprovalResult(recorded=True, approval=approval)

        transition = await self._engine.transition(
            workflow_id, organization_id, event, approver_id
        )
        if transition.outcome == TransitionOutcome.CONFLICT:
            logger.info(
                f"Approval of {entity_type.value} for workflow_id={workflow_id} "
                f"already applied by another request"
            )
        return ApprovalResult(
            recorded=True,
            approval=approval,
            transition=transition,
            error=transition.error,
            message=transition.message,
        )
