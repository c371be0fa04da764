"""Inline execution of API-triggered steps."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .completion import CompletionResult, StepCompletion
from .constants import SYSTEM_ACTOR_ID
from .contracts import JobEvent, StepContext, StepHandler, StepOutput
from .engine import TransitionEngine, TransitionResult
from .exceptions import TransientStoreError, UnknownStepError
from .persistence import Workflow, WorkflowRepository
from .states import STEP_DEFINITIONS, Step

logger = logging.getLogger(__name__)


async def load_step_context(
    repository: WorkflowRepository,
    workflow: Workflow,
    step: Step,
    token: str,
    job: Optional[JobEvent] = None,
) -> StepContext:
    """Build the handler context, including the latest artifact of each step."""
    previous: Dict[str, Dict[str, Any]] = {}
    for artifact in await repository.list_artifacts(workflow.id):
        previous[artifact.step.value] = artifact.data
    return StepContext(
        workflow_id=workflow.id,
        organization_id=workflow.organization_id,
        step=step.value,
        token=token,
        step_metadata=workflow.step_metadata,
        previous_artifacts=previous,
        job=job,
    )


@dataclass
class StepRunResult:
    status_code: int
    transition: Optional[TransitionResult] = None
    completion: Optional[CompletionResult] = None
    error: Optional[str] = None
    message: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status_code == 200


class StepRunner:
    """Runs a step to completion inside the calling request.

    Used for the steps a user triggers directly (ICP generation, competitor
    analysis). The start transition is the concurrency gate: of several
    simultaneous requests only the one that wins it runs the handler.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        engine: TransitionEngine,
        completion: StepCompletion,
    ) -> None:
        self._repository = repository
        self._engine = engine
        self._completion = completion

    async def run(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        handler: StepHandler,
        actor_id: Optional[str] = None,
    ) -> StepRunResult:
        definition = STEP_DEFINITIONS.get(step)
        if definition is None:
            raise UnknownStepError(f"Step {step.value} has no processing definition")

        try:
            workflow = await self._repository.get_workflow(workflow_id, organization_id)
        except TransientStoreError as e:
            return StepRunResult(503, error="STORE_ERROR", message=str(e))
        if workflow is None:
            return StepRunResult(
                404, error="NOT_FOUND", message=f"Workflow {workflow_id} not found"
            )

        event = (
            definition.retry_event
            if workflow.state == definition.failed_state
            else definition.start_event
        )
        started = await self._engine.transition(
            workflow_id, organization_id, event, actor_id
        )
        if not started.applied:
            return StepRunResult(
                started.http_status,
                transition=started,
                error=started.error,
                message=started.message,
            )

        # One token per attempt; generated only after winning the start.
        token = str(uuid.uuid4())
        try:
            workflow = await self._repository.get_workflow(workflow_id, organization_id)
            context = await load_step_context(self._repository, workflow, step, token)
            output = StepOutput.coerce(await handler(context))
        except TransientStoreError as e:
            await self._release(workflow_id, organization_id, step, token, e, actor_id)
            return StepRunResult(503, transition=started, error="STORE_ERROR", message=str(e))
        except Exception as e:
            logger.error(f"Step {step.value} handler failed for workflow_id={workflow_id}: {e}")
            try:
                failed = await self._completion.fail_step(
                    workflow_id,
                    organization_id,
                    step,
                    token,
                    str(e),
                    actor_id=actor_id or SYSTEM_ACTOR_ID,
                )
            except TransientStoreError as store_error:
                return StepRunResult(
                    503, transition=started, error="STORE_ERROR", message=str(store_error)
                )
            return StepRunResult(
                500,
                transition=started,
                completion=failed,
                error="STEP_FAILED",
                message=str(e),
            )

        try:
            completed = await self._completion.complete_step(
                workflow_id,
                organization_id,
                step,
                token,
                output.artifact,
                usage=output.usage,
                actor_id=actor_id or SYSTEM_ACTOR_ID,
            )
        except TransientStoreError as e:
            await self._release(workflow_id, organization_id, step, token, e, actor_id)
            return StepRunResult(503, transition=started, error="STORE_ERROR", message=str(e))

        if completed.applied:
            return StepRunResult(200, transition=completed.transition, completion=completed)
        outcome = completed.transition
        return StepRunResult(
            outcome.http_status if outcome else 409,
            transition=outcome,
            completion=completed,
            error=outcome.error if outcome else "DUPLICATE",
            message=outcome.message if outcome else None,
        )

    async def _release(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        token: str,
        error: Exception,
        actor_id: Optional[str],
    ) -> None:
        """Move a step left running by a store error to its failed state, if possible."""
        try:
            await self._completion.fail_step(
                workflow_id,
                organization_id,
                step,
                token,
                str(error),
                actor_id=actor_id or SYSTEM_ACTOR_ID,
            )
        except TransientStoreError as e:
            logger.error(
                f"Could not release {step.value} for workflow_id={workflow_id} "
                f"after store error: {e}"
            )
