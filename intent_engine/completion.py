"""Idempotent step completion."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import audit
from .constants import WORKER_ACTOR_ID
from .engine import TransitionEngine, TransitionOutcome, TransitionResult
from .exceptions import TransientStoreError, UnknownStepError
from .persistence import IdempotencyRecord, StepArtifact, UsageRecord, WorkflowRepository
from .states import STEP_DEFINITIONS, Step, StepDefinition

logger = logging.getLogger(__name__)


@dataclass
class CompletionResult:
    """What a completion call did.

    ``duplicate`` means the token had already been processed and nothing was
    written. ``transition`` is ``None`` only for duplicates.
    """

    applied: bool
    duplicate: bool = False
    transition: Optional[TransitionResult] = None


class _DuplicateToken(Exception):
    pass


class _TransitionNotApplied(Exception):
    def __init__(self, result: TransitionResult) -> None:
        super().__init__(result.message)
        self.result = result


def _definition(step: Step) -> StepDefinition:
    try:
        return STEP_DEFINITIONS[step]
    except KeyError:
        raise UnknownStepError(f"Step {step.value} has no processing definition") from None


class StepCompletion:
    """Records a step's outcome and advances the workflow in one transaction.

    The idempotency claim, the artifact, the metadata flag, the usage record
    and the state change commit together or not at all. A token that was
    already claimed makes the call a no-op.
    """

    def __init__(self, repository: WorkflowRepository, engine: TransitionEngine) -> None:
        self._repository = repository
        self._engine = engine

    async def complete_step(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        idempotency_token: str,
        artifact: Dict[str, Any],
        usage: Optional[Dict[str, Any]] = None,
        actor_id: str = WORKER_ACTOR_ID,
    ) -> CompletionResult:
        definition = _definition(step)

        async def write(tx: WorkflowRepository) -> None:
            await tx.save_artifact(
                StepArtifact(
                    workflow_id=workflow_id,
                    organization_id=organization_id,
                    step=step,
                    token=idempotency_token,
                    data=artifact,
                )
            )
            await tx.merge_step_metadata(
                workflow_id, organization_id, {definition.metadata_key: True}
            )
            if usage:
                await tx.record_usage(
                    UsageRecord(
                        workflow_id=workflow_id,
                        organization_id=organization_id,
                        step=step,
                        token=idempotency_token,
                        usage=usage,
                    )
                )

        result = await self._run(
            workflow_id,
            organization_id,
            step,
            idempotency_token,
            definition.success_event,
            write,
            actor_id,
        )
        if result.applied:
            logger.info(f"Completed step {step.value} for workflow_id={workflow_id}")
            await self._engine.audit.emit(
                audit.STEP_COMPLETED,
                workflow_id=workflow_id,
                organization_id=organization_id,
                actor_id=actor_id,
                step=step.value,
                token=idempotency_token,
                usage=usage or {},
            )
        return result

    async def fail_step(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        idempotency_token: str,
        error: str,
        actor_id: str = WORKER_ACTOR_ID,
    ) -> CompletionResult:
        definition = _definition(step)

        async def write(tx: WorkflowRepository) -> None:
            await tx.merge_step_metadata(
                workflow_id, organization_id, {f"{step.value}_error": error}
            )

        result = await self._run(
            workflow_id,
            organization_id,
            step,
            idempotency_token,
            definition.failure_event,
            write,
            actor_id,
        )
        if result.applied:
            logger.warning(
                f"Step {step.value} failed for workflow_id={workflow_id}: {error}"
            )
            await self._engine.audit.emit(
                audit.STEP_FAILED,
                workflow_id=workflow_id,
                organization_id=organization_id,
                actor_id=actor_id,
                step=step.value,
                token=idempotency_token,
                error=error,
            )
        return result

    async def _run(
        self,
        workflow_id: str,
        organization_id: str,
        step: Step,
        token: str,
        event,
        write,
        actor_id: str,
    ) -> CompletionResult:
        if not token:
            raise ValueError("idempotency_token is required")

        try:
            async with self._repository.transaction() as tx:
                claimed = await tx.claim_idempotency_key(
                    IdempotencyRecord(workflow_id=workflow_id, step=step, token=token)
                )
                if not claimed:
                    raise _DuplicateToken()
                await write(tx)
                transition = await self._engine.transition(
                    workflow_id, organization_id, event, actor_id, session=tx
                )
                if transition.outcome == TransitionOutcome.STORE_ERROR:
                    raise TransientStoreError(transition.message or "store error")
                if not transition.applied:
                    raise _TransitionNotApplied(transition)
        except _DuplicateToken:
            logger.warning(
                f"Duplicate completion of {step.value} for workflow_id={workflow_id} "
                f"(token={token})"
            )
            await self._engine.audit.emit(
                audit.STEP_DUPLICATE,
                workflow_id=workflow_id,
                organization_id=organization_id,
                actor_id=actor_id,
                step=step.value,
                token=token,
            )
            return CompletionResult(applied=False, duplicate=True)
        except _TransitionNotApplied as e:
            logger.warning(
                f"Rolled back {step.value} outcome for workflow_id={workflow_id}: "
                f"{e.result.outcome.value}"
            )
            await self._engine.publish_outcome(e.result)
            return CompletionResult(applied=False, transition=e.result)
        except TransientStoreError as e:
            logger.error(
                f"Store error completing {step.value} for workflow_id={workflow_id} "
                f"(token={token}): {e}"
            )
            await self._engine.audit.emit(
                audit.TRANSITION_ERROR,
                workflow_id=workflow_id,
                organization_id=organization_id,
                actor_id=actor_id,
                event=event.value,
                step=step.value,
                token=token,
                error="STORE_ERROR",
                message=str(e),
            )
            raise

        await self._engine.publish_outcome(transition)
        return CompletionResult(applied=True, transition=transition)
