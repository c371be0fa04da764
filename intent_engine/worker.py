"""Background workers for automated pipeline steps."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Optional

from .completion import StepCompletion
from .constants import DEFAULT_WORKER_MAX_ATTEMPTS, WORKER_ACTOR_ID
from .contracts import JobEvent, StepHandler, StepOutput
from .engine import TransitionEngine, TransitionOutcome
from .exceptions import TransientStoreError, UnknownStepError
from .persistence import WorkflowRepository
from .runner import load_step_context
from .states import STEP_DEFINITIONS, Step
from .transports import BaseTransport
from .utils.retry import schedule_retry

logger = logging.getLogger(__name__)


class StepWorker:
    """Executes one automated step by listening to its job topic.

    A job moves the workflow into the step's running state (or finds it there
    on redelivery), runs the handler and reports the outcome through
    :class:`StepCompletion` using the job's ``message_id`` as idempotency
    token, so a redelivered job never records its outcome twice.
    """

    def __init__(
        self,
        transport: BaseTransport,
        repository: WorkflowRepository,
        engine: TransitionEngine,
        completion: StepCompletion,
        step: Step,
        handler: StepHandler,
        max_attempts: int = DEFAULT_WORKER_MAX_ATTEMPTS,
        retry_delay: Callable[[int], Awaitable[None]] = schedule_retry,
    ) -> None:
        definition = STEP_DEFINITIONS.get(step)
        if definition is None or not definition.automated:
            raise UnknownStepError(f"Step {step.value} is not run by a background worker")
        self._transport = transport
        self._repository = repository
        self._engine = engine
        self._completion = completion
        self._definition = definition
        self._handler = handler
        self._max_attempts = max_attempts
        self._retry_delay = retry_delay
        self.processed: list[str] = []

    @property
    def topic(self) -> str:
        return self._definition.job_event

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for jobs on the step's topic."""
        logger.info(f"Worker for {self._definition.step.value} listening on {self.topic}")
        async for raw_message, job in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            if await self.handle(job):
                await self._transport.ack(raw_message)
            else:
                await self._transport.nack(raw_message, requeue=True)

    async def handle(self, job: JobEvent) -> bool:
        """Process ``job``; return ``False`` if it should be redelivered."""
        for attempt in range(1, self._max_attempts + 1):
            try:
                await self._process(job)
                self.processed.append(job.message_id)
                return True
            except TransientStoreError as e:
                logger.error(
                    f"Store error handling {job.name} for workflow_id={job.workflow_id} "
                    f"(attempt {attempt}/{self._max_attempts}): {e}"
                )
                if attempt < self._max_attempts:
                    await self._retry_delay(attempt)
        return False

    async def _process(self, job: JobEvent) -> None:
        definition = self._definition
        workflow = await self._repository.get_workflow(
            job.workflow_id, job.organization_id
        )
        if workflow is None:
            logger.warning(f"Dropping {job.name}: workflow_id={job.workflow_id} not found")
            return

        if workflow.state == definition.idle_state:
            started = await self._engine.transition(
                job.workflow_id,
                job.organization_id,
                definition.start_event,
                WORKER_ACTOR_ID,
            )
            if started.outcome == TransitionOutcome.STORE_ERROR:
                raise TransientStoreError(started.message or "store error")
            if not started.applied:
                logger.info(
                    f"Skipping {job.name} for workflow_id={job.workflow_id}: "
                    f"{started.outcome.value}"
                )
                return
        elif workflow.state != definition.running_state:
            logger.info(
                f"Skipping {job.name} for workflow_id={job.workflow_id} at {workflow.state.value}"
            )
            return

        workflow = await self._repository.get_workflow(
            job.workflow_id, job.organization_id
        )
        context = await load_step_context(
            self._repository, workflow, definition.step, job.message_id, job=job
        )
        try:
            output = StepOutput.coerce(await self._handler(context))
        except TransientStoreError:
            raise
        except Exception as e:
            logger.error(
                f"Step {definition.step.value} failed for workflow_id={job.workflow_id}: {e}"
            )
            await self._completion.fail_step(
                job.workflow_id,
                job.organization_id,
                definition.step,
                job.message_id,
                str(e),
            )
            return

        await self._completion.complete_step(
            job.workflow_id,
            job.organization_id,
            definition.step,
            job.message_id,
            output.artifact,
            usage=output.usage,
        )
