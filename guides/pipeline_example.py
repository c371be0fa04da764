"""Drive one workflow through the whole intent pipeline in a single process."""

import asyncio

from intent_engine import StepContext, StepOutput, StepWorker, build_runtime
from intent_engine.config import AuditConfig, IntentEngineConfig
from intent_engine.persistence import ApprovalDecision, ApprovalEntity, InMemoryWorkflowRepository
from intent_engine.states import PROCESSING_STEPS, Step, WorkflowState
from intent_engine.transports import InMemoryTransport


async def fake_step(ctx: StepContext) -> StepOutput:
    """Stand-in for the real LLM/SERP work of a step."""
    await asyncio.sleep(0.1)
    return StepOutput(
        artifact={"step": ctx.step, "built_on": sorted(ctx.previous_artifacts)},
        usage={"input_tokens": 120, "output_tokens": 80},
    )


async def main():
    runtime = build_runtime(
        config=IntentEngineConfig(audit=AuditConfig(backend="log")),
        repository=InMemoryWorkflowRepository(),
        transport=InMemoryTransport(),
    )

    # One background worker per automated step, all on the same in-memory queue
    workers = [
        StepWorker(
            runtime.transport,
            runtime.repository,
            runtime.engine,
            runtime.completion,
            definition.step,
            fake_step,
        )
        for definition in PROCESSING_STEPS
        if definition.automated
    ]
    worker_tasks = [asyncio.create_task(w.start(lifespan=5)) for w in workers]

    wf = await runtime.engine.create_workflow("org-demo", created_by="user-demo")
    print(f"Created workflow {wf.id}")

    for step in (Step.ICP, Step.COMPETITORS):
        result = await runtime.runner.run(wf.id, "org-demo", step, fake_step, "user-demo")
        print(f"{step.value}: {result.status_code}")

    condition = await runtime.engine.gates.blocking_condition(wf.id, "org-demo")
    print(f"Waiting on: {condition.required_action} ({condition.action_link})")

    await runtime.approvals.submit(
        wf.id, "org-demo", ApprovalEntity.SEED_KEYWORDS, ApprovalDecision.APPROVED, "user-demo"
    )

    review = WorkflowState.STEP_8_SUBTOPICS_REVIEW
    while (await runtime.repository.get_workflow(wf.id, "org-demo")).state != review:
        await asyncio.sleep(0.1)

    await runtime.approvals.submit(
        wf.id, "org-demo", ApprovalEntity.SUBTOPICS, ApprovalDecision.APPROVED, "user-demo"
    )

    await asyncio.gather(*worker_tasks)
    final = await runtime.repository.get_workflow(wf.id, "org-demo")
    print(f"Final state: {final.state.value}")
    for artifact in await runtime.repository.list_artifacts(wf.id):
        print(f"  {artifact.step.value}: {artifact.data}")


if __name__ == "__main__":
    asyncio.run(main())
