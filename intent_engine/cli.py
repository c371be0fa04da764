"""Command line interface for operating intent workflows."""

from __future__ import annotations

import asyncio
import importlib
import logging
from typing import Optional

import typer

from .config import load_config
from .contracts import StepHandler
from .exceptions import UnknownStepError
from .persistence import ApprovalDecision, ApprovalEntity
from .runtime import Runtime, build_runtime
from .states import Step, WorkflowEvent, step_label, step_of
from .worker import StepWorker

app = typer.Typer(help="CLI for intent engine workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for inspecting and driving workflows")
graph_app = typer.Typer(help="Commands for the automation graph")
worker_app = typer.Typer(help="Commands for background step workers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(graph_app, name="graph")
app.add_typer(worker_app, name="worker")

_options: dict[str, Optional[str]] = {"config": None}


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", help="Logging level"),
    config: Optional[str] = typer.Option(None, help="Path to a YAML config file"),
) -> None:
    """Intent engine CLI entry point."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _options["config"] = config


def _runtime() -> Runtime:
    return build_runtime(load_config(_options["config"]))


def _load_handler(target: str) -> StepHandler:
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise typer.BadParameter("Handler must be given as 'module:function'")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise typer.BadParameter(f"{module_name} has no attribute {attr}") from None


@workflow_app.command("list")
def workflow_list(
    organization: Optional[str] = typer.Option(None, help="Only this organization"),
) -> None:
    """
    List workflows with their current state.

    Example:
        intent-engine workflow list --organization org-1
        # Output: 5b0c...    org-1    step_5_filtering    (5/9 Filtering)
    """
    runtime = _runtime()
    workflows = asyncio.run(runtime.repository.list_workflows(organization))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        step = step_of(wf.state)
        position = list(Step).index(step) + 1
        typer.echo(
            f"{wf.id}\t{wf.organization_id}\t{wf.state.value}\t"
            f"({position}/{len(Step)} {step_label(step)})"
        )


@workflow_app.command("show")
def workflow_show(workflow_id: str, organization: str) -> None:
    """Show state, step metadata, approvals and artifacts of one workflow."""
    runtime = _runtime()

    async def _load():
        repo = runtime.repository
        wf = await repo.get_workflow(workflow_id, organization)
        if wf is None:
            return None, [], []
        approvals = await repo.list_approvals(workflow_id, organization)
        artifacts = await repo.list_artifacts(workflow_id)
        return wf, approvals, artifacts

    wf, approvals, artifacts = asyncio.run(_load())
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.state.value}")
    typer.echo(f"Organization: {wf.organization_id}")
    if wf.step_metadata:
        typer.echo(f"Step metadata: {wf.step_metadata}")
    for approval in approvals:
        typer.echo(
            f"- approval {approval.entity_type.value}: {approval.decision.value} "
            f"by {approval.approver_id} ({approval.created_at})"
        )
    for artifact in artifacts:
        typer.echo(f"- artifact {artifact.step.value}: token {artifact.token}")


@workflow_app.command("create")
def workflow_create(
    organization: str,
    created_by: Optional[str] = typer.Option(None, help="Creating user id"),
) -> None:
    """Create a workflow in the first pipeline state and print its id."""
    runtime = _runtime()
    wf = asyncio.run(runtime.engine.create_workflow(organization, created_by))
    typer.echo(wf.id)


@workflow_app.command("transition")
def workflow_transition(
    workflow_id: str,
    event: str,
    organization: str = typer.Option(..., help="Owning organization"),
    actor: Optional[str] = typer.Option(None, help="Acting user id"),
) -> None:
    """
    Apply an event to a workflow through the transition engine.

    Exits with code 1 unless the transition succeeded (applied or replayed).

    Example:
        intent-engine workflow transition 5b0c... LONGTAIL_RETRY --organization org-1
    """
    try:
        workflow_event = WorkflowEvent(event.upper())
    except ValueError:
        typer.secho(f"Unknown event: {event}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    runtime = _runtime()
    result = asyncio.run(
        runtime.engine.transition(workflow_id, organization, workflow_event, actor)
    )
    typer.echo(
        f"{result.outcome.value} ({result.http_status}): "
        f"{result.previous_state.value if result.previous_state else '-'} -> "
        f"{result.current_state.value if result.current_state else '-'}"
    )
    if result.blocked_by:
        typer.echo(f"Blocked by: {', '.join(result.blocked_by)}")
    if result.emitted_event:
        typer.echo(f"Dispatched: {result.emitted_event}")
    if not result.success:
        raise typer.Exit(code=1)


@workflow_app.command("approve")
def workflow_approve(
    workflow_id: str,
    entity: str,
    organization: str = typer.Option(..., help="Owning organization"),
    approver: str = typer.Option(..., help="Approving user id"),
    reject: bool = typer.Option(False, help="Record a rejection instead"),
    feedback: Optional[str] = typer.Option(None, help="Reviewer feedback"),
) -> None:
    """Record a human review of seed keywords or subtopics."""
    try:
        entity_type = ApprovalEntity(entity)
    except ValueError:
        typer.secho(f"Unknown review entity: {entity}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    decision = ApprovalDecision.REJECTED if reject else ApprovalDecision.APPROVED
    runtime = _runtime()
    result = asyncio.run(
        runtime.approvals.submit(
            workflow_id, organization, entity_type, decision, approver, feedback
        )
    )
    if not result.recorded:
        typer.secho(result.message or "Review not recorded", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Recorded {decision.value} for {entity_type.value}")
    if result.transition is not None:
        typer.echo(
            f"{result.transition.outcome.value}: "
            f"{result.transition.current_state.value if result.transition.current_state else '-'}"
        )


@workflow_app.command("blocking")
def workflow_blocking(workflow_id: str, organization: str) -> None:
    """Explain what a workflow is waiting for, if anything."""
    runtime = _runtime()
    condition = asyncio.run(
        runtime.engine.gates.blocking_condition(workflow_id, organization)
    )
    if condition is None:
        typer.echo("Workflow is not blocked")
        return
    typer.echo(f"Blocked at {condition.blocked_at_step.value} by {condition.blocking_gate}")
    typer.echo(f"Reason: {condition.blocking_reason}")
    typer.echo(f"Required action: {condition.required_action} ({condition.action_link})")
    typer.echo(f"Missing: {', '.join(condition.blocked_by)}")


@workflow_app.command("redispatch")
def workflow_redispatch(
    workflow_id: str,
    organization: str,
    force: bool = typer.Option(
        False, help="Also redispatch a running step whose worker is gone"
    ),
) -> None:
    """Re-publish the pending background job of a workflow."""
    runtime = _runtime()
    job = asyncio.run(
        runtime.engine.redispatch(workflow_id, organization, force=force)
    )
    if job is None:
        typer.echo("Nothing to dispatch")
        raise typer.Exit(code=1)
    typer.echo(f"Dispatched {job.name} ({job.message_id})")


@graph_app.command("show")
def graph_show() -> None:
    """Print the automation graph, one edge per line."""
    runtime = _runtime()
    for event, job in runtime.engine.graph.items():
        typer.echo(f"{event.value} -> {job}")


@worker_app.command("run")
def worker_run(
    step: str,
    handler: str = typer.Option(..., help="Step handler as 'module:function'"),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run a background worker for an automated step.

    Example:
        intent-engine worker run longtails --handler my_pipeline.steps:expand
    """
    try:
        worker_step = Step(step)
    except ValueError:
        typer.secho(f"Unknown step: {step}", fg=typer.colors.RED)
        raise typer.Exit(code=2)

    step_handler = _load_handler(handler)
    runtime = _runtime()
    try:
        worker = StepWorker(
            runtime.transport,
            runtime.repository,
            runtime.engine,
            runtime.completion,
            worker_step,
            step_handler,
            max_attempts=runtime.config.worker.max_attempts,
        )
    except UnknownStepError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=2)
    typer.echo(f"Starting worker for {worker_step.value} on {worker.topic}")
    asyncio.run(worker.start(lifespan=lifespan or runtime.config.worker.lifespan))


if __name__ == "__main__":
    app()
