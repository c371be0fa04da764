import pytest

from intent_engine.audit import AuditEmitter, InMemoryAuditSink
from intent_engine.exceptions import TransientStoreError
from intent_engine.gates import (
    GATE_EVALUATION_ERROR,
    GATES,
    WORKFLOW_NOT_FOUND,
    GateResolver,
    gated_step,
)
from intent_engine.persistence import (
    ApprovalDecision,
    InMemoryWorkflowRepository,
    Workflow,
)
from intent_engine.states import Step, WorkflowEvent, WorkflowState

S = WorkflowState


class _BrokenRepository(InMemoryWorkflowRepository):
    async def list_approvals(self, workflow_id, organization_id):
        raise TransientStoreError("connection reset")


def test_every_gate_renders_an_action_link():
    for requirement in GATES.values():
        assert "{workflow_id}" in requirement.action_link_template
        assert requirement.action_link("wf-1").startswith("/workflows/wf-1")


def test_gated_step_uses_target_state():
    assert gated_step(WorkflowEvent.SEEDS_APPROVED) == Step.LONGTAILS
    assert gated_step(WorkflowEvent.COMPETITOR_SUCCESS) == Step.SEEDS
    assert gated_step(WorkflowEvent.LONGTAIL_RETRY) == Step.LONGTAILS
    assert gated_step(WorkflowEvent.LONGTAIL_FAILED) is None


@pytest.mark.asyncio
async def test_step_without_gate_is_allowed(repo, make_workflow):
    wf = await make_workflow()
    result = await GateResolver(repo).resolve(wf.id, wf.organization_id, Step.ICP)
    assert result.allowed


@pytest.mark.asyncio
async def test_missing_metadata_blocks(repo, make_workflow):
    wf = await make_workflow(S.COMPETITOR_PENDING)
    result = await GateResolver(repo).resolve(wf.id, wf.organization_id, Step.COMPETITORS)

    assert not result.allowed
    assert result.blocked_by == ["metadata:icp_generation"]
    assert result.gate_id == "gate_icp_required"
    assert "ICP generation required" in result.reason


@pytest.mark.asyncio
async def test_metadata_present_allows(repo, make_workflow):
    wf = await make_workflow(S.COMPETITOR_PENDING, icp_generation=True)
    result = await GateResolver(repo).resolve(wf.id, wf.organization_id, Step.COMPETITORS)
    assert result.allowed


@pytest.mark.asyncio
async def test_approval_gate_lists_every_missing_item(repo, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED)
    result = await GateResolver(repo).resolve(wf.id, wf.organization_id, Step.LONGTAILS)

    assert not result.allowed
    assert result.blocked_by == ["approval:seed_keywords", "metadata:competitor_analysis"]


@pytest.mark.asyncio
async def test_latest_approval_decision_wins(repo, make_workflow, approve):
    wf = await make_workflow(S.COMPETITOR_COMPLETED, competitor_analysis=True)
    resolver = GateResolver(repo)

    await approve(wf, "seed_keywords")
    assert (await resolver.resolve(wf.id, wf.organization_id, Step.LONGTAILS)).allowed

    await approve(wf, "seed_keywords", ApprovalDecision.REJECTED)
    result = await resolver.resolve(wf.id, wf.organization_id, Step.LONGTAILS)
    assert not result.allowed
    assert result.blocked_by == ["approval:seed_keywords"]


@pytest.mark.asyncio
async def test_approval_of_other_entity_does_not_count(repo, make_workflow, approve):
    wf = await make_workflow(S.STEP_8_SUBTOPICS_REVIEW, subtopic_generation=True)
    await approve(wf, "seed_keywords")

    result = await GateResolver(repo).resolve(wf.id, wf.organization_id, Step.ARTICLES)

    assert not result.allowed
    assert result.blocked_by == ["approval:subtopics"]


@pytest.mark.asyncio
async def test_missing_workflow_fails_closed(repo):
    result = await GateResolver(repo).resolve("missing", "org-1", Step.FILTERING)
    assert not result.allowed
    assert result.blocked_by == [WORKFLOW_NOT_FOUND]


@pytest.mark.asyncio
async def test_workflow_of_other_organization_fails_closed(repo, make_workflow):
    wf = await make_workflow(S.STEP_5_FILTERING, longtail_expansion=True)
    result = await GateResolver(repo).resolve(wf.id, "org-2", Step.FILTERING)
    assert not result.allowed


@pytest.mark.asyncio
async def test_evaluation_error_fails_closed():
    repo = _BrokenRepository()
    wf = Workflow(organization_id="org-1", state=S.COMPETITOR_COMPLETED)
    await repo.create_workflow(wf)

    result = await GateResolver(repo).resolve(wf.id, "org-1", Step.LONGTAILS)

    assert not result.allowed
    assert result.blocked_by == [GATE_EVALUATION_ERROR]


@pytest.mark.asyncio
async def test_blocking_condition_for_seed_review(repo, make_workflow):
    sink = InMemoryAuditSink()
    wf = await make_workflow(S.COMPETITOR_COMPLETED, competitor_analysis=True)
    resolver = GateResolver(repo, AuditEmitter(sink))

    condition = await resolver.blocking_condition(wf.id, wf.organization_id)

    assert condition is not None
    assert condition.blocked_at_step == Step.SEEDS
    assert condition.blocking_gate == "gate_seeds_approval_required"
    assert condition.required_action == "Review and approve seeds"
    assert condition.action_link == f"/workflows/{wf.id}/approvals/seeds"
    assert condition.blocked_since == wf.updated_at
    assert condition.blocked_by == ["approval:seed_keywords"]
    assert sink.actions() == ["workflow.blocking_condition.queried"]


@pytest.mark.asyncio
async def test_no_blocking_condition_when_gate_is_met(repo, make_workflow, approve):
    wf = await make_workflow(S.COMPETITOR_COMPLETED, competitor_analysis=True)
    await approve(wf, "seed_keywords")
    assert await GateResolver(repo).blocking_condition(wf.id, wf.organization_id) is None


@pytest.mark.asyncio
async def test_running_and_finished_workflows_are_not_blocked(repo, make_workflow):
    running = await make_workflow(S.STEP_6_CLUSTERING_RUNNING)
    done = await make_workflow(S.COMPLETED)
    resolver = GateResolver(repo)

    assert await resolver.blocking_condition(running.id, running.organization_id) is None
    assert await resolver.blocking_condition(done.id, done.organization_id) is None
    assert await resolver.blocking_condition("missing", "org-1") is None
