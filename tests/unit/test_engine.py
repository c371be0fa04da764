import asyncio

import pytest

from intent_engine.audit import AuditEmitter, InMemoryAuditSink
from intent_engine.engine import TransitionEngine, TransitionOutcome
from intent_engine.guard import can_transition, is_replay
from intent_engine.exceptions import TransientStoreError
from intent_engine.persistence import InMemoryWorkflowRepository, Workflow
from intent_engine.states import WorkflowEvent, WorkflowState
from intent_engine.transports.inmemory import InMemoryTransport

S = WorkflowState
E = WorkflowEvent


class _YieldingRepository(InMemoryWorkflowRepository):
    """Lets every concurrent caller read before any of them writes."""

    async def get_workflow(self, workflow_id, organization_id):
        workflow = await super().get_workflow(workflow_id, organization_id)
        await asyncio.sleep(0)
        return workflow


class _UnavailableRepository(InMemoryWorkflowRepository):
    async def get_workflow(self, workflow_id, organization_id):
        raise TransientStoreError("database is locked")


class _FailingTransport(InMemoryTransport):
    async def publish(self, topic, event):
        raise ConnectionError("broker unreachable")


@pytest.mark.asyncio
async def test_applied_transition_without_graph_edge(engine, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow()

    result = await engine.transition(wf.id, wf.organization_id, E.ICP_START, "user-1")

    assert result.success and result.applied
    assert result.outcome == TransitionOutcome.APPLIED
    assert result.http_status == 200
    assert result.previous_state == S.ICP_PENDING
    assert result.current_state == S.ICP_PROCESSING
    assert result.emitted_event is None
    assert transport.published == []
    assert (await repo.get_workflow(wf.id, wf.organization_id)).state == S.ICP_PROCESSING
    action, details = audit_sink.records[-1]
    assert action == "workflow.transition.applied"
    assert details["actor_id"] == "user-1"
    assert details["event"] == "ICP_START"


@pytest.mark.asyncio
async def test_graph_event_emits_its_job_once(engine, transport, audit_sink, make_workflow, approve):
    wf = await make_workflow(S.COMPETITOR_COMPLETED, competitor_analysis=True)
    await approve(wf, "seed_keywords")

    result = await engine.transition(wf.id, wf.organization_id, E.SEEDS_APPROVED)

    assert result.applied
    assert result.current_state == S.STEP_4_LONGTAILS
    assert result.emitted_event == "intent.step4.longtails"
    assert len(transport.published) == 1
    topic, job = transport.published[0]
    assert topic == "intent.step4.longtails"
    assert job.workflow_id == wf.id
    assert job.organization_id == wf.organization_id
    assert job.payload == {"workflow_id": wf.id}
    assert job.trigger_event == "SEEDS_APPROVED"
    assert "workflow.automation.emitted" in audit_sink.actions()


@pytest.mark.asyncio
async def test_illegal_transition_leaves_state_unchanged(engine, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED, icp_generation=True)

    result = await engine.transition(wf.id, wf.organization_id, E.COMPETITOR_START)

    assert not result.success
    assert result.outcome == TransitionOutcome.ILLEGAL_TRANSITION
    assert result.http_status == 409
    assert result.error == "ILLEGAL_TRANSITION"
    assert result.current_state == S.COMPETITOR_COMPLETED
    stored = await repo.get_workflow(wf.id, wf.organization_id)
    assert stored.state == S.COMPETITOR_COMPLETED
    assert stored.updated_at == wf.updated_at
    assert transport.published == []
    assert audit_sink.actions() == ["workflow.transition.rejected"]


@pytest.mark.asyncio
async def test_gate_blocks_with_missing_items(engine, repo, transport, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED)

    result = await engine.transition(wf.id, wf.organization_id, E.SEEDS_APPROVED)

    assert result.outcome == TransitionOutcome.GATE_BLOCKED
    assert result.http_status == 423
    assert result.blocked_by == ["approval:seed_keywords", "metadata:competitor_analysis"]
    assert (await repo.get_workflow(wf.id, wf.organization_id)).state == S.COMPETITOR_COMPLETED
    assert transport.published == []


@pytest.mark.asyncio
async def test_failure_events_are_not_gated(engine, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS_RUNNING)

    result = await engine.transition(wf.id, wf.organization_id, E.LONGTAIL_FAILED)

    assert result.applied
    assert result.current_state == S.STEP_4_LONGTAILS_FAILED


@pytest.mark.asyncio
async def test_retry_redispatches_the_step_job(engine, transport, make_workflow):
    wf = await make_workflow(S.STEP_6_CLUSTERING_FAILED, keyword_filtering=True)

    result = await engine.transition(wf.id, wf.organization_id, E.CLUSTERING_RETRY)

    assert result.applied
    assert result.current_state == S.STEP_6_CLUSTERING_RUNNING
    assert [topic for topic, _ in transport.published] == ["intent.step6.clustering"]


@pytest.mark.asyncio
async def test_stale_outcome_is_replayed(engine, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow(S.STEP_5_FILTERING, longtail_expansion=True)

    result = await engine.transition(wf.id, wf.organization_id, E.LONGTAIL_SUCCESS)

    assert result.success
    assert not result.applied
    assert result.outcome == TransitionOutcome.REPLAYED
    assert result.http_status == 200
    assert result.current_state == S.STEP_5_FILTERING
    assert transport.published == []
    assert (await repo.get_workflow(wf.id, wf.organization_id)).state == S.STEP_5_FILTERING
    assert audit_sink.actions() == ["workflow.transition.replayed"]


@pytest.mark.asyncio
async def test_unknown_workflow_is_not_found(engine, audit_sink):
    result = await engine.transition("missing", "org-1", E.ICP_START)
    assert result.outcome == TransitionOutcome.NOT_FOUND
    assert result.http_status == 404
    assert audit_sink.actions() == ["workflow.transition.not_found"]


@pytest.mark.asyncio
async def test_other_organization_cannot_transition(engine, repo, make_workflow):
    wf = await make_workflow()
    result = await engine.transition(wf.id, "org-2", E.ICP_START)
    assert result.outcome == TransitionOutcome.NOT_FOUND
    assert (await repo.get_workflow(wf.id, wf.organization_id)).state == S.ICP_PENDING


@pytest.mark.asyncio
async def test_store_error_is_retryable():
    sink = InMemoryAuditSink()
    engine = TransitionEngine(
        _UnavailableRepository(), InMemoryTransport(), audit_emitter=AuditEmitter(sink)
    )

    result = await engine.transition("wf-1", "org-1", E.ICP_START)

    assert result.outcome == TransitionOutcome.STORE_ERROR
    assert result.http_status == 503
    assert result.retryable
    assert "database is locked" in result.message
    assert sink.actions() == ["workflow.transition.error"]


@pytest.mark.asyncio
async def test_concurrent_triggers_apply_once():
    repo = _YieldingRepository()
    engine = TransitionEngine(repo, InMemoryTransport())
    wf = Workflow(organization_id="org-1")
    await repo.create_workflow(wf)

    results = await asyncio.gather(
        *[engine.transition(wf.id, "org-1", E.ICP_START) for _ in range(3)]
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["applied", "conflict", "conflict"]
    conflicts = [r for r in results if r.outcome == TransitionOutcome.CONFLICT]
    assert all(r.http_status == 409 for r in conflicts)
    assert all(r.current_state == S.ICP_PROCESSING for r in conflicts)


@pytest.mark.asyncio
async def test_concurrent_graph_events_emit_once():
    repo = _YieldingRepository()
    transport = InMemoryTransport()
    engine = TransitionEngine(repo, transport)
    wf = Workflow(
        organization_id="org-1",
        state=S.STEP_5_FILTERING_RUNNING,
        step_metadata={"keyword_filtering": True},
    )
    await repo.create_workflow(wf)

    results = await asyncio.gather(
        *[engine.transition(wf.id, "org-1", E.FILTERING_SUCCESS) for _ in range(4)]
    )

    assert sum(r.applied for r in results) == 1
    assert [topic for topic, _ in transport.published] == ["intent.step6.clustering"]


@pytest.mark.asyncio
async def test_emit_failure_is_reported_and_recoverable(make_workflow, repo):
    sink = InMemoryAuditSink()
    engine = TransitionEngine(repo, _FailingTransport(), audit_emitter=AuditEmitter(sink))
    wf = await make_workflow(S.STEP_7_VALIDATION_RUNNING, cluster_validation=True)

    result = await engine.transition(wf.id, wf.organization_id, E.VALIDATION_SUCCESS)

    assert result.applied
    assert result.current_state == S.STEP_8_SUBTOPICS
    assert result.emitted_event is None
    assert "broker unreachable" in result.emit_error
    assert "workflow.automation.emit_failed" in sink.actions()

    engine.transport = InMemoryTransport()
    job = await engine.redispatch(wf.id, wf.organization_id)
    assert job is not None
    assert job.name == "intent.step8.subtopics"
    assert engine.transport.pending("intent.step8.subtopics") == [job]


@pytest.mark.asyncio
async def test_redispatch_ignores_non_automated_states(engine, transport, make_workflow):
    review = await make_workflow(S.STEP_8_SUBTOPICS_REVIEW)
    failed = await make_workflow(S.STEP_9_ARTICLES_FAILED)
    inline = await make_workflow(S.COMPETITOR_PENDING)

    for wf in (review, failed, inline):
        assert await engine.redispatch(wf.id, wf.organization_id) is None
    assert await engine.redispatch("missing", "org-1") is None
    assert transport.published == []


@pytest.mark.asyncio
async def test_create_workflow_starts_at_icp(engine, repo, audit_sink):
    wf = await engine.create_workflow("org-9", created_by="user-1")

    stored = await repo.get_workflow(wf.id, "org-9")
    assert stored.state == S.ICP_PENDING
    assert stored.created_by == "user-1"
    assert audit_sink.records[-1][0] == "workflow.created"


@pytest.mark.asyncio
async def test_result_serializes_to_dict(engine, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED)
    data = (await engine.transition(wf.id, wf.organization_id, E.SEEDS_APPROVED)).to_dict()
    assert data["outcome"] == "gate_blocked"
    assert data["event"] == "SEEDS_APPROVED"
    assert data["previous_state"] == "competitor_completed"
    assert data["blocked_by"]


@pytest.mark.asyncio
async def test_every_illegal_pair_is_rejected_without_consulting_gates(
    engine, repo, transport, make_workflow
):
    for state in S:
        for event in E:
            if can_transition(state, event):
                continue
            wf = await make_workflow(state)

            result = await engine.transition(wf.id, wf.organization_id, event)

            expected = (
                TransitionOutcome.REPLAYED
                if is_replay(state, event)
                else TransitionOutcome.ILLEGAL_TRANSITION
            )
            assert result.outcome == expected, (state, event, result.outcome)
            assert result.blocked_by == []
            assert not result.applied
            assert (await repo.get_workflow(wf.id, wf.organization_id)).state == state
    assert transport.published == []


@pytest.mark.asyncio
async def test_illegal_event_is_not_reported_as_blocked(engine, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED, competitor_analysis=True)

    result = await engine.transition(wf.id, wf.organization_id, E.FILTERING_START)

    assert result.outcome == TransitionOutcome.ILLEGAL_TRANSITION
    assert result.http_status == 409


@pytest.mark.asyncio
async def test_success_report_for_failed_step_is_illegal(engine, repo, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS_FAILED, competitor_analysis=True)

    result = await engine.transition(wf.id, wf.organization_id, E.LONGTAIL_SUCCESS)

    assert not result.success
    assert result.outcome == TransitionOutcome.ILLEGAL_TRANSITION
    assert result.http_status == 409
    assert (await repo.get_workflow(wf.id, wf.organization_id)).state == S.STEP_4_LONGTAILS_FAILED


@pytest.mark.asyncio
async def test_redispatch_of_running_step_needs_force(engine, transport, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS_RUNNING)

    assert await engine.redispatch(wf.id, wf.organization_id) is None
    assert transport.published == []

    job = await engine.redispatch(wf.id, wf.organization_id, force=True)
    assert job is not None
    assert job.name == "intent.step4.longtails"
    assert transport.pending("intent.step4.longtails") == [job]
