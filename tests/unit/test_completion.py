import pytest

from intent_engine.engine import TransitionOutcome
from intent_engine.exceptions import TransientStoreError, UnknownStepError
from intent_engine.persistence import IdempotencyRecord, Workflow
from intent_engine.persistence.inmemory import _InMemorySession
from intent_engine.states import Step, WorkflowState

S = WorkflowState


async def _snapshot(repo, wf):
    stored = await repo.get_workflow(wf.id, wf.organization_id)
    return (
        stored.state,
        stored.step_metadata,
        [a.data for a in await repo.list_artifacts(wf.id)],
        [u.usage for u in await repo.list_usage(wf.id)],
    )


@pytest.mark.asyncio
async def test_complete_step_commits_everything(completion, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS_RUNNING, competitor_analysis=True)

    result = await completion.complete_step(
        wf.id,
        wf.organization_id,
        Step.LONGTAILS,
        "job-1",
        {"keywords": ["a", "b"]},
        usage={"tokens": 1200, "cost_usd": 0.02},
    )

    assert result.applied and not result.duplicate
    assert result.transition.outcome == TransitionOutcome.APPLIED
    assert result.transition.emitted_event == "intent.step5.filtering"

    state, metadata, artifacts, usage = await _snapshot(repo, wf)
    assert state == S.STEP_5_FILTERING
    assert metadata["longtail_expansion"] is True
    assert artifacts == [{"keywords": ["a", "b"]}]
    assert usage == [{"tokens": 1200, "cost_usd": 0.02}]
    assert [topic for topic, _ in transport.published] == ["intent.step5.filtering"]
    assert "workflow.step.completed" in audit_sink.actions()


@pytest.mark.asyncio
async def test_same_token_twice_equals_once(completion, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow(S.STEP_5_FILTERING_RUNNING)
    args = (wf.id, wf.organization_id, Step.FILTERING, "job-7", {"kept": 40})

    first = await completion.complete_step(*args, usage={"tokens": 10})
    after_first = await _snapshot(repo, wf)
    second = await completion.complete_step(*args, usage={"tokens": 10})

    assert first.applied
    assert not second.applied
    assert second.duplicate
    assert second.transition is None
    assert await _snapshot(repo, wf) == after_first
    assert len(transport.published) == 1
    assert "workflow.step.duplicate" in audit_sink.actions()


@pytest.mark.asyncio
async def test_rejected_transition_rolls_back_every_write(completion, repo, transport, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS)
    before = await _snapshot(repo, wf)

    result = await completion.complete_step(
        wf.id, wf.organization_id, Step.LONGTAILS, "job-1", {"keywords": []}, usage={"t": 1}
    )

    assert not result.applied
    assert not result.duplicate
    assert result.transition.outcome == TransitionOutcome.ILLEGAL_TRANSITION
    assert await _snapshot(repo, wf) == before
    assert transport.published == []
    # The token was released with the rest of the transaction.
    assert await repo.claim_idempotency_key(
        IdempotencyRecord(workflow_id=wf.id, step=Step.LONGTAILS, token="job-1")
    )


@pytest.mark.asyncio
async def test_stale_completion_is_not_recorded(completion, repo, make_workflow):
    wf = await make_workflow(S.STEP_6_CLUSTERING, longtail_expansion=True)
    before = await _snapshot(repo, wf)

    result = await completion.complete_step(
        wf.id, wf.organization_id, Step.LONGTAILS, "late-token", {"keywords": ["x"]}
    )

    assert not result.applied
    assert result.transition.outcome == TransitionOutcome.REPLAYED
    assert await _snapshot(repo, wf) == before


@pytest.mark.asyncio
async def test_store_error_propagates_and_rolls_back(completion, repo, monkeypatch):
    original = _InMemorySession.compare_and_set_state
    calls = []

    async def flaky(self, *args):
        calls.append(args)
        if len(calls) == 1:
            raise TransientStoreError("connection reset")
        return await original(self, *args)

    monkeypatch.setattr(_InMemorySession, "compare_and_set_state", flaky)
    wf = Workflow(organization_id="org-1", state=S.STEP_7_VALIDATION_RUNNING)
    await repo.create_workflow(wf)

    with pytest.raises(TransientStoreError):
        await completion.complete_step(
            wf.id, "org-1", Step.VALIDATION, "job-3", {"valid": 3}
        )

    assert await repo.list_artifacts(wf.id) == []
    stored = await repo.get_workflow(wf.id, "org-1")
    assert stored.state == S.STEP_7_VALIDATION_RUNNING
    assert "cluster_validation" not in stored.step_metadata

    retried = await completion.complete_step(
        wf.id, "org-1", Step.VALIDATION, "job-3", {"valid": 3}
    )
    assert retried.applied
    assert len(await repo.list_artifacts(wf.id)) == 1


@pytest.mark.asyncio
async def test_store_error_is_audited(completion, repo, transport, audit_sink, monkeypatch):
    async def unavailable(self, *args):
        raise TransientStoreError("connection reset")

    monkeypatch.setattr(_InMemorySession, "compare_and_set_state", unavailable)
    wf = Workflow(organization_id="org-1", state=S.STEP_7_VALIDATION_RUNNING)
    await repo.create_workflow(wf)

    with pytest.raises(TransientStoreError):
        await completion.complete_step(
            wf.id, "org-1", Step.VALIDATION, "job-4", {"valid": 3}
        )

    action, details = audit_sink.records[-1]
    assert action == "workflow.transition.error"
    assert details["event"] == "VALIDATION_SUCCESS"
    assert details["step"] == "validation"
    assert details["token"] == "job-4"
    assert details["error"] == "STORE_ERROR"
    assert transport.published == []


@pytest.mark.asyncio
async def test_store_error_while_claiming_is_audited(completion, repo, audit_sink, monkeypatch):
    async def unavailable(self, record):
        raise TransientStoreError("database is locked")

    monkeypatch.setattr(_InMemorySession, "claim_idempotency_key", unavailable)
    wf = Workflow(organization_id="org-1", state=S.STEP_9_ARTICLES_RUNNING)
    await repo.create_workflow(wf)

    with pytest.raises(TransientStoreError):
        await completion.fail_step(wf.id, "org-1", Step.ARTICLES, "job-5", "timeout")

    assert audit_sink.actions() == ["workflow.transition.error"]
    assert audit_sink.records[-1][1]["event"] == "ARTICLES_FAILED"
    assert (await repo.get_workflow(wf.id, "org-1")).state == S.STEP_9_ARTICLES_RUNNING


@pytest.mark.asyncio
async def test_fail_step_records_error(completion, repo, transport, audit_sink, make_workflow):
    wf = await make_workflow(S.STEP_9_ARTICLES_RUNNING)

    result = await completion.fail_step(
        wf.id, wf.organization_id, Step.ARTICLES, "job-9", "model timeout"
    )

    assert result.applied
    stored = await repo.get_workflow(wf.id, wf.organization_id)
    assert stored.state == S.STEP_9_ARTICLES_FAILED
    assert stored.step_metadata["articles_error"] == "model timeout"
    assert await repo.list_artifacts(wf.id) == []
    assert transport.published == []
    assert "workflow.step.failed" in audit_sink.actions()

    again = await completion.fail_step(
        wf.id, wf.organization_id, Step.ARTICLES, "job-9", "model timeout"
    )
    assert again.duplicate


@pytest.mark.asyncio
async def test_token_is_required(completion, make_workflow):
    wf = await make_workflow(S.STEP_4_LONGTAILS_RUNNING)
    with pytest.raises(ValueError):
        await completion.complete_step(wf.id, wf.organization_id, Step.LONGTAILS, "", {})


@pytest.mark.asyncio
async def test_review_steps_cannot_be_completed(completion, make_workflow):
    wf = await make_workflow(S.COMPETITOR_COMPLETED)
    with pytest.raises(UnknownStepError):
        await completion.complete_step(wf.id, wf.organization_id, Step.SEEDS, "t", {})
