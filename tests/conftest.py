import pytest

from intent_engine.audit import AuditEmitter, InMemoryAuditSink
from intent_engine.completion import StepCompletion
from intent_engine.engine import TransitionEngine
from intent_engine.persistence import (
    Approval,
    ApprovalDecision,
    ApprovalEntity,
    InMemoryWorkflowRepository,
    Workflow,
)
from intent_engine.states import WorkflowState
from intent_engine.transports.inmemory import InMemoryTransport

ORG = "org-1"


@pytest.fixture
def repo():
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport():
    return InMemoryTransport()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def engine(repo, transport, audit_sink):
    return TransitionEngine(repo, transport, audit_emitter=AuditEmitter(audit_sink))


@pytest.fixture
def completion(repo, engine):
    return StepCompletion(repo, engine)


@pytest.fixture
def make_workflow(repo):
    async def _make(state=WorkflowState.ICP_PENDING, organization_id=ORG, **metadata):
        workflow = Workflow(
            organization_id=organization_id, state=state, step_metadata=metadata
        )
        await repo.create_workflow(workflow)
        return workflow

    return _make


@pytest.fixture
def approve(repo):
    async def _approve(workflow, entity, decision=ApprovalDecision.APPROVED):
        await repo.record_approval(
            Approval(
                workflow_id=workflow.id,
                organization_id=workflow.organization_id,
                entity_type=ApprovalEntity(entity),
                decision=decision,
                approver_id="user-1",
            )
        )

    return _approve
