"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..exceptions import TransientStoreError
from ..states import Step, WorkflowState
from .models import (
    Approval,
    ApprovalDecision,
    ApprovalEntity,
    CasResult,
    IdempotencyRecord,
    StepArtifact,
    UsageRecord,
    Workflow,
    utcnow,
)
from .repository import WorkflowRepository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        state TEXT NOT NULL,
        step_metadata JSONB NOT NULL,
        created_by TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS approvals (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        entity_type TEXT NOT NULL,
        decision TEXT NOT NULL,
        approver_id TEXT NOT NULL,
        feedback TEXT,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS idempotency_keys (
        workflow_id TEXT NOT NULL,
        step TEXT NOT NULL,
        token TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (workflow_id, step, token)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS step_artifacts (
        id SERIAL PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        step TEXT NOT NULL,
        token TEXT NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_records (
        id SERIAL PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        step TEXT NOT NULL,
        token TEXT NOT NULL,
        usage JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._pool: Optional[asyncpg.Pool] = None

    async def _get_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            try:
                self._pool = await asyncpg.create_pool(self._dsn)
                async with self._pool.acquire() as conn:
                    for statement in _SCHEMA:
                        await conn.execute(statement)
            except (OSError, asyncpg.PostgresError) as exc:
                self._pool = None
                raise TransientStoreError(str(exc)) from exc
        return self._pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as exc:
            raise ValueError(str(exc)) from exc
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as exc:
            raise TransientStoreError(str(exc)) from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresWorkflowRepository"]:
        async with self._connection() as conn:
            async with conn.transaction():
                yield _PostgresSession(self, conn)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # ------------------------------------------------------------------
    async def create_workflow(self, workflow: Workflow) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO workflows (id, organization_id, state, step_metadata, created_by, created_at, updated_at) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                workflow.id,
                workflow.organization_id,
                workflow.state.value,
                json.dumps(workflow.step_metadata),
                workflow.created_by,
                workflow.created_at,
                workflow.updated_at,
            )

    async def get_workflow(
        self, workflow_id: str, organization_id: str
    ) -> Workflow | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM workflows WHERE id = $1 AND organization_id = $2",
                workflow_id,
                organization_id,
            )
        return _row_to_workflow(row) if row else None

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[Workflow]:
        async with self._connection() as conn:
            if organization_id is None:
                rows = await conn.fetch("SELECT * FROM workflows ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflows WHERE organization_id = $1 ORDER BY created_at",
                    organization_id,
                )
        return [_row_to_workflow(r) for r in rows]

    async def compare_and_set_state(
        self,
        workflow_id: str,
        organization_id: str,
        expected: WorkflowState,
        new: WorkflowState,
    ) -> CasResult:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE workflows SET state = $1, updated_at = $2
                WHERE id = $3 AND organization_id = $4 AND state = $5
                RETURNING state
                """,
                new.value,
                utcnow(),
                workflow_id,
                organization_id,
                expected.value,
            )
            if row is not None:
                return CasResult(applied=True, current_state=new)
            current = await conn.fetchval(
                "SELECT state FROM workflows WHERE id = $1 AND organization_id = $2",
                workflow_id,
                organization_id,
            )
        return CasResult(
            applied=False,
            current_state=WorkflowState(current) if current is not None else None,
        )

    async def merge_step_metadata(
        self, workflow_id: str, organization_id: str, metadata: dict[str, Any]
    ) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE workflows
                SET step_metadata = step_metadata || $1::jsonb, updated_at = $2
                WHERE id = $3 AND organization_id = $4
                """,
                json.dumps(metadata),
                utcnow(),
                workflow_id,
                organization_id,
            )

    async def record_approval(self, approval: Approval) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO approvals (id, workflow_id, organization_id, entity_type, decision, approver_id, feedback, created_at) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                approval.id,
                approval.workflow_id,
                approval.organization_id,
                approval.entity_type.value,
                approval.decision.value,
                approval.approver_id,
                approval.feedback,
                approval.created_at,
            )

    async def list_approvals(
        self, workflow_id: str, organization_id: str
    ) -> list[Approval]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM approvals WHERE workflow_id = $1 AND organization_id = $2 ORDER BY created_at",
                workflow_id,
                organization_id,
            )
        return [
            Approval(
                id=r["id"],
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                entity_type=ApprovalEntity(r["entity_type"]),
                decision=ApprovalDecision(r["decision"]),
                approver_id=r["approver_id"],
                feedback=r["feedback"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def claim_idempotency_key(self, record: IdempotencyRecord) -> bool:
        async with self._connection() as conn:
            status = await conn.execute(
                """
                INSERT INTO idempotency_keys (workflow_id, step, token, created_at)
                VALUES ($1, $2, $3, $4)
                ON CONFLICT DO NOTHING
                """,
                record.workflow_id,
                record.step.value,
                record.token,
                record.created_at,
            )
        return status == "INSERT 0 1"

    async def save_artifact(self, artifact: StepArtifact) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO step_artifacts (workflow_id, organization_id, step, token, data, created_at) VALUES ($1, $2, $3, $4, $5, $6)",
                artifact.workflow_id,
                artifact.organization_id,
                artifact.step.value,
                artifact.token,
                json.dumps(artifact.data),
                artifact.created_at,
            )

    async def list_artifacts(
        self, workflow_id: str, step: Optional[Step] = None
    ) -> list[StepArtifact]:
        async with self._connection() as conn:
            if step is None:
                rows = await conn.fetch(
                    "SELECT * FROM step_artifacts WHERE workflow_id = $1 ORDER BY id",
                    workflow_id,
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM step_artifacts WHERE workflow_id = $1 AND step = $2 ORDER BY id",
                    workflow_id,
                    step.value,
                )
        return [
            StepArtifact(
                id=r["id"],
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                step=Step(r["step"]),
                token=r["token"],
                data=json.loads(r["data"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]

    async def record_usage(self, usage: UsageRecord) -> None:
        async with self._connection() as conn:
            await conn.execute(
                "INSERT INTO usage_records (workflow_id, organization_id, step, token, usage, created_at) VALUES ($1, $2, $3, $4, $5, $6)",
                usage.workflow_id,
                usage.organization_id,
                usage.step.value,
                usage.token,
                json.dumps(usage.usage),
                usage.created_at,
            )

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                "SELECT * FROM usage_records WHERE workflow_id = $1 ORDER BY id",
                workflow_id,
            )
        return [
            UsageRecord(
                id=r["id"],
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                step=Step(r["step"]),
                token=r["token"],
                usage=json.loads(r["usage"]),
                created_at=r["created_at"],
            )
            for r in rows
        ]


class _PostgresSession(PostgresWorkflowRepository):
    """Routes every query through one connection holding an open transaction."""

    def __init__(self, parent: PostgresWorkflowRepository, conn: asyncpg.Connection):
        self.__dict__.update(parent.__dict__)
        self._conn = conn

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        yield self._conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgresWorkflowRepository"]:
        yield self


def _row_to_workflow(row: asyncpg.Record) -> Workflow:
    metadata = row["step_metadata"]
    return Workflow(
        id=row["id"],
        organization_id=row["organization_id"],
        state=WorkflowState(row["state"]),
        step_metadata=json.loads(metadata) if isinstance(metadata, str) else metadata,
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
