"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Iterator, Optional, TypeVar

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

T = TypeVar("T")


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    A single connection is shared; an asyncio lock serializes access to it so
    that a transaction owns the connection until it commits or rolls back.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                state TEXT NOT NULL,
                step_metadata TEXT NOT NULL,
                created_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS approvals (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                decision TEXT NOT NULL,
                approver_id TEXT NOT NULL,
                feedback TEXT,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                workflow_id TEXT NOT NULL,
                step TEXT NOT NULL,
                token TEXT NOT NULL,
                created_at TEXT NOT NULL,
                PRIMARY KEY (workflow_id, step, token)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS step_artifacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                step TEXT NOT NULL,
                token TEXT NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS usage_records (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                organization_id TEXT NOT NULL,
                step TEXT NOT NULL,
                token TEXT NOT NULL,
                usage TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Connection handling
    async def _call(self, fn: Callable[..., T], *params: Any) -> T:
        async with self._lock:
            return await asyncio.to_thread(self._autocommit, fn, *params)

    def _autocommit(self, fn: Callable[..., T], *params: Any) -> T:
        with _translate_errors():
            with self._conn:
                return fn(self._conn.cursor(), *params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteWorkflowRepository"]:
        async with self._lock:
            await asyncio.to_thread(self._begin)
            try:
                yield _SQLiteSession(self)
                await asyncio.to_thread(self._commit)
            except BaseException:
                # Also after a failed COMMIT, which leaves the transaction open.
                await asyncio.to_thread(self._conn.rollback)
                raise

    def _begin(self) -> None:
        with _translate_errors():
            self._conn.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        with _translate_errors():
            self._conn.commit()

    # ------------------------------------------------------------------
    # Queries (run on a cursor of the shared connection)
    def _q_insert_workflow(self, cur: sqlite3.Cursor, wf: Workflow) -> None:
        cur.execute(
            "INSERT INTO workflows (id, organization_id, state, step_metadata, created_by, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                wf.id,
                wf.organization_id,
                wf.state.value,
                json.dumps(wf.step_metadata),
                wf.created_by,
                wf.created_at.isoformat(),
                wf.updated_at.isoformat(),
            ),
        )

    def _q_fetch_workflows(
        self, cur: sqlite3.Cursor, where: str, *params: Any
    ) -> list[sqlite3.Row]:
        cur.execute(
            "SELECT id, organization_id, state, step_metadata, created_by, created_at, updated_at FROM workflows"
            + where,
            params,
        )
        return cur.fetchall()

    def _q_compare_and_set(
        self,
        cur: sqlite3.Cursor,
        workflow_id: str,
        organization_id: str,
        expected: WorkflowState,
        new: WorkflowState,
    ) -> CasResult:
        cur.execute(
            "UPDATE workflows SET state = ?, updated_at = ? WHERE id = ? AND organization_id = ? AND state = ?",
            (new.value, utcnow().isoformat(), workflow_id, organization_id, expected.value),
        )
        if cur.rowcount == 1:
            return CasResult(applied=True, current_state=new)
        cur.execute(
            "SELECT state FROM workflows WHERE id = ? AND organization_id = ?",
            (workflow_id, organization_id),
        )
        row = cur.fetchone()
        return CasResult(
            applied=False, current_state=WorkflowState(row["state"]) if row else None
        )

    def _q_merge_metadata(
        self,
        cur: sqlite3.Cursor,
        workflow_id: str,
        organization_id: str,
        metadata: dict[str, Any],
    ) -> None:
        cur.execute(
            "SELECT step_metadata FROM workflows WHERE id = ? AND organization_id = ?",
            (workflow_id, organization_id),
        )
        row = cur.fetchone()
        if row is None:
            return
        merged = json.loads(row["step_metadata"])
        merged.update(metadata)
        cur.execute(
            "UPDATE workflows SET step_metadata = ?, updated_at = ? WHERE id = ?",
            (json.dumps(merged), utcnow().isoformat(), workflow_id),
        )

    def _q_execute(self, cur: sqlite3.Cursor, query: str, *params: Any) -> int:
        cur.execute(query, params)
        return cur.rowcount

    def _q_fetchall(self, cur: sqlite3.Cursor, query: str, *params: Any) -> list[sqlite3.Row]:
        cur.execute(query, params)
        return cur.fetchall()

    # ------------------------------------------------------------------
    # Repository API
    async def create_workflow(self, workflow: Workflow) -> None:
        await self._call(self._q_insert_workflow, workflow)

    async def get_workflow(
        self, workflow_id: str, organization_id: str
    ) -> Workflow | None:
        rows = await self._call(
            self._q_fetch_workflows,
            " WHERE id = ? AND organization_id = ?",
            workflow_id,
            organization_id,
        )
        return _row_to_workflow(rows[0]) if rows else None

    async def list_workflows(
        self, organization_id: Optional[str] = None
    ) -> list[Workflow]:
        if organization_id is None:
            rows = await self._call(self._q_fetch_workflows, " ORDER BY created_at")
        else:
            rows = await self._call(
                self._q_fetch_workflows,
                " WHERE organization_id = ? ORDER BY created_at",
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
        return await self._call(
            self._q_compare_and_set, workflow_id, organization_id, expected, new
        )

    async def merge_step_metadata(
        self, workflow_id: str, organization_id: str, metadata: dict[str, Any]
    ) -> None:
        await self._call(self._q_merge_metadata, workflow_id, organization_id, metadata)

    async def record_approval(self, approval: Approval) -> None:
        await self._call(
            self._q_execute,
            "INSERT INTO approvals (id, workflow_id, organization_id, entity_type, decision, approver_id, feedback, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            approval.id,
            approval.workflow_id,
            approval.organization_id,
            approval.entity_type.value,
            approval.decision.value,
            approval.approver_id,
            approval.feedback,
            approval.created_at.isoformat(),
        )

    async def list_approvals(
        self, workflow_id: str, organization_id: str
    ) -> list[Approval]:
        rows = await self._call(
            self._q_fetchall,
            "SELECT * FROM approvals WHERE workflow_id = ? AND organization_id = ? ORDER BY created_at, rowid",
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
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    async def claim_idempotency_key(self, record: IdempotencyRecord) -> bool:
        inserted = await self._call(
            self._q_execute,
            "INSERT OR IGNORE INTO idempotency_keys (workflow_id, step, token, created_at) VALUES (?, ?, ?, ?)",
            record.workflow_id,
            record.step.value,
            record.token,
            record.created_at.isoformat(),
        )
        return inserted == 1

    async def save_artifact(self, artifact: StepArtifact) -> None:
        await self._call(
            self._q_execute,
            "INSERT INTO step_artifacts (workflow_id, organization_id, step, token, data, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            artifact.workflow_id,
            artifact.organization_id,
            artifact.step.value,
            artifact.token,
            json.dumps(artifact.data),
            artifact.created_at.isoformat(),
        )

    async def list_artifacts(
        self, workflow_id: str, step: Optional[Step] = None
    ) -> list[StepArtifact]:
        query = "SELECT * FROM step_artifacts WHERE workflow_id = ?"
        params: list[Any] = [workflow_id]
        if step is not None:
            query += " AND step = ?"
            params.append(step.value)
        rows = await self._call(self._q_fetchall, query + " ORDER BY id", *params)
        return [
            StepArtifact(
                id=r["id"],
                workflow_id=r["workflow_id"],
                organization_id=r["organization_id"],
                step=Step(r["step"]),
                token=r["token"],
                data=json.loads(r["data"]),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    async def record_usage(self, usage: UsageRecord) -> None:
        await self._call(
            self._q_execute,
            "INSERT INTO usage_records (workflow_id, organization_id, step, token, usage, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            usage.workflow_id,
            usage.organization_id,
            usage.step.value,
            usage.token,
            json.dumps(usage.usage),
            usage.created_at.isoformat(),
        )

    async def list_usage(self, workflow_id: str) -> list[UsageRecord]:
        rows = await self._call(
            self._q_fetchall,
            "SELECT * FROM usage_records WHERE workflow_id = ? ORDER BY id",
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
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()


class _SQLiteSession(SQLiteWorkflowRepository):
    """Runs queries inside the parent's open transaction without committing."""

    def __init__(self, parent: SQLiteWorkflowRepository) -> None:
        self.__dict__.update(parent.__dict__)

    async def _call(self, fn: Callable[..., T], *params: Any) -> T:
        return await asyncio.to_thread(self._in_transaction, fn, *params)

    def _in_transaction(self, fn: Callable[..., T], *params: Any) -> T:
        with _translate_errors():
            return fn(self._conn.cursor(), *params)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SQLiteWorkflowRepository"]:
        yield self


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Map sqlite errors onto the repository's error contract."""
    try:
        yield
    except sqlite3.IntegrityError as exc:
        raise ValueError(str(exc)) from exc
    except sqlite3.Error as exc:
        raise TransientStoreError(str(exc)) from exc


def _row_to_workflow(row: sqlite3.Row) -> Workflow:
    return Workflow(
        id=row["id"],
        organization_id=row["organization_id"],
        state=WorkflowState(row["state"]),
        step_metadata=json.loads(row["step_metadata"]),
        created_by=row["created_by"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )
