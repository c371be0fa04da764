"""Audit records for workflow actions."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

from .config import IntentEngineConfig, load_config
from .constants import DEFAULT_AUDIT_TIMEOUT_SECONDS
from .db import AuditDB

logger = logging.getLogger(__name__)

TRANSITION_APPLIED = "workflow.transition.applied"
TRANSITION_REPLAYED = "workflow.transition.replayed"
TRANSITION_CONFLICT = "workflow.transition.conflict"
TRANSITION_REJECTED = "workflow.transition.rejected"
TRANSITION_BLOCKED = "workflow.transition.blocked"
TRANSITION_ERROR = "workflow.transition.error"
TRANSITION_NOT_FOUND = "workflow.transition.not_found"
AUTOMATION_EMITTED = "workflow.automation.emitted"
AUTOMATION_EMIT_FAILED = "workflow.automation.emit_failed"
STEP_COMPLETED = "workflow.step.completed"
STEP_DUPLICATE = "workflow.step.duplicate"
STEP_FAILED = "workflow.step.failed"
APPROVAL_RECORDED = "workflow.approval.recorded"
WORKFLOW_CREATED = "workflow.created"
BLOCKING_CONDITION_QUERIED = "workflow.blocking_condition.queried"


class AuditSink:
    """Destination for audit entries."""

    async def record(self, event: str, details: dict[str, Any]) -> None:  # pragma: no cover - outline
        """Persist an audit log entry."""
        raise NotImplementedError


class InMemoryAuditSink(AuditSink):
    """Keeps entries in a list; used by tests and the local runtime."""

    def __init__(self) -> None:
        self.records: list[tuple[str, dict[str, Any]]] = []

    async def record(self, event: str, details: dict[str, Any]) -> None:
        self.records.append((event, dict(details)))

    def actions(self) -> list[str]:
        return [event for event, _ in self.records]


class LoggingAuditSink(AuditSink):
    """Writes entries as JSON lines to a dedicated logger."""

    def __init__(self, logger_name: str = "intent_engine.audit.trail") -> None:
        self._logger = logging.getLogger(logger_name)

    async def record(self, event: str, details: dict[str, Any]) -> None:
        self._logger.info(json.dumps({"action": event, **details}, default=str))


class SQLAuditSink(AuditSink):
    """Persists entries through SQLModel."""

    def __init__(self, database_url: str) -> None:
        self.db = AuditDB(database_url)

    async def record(self, event: str, details: dict[str, Any]) -> None:
        payload = json.loads(json.dumps(details, default=str))
        await self.db.add_entry(event, payload)


class AuditEmitter:
    """Fire-and-forget front for an :class:`AuditSink`.

    Each write is bounded by ``timeout``; failures and timeouts are logged and
    never surface to the caller.
    """

    def __init__(
        self,
        sink: AuditSink,
        timeout: float = DEFAULT_AUDIT_TIMEOUT_SECONDS,
    ) -> None:
        self.sink = sink
        self.timeout = timeout

    async def emit(self, action: str, **details: Any) -> None:
        try:
            await asyncio.wait_for(self.sink.record(action, details), self.timeout)
        except asyncio.TimeoutError:
            logger.error(
                f"Audit write timed out after {self.timeout}s for action={action} "
                f"workflow_id={details.get('workflow_id')}"
            )
        except Exception as e:
            logger.error(
                f"Audit write failed for action={action} "
                f"workflow_id={details.get('workflow_id')}: {e}"
            )


def get_audit_sink(config: Optional[IntentEngineConfig] = None) -> AuditSink:
    """Factory function to get the configured audit sink."""

    config = config or load_config()
    backend = config.audit.backend
    if backend == "memory":
        return InMemoryAuditSink()
    elif backend == "log":
        return LoggingAuditSink()
    elif backend == "sql":
        return SQLAuditSink(config.audit.database_url)
    else:
        raise ValueError(f"Unsupported audit backend: {backend}")
