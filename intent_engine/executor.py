"""Atomic compare-and-swap state transitions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .persistence import WorkflowRepository
from .states import WorkflowState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExecutionResult:
    applied: bool
    current_state: Optional[WorkflowState]


class AtomicTransitionExecutor:
    """Move a workflow to a new state only if it is still in the expected one.

    The check and the write are a single conditional update in the store, so of
    any number of concurrent callers racing from the same state exactly one
    observes ``applied=True``.
    """

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def execute(
        self,
        workflow_id: str,
        organization_id: str,
        expected_state: WorkflowState,
        to_state: WorkflowState,
        session: WorkflowRepository | None = None,
    ) -> ExecutionResult:
        repo = session or self._repository
        result = await repo.compare_and_set_state(
            workflow_id, organization_id, expected_state, to_state
        )
        if not result.applied:
            logger.debug(
                f"CAS miss for workflow_id={workflow_id}: expected {expected_state.value}, "
                f"found {result.current_state.value if result.current_state else None}"
            )
        return ExecutionResult(applied=result.applied, current_state=result.current_state)
