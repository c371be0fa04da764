"""Transition guard: pure lookups against the transition table."""

from __future__ import annotations

from typing import Dict, List, Mapping, Optional, Tuple

from .states import (
    FAILURE_EVENTS,
    INITIAL_STATE,
    OUTCOME_EVENTS,
    TRANSITIONS,
    WorkflowEvent,
    WorkflowState,
    is_failed_state,
    state_rank,
)

TransitionTable = Mapping[Tuple[WorkflowState, WorkflowEvent], WorkflowState]

_SOURCES: Dict[WorkflowEvent, WorkflowState] = {
    event: state for (state, event) in TRANSITIONS
}
_TARGETS: Dict[WorkflowEvent, WorkflowState] = {
    event: target for (_, event), target in TRANSITIONS.items()
}


def can_transition(state: WorkflowState, event: WorkflowEvent) -> bool:
    """Return ``True`` if ``event`` is legal from ``state``."""
    return (state, event) in TRANSITIONS


def next_state(state: WorkflowState, event: WorkflowEvent) -> Optional[WorkflowState]:
    """Return the state ``event`` leads to from ``state``, or ``None`` if illegal."""
    return TRANSITIONS.get((state, event))


def source_state(event: WorkflowEvent) -> WorkflowState:
    return _SOURCES[event]


def target_state(event: WorkflowEvent) -> WorkflowState:
    return _TARGETS[event]


def is_replay(state: WorkflowState, event: WorkflowEvent) -> bool:
    """Return ``True`` when ``event`` is a stale duplicate of an outcome report.

    Only worker outcome events qualify, and only once the workflow has reached
    or passed the state the event leads to. A failed state is a sideways move,
    so a success report arriving there is not a replay.
    """
    if event not in OUTCOME_EVENTS or can_transition(state, event):
        return False
    return state_rank(state) >= state_rank(target_state(event))


def validate_transition_table(table: TransitionTable = TRANSITIONS) -> List[str]:
    """Check the structural invariants of ``table`` and return any violations."""
    errors: List[str] = []

    seen: Dict[WorkflowEvent, WorkflowState] = {}
    for state, event in table:
        if event in seen:
            errors.append(
                f"Event {event.value} legal from both {seen[event].value} and {state.value}"
            )
        seen[event] = state

    for event in WorkflowEvent:
        if event not in seen:
            errors.append(f"Event {event.value} has no transition")

    reachable = {INITIAL_STATE} | set(table.values())
    for state in WorkflowState:
        if state not in reachable:
            errors.append(f"State {state.value} is unreachable")

    for (state, event), target in table.items():
        if event in FAILURE_EVENTS:
            if not is_failed_state(target):
                errors.append(f"Failure event {event.value} does not land in a failed state")
        elif state_rank(target) <= state_rank(state) and not is_failed_state(state):
            errors.append(
                f"Transition {state.value} --{event.value}--> {target.value} regresses"
            )

    return errors
