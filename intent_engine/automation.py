"""Automation dispatch graph: which transitions start background work."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterator, List, Mapping, Optional, Tuple

from .guard import target_state
from .states import PROCESSING_STEPS, STEP_DEFINITIONS, Step, WorkflowEvent


class AutomationGraph:
    """Immutable mapping from a transition event to the job it must emit.

    The graph is built once and handed to the transition engine. An event
    absent from the graph never produces a job.
    """

    def __init__(self, edges: Mapping[WorkflowEvent, str]) -> None:
        self._edges: Mapping[WorkflowEvent, str] = MappingProxyType(dict(edges))

    def __contains__(self, event: object) -> bool:
        return event in self._edges

    def __iter__(self) -> Iterator[WorkflowEvent]:
        return iter(self._edges)

    def __len__(self) -> int:
        return len(self._edges)

    def job_for(self, event: WorkflowEvent) -> Optional[str]:
        """Return the job name ``event`` dispatches, if any."""
        return self._edges.get(event)

    def items(self) -> List[Tuple[WorkflowEvent, str]]:
        return list(self._edges.items())

    def validate(self) -> None:
        """Raise ``ValueError`` unless every entry into an automated step is wired.

        An event "enters" an automated step when its target state is the step's
        idle state (a forward handoff) or its running state via retry. Such an
        event must map to that step's job, and nothing else may be mapped.
        """
        errors: List[str] = []
        expected: Dict[WorkflowEvent, str] = {}
        for definition in PROCESSING_STEPS:
            if not definition.automated:
                continue
            for event in WorkflowEvent:
                if event == definition.start_event:
                    continue
                target = target_state(event)
                if target == definition.idle_state or event == definition.retry_event:
                    expected[event] = definition.job_event

        for event, job in expected.items():
            actual = self._edges.get(event)
            if actual is None:
                errors.append(f"{event.value} enters an automated step but emits nothing")
            elif actual != job:
                errors.append(f"{event.value} emits {actual}, expected {job}")

        for event in self._edges:
            if event not in expected:
                errors.append(f"{event.value} does not enter an automated step")

        if errors:
            raise ValueError("Invalid automation graph: " + "; ".join(errors))


def job_step(job_event: str) -> Step:
    """Return the step a job name belongs to."""
    for definition in PROCESSING_STEPS:
        if definition.job_event == job_event:
            return definition.step
    raise ValueError(f"Unknown job event: {job_event}")


def default_automation_graph() -> AutomationGraph:
    """Build the production automation graph."""
    S = STEP_DEFINITIONS
    E = WorkflowEvent
    edges = {
        E.SEEDS_APPROVED: S[Step.LONGTAILS].job_event,
        E.LONGTAIL_SUCCESS: S[Step.FILTERING].job_event,
        E.FILTERING_SUCCESS: S[Step.CLUSTERING].job_event,
        E.CLUSTERING_SUCCESS: S[Step.VALIDATION].job_event,
        E.VALIDATION_SUCCESS: S[Step.SUBTOPICS].job_event,
        # SUBTOPICS_SUCCESS waits for human review
        E.HUMAN_SUBTOPICS_APPROVED: S[Step.ARTICLES].job_event,
    }
    for definition in PROCESSING_STEPS:
        if definition.automated:
            edges[definition.retry_event] = definition.job_event
    return AutomationGraph(edges)
