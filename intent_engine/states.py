"""Workflow states, events and the transition table for the intent pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple


class Step(str, Enum):
    """The nine ordered stages of the content pipeline."""

    ICP = "icp"
    COMPETITORS = "competitors"
    SEEDS = "seeds"
    LONGTAILS = "longtails"
    FILTERING = "filtering"
    CLUSTERING = "clustering"
    VALIDATION = "validation"
    SUBTOPICS = "subtopics"
    ARTICLES = "articles"


class WorkflowState(str, Enum):
    """Closed set of persisted workflow states."""

    ICP_PENDING = "icp_pending"
    ICP_PROCESSING = "icp_processing"
    ICP_FAILED = "icp_failed"

    COMPETITOR_PENDING = "competitor_pending"
    COMPETITOR_PROCESSING = "competitor_processing"
    COMPETITOR_FAILED = "competitor_failed"
    COMPETITOR_COMPLETED = "competitor_completed"

    STEP_4_LONGTAILS = "step_4_longtails"
    STEP_4_LONGTAILS_RUNNING = "step_4_longtails_running"
    STEP_4_LONGTAILS_FAILED = "step_4_longtails_failed"

    STEP_5_FILTERING = "step_5_filtering"
    STEP_5_FILTERING_RUNNING = "step_5_filtering_running"
    STEP_5_FILTERING_FAILED = "step_5_filtering_failed"

    STEP_6_CLUSTERING = "step_6_clustering"
    STEP_6_CLUSTERING_RUNNING = "step_6_clustering_running"
    STEP_6_CLUSTERING_FAILED = "step_6_clustering_failed"

    STEP_7_VALIDATION = "step_7_validation"
    STEP_7_VALIDATION_RUNNING = "step_7_validation_running"
    STEP_7_VALIDATION_FAILED = "step_7_validation_failed"

    STEP_8_SUBTOPICS = "step_8_subtopics"
    STEP_8_SUBTOPICS_RUNNING = "step_8_subtopics_running"
    STEP_8_SUBTOPICS_FAILED = "step_8_subtopics_failed"
    STEP_8_SUBTOPICS_REVIEW = "step_8_subtopics_review"

    STEP_9_ARTICLES = "step_9_articles"
    STEP_9_ARTICLES_RUNNING = "step_9_articles_running"
    STEP_9_ARTICLES_FAILED = "step_9_articles_failed"

    COMPLETED = "completed"


class WorkflowEvent(str, Enum):
    """Named events that move a workflow between states."""

    ICP_START = "ICP_START"
    ICP_SUCCESS = "ICP_SUCCESS"
    ICP_FAILED = "ICP_FAILED"
    ICP_RETRY = "ICP_RETRY"

    COMPETITOR_START = "COMPETITOR_START"
    COMPETITOR_SUCCESS = "COMPETITOR_SUCCESS"
    COMPETITOR_FAILED = "COMPETITOR_FAILED"
    COMPETITOR_RETRY = "COMPETITOR_RETRY"

    SEEDS_APPROVED = "SEEDS_APPROVED"

    LONGTAIL_START = "LONGTAIL_START"
    LONGTAIL_SUCCESS = "LONGTAIL_SUCCESS"
    LONGTAIL_FAILED = "LONGTAIL_FAILED"
    LONGTAIL_RETRY = "LONGTAIL_RETRY"

    FILTERING_START = "FILTERING_START"
    FILTERING_SUCCESS = "FILTERING_SUCCESS"
    FILTERING_FAILED = "FILTERING_FAILED"
    FILTERING_RETRY = "FILTERING_RETRY"

    CLUSTERING_START = "CLUSTERING_START"
    CLUSTERING_SUCCESS = "CLUSTERING_SUCCESS"
    CLUSTERING_FAILED = "CLUSTERING_FAILED"
    CLUSTERING_RETRY = "CLUSTERING_RETRY"

    VALIDATION_START = "VALIDATION_START"
    VALIDATION_SUCCESS = "VALIDATION_SUCCESS"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    VALIDATION_RETRY = "VALIDATION_RETRY"

    SUBTOPICS_START = "SUBTOPICS_START"
    SUBTOPICS_SUCCESS = "SUBTOPICS_SUCCESS"
    SUBTOPICS_FAILED = "SUBTOPICS_FAILED"
    SUBTOPICS_RETRY = "SUBTOPICS_RETRY"

    HUMAN_SUBTOPICS_APPROVED = "HUMAN_SUBTOPICS_APPROVED"

    ARTICLES_START = "ARTICLES_START"
    ARTICLES_SUCCESS = "ARTICLES_SUCCESS"
    ARTICLES_FAILED = "ARTICLES_FAILED"
    ARTICLES_RETRY = "ARTICLES_RETRY"


S = WorkflowState
E = WorkflowEvent

# The only definition of transition legality. Every event appears exactly once.
TRANSITIONS: Dict[Tuple[WorkflowState, WorkflowEvent], WorkflowState] = {
    (S.ICP_PENDING, E.ICP_START): S.ICP_PROCESSING,
    (S.ICP_PROCESSING, E.ICP_SUCCESS): S.COMPETITOR_PENDING,
    (S.ICP_PROCESSING, E.ICP_FAILED): S.ICP_FAILED,
    (S.ICP_FAILED, E.ICP_RETRY): S.ICP_PROCESSING,
    (S.COMPETITOR_PENDING, E.COMPETITOR_START): S.COMPETITOR_PROCESSING,
    (S.COMPETITOR_PROCESSING, E.COMPETITOR_SUCCESS): S.COMPETITOR_COMPLETED,
    (S.COMPETITOR_PROCESSING, E.COMPETITOR_FAILED): S.COMPETITOR_FAILED,
    (S.COMPETITOR_FAILED, E.COMPETITOR_RETRY): S.COMPETITOR_PROCESSING,
    (S.COMPETITOR_COMPLETED, E.SEEDS_APPROVED): S.STEP_4_LONGTAILS,
    (S.STEP_4_LONGTAILS, E.LONGTAIL_START): S.STEP_4_LONGTAILS_RUNNING,
    (S.STEP_4_LONGTAILS_RUNNING, E.LONGTAIL_SUCCESS): S.STEP_5_FILTERING,
    (S.STEP_4_LONGTAILS_RUNNING, E.LONGTAIL_FAILED): S.STEP_4_LONGTAILS_FAILED,
    (S.STEP_4_LONGTAILS_FAILED, E.LONGTAIL_RETRY): S.STEP_4_LONGTAILS_RUNNING,
    (S.STEP_5_FILTERING, E.FILTERING_START): S.STEP_5_FILTERING_RUNNING,
    (S.STEP_5_FILTERING_RUNNING, E.FILTERING_SUCCESS): S.STEP_6_CLUSTERING,
    (S.STEP_5_FILTERING_RUNNING, E.FILTERING_FAILED): S.STEP_5_FILTERING_FAILED,
    (S.STEP_5_FILTERING_FAILED, E.FILTERING_RETRY): S.STEP_5_FILTERING_RUNNING,
    (S.STEP_6_CLUSTERING, E.CLUSTERING_START): S.STEP_6_CLUSTERING_RUNNING,
    (S.STEP_6_CLUSTERING_RUNNING, E.CLUSTERING_SUCCESS): S.STEP_7_VALIDATION,
    (S.STEP_6_CLUSTERING_RUNNING, E.CLUSTERING_FAILED): S.STEP_6_CLUSTERING_FAILED,
    (S.STEP_6_CLUSTERING_FAILED, E.CLUSTERING_RETRY): S.STEP_6_CLUSTERING_RUNNING,
    (S.STEP_7_VALIDATION, E.VALIDATION_START): S.STEP_7_VALIDATION_RUNNING,
    (S.STEP_7_VALIDATION_RUNNING, E.VALIDATION_SUCCESS): S.STEP_8_SUBTOPICS,
    (S.STEP_7_VALIDATION_RUNNING, E.VALIDATION_FAILED): S.STEP_7_VALIDATION_FAILED,
    (S.STEP_7_VALIDATION_FAILED, E.VALIDATION_RETRY): S.STEP_7_VALIDATION_RUNNING,
    (S.STEP_8_SUBTOPICS, E.SUBTOPICS_START): S.STEP_8_SUBTOPICS_RUNNING,
    (S.STEP_8_SUBTOPICS_RUNNING, E.SUBTOPICS_SUCCESS): S.STEP_8_SUBTOPICS_REVIEW,
    (S.STEP_8_SUBTOPICS_RUNNING, E.SUBTOPICS_FAILED): S.STEP_8_SUBTOPICS_FAILED,
    (S.STEP_8_SUBTOPICS_FAILED, E.SUBTOPICS_RETRY): S.STEP_8_SUBTOPICS_RUNNING,
    (S.STEP_8_SUBTOPICS_REVIEW, E.HUMAN_SUBTOPICS_APPROVED): S.STEP_9_ARTICLES,
    (S.STEP_9_ARTICLES, E.ARTICLES_START): S.STEP_9_ARTICLES_RUNNING,
    (S.STEP_9_ARTICLES_RUNNING, E.ARTICLES_SUCCESS): S.COMPLETED,
    (S.STEP_9_ARTICLES_RUNNING, E.ARTICLES_FAILED): S.STEP_9_ARTICLES_FAILED,
    (S.STEP_9_ARTICLES_FAILED, E.ARTICLES_RETRY): S.STEP_9_ARTICLES_RUNNING,
}

INITIAL_STATE = S.ICP_PENDING


@dataclass(frozen=True)
class StepDefinition:
    """Describes one processing step: its three sub-states and four events.

    ``job_event`` is the transport topic a background worker listens on. Steps
    without one (ICP, competitor analysis) are executed inline by the API.
    """

    step: Step
    idle_state: WorkflowState
    running_state: WorkflowState
    failed_state: WorkflowState
    start_event: WorkflowEvent
    success_event: WorkflowEvent
    failure_event: WorkflowEvent
    retry_event: WorkflowEvent
    metadata_key: str
    job_event: Optional[str] = None

    @property
    def automated(self) -> bool:
        return self.job_event is not None


PROCESSING_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition(
        Step.ICP, S.ICP_PENDING, S.ICP_PROCESSING, S.ICP_FAILED,
        E.ICP_START, E.ICP_SUCCESS, E.ICP_FAILED, E.ICP_RETRY,
        metadata_key="icp_generation",
    ),
    StepDefinition(
        Step.COMPETITORS, S.COMPETITOR_PENDING, S.COMPETITOR_PROCESSING,
        S.COMPETITOR_FAILED,
        E.COMPETITOR_START, E.COMPETITOR_SUCCESS, E.COMPETITOR_FAILED,
        E.COMPETITOR_RETRY,
        metadata_key="competitor_analysis",
    ),
    StepDefinition(
        Step.LONGTAILS, S.STEP_4_LONGTAILS, S.STEP_4_LONGTAILS_RUNNING,
        S.STEP_4_LONGTAILS_FAILED,
        E.LONGTAIL_START, E.LONGTAIL_SUCCESS, E.LONGTAIL_FAILED, E.LONGTAIL_RETRY,
        metadata_key="longtail_expansion",
        job_event="intent.step4.longtails",
    ),
    StepDefinition(
        Step.FILTERING, S.STEP_5_FILTERING, S.STEP_5_FILTERING_RUNNING,
        S.STEP_5_FILTERING_FAILED,
        E.FILTERING_START, E.FILTERING_SUCCESS, E.FILTERING_FAILED,
        E.FILTERING_RETRY,
        metadata_key="keyword_filtering",
        job_event="intent.step5.filtering",
    ),
    StepDefinition(
        Step.CLUSTERING, S.STEP_6_CLUSTERING, S.STEP_6_CLUSTERING_RUNNING,
        S.STEP_6_CLUSTERING_FAILED,
        E.CLUSTERING_START, E.CLUSTERING_SUCCESS, E.CLUSTERING_FAILED,
        E.CLUSTERING_RETRY,
        metadata_key="keyword_clustering",
        job_event="intent.step6.clustering",
    ),
    StepDefinition(
        Step.VALIDATION, S.STEP_7_VALIDATION, S.STEP_7_VALIDATION_RUNNING,
        S.STEP_7_VALIDATION_FAILED,
        E.VALIDATION_START, E.VALIDATION_SUCCESS, E.VALIDATION_FAILED,
        E.VALIDATION_RETRY,
        metadata_key="cluster_validation",
        job_event="intent.step7.validation",
    ),
    StepDefinition(
        Step.SUBTOPICS, S.STEP_8_SUBTOPICS, S.STEP_8_SUBTOPICS_RUNNING,
        S.STEP_8_SUBTOPICS_FAILED,
        E.SUBTOPICS_START, E.SUBTOPICS_SUCCESS, E.SUBTOPICS_FAILED,
        E.SUBTOPICS_RETRY,
        metadata_key="subtopic_generation",
        job_event="intent.step8.subtopics",
    ),
    StepDefinition(
        Step.ARTICLES, S.STEP_9_ARTICLES, S.STEP_9_ARTICLES_RUNNING,
        S.STEP_9_ARTICLES_FAILED,
        E.ARTICLES_START, E.ARTICLES_SUCCESS, E.ARTICLES_FAILED, E.ARTICLES_RETRY,
        metadata_key="article_generation",
        job_event="intent.step9.articles",
    ),
)

STEP_DEFINITIONS: Dict[Step, StepDefinition] = {d.step: d for d in PROCESSING_STEPS}

# Human-gated events; legal only from the matching review state.
APPROVAL_EVENTS = frozenset({E.SEEDS_APPROVED, E.HUMAN_SUBTOPICS_APPROVED})

# Events reported by workers at the end of a step. Duplicates of these are
# replayed as no-ops once the workflow has moved past their source state.
OUTCOME_EVENTS = frozenset(
    event
    for definition in PROCESSING_STEPS
    for event in (definition.success_event, definition.failure_event)
)

FAILURE_EVENTS = frozenset(d.failure_event for d in PROCESSING_STEPS)

# Pipeline order, used to decide whether a workflow is "later" than a state.
STATE_ORDER: Tuple[WorkflowState, ...] = (
    S.ICP_PENDING,
    S.ICP_PROCESSING,
    S.ICP_FAILED,
    S.COMPETITOR_PENDING,
    S.COMPETITOR_PROCESSING,
    S.COMPETITOR_FAILED,
    S.COMPETITOR_COMPLETED,
    S.STEP_4_LONGTAILS,
    S.STEP_4_LONGTAILS_RUNNING,
    S.STEP_4_LONGTAILS_FAILED,
    S.STEP_5_FILTERING,
    S.STEP_5_FILTERING_RUNNING,
    S.STEP_5_FILTERING_FAILED,
    S.STEP_6_CLUSTERING,
    S.STEP_6_CLUSTERING_RUNNING,
    S.STEP_6_CLUSTERING_FAILED,
    S.STEP_7_VALIDATION,
    S.STEP_7_VALIDATION_RUNNING,
    S.STEP_7_VALIDATION_FAILED,
    S.STEP_8_SUBTOPICS,
    S.STEP_8_SUBTOPICS_RUNNING,
    S.STEP_8_SUBTOPICS_FAILED,
    S.STEP_8_SUBTOPICS_REVIEW,
    S.STEP_9_ARTICLES,
    S.STEP_9_ARTICLES_RUNNING,
    S.STEP_9_ARTICLES_FAILED,
    S.COMPLETED,
)

_STATE_RANK = {state: index for index, state in enumerate(STATE_ORDER)}

_STATE_STEP: Dict[WorkflowState, Step] = {
    S.COMPETITOR_COMPLETED: Step.SEEDS,
    S.STEP_8_SUBTOPICS_REVIEW: Step.SUBTOPICS,
    S.COMPLETED: Step.ARTICLES,
}
for _definition in PROCESSING_STEPS:
    for _state in (
        _definition.idle_state,
        _definition.running_state,
        _definition.failed_state,
    ):
        _STATE_STEP[_state] = _definition.step

_STEP_LABELS = {
    Step.ICP: "ICP Generation",
    Step.COMPETITORS: "Competitor Analysis",
    Step.SEEDS: "Seed Keywords",
    Step.LONGTAILS: "Longtail Expansion",
    Step.FILTERING: "Filtering",
    Step.CLUSTERING: "Clustering",
    Step.VALIDATION: "Validation",
    Step.SUBTOPICS: "Subtopics",
    Step.ARTICLES: "Articles",
}


def state_rank(state: WorkflowState) -> int:
    """Position of ``state`` in pipeline order."""
    return _STATE_RANK[state]


def step_of(state: WorkflowState) -> Step:
    """Return the pipeline step that owns ``state``."""
    return _STATE_STEP[state]


def step_number(state: WorkflowState) -> int:
    """Return the 1-based UI step number for ``state``."""
    return list(Step).index(step_of(state)) + 1


def step_label(step: Step) -> str:
    return _STEP_LABELS[step]


def is_running_state(state: WorkflowState) -> bool:
    return any(d.running_state == state for d in PROCESSING_STEPS)


def is_failed_state(state: WorkflowState) -> bool:
    return any(d.failed_state == state for d in PROCESSING_STEPS)


def is_terminal_state(state: WorkflowState) -> bool:
    return state == S.COMPLETED


def definition_for_state(state: WorkflowState) -> Optional[StepDefinition]:
    """Return the processing step whose idle/running/failed set contains ``state``."""
    for definition in PROCESSING_STEPS:
        if state in (
            definition.idle_state,
            definition.running_state,
            definition.failed_state,
        ):
            return definition
    return None
