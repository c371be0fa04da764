from collections import Counter

from intent_engine.guard import validate_transition_table
from intent_engine.states import (
    PROCESSING_STEPS,
    STATE_ORDER,
    TRANSITIONS,
    Step,
    WorkflowEvent,
    WorkflowState,
    definition_for_state,
    is_failed_state,
    is_running_state,
    is_terminal_state,
    step_label,
    step_number,
    step_of,
)


def test_transition_table_is_structurally_sound():
    assert validate_transition_table() == []


def test_every_event_is_legal_from_exactly_one_state():
    counts = Counter(event for _, event in TRANSITIONS)
    assert set(counts) == set(WorkflowEvent)
    assert all(count == 1 for count in counts.values())


def test_state_order_covers_every_state_once():
    assert sorted(STATE_ORDER, key=lambda s: s.value) == sorted(
        WorkflowState, key=lambda s: s.value
    )


def test_validator_reports_broken_tables():
    broken = dict(TRANSITIONS)
    del broken[(WorkflowState.STEP_8_SUBTOPICS_REVIEW, WorkflowEvent.HUMAN_SUBTOPICS_APPROVED)]
    broken[(WorkflowState.STEP_5_FILTERING_RUNNING, WorkflowEvent.FILTERING_FAILED)] = (
        WorkflowState.STEP_5_FILTERING
    )

    errors = validate_transition_table(broken)

    assert any("HUMAN_SUBTOPICS_APPROVED has no transition" in e for e in errors)
    assert any("FILTERING_FAILED does not land in a failed state" in e for e in errors)
    assert any("step_9_articles is unreachable" in e for e in errors)


def test_validator_reports_regressions():
    broken = dict(TRANSITIONS)
    broken[(WorkflowState.STEP_6_CLUSTERING_RUNNING, WorkflowEvent.CLUSTERING_SUCCESS)] = (
        WorkflowState.STEP_4_LONGTAILS
    )
    errors = validate_transition_table(broken)
    assert any("regresses" in e for e in errors)


def test_step_definitions_match_the_table():
    for definition in PROCESSING_STEPS:
        assert (definition.idle_state, definition.start_event) in TRANSITIONS
        assert (definition.running_state, definition.success_event) in TRANSITIONS
        assert TRANSITIONS[(definition.running_state, definition.failure_event)] == (
            definition.failed_state
        )
        assert TRANSITIONS[(definition.failed_state, definition.retry_event)] == (
            definition.running_state
        )


def test_inline_steps_have_no_job():
    automated = {d.step for d in PROCESSING_STEPS if d.automated}
    assert Step.ICP not in automated
    assert Step.COMPETITORS not in automated
    assert automated == {
        Step.LONGTAILS,
        Step.FILTERING,
        Step.CLUSTERING,
        Step.VALIDATION,
        Step.SUBTOPICS,
        Step.ARTICLES,
    }


def test_progression_helpers():
    assert step_of(WorkflowState.COMPETITOR_COMPLETED) == Step.SEEDS
    assert step_number(WorkflowState.COMPETITOR_COMPLETED) == 3
    assert step_number(WorkflowState.ICP_PENDING) == 1
    assert step_number(WorkflowState.STEP_6_CLUSTERING_FAILED) == 6
    assert step_number(WorkflowState.COMPLETED) == 9
    assert step_label(Step.LONGTAILS) == "Longtail Expansion"

    assert is_running_state(WorkflowState.STEP_7_VALIDATION_RUNNING)
    assert not is_running_state(WorkflowState.STEP_7_VALIDATION)
    assert is_failed_state(WorkflowState.ICP_FAILED)
    assert is_terminal_state(WorkflowState.COMPLETED)
    assert not is_terminal_state(WorkflowState.STEP_9_ARTICLES_RUNNING)


def test_definition_for_state():
    definition = definition_for_state(WorkflowState.STEP_5_FILTERING_FAILED)
    assert definition is not None
    assert definition.step == Step.FILTERING
    assert definition_for_state(WorkflowState.STEP_8_SUBTOPICS_REVIEW) is None
    assert definition_for_state(WorkflowState.COMPLETED) is None
