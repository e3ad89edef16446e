from __future__ import annotations

from datetime import datetime, timedelta, timezone

from hypothesis import given, strategies as st
import pytest

from copilot_monitor.state_machine import (
    COPILOT_EVENTS,
    COPILOT_STATES,
    TRANSITIONS,
    AutomationActions,
    CopilotEvent,
    CopilotState,
    CopilotStateMachine,
    StateContext,
    legacy_state_for,
    state_info_for,
)


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

_DEFINED_PAIRS = {(row.from_state, row.event) for row in TRANSITIONS}
_UNDEFINED_PAIRS = [
    (state, event)
    for state in COPILOT_STATES
    for event in COPILOT_EVENTS
    if (state, event) not in _DEFINED_PAIRS
]
_NON_RESET_EVENTS = [event for event in COPILOT_EVENTS if event != "RESET"]


class RecordingActions(AutomationActions):
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.fix_contexts: list[StateContext] = []
        self.rerun_contexts: list[StateContext] = []

    def on_fix_requested(self, context: StateContext) -> None:
        self.fix_contexts.append(context)
        if self.fail:
            raise RuntimeError("comment endpoint down")

    def on_workflow_rerun(self, context: StateContext) -> None:
        self.rerun_contexts.append(context)
        if self.fail:
            raise RuntimeError("rerun endpoint down")


contexts = st.builds(
    StateContext,
    auto_fix_enabled=st.booleans(),
    auto_approve_enabled=st.booleans(),
    username=st.sampled_from([None, "octocat"]),
    session_count=st.integers(min_value=0, max_value=5),
    max_sessions=st.integers(min_value=1, max_value=8),
)


def _drive(machine: CopilotStateMachine, events: list[CopilotEvent]) -> None:
    for event in events:
        machine.transition(event)


def test_undefined_pairs_cover_duplicate_and_terminal_observations() -> None:
    assert ("WAITING_FOR_FEEDBACK", "WORK_FINISHED") in _UNDEFINED_PAIRS
    assert ("IDLE", "WORK_FINISHED") in _UNDEFINED_PAIRS
    assert ("MAX_SESSIONS_REACHED", "WORK_STARTED") in _UNDEFINED_PAIRS
    assert ("ERROR", "WORK_STARTED") in _UNDEFINED_PAIRS
    assert ("CI_RUNNING", "WORK_STARTED") in _UNDEFINED_PAIRS
    assert all(event != "RESET" for _, event in _UNDEFINED_PAIRS)


@given(pair=st.sampled_from(_UNDEFINED_PAIRS), context=contexts)
def test_unmatched_event_is_a_no_op(
    pair: tuple[CopilotState, CopilotEvent], context: StateContext
) -> None:
    state, event = pair
    machine = CopilotStateMachine(context, initial_state=state)

    assert machine.transition(event) is False
    assert machine.current_state == state
    assert machine.context == context


@given(context=contexts, events=st.lists(st.sampled_from(_NON_RESET_EVENTS), max_size=30))
def test_session_count_only_moves_on_completed_sessions(
    context: StateContext, events: list[CopilotEvent]
) -> None:
    machine = CopilotStateMachine(context)
    for event in events:
        before_state = machine.current_state
        before_count = machine.context.session_count
        applied = machine.transition(event)
        after_count = machine.context.session_count

        ends_session = (
            applied
            and event in ("WORK_FINISHED", "WORK_FAILED")
            and before_state in ("WORKING", "FIX_IN_PROGRESS")
        )
        assert after_count == before_count + (1 if ends_session else 0)


@given(context=contexts, events=st.lists(st.sampled_from(_NON_RESET_EVENTS), max_size=20))
def test_reset_returns_to_idle_and_clears_counters(
    context: StateContext, events: list[CopilotEvent]
) -> None:
    machine = CopilotStateMachine(context)
    _drive(machine, events)
    machine.update_context(running_workflow_run_ids={1, 2}, pending_workflow_run_ids=[3])

    assert machine.reset() is True
    assert machine.current_state == "IDLE"
    assert machine.context.session_count == 0
    assert machine.context.total_session_time_ms == 0
    assert machine.context.running_workflow_run_ids == frozenset()
    assert machine.context.pending_workflow_run_ids == frozenset()


@given(
    from_state=st.sampled_from(["WORKING", "FIX_IN_PROGRESS"]),
    event=st.sampled_from(["WORK_FINISHED", "WORK_FAILED"]),
    max_sessions=st.integers(min_value=1, max_value=10),
    auto_fix=st.booleans(),
    auto_approve=st.booleans(),
)
def test_reaching_session_limit_always_lands_in_max_sessions(
    from_state: CopilotState,
    event: CopilotEvent,
    max_sessions: int,
    auto_fix: bool,
    auto_approve: bool,
) -> None:
    machine = CopilotStateMachine(
        StateContext(
            auto_fix_enabled=auto_fix,
            auto_approve_enabled=auto_approve,
            session_count=max_sessions - 1,
            max_sessions=max_sessions,
        ),
        initial_state=from_state,
    )

    assert machine.transition(event) is True
    assert machine.current_state == "MAX_SESSIONS_REACHED"
    assert machine.context.session_count == max_sessions


@given(auto_approve=st.booleans())
def test_fix_request_takes_priority_over_rerun(auto_approve: bool) -> None:
    actions = RecordingActions()
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=True, auto_approve_enabled=auto_approve, username="octocat"),
        actions=actions,
        initial_state="WAITING_FOR_FEEDBACK",
    )

    assert machine.transition("FAILED_CHECKS_DETECTED", has_failed_checks=True) is True
    assert machine.current_state == "FIX_REQUESTED"
    assert len(actions.fix_contexts) == 1
    assert actions.rerun_contexts == []


def test_fix_request_needs_a_username() -> None:
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=True, auto_approve_enabled=False, username=None),
        initial_state="WAITING_FOR_FEEDBACK",
    )

    assert machine.transition("FAILED_CHECKS_DETECTED") is False
    assert machine.current_state == "WAITING_FOR_FEEDBACK"


def test_failed_checks_without_fix_go_to_rerun_when_enabled() -> None:
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=False, auto_approve_enabled=True),
        initial_state="WAITING_FOR_FEEDBACK",
    )

    assert machine.transition("FAILED_CHECKS_DETECTED") is True
    assert machine.current_state == "READY_FOR_RERUN"


@pytest.mark.parametrize(
    ("auto_approve", "expected"),
    [(True, "READY_FOR_RERUN"), (False, "IDLE")],
)
def test_no_failed_checks_routes_on_rerun_toggle(auto_approve: bool, expected: str) -> None:
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=False, auto_approve_enabled=auto_approve),
        initial_state="WAITING_FOR_FEEDBACK",
    )

    assert machine.transition("NO_FAILED_CHECKS") is True
    assert machine.current_state == expected


@pytest.mark.parametrize(
    ("auto_approve", "expected"),
    [(True, "READY_FOR_RERUN"), (False, "WAITING_FOR_FEEDBACK")],
)
def test_fix_session_finish_routes_on_rerun_toggle(auto_approve: bool, expected: str) -> None:
    machine = CopilotStateMachine(
        StateContext(auto_approve_enabled=auto_approve, session_count=1, max_sessions=5),
        initial_state="FIX_IN_PROGRESS",
    )

    assert machine.transition("WORK_FINISHED") is True
    assert machine.current_state == expected
    assert machine.context.session_count == 2


def test_fix_session_failure_lands_in_error() -> None:
    machine = CopilotStateMachine(StateContext(max_sessions=5), initial_state="FIX_IN_PROGRESS")

    assert machine.transition("WORK_FAILED") is True
    assert machine.current_state == "ERROR"
    assert machine.context.session_count == 1


def test_ci_completed_requires_empty_running_set() -> None:
    machine = CopilotStateMachine(
        StateContext(running_workflow_run_ids=frozenset({7})), initial_state="CI_RUNNING"
    )

    assert machine.transition("CI_COMPLETED") is False
    assert machine.current_state == "CI_RUNNING"

    assert machine.transition("CI_COMPLETED", running_workflow_run_ids=()) is True
    assert machine.current_state == "IDLE"
    assert machine.context.running_workflow_run_ids == frozenset()


def test_duplicate_work_finished_does_not_double_count() -> None:
    machine = CopilotStateMachine(StateContext(max_sessions=5))
    _drive(machine, ["WORK_STARTED", "WORK_FINISHED"])
    assert machine.current_state == "WAITING_FOR_FEEDBACK"
    assert machine.context.session_count == 1

    assert machine.transition("WORK_FINISHED") is False
    assert machine.current_state == "WAITING_FOR_FEEDBACK"
    assert machine.context.session_count == 1


def test_scenario_fix_loop_hits_session_limit() -> None:
    actions = RecordingActions()
    seen: list[CopilotState] = []
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=True, username="octocat", max_sessions=2),
        actions=actions,
        on_status_change=lambda state, message, marker: seen.append(state),
    )

    assert machine.transition("WORK_STARTED") is True
    assert machine.current_state == "WORKING"
    assert machine.transition("WORK_FINISHED") is True
    assert machine.current_state == "WAITING_FOR_FEEDBACK"
    assert machine.context.session_count == 1
    assert machine.transition("FAILED_CHECKS_DETECTED", has_failed_checks=True) is True
    assert machine.current_state == "FIX_REQUESTED"
    assert machine.transition("WORK_STARTED") is True
    assert machine.current_state == "FIX_IN_PROGRESS"
    assert machine.transition("WORK_FINISHED") is True
    assert machine.current_state == "MAX_SESSIONS_REACHED"
    assert machine.context.session_count == 2

    assert len(actions.fix_contexts) == 1
    assert seen == [
        "WORKING",
        "WAITING_FOR_FEEDBACK",
        "FIX_REQUESTED",
        "FIX_IN_PROGRESS",
        "MAX_SESSIONS_REACHED",
    ]
    assert machine.transition("WORK_STARTED") is False
    assert machine.current_state == "MAX_SESSIONS_REACHED"


def test_scenario_rerun_then_ci_completes() -> None:
    actions = RecordingActions()
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=False, auto_approve_enabled=True), actions=actions
    )

    _drive(machine, ["WORK_STARTED", "WORK_FINISHED", "NO_FAILED_CHECKS"])
    assert machine.current_state == "READY_FOR_RERUN"
    assert machine.should_trigger_rerun() is True

    assert machine.transition("WORKFLOW_RERUN_TRIGGERED") is True
    assert machine.current_state == "CI_RUNNING"
    assert len(actions.rerun_contexts) == 1

    assert machine.transition("CI_COMPLETED") is True
    assert machine.current_state == "IDLE"


def test_ci_started_from_ready_does_not_trigger_rerun_action() -> None:
    actions = RecordingActions()
    machine = CopilotStateMachine(
        StateContext(auto_approve_enabled=True), actions=actions, initial_state="READY_FOR_RERUN"
    )

    assert machine.transition("CI_STARTED") is True
    assert machine.current_state == "CI_RUNNING"
    assert actions.rerun_contexts == []


def test_action_failure_is_logged_and_transition_kept() -> None:
    actions = RecordingActions(fail=True)
    machine = CopilotStateMachine(
        StateContext(auto_fix_enabled=True, username="octocat"),
        actions=actions,
        initial_state="WAITING_FOR_FEEDBACK",
    )

    assert machine.transition("FAILED_CHECKS_DETECTED") is True
    assert machine.current_state == "FIX_REQUESTED"
    assert len(actions.fix_contexts) == 1


def test_session_time_accumulates_from_event_timestamps() -> None:
    machine = CopilotStateMachine(StateContext(max_sessions=10))

    machine.transition("WORK_STARTED", last_event_timestamp=T0)
    assert machine.context.session_started_at == T0
    machine.transition("WORK_FINISHED", last_event_timestamp=T0 + timedelta(seconds=5))

    assert machine.context.total_session_time_ms == 5000
    assert machine.context.session_started_at is None


def test_update_context_merges_without_transition() -> None:
    machine = CopilotStateMachine()
    machine.update_context(pending_workflow_run_ids=[1, 2, 2], username="octocat")

    assert machine.current_state == "IDLE"
    assert machine.context.pending_workflow_run_ids == frozenset({1, 2})
    assert machine.context.username == "octocat"
    assert machine.context.max_sessions == 50


def test_predicates_follow_state_and_context() -> None:
    waiting = CopilotStateMachine(
        StateContext(has_failed_checks=True, auto_fix_enabled=True, username="octocat"),
        initial_state="WAITING_FOR_FEEDBACK",
    )
    assert waiting.should_request_fix() is True
    assert waiting.should_trigger_rerun() is False
    assert waiting.should_monitor_ci() is False

    ready = CopilotStateMachine(
        StateContext(auto_approve_enabled=False), initial_state="READY_FOR_RERUN"
    )
    assert ready.should_trigger_rerun() is False
    assert ready.should_monitor_ci() is True
    assert CopilotStateMachine(initial_state="CI_RUNNING").should_monitor_ci() is True


def test_state_info_and_legacy_mapping() -> None:
    assert state_info_for("IDLE").label == "No Copilot Activity"
    assert state_info_for("ERROR").color == "red"
    assert state_info_for("FIX_REQUESTED").message == "Waiting for Copilot to fix issues"
    assert legacy_state_for("FIX_IN_PROGRESS") == "working"
    assert legacy_state_for("FIX_REQUESTED") == "waiting"
    assert legacy_state_for("READY_FOR_RERUN") == "ready"
    assert legacy_state_for("MAX_SESSIONS_REACHED") == "max_sessions_reached"
    assert {legacy_state_for(state) for state in COPILOT_STATES} == {
        "idle",
        "working",
        "waiting",
        "ready",
        "ci_running",
        "failed",
        "max_sessions_reached",
    }
    assert all(state_info_for(state).marker for state in COPILOT_STATES)
