from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
import logging
from typing import Literal

from copilot_monitor.observability import log_event


LOGGER = logging.getLogger("copilot_monitor.state_machine")

CopilotState = Literal[
    "IDLE",
    "WORKING",
    "WAITING_FOR_FEEDBACK",
    "FIX_REQUESTED",
    "FIX_IN_PROGRESS",
    "READY_FOR_RERUN",
    "CI_RUNNING",
    "ERROR",
    "MAX_SESSIONS_REACHED",
]
CopilotEvent = Literal[
    "WORK_STARTED",
    "WORK_FINISHED",
    "WORK_FAILED",
    "FAILED_CHECKS_DETECTED",
    "NO_FAILED_CHECKS",
    "WORKFLOW_RERUN_TRIGGERED",
    "CI_STARTED",
    "CI_COMPLETED",
    "RESET",
]
LegacyState = Literal[
    "idle", "working", "waiting", "ready", "ci_running", "failed", "max_sessions_reached"
]

COPILOT_STATES: tuple[CopilotState, ...] = (
    "IDLE",
    "WORKING",
    "WAITING_FOR_FEEDBACK",
    "FIX_REQUESTED",
    "FIX_IN_PROGRESS",
    "READY_FOR_RERUN",
    "CI_RUNNING",
    "ERROR",
    "MAX_SESSIONS_REACHED",
)
COPILOT_EVENTS: tuple[CopilotEvent, ...] = (
    "WORK_STARTED",
    "WORK_FINISHED",
    "WORK_FAILED",
    "FAILED_CHECKS_DETECTED",
    "NO_FAILED_CHECKS",
    "WORKFLOW_RERUN_TRIGGERED",
    "CI_STARTED",
    "CI_COMPLETED",
    "RESET",
)
DEFAULT_MAX_SESSIONS = 50


@dataclass(frozen=True)
class StateContext:
    has_failed_checks: bool = False
    auto_fix_enabled: bool = False
    auto_approve_enabled: bool = False
    username: str | None = None
    last_event_timestamp: datetime | None = None
    pending_workflow_run_ids: frozenset[int] = frozenset()
    running_workflow_run_ids: frozenset[int] = frozenset()
    session_count: int = 0
    max_sessions: int = DEFAULT_MAX_SESSIONS
    total_session_time_ms: int = 0
    session_started_at: datetime | None = None


@dataclass(frozen=True)
class StateInfo:
    label: str
    message: str
    marker: str
    color: str


class AutomationActions(ABC):
    """Side effects a transition may request; implemented by the per-PR manager."""

    @abstractmethod
    def on_fix_requested(self, context: StateContext) -> None:
        """Ask the agent to fix the failing checks."""

    @abstractmethod
    def on_workflow_rerun(self, context: StateContext) -> None:
        """Re-run the workflows that need attention."""


StatusListener = Callable[[CopilotState, str, str], None]
Guard = Callable[[StateContext], bool]
Action = Callable[["CopilotStateMachine", "StateTransition"], None]


@dataclass(frozen=True)
class StateTransition:
    from_state: CopilotState
    event: CopilotEvent
    to_state: CopilotState
    guard: Guard | None = None
    action: Action | None = None

    def accepts(self, context: StateContext) -> bool:
        return self.guard is None or self.guard(context)


def _at_session_limit(ctx: StateContext) -> bool:
    return ctx.session_count + 1 >= ctx.max_sessions


def _under_session_limit(ctx: StateContext) -> bool:
    return ctx.session_count + 1 < ctx.max_sessions


def _fix_enabled(ctx: StateContext) -> bool:
    return ctx.auto_fix_enabled and bool(ctx.username)


def _rerun_without_fix(ctx: StateContext) -> bool:
    return not ctx.auto_fix_enabled and ctx.auto_approve_enabled


def _rerun_enabled(ctx: StateContext) -> bool:
    return ctx.auto_approve_enabled


def _rerun_disabled(ctx: StateContext) -> bool:
    return not ctx.auto_approve_enabled


def _rerun_under_limit(ctx: StateContext) -> bool:
    return ctx.auto_approve_enabled and _under_session_limit(ctx)


def _no_rerun_under_limit(ctx: StateContext) -> bool:
    return not ctx.auto_approve_enabled and _under_session_limit(ctx)


def _no_running_runs(ctx: StateContext) -> bool:
    return not ctx.running_workflow_run_ids


def _start_session(machine: CopilotStateMachine, transition: StateTransition) -> None:
    _ = transition
    machine.update_context(session_started_at=machine.context.last_event_timestamp)


def _count_session(machine: CopilotStateMachine, transition: StateTransition) -> None:
    ctx = machine.context
    elapsed_ms = 0
    if ctx.session_started_at is not None and ctx.last_event_timestamp is not None:
        elapsed_ms = max(
            0, int((ctx.last_event_timestamp - ctx.session_started_at).total_seconds() * 1000)
        )
    machine.update_context(
        session_count=ctx.session_count + 1,
        total_session_time_ms=ctx.total_session_time_ms + elapsed_ms,
        session_started_at=None,
    )
    updated = machine.context
    if transition.to_state == "MAX_SESSIONS_REACHED":
        log_event(
            LOGGER,
            "max_sessions_reached",
            level=logging.WARNING,
            session_count=updated.session_count,
            max_sessions=updated.max_sessions,
        )
        return
    log_event(
        LOGGER,
        "session_completed" if transition.event == "WORK_FINISHED" else "session_failed",
        level=logging.INFO if transition.event == "WORK_FINISHED" else logging.ERROR,
        session_count=updated.session_count,
        max_sessions=updated.max_sessions,
        session_ms=elapsed_ms,
    )


def _request_fix(machine: CopilotStateMachine, transition: StateTransition) -> None:
    _ = transition
    if machine.actions is not None:
        machine.actions.on_fix_requested(machine.context)


def _trigger_rerun(machine: CopilotStateMachine, transition: StateTransition) -> None:
    _ = transition
    if machine.actions is not None:
        machine.actions.on_workflow_rerun(machine.context)


def _reset_counters(machine: CopilotStateMachine, transition: StateTransition) -> None:
    _ = transition
    machine.update_context(
        has_failed_checks=False,
        pending_workflow_run_ids=frozenset(),
        running_workflow_run_ids=frozenset(),
        session_count=0,
        total_session_time_ms=0,
        session_started_at=None,
    )


def _session_end_rows(from_state: CopilotState) -> tuple[StateTransition, ...]:
    if from_state == "WORKING":
        finished_rows = (
            StateTransition(
                from_state, "WORK_FINISHED", "WAITING_FOR_FEEDBACK", _under_session_limit, _count_session
            ),
        )
    else:
        finished_rows = (
            StateTransition(
                from_state, "WORK_FINISHED", "READY_FOR_RERUN", _rerun_under_limit, _count_session
            ),
            StateTransition(
                from_state,
                "WORK_FINISHED",
                "WAITING_FOR_FEEDBACK",
                _no_rerun_under_limit,
                _count_session,
            ),
        )
    return (
        StateTransition(
            from_state, "WORK_FINISHED", "MAX_SESSIONS_REACHED", _at_session_limit, _count_session
        ),
        *finished_rows,
        StateTransition(
            from_state, "WORK_FAILED", "MAX_SESSIONS_REACHED", _at_session_limit, _count_session
        ),
        StateTransition(from_state, "WORK_FAILED", "ERROR", _under_session_limit, _count_session),
    )


TRANSITIONS: tuple[StateTransition, ...] = (
    StateTransition("IDLE", "WORK_STARTED", "WORKING", action=_start_session),
    *_session_end_rows("WORKING"),
    StateTransition(
        "WAITING_FOR_FEEDBACK", "FAILED_CHECKS_DETECTED", "FIX_REQUESTED", _fix_enabled, _request_fix
    ),
    StateTransition(
        "WAITING_FOR_FEEDBACK", "FAILED_CHECKS_DETECTED", "READY_FOR_RERUN", _rerun_without_fix
    ),
    StateTransition("WAITING_FOR_FEEDBACK", "NO_FAILED_CHECKS", "READY_FOR_RERUN", _rerun_enabled),
    StateTransition("WAITING_FOR_FEEDBACK", "NO_FAILED_CHECKS", "IDLE", _rerun_disabled),
    StateTransition("FIX_REQUESTED", "WORK_STARTED", "FIX_IN_PROGRESS", action=_start_session),
    *_session_end_rows("FIX_IN_PROGRESS"),
    StateTransition(
        "READY_FOR_RERUN", "WORKFLOW_RERUN_TRIGGERED", "CI_RUNNING", action=_trigger_rerun
    ),
    StateTransition("READY_FOR_RERUN", "CI_STARTED", "CI_RUNNING"),
    StateTransition("CI_RUNNING", "CI_COMPLETED", "IDLE", _no_running_runs),
    *(StateTransition(state, "RESET", "IDLE", action=_reset_counters) for state in COPILOT_STATES),
)

_STATE_INFO: dict[CopilotState, StateInfo] = {
    "IDLE": StateInfo("No Copilot Activity", "No Copilot activity detected", "⚪", "gray"),
    "WORKING": StateInfo("Copilot Working", "Copilot is working", "🔄", "blue"),
    "WAITING_FOR_FEEDBACK": StateInfo("Waiting for Feedback", "Waiting for feedback", "⏳", "cyan"),
    "FIX_REQUESTED": StateInfo(
        "Waiting for Feedback", "Waiting for Copilot to fix issues", "🔧", "orange"
    ),
    "FIX_IN_PROGRESS": StateInfo("Copilot Working", "Copilot is fixing issues", "🔧", "blue"),
    "READY_FOR_RERUN": StateInfo("Ready for Rerun", "Ready to rerun workflows", "✅", "green"),
    "CI_RUNNING": StateInfo("CI is running", "CI workflows are running", "🔄", "blue"),
    "ERROR": StateInfo("Error", "Copilot encountered an error", "❌", "red"),
    "MAX_SESSIONS_REACHED": StateInfo(
        "Max Copilot sessions reached", "Maximum number of Copilot sessions reached", "🚫", "orange"
    ),
}

_LEGACY_STATES: dict[CopilotState, LegacyState] = {
    "IDLE": "idle",
    "WORKING": "working",
    "FIX_IN_PROGRESS": "working",
    "WAITING_FOR_FEEDBACK": "waiting",
    "FIX_REQUESTED": "waiting",
    "READY_FOR_RERUN": "ready",
    "CI_RUNNING": "ci_running",
    "ERROR": "failed",
    "MAX_SESSIONS_REACHED": "max_sessions_reached",
}


def state_info_for(state: CopilotState) -> StateInfo:
    return _STATE_INFO[state]


def legacy_state_for(state: CopilotState) -> LegacyState:
    return _LEGACY_STATES[state]


class CopilotStateMachine:
    """Guarded transition table plus the context it is evaluated against.

    Not thread-safe; the owning manager serializes access.
    """

    def __init__(
        self,
        context: StateContext | None = None,
        *,
        actions: AutomationActions | None = None,
        on_status_change: StatusListener | None = None,
        label: str = "",
        initial_state: CopilotState = "IDLE",
    ) -> None:
        self._state: CopilotState = initial_state
        self._context = context if context is not None else StateContext()
        self._actions = actions
        self._on_status_change = on_status_change
        self._label = label

    @property
    def current_state(self) -> CopilotState:
        return self._state

    @property
    def context(self) -> StateContext:
        return self._context

    @property
    def actions(self) -> AutomationActions | None:
        return self._actions

    def update_context(self, **fields: object) -> None:
        for key in ("pending_workflow_run_ids", "running_workflow_run_ids"):
            value = fields.get(key)
            if value is not None and not isinstance(value, frozenset):
                fields[key] = frozenset(value)  # type: ignore[call-overload]
        self._context = replace(self._context, **fields)  # type: ignore[arg-type]

    def transition(self, event: CopilotEvent, **context_updates: object) -> bool:
        if context_updates:
            self.update_context(**context_updates)

        for candidate in TRANSITIONS:
            if candidate.from_state != self._state or candidate.event != event:
                continue
            if not candidate.accepts(self._context):
                continue
            previous = self._state
            self._state = candidate.to_state
            log_event(
                LOGGER,
                "state_transition",
                pr=self._label or None,
                from_state=previous,
                to_state=candidate.to_state,
                trigger=event,
            )
            if candidate.action is not None:
                try:
                    candidate.action(self, candidate)
                except Exception as exc:  # noqa: BLE001
                    log_event(
                        LOGGER,
                        "transition_action_failed",
                        level=logging.ERROR,
                        pr=self._label or None,
                        to_state=candidate.to_state,
                        trigger=event,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
            self._notify_status_change()
            return True

        log_event(
            LOGGER,
            "transition_rejected",
            level=logging.WARNING,
            pr=self._label or None,
            state=self._state,
            trigger=event,
        )
        return False

    def reset(self) -> bool:
        return self.transition("RESET")

    def state_info(self) -> StateInfo:
        return state_info_for(self._state)

    def should_request_fix(self) -> bool:
        return (
            self._state == "WAITING_FOR_FEEDBACK"
            and self._context.has_failed_checks
            and _fix_enabled(self._context)
        )

    def should_trigger_rerun(self) -> bool:
        return self._state == "READY_FOR_RERUN" and self._context.auto_approve_enabled

    def should_monitor_ci(self) -> bool:
        return self._state in ("READY_FOR_RERUN", "CI_RUNNING")

    def _notify_status_change(self) -> None:
        if self._on_status_change is None:
            return
        info = self.state_info()
        self._on_status_change(self._state, info.message, info.marker)
