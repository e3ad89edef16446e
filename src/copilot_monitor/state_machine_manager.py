from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import threading
from typing import Literal

from copilot_monitor.collaborators import (
    CiGateway,
    NeverPaused,
    PauseOracle,
    RerunRejectedError,
    RerunUnavailableError,
)
from copilot_monitor.comments import (
    NUDGE_TEXT,
    parse_retry_wait_minutes,
    render_fix_request,
    render_job_failure_fix_request,
)
from copilot_monitor.config import AutomationOptions
from copilot_monitor.models import PullRequestRef, as_utc, parse_github_timestamp
from copilot_monitor.observability import log_event
from copilot_monitor.state_machine import (
    AutomationActions,
    CopilotEvent,
    CopilotState,
    CopilotStateMachine,
    LegacyState,
    StateContext,
    legacy_state_for,
)
from copilot_monitor.workflow_checks import (
    collect_failed_checks,
    is_ignored_check,
    is_job_failed,
    is_workflow_run_failed,
    is_workflow_run_running,
)


LOGGER = logging.getLogger("copilot_monitor.state_machine_manager")

PauseScope = Literal["global", "pull_request"]
PendingAction = Literal["fix_request", "workflow_rerun"]
RerunOutcome = Literal["triggered", "unavailable", "failed"]
GatewayFactory = Callable[[str, str], CiGateway]
EntityStatusListener = Callable[[str, CopilotState, str, str], None]
Clock = Callable[[], datetime]

RAW_EVENT_KINDS: dict[str, CopilotEvent] = {
    "work_started": "WORK_STARTED",
    "work_finished": "WORK_FINISHED",
    "work_failed": "WORK_FAILED",
    "ci_started": "CI_STARTED",
    "ci_completed": "CI_COMPLETED",
}
_ANALYSIS_STATES: frozenset[CopilotState] = frozenset({"WAITING_FOR_FEEDBACK", "READY_FOR_RERUN"})
_CI_STATES: frozenset[CopilotState] = frozenset({"READY_FOR_RERUN", "CI_RUNNING"})


class UnknownEventKindError(ValueError):
    """Raised when a raw observation kind has no state machine event."""


@dataclass(frozen=True)
class StatusSnapshot:
    key: str
    state: CopilotState
    label: str
    message: str
    marker: str
    color: str
    legacy_state: LegacyState
    session_count: int


def map_raw_event_kind(raw_kind: str) -> CopilotEvent:
    event = RAW_EVENT_KINDS.get(raw_kind)
    if event is None:
        raise UnknownEventKindError(f"Unknown event kind: {raw_kind!r}")
    return event


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class PrStateMachineManager(AutomationActions):
    def __init__(
        self,
        ref: PullRequestRef,
        *,
        gateway: CiGateway,
        pause_oracle: PauseOracle | None = None,
        options: AutomationOptions | None = None,
        on_status_change: EntityStatusListener | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._ref = ref
        self._gateway = gateway
        self._pause_oracle = pause_oracle if pause_oracle is not None else NeverPaused()
        self._options = options if options is not None else AutomationOptions()
        self._on_status_change = on_status_change
        self._clock = clock
        self._lock = threading.Lock()
        self._last_observation: tuple[CopilotEvent, datetime] | None = None
        # Set while a fix request or re-run failed and must be retried.
        self._pending_action: PendingAction | None = None
        self._machine = CopilotStateMachine(
            StateContext(
                auto_fix_enabled=self._options.auto_fix,
                auto_approve_enabled=self._options.auto_approve,
                username=self._options.username,
                max_sessions=self._options.max_sessions,
            ),
            actions=self,
            on_status_change=self._status_changed,
            label=ref.key,
        )

    @property
    def key(self) -> str:
        return self._ref.key

    @property
    def ref(self) -> PullRequestRef:
        return self._ref

    @property
    def state_machine(self) -> CopilotStateMachine:
        return self._machine

    def status(self) -> StatusSnapshot:
        with self._lock:
            return self._snapshot()

    def handle_observed_event(
        self,
        raw_kind: str,
        timestamp: datetime,
        options: AutomationOptions,
        *,
        message: str = "",
    ) -> StatusSnapshot:
        event = map_raw_event_kind(raw_kind)
        observed_at = as_utc(timestamp)
        with self._lock:
            self._apply_options(options)
            observation = (event, observed_at)
            if observation == self._last_observation:
                log_event(
                    LOGGER,
                    "observation_unchanged",
                    level=logging.DEBUG,
                    pr=self.key,
                    trigger=event,
                )
            else:
                self._last_observation = observation
                self._machine.transition(event, last_event_timestamp=observed_at)

            if event == "WORK_FINISHED" and self._machine.current_state in _ANALYSIS_STATES:
                self._analyze_post_work()
            elif event == "WORK_FINISHED" and self._pending_action is not None:
                self._retry_pending_action()
            elif event == "WORK_FAILED":
                self._maybe_nudge(failed_at=observed_at, message=message)
            return self._snapshot()

    def check_ci_status(self, options: AutomationOptions | None = None) -> StatusSnapshot:
        with self._lock:
            if options is not None:
                self._apply_options(options)
            self._check_ci_status()
            return self._snapshot()

    def check_job_failures(self, options: AutomationOptions | None = None) -> bool:
        with self._lock:
            if options is not None:
                self._apply_options(options)
            return self._check_job_failures()

    def reset(self) -> StatusSnapshot:
        with self._lock:
            self._machine.reset()
            self._last_observation = None
            self._pending_action = None
            return self._snapshot()

    def on_fix_requested(self, context: StateContext) -> None:
        self._pending_action = None
        username = context.username
        if not username:
            return
        try:
            pr = self._gateway.get_pull_request(self._ref.number)
            result = collect_failed_checks(
                self._gateway,
                head_sha=pr.head_sha,
                since=context.last_event_timestamp,
                ignore_jobs=self._options.ignore_jobs,
            )
            if not result.has_failures:
                log_event(LOGGER, "fix_request_skipped", pr=self.key, reason="no_failed_checks")
                return
            request = render_fix_request(failed_checks=result.failed_checks, log_summary="")
            since = context.last_event_timestamp or self._clock()
            if self._gateway.has_matching_comment_since(
                self._ref.number, since=since, author=username, body=request
            ):
                log_event(LOGGER, "fix_request_duplicate", pr=self.key)
                return
            body = render_fix_request(
                failed_checks=result.failed_checks,
                log_summary=self._failure_summary(result.failed_workflow_run_ids),
            )
            self._gateway.post_issue_comment(self._ref.number, body)
        except Exception as exc:  # noqa: BLE001
            self._pending_action = "fix_request"
            log_event(
                LOGGER,
                "fix_request_failed",
                level=logging.ERROR,
                pr=self.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(
            LOGGER,
            "fix_request_posted",
            pr=self.key,
            failed_checks=result.failed_checks,
        )

    def on_workflow_rerun(self, context: StateContext) -> None:
        self._pending_action = None
        try:
            pr = self._gateway.get_pull_request(self._ref.number)
            pending = tuple(
                run.run_id
                for run in self._gateway.list_workflow_runs(pr.head_sha)
                if is_workflow_run_failed(run)
            )
        except Exception as exc:  # noqa: BLE001
            self._pending_action = "workflow_rerun"
            log_event(
                LOGGER,
                "workflow_rerun_failed",
                level=logging.ERROR,
                pr=self.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        self._machine.update_context(pending_workflow_run_ids=pending)
        outcomes = {run_id: self._rerun(run_id) for run_id in pending}
        triggered = [run_id for run_id, outcome in outcomes.items() if outcome == "triggered"]
        if "failed" in outcomes.values():
            self._pending_action = "workflow_rerun"
        # A retried attempt keeps tracking the runs an earlier attempt started.
        running = set(context.running_workflow_run_ids) | set(triggered)
        self._machine.update_context(running_workflow_run_ids=running)
        log_event(
            LOGGER,
            "workflow_rerun_triggered",
            pr=self.key,
            pending_run_ids=pending,
            triggered_run_ids=triggered,
        )

    def _apply_options(self, options: AutomationOptions) -> None:
        self._options = options
        self._machine.update_context(
            auto_fix_enabled=options.auto_fix,
            auto_approve_enabled=options.auto_approve,
            username=options.username,
            max_sessions=options.max_sessions,
        )

    def _analyze_post_work(self) -> None:
        if self._paused_for("post_work_analysis"):
            return
        if self._machine.current_state == "WAITING_FOR_FEEDBACK":
            context = self._machine.context
            try:
                pr = self._gateway.get_pull_request(self._ref.number)
                result = collect_failed_checks(
                    self._gateway,
                    head_sha=pr.head_sha,
                    since=context.last_event_timestamp,
                    ignore_jobs=self._options.ignore_jobs,
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "post_work_analysis_failed",
                    level=logging.WARNING,
                    pr=self.key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return
            self._machine.transition(
                "FAILED_CHECKS_DETECTED" if result.has_failures else "NO_FAILED_CHECKS",
                has_failed_checks=result.has_failures,
            )
        if self._machine.should_trigger_rerun():
            self._machine.transition("WORKFLOW_RERUN_TRIGGERED")

    def _check_ci_status(self) -> None:
        state = self._machine.current_state
        if state not in _CI_STATES:
            return
        context = self._machine.context
        try:
            pr = self._gateway.get_pull_request(self._ref.number)
            runs = self._gateway.list_workflow_runs(pr.head_sha)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "ci_status_check_failed",
                level=logging.WARNING,
                pr=self.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return

        tracked = context.running_workflow_run_ids
        running: list[int] = []
        completed: list[int] = []
        for run in runs:
            if run.run_id in tracked:
                if is_workflow_run_running(run):
                    running.append(run.run_id)
                elif run.conclusion:
                    completed.append(run.run_id)
                continue
            if not is_workflow_run_running(run) or context.last_event_timestamp is None:
                continue
            created_at = parse_github_timestamp(run.created_at)
            if created_at is not None and created_at > context.last_event_timestamp:
                running.append(run.run_id)

        self._machine.update_context(running_workflow_run_ids=running)
        if state == "CI_RUNNING" and running:
            self._check_job_failures()

        if state == "READY_FOR_RERUN" and running:
            self._machine.transition("CI_STARTED")
        elif state == "CI_RUNNING" and not running:
            if self._pending_action == "workflow_rerun":
                log_event(LOGGER, "ci_completion_deferred", pr=self.key, reason="rerun_pending")
                return
            if self._machine.transition("CI_COMPLETED"):
                log_event(LOGGER, "ci_completed", pr=self.key, completed_run_ids=completed)

    def _check_job_failures(self) -> bool:
        options = self._options
        username = options.username
        if not options.auto_fix or not username:
            return False
        if self._machine.current_state != "CI_RUNNING":
            return False
        if self._paused_for("job_failure_fix"):
            return False

        context = self._machine.context
        posted = False
        for run_id in sorted(context.running_workflow_run_ids):
            try:
                failed_jobs = [
                    job.name
                    for job in self._gateway.list_workflow_jobs(run_id)
                    if is_job_failed(job) and not is_ignored_check(job.name, options.ignore_jobs)
                ]
                if not failed_jobs:
                    continue
                log_event(
                    LOGGER,
                    "job_failures_detected",
                    level=logging.WARNING,
                    pr=self.key,
                    run_id=run_id,
                    failed_jobs=failed_jobs,
                )
                request = render_job_failure_fix_request(failed_jobs=failed_jobs, log_summary="")
                since = context.last_event_timestamp or self._clock()
                if self._gateway.has_matching_comment_since(
                    self._ref.number, since=since, author=username, body=request
                ):
                    log_event(LOGGER, "job_failure_fix_duplicate", pr=self.key, run_id=run_id)
                    continue
                body = render_job_failure_fix_request(
                    failed_jobs=failed_jobs, log_summary=self._failure_summary([run_id])
                )
                self._gateway.post_issue_comment(self._ref.number, body)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "job_failure_check_failed",
                    level=logging.WARNING,
                    pr=self.key,
                    run_id=run_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            posted = True
            log_event(
                LOGGER,
                "job_failure_fix_posted",
                pr=self.key,
                run_id=run_id,
                failed_jobs=failed_jobs,
            )
        return posted

    def _maybe_nudge(self, *, failed_at: datetime, message: str) -> None:
        options = self._options
        username = options.username
        if not options.resume_on_failure or not username:
            return
        wait_minutes = parse_retry_wait_minutes(message)
        if wait_minutes is None:
            return
        if self._paused_for("nudge"):
            return
        resume_at = failed_at + timedelta(minutes=wait_minutes)
        if self._clock() < resume_at:
            log_event(LOGGER, "nudge_scheduled", pr=self.key, resume_at=resume_at)
            return
        try:
            if self._gateway.has_matching_comment_since(
                self._ref.number, since=failed_at, author=username, body=NUDGE_TEXT
            ):
                return
            self._gateway.post_issue_comment(self._ref.number, NUDGE_TEXT)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "nudge_failed",
                level=logging.ERROR,
                pr=self.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return
        log_event(LOGGER, "nudge_posted", pr=self.key, waited_minutes=wait_minutes)

    def _rerun(self, run_id: int) -> RerunOutcome:
        try:
            self._gateway.rerun_failed_jobs(run_id)
        except RerunUnavailableError as exc:
            self._log_rerun_unavailable(run_id, exc)
            return "unavailable"
        except RerunRejectedError as exc:
            log_event(
                LOGGER,
                "rerun_failed_jobs_rejected",
                pr=self.key,
                run_id=run_id,
                error=str(exc),
            )
        except Exception as exc:  # noqa: BLE001
            self._log_rerun_error(run_id, exc)
            return "failed"
        else:
            return "triggered"

        try:
            self._gateway.rerun_workflow(run_id)
        except RerunRejectedError as exc:
            self._log_rerun_unavailable(run_id, exc)
            return "unavailable"
        except Exception as exc:  # noqa: BLE001
            self._log_rerun_error(run_id, exc)
            return "failed"
        log_event(LOGGER, "workflow_full_rerun_requested", pr=self.key, run_id=run_id)
        return "triggered"

    def _retry_pending_action(self) -> None:
        action = self._pending_action
        state = self._machine.current_state
        if action == "fix_request" and state == "FIX_REQUESTED":
            if not self._paused_for("fix_request"):
                log_event(LOGGER, "pending_action_retry", pr=self.key, action=action)
                self.on_fix_requested(self._machine.context)
        elif action == "workflow_rerun" and state == "CI_RUNNING":
            if not self._paused_for("workflow_rerun"):
                log_event(LOGGER, "pending_action_retry", pr=self.key, action=action)
                self.on_workflow_rerun(self._machine.context)
        else:
            self._pending_action = None

    def _log_rerun_unavailable(self, run_id: int, exc: RerunRejectedError) -> None:
        log_event(
            LOGGER,
            "workflow_rerun_unavailable",
            level=logging.WARNING,
            pr=self.key,
            run_id=run_id,
            error=str(exc),
        )

    def _log_rerun_error(self, run_id: int, exc: Exception) -> None:
        log_event(
            LOGGER,
            "workflow_rerun_failed",
            level=logging.ERROR,
            pr=self.key,
            run_id=run_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    def _failure_summary(self, run_ids: Iterable[int]) -> str:
        ids = tuple(run_ids)
        if not ids:
            return ""
        try:
            return self._gateway.summarize_failure_logs(ids)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "failure_summary_unavailable",
                level=logging.WARNING,
                pr=self.key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ""

    def _paused_for(self, action: str) -> bool:
        scope = self._pause_scope()
        if scope is None:
            return False
        log_event(LOGGER, "automation_paused", pr=self.key, scope=scope, skipped_action=action)
        return True

    def _pause_scope(self) -> PauseScope | None:
        if self._pause_oracle.is_globally_paused():
            return "global"
        if self._pause_oracle.is_entity_paused(self.key):
            return "pull_request"
        return None

    def _status_changed(self, state: CopilotState, message: str, marker: str) -> None:
        if self._on_status_change is not None:
            self._on_status_change(self.key, state, message, marker)
            return
        log_event(LOGGER, "status_changed", pr=self.key, state=state, message=f"{marker} {message}")

    def _snapshot(self) -> StatusSnapshot:
        state = self._machine.current_state
        info = self._machine.state_info()
        return StatusSnapshot(
            key=self.key,
            state=state,
            label=info.label,
            message=info.message,
            marker=info.marker,
            color=info.color,
            legacy_state=legacy_state_for(state),
            session_count=self._machine.context.session_count,
        )


class PrStateMachineManagerFactory:
    """Registry of managers keyed by `owner/repo#number`.

    Managers are created on the first observed event and removed only through
    `cleanup`.
    """

    def __init__(
        self,
        gateway_for: GatewayFactory,
        pause_oracle: PauseOracle | None = None,
        *,
        on_status_change: EntityStatusListener | None = None,
        clock: Clock = _utc_now,
    ) -> None:
        self._gateway_for = gateway_for
        self._pause_oracle = pause_oracle if pause_oracle is not None else NeverPaused()
        self._on_status_change = on_status_change
        self._clock = clock
        self._managers: dict[str, PrStateMachineManager] = {}
        self._lock = threading.Lock()

    def get_or_create_manager(
        self,
        owner: str,
        repo: str,
        number: int,
        options: AutomationOptions | None = None,
    ) -> PrStateMachineManager:
        ref = PullRequestRef(owner=owner, repo=repo, number=number)
        with self._lock:
            manager = self._managers.get(ref.key)
            if manager is None:
                manager = PrStateMachineManager(
                    ref,
                    gateway=self._gateway_for(owner, repo),
                    pause_oracle=self._pause_oracle,
                    options=options,
                    on_status_change=self._on_status_change,
                    clock=self._clock,
                )
                self._managers[ref.key] = manager
                log_event(LOGGER, "manager_created", pr=ref.key)
            return manager

    def get_manager(self, owner: str, repo: str, number: int) -> PrStateMachineManager | None:
        key = PullRequestRef(owner=owner, repo=repo, number=number).key
        with self._lock:
            return self._managers.get(key)

    def handle_observed_event(
        self,
        owner: str,
        repo: str,
        number: int,
        raw_kind: str,
        timestamp: datetime,
        options: AutomationOptions,
        *,
        message: str = "",
    ) -> StatusSnapshot:
        map_raw_event_kind(raw_kind)
        manager = self.get_or_create_manager(owner, repo, number, options)
        return manager.handle_observed_event(raw_kind, timestamp, options, message=message)

    def check_ci_status(
        self,
        owner: str,
        repo: str,
        number: int,
        options: AutomationOptions | None = None,
    ) -> StatusSnapshot | None:
        manager = self.get_manager(owner, repo, number)
        if manager is None:
            return None
        return manager.check_ci_status(options)

    def check_job_failures(
        self,
        owner: str,
        repo: str,
        number: int,
        options: AutomationOptions | None = None,
    ) -> bool:
        manager = self.get_manager(owner, repo, number)
        if manager is None:
            return False
        return manager.check_job_failures(options)

    def cleanup(self, owner: str, repo: str, number: int) -> bool:
        key = PullRequestRef(owner=owner, repo=repo, number=number).key
        with self._lock:
            removed = self._managers.pop(key, None)
        if removed is not None:
            log_event(LOGGER, "manager_removed", pr=key)
        return removed is not None

    def active_keys(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._managers))
