from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
import logging

from copilot_monitor.collaborators import CiGateway
from copilot_monitor.models import (
    CheckRunSnapshot,
    CommitStatusSnapshot,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
    parse_github_timestamp,
)
from copilot_monitor.observability import log_event


LOGGER = logging.getLogger("copilot_monitor.workflow_checks")

FAILED_CONCLUSIONS = frozenset({"action_required", "failure"})
PENDING_STATUSES = frozenset({"action_required", "waiting", "queued", "pending"})
SUCCESS_CONCLUSIONS = frozenset({"success", "neutral", "skipped"})
RUNNING_STATUSES = frozenset({"in_progress", "queued", "waiting", "pending"})
FAILED_STATUS_STATES = frozenset({"failure", "error"})
FAILED_JOB_CONCLUSIONS = frozenset({"failure", "error", "timed_out"})
DEFAULT_IGNORE_JOBS: tuple[str, ...] = ("danger",)


@dataclass(frozen=True)
class WorkflowCheckResult:
    failed_checks: tuple[str, ...]
    failed_workflow_run_ids: frozenset[int]

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_checks)


def is_workflow_run_failed(run: WorkflowRunSnapshot) -> bool:
    """A run that needs attention: it failed, or it is parked waiting/queued/pending."""
    status = (run.status or "").lower()
    conclusion = (run.conclusion or "").lower()
    return conclusion in FAILED_CONCLUSIONS or status in PENDING_STATUSES


def is_workflow_run_running(run: WorkflowRunSnapshot) -> bool:
    return (run.status or "").lower() in RUNNING_STATUSES


def is_job_failed(job: WorkflowJobSnapshot) -> bool:
    return (job.conclusion or "").lower() in FAILED_JOB_CONCLUSIONS


def is_ignored_check(name: str, ignore_jobs: Iterable[str]) -> bool:
    lowered = name.lower()
    return any(ignored and ignored.lower() in lowered for ignored in ignore_jobs)


def filter_ignored_checks(names: Iterable[str], ignore_jobs: Iterable[str]) -> tuple[str, ...]:
    ignored = tuple(ignore_jobs)
    return tuple(name for name in names if not is_ignored_check(name, ignored))


def collect_failed_checks(
    gateway: CiGateway,
    *,
    head_sha: str,
    since: datetime | None,
    ignore_jobs: Iterable[str] = DEFAULT_IGNORE_JOBS,
) -> WorkflowCheckResult:
    """Failed check names for a commit, considered only when some workflow run is failing.

    Check runs and commit statuses are gated on at least one failed workflow run so that
    stale failures from workflows that are not currently failing never surface.
    """
    failed_run_ids = frozenset(
        run.run_id for run in gateway.list_workflow_runs(head_sha) if is_workflow_run_failed(run)
    )
    if not failed_run_ids:
        log_event(
            LOGGER,
            "failed_checks_collected",
            head_sha=head_sha,
            failed_run_count=0,
            failed_check_count=0,
        )
        return WorkflowCheckResult(failed_checks=(), failed_workflow_run_ids=frozenset())

    names: list[str] = []
    for check in gateway.list_check_runs(head_sha):
        if _is_failed_check_run(check, since=since):
            names.append(check.name or "Unknown check")
    for status in gateway.list_commit_statuses(head_sha):
        if _is_failed_commit_status(status, since=since):
            names.append(status.context or "Unknown status")

    ignore = tuple(ignore_jobs)
    filtered = filter_ignored_checks(names, ignore)
    log_event(
        LOGGER,
        "failed_checks_collected",
        head_sha=head_sha,
        failed_run_count=len(failed_run_ids),
        failed_check_count=len(filtered),
        ignored_check_count=len(names) - len(filtered),
        failed_checks=filtered,
    )
    return WorkflowCheckResult(failed_checks=filtered, failed_workflow_run_ids=failed_run_ids)


def _is_failed_check_run(check: CheckRunSnapshot, *, since: datetime | None) -> bool:
    conclusion = (check.conclusion or "").lower()
    if not conclusion or conclusion in SUCCESS_CONCLUSIONS:
        return False
    if since is None:
        return True
    completed = parse_github_timestamp(check.completed_at or check.started_at)
    return completed is not None and completed > since


def _is_failed_commit_status(status: CommitStatusSnapshot, *, since: datetime | None) -> bool:
    if (status.state or "").lower() not in FAILED_STATUS_STATES:
        return False
    if since is None:
        return True
    updated = parse_github_timestamp(status.updated_at)
    return updated is not None and updated > since
