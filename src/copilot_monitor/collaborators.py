from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime

from copilot_monitor.models import (
    CheckRunSnapshot,
    CommitStatusSnapshot,
    PullRequestSnapshot,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
)


class RerunRejectedError(RuntimeError):
    """GitHub refused this particular re-run request; another endpoint may still work."""


class RerunUnavailableError(RerunRejectedError):
    """The run cannot be re-run at all, e.g. it is too old or the full re-run is forbidden."""


class CiGateway(ABC):
    """Remote CI/pull-request operations for a single repository."""

    owner: str
    name: str

    @abstractmethod
    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        """Fetch the pull request, including its current head commit."""

    @abstractmethod
    def list_workflow_runs(self, head_sha: str) -> tuple[WorkflowRunSnapshot, ...]:
        """All workflow runs recorded for a commit."""

    @abstractmethod
    def list_check_runs(self, head_sha: str) -> tuple[CheckRunSnapshot, ...]:
        """Check runs attached to a commit."""

    @abstractmethod
    def list_commit_statuses(self, head_sha: str) -> tuple[CommitStatusSnapshot, ...]:
        """Legacy commit statuses attached to a commit."""

    @abstractmethod
    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJobSnapshot, ...]:
        """Jobs belonging to one workflow run."""

    @abstractmethod
    def post_issue_comment(self, issue_number: int, body: str) -> None:
        """Post a conversation comment on the pull request."""

    @abstractmethod
    def rerun_failed_jobs(self, run_id: int) -> None:
        """Re-run only the failed jobs of a run; raises RerunRejectedError when refused."""

    @abstractmethod
    def rerun_workflow(self, run_id: int) -> None:
        """Re-run every job of a run; raises RerunRejectedError when refused."""

    @abstractmethod
    def has_matching_comment_since(
        self, issue_number: int, *, since: datetime, author: str, body: str
    ) -> bool:
        """True when `author` posted `body` at or after `since`.

        A comment also matches when `body` is followed by a blank line and a log summary,
        so a changing summary never produces a second copy of the same request.
        """

    @abstractmethod
    def summarize_failure_logs(self, run_ids: Iterable[int]) -> str:
        """Short, pre-formatted diagnostic block for the given failed runs (may be empty)."""


class PauseOracle(ABC):
    @abstractmethod
    def is_globally_paused(self) -> bool:
        """True when every automated action is suspended."""

    @abstractmethod
    def is_entity_paused(self, entity_key: str) -> bool:
        """True when automation is suspended for one `owner/repo#number`."""


class NeverPaused(PauseOracle):
    def is_globally_paused(self) -> bool:
        return False

    def is_entity_paused(self, entity_key: str) -> bool:
        _ = entity_key
        return False
