from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import re
from typing import Literal


RawEventKind = Literal["work_started", "work_finished", "work_failed", "ci_started", "ci_completed"]
CheckCategory = Literal["tests", "build", "lint", "general"]

_ENTITY_KEY_PATTERN = re.compile(r"^(?P<owner>[^/\s#]+)/(?P<repo>[^/\s#]+)#(?P<number>\d+)$")


class EntityKeyError(ValueError):
    """Raised when an `owner/repo#number` key cannot be parsed."""


@dataclass(frozen=True)
class PullRequestRef:
    owner: str
    repo: str
    number: int

    @property
    def key(self) -> str:
        return entity_key(owner=self.owner, repo=self.repo, number=self.number)

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


@dataclass(frozen=True)
class PullRequestSnapshot:
    number: int
    title: str
    html_url: str
    head_sha: str
    state: str
    merged: bool


@dataclass(frozen=True)
class WorkflowRunSnapshot:
    run_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str
    head_sha: str
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class WorkflowJobSnapshot:
    job_id: int
    name: str
    status: str
    conclusion: str | None
    html_url: str


@dataclass(frozen=True)
class CheckRunSnapshot:
    check_id: int
    name: str
    status: str
    conclusion: str | None
    started_at: str | None
    completed_at: str | None


@dataclass(frozen=True)
class CommitStatusSnapshot:
    context: str
    state: str
    updated_at: str


@dataclass(frozen=True)
class IssueComment:
    comment_id: int
    body: str
    user_login: str
    created_at: str


@dataclass(frozen=True)
class AgentEvent:
    event: str
    created_at: str
    message: str


def entity_key(*, owner: str, repo: str, number: int) -> str:
    return f"{owner}/{repo}#{number}"


def parse_entity_key(key: str) -> PullRequestRef:
    match = _ENTITY_KEY_PATTERN.fullmatch(key.strip())
    if match is None:
        raise EntityKeyError(f"Invalid pull request key {key!r}; expected owner/repo#number")
    number = int(match.group("number"))
    if number < 1:
        raise EntityKeyError(f"Invalid pull request number in {key!r}")
    return PullRequestRef(owner=match.group("owner"), repo=match.group("repo"), number=number)


def parse_github_timestamp(value: str | None) -> datetime | None:
    """Parse GitHub's ISO-8601 timestamps (`2024-01-01T00:00:00Z`); None when absent or invalid."""
    if not value:
        return None
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    return as_utc(parsed)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
