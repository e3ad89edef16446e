from __future__ import annotations

from collections import Counter, OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import json
import logging
import re
import threading
from typing import cast
from urllib.parse import urlencode

from copilot_monitor.collaborators import CiGateway, RerunRejectedError, RerunUnavailableError
from copilot_monitor.models import (
    AgentEvent,
    CheckRunSnapshot,
    CommitStatusSnapshot,
    IssueComment,
    PullRequestSnapshot,
    WorkflowJobSnapshot,
    WorkflowRunSnapshot,
    as_utc,
    parse_github_timestamp,
)
from copilot_monitor.observability import log_event
from copilot_monitor.shell import DEFAULT_TIMEOUT_SECONDS, run
from copilot_monitor.workflow_checks import is_job_failed


LOGGER = logging.getLogger("copilot_monitor.github_gateway")
RERUN_MAX_AGE = timedelta(days=30)
_PAGE_SIZE = 100
_ERROR_LINE_PATTERN = re.compile(r"error|failed|assert|exception|traceback", re.IGNORECASE)
_MAX_ERROR_LINES_PER_JOB = 8
_MAX_SUMMARY_CHARS = 4000
_LOG_TAIL_LINES = 300
_DEFAULT_CACHE_MAX_ENTRIES = 1024


class GitHubPollingError(RuntimeError):
    """Recoverable GitHub polling failure; caller should retry next poll."""


@dataclass(frozen=True)
class GitHubGateway(CiGateway):
    owner: str
    name: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    cache_max_entries: int = _DEFAULT_CACHE_MAX_ENTRIES
    # path -> (etag, payload), least recently used first
    _get_cache_by_path: OrderedDict[str, tuple[str, object]] = field(
        default_factory=OrderedDict,
        init=False,
        repr=False,
        compare=False,
    )
    _cache_lock: threading.Lock = field(
        default_factory=threading.Lock,
        init=False,
        repr=False,
        compare=False,
    )

    @property
    def repo_full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def get_authenticated_login(self) -> str:
        payload_obj = _as_object_dict(self._api_json("GET", "/user"))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for user")
        login = _as_string(payload_obj.get("login")).strip()
        if not login:
            raise RuntimeError("Unexpected GitHub response: missing login for authenticated user")
        return login

    def get_pull_request(self, pr_number: int) -> PullRequestSnapshot:
        path = f"/repos/{self.owner}/{self.name}/pulls/{pr_number}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for pull request")

        head = _as_object_dict(payload_obj.get("head"))
        if head is None:
            raise RuntimeError("Unexpected GitHub response: missing pull request head")

        snapshot = PullRequestSnapshot(
            number=_as_int(payload_obj.get("number"), field="number"),
            title=_as_string(payload_obj.get("title")),
            html_url=_as_string(payload_obj.get("html_url")),
            head_sha=_as_string(head.get("sha")),
            state=_as_string(payload_obj.get("state")).strip().lower(),
            merged=payload_obj.get("merged") is True,
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            pr_number=snapshot.number,
        )
        return snapshot

    def list_workflow_runs(self, head_sha: str) -> tuple[WorkflowRunSnapshot, ...]:
        runs: list[WorkflowRunSnapshot] = []
        page = 1
        while True:
            query = urlencode({"head_sha": head_sha, "per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/actions/runs?{query}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for workflow runs")
            runs_payload = payload_obj.get("workflow_runs")
            if not isinstance(runs_payload, list):
                raise RuntimeError("Unexpected GitHub response: expected workflow_runs list")

            for item in runs_payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                runs.append(_workflow_run_from_payload(item_obj))
            if len(runs_payload) < _PAGE_SIZE:
                break
            page += 1

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_runs",
            head_sha=head_sha,
            count=len(runs),
        )
        return tuple(sorted(runs, key=lambda run: run.run_id))

    def list_check_runs(self, head_sha: str) -> tuple[CheckRunSnapshot, ...]:
        checks: list[CheckRunSnapshot] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/check-runs?{query}"
            payload_obj = _as_object_dict(self._api_json("GET", path))
            if payload_obj is None:
                raise RuntimeError("Unexpected GitHub response: expected object for check runs")
            checks_payload = payload_obj.get("check_runs")
            if not isinstance(checks_payload, list):
                raise RuntimeError("Unexpected GitHub response: expected check_runs list")

            for item in checks_payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                checks.append(
                    CheckRunSnapshot(
                        check_id=_as_int(item_obj.get("id"), field="id"),
                        name=_as_string(item_obj.get("name")),
                        status=_as_string(item_obj.get("status")).strip().lower(),
                        conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                        started_at=_as_optional_str(item_obj.get("started_at")),
                        completed_at=_as_optional_str(item_obj.get("completed_at")),
                    )
                )
            if len(checks_payload) < _PAGE_SIZE:
                break
            page += 1

        log_event(
            LOGGER,
            "github_read",
            endpoint="check_runs",
            head_sha=head_sha,
            count=len(checks),
        )
        return tuple(checks)

    def list_commit_statuses(self, head_sha: str) -> tuple[CommitStatusSnapshot, ...]:
        statuses: list[CommitStatusSnapshot] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/commits/{head_sha}/statuses?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of commit statuses")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                statuses.append(
                    CommitStatusSnapshot(
                        context=_as_string(item_obj.get("context")),
                        state=_as_string(item_obj.get("state")).strip().lower(),
                        updated_at=_as_string(item_obj.get("updated_at")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1

        log_event(
            LOGGER,
            "github_read",
            endpoint="commit_statuses",
            head_sha=head_sha,
            count=len(statuses),
        )
        return tuple(statuses)

    def list_workflow_jobs(self, run_id: int) -> tuple[WorkflowJobSnapshot, ...]:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/jobs?per_page={_PAGE_SIZE}"
        payload = self._api_json("GET", path)
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for workflow jobs")
        jobs_payload = payload_obj.get("jobs")
        if not isinstance(jobs_payload, list):
            raise RuntimeError("Unexpected GitHub response: expected jobs list")

        jobs: list[WorkflowJobSnapshot] = []
        for item in jobs_payload:
            item_obj = _as_object_dict(item)
            if item_obj is None:
                continue
            jobs.append(
                WorkflowJobSnapshot(
                    job_id=_as_int(item_obj.get("id"), field="id"),
                    name=_as_string(item_obj.get("name")),
                    status=_as_string(item_obj.get("status")).strip().lower(),
                    conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
                    html_url=_as_string(item_obj.get("html_url")),
                )
            )

        log_event(
            LOGGER,
            "github_read",
            endpoint="workflow_jobs",
            run_id=run_id,
            count=len(jobs),
        )
        return tuple(sorted(jobs, key=lambda job: job.job_id))

    def list_issue_comments(
        self,
        issue_number: int,
        *,
        since: str | None = None,
    ) -> list[IssueComment]:
        comments: list[IssueComment] = []
        page = 1
        while True:
            query_items: dict[str, object] = {"per_page": _PAGE_SIZE, "page": page}
            if since is not None:
                query_items["since"] = since
            path = (
                f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments?"
                f"{urlencode(query_items)}"
            )
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of issue comments")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                user_obj = _as_object_dict(item_obj.get("user"))
                comments.append(
                    IssueComment(
                        comment_id=_as_int(item_obj.get("id"), field="id"),
                        body=_as_string(item_obj.get("body")),
                        user_login=_as_string(user_obj.get("login") if user_obj else None),
                        created_at=_as_string(item_obj.get("created_at")),
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="issue_comments",
            issue_number=issue_number,
            since=since,
            count=len(comments),
        )
        return comments

    def has_matching_comment_since(
        self, issue_number: int, *, since: datetime, author: str, body: str
    ) -> bool:
        since_utc = as_utc(since)
        expected_body = body.strip()
        expected_author = author.strip().lower()
        comments = self.list_issue_comments(
            issue_number, since=since_utc.strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        for comment in comments:
            if not _body_matches(comment.body, expected_body):
                continue
            if comment.user_login.strip().lower() != expected_author:
                continue
            created = parse_github_timestamp(comment.created_at)
            if created is not None and created >= since_utc:
                return True
        return False

    def post_issue_comment(self, issue_number: int, body: str) -> None:
        path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/comments"
        try:
            self._api_json("POST", path, payload={"body": body})
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_issue_comment_failed",
                level=logging.ERROR,
                repo_full_name=self.repo_full_name,
                issue_number=issue_number,
                error_type=type(exc).__name__,
            )
            raise
        log_event(LOGGER, "github_issue_comment_posted", issue_number=issue_number)

    def list_agent_events(
        self, issue_number: int, event_names: Iterable[str]
    ) -> tuple[AgentEvent, ...]:
        wanted = frozenset(event_names)
        events: list[AgentEvent] = []
        page = 1
        while True:
            query = urlencode({"per_page": _PAGE_SIZE, "page": page})
            path = f"/repos/{self.owner}/{self.name}/issues/{issue_number}/events?{query}"
            payload = self._api_json("GET", path)
            if not isinstance(payload, list):
                raise RuntimeError("Unexpected GitHub response: expected list of issue events")

            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                event_name = _as_string(item_obj.get("event"))
                if event_name not in wanted:
                    continue
                raw_payload = _as_object_dict(item_obj.get("raw_payload")) or {}
                message = _as_string(raw_payload.get("message") or item_obj.get("message"))
                events.append(
                    AgentEvent(
                        event=event_name,
                        created_at=_as_string(item_obj.get("created_at")),
                        message=message,
                    )
                )
            if len(payload) < _PAGE_SIZE:
                break
            page += 1

        log_event(
            LOGGER,
            "github_read",
            endpoint="agent_events",
            issue_number=issue_number,
            count=len(events),
        )
        return tuple(events)

    def rerun_failed_jobs(self, run_id: int) -> None:
        self._ensure_rerunnable(run_id)
        self._request_rerun(
            run_id,
            f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/rerun-failed-jobs",
            full_rerun=False,
        )

    def rerun_workflow(self, run_id: int) -> None:
        self._ensure_rerunnable(run_id)
        self._request_rerun(
            run_id, f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}/rerun", full_rerun=True
        )

    def summarize_failure_logs(self, run_ids: Iterable[int]) -> str:
        sections: list[str] = []
        for run_id in sorted(set(run_ids)):
            for job_name, log_tail in self.get_failed_run_log_tails(run_id).items():
                if log_tail is None:
                    sections.append(f"**{job_name}**: logs unavailable")
                    continue
                error_lines = _error_lines(log_tail, limit=_MAX_ERROR_LINES_PER_JOB)
                if not error_lines:
                    continue
                sections.append(f"**{job_name}**\n```\n" + "\n".join(error_lines) + "\n```")
        if not sections:
            return ""
        summary = "Failure details:\n\n" + "\n\n".join(sections)
        if len(summary) > _MAX_SUMMARY_CHARS:
            summary = summary[:_MAX_SUMMARY_CHARS].rstrip() + "\n..."
        return summary

    def get_failed_run_log_tails(
        self,
        run_id: int,
        tail_lines_per_action: int = _LOG_TAIL_LINES,
    ) -> dict[str, str | None]:
        if tail_lines_per_action < 1:
            raise ValueError("tail_lines_per_action must be >= 1")

        failed_jobs = [job for job in self.list_workflow_jobs(run_id) if is_job_failed(job)]
        if not failed_jobs:
            return {}

        base_names = [_normalized_action_name(job.name) for job in failed_jobs]
        name_counts = Counter(base_names)
        log_tails: dict[str, str | None] = {}
        for job, base_name in zip(failed_jobs, base_names, strict=True):
            action_name = (
                base_name if name_counts[base_name] == 1 else f"{base_name} [job {job.job_id}]"
            )
            path = f"/repos/{self.owner}/{self.name}/actions/jobs/{job.job_id}/logs"
            try:
                raw_log = self._api_text("GET", path)
                log_tails[action_name] = _tail_lines(raw_log, max_lines=tail_lines_per_action)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "actions_failure_logs_unavailable",
                    level=logging.WARNING,
                    run_id=run_id,
                    job_id=job.job_id,
                    action_name=action_name,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                log_tails[action_name] = None

        return log_tails

    def _ensure_rerunnable(self, run_id: int, *, now: datetime | None = None) -> None:
        path = f"/repos/{self.owner}/{self.name}/actions/runs/{run_id}"
        payload_obj = _as_object_dict(self._api_json("GET", path))
        if payload_obj is None:
            raise RuntimeError("Unexpected GitHub response: expected object for workflow run")
        created_at = parse_github_timestamp(_as_optional_str(payload_obj.get("created_at")))
        current = as_utc(now) if now is not None else datetime.now(timezone.utc)
        if created_at is not None and current - created_at > RERUN_MAX_AGE:
            raise RerunUnavailableError(
                f"Workflow run {run_id} is older than {RERUN_MAX_AGE.days} days and cannot be rerun"
            )

    def _request_rerun(self, run_id: int, path: str, *, full_rerun: bool) -> None:
        status_code, body = self._api_post_status(path)
        if 200 <= status_code < 300:
            log_event(LOGGER, "github_rerun_requested", run_id=run_id, path=path)
            return
        message = _error_message(body)
        log_event(
            LOGGER,
            "github_rerun_rejected",
            level=logging.WARNING,
            run_id=run_id,
            path=path,
            status_code=status_code,
            error=message,
        )
        # 403 from rerun-failed-jobs means "cannot be retried"; only the full re-run is final.
        if status_code == 403 and full_rerun:
            raise RerunUnavailableError(
                f"Workflow run {run_id} cannot be rerun; workflow file may be broken "
                f"or the token lacks the 'workflow' scope: {message}"
            )
        raise RerunRejectedError(
            f"GitHub rejected rerun of workflow run {run_id} with status {status_code}: {message}"
        )

    def _api_post_status(self, path: str) -> tuple[int, str]:
        cmd = ["gh", "api", "--method", "POST", "--include", path]
        raw = run(cmd, check=False, timeout_seconds=self.timeout_seconds)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except RuntimeError as exc:
            raise RerunRejectedError(f"GitHub rerun request failed for path {path}: {exc}") from exc
        return status_code, body

    def _api_text(self, method: str, path: str) -> str:
        method_upper = method.upper()
        if method_upper != "GET":
            raise ValueError("_api_text currently only supports GET")
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        raw = run(cmd, check=False, timeout_seconds=self.timeout_seconds)
        try:
            status_code, _headers, body = _parse_http_response(raw)
            if status_code < 200 or status_code >= 300:
                message = body.strip() or "<empty>"
                raise RuntimeError(
                    f"GitHub API text request failed with status {status_code}: {message}"
                )
            return body
        except Exception as exc:
            log_event(
                LOGGER,
                "github_poll_get_failed",
                level=logging.WARNING,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
                raw_preview=_preview_for_log(raw),
            )
            raise GitHubPollingError(f"GitHub polling GET failed for path {path}: {exc}") from exc

    def _cached_get(self, path: str) -> tuple[str, object] | None:
        with self._cache_lock:
            cached = self._get_cache_by_path.get(path)
            if cached is not None:
                self._get_cache_by_path.move_to_end(path)
            return cached

    def _remember_get(self, path: str, etag: str, payload: object) -> None:
        with self._cache_lock:
            self._get_cache_by_path[path] = (etag, payload)
            self._get_cache_by_path.move_to_end(path)
            while len(self._get_cache_by_path) > self.cache_max_entries:
                self._get_cache_by_path.popitem(last=False)

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        if method_upper == "GET":
            cmd = ["gh", "api", "--method", method_upper]
            cached = self._cached_get(path)
            if cached is not None:
                cmd.extend(["--header", f"If-None-Match: {cached[0]}"])
            cmd.extend(["--include", path])

            raw = run(cmd, check=False, timeout_seconds=self.timeout_seconds)
            try:
                status_code, headers, body = _parse_http_response(raw)

                if status_code == 304:
                    if cached is None:
                        raise RuntimeError(f"GitHub returned 304 for uncached path: {path}")
                    return cached[1]

                if status_code < 200 or status_code >= 300:
                    message = body.strip() or "<empty>"
                    raise RuntimeError(
                        f"GitHub API request failed with status {status_code}: {message}"
                    )

                payload_obj = json.loads(body)
                etag = headers.get("etag")
                if etag:
                    self._remember_get(path, etag, payload_obj)
                return payload_obj
            except Exception as exc:
                log_event(
                    LOGGER,
                    "github_poll_get_failed",
                    level=logging.WARNING,
                    path=path,
                    error_type=type(exc).__name__,
                    error=str(exc),
                    raw_preview=_preview_for_log(raw),
                )
                raise GitHubPollingError(
                    f"GitHub polling GET failed for path {path}: {exc}"
                ) from exc

        cmd = ["gh", "api", "--method", method_upper, path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, timeout_seconds=self.timeout_seconds)
        if not raw.strip():
            return None
        return json.loads(raw)


def _workflow_run_from_payload(item_obj: dict[str, object]) -> WorkflowRunSnapshot:
    return WorkflowRunSnapshot(
        run_id=_as_int(item_obj.get("id"), field="id"),
        name=_as_string(item_obj.get("name")),
        status=_as_string(item_obj.get("status")).strip().lower(),
        conclusion=_normalize_optional_lower_str(item_obj.get("conclusion")),
        html_url=_as_string(item_obj.get("html_url")),
        head_sha=_as_string(item_obj.get("head_sha")),
        created_at=_as_string(item_obj.get("created_at")),
        updated_at=_as_string(item_obj.get("updated_at")),
    )


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise RuntimeError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise RuntimeError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _body_matches(comment_body: str, expected_body: str) -> bool:
    body = comment_body.strip()
    return body == expected_body or body.startswith(f"{expected_body}\n\n")


def _error_message(body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        return body.strip() or "<empty>"
    payload_obj = _as_object_dict(payload)
    if payload_obj is not None and isinstance(payload_obj.get("message"), str):
        return cast(str, payload_obj["message"])
    return body.strip() or "<empty>"


def _error_lines(log_text: str, *, limit: int) -> list[str]:
    picked: list[str] = []
    for line in log_text.splitlines():
        stripped = line.strip()
        if not stripped or not _ERROR_LINE_PATTERN.search(stripped):
            continue
        picked.append(stripped)
        if len(picked) >= limit:
            break
    return picked


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _normalize_optional_lower_str(value: object) -> str | None:
    raw = _as_optional_str(value)
    if raw is None:
        return None
    normalized = raw.strip().lower()
    return normalized or None


def _normalized_action_name(raw_name: str) -> str:
    normalized = raw_name.strip()
    return normalized or "unnamed-action"


def _tail_lines(raw_text: str, *, max_lines: int) -> str:
    if max_lines < 1:
        raise ValueError("max_lines must be >= 1")
    lines = raw_text.splitlines()
    if not lines:
        return "<empty>"
    if len(lines) <= max_lines:
        return "\n".join(lines)
    return "\n".join(lines[-max_lines:])


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise RuntimeError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise RuntimeError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise RuntimeError(f"Unexpected GitHub response type for {field}")
