from __future__ import annotations

from collections.abc import Iterable
import re

from copilot_monitor.models import CheckCategory


NUDGE_TEXT = "@copilot please resume working on this task"
JOB_FAILURE_OPENING = "@copilot fix these CI failures"

_FIX_OPENINGS: dict[CheckCategory, str] = {
    "tests": "@copilot there are failing tests, please fix them",
    "build": "@copilot the build is failing, please fix it",
    "lint": "@copilot there are linting/formatting issues, please fix them",
    "general": "@copilot the checks are failing, please fix them",
}
_CATEGORY_KEYWORDS: tuple[tuple[CheckCategory, tuple[str, ...]], ...] = (
    ("tests", ("test", "spec")),
    ("build", ("build", "compile")),
    ("lint", ("lint", "format")),
)
_RETRY_WAIT_PATTERN = re.compile(r"in (\d+) minute", re.IGNORECASE)


def classify_checks(names: Iterable[str]) -> CheckCategory:
    joined = " ".join(name.lower() for name in names)
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in joined for keyword in keywords):
            return category
    return "general"


def fix_request_opening(category: CheckCategory) -> str:
    return _FIX_OPENINGS[category]


def render_fix_request(*, failed_checks: Iterable[str], log_summary: str) -> str:
    checks = sorted(failed_checks)
    opening = fix_request_opening(classify_checks(checks))
    return _with_log_summary(f"{opening}: {', '.join(checks)}", log_summary)


def render_job_failure_fix_request(*, failed_jobs: Iterable[str], log_summary: str) -> str:
    job_lines = "\n".join(f"- {name}" for name in failed_jobs)
    body = JOB_FAILURE_OPENING
    if job_lines:
        body += f"\n\nFailed jobs:\n{job_lines}"
    return _with_log_summary(body, log_summary)


def parse_retry_wait_minutes(message: str) -> int | None:
    """Minutes the agent asked us to wait, e.g. "... try again in 15 minutes"."""
    match = _RETRY_WAIT_PATTERN.search(message)
    if match is None:
        return None
    return int(match.group(1))


def _with_log_summary(body: str, log_summary: str) -> str:
    summary = log_summary.strip()
    if not summary:
        return body
    return f"{body}\n\n{summary}"
