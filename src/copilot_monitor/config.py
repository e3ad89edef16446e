from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import tomllib
from typing import cast

from copilot_monitor.models import EntityKeyError, PullRequestRef, parse_entity_key
from copilot_monitor.workflow_checks import DEFAULT_IGNORE_JOBS


DEFAULT_STATE_DIR = "~/.local/share/copilot-monitor"
DEFAULT_AGENT_EVENT_NAMES: tuple[str, ...] = (
    "copilot_work_started",
    "copilot_work_finished",
    "copilot_work_finished_failure",
)


@dataclass(frozen=True)
class AutomationOptions:
    auto_fix: bool = False
    auto_approve: bool = False
    username: str | None = None
    max_sessions: int = 50
    ignore_jobs: tuple[str, ...] = DEFAULT_IGNORE_JOBS
    resume_on_failure: bool = False


@dataclass(frozen=True)
class RuntimeConfig:
    state_dir: Path
    poll_interval_seconds: int = 60
    worker_count: int = 4
    command_timeout_seconds: int = 60

    @property
    def pause_state_path(self) -> Path:
        return self.state_dir / "pause-state.json"


@dataclass(frozen=True)
class AutomationConfig:
    auto_fix: bool = False
    auto_approve: bool = False
    resume_on_failure: bool = False
    username: str | None = None
    max_sessions: int = 50
    ignore_jobs: tuple[str, ...] = DEFAULT_IGNORE_JOBS
    agent_event_names: tuple[str, ...] = DEFAULT_AGENT_EVENT_NAMES

    def to_options(self, *, username: str | None = None) -> AutomationOptions:
        return AutomationOptions(
            auto_fix=self.auto_fix,
            auto_approve=self.auto_approve,
            username=username if username is not None else self.username,
            max_sessions=self.max_sessions,
            ignore_jobs=self.ignore_jobs,
            resume_on_failure=self.resume_on_failure,
        )


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    automation: AutomationConfig
    pull_requests: tuple[PullRequestRef, ...]


class ConfigError(ValueError):
    pass


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    automation_data = _optional_table(data, "automation") or {}
    watch_data = _optional_table(data, "watch") or {}

    runtime = RuntimeConfig(
        state_dir=Path(_str_with_default(runtime_data, "state_dir", DEFAULT_STATE_DIR)).expanduser(),
        poll_interval_seconds=_int_with_default(runtime_data, "poll_interval_seconds", 60),
        worker_count=_int_with_default(runtime_data, "worker_count", 4),
        command_timeout_seconds=_int_with_default(runtime_data, "command_timeout_seconds", 60),
    )
    if runtime.poll_interval_seconds < 5:
        raise ConfigError("runtime.poll_interval_seconds must be >= 5")
    if runtime.worker_count < 1:
        raise ConfigError("runtime.worker_count must be >= 1")
    if runtime.command_timeout_seconds < 1:
        raise ConfigError("runtime.command_timeout_seconds must be >= 1")

    automation = AutomationConfig(
        auto_fix=_bool_with_default(automation_data, "auto_fix", False),
        auto_approve=_bool_with_default(automation_data, "auto_approve", False),
        resume_on_failure=_bool_with_default(automation_data, "resume_on_failure", False),
        username=_optional_login(automation_data, "username"),
        max_sessions=_int_with_default(automation_data, "max_sessions", 50),
        ignore_jobs=_tuple_of_str_with_default(automation_data, "ignore_jobs", DEFAULT_IGNORE_JOBS),
        agent_event_names=_tuple_of_str_with_default(
            automation_data, "agent_event_names", DEFAULT_AGENT_EVENT_NAMES
        ),
    )
    if automation.max_sessions < 1:
        raise ConfigError("automation.max_sessions must be >= 1")
    if len(automation.agent_event_names) != 3:
        raise ConfigError(
            "automation.agent_event_names must list the started, finished and failed event names"
        )

    return AppConfig(
        runtime=runtime,
        automation=automation,
        pull_requests=_pull_request_refs(watch_data, "pull_requests"),
    )


def _pull_request_refs(data: dict[str, object], key: str) -> tuple[PullRequestRef, ...]:
    refs: list[PullRequestRef] = []
    for raw in _tuple_of_str_with_default(data, key, ()):
        try:
            ref = parse_entity_key(raw)
        except EntityKeyError as exc:
            raise ConfigError(f"watch.{key}: {exc}") from exc
        if ref not in refs:
            refs.append(ref)
    return tuple(refs)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_login(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value.strip()


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data[key]
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str):
            raise ConfigError(f"{key} must be a list of strings")
        out.append(item)
    return tuple(out)
