from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
import threading

from copilot_monitor.collaborators import PauseOracle
from copilot_monitor.models import parse_entity_key
from copilot_monitor.observability import log_event


LOGGER = logging.getLogger("copilot_monitor.pause_store")


@dataclass(frozen=True)
class PauseState:
    globally_paused: bool = False
    paused_pull_requests: tuple[str, ...] = ()
    paused_at: str | None = None
    resumed_at: str | None = None

    def to_json_dict(self) -> dict[str, object]:
        return {
            "globally_paused": self.globally_paused,
            "paused_pull_requests": list(self.paused_pull_requests),
            "paused_at": self.paused_at,
            "resumed_at": self.resumed_at,
        }


class PauseStore(PauseOracle):
    """Pause flags kept in a small JSON file shared by the monitor and the CLI.

    Every query re-reads the file, so a `pause` issued from another process takes
    effect on the monitor's next cycle.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def status(self) -> PauseState:
        with self._lock:
            return self._load()

    def is_globally_paused(self) -> bool:
        return self.status().globally_paused

    def is_entity_paused(self, entity_key: str) -> bool:
        return entity_key in self.status().paused_pull_requests

    def pause_globally(self) -> PauseState:
        with self._lock:
            state = self._load()
            updated = PauseState(
                globally_paused=True,
                paused_pull_requests=state.paused_pull_requests,
                paused_at=_utc_now_iso8601(),
                resumed_at=state.resumed_at,
            )
            self._save(updated)
        log_event(LOGGER, "pause_requested", scope="global")
        return updated

    def resume_globally(self) -> PauseState:
        with self._lock:
            state = self._load()
            updated = PauseState(
                globally_paused=False,
                paused_pull_requests=state.paused_pull_requests,
                paused_at=state.paused_at,
                resumed_at=_utc_now_iso8601(),
            )
            self._save(updated)
        log_event(LOGGER, "resume_requested", scope="global")
        return updated

    def pause_pull_request(self, entity_key: str) -> PauseState:
        key = parse_entity_key(entity_key).key
        with self._lock:
            state = self._load()
            paused = state.paused_pull_requests
            if key not in paused:
                paused = (*paused, key)
            updated = PauseState(
                globally_paused=state.globally_paused,
                paused_pull_requests=paused,
                paused_at=_utc_now_iso8601(),
                resumed_at=state.resumed_at,
            )
            self._save(updated)
        log_event(LOGGER, "pause_requested", scope="pull_request", pr=key)
        return updated

    def resume_pull_request(self, entity_key: str) -> PauseState:
        key = parse_entity_key(entity_key).key
        with self._lock:
            state = self._load()
            updated = PauseState(
                globally_paused=state.globally_paused,
                paused_pull_requests=tuple(item for item in state.paused_pull_requests if item != key),
                paused_at=state.paused_at,
                resumed_at=_utc_now_iso8601(),
            )
            self._save(updated)
        log_event(LOGGER, "resume_requested", scope="pull_request", pr=key)
        return updated

    def clear_all(self) -> PauseState:
        updated = PauseState(resumed_at=_utc_now_iso8601())
        with self._lock:
            self._save(updated)
        log_event(LOGGER, "resume_requested", scope="all")
        return updated

    def _load(self) -> PauseState:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return PauseState()
        try:
            payload = json.loads(raw)
        except ValueError as exc:
            log_event(
                LOGGER,
                "pause_state_unreadable",
                level=logging.WARNING,
                path=str(self._path),
                error=str(exc),
            )
            return PauseState()
        if not isinstance(payload, dict):
            log_event(
                LOGGER,
                "pause_state_unreadable",
                level=logging.WARNING,
                path=str(self._path),
                error="expected a JSON object",
            )
            return PauseState()

        paused_raw = payload.get("paused_pull_requests")
        paused: list[str] = []
        if isinstance(paused_raw, list):
            for item in paused_raw:
                if isinstance(item, str) and item not in paused:
                    paused.append(item)
        return PauseState(
            globally_paused=payload.get("globally_paused") is True,
            paused_pull_requests=tuple(paused),
            paused_at=_optional_str(payload.get("paused_at")),
            resumed_at=_optional_str(payload.get("resumed_at")),
        )

    def _save(self, state: PauseState) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(state.to_json_dict(), indent=2, sort_keys=True) + "\n")
            os.replace(tmp_name, self._path)
        except Exception:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value:
        return value
    return None


def _utc_now_iso8601() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")
