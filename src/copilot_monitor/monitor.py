from __future__ import annotations

from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
import logging
import threading
import time

from copilot_monitor.config import AppConfig, AutomationOptions
from copilot_monitor.github_gateway import GitHubGateway
from copilot_monitor.models import AgentEvent, PullRequestRef, parse_github_timestamp
from copilot_monitor.observability import log_event
from copilot_monitor.state_machine_manager import PrStateMachineManagerFactory, StatusSnapshot


LOGGER = logging.getLogger("copilot_monitor.monitor")

GitHubFactory = Callable[[str, str], GitHubGateway]


class PullRequestMonitor:
    """Feeds agent activity for each watched pull request into its manager, once per poll."""

    def __init__(
        self,
        config: AppConfig,
        *,
        factory: PrStateMachineManagerFactory,
        github_for: GitHubFactory,
        options: AutomationOptions,
    ) -> None:
        self._config = config
        self._factory = factory
        self._github_for = github_for
        self._options = options
        started, finished, failed = config.automation.agent_event_names
        self._started_event = started
        self._raw_kind_by_event = {
            started: "work_started",
            finished: "work_finished",
            failed: "work_failed",
        }
        self._cursor_by_key: dict[str, datetime] = {}
        self._cursor_lock = threading.Lock()

    def run(self, *, once: bool) -> None:
        with ThreadPoolExecutor(max_workers=self._config.runtime.worker_count) as pool:
            while True:
                log_event(
                    LOGGER,
                    "poll_started",
                    once=once,
                    pull_request_count=len(self._config.pull_requests),
                )
                statuses = self.run_cycle(pool)
                log_event(
                    LOGGER,
                    "poll_completed",
                    tracked_count=len(self._factory.active_keys()),
                    status_count=len(statuses),
                )
                if once:
                    break
                time.sleep(self._config.runtime.poll_interval_seconds)

    def run_cycle(self, pool: ThreadPoolExecutor) -> dict[str, StatusSnapshot]:
        futures = {
            ref.key: pool.submit(self.refresh_pull_request, ref) for ref in self._config.pull_requests
        }
        statuses: dict[str, StatusSnapshot] = {}
        for key, future in futures.items():
            try:
                status = future.result()
            except Exception as exc:  # noqa: BLE001
                log_event(
                    LOGGER,
                    "entity_cycle_failed",
                    level=logging.ERROR,
                    pr=key,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                continue
            if status is not None:
                statuses[key] = status
        return statuses

    def refresh_pull_request(self, ref: PullRequestRef) -> StatusSnapshot | None:
        github = self._github_for(ref.owner, ref.repo)
        pr = github.get_pull_request(ref.number)
        if pr.merged or pr.state == "closed":
            if self._factory.cleanup(ref.owner, ref.repo, ref.number):
                log_event(
                    LOGGER,
                    "pull_request_closed",
                    pr=ref.key,
                    merged=pr.merged,
                )
            with self._cursor_lock:
                self._cursor_by_key.pop(ref.key, None)
            return None

        events = github.list_agent_events(ref.number, self._config.automation.agent_event_names)
        status: StatusSnapshot | None = None
        for event in self._events_to_feed(ref.key, events):
            raw_kind = self._raw_kind_by_event[event.event]
            observed_at = parse_github_timestamp(event.created_at)
            if observed_at is None:
                continue
            status = self._factory.handle_observed_event(
                ref.owner,
                ref.repo,
                ref.number,
                raw_kind,
                observed_at,
                self._options,
                message=event.message,
            )

        ci_status = self._factory.check_ci_status(ref.owner, ref.repo, ref.number, self._options)
        return ci_status if ci_status is not None else status

    def _events_to_feed(self, key: str, events: tuple[AgentEvent, ...]) -> tuple[AgentEvent, ...]:
        """Events newer than the last one fed for this pull request.

        On first sight only the current session is replayed, starting at the latest
        start event. When nothing is new the latest event is fed again so that an
        analysis withheld by a pause or a transient failure gets retried.
        """
        dated = [
            (observed_at, event)
            for event in events
            if (observed_at := parse_github_timestamp(event.created_at)) is not None
        ]
        if not dated:
            return ()

        with self._cursor_lock:
            cursor = self._cursor_by_key.get(key)
            if cursor is None:
                start_index = 0
                for index, (_, event) in enumerate(dated):
                    if event.event == self._started_event:
                        start_index = index
                fresh = dated[start_index:]
            else:
                fresh = [(observed_at, event) for observed_at, event in dated if observed_at > cursor]
            if not fresh:
                fresh = dated[-1:]
            self._cursor_by_key[key] = max(observed_at for observed_at, _ in dated)
        return tuple(event for _, event in fresh)
