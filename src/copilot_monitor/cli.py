from __future__ import annotations

import argparse
from collections.abc import Callable
import json
from pathlib import Path
import threading

from copilot_monitor.config import AppConfig, AutomationOptions, load_config
from copilot_monitor.github_gateway import GitHubGateway
from copilot_monitor.models import parse_entity_key
from copilot_monitor.monitor import PullRequestMonitor
from copilot_monitor.observability import configure_logging
from copilot_monitor.pause_store import PauseState, PauseStore
from copilot_monitor.state_machine_manager import PrStateMachineManagerFactory


DEFAULT_CONFIG_PATH = Path("copilot-monitor.toml")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="copilot-monitor")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Poll watched pull requests and drive agent automation"
    )
    run_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    run_parser.add_argument("--once", action="store_true", help="Run a single refresh cycle")
    run_parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        choices=("low", "high"),
        default=None,
        help="Enable runtime logging to stderr (default mode: high)",
    )

    pause_parser = subparsers.add_parser(
        "pause", help="Suspend automated actions globally or for one pull request"
    )
    pause_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    pause_parser.add_argument("--pr", type=str, help="Pull request key, e.g. owner/repo#12")

    resume_parser = subparsers.add_parser(
        "resume", help="Resume automated actions globally or for one pull request"
    )
    resume_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    resume_parser.add_argument("--pr", type=str, help="Pull request key, e.g. owner/repo#12")

    status_parser = subparsers.add_parser("pause-status", help="Show the current pause state")
    status_parser.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH)
    status_parser.add_argument("--json", action="store_true", help="Print pause state as JSON")

    return parser


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)

    if args.command == "run":
        configure_logging(getattr(args, "verbose", None), state_dir=config.runtime.state_dir)
        _cmd_run(config, once=bool(args.once))
        return
    configure_logging(None)
    if args.command == "pause":
        _cmd_pause(config, pr_key=args.pr)
        return
    if args.command == "resume":
        _cmd_resume(config, pr_key=args.pr)
        return
    if args.command == "pause-status":
        _cmd_pause_status(config, as_json=bool(args.json))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_run(config: AppConfig, *, once: bool) -> None:
    config.runtime.state_dir.mkdir(parents=True, exist_ok=True)
    github_for = _github_cache(timeout_seconds=float(config.runtime.command_timeout_seconds))
    options = _automation_options(config, github_for)
    factory = PrStateMachineManagerFactory(
        github_for, PauseStore(config.runtime.pause_state_path)
    )
    monitor = PullRequestMonitor(config, factory=factory, github_for=github_for, options=options)
    monitor.run(once=once)


def _cmd_pause(config: AppConfig, *, pr_key: str | None) -> None:
    store = PauseStore(config.runtime.pause_state_path)
    if pr_key is None:
        store.pause_globally()
        print("Automation paused globally.")
        return
    key = parse_entity_key(pr_key).key
    store.pause_pull_request(key)
    print(f"Automation paused for {key}.")


def _cmd_resume(config: AppConfig, *, pr_key: str | None) -> None:
    store = PauseStore(config.runtime.pause_state_path)
    if pr_key is None:
        store.resume_globally()
        print("Automation resumed globally.")
        return
    key = parse_entity_key(pr_key).key
    store.resume_pull_request(key)
    print(f"Automation resumed for {key}.")


def _cmd_pause_status(config: AppConfig, *, as_json: bool) -> None:
    state = PauseStore(config.runtime.pause_state_path).status()
    if as_json:
        print(json.dumps(state.to_json_dict(), indent=2))
        return
    print(_describe_pause_state(state))


def _describe_pause_state(state: PauseState) -> str:
    lines = [f"globally_paused={'yes' if state.globally_paused else 'no'}"]
    if state.paused_pull_requests:
        lines.append("paused_pull_requests=" + ", ".join(state.paused_pull_requests))
    else:
        lines.append("paused_pull_requests=<none>")
    lines.append(f"paused_at={state.paused_at or '<never>'}")
    lines.append(f"resumed_at={state.resumed_at or '<never>'}")
    return "\n".join(lines)


def _automation_options(
    config: AppConfig, github_for: Callable[[str, str], GitHubGateway]
) -> AutomationOptions:
    automation = config.automation
    needs_login = automation.auto_fix or automation.resume_on_failure
    if automation.username is not None or not needs_login or not config.pull_requests:
        return automation.to_options()
    first = config.pull_requests[0]
    login = github_for(first.owner, first.repo).get_authenticated_login()
    return automation.to_options(username=login)


def _github_cache(*, timeout_seconds: float) -> Callable[[str, str], GitHubGateway]:
    gateways: dict[tuple[str, str], GitHubGateway] = {}
    lock = threading.Lock()

    def github_for(owner: str, repo: str) -> GitHubGateway:
        with lock:
            gateway = gateways.get((owner, repo))
            if gateway is None:
                gateway = GitHubGateway(owner, repo, timeout_seconds=timeout_seconds)
                gateways[(owner, repo)] = gateway
            return gateway

    return github_for
