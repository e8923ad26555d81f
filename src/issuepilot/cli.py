from __future__ import annotations

import argparse
from dataclasses import asdict
import json
import os
from pathlib import Path
import sys

from issuepilot.config import AppConfig, ConfigError, load_config
from issuepilot.observability import configure_logging
from issuepilot.result_cache import SessionResultCache, handle_result_callback
from issuepilot.service_runner import build_components, run_service
from issuepilot.state import IssueRow, StateStore


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="issuepilot")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Initialize the state directory and DB")
    _add_common_arguments(init_parser)

    run_parser = subparsers.add_parser(
        "run", help="Run the headless scoping, polling and comment bridge loop"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument(
        "--once", action="store_true", help="Refresh, poll and sweep once, then exit"
    )

    tui_parser = subparsers.add_parser("tui", help="Run the terminal dashboard")
    _add_common_arguments(tui_parser)

    issues_parser = subparsers.add_parser("issues", help="Inspect persisted issue state")
    _add_common_arguments(issues_parser)
    issues_subparsers = issues_parser.add_subparsers(dest="issues_command", required=True)
    list_parser = issues_subparsers.add_parser("list", help="List persisted issues")
    list_parser.add_argument("--json", action="store_true", help="Print issues as JSON")

    callback_parser = subparsers.add_parser(
        "callback",
        help="Record a structured-output callback payload read from stdin",
    )
    _add_common_arguments(callback_parser)
    callback_parser.add_argument(
        "--secret",
        type=str,
        required=True,
        help="Shared secret presented by the caller",
    )

    return parser


def main() -> None:
    args = build_parser().parse_args()
    configure_logging(bool(getattr(args, "verbose", False)))
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        raise SystemExit(f"Invalid config {args.config}: {exc}") from exc

    if args.command == "init":
        _cmd_init(config)
        return
    if args.command == "run":
        configure_logging("high" if args.verbose else "low", state_dir=config.runtime.base_dir)
        run_service(config=config, once=bool(args.once))
        return
    if args.command == "tui":
        configure_logging(
            "high" if args.verbose else "low",
            state_dir=config.runtime.base_dir,
            to_stderr=False,
        )
        _cmd_tui(config)
        return
    if args.command == "issues":
        _cmd_issues(config, args)
        return
    if args.command == "callback":
        _cmd_callback(config, secret=str(args.secret))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("issuepilot.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def _cmd_init(config: AppConfig) -> None:
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    StateStore(config.runtime.state_db_path)
    print(f"Initialized issuepilot base dir: {config.runtime.base_dir}")
    print(f"Repo: {config.repo.full_name}")
    print(f"State DB: {config.runtime.state_db_path}")


def _cmd_tui(config: AppConfig) -> None:
    from issuepilot.dashboard_tui import run_dashboard_tui

    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)
    components = build_components(config, store=store)
    run_dashboard_tui(components=components, refresh_seconds=config.runtime.issue_refresh_seconds)


def _cmd_issues(config: AppConfig, args: argparse.Namespace) -> None:
    if args.issues_command != "list":
        raise RuntimeError(f"Unknown issues command: {args.issues_command}")
    store = StateStore(config.runtime.state_db_path)
    rows = store.get_rows_by_repo(config.repo.full_name)
    if args.json:
        print(json.dumps([_row_json(row) for row in rows], indent=2, sort_keys=True))
        return
    if not rows:
        print("No persisted issues.")
        return
    for row in rows:
        print(_row_line(row))


def _cmd_callback(config: AppConfig, *, secret: str) -> None:
    if config.agent.callback_secret_env is None:
        raise SystemExit("agent.callback_secret_env is not configured")
    expected = os.environ.get(config.agent.callback_secret_env)
    if not expected:
        raise SystemExit(f"{config.agent.callback_secret_env} is not set")
    payload = json.loads(sys.stdin.read())
    if not isinstance(payload, dict):
        raise SystemExit("callback payload must be a JSON object")
    store = StateStore(config.runtime.state_db_path)
    updated = handle_result_callback(
        payload,
        provided_secret=secret,
        expected_secret=expected,
        cache=SessionResultCache(ttl_seconds=config.polling.result_cache_ttl_seconds),
        store=store,
    )
    print("updated" if updated else "cached")


def _row_json(row: IssueRow) -> dict[str, object]:
    return asdict(row)


def _row_line(row: IssueRow) -> str:
    confidence = row.confidence or "-"
    session = "-"
    if row.fix_session is not None:
        session = row.fix_session.session_id
    elif row.scoping_session is not None:
        session = row.scoping_session.session_id
    return f"#{row.issue_number}\t{row.status}\t{confidence}\t{session}\t{row.updated_at}"
