from __future__ import annotations

import argparse
import json
from pathlib import Path
import sys

from refinery.config import AppConfig, ConfigError, load_config
from refinery.events import EventLog
from refinery.manager import (
    AlreadyRunningError,
    NotRunningError,
    RefineryManager,
    build_manager,
)
from refinery.models import (
    MergeResult,
    QueueItem,
    RefineryError,
    RefineryState,
    failure_label,
)
from refinery.observability import configure_logging, logging_rig_context
from refinery.process_lock import ProcessLockError
from refinery.shell import CommandError, describe_error
from refinery.state import (
    StateFormatError,
    StateStore,
    merge_request_to_payload,
    state_to_payload,
)
from refinery.status_tui import run_status_tui


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("refinery.toml"))
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="refinery")
    subparsers = parser.add_subparsers(dest="command", required=True)

    start_parser = subparsers.add_parser("start", help="Start the refinery for this rig")
    _add_common_arguments(start_parser)
    start_parser.add_argument(
        "--foreground",
        action="store_true",
        help="Run the merge loop in this process instead of a tmux session",
    )

    stop_parser = subparsers.add_parser("stop", help="Stop a running refinery")
    _add_common_arguments(stop_parser)

    status_parser = subparsers.add_parser("status", help="Show the persisted refinery record")
    _add_common_arguments(status_parser)
    status_parser.add_argument("--json", action="store_true", help="Emit JSON")

    queue_parser = subparsers.add_parser("queue", help="List the merge queue")
    _add_common_arguments(queue_parser)
    queue_parser.add_argument("--json", action="store_true", help="Emit JSON")

    process_parser = subparsers.add_parser("process", help="Process the queue once and exit")
    _add_common_arguments(process_parser)

    retry_parser = subparsers.add_parser("retry", help="Clear the failure on a merge request")
    _add_common_arguments(retry_parser)
    retry_parser.add_argument("mr_id")
    retry_parser.add_argument(
        "--now", action="store_true", help="Process the merge request immediately"
    )

    reject_parser = subparsers.add_parser("reject", help="Reject a merge request")
    _add_common_arguments(reject_parser)
    reject_parser.add_argument("mr", help="Merge request id, branch, or worker name")
    reject_parser.add_argument("--reason", required=True)
    reject_parser.add_argument(
        "--no-notify", action="store_true", help="Do not mail the worker about the rejection"
    )

    register_parser = subparsers.add_parser(
        "register", help="Add a branch to the merge request registry"
    )
    _add_common_arguments(register_parser)
    register_parser.add_argument("branch")
    register_parser.add_argument("--id", dest="mr_id", default=None)

    watch_parser = subparsers.add_parser("watch", help="Open the live status view")
    _add_common_arguments(watch_parser)
    watch_parser.add_argument("--refresh-seconds", type=int, default=2)

    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    verbose = bool(getattr(args, "verbose", False))
    configure_logging(verbose)
    try:
        config = load_config(args.config)
    except (OSError, ConfigError) as exc:
        _fail(f"cannot load config {args.config}: {exc}")
        return

    configure_logging(verbose, state_dir=config.runtime.base_dir if verbose else None)
    with logging_rig_context(config.runtime.rig_name):
        _dispatch(config, args)


def _dispatch(config: AppConfig, args: argparse.Namespace) -> None:
    if args.command == "watch":
        _cmd_watch(config, refresh_seconds=int(args.refresh_seconds))
        return

    manager = build_manager(config)
    try:
        if args.command == "start":
            _cmd_start(manager, foreground=bool(args.foreground))
        elif args.command == "stop":
            _cmd_stop(manager)
        elif args.command == "status":
            _cmd_status(manager, as_json=bool(args.json))
        elif args.command == "queue":
            _cmd_queue(manager, as_json=bool(args.json))
        elif args.command == "process":
            _cmd_process(manager)
        elif args.command == "retry":
            _cmd_retry(manager, args.mr_id, process_now=bool(args.now))
        elif args.command == "reject":
            _cmd_reject(manager, args.mr, reason=args.reason, notify=not args.no_notify)
        elif args.command == "register":
            _cmd_register(manager, args.branch, mr_id=args.mr_id)
        else:
            raise RuntimeError(f"Unknown command: {args.command}")
    except (AlreadyRunningError, NotRunningError) as exc:
        print(f"warning: {exc}", file=sys.stderr)
    except (RefineryError, CommandError, ProcessLockError, StateFormatError, OSError) as exc:
        _fail(describe_error(exc))


def _fail(message: str) -> None:
    print(f"error: {message}", file=sys.stderr)
    raise SystemExit(1)


def _cmd_start(manager: RefineryManager, *, foreground: bool) -> None:
    if foreground:
        print(f"Refinery for {manager.rig_name} running in foreground (Ctrl-C to stop)")
        manager.start(foreground=True)
        print(f"Refinery for {manager.rig_name} stopped")
        return
    manager.start(foreground=False)
    print(f"Refinery for {manager.rig_name} started in session {manager.session_name}")


def _cmd_stop(manager: RefineryManager) -> None:
    manager.stop()
    print(f"Refinery for {manager.rig_name} stopped")


def _cmd_status(manager: RefineryManager, *, as_json: bool) -> None:
    state = manager.status()
    if as_json:
        print(json.dumps(state_to_payload(state), indent=2))
        return
    for line in _render_status(state):
        print(line)


def _render_status(state: RefineryState) -> list[str]:
    lines = [f"Refinery: {state.rig_name}", f"State: {state.state}"]
    if state.pid:
        lines.append(f"PID: {state.pid}")
    if state.started_at is not None:
        lines.append(f"Started: {state.started_at.isoformat()}")
    if state.current_mr is not None:
        lines.append(f"Processing: {state.current_mr.branch} ({state.current_mr.id})")
    else:
        lines.append("Processing: -")
    if state.last_merge_at is not None:
        lines.append(f"Last merge: {state.last_merge_at.isoformat()}")
    waiting = [mr for mr in state.pending_mrs.values() if not mr.is_closed]
    failed = sum(1 for mr in waiting if mr.error)
    lines.append(f"Pending: {len(waiting)} open, {failed} failed")
    stats = state.stats
    lines.append(f"Today: {stats.today_merged} merged, {stats.today_failed} failed")
    lines.append(f"Total: {stats.total_merged} merged, {stats.total_failed} failed")
    return lines


def _cmd_queue(manager: RefineryManager, *, as_json: bool) -> None:
    items = manager.queue()
    if as_json:
        print(json.dumps([_queue_item_payload(item) for item in items], indent=2))
        return
    if not items:
        print("Queue is empty.")
        return
    for item in items:
        marker = "*" if item.position == 0 else str(item.position)
        print(f"{marker:>3} {item.mr.branch} worker={item.mr.worker} {item.age} id={item.mr.id}")


def _queue_item_payload(item: QueueItem) -> dict[str, object]:
    return {"position": item.position, "age": item.age, "mr": merge_request_to_payload(item.mr)}


def _cmd_process(manager: RefineryManager) -> None:
    results = manager.process_queue()
    if not results:
        print("Nothing to merge.")
        return
    for result in results:
        print(_render_result(result))


def _render_result(result: MergeResult) -> str:
    label = failure_label(result.failure)
    if result.success:
        line = f"merged {result.merge_commit or '-'}"
    elif label:
        line = f"failed [{label}]: {result.error}"
    else:
        line = f"failed: {result.error}"
    for warning in result.warnings:
        line += f"\n  warning: {warning}"
    return line


def _cmd_retry(manager: RefineryManager, mr_id: str, *, process_now: bool) -> None:
    result = manager.retry(mr_id, process_now=process_now)
    if result is None:
        print(f"Merge request {mr_id} queued for retry")
        return
    print(_render_result(result))


def _cmd_reject(manager: RefineryManager, mr: str, *, reason: str, notify: bool) -> None:
    rejected = manager.reject_mr(mr, reason, notify=notify)
    print(f"Rejected {rejected.id} ({rejected.branch}): {reason}")


def _cmd_register(manager: RefineryManager, branch: str, *, mr_id: str | None) -> None:
    mr = manager.register_branch(branch, mr_id=mr_id)
    print(f"Registered {mr.id} for {mr.branch} -> {mr.target_branch}")


def _cmd_watch(config: AppConfig, *, refresh_seconds: int) -> None:
    run_status_tui(
        store=StateStore(config.runtime.state_path, rig_name=config.runtime.rig_name),
        events=EventLog(config.runtime.events_path),
        refresh_seconds=refresh_seconds,
    )
