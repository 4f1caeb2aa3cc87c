from __future__ import annotations

import asyncio
import argparse
import contextlib
from dataclasses import dataclass, replace
from datetime import date, datetime, timezone
import os
from pathlib import Path
import sys
from typing import Any, Callable

from . import __version__
from .cache import TTLCache
from .chat import ChatRouter, compile_trigger_patterns, format_status_reply, format_update_reply
from .config import TaskLedgerConfig, explain_taskledger_toml, load_taskledger_toml
from .events import EventBus
from .locks import instance_lock
from .names import DisplayNameResolver
from .paths import RuntimePaths, config_path, ensure_runtime_dirs, runtime_paths, workspace_root
from .reconcile import ReconcileFailed, TaskLedger
from .store import StoreError, StoreGateway, build_store
from .summary import format_reminder, next_reminder_time, reminder_loop
from .xmtp import MessageDaemon, create_client, hint_for_xmtp_error, load_or_create_keys


EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

_EVENT_LEVELS = {"info": "info", "warn": "warn", "warning": "warn", "error": "error", "critical": "error"}


@dataclass(frozen=True)
class RuntimeHooks:
    log: Callable[[str, str], None] | None = None
    emit_console: bool = True
    log_file: Path | None = None


def _emit_runtime_log(
    message: str,
    *,
    level: str = "info",
    stderr: bool = False,
    hooks: RuntimeHooks | None = None,
) -> None:
    if hooks and hooks.log:
        hooks.log(level, message)
    if hooks and hooks.log_file is not None:
        _append_runtime_log(hooks.log_file, level=level, message=message)
    if hooks is None or hooks.emit_console:
        print(message, file=sys.stderr if stderr else sys.stdout)


def _append_runtime_log(log_file: Path, *, level: str, message: str) -> None:
    normalized_message = " ".join(message.split())
    stamp = datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()
    line = f"{stamp} [{level.lower()}] {normalized_message}\n"
    with contextlib.suppress(Exception):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)


def _hooks_with_log_file(hooks: RuntimeHooks | None, log_file: Path) -> RuntimeHooks:
    if hooks is None:
        return RuntimeHooks(log_file=log_file)
    if hooks.log_file is not None:
        return hooks
    return replace(hooks, log_file=log_file)


def _event_logger(hooks: RuntimeHooks | None) -> Callable[[dict[str, Any]], None]:
    def _on_event(event: dict[str, Any]) -> None:
        level = _EVENT_LEVELS.get(str(event.get("severity", "info")), "info")
        _emit_runtime_log(
            f"{event.get('type')}: {event.get('message')}",
            level=level,
            stderr=level != "info",
            hooks=hooks,
        )

    return _on_event


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="taskledger",
        description="taskledger: keep a shared daily task document in sync with chat task lists",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--workspace", help="Workspace root (default: nearest directory with taskledger.toml)")

    sub = parser.add_subparsers(dest="cmd", required=True)

    record = sub.add_parser("record", help="Record one task message for an author.")
    record.add_argument("--author", required=True, help="Author display name (section heading)")
    record.add_argument("--file", help="Read the message from this file instead of stdin")

    show = sub.add_parser("show", help="Print an author's current tasks.")
    show.add_argument("--author", required=True, help="Author display name")
    show.add_argument("--date", help="Document day (YYYY-MM-DD, default today)")

    summary = sub.add_parser("summary", help="Print the reminder-style overview of all authors.")
    summary.add_argument("--date", help="Document day (YYYY-MM-DD, default today)")

    sub.add_parser("config", help="Explain the current taskledger.toml settings.")

    run = sub.add_parser("run", help="Start the XMTP daemon (and reminders when enabled).")
    run.add_argument("--env", help="XMTP environment (default from [chat].env)")
    run.add_argument("--quiet", action="store_true", help="Do not echo runtime logs to the console")

    return parser


def _parse_day(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise ValueError(f"invalid --date {value!r} (expected YYYY-MM-DD)") from exc


def build_ledger(config: TaskLedgerConfig, root: Path, *, bus: EventBus | None = None) -> TaskLedger:
    store_cfg = config.store
    store_root = Path(store_cfg.root)
    if not store_root.is_absolute():
        store_root = root / store_root
    store = build_store(
        store_cfg.backend,
        root=store_root,
        github_owner=store_cfg.github.owner,
        github_repo=store_cfg.github.repo,
        github_branch=store_cfg.github.branch,
        github_token=os.environ.get(store_cfg.github.token_env, ""),
        timeout_s=store_cfg.timeout_s,
    )
    gateway = StoreGateway(store, cache=TTLCache(config.cache.ttl_seconds), timeout_s=store_cfg.timeout_s)
    return TaskLedger(
        gateway,
        path_template=config.ledger.document_path,
        timezone=config.ledger.tzinfo().key,
        empty_policy=config.ledger.empty_message_policy,
        max_attempts=config.ledger.max_attempts,
        history_path=config.ledger.history_path,
        bus=bus,
    )


def _load_config(root: Path, hooks: RuntimeHooks | None = None) -> TaskLedgerConfig:
    config, warning = load_taskledger_toml(config_path(root))
    if warning:
        _emit_runtime_log(f"config warning: {warning}", level="warn", stderr=True, hooks=hooks)
    return config


def _event_bus(paths: RuntimePaths, hooks: RuntimeHooks | None) -> EventBus:
    bus = EventBus(paths.state_dir / "events.jsonl")
    bus.subscribe(_event_logger(hooks))
    return bus


def cmd_record(args: argparse.Namespace, root: Path) -> int:
    paths = ensure_runtime_dirs(runtime_paths(root))
    hooks = RuntimeHooks(log_file=paths.logs_dir / "runtime.log", emit_console=False)
    config = _load_config(root, hooks)
    ledger = build_ledger(config, root, bus=_event_bus(paths, hooks))

    try:
        if args.file:
            text = Path(args.file).read_text(encoding="utf-8")
        else:
            text = sys.stdin.read()
    except OSError as exc:
        print(f"cannot read message: {exc}", file=sys.stderr)
        return EXIT_USAGE

    try:
        result = asyncio.run(ledger.record_task_message(args.author, text))
    except ReconcileFailed as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_FAILURE
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_USAGE
    print(format_update_reply(result))
    if result.version:
        print(f"{result.status}: {result.path} @ {result.version[:12]}")
    else:
        print(f"{result.status}: {result.path}")
    return EXIT_OK


def cmd_show(args: argparse.Namespace, root: Path) -> int:
    config = _load_config(root)
    ledger = build_ledger(config, root)
    try:
        day = _parse_day(args.date)
        tasks = asyncio.run(ledger.get_current_tasks(args.author, day=day))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_USAGE
    except StoreError as exc:
        print(f"store error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    print(format_status_reply(args.author, tasks))
    return EXIT_OK if tasks else EXIT_FAILURE


def cmd_summary(args: argparse.Namespace, root: Path) -> int:
    config = _load_config(root)
    ledger = build_ledger(config, root)
    try:
        day = _parse_day(args.date) or ledger.today()
        sections = asyncio.run(ledger.get_all_current_sections(day=day))
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_USAGE
    except StoreError as exc:
        print(f"store error: {exc}", file=sys.stderr)
        return EXIT_FAILURE
    now = ledger.localize()
    text = format_reminder(sections, now, next_reminder_time(now, config.reminders.slots()))
    print(text or f"no tasks recorded for {day.isoformat()}")
    return EXIT_OK


def cmd_config(args: argparse.Namespace, root: Path) -> int:
    path = config_path(root)
    config, warning = load_taskledger_toml(path)
    print(explain_taskledger_toml(config, path=path))
    if warning:
        print(f"\nwarning: {warning}", file=sys.stderr)
        return EXIT_USAGE
    return EXIT_OK


def cmd_run(args: argparse.Namespace, root: Path) -> int:
    paths = ensure_runtime_dirs(runtime_paths(root))
    hooks = RuntimeHooks(log_file=paths.logs_dir / "runtime.log", emit_console=not args.quiet)
    config = _load_config(root, hooks)
    env = args.env or config.chat.env

    try:
        keys = load_or_create_keys(paths.keys_json)
    except (OSError, ValueError, RuntimeError) as exc:
        _emit_runtime_log(f"key setup failed: {exc}", level="error", stderr=True, hooks=hooks)
        return EXIT_USAGE

    _emit_runtime_log(f"status: starting daemon (env={env}, store={config.store.backend})", hooks=hooks)
    try:
        with instance_lock(paths.locks_dir / "taskledger.lock"):
            return asyncio.run(_run_daemon(config, root, paths, env, keys, hooks=hooks))
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except RuntimeError as exc:
        print(str(exc), file=sys.stderr)
        return EXIT_USAGE


async def _run_daemon(
    config: TaskLedgerConfig,
    root: Path,
    paths: RuntimePaths,
    env: str,
    keys: dict[str, str],
    hooks: RuntimeHooks | None = None,
) -> int:
    hooks = _hooks_with_log_file(hooks, paths.logs_dir / "runtime.log")
    bus = _event_bus(paths, hooks)
    ledger = build_ledger(config, root, bus=bus)
    resolver = DisplayNameResolver(
        config.chat.authors,
        rpc_urls=config.chat.ens_rpc_urls,
    )
    router = ChatRouter(
        ledger,
        resolve_name=resolver.resolve,
        trigger_patterns=compile_trigger_patterns(config.chat.trigger_patterns),
    )

    try:
        client = await create_client(env, paths.xmtp_db_dir, keys["wallet_key"], keys["db_encryption_key"])
    except asyncio.CancelledError:
        raise
    except Exception as exc:  # noqa: BLE001
        _emit_runtime_log(f"XMTP client init failed: {exc}", level="error", stderr=True, hooks=hooks)
        hint = hint_for_xmtp_error(exc)
        if hint:
            _emit_runtime_log(hint, level="error", stderr=True, hooks=hooks)
        return EXIT_FAILURE

    def _log(level: str, message: str) -> None:
        _emit_runtime_log(message, level=level, stderr=level != "info", hooks=hooks)

    daemon = MessageDaemon(
        client,
        router,
        log=_log,
        forward_conversation_id=config.chat.forward_conversation_id,
    )
    _emit_runtime_log(f"inbox_id: {daemon.own_inbox_id or 'unknown'}", hooks=hooks)
    if config.chat.forward_conversation_id:
        _emit_runtime_log(f"forwarding task messages to {config.chat.forward_conversation_id}", hooks=hooks)

    reminders: asyncio.Task | None = None
    if config.reminders.enabled:
        if not config.reminders.conversation_id:
            _emit_runtime_log("reminders: enabled but [reminders].conversation_id is empty; skipping", level="warn", stderr=True, hooks=hooks)
        else:
            async def _post(text: str) -> None:
                await daemon.send(config.reminders.conversation_id, text)

            reminders = asyncio.create_task(
                reminder_loop(
                    ledger,
                    _post,
                    config.reminders.slots(),
                    on_error=lambda exc: _log("warn", f"reminder failed: {exc}"),
                )
            )
            _emit_runtime_log(f"reminders: {', '.join(config.reminders.times)}", hooks=hooks)

    _emit_runtime_log("Daemon started. Press Ctrl+C to stop.", hooks=hooks)
    try:
        await daemon.run()
    finally:
        if reminders is not None:
            reminders.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reminders
    return EXIT_OK


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    argv = list(argv) if argv is not None else list(sys.argv[1:])
    args = parser.parse_args(argv)
    root = Path(args.workspace).resolve() if args.workspace else workspace_root()

    try:
        if args.cmd == "record":
            return cmd_record(args, root)
        if args.cmd == "show":
            return cmd_show(args, root)
        if args.cmd == "summary":
            return cmd_summary(args, root)
        if args.cmd == "config":
            return cmd_config(args, root)
        if args.cmd == "run":
            return cmd_run(args, root)
    except KeyboardInterrupt:
        return EXIT_INTERRUPTED
    except ValueError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_USAGE

    parser.error(f"Unknown command: {args.cmd}")
    return EXIT_USAGE
