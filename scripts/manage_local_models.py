#!/usr/bin/env python3
"""Command-line driver for installing and serving local models."""
from __future__ import annotations

import argparse
import logging
import sys
from typing import Dict, List, Optional

from local_models import (
    ChatError,
    LocalModelManager,
    ManagerConfig,
    UpdateCacheEntry,
    architecture_label,
    drain_output,
    stream_chat_completion,
)

CHAT_HELP = "Commands: /new starts a fresh conversation, /help shows this text, exit or quit leaves."


def _short_sha(value: Optional[str]) -> str:
    return value[:12] if value else "-"


def _warn_if_outdated(entry: Optional[UpdateCacheEntry]) -> None:
    if entry is not None and entry.has_update:
        print(
            f"A newer revision of {entry.model_name} is available on the hub "
            f"({_short_sha(entry.remote_revision)}). Run `update {entry.model_id}` to fetch it.",
            file=sys.stderr,
        )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Manage locally served language models.")
    parser.add_argument("--verbose", action="store_true", help="Log component activity to stderr.")
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("list", help="List available and installed models.")
    install = commands.add_parser("install", help="Download a model from the hub.")
    install.add_argument("model_id")
    install.add_argument("--install-deps", action="store_true", help="pip install missing packages first.")
    remove = commands.add_parser("remove", help="Uninstall a model and clear its cache.")
    remove.add_argument("model_id")
    update = commands.add_parser("update", help="Re-download an installed model.")
    update.add_argument("model_id")
    load = commands.add_parser("load", help="Start the server in the background.")
    load.add_argument("model_id", nargs="?")
    commands.add_parser("unload", help="Stop the background server.")
    commands.add_parser("status", help="Show server status.")
    commands.add_parser("check", help="Check installed models for hub updates.")
    chat = commands.add_parser("chat", help="Chat with the local model; omit the message for an interactive session.")
    chat.add_argument("message", nargs="?")
    return parser


def _list(manager: LocalModelManager) -> int:
    installed = set(manager.state.list_installed())
    active = manager.state.get_active()
    for model in manager.catalog:
        flags = []
        if model.recommended:
            flags.append("recommended")
        if model.id in installed:
            flags.append("active" if model.id == active else "installed")
        suffix = f" [{', '.join(flags)}]" if flags else ""
        print(f"{model.id:<16} {model.display_name} ({model.parameter_label}){suffix}")
        print(f"{'':<16} {model.hub_url}")
    return 0


def _install(manager: LocalModelManager, model_id: str, install_deps: bool) -> int:
    if manager.model(model_id) is None:
        print(f"Unknown model: {model_id}", file=sys.stderr)
        return 1
    print(f"Platform: {architecture_label()}")
    report = manager.ensure_prerequisites(install_missing=install_deps)
    if report.interpreter is None:
        print("Python 3 is required to run local models.", file=sys.stderr)
        return 1
    if report.repaired:
        print(f"Reinstalled native packages: {', '.join(report.repaired)}")
    if report.missing:
        print(f"Missing packages: {', '.join(report.missing)} (rerun with --install-deps)", file=sys.stderr)
        return 1
    if not manager.install(model_id):
        print("Download failed. Check your network connection and try again.", file=sys.stderr)
        return 1
    print(f"{model_id} installed.")
    return 0


def _check(manager: LocalModelManager) -> int:
    entries = manager.check_updates()
    if not entries:
        print("No installed models to check.")
        return 0
    for entry in entries:
        if entry.has_update:
            status = "update available"
        elif entry.error:
            status = f"check failed ({entry.error})"
        else:
            status = "up-to-date"
        print(f"{entry.model_name} ({entry.hub_repository}): {status}")
        print(f"  local {_short_sha(entry.local_revision)}  remote {_short_sha(entry.remote_revision)}")
    return 0


def _send(manager: LocalModelManager, model_name: str, history: List[Dict[str, str]]) -> Optional[str]:
    """Stream one reply to stdout and return its text, or ``None`` when the server refused."""

    parts: List[str] = []
    try:
        for chunk in stream_chat_completion(manager.config, model_name, history):
            parts.append(chunk)
            sys.stdout.write(chunk)
            sys.stdout.flush()
        print()
    except ChatError as exc:
        print(str(exc), file=sys.stderr)
        return None
    return "".join(parts)


def _interactive(manager: LocalModelManager, model_name: str) -> int:
    print(CHAT_HELP)
    history: List[Dict[str, str]] = []
    while True:
        try:
            line = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print()
            return 0
        if not line:
            continue
        if line.lower() in ("exit", "quit"):
            return 0
        if line == "/help":
            print(CHAT_HELP)
            continue
        if line == "/new":
            history.clear()
            print("Started a new conversation.")
            continue
        history.append({"role": "user", "content": line})
        reply = _send(manager, model_name, history)
        if reply is None:
            history.pop()
            continue
        history.append({"role": "assistant", "content": reply})


def _chat(manager: LocalModelManager, message: Optional[str]) -> int:
    supervisor = manager.supervisor
    record = supervisor.server_record()
    attached = None
    if record is not None and supervisor.is_running():
        model_name = record.resolved_model_path
        _warn_if_outdated(manager.check_update(record.model_id))
    else:
        model = manager.model_in_use()
        interpreter = manager.interpreter()
        if model is None or interpreter is None:
            print("Install a model and Python 3 first.", file=sys.stderr)
            return 1
        _warn_if_outdated(manager.check_update(model.id))
        model_name = manager.resolve_path(model.id)
        if model_name is None:
            print("Could not resolve model path from the hub cache.", file=sys.stderr)
            return 1
        attached = supervisor.start_attached(interpreter, model_name)
        if attached is None:
            print("Could not start the local server.", file=sys.stderr)
            return 1
        output_tail = drain_output(attached)
        if not supervisor.wait_ready(process=attached):
            print("Server did not become ready in time.", file=sys.stderr)
            for line in output_tail:
                print(line, file=sys.stderr)
            attached.terminate()
            return 1

    try:
        if message is None:
            return _interactive(manager, model_name)
        if _send(manager, model_name, [{"role": "user", "content": message}]) is None:
            return 1
    finally:
        if attached is not None:
            attached.terminate()
    return 0


def main(argv: list[str]) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    manager = LocalModelManager(ManagerConfig.from_env())

    if args.command == "list":
        return _list(manager)
    if args.command == "install":
        return _install(manager, args.model_id, args.install_deps)
    if args.command == "remove":
        return 0 if manager.uninstall(args.model_id) else 1
    if args.command == "update":
        return 0 if manager.update(args.model_id) else 1
    if args.command == "load":
        result = manager.load(args.model_id)
        _warn_if_outdated(result.update)
        if not result.ok:
            print(f"Load failed: {result.error}", file=sys.stderr)
            return 1
        print(f"{result.model_id} serving on {manager.config.base_url} (pid {result.process_id})")
        return 0
    if args.command == "unload":
        if not manager.unload():
            if manager.supervisor.is_running():
                print("A server is answering on the port but is not managed here; stop it yourself.")
            else:
                print("No model server is currently running.")
        return 0
    if args.command == "status":
        report = manager.status()
        print(f"Status  {report.status.value}")
        if report.model is not None:
            print(f"Model   {report.model.display_name}")
        if report.record is not None:
            print(f"PID     {report.record.process_id}")
        print(f"Port    {report.port}")
        print(f"Logs    {report.log_file}")
        print(f"Platform {architecture_label()}")
        return 0
    if args.command == "check":
        return _check(manager)
    return _chat(manager, args.message)


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main(sys.argv[1:]))
