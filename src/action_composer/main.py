"""CLI entrypoint: compile compositions and manage sessions."""

from __future__ import annotations

import argparse
import importlib.util
import json
import logging
import sys
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from action_composer import __version__
from action_composer.compiler.compiler import compile_composition
from action_composer.config import ComposerSettings
from action_composer.errors import CompilationError, SessionNotFound, SessionStoreError
from action_composer.logging import configure_logging
from action_composer.sessions.store import DEFAULT_LIST_LIMIT, SessionStore

logger = logging.getLogger(__name__)


def _exit_code(status: int) -> int:
    """Map an HTTP-like status to a process exit code."""

    return status % 256


def _load_composition(path: Path) -> Any:
    """Import a Python file and return its ``composition`` attribute.

    A callable attribute is called without arguments.
    """

    spec = importlib.util.spec_from_file_location(path.stem, path)
    if spec is None or spec.loader is None:
        raise CompilationError(f"Cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise CompilationError(f"Failed to load {path}: {exc}") from exc

    composition = getattr(module, "composition", None)
    if composition is None:
        raise CompilationError(f"{path} does not define 'composition'")
    return composition() if callable(composition) else composition


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="composer",
        description="Compile action compositions and manage conductor sessions",
    )
    parser.add_argument("--version", action="version", version=f"action-composer {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    compose = subparsers.add_parser("compose", help="Compile a composition to JSON")
    compose.add_argument(
        "file",
        type=Path,
        help="Python file defining 'composition' (a composition or a function returning one)",
    )
    compose.add_argument("--ast", action="store_true", help="Only print the composition tree")
    compose.add_argument(
        "-o", "--output", type=Path, default=None, help="Write the JSON to this file"
    )

    session = subparsers.add_parser("session", help="Inspect and manage sessions")
    session_commands = session.add_subparsers(dest="session_command", required=True)

    listing = session_commands.add_parser("list", help="List recent sessions")
    listing.add_argument("--limit", type=int, default=DEFAULT_LIST_LIMIT)
    listing.add_argument("--skip", type=int, default=0)

    get = session_commands.add_parser("get", help="Print the result of a session")
    get.add_argument("session_id")
    get.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Wait up to this many seconds for the session to complete",
    )

    for name, help_text in (
        ("kill", "Kill a live session"),
        ("purge", "Delete every record of a session"),
        ("trace", "Print the activations of a session"),
    ):
        command = session_commands.add_parser(name, help=help_text)
        command.add_argument("session_id")

    session_commands.add_parser("flush", help="Delete every session of the namespace")

    return parser


def _compose(args: argparse.Namespace) -> int:
    try:
        compiled = compile_composition(_load_composition(args.file))
    except CompilationError as exc:
        print(f"Composition error: {exc}", file=sys.stderr)
        return _exit_code(exc.code)

    output = compiled.ast if args.ast else compiled.to_json()
    if args.output is not None:
        args.output.write_text(json.dumps(output, indent=2) + "\n", encoding="utf-8")
        logger.info("Composition written", extra={"path": str(args.output)})
    else:
        _print_json(output)
    return 0


def _session(args: argparse.Namespace, store: SessionStore) -> int:
    command = args.session_command
    if command == "list":
        _print_json(store.list(limit=args.limit, skip=args.skip).model_dump())
        return 0
    if command == "get":
        _print_json(store.get(args.session_id, timeout=args.timeout))
        return 0
    if command == "kill":
        store.kill(args.session_id)
        print("OK")
        return 0
    if command == "purge":
        store.purge(args.session_id)
        print("OK")
        return 0
    if command == "trace":
        _print_json(store.trace(args.session_id))
        return 0
    if command == "flush":
        print(f"Deleted {store.flush()} keys")
        return 0

    raise AssertionError(f"Unhandled session command: {command}")


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = ComposerSettings()
    except ValidationError as e:
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level)

    if args.command == "compose":
        return _compose(args)

    store = SessionStore.from_url(
        settings.redis_url,
        namespace=settings.session_namespace,
        expiration=settings.session_expiration_seconds,
    )
    try:
        return _session(args, store)
    except SessionNotFound as exc:
        print(str(exc), file=sys.stderr)
        return _exit_code(404)
    except SessionStoreError as exc:
        print(str(exc), file=sys.stderr)
        return _exit_code(500)
    except Exception:
        logger.exception("Command failed", extra={"command": args.session_command})
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
