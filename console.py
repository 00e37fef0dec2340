"""Command-line front end for streamed prompt runs and prompt history."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Callable, Optional, Sequence, TextIO, Tuple

from blob_store import JsonFileBlobStore
from config import RunnerConfig, load_config
from exceptions import PromptRunnerError
from history_store import HistoryStore
from run_types import RunMessage, RunStatus, StoredPrompt
from session_controller import EXAMPLE_PROMPT, SessionController
from stream_client import SseTransport

EXIT_CODES = {
    RunStatus.SUCCESS: 0,
    RunStatus.FAILURE: 1,
    RunStatus.IDLE: 130,
}


def build_history(config: RunnerConfig, logger: Optional[logging.Logger] = None) -> HistoryStore:
    """Create the history store described by ``config``."""
    return HistoryStore(
        JsonFileBlobStore(config.history.resolved_path),
        key=config.history.storage_key,
        capacity=config.history.capacity,
        logger=logger,
    )


def build_controller(
    config: RunnerConfig,
    history: HistoryStore,
    clipboard: Optional[Callable[[str], None]] = None,
    logger: Optional[logging.Logger] = None,
) -> SessionController:
    transport = SseTransport(
        connect_timeout=config.stream.connect_timeout,
        read_timeout=config.stream.read_timeout,
    )
    return SessionController(
        history=history,
        transport=transport,
        stream=config.stream,
        clipboard=clipboard,
        logger=logger,
    )


def rotating_file_handler(log_file: Path) -> logging.Handler:
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
    handler.setFormatter(logging.Formatter("[%(asctime)s] [%(levelname)s] %(name)s: %(message)s"))
    return handler


def configure_logging(verbose: bool, quiet: bool, log_file: Optional[Path] = None) -> logging.Logger:
    """Configure root logging the same way for every subcommand."""
    if quiet:
        log_level = logging.WARNING
    elif verbose:
        log_level = logging.DEBUG
    else:
        log_level = logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(rotating_file_handler(log_file))

    logging.basicConfig(
        level=log_level,
        format="[%(levelname)s] %(message)s" if not verbose else "[%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    return logging.getLogger("prompt_runner")


async def stream_run(controller: SessionController, prompt: str, out: TextIO) -> RunStatus:
    """Run ``prompt`` to a terminal status, echoing new text to ``out`` as it arrives."""
    done = asyncio.Event()
    printed = 0

    def on_messages(messages: Tuple[RunMessage, ...]) -> None:
        nonlocal printed
        if not messages:
            printed = 0
            return
        content = messages[0].content
        out.write(content[printed:])
        out.flush()
        printed = len(content)

    def on_status(status: RunStatus) -> None:
        if status is not RunStatus.RUNNING:
            done.set()

    unsubscribe_messages = controller.messages.subscribe(on_messages)
    unsubscribe_status = controller.status.subscribe(on_status)
    try:
        if not controller.start(prompt):
            return controller.status.get()
        await done.wait()
    finally:
        if controller.is_running:
            controller.stop()
        unsubscribe_messages()
        unsubscribe_status()
        out.write("\n")
        out.flush()
    return controller.status.get()


async def _run_command(args: argparse.Namespace, config: RunnerConfig, logger: logging.Logger) -> int:
    if args.file:
        prompt = Path(args.file).read_text(encoding="utf-8")
    else:
        prompt = args.prompt or ""
    if not prompt.strip():
        logger.error("A non-empty prompt is required (argument or --file)")
        return 2

    history = build_history(config)
    controller = build_controller(config, history)
    try:
        status = await stream_run(controller, prompt, sys.stdout)
    finally:
        await controller.transport.aclose()

    logger.info(f"Run status: {status.label}")
    return EXIT_CODES.get(status, 1)


def _format_prompt(entry: StoredPrompt) -> str:
    star = "*" if entry.is_favorite else " "
    first_line = entry.content.strip().splitlines()[0] if entry.content.strip() else ""
    if len(first_line) > 70:
        first_line = first_line[:67] + "..."
    stamp = entry.timestamp.astimezone().strftime("%Y-%m-%d %H:%M:%S")
    return f"{star} {entry.id}  {stamp}  {first_line}"


def _history_command(args: argparse.Namespace, config: RunnerConfig, out: TextIO) -> int:
    view = build_history(config).list()
    sections = []
    if not args.recent:
        sections.append(("Favorites", view.favorites))
    if not args.favorites:
        sections.append(("Recent", view.recent))

    if args.json:
        payload = {name.lower(): [p.to_dict() for p in entries] for name, entries in sections}
        out.write(json.dumps(payload, indent=2) + "\n")
        return 0

    for name, entries in sections:
        out.write(f"{name} ({len(entries)})\n")
        if not entries:
            out.write("  (none)\n")
        for entry in entries:
            out.write(f"  {_format_prompt(entry)}\n")
    return 0


def _entry_command(args: argparse.Namespace, config: RunnerConfig, out: TextIO, logger: logging.Logger) -> int:
    history = build_history(config)
    entry = history.get(args.id)
    if entry is None:
        logger.error(f"No stored prompt with id {args.id}")
        return 1

    if args.command == "favorite":
        updated = history.toggle_favorite(entry.id)
        state = "added to" if updated and updated.is_favorite else "removed from"
        out.write(f"Prompt {entry.id} {state} favorites\n")
    elif args.command == "delete":
        history.delete(entry.id)
        out.write(f"Deleted prompt {entry.id}\n")
    elif args.command == "copy":
        controller = build_controller(config, history, clipboard=out.write)
        controller.copy_to_clipboard(entry.content)
    elif args.command == "show":
        out.write(entry.content)
        if not entry.content.endswith("\n"):
            out.write("\n")
    return 0


def run_from_cli_args(args: argparse.Namespace, logger: logging.Logger, out: TextIO = sys.stdout) -> int:
    """Entry point shared by the CLI script."""
    cli_overrides = {
        "base_url": args.base_url,
        "history_path": args.history_path,
        "verbose": args.verbose or None,
    }
    cli_overrides = {k: v for k, v in cli_overrides.items() if v is not None}
    config_path = Path(args.config) if args.config else None
    config = load_config(config_path, cli_overrides)

    if config.log_file is not None and not args.log_file:
        logging.getLogger().addHandler(rotating_file_handler(config.log_file.expanduser()))
    if config.verbose:
        logger.debug(f"Service: {config.stream.base_url}{config.stream.endpoint_path}")
        logger.debug(f"History: {config.history.resolved_path}")

    if args.command == "run":
        return asyncio.run(_run_command(args, config, logger))
    if args.command == "history":
        return _history_command(args, config, out)
    if args.command in ("favorite", "delete", "copy", "show"):
        return _entry_command(args, config, out, logger)
    if args.command == "example":
        out.write(EXAMPLE_PROMPT)
        return 0
    logger.error(f"Unknown command: {args.command}")
    return 2


def _build_arg_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="prompt-runner",
        description="Run natural-language browser tests on a remote service and manage prompt history.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run "Open https://example.com and check the title"
  %(prog)s run --file login.txt --base-url http://runner:8080
  %(prog)s history --favorites
  %(prog)s favorite 3f2a...
        """,
    )
    parser.add_argument("--config", help="Path to config file (default: prompt_runner.json if exists)")
    parser.add_argument("--base-url", help="Base URL of the remote execution service")
    parser.add_argument("--history-path", help="File holding prompt history")
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress non-essential output")

    commands = parser.add_subparsers(dest="command", required=True)

    run_parser = commands.add_parser("run", help="Submit a prompt and stream the run")
    run_parser.add_argument("prompt", nargs="?", help="Prompt text")
    run_parser.add_argument("--file", help="Read the prompt from this file")

    history_parser = commands.add_parser("history", help="List stored prompts")
    only = history_parser.add_mutually_exclusive_group()
    only.add_argument("--favorites", action="store_true", help="Only list favorites")
    only.add_argument("--recent", action="store_true", help="Only list non-favorites")
    history_parser.add_argument("--json", action="store_true", help="Print JSON")

    for name, help_text in (
        ("favorite", "Toggle the favorite flag of a stored prompt"),
        ("delete", "Delete a stored prompt"),
        ("copy", "Copy a stored prompt to the clipboard (stdout)"),
        ("show", "Print a stored prompt in full"),
    ):
        entry_parser = commands.add_parser(name, help=help_text)
        entry_parser.add_argument("id", help="Stored prompt id")

    commands.add_parser("example", help="Print an example prompt")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    parser = _build_arg_parser()
    args = parser.parse_args(argv)

    log_file = Path(args.log_file) if args.log_file else None
    logger = configure_logging(args.verbose, args.quiet, log_file)

    try:
        exit_code = run_from_cli_args(args, logger)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 130
    except PromptRunnerError as exc:
        logger.error(f"Error: {exc}")
        exit_code = 1
    except Exception as exc:
        logger.exception(f"Unexpected error: {exc}")
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
