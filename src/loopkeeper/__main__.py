"""CLI entrypoint for loopkeeper.

A reference host: each invocation adopts the active loop on disk as the
current loop, runs one command, prints any prompt for the worker on stdout
and the status message on stderr.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from dotenv import load_dotenv

from loopkeeper.commands import LoopCommands, StartOptions
from loopkeeper.config import load_settings
from loopkeeper.schemas import DEFAULT_REFLECT_INSTRUCTIONS, CommandResult, LoopMode

logger = logging.getLogger(__name__)


def _load_dotenv(cwd: Path) -> None:
    """Load .env from the working directory or its parent, if present."""
    for dir_ in (cwd, cwd.parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser."""
    p = argparse.ArgumentParser(
        prog="loopkeeper",
        description="loopkeeper - keep a long-running agent loop on track across many iterations.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging.")
    p.add_argument("--cwd", type=str, default="", help="Working directory (default: LOOPKEEPER_HOME or cwd).")

    sub = p.add_subparsers(dest="command")

    start_p = sub.add_parser("start", help="Start a new loop from a name or a task file path.")
    start_p.add_argument("name", help="Loop name, or a path to an existing task file.")
    start_p.add_argument("--mode", choices=[m.value for m in LoopMode], default=LoopMode.BUILD.value)
    start_p.add_argument("--template", type=str, default=None, help="Custom prompt template file.")
    start_p.add_argument("--items-per-iteration", type=int, default=0, help="Suggest N items per turn.")
    start_p.add_argument("--reflect-every", type=int, default=0, help="Checkpoint every N iterations.")
    start_p.add_argument(
        "--reflect-instructions",
        type=str,
        default=DEFAULT_REFLECT_INSTRUCTIONS,
        help="Instructions shown in the checkpoint block.",
    )
    start_p.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Stop after N iterations; 0 = unlimited (default: LOOPKEEPER_MAX_ITERATIONS or 50).",
    )
    start_p.add_argument(
        "--content-file",
        type=str,
        default="",
        help="Write this file's content as the loop's task document before starting.",
    )

    sub.add_parser("stop", help="Pause the current loop.")
    sub.add_parser("finish", help="End the current loop as completed.")

    resume_p = sub.add_parser("resume", help="Resume a paused loop.")
    resume_p.add_argument("name")

    sub.add_parser("done", help="Report the current iteration finished and print the next prompt.")

    output_p = sub.add_parser("output", help="Scan worker output for completion/abort markers.")
    output_p.add_argument("file", nargs="?", default="-", help="File with the worker output (default: stdin).")

    hint_p = sub.add_parser("hint", help="Add a hint for the worker.")
    hint_p.add_argument("text", nargs="*", help="Hint text.")
    hint_p.add_argument("--sticky", action="store_true", help="Repeat the hint every iteration.")
    hint_p.add_argument("--clear", action="store_true", help="Clear all hints.")

    sub.add_parser("hints", help="List active hints.")

    mode_p = sub.add_parser("mode", help="Switch execution mode.")
    mode_p.add_argument("mode", help="plan or build")

    sub.add_parser("rotate", help="Snapshot progress and print a session bootstrap prompt.")
    sub.add_parser("status", help="Show all loops and the current loop's details.")

    list_p = sub.add_parser("list", help="List loops.")
    list_p.add_argument("--archived", action="store_true")

    cancel_p = sub.add_parser("cancel", help="Delete a loop's state.")
    cancel_p.add_argument("name")

    archive_p = sub.add_parser("archive", help="Move a loop to the archive.")
    archive_p.add_argument("name")

    clean_p = sub.add_parser("clean", help="Remove completed loops.")
    clean_p.add_argument("--all", dest="all_files", action="store_true", help="Also remove task, history and log files.")

    nuke_p = sub.add_parser("nuke", help="Delete the whole state directory.")
    nuke_p.add_argument("--yes", action="store_true", help="Confirm deletion.")

    sub.add_parser("addendum", help="Print the system-prompt addendum for the current loop.")
    return p


def _read_output(source: str) -> str:
    if source == "-":
        return sys.stdin.read()
    return Path(source).read_text(encoding="utf-8", errors="replace")


def _emit(result: CommandResult) -> int:
    if result.message:
        print(result.message, file=sys.stderr)
    if result.prompt:
        print(result.prompt)
    return 0 if result.ok else 1


def _dispatch(args: argparse.Namespace, commands: LoopCommands) -> CommandResult:
    cmd = args.command
    if cmd == "start":
        options = StartOptions(
            max_iterations=commands.default_max_iterations if args.max_iterations is None else args.max_iterations,
            items_per_iteration=args.items_per_iteration,
            reflect_every=args.reflect_every,
            reflect_instructions=args.reflect_instructions,
            mode=args.mode,
            prompt_template=args.template,
        )
        if args.content_file:
            content = Path(args.content_file).read_text(encoding="utf-8")
            return commands.start_with_content(args.name, content, options)
        return commands.start(args.name, options)
    if cmd == "stop":
        return commands.stop()
    if cmd == "finish":
        return commands.finish()
    if cmd == "resume":
        return commands.resume(args.name)
    if cmd == "done":
        return commands.done()
    if cmd == "output":
        return commands.handle_output(_read_output(args.file))
    if cmd == "hint":
        if args.clear:
            return commands.clear_hints()
        return commands.add_hint(" ".join(args.text), sticky=args.sticky)
    if cmd == "hints":
        return commands.list_hints()
    if cmd == "mode":
        return commands.set_mode(args.mode)
    if cmd == "rotate":
        return commands.rotate()
    if cmd == "status":
        return commands.status()
    if cmd == "list":
        return commands.list_loops(archived=args.archived)
    if cmd == "cancel":
        return commands.cancel(args.name)
    if cmd == "archive":
        return commands.archive(args.name)
    if cmd == "clean":
        return commands.clean(all_files=args.all_files)
    if cmd == "nuke":
        return commands.nuke(confirm=args.yes)
    if cmd == "addendum":
        addendum = commands.system_addendum()
        if addendum is None:
            return CommandResult.warning("No active loop.")
        return CommandResult.info("", prompt=addendum)
    raise ValueError(f"unknown command: {cmd}")


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the requested command."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup -------------------------------------------------------
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    if not args.command:
        parser.print_help()
        print(
            "\nTip: run 'loopkeeper start <name>' to begin a loop,\n"
            "     'loopkeeper done' after each iteration,\n"
            "     or 'loopkeeper status' to inspect existing loops.",
            file=sys.stderr,
        )
        return 1

    cwd = Path(args.cwd).expanduser() if args.cwd else Path.cwd()
    _load_dotenv(cwd)
    settings = load_settings()
    if args.cwd:
        if not cwd.is_dir():
            print(f"Error: --cwd {args.cwd} is not a directory", file=sys.stderr)
            return 1
        settings = settings.model_copy(update={"home": cwd})
    logger.debug("Settings: %s", settings)
    if settings.prompt_debug:
        # Full prompt text is logged at DEBUG by the renderer.
        logging.getLogger("loopkeeper.prompts").setLevel(logging.DEBUG)

    commands = LoopCommands.from_settings(settings)
    commands.restore_session()

    try:
        result = _dispatch(args, commands)
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return _emit(result)


if __name__ == "__main__":
    raise SystemExit(main())
