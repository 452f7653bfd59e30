"""
xcontext: assemble a structured context document for an LLM.

Usage
-----
Run `python -m xcontext.cli --help` for full options. Common examples:
    - Generate with the project's config file:
        uv run python -m xcontext.cli generate
    - YAML on stdout, no gitignore:
        uv run python -m xcontext.cli generate --format yaml --no-use-gitignore --stdout
    - Split source files into 5MB chunks:
        uv run python -m xcontext.cli generate --chunk-size 5MB
    - Regenerate on every change:
        uv run python -m xcontext.cli watch --delay 500ms
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from xcontext import __version__
from xcontext.exceptions import XContextError
from xcontext.logging import RunContext, setup_logging
from xcontext.pipeline import deliver, run_generation
from xcontext.settings import Settings, determine_project_root, load_config
from xcontext.watch import WatchSession, watch_project

if TYPE_CHECKING:
    from collections.abc import Sequence

SUBCOMMANDS = frozenset({"generate", "watch"})


def _common_arguments() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(add_help=False)
    p.add_argument(
        "project_root",
        nargs="?",
        type=Path,
        default=None,
        help="Project root (default: PROJECT_ROOT or CWD).",
    )
    p.add_argument("-c", "--config", dest="config_file", type=str, default=None, help="Config file path or name.")
    p.add_argument("--no-config", action="store_true", help="Ignore every config file.")
    p.add_argument("--log-file", type=str, default="", help="Log file path.")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable).")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log warnings and errors.")
    p.add_argument("-j", "--max-workers", type=int, default=None, help="Worker threads for traversal and reads.")
    p.add_argument("--stdout", action="store_true", help="Print the document instead of saving it.")
    p.add_argument("-o", "--output-file", type=Path, default=None, help="Write the document to this file.")

    p.add_argument("-f", "--format", choices=["json", "yaml", "yml", "xml"], default=None, help="Output format.")
    p.add_argument("--minify", action=argparse.BooleanOptionalAction, default=None, help="Minify JSON output.")
    p.add_argument("--chunk-size", type=str, default=None, help="Split source files into chunks, e.g. 5MB.")
    p.add_argument(
        "--use-gitignore",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Apply .gitignore rules.",
    )
    p.add_argument(
        "--builtin-ignore",
        dest="enable_builtin_ignore",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Apply the built-in ignore lists.",
    )
    p.add_argument("--project-name", type=str, default=None, help="Project name.")
    p.add_argument("--output-dir", type=str, default=None, help="Directory for saved output and chunks.")

    p.add_argument("-i", "--include", action="append", default=[], help="Include glob for every section.")
    p.add_argument("-e", "--exclude", action="append", default=[], help="Exclude glob for every section.")
    for section in ("source", "tree", "docs"):
        p.add_argument(f"--{section}-include", action="append", default=[], help=f"Include glob for {section}.")
        p.add_argument(f"--{section}-exclude", action="append", default=[], help=f"Exclude glob for {section}.")
    p.add_argument(
        "--set",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override any config key, e.g. --set output.include_system_info=false.",
    )
    return p


def parse_args(argv: Sequence[str] | None = None) -> Settings:
    common = _common_arguments()
    p = argparse.ArgumentParser(
        prog="xcontext",
        description="Assemble a structured context document of a project for LLM tooling.",
    )
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = p.add_subparsers(dest="command")
    sub.add_parser("generate", parents=[common], help="Generate the context document once.")
    watch = sub.add_parser("watch", parents=[common], help="Regenerate on every change.")
    watch.add_argument("--delay", type=str, default=None, help="Debounce delay, e.g. 300ms.")

    args_list = _with_leading_command(list(sys.argv[1:] if argv is None else argv), common)
    args = p.parse_args(args_list)
    return Settings(**vars(args))


def _with_leading_command(args: list[str], common: argparse.ArgumentParser) -> list[str]:
    """Move the subcommand to the front, or prepend `generate` when there is none.

    Options may come before the subcommand (`xcontext -v watch`); the first
    token that is neither an option nor an option's value decides.
    """
    takes_value = {
        option
        for action in common._actions  # noqa: SLF001
        if action.nargs != 0
        for option in action.option_strings
    }
    expects_value = False
    for index, token in enumerate(args):
        if expects_value:
            expects_value = False
            continue
        if token in {"-h", "--help", "--version"}:
            return args
        if token.startswith("-"):
            expects_value = token in takes_value
            continue
        if token in SUBCOMMANDS:
            return [token, *args[:index], *args[index + 1 :]]
        break
    return ["generate", *args]


def main(argv: Sequence[str] | None = None) -> int:
    settings = parse_args(argv)
    if settings.log_file:
        setup_logging(settings.log_file)
    ctx = RunContext(verbosity=settings.verbose, quiet=settings.quiet, max_workers=settings.max_workers)

    try:
        overrides = settings.overrides()
        root = determine_project_root(settings.project_root)
        config = load_config(root, overrides, config_file=settings.config_file, disable_config=settings.no_config)
        if settings.command == "watch":
            session = WatchSession(
                config,
                ctx=ctx,
                overrides=overrides,
                config_file=settings.config_file,
                disable_config=settings.no_config,
                to_stdout=settings.stdout,
                output_file=settings.output_file,
            )
            watch_project(session)
            return 0
        result = run_generation(config, ctx=ctx, output_file=settings.output_file)
        deliver(result, config, ctx=ctx, to_stdout=settings.stdout, output_file=settings.output_file)
    except XContextError as exc:
        ctx.log.error("xcontext_failed", error=str(exc), error_type=type(exc).__name__)
        return 1

    for problem in result.report.errors:
        ctx.log.warning("entry_error", detail=problem)
    if not settings.stdout and not settings.quiet:
        written = ", ".join(str(path) for path in result.report.files_written)
        print(f"Wrote {written} format={config.output.format} skipped={len(result.report.skipped)}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
