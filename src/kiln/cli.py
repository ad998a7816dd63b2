"""CLI entry point for kiln.

Shape it, then fire it -- one command per way of running the build.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kiln import __version__
from kiln.diagnostics import format_error_with_hint
from kiln.errors import EXIT_CONFIG, EXIT_FAILURE, EXIT_OK, EXIT_USAGE, KilnConfigError
from kiln.logs import configure_logging

if TYPE_CHECKING:  # pragma: no cover
    from kiln.config import KilnConfig
    from kiln.packages import PackageGraph


def _add_shared_flags(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--assume-tty",
        action=argparse.BooleanOptionalAction,
        default=False,
        help=(
            "Enable colors and interactive input even when the output does not look "
            "like a terminal, for instance when running as a subprocess."
        ),
    )
    p.add_argument(
        "--delete-conflicting-outputs",
        action="store_true",
        help=(
            "Delete files that already exist but were not generated by this build "
            "instead of prompting. Meant for CI and tests."
        ),
    )
    p.add_argument(
        "--low-resources-mode",
        action="store_true",
        help="Use less memory at the cost of slower builds.",
    )
    p.add_argument(
        "-c",
        "--config",
        type=str,
        default=None,
        metavar="KEY",
        help="Read build.<KEY>.yaml instead of the default build.yaml.",
    )
    p.add_argument(
        "--fail-on-severe",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Treat any error logged during the build as a build failure.",
    )
    p.add_argument(
        "--track-performance",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Enable build performance tracking.",
    )
    p.add_argument(
        "--skip-build-script-check",
        action="store_true",
        help=argparse.SUPPRESS,
    )
    p.add_argument(
        "-o",
        "--output",
        action="append",
        default=[],
        metavar="[ROOT:]DIR",
        help=(
            "Write the build result to DIR, or only the top-level ROOT directory "
            'of the package to DIR (for example "web:deploy"). Repeatable.'
        ),
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging.")
    p.add_argument(
        "-r",
        "--release",
        action=argparse.BooleanOptionalAction,
        default=False,
        help="Build with release mode defaults for builders.",
    )
    p.add_argument(
        "--define",
        action="append",
        default=[],
        metavar="BUILDER_KEY=OPTION=VALUE",
        help="Set a builder option for this invocation; VALUE is parsed as JSON when it can be.",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kiln", description="Unified interface for running incremental builds."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    build_p = subparsers.add_parser(
        "build", help="Perform a single build on the specified targets and exit."
    )
    _add_shared_flags(build_p)

    watch_p = subparsers.add_parser(
        "watch", help="Build, then rebuild as the file system changes."
    )
    _add_shared_flags(watch_p)

    serve_p = subparsers.add_parser(
        "serve",
        help="Run development servers for the built targets while watching for changes.",
        usage="%(prog)s [options] [<directory>[:<port>]]...",
    )
    _add_shared_flags(serve_p)
    serve_p.add_argument(
        "--hostname", type=str, default="localhost", help="Host name to serve on."
    )
    serve_p.add_argument(
        "--log-requests", action="store_true", help="Log every request to the servers."
    )
    serve_p.add_argument(
        "targets",
        nargs="*",
        metavar="<directory>[:<port>]",
        help="Directories to serve; ports default to 8080 upward.",
    )

    test_p = subparsers.add_parser(
        "test",
        help="Perform a single build, then run the tests against the built output.",
        usage="%(prog)s [options] [-- <test runner args>]",
    )
    _add_shared_flags(test_p)
    test_p.add_argument(
        "test_args",
        nargs="*",
        metavar="<test runner args>",
        help="Passed through to the test runner unchanged.",
    )

    subparsers.add_parser(
        "clean",
        help="Remove output from previous builds. Does not touch --output directories.",
    )

    return parser


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = _build_parser()
    args, extras = parser.parse_known_args(argv)
    if extras:
        # Serve targets may be interleaved with options.
        if args.command == "serve" and not any(e.startswith("-") for e in extras):
            args.targets = [*args.targets, *extras]
        else:
            parser.error(f"unrecognized arguments: {' '.join(extras)}")
    return args


@dataclass(frozen=True, slots=True)
class _Project:
    root: Path
    config: KilnConfig
    package_graph: PackageGraph


def _load_project() -> _Project:
    from kiln.config import find_project_root, load_config
    from kiln.packages import PackageGraph

    root = find_project_root(Path.cwd())
    return _Project(
        root=root,
        config=load_config(root=root),
        package_graph=PackageGraph.for_project(root),
    )


def _eprint(msg: str) -> None:
    print(msg, file=sys.stderr)


def _print_error(e: BaseException) -> None:
    _eprint(format_error_with_hint(e))


def _run(
    args: argparse.Namespace,
    make: Callable[[_Project, argparse.Namespace], Coroutine[Any, Any, int]],
) -> int:
    """Load the project, build the command coroutine, and run it to completion.

    Everything that can reject the invocation happens inside ``make`` before
    the coroutine is scheduled.
    """
    try:
        project = _load_project()
        coro = make(project, args)
    except KilnConfigError as e:
        _print_error(e)
        return EXIT_CONFIG

    try:
        return asyncio.run(coro)
    except KilnConfigError as e:
        _print_error(e)
        return EXIT_CONFIG
    except OSError as e:
        _print_error(e)
        return EXIT_FAILURE


def _engine(project: _Project):
    from kiln.engine import load_engine

    return load_engine(project.config, project_root=project.root)


def _shared_options(project: _Project, args: argparse.Namespace):
    from kiln.options import SharedOptions

    options = SharedOptions.from_args(args, root_package=project.package_graph.root)
    configure_logging(verbose=options.verbose)
    return options


def cmd_build(args: argparse.Namespace) -> int:
    from kiln import commands

    def make(project: _Project, args: argparse.Namespace):
        options = _shared_options(project, args)
        return commands.build(
            options, engine=_engine(project), package_graph=project.package_graph
        )

    return _run(args, make)


def cmd_watch(args: argparse.Namespace) -> int:
    from kiln import commands

    def make(project: _Project, args: argparse.Namespace):
        options = _shared_options(project, args)
        return commands.watch(
            options, engine=_engine(project), package_graph=project.package_graph
        )

    try:
        return _run(args, make)
    except KeyboardInterrupt:
        _eprint("\n[watch] stopped.")
        return EXIT_OK


def cmd_serve(args: argparse.Namespace) -> int:
    from kiln import commands
    from kiln.options import ServeOptions

    def make(project: _Project, args: argparse.Namespace):
        options = ServeOptions.from_args(
            args, root_package=project.package_graph.root, project_root=project.root
        )
        configure_logging(verbose=options.verbose)
        return commands.serve(
            options,
            engine=_engine(project),
            package_graph=project.package_graph,
            config=project.config,
        )

    try:
        return _run(args, make)
    except KeyboardInterrupt:
        _eprint("\n[serve] stopped.")
        return EXIT_OK


def cmd_test(args: argparse.Namespace) -> int:
    from kiln import commands

    def make(project: _Project, args: argparse.Namespace):
        options = _shared_options(project, args)
        return commands.test(
            options,
            list(args.test_args or []),
            engine=_engine(project),
            package_graph=project.package_graph,
            config=project.config,
        )

    return _run(args, make)


def cmd_clean(args: argparse.Namespace) -> int:
    from kiln import commands
    from kiln.config import CONFIG_FILENAME, KilnConfig, find_project_root, load_config

    logger = configure_logging()
    try:
        root = find_project_root(Path.cwd())
    except KilnConfigError:
        root = Path.cwd().resolve()
    try:
        cfg = load_config(root=root)
    except KilnConfigError as e:
        logger.warning("Ignoring invalid %s, cleaning default paths: %s", CONFIG_FILENAME, e)
        cfg = KilnConfig()
    try:
        return asyncio.run(commands.clean(project_root=root, config=cfg))
    except OSError as e:
        _print_error(e)
        return EXIT_FAILURE


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(list(sys.argv[1:] if argv is None else argv))
    except SystemExit as e:
        # argparse uses SystemExit for --help/--version and parse errors.
        code = e.code
        if code in (0, None):
            return EXIT_OK
        return EXIT_USAGE

    if args.command == "build":
        return cmd_build(args)
    if args.command == "watch":
        return cmd_watch(args)
    if args.command == "serve":
        return cmd_serve(args)
    if args.command == "test":
        return cmd_test(args)
    if args.command == "clean":
        return cmd_clean(args)

    return EXIT_USAGE


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
