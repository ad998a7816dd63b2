"""Validated, immutable option sets built from parsed command-line arguments.

Every command reads its options exactly once, through ``SharedOptions.from_args``
or ``ServeOptions.from_args``. Malformed input fails there, before any command
side effect happens.
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import os
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any

from kiln.errors import KilnConfigError
from kiln.packages import canonicalize_name

DEFAULT_WEB_DIRS = ("web", "test", "example", "benchmark")
DEFAULT_FIRST_PORT = 8080

_DEFINE_FORMAT = '--define "<builder_key>=<option>=<value>"'

OutputMap = Mapping[str, str | None]
BuilderConfigOverrides = Mapping[str, Mapping[str, Any]]


def parse_output_map(values: Sequence[str] | None) -> OutputMap | None:
    """Map each output directory to the root input directory it is filtered to.

    ``--output build`` copies everything into ``build`` (root ``None``) while
    ``--output web:deploy`` copies only the top-level ``web`` directory into
    ``deploy``. Returns ``None`` when no ``--output`` was given.
    """
    if not values:
        return None

    result: dict[str, str | None] = {}
    for option in values:
        root, sep, output = option.partition(":")
        if not sep:
            output, root = option, None
        elif "/" in root or os.sep in root:
            raise KilnConfigError(f"Input root can not be nested: {option}")
        if output in result:
            raise KilnConfigError(f"Output directory given more than once: {output}")
        result[output] = root
    return MappingProxyType(result)


def normalize_builder_key(key: str, root_package: str) -> str:
    """Return ``<package>|<builder>``, qualifying bare keys with the root package."""
    for sep in ("|", ":"):
        package, found, builder = key.partition(sep)
        if found:
            return f"{canonicalize_name(package)}|{builder.lower()}"
    return f"{canonicalize_name(root_package)}|{key.lower()}"


def parse_builder_config_overrides(
    values: Iterable[str] | None, root_package: str
) -> BuilderConfigOverrides:
    overrides: dict[str, dict[str, Any]] = {}
    for define in values or []:
        parts = define.split("=")
        if len(parts) < 3:
            raise KilnConfigError(
                f"Invalid --define value {define!r}: expected at least 2 `=` signs, "
                f"should be of the format like {_DEFINE_FORMAT}"
            )
        # Values may contain `=` themselves.
        raw_key, option, raw_value = parts[0], parts[1], "=".join(parts[2:])

        builder_key = normalize_builder_key(raw_key, root_package)
        try:
            value: Any = json.loads(raw_value)
        except json.JSONDecodeError:
            value = raw_value

        config = overrides.setdefault(builder_key, {})
        if option in config:
            raise KilnConfigError(
                "Got duplicate overrides for the same builder option: "
                f"{builder_key}={option}. Only one is allowed."
            )
        config[option] = value

    return MappingProxyType({k: MappingProxyType(v) for k, v in overrides.items()})


@dataclass(frozen=True, slots=True)
class SharedOptions:
    """Options accepted by every build-running command."""

    # Assume stdout/stdin are a terminal even when they do not look like one.
    assume_tty: bool = False
    # Delete pre-existing files that collide with outputs instead of prompting.
    delete_conflicting_outputs: bool = False
    # Any error-level log fails the build.
    fail_on_severe: bool = False
    low_resources_mode: bool = False
    # Read `build.<config_key>.yaml` instead of `build.yaml`.
    config_key: str | None = None
    # None means no merged output directory is written.
    output_map: OutputMap | None = None
    track_performance: bool = False
    skip_build_script_check: bool = False
    verbose: bool = False
    release: bool = False
    builder_config_overrides: BuilderConfigOverrides = dataclasses.field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def _shared_kwargs(cls, args: argparse.Namespace, *, root_package: str) -> dict[str, Any]:
        return {
            "assume_tty": bool(args.assume_tty),
            "delete_conflicting_outputs": bool(args.delete_conflicting_outputs),
            "fail_on_severe": bool(args.fail_on_severe),
            "low_resources_mode": bool(args.low_resources_mode),
            "config_key": args.config,
            "output_map": parse_output_map(args.output),
            "track_performance": bool(args.track_performance),
            "skip_build_script_check": bool(args.skip_build_script_check),
            "verbose": bool(args.verbose),
            "release": bool(args.release),
            "builder_config_overrides": parse_builder_config_overrides(
                args.define, root_package
            ),
        }

    @classmethod
    def from_args(cls, args: argparse.Namespace, *, root_package: str) -> SharedOptions:
        return cls(**cls._shared_kwargs(args, root_package=root_package))

    def with_output(self, directory: str) -> SharedOptions:
        """Return a copy that also writes everything to ``directory``."""
        merged = dict(self.output_map or {})
        merged[directory] = None
        return dataclasses.replace(self, output_map=MappingProxyType(merged))


@dataclass(frozen=True, slots=True)
class ServeTarget:
    directory: str
    port: int


def _parse_port(raw: str, *, arg: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise KilnConfigError(f"Invalid port in serve target {arg!r}: {raw!r}") from None
    if not 0 <= port <= 65535:
        raise KilnConfigError(f"Port out of range in serve target {arg!r}: {port}")
    return port


def resolve_serve_targets(args: Sequence[str], *, project_root: Path) -> tuple[ServeTarget, ...]:
    """Turn ``<directory>[:<port>]`` arguments into serve targets.

    Targets without a port take 8080, 8081, ... in the order they appear;
    explicit ports do not advance that counter. With no arguments, whichever
    of the default web directories exist are served.
    """
    targets: list[ServeTarget] = []
    next_port = DEFAULT_FIRST_PORT
    for arg in args:
        parts = arg.split(":")
        if len(parts) > 2 or not parts[0]:
            raise KilnConfigError(
                f"Invalid serve target {arg!r}: expected <directory>[:<port>]."
            )
        if len(parts) == 2:
            port = _parse_port(parts[1], arg=arg)
        else:
            port = next_port
            next_port += 1
        targets.append(ServeTarget(parts[0], port))

    if not targets:
        for d in DEFAULT_WEB_DIRS:
            if (project_root / d).is_dir():
                targets.append(ServeTarget(d, next_port))
                next_port += 1

    seen: dict[int, str] = {}
    for t in targets:
        # Port 0 asks the OS for a fresh ephemeral port, so it never collides.
        if t.port and t.port in seen:
            raise KilnConfigError(
                f"Serve targets {seen[t.port]!r} and {t.directory!r} both use port {t.port}."
            )
        seen[t.port] = t.directory
    return tuple(targets)


@dataclass(frozen=True, slots=True)
class ServeOptions(SharedOptions):
    """Options for ``kiln serve``."""

    hostname: str = "localhost"
    log_requests: bool = False
    serve_targets: tuple[ServeTarget, ...] = ()

    @classmethod
    def from_args(
        cls,
        args: argparse.Namespace,
        *,
        root_package: str,
        project_root: Path | None = None,
    ) -> ServeOptions:
        return cls(
            **cls._shared_kwargs(args, root_package=root_package),
            hostname=args.hostname,
            log_requests=bool(args.log_requests),
            serve_targets=resolve_serve_targets(
                list(args.targets or []), project_root=project_root or Path.cwd()
            ),
        )
