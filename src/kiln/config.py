"""Project configuration loaded from ``kiln.toml``.

Every table is optional; a project without a ``kiln.toml`` runs on defaults.
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kiln.errors import KilnConfigError

CONFIG_FILENAME = "kiln.toml"
_ROOT_MARKERS = (CONFIG_FILENAME, "pyproject.toml")

DEFAULT_CACHE_DIR = ".kiln/build"
DEFAULT_TEST_RUNNER = ("python", "-m", "pytest")


@dataclass(frozen=True, slots=True)
class EngineConfig:
    factory: str | None = None


@dataclass(frozen=True, slots=True)
class PathsConfig:
    cache_dir: str = DEFAULT_CACHE_DIR
    asset_graph: str = f"{DEFAULT_CACHE_DIR}/asset_graph.json"


@dataclass(frozen=True, slots=True)
class RunnerConfig:
    runner: tuple[str, ...] = DEFAULT_TEST_RUNNER

    def command(self) -> list[str]:
        """Return the runner argv with a bare ``python`` bound to this interpreter."""
        argv = list(self.runner)
        if argv and argv[0] == "python":
            argv[0] = sys.executable
        return argv


@dataclass(frozen=True, slots=True)
class CompanionsConfig:
    test: str = "kiln-test"
    web_compilers: str = "kiln-web-compilers"


@dataclass(frozen=True, slots=True)
class KilnConfig:
    version: int = 1
    engine: EngineConfig = field(default_factory=EngineConfig)
    paths: PathsConfig = field(default_factory=PathsConfig)
    test: RunnerConfig = field(default_factory=RunnerConfig)
    companions: CompanionsConfig = field(default_factory=CompanionsConfig)


def find_project_root(start: Path) -> Path:
    """Walk upward from ``start`` to the first directory holding a project marker."""
    cur = start.resolve()
    for d in (cur, *cur.parents):
        if any((d / marker).is_file() for marker in _ROOT_MARKERS):
            return d
    raise KilnConfigError(
        f"Could not find {CONFIG_FILENAME} or pyproject.toml in {cur} or any parent directory."
    )


def _table(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise KilnConfigError(f"[{name}] must be a table.")
    return value


def _str(table: dict[str, Any], key: str, default: str, *, section: str) -> str:
    value = table.get(key, default)
    if not isinstance(value, str) or not value.strip():
        raise KilnConfigError(f"{section}.{key} must be a non-empty string.")
    return value


def _relative_path(value: str, *, key: str) -> str:
    p = Path(value)
    if p.is_absolute() or ".." in p.parts:
        raise KilnConfigError(f"{key} must be a relative path inside the project, got {value!r}.")
    return value


def _parse_engine(table: dict[str, Any]) -> EngineConfig:
    factory = table.get("factory")
    if factory is None:
        return EngineConfig()
    if not isinstance(factory, str) or ":" not in factory:
        raise KilnConfigError(f"engine.factory must look like 'module:attribute', got {factory!r}.")
    return EngineConfig(factory=factory)


def _parse_paths(table: dict[str, Any]) -> PathsConfig:
    cache_dir = _relative_path(
        _str(table, "cache_dir", DEFAULT_CACHE_DIR, section="paths"), key="paths.cache_dir"
    )
    asset_graph = _relative_path(
        _str(table, "asset_graph", f"{cache_dir}/asset_graph.json", section="paths"),
        key="paths.asset_graph",
    )
    return PathsConfig(cache_dir=cache_dir, asset_graph=asset_graph)


def _parse_test(table: dict[str, Any]) -> RunnerConfig:
    runner = table.get("runner", list(DEFAULT_TEST_RUNNER))
    if (
        not isinstance(runner, list)
        or not runner
        or not all(isinstance(x, str) and x for x in runner)
    ):
        raise KilnConfigError("test.runner must be a non-empty list of strings.")
    return RunnerConfig(runner=tuple(runner))


def _parse_companions(table: dict[str, Any]) -> CompanionsConfig:
    defaults = CompanionsConfig()
    return CompanionsConfig(
        test=_str(table, "test", defaults.test, section="companions"),
        web_compilers=_str(table, "web_compilers", defaults.web_compilers, section="companions"),
    )


def load_config(*, root: Path, config_path: Path | None = None) -> KilnConfig:
    path = config_path if config_path is not None else root / CONFIG_FILENAME
    if not path.exists():
        if config_path is not None:
            raise KilnConfigError(f"Config file not found: {config_path}")
        return KilnConfig()

    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise KilnConfigError(f"Invalid TOML in {path}: {e}") from e

    version = data.get("version", 1)
    if version != 1:
        raise KilnConfigError(f"Unsupported kiln.toml version: {version!r} (expected 1).")

    return KilnConfig(
        version=1,
        engine=_parse_engine(_table(data, "engine")),
        paths=_parse_paths(_table(data, "paths")),
        test=_parse_test(_table(data, "test")),
        companions=_parse_companions(_table(data, "companions")),
    )
