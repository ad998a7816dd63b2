"""Read-only view of the project's package graph.

Only the root package name and the set of declared package names are needed by
the command layer, so that is all this reads from ``pyproject.toml``.
"""

from __future__ import annotations

import re
import tomllib
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from kiln.errors import KilnConfigError

_NAME_RE = re.compile(r"^\s*([A-Za-z0-9](?:[A-Za-z0-9._-]*[A-Za-z0-9])?)")
_SEPARATORS_RE = re.compile(r"[-_.]+")


def canonicalize_name(name: str) -> str:
    return _SEPARATORS_RE.sub("-", name).lower()


def requirement_name(requirement: str) -> str | None:
    """Return the distribution name of a PEP 508 requirement string."""
    m = _NAME_RE.match(requirement or "")
    return canonicalize_name(m.group(1)) if m else None


def _iter_requirements(data: dict) -> Iterable[str]:
    project = data.get("project", {})
    yield from project.get("dependencies", [])
    for reqs in project.get("optional-dependencies", {}).values():
        yield from reqs
    for reqs in data.get("dependency-groups", {}).values():
        # Groups may also hold {include-group = "..."} tables.
        yield from (r for r in reqs if isinstance(r, str))


@dataclass(frozen=True, slots=True)
class PackageGraph:
    root: str
    packages: frozenset[str]

    @classmethod
    def from_names(cls, root: str, names: Iterable[str] = ()) -> PackageGraph:
        root_name = canonicalize_name(root)
        return cls(
            root=root_name,
            packages=frozenset({root_name, *(canonicalize_name(n) for n in names)}),
        )

    @classmethod
    def for_project(cls, project_root: Path) -> PackageGraph:
        path = project_root / "pyproject.toml"
        if not path.is_file():
            raise KilnConfigError(f"No pyproject.toml found in {project_root}.")
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except tomllib.TOMLDecodeError as e:
            raise KilnConfigError(f"Invalid TOML in {path}: {e}") from e

        name = data.get("project", {}).get("name")
        if not isinstance(name, str) or not name.strip():
            raise KilnConfigError(f"{path} does not declare [project].name.")

        deps = [n for n in map(requirement_name, _iter_requirements(data)) if n]
        return cls.from_names(name, deps)

    def has(self, name: str) -> bool:
        return canonicalize_name(name) in self.packages
