"""Error types and process exit codes shared by every kiln command."""

from __future__ import annotations

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 64
EXIT_CONFIG = 78


class KilnError(Exception):
    """Base class for all kiln errors."""


class KilnConfigError(KilnError):
    """Invalid command-line input or project configuration."""


class KilnDependencyError(KilnConfigError):
    """A companion package required by a command is not declared."""

    def __init__(self, package: str, *, purpose: str, extras: list[str] | None = None) -> None:
        self.package = package
        self.purpose = purpose
        lines = [
            f"Missing dev dependency on {package}, which is required to {purpose}.",
            "",
            "Please update the dev dependencies in your pyproject.toml:",
            "",
            "  [dependency-groups]",
            "  dev = [",
            '      "kiln",',
            f'      "{package}",',
        ]
        for extra in extras or []:
            lines.append(f'      "{extra}",')
        lines.append("  ]")
        super().__init__("\n".join(lines))


class KilnStreamError(KilnError):
    """A build result stream was used in a way it does not support."""
