"""Human-readable rendering of errors for stderr."""

from __future__ import annotations

from kiln.errors import KilnConfigError, KilnDependencyError, KilnError

_HINTS: list[tuple[type[BaseException], str]] = [
    (KilnDependencyError, "add the package above, then re-run the command"),
    (KilnConfigError, "run `kiln <command> --help` for the expected argument formats"),
]


def format_error_with_hint(e: BaseException) -> str:
    lines = [f"error: {e}"]
    for exc_type, hint in _HINTS:
        if isinstance(e, exc_type):
            lines.append(f"hint: {hint}")
            break
    else:
        if not isinstance(e, KilnError):
            lines[0] = f"error: {type(e).__name__}: {e}"
    return "\n".join(lines)
