"""Fire what you shaped: command orchestration for incremental builds."""

from __future__ import annotations

__version__ = "0.1.0"
