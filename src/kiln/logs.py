"""Logging setup for the CLI and timed log phases."""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")

_FORMAT = "[%(levelname)s] %(name)s: %(message)s"
_HANDLER_NAME = "kiln-stderr"


def configure_logging(*, verbose: bool = False) -> logging.Logger:
    """Attach a single stderr handler to the ``kiln`` logger.

    Calling it again only updates the level and points the handler at the
    current ``sys.stderr``.
    """
    logger = logging.getLogger("kiln")
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    for h in logger.handlers:
        if h.get_name() == _HANDLER_NAME and isinstance(h, logging.StreamHandler):
            h.setStream(sys.stderr)
            return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_FORMAT))
    logger.addHandler(handler)
    return logger


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


async def log_timed_async(
    logger: logging.Logger, description: str, action: Callable[[], Awaitable[T]]
) -> T:
    logger.info("%s...", description)
    start = time.perf_counter()
    try:
        result = await action()
    except BaseException:
        logger.error("%s failed after %dms", description, _elapsed_ms(start))
        raise
    logger.info("%s completed, took %dms", description, _elapsed_ms(start))
    return result
