"""The boundary between the command layer and the incremental build engine.

The engine itself (graph construction, change detection, running builders) is
out of kiln's hands: commands only see ``BuildEngine.build`` and
``BuildEngine.watch`` and the results they hand back.
"""

from __future__ import annotations

import asyncio
import importlib
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, cast

from kiln.errors import EXIT_FAILURE, EXIT_OK, KilnConfigError, KilnStreamError

if TYPE_CHECKING:  # pragma: no cover
    from starlette.types import ASGIApp

    from kiln.config import KilnConfig
    from kiln.options import SharedOptions
    from kiln.packages import PackageGraph


class BuildStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class FailureType(Enum):
    GENERAL = "general"
    CANT_CREATE = "cant_create"
    BUILD_CONFIG_CHANGED = "build_config_changed"
    BUILD_SCRIPT_CHANGED = "build_script_changed"

    @property
    def exit_code(self) -> int:
        return _FAILURE_EXIT_CODES[self]


_FAILURE_EXIT_CODES: dict[FailureType, int] = {
    FailureType.GENERAL: EXIT_FAILURE,
    FailureType.CANT_CREATE: 73,
    # Both "changed" failures ask the caller to simply run the build again.
    FailureType.BUILD_CONFIG_CHANGED: 75,
    FailureType.BUILD_SCRIPT_CHANGED: 75,
}


@dataclass(frozen=True, slots=True)
class BuildResult:
    status: BuildStatus
    failure_type: FailureType | None = None

    @classmethod
    def success(cls) -> BuildResult:
        return cls(BuildStatus.SUCCESS)

    @classmethod
    def failure(cls, failure_type: FailureType = FailureType.GENERAL) -> BuildResult:
        return cls(BuildStatus.FAILURE, failure_type)

    @property
    def exit_code(self) -> int:
        if self.status is BuildStatus.SUCCESS:
            return EXIT_OK
        return (self.failure_type or FailureType.GENERAL).exit_code


_CLOSED = object()


class BuildResultStream:
    """Ordered results of the builds that follow the first one in a watch.

    Single subscription: it can be iterated once. The engine ends it with
    ``close()``; a consumer that wants to stop early calls ``stop()``, after
    which any pending or later results are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._stopped = False
        self._listened = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stopped(self) -> bool:
        return self._stopped

    def publish(self, result: BuildResult) -> None:
        if self._stopped:
            return
        if self._closed:
            raise KilnStreamError("Cannot publish a build result after the stream was closed.")
        self._queue.put_nowait(result)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def stop(self) -> None:
        self._stopped = True
        self.close()

    def __aiter__(self) -> AsyncIterator[BuildResult]:
        if self._listened:
            raise KilnStreamError("Build results have already been listened to.")
        self._listened = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[BuildResult]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED or self._stopped:
                return
            yield cast(BuildResult, item)

    async def drain(self) -> None:
        """Consume every result until the stream ends, discarding them."""
        async for _ in self:
            pass


class WatchHandle:
    """What a running watch gives back to the command that started it."""

    def __init__(
        self,
        *,
        current_build: asyncio.Future[BuildResult],
        results: BuildResultStream,
        output_root: Path,
    ) -> None:
        self.current_build = current_build
        self.results = results
        self.output_root = output_root

    def handler_for(self, directory: str, *, log_requests: bool = False) -> ASGIApp:
        """Return an ASGI app serving the built contents of ``directory``."""
        from starlette.staticfiles import StaticFiles

        from kiln.server import RequestLogger

        app: ASGIApp = StaticFiles(
            directory=self.output_root / directory, html=True, check_dir=False
        )
        if log_requests:
            app = RequestLogger(app)
        return app


class BuildEngine(ABC):
    @abstractmethod
    async def build(self, options: SharedOptions, *, package_graph: PackageGraph) -> BuildResult:
        """Run a single build to completion."""

    @abstractmethod
    async def watch(self, options: SharedOptions, *, package_graph: PackageGraph) -> WatchHandle:
        """Start continuous builds and return once the watch is running.

        The returned handle's ``current_build`` resolves after the first build.
        """


def _prepend_sys_path(d: Path) -> None:
    # Engine factories usually live in the project being built.
    s = str(d.resolve())
    if s not in sys.path:
        sys.path.insert(0, s)


def load_engine(config: KilnConfig, *, project_root: Path) -> BuildEngine:
    ref = config.engine.factory
    if not ref:
        raise KilnConfigError(
            "No build engine configured. Set `factory = \"module:attribute\"` "
            "under [engine] in kiln.toml."
        )

    module_name, _, attr = ref.partition(":")
    _prepend_sys_path(project_root)
    try:
        target: object = importlib.import_module(module_name)
    except ImportError as e:
        raise KilnConfigError(f"Could not import engine module {module_name!r}: {e}") from e
    for part in attr.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise KilnConfigError(f"Engine factory {ref!r} does not exist.") from None
    if not callable(target):
        raise KilnConfigError(f"Engine factory {ref!r} is not callable.")

    engine = target(project_root=project_root, config=config)
    if not isinstance(engine, BuildEngine):
        raise KilnConfigError(
            f"Engine factory {ref!r} returned {type(engine).__name__}, expected a BuildEngine."
        )
    return engine
