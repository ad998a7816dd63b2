"""The kiln commands: build, watch, serve, test and clean.

Each command is a short coroutine over explicit handles (engine, package graph,
config) returning a process exit code. ``serve`` is ``watch`` with a server
lifecycle attached rather than a separate code path.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import shutil
import sys
import tempfile
from collections.abc import AsyncIterator, Sequence
from pathlib import Path
from typing import TYPE_CHECKING, TextIO

from kiln.asset_graph import AssetGraph
from kiln.diagnostics import format_error_with_hint
from kiln.engine import BuildEngine, BuildStatus
from kiln.errors import EXIT_CONFIG, EXIT_OK, KilnDependencyError, KilnError
from kiln.logs import log_timed_async
from kiln.packages import PackageGraph
from kiln.server import DevServers

if TYPE_CHECKING:  # pragma: no cover
    from kiln.config import KilnConfig
    from kiln.options import ServeOptions, SharedOptions

build_logger = logging.getLogger("kiln.build")
watch_logger = logging.getLogger("kiln.watch")
serve_logger = logging.getLogger("kiln.serve")
test_logger = logging.getLogger("kiln.test")
clean_logger = logging.getLogger("kiln.clean")


async def build(
    options: SharedOptions, *, engine: BuildEngine, package_graph: PackageGraph
) -> int:
    """Run a single build and translate its outcome into an exit code."""
    result = await engine.build(options, package_graph=package_graph)
    if result.status is BuildStatus.FAILURE:
        build_logger.debug("Build failed (%s)", result.failure_type)
    return result.exit_code


async def watch(
    options: SharedOptions,
    *,
    engine: BuildEngine,
    package_graph: PackageGraph,
    servers: DevServers | None = None,
) -> int:
    """Build continuously until the engine ends the result stream.

    With ``servers``, they are started right after the watch, announced once
    the first build is done and closed only after the stream has drained.
    """
    handle = await engine.watch(options, package_graph=package_graph)
    if servers is not None:
        try:
            await servers.start(handle)
        except BaseException:
            handle.results.stop()
            raise

    try:
        first = await handle.current_build
        watch_logger.debug("First build finished: %s", first.status.value)
        if servers is not None:
            servers.announce()
        await handle.results.drain()
        watch_logger.debug("Build results ended, shutting down")
    finally:
        if servers is not None:
            await servers.close()
    return EXIT_OK


def _ensure_dependency(
    package_graph: PackageGraph, package: str, *, purpose: str, extras: list[str] | None = None
) -> None:
    if not package_graph.has(package):
        raise KilnDependencyError(package, purpose=purpose, extras=extras)


async def serve(
    options: ServeOptions,
    *,
    engine: BuildEngine,
    package_graph: PackageGraph,
    config: KilnConfig,
    stdout: TextIO | None = None,
) -> int:
    try:
        _ensure_dependency(
            package_graph,
            config.companions.web_compilers,
            purpose="serve web output compiled by the build",
            extras=[config.companions.test],
        )
    except KilnDependencyError as e:
        # Serving still works for anything that does not need compiling.
        serve_logger.warning("%s", e)

    return await watch(
        options,
        engine=engine,
        package_graph=package_graph,
        servers=DevServers(options, stdout=stdout),
    )


def _remove_tree(path: Path) -> None:
    shutil.rmtree(path)


@contextlib.asynccontextmanager
async def _temp_output_dir() -> AsyncIterator[Path]:
    path = Path(tempfile.mkdtemp(prefix="kiln_test")).resolve()
    try:
        yield path
    finally:
        await asyncio.to_thread(_remove_tree, path)


def _process_exit_code(returncode: int) -> int:
    # asyncio reports death-by-signal as -signum; shells report 128 + signum.
    return returncode if returncode >= 0 else 128 - returncode


async def _run_tests(
    config: KilnConfig, precompiled: Path, extra_args: Sequence[str], *, stdout: TextIO
) -> int:
    print("Running tests...\n", file=stdout, flush=True)
    argv = [*config.test.command(), str(precompiled), *extra_args]
    test_logger.debug("Starting test runner: %s", argv)
    # No stream arguments: the runner shares this process's stdin/stdout/stderr.
    proc = await asyncio.create_subprocess_exec(*argv)
    try:
        returncode = await proc.wait()
    except asyncio.CancelledError:
        # The runner must be gone before its output directory is removed.
        if proc.returncode is None:
            proc.terminate()
            await proc.wait()
        raise
    return _process_exit_code(returncode)


async def test(
    options: SharedOptions,
    extra_args: Sequence[str] = (),
    *,
    engine: BuildEngine,
    package_graph: PackageGraph,
    config: KilnConfig,
    stdout: TextIO | None = None,
) -> int:
    """Build into a fresh temporary directory, then run the test runner on it.

    The directory is removed on every path out of this function.
    """
    out = stdout or sys.stdout
    async with _temp_output_dir() as tmp:
        try:
            _ensure_dependency(
                package_graph,
                config.companions.test,
                purpose="run tests",
                extras=[config.companions.web_compilers],
            )
        except KilnDependencyError as e:
            print(format_error_with_hint(e), file=sys.stderr)
            return EXIT_CONFIG

        result = await engine.build(options.with_output(str(tmp)), package_graph=package_graph)
        if result.status is BuildStatus.FAILURE:
            print("Skipping tests due to build failure", file=out)
            return result.exit_code

        code = await _run_tests(config, tmp, extra_args, stdout=out)
        if code != 0:
            # The runner already printed its failures.
            test_logger.debug("Test runner exited with %d", code)
        return code


def _delete_source_output(project_root: Path, relpath: str) -> bool:
    root = project_root.resolve()
    path = (root / relpath).resolve()
    if root not in path.parents:
        clean_logger.warning("Refusing to delete %s: outside the project root.", relpath)
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as e:
        clean_logger.warning("Could not delete %s: %s", relpath, e)
        return False
    clean_logger.debug("Deleted %s", relpath)
    return True


async def _clean_source_outputs(
    project_root: Path, config: KilnConfig, package_graph: PackageGraph | None
) -> None:
    graph_path = project_root / config.paths.asset_graph
    if not graph_path.is_file():
        clean_logger.warning("No asset graph found, skipping generated to source file cleanup")
        return

    try:
        asset_graph = AssetGraph.deserialize(await asyncio.to_thread(graph_path.read_bytes))
        if package_graph is None:
            package_graph = PackageGraph.for_project(project_root)
    except (KilnError, OSError) as e:
        clean_logger.warning(
            "Could not read build metadata, skipping generated to source file cleanup: %s", e
        )
        return

    deleted = 0
    for asset in asset_graph.outputs_for(package_graph.root):
        if not (asset.generated_to_source and asset.was_output):
            continue
        if await asyncio.to_thread(_delete_source_output, project_root, asset.path):
            deleted += 1
    clean_logger.info("Deleted %d generated source file(s)", deleted)


async def _clean_cache_dir(cache_dir: Path) -> None:
    if cache_dir.is_dir():
        await asyncio.to_thread(shutil.rmtree, cache_dir)


async def clean(
    *, project_root: Path, config: KilnConfig, package_graph: PackageGraph | None = None
) -> int:
    """Delete generated-to-source files and the build cache. Never runs a build.

    ``--output`` directories are left alone.
    """
    clean_logger.warning(
        "Deleting cache and generated source files.\n"
        "This shouldn't be necessary for most applications, unless you have made "
        "intentional edits to generated files (i.e. for testing). If you are using "
        "this to work around an apparent (and reproducible) bug, please report it."
    )

    try:
        await log_timed_async(
            clean_logger,
            "Cleaning up source outputs",
            lambda: _clean_source_outputs(project_root, config, package_graph),
        )
    except OSError as e:
        clean_logger.warning("Skipping the rest of generated to source file cleanup: %s", e)
    finally:
        # The cache goes regardless of how the source outputs fared.
        await log_timed_async(
            clean_logger,
            "Cleaning up cache directory",
            lambda: _clean_cache_dir(project_root / config.paths.cache_dir),
        )
    return EXIT_OK
