"""Development HTTP servers for ``kiln serve``.

One uvicorn server per serve target, each on sockets bound up front so that a
bad port fails the command instead of a background task.
"""

from __future__ import annotations

import asyncio
import contextlib
import errno
import logging
import socket
import sys
import time
from collections.abc import Iterator
from typing import TYPE_CHECKING, TextIO

import uvicorn

if TYPE_CHECKING:  # pragma: no cover
    from starlette.types import ASGIApp, Message, Receive, Scope, Send

    from kiln.engine import WatchHandle
    from kiln.options import ServeOptions, ServeTarget

logger = logging.getLogger("kiln.serve")
request_logger = logging.getLogger("kiln.server")

# IPv6 may be compiled in but unusable on the host; that is not a bind failure.
_IPV6_UNAVAILABLE = {errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT}


def _close_all(socks: list[socket.socket]) -> None:
    for s in socks:
        s.close()


def _bind_optional_ipv6(host: str, port: int, socks: list[socket.socket]) -> None:
    if not socket.has_ipv6:
        return
    try:
        socks.append(socket.create_server((host, port), family=socket.AF_INET6))
    except OSError as e:
        if e.errno in _IPV6_UNAVAILABLE:
            logger.debug("IPv6 %s unavailable, serving IPv4 only: %s", host, e)
            return
        _close_all(socks)
        raise


def _bind_any(port: int) -> list[socket.socket]:
    if socket.has_dualstack_ipv6():
        return [socket.create_server(("::", port), family=socket.AF_INET6, dualstack_ipv6=True)]
    socks = [socket.create_server(("0.0.0.0", port))]
    _bind_optional_ipv6("::", socks[0].getsockname()[1], socks)
    return socks


def _bind_loopback(port: int) -> list[socket.socket]:
    socks = [socket.create_server(("127.0.0.1", port))]
    # Port 0: share whatever port the OS picked for IPv4.
    _bind_optional_ipv6("::1", socks[0].getsockname()[1], socks)
    return socks


def bind_sockets(hostname: str, port: int) -> list[socket.socket]:
    """Bind listening sockets for ``hostname``.

    ``any`` binds the IPv4 and IPv6 wildcard addresses, ``localhost`` binds the
    loopback interface on every available address family, and any other value
    binds exactly that host.
    """
    if hostname == "any":
        return _bind_any(port)
    if hostname == "localhost":
        return _bind_loopback(port)
    family, _, _, _, sockaddr = socket.getaddrinfo(hostname, port, type=socket.SOCK_STREAM)[0]
    return [socket.create_server(sockaddr, family=family)]


class RequestLogger:
    """ASGI middleware logging one line per HTTP request."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        start = time.perf_counter()
        status = 500

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            request_logger.info(
                "%s %s %s %dms", scope["method"], scope["path"], status, elapsed_ms
            )


class _Server(uvicorn.Server):
    # Several servers share one event loop; the command owns signal handling.
    @contextlib.contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield


class DevServer:
    def __init__(self, app: ASGIApp, sockets: list[socket.socket], *, directory: str) -> None:
        config = uvicorn.Config(app, log_config=None, access_log=False, lifespan="off")
        self.directory = directory
        self.port: int = sockets[0].getsockname()[1]
        self._server = _Server(config)
        self._sockets = sockets
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start serving and return once uvicorn accepts connections."""
        task = asyncio.create_task(self._server.serve(sockets=self._sockets))
        self._task = task
        while not self._server.started:
            if task.done():
                self._task = None
                _close_all(self._sockets)
                task.result()
                raise OSError(f"Server for '{self.directory}' exited during startup.")
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        if self._task is None:
            _close_all(self._sockets)
            return
        self._server.should_exit = True
        try:
            await self._task
        finally:
            self._task = None
            _close_all(self._sockets)


async def start_server(options: ServeOptions, target: ServeTarget, handle: WatchHandle) -> DevServer:
    sockets = await asyncio.to_thread(bind_sockets, options.hostname, target.port)
    app = handle.handler_for(target.directory, log_requests=options.log_requests)
    server = DevServer(app, sockets, directory=target.directory)
    await server.start()
    return server


class DevServers:
    """Server lifecycle attached to a watch: start, announce, close."""

    def __init__(self, options: ServeOptions, *, stdout: TextIO | None = None) -> None:
        self._options = options
        self._stdout = stdout
        self._servers: list[DevServer] = []

    @property
    def servers(self) -> list[DevServer]:
        return list(self._servers)

    async def start(self, handle: WatchHandle) -> None:
        """Bind and start every target concurrently.

        All binds run to completion even when one fails; the servers that did
        start are then closed again and the first failure is raised.
        """
        results = await asyncio.gather(
            *(start_server(self._options, t, handle) for t in self._options.serve_targets),
            return_exceptions=True,
        )
        started = [r for r in results if isinstance(r, DevServer)]
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            await asyncio.gather(*(s.close() for s in started))
            raise errors[0]
        self._servers = started

    def announce(self) -> None:
        if not self._options.serve_targets:
            logger.warning(
                "Found no known web directories to serve, but running in `serve` mode. "
                "You may explicitly provide a directory to serve with trailing args in "
                "<dir>[:<port>] format."
            )
            return

        out = self._stdout or sys.stdout
        ports = [s.port for s in self._servers] or [t.port for t in self._options.serve_targets]
        for target, port in zip(self._options.serve_targets, ports, strict=True):
            print(
                f"Serving '{target.directory}' on http://{self._options.hostname}:{port}",
                file=out,
            )

    async def close(self) -> None:
        servers, self._servers = self._servers, []
        await asyncio.gather(*(s.close() for s in servers))
