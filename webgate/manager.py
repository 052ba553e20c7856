"""The set of servers an application runs, keyed by port."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Iterator
from datetime import timedelta
from typing import Any

from .errors import (
    BindFailed,
    ConfigError,
    IoError,
    OperationTimeout,
    ServerAlreadyRunning,
    ServerNotFound,
)
from .server import Router, WebServer, WebServerConfig
from .server import test_bind as _test_bind
from .status import ServerStatus, WebPort
from .tasks import TaskKey

logger = logging.getLogger(__name__)

SHUTDOWN_CHECK_INTERVAL = 0.1
START_CHECK_INTERVAL = 0.01


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _is_bind_error(exc: Exception) -> bool:
    text = str(exc)
    return isinstance(exc, BindFailed) or "already in use" in text or "bind" in text


class WebServerManager:
    """Owns every configured server and drives their start, retry and shutdown.

    Mutating calls mark the manager as changed; :meth:`start_pending` acts
    only when it is, starting every server that may start.
    """

    def __init__(self) -> None:
        self._servers: dict[WebPort, WebServer] = {}
        self._changed = True

    @classmethod
    def from_config(cls, config: WebServerConfig) -> WebServerManager:
        """A manager holding one empty server at the configured address."""
        logger.debug(
            "Converting WebServerConfig to WebServerManager: %s:%s", config.ip, config.port
        )
        manager = cls()
        try:
            manager.add_server(WebServer(config.ip, config.port, Router()))
        except ServerAlreadyRunning as exc:
            logger.error("Failed to add server on %s:%s: %s", config.ip, config.port, exc)
        else:
            logger.debug("Successfully added server on %s:%s", config.ip, config.port)
        return manager

    # --- change tracking ---------------------------------------------------

    @property
    def is_changed(self) -> bool:
        return self._changed

    def mark_changed(self) -> None:
        """Make the next :meth:`start_pending` look at the servers again."""
        self._changed = True

    # --- membership ----------------------------------------------------------

    def add_server(self, server: WebServer) -> None:
        """Add a server; a busy address puts it in retry mode instead of failing.

        Raises :class:`ServerAlreadyRunning` if the port is already configured.
        """
        port = server.port
        if port in self._servers:
            raise ServerAlreadyRunning(port)
        try:
            _test_bind(server.ip, port)
        except BindFailed as exc:
            logger.warning(
                "Initial bind test failed for %s:%s, server will retry: %s",
                server.ip, port, exc,
            )
            server.set_error(str(exc))
            server.schedule_retry()
        self._servers[port] = server
        self.mark_changed()

    def remove_server(self, port: WebPort) -> None:
        server = self._servers.pop(port, None)
        if server is not None:
            server.stop()
            self.mark_changed()

    def stop_server(self, port: WebPort) -> None:
        server = self._servers.get(port)
        if server is not None:
            server.stop()
            self.mark_changed()

    def stop_all(self) -> None:
        for server in self._servers.values():
            server.stop()
        self._servers.clear()
        self.mark_changed()

    def has_server(self, port: WebPort) -> bool:
        return port in self._servers

    def get_server(self, port: WebPort) -> WebServer | None:
        return self._servers.get(port)

    def ports(self) -> list[WebPort]:
        return list(self._servers)

    def items(self) -> list[tuple[WebPort, WebServer]]:
        """Pairs of port and server."""
        return list(self._servers.items())

    def __len__(self) -> int:
        return len(self._servers)

    def __iter__(self) -> Iterator[WebPort]:
        return iter(list(self._servers))

    def __contains__(self, port: object) -> bool:
        return port in self._servers

    # --- inspection ------------------------------------------------------------

    def server_error(self, port: WebPort) -> str | None:
        """The last error recorded for the server, if any."""
        server = self._servers.get(port)
        return server.last_error if server is not None else None

    def server_failed(self, port: WebPort) -> bool:
        server = self._servers.get(port)
        return server is not None and server.status is ServerStatus.FAILED

    def server_status_report(self) -> list[tuple[WebPort, ServerStatus, str | None]]:
        """Every server's port, status and last error."""
        return [
            (port, server.status, server.last_error)
            for port, server in self._servers.items()
        ]

    def shutdown_requested(self, port: WebPort) -> bool:
        server = self._servers.get(port)
        return server is not None and server.shutdown_requested()

    def active_connections(self, port: WebPort) -> int:
        server = self._servers.get(port)
        return server.active_connections() if server is not None else 0

    def shutdown_status(self) -> dict[WebPort, tuple[bool, int]]:
        """For every port: whether shutdown was asked for, and open connections."""
        return {
            port: (server.shutdown_requested(), server.active_connections())
            for port, server in self._servers.items()
        }

    def router(self, port: WebPort) -> Router | None:
        server = self._servers.get(port)
        return server.router if server is not None else None

    def set_router(self, port: WebPort, router: Router) -> None:
        server = self._servers.get(port)
        if server is None:
            logger.error("No server found on port %s", port)
            return
        server.router = router
        self.mark_changed()

    # --- shutdown ------------------------------------------------------------

    def graceful_shutdown(self, port: WebPort) -> None:
        """Ask one server to stop accepting connections."""
        server = self._servers.get(port)
        if server is not None and server.status is not ServerStatus.SHUTTING_DOWN:
            server.graceful_shutdown()
            self.mark_changed()

    def graceful_shutdown_with_timeout(
        self, port: WebPort, timeout: float | timedelta
    ) -> asyncio.Task | None:
        """Begin a graceful shutdown and return the task that finishes it.

        The task waits until the server has no connections or the timeout
        passes, then removes the server. Must be called with a running loop.
        """
        server = self._servers.get(port)
        if server is None:
            logger.warning("Cannot shutdown server on port %s: server not found", port)
            return None
        limit = _seconds(timeout)
        logger.info(
            "Initiating graceful shutdown for server on port %s with timeout %.3fs",
            port, limit,
        )
        server.status = ServerStatus.SHUTTING_DOWN
        self.graceful_shutdown(port)
        self.mark_changed()
        return asyncio.get_running_loop().create_task(self._shutdown_server(port, limit))

    async def _shutdown_server(self, port: WebPort, timeout: float) -> None:
        start = time.monotonic()
        while True:
            server = self._servers.get(port)
            if server is None:
                logger.info("Server on port %s shutdown completed", port)
                break
            active = server.active_connections()
            elapsed = time.monotonic() - start
            if elapsed >= timeout:
                if active > 0:
                    logger.warning(
                        "Graceful shutdown timeout reached after %.3fs, "
                        "%d connections still active",
                        elapsed, active,
                    )
                else:
                    logger.info(
                        "Server on port %s shutdown gracefully within timeout", port
                    )
                break
            if active == 0:
                logger.info(
                    "Server on port %s shutdown gracefully in %.3fs", port, elapsed
                )
                break
            await asyncio.sleep(SHUTDOWN_CHECK_INTERVAL)
        self.remove_server(port)

    async def graceful_shutdown_server(self, port: WebPort, timeout: float | timedelta) -> bool:
        """Shut one server down gracefully; False if unknown or connections outlived the timeout."""
        server = self._servers.get(port)
        if server is None:
            return False
        return await server.graceful_shutdown_with_timeout(timeout)

    async def graceful_shutdown_all(self, timeout: float | timedelta) -> dict[WebPort, bool]:
        """Shut every server down gracefully, then forget them all."""
        ports = list(self._servers)
        for port in ports:
            server = self._servers.get(port)
            if server is not None:
                server.graceful_shutdown()

        results: dict[WebPort, bool] = {}
        for port in ports:
            server = self._servers.get(port)
            if server is not None:
                results[port] = await server.graceful_shutdown_with_timeout(timeout)

        self._servers.clear()
        self.mark_changed()
        return results

    # --- starting ------------------------------------------------------------

    def start_server(self, port: WebPort) -> asyncio.Task:
        """Spawn the serving task of one server on the running event loop.

        Raises :class:`ServerNotFound` for an unknown port and
        :class:`ServerAlreadyRunning` if the server already has a task.
        """
        server = self._servers.get(port)
        if server is None:
            raise ServerNotFound(port)
        if TaskKey.server() in server.tasks:
            logger.debug("Server on port %s already has a running task", port)
            raise ServerAlreadyRunning(port)

        loop = asyncio.get_running_loop()
        server.clear_error()
        server.status = ServerStatus.STARTING
        task = loop.create_task(self._run_server(port, server))
        server.tasks.insert(TaskKey.server(), task)
        return task

    async def _run_server(self, port: WebPort, server: WebServer) -> None:
        try:
            await server.serve()
        except Exception as exc:
            logger.error("web server on port %s failed with: %s", port, exc)
            if self._servers.get(port) is not server:
                return
            server.set_error(str(exc))
            if _is_bind_error(exc):
                server.schedule_retry()
            else:
                server.status = ServerStatus.FAILED
            self.mark_changed()

    def start_pending(self) -> list[WebPort]:
        """Start every server that may start, if anything changed.

        Returns the ports whose serving task was spawned.
        """
        if not self._changed:
            return []
        self._changed = False

        to_start: list[WebPort] = []
        for port, server in self._servers.items():
            if not server.status.can_start() or TaskKey.server() in server.tasks:
                continue
            if server.status is ServerStatus.RETRYING:
                if not server.should_retry():
                    continue
                logger.debug("Retry time reached for server on port %s", port)
            server.status = ServerStatus.STARTING
            to_start.append(port)

        started: list[WebPort] = []
        for port in to_start:
            logger.debug(" - Starting server on port %s", port)
            try:
                self.start_server(port)
            except (ServerNotFound, ServerAlreadyRunning) as exc:
                logger.error("Failed to start server on port %s: %s", port, exc)
                server = self._servers.get(port)
                if server is not None:
                    server.schedule_retry()
            else:
                started.append(port)
        return started

    def cleanup_finished_tasks(self) -> None:
        """Drop finished tasks from every server."""
        for port, server in self._servers.items():
            finished = server.tasks.finished_task_count()
            if finished:
                logger.debug("Cleaning up %d finished tasks on port %s", finished, port)
            server.tasks.cleanup_finished_tasks()

    def check_retry_servers(self) -> list[WebPort]:
        """Ports of retrying servers whose delay has passed; marks a change if any."""
        ready = [
            port
            for port, server in self._servers.items()
            if server.status is ServerStatus.RETRYING and server.should_retry()
        ]
        if ready:
            logger.debug("Found %d servers ready to retry", len(ready))
            self.mark_changed()
        return ready

    async def wait_for_server_start(self, port: WebPort, timeout: float | timedelta) -> None:
        """Wait until the server runs; raise if it fails, stalls or is missing."""
        limit = _seconds(timeout)
        start = time.monotonic()
        while True:
            server = self._servers.get(port)
            if server is None:
                raise ServerNotFound(port)
            status = server.status
            if status is ServerStatus.RUNNING:
                return
            if status is ServerStatus.FAILED:
                message = server.last_error or "Server failed to start"
                raise IoError(f"server startup on port {port}", OSError(message))
            if status is not ServerStatus.STARTING:
                raise ConfigError(
                    "server_status",
                    f"Server on port {port} has unexpected status: {status.name}",
                )
            if time.monotonic() - start > limit:
                raise OperationTimeout(
                    f"starting server on port {port}", int(limit * 1000)
                )
            await asyncio.sleep(START_CHECK_INTERVAL)

    @staticmethod
    def test_bind(ip: Any, port: WebPort) -> None:
        """Raise :class:`BindFailed` unless ``ip:port`` can be bound right now."""
        _test_bind(ip, port)