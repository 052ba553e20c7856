"""Lifecycle states of a web server."""

from __future__ import annotations

import enum

WebPort = int
"""A TCP port number a server listens on."""


class ServerStatus(enum.Enum):
    """Where a server is in its lifecycle."""

    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    RETRYING = "retrying"
    SHUTDOWN = "shutdown"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"

    def shutdown_requested(self) -> bool:
        """True once a graceful shutdown has been asked for."""
        return self in (ServerStatus.SHUTDOWN, ServerStatus.SHUTTING_DOWN)

    def can_start(self) -> bool:
        """True if the server may be (re)started from this state."""
        return self in (ServerStatus.STOPPED, ServerStatus.RETRYING)

    def can_reconfigure(self) -> bool:
        """True if configuration changes are allowed in this state."""
        return self in (ServerStatus.STOPPED, ServerStatus.FAILED)

    def description(self) -> str:
        """A human-readable description of the state."""
        return _DESCRIPTIONS[self]

    def is_terminal(self) -> bool:
        """True for states with no automatic transitions."""
        return self in (ServerStatus.STOPPED, ServerStatus.FAILED)


_DESCRIPTIONS = {
    ServerStatus.STARTING: "Server is starting up",
    ServerStatus.RUNNING: "Server is running and accepting connections",
    ServerStatus.FAILED: "Server failed to start",
    ServerStatus.RETRYING: "Server is waiting to retry startup",
    ServerStatus.SHUTDOWN: "Server is shutting down gracefully",
    ServerStatus.SHUTTING_DOWN: "Server is in the process of shutting down",
    ServerStatus.STOPPED: "Server is stopped",
}