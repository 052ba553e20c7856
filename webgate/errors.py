"""Errors raised by the web server machinery."""

from __future__ import annotations

import ipaddress


class WebServerError(Exception):
    """Base class of every web server error."""


class BindFailed(WebServerError):
    """Binding a listening socket failed."""

    def __init__(self, ip, port: int, source: OSError) -> None:
        self.ip = ipaddress.ip_address(ip)
        self.port = port
        self.source = source
        super().__init__(f"Failed to bind to {self.ip}:{port}: {source}")
        self.__cause__ = source


class ServerNotFound(WebServerError):
    """No server is configured on the port."""

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"No server found listening on port {port}")


class ServerAlreadyRunning(WebServerError):
    """A server already occupies the port."""

    def __init__(self, port: int) -> None:
        self.port = port
        super().__init__(f"Server already running on port {port}")


class IoError(WebServerError):
    """An I/O operation failed."""

    def __init__(self, operation: str, source: OSError) -> None:
        self.operation = operation
        self.source = source
        super().__init__(f"IO operation '{operation}' failed: {source}")
        self.__cause__ = source


class HttpError(WebServerError):
    """An HTTP-level error."""

    def __init__(self, status: int, message: str) -> None:
        self.status = status
        self.message = message
        super().__init__(f"HTTP {status} error: {message}")


class ConfigError(WebServerError):
    """A configuration value is invalid."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Configuration error in '{field}': {reason}")


class OperationTimeout(WebServerError):
    """An operation did not finish in time."""

    def __init__(self, operation: str, duration_ms: int) -> None:
        self.operation = operation
        self.duration_ms = duration_ms
        super().__init__(f"Operation '{operation}' timed out after {duration_ms}ms")


class AuthError(WebServerError):
    """Authentication failed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Authentication failed: {reason}")


class ResourceExhausted(WebServerError):
    """A resource was missing or used up."""

    def __init__(self, resource_type: str, details: str) -> None:
        self.resource_type = resource_type
        self.details = details
        super().__init__(f"Resource '{resource_type}' exhausted: {details}")