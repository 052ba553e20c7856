"""Managed multi-port HTTP/1.1 servers with routing, retries and graceful shutdown."""

__version__ = "0.1.1"

__all__ = [
    "app",
    "connections",
    "errors",
    "http_errors",
    "manager",
    "server",
    "static_assets",
    "status",
    "tasks",
    "utils",
]