"""The application object: resources, plugins, systems and server routing."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any, TypeVar

from .http_errors import HttpErrorResponses
from .manager import WebServerManager
from .server import DEFAULT_IP, DEFAULT_PORT, Router, WebServer, WebServerConfig
from .static_assets import WebStaticFileExtensions
from .status import WebPort

logger = logging.getLogger(__name__)

T = TypeVar("T")
System = Callable[["App"], Any]


def _start_pending(app: App) -> None:
    manager = app.get_resource(WebServerManager)
    if manager is not None:
        manager.start_pending()


def _cleanup_finished_tasks(app: App) -> None:
    manager = app.get_resource(WebServerManager)
    if manager is not None:
        manager.cleanup_finished_tasks()


def _check_retry_servers(app: App) -> None:
    manager = app.get_resource(WebServerManager)
    if manager is not None:
        manager.check_retry_servers()


async def _call(system: System, app: App) -> None:
    result = system(app)
    if inspect.isawaitable(result):
        await result


class WebServerPlugin:
    """Installs the server manager, error pages, static extensions and the
    systems that start, retry and clean up servers."""

    def build(self, app: App) -> None:
        app.init_resource(WebStaticFileExtensions)
        app.init_resource(HttpErrorResponses)
        app.init_resource(WebServerManager)

        config = app.get_resource(WebServerConfig)
        if config is not None:
            app.insert_resource(WebServerManager.from_config(config))

        app.add_startup_system(_start_pending)
        app.add_system(_start_pending)
        app.add_system(_cleanup_finished_tasks)
        app.add_system(_check_retry_servers)


class App:
    """Holds resources and systems, and configures the web servers.

    Systems are callables taking the app; they may be coroutines. Startup
    systems run once before the first update.
    """

    TICK_INTERVAL = 0.01

    def __init__(self) -> None:
        self._resources: dict[type, Any] = {}
        self._plugins: list[Any] = []
        self._startup_systems: list[System] = []
        self._systems: list[System] = []
        self._started = False
        self._exit_requested = False

    # --- resources, plugins and systems ----------------------------------

    def insert_resource(self, resource: Any) -> App:
        """Store a resource under its type, replacing any previous one."""
        self._resources[type(resource)] = resource
        return self

    def get_resource(self, kind: type[T]) -> T | None:
        return self._resources.get(kind)

    def init_resource(self, kind: type[T]) -> T:
        """Create the resource with its defaults unless present; return it."""
        resource = self._resources.get(kind)
        if resource is None:
            resource = kind()
            self._resources[kind] = resource
        return resource

    def _require(self, kind: type[T]) -> T:
        resource = self._resources.get(kind)
        if resource is None:
            raise LookupError(f"resource {kind.__name__} does not exist")
        return resource

    def add_plugin(self, plugin: Any) -> App:
        """Build a plugin (an instance or a class) into the app, once."""
        if isinstance(plugin, type):
            plugin = plugin()
        if self.is_plugin_added(type(plugin)):
            raise ValueError(f"plugin {type(plugin).__name__} was already added")
        self._plugins.append(plugin)
        plugin.build(self)
        return self

    def is_plugin_added(self, kind: type) -> bool:
        return any(isinstance(plugin, kind) for plugin in self._plugins)

    def add_system(self, system: System) -> App:
        """Run ``system`` on every update."""
        self._systems.append(system)
        return self

    def add_startup_system(self, system: System) -> App:
        """Run ``system`` once, before the first update."""
        self._startup_systems.append(system)
        return self

    async def update(self) -> None:
        """Run one frame: startup systems the first time, then every system."""
        if not self._started:
            self._started = True
            for system in list(self._startup_systems):
                await _call(system, self)
        for system in list(self._systems):
            await _call(system, self)

    def request_exit(self) -> None:
        """Make :meth:`run` return after the current update."""
        self._exit_requested = True

    def run(self) -> None:
        """Update repeatedly until an exit is requested or the user interrupts."""
        try:
            asyncio.run(self._main_loop())
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping")

    async def _main_loop(self) -> None:
        self._exit_requested = False
        try:
            while not self._exit_requested:
                await self.update()
                await asyncio.sleep(self.TICK_INTERVAL)
        finally:
            manager = self.get_resource(WebServerManager)
            if manager is not None:
                for port in manager:
                    manager.stop_server(port)

    # --- multi-port servers ------------------------------------------------

    def _ensure_plugin(self) -> WebServerManager:
        self.init_resource(WebServerManager)
        if not self.is_plugin_added(WebServerPlugin):
            self.add_plugin(WebServerPlugin())
        return self._require(WebServerManager)

    def add_server(self, ip: Any, port: WebPort) -> App:
        """Add an empty server on ``ip:port``; an existing port is left alone."""
        manager = self._ensure_plugin()
        try:
            manager.add_server(WebServer(ip, port, Router()))
        except ValueError:
            raise
        except Exception as exc:
            logger.debug("Server on port %s not added: %s", port, exc)
        return self

    def update_server(self, ip: Any, port: WebPort, router: Router) -> App:
        """Add a server with the given router; raises if the port is taken."""
        manager = self._ensure_plugin()
        manager.add_server(WebServer(ip, port, router))
        return self

    def remove_server(self, port: WebPort) -> App:
        self._require(WebServerManager).remove_server(port)
        return self

    def port_router(self, port: WebPort, router_fn: Callable[[Router], Router]) -> App:
        """Rebuild the router of ``port`` with ``router_fn``, creating the server if needed."""
        manager = self._ensure_plugin()
        config = self.get_resource(WebServerConfig)
        default_ip = config.ip if config is not None else DEFAULT_IP

        existing = manager.router(port)
        new_router = router_fn(existing.copy() if existing is not None else Router())
        if not manager.has_server(port):
            try:
                manager.add_server(WebServer(default_ip, port, new_router))
            except Exception as exc:
                logger.debug("Server on port %s not added: %s", port, exc)
        else:
            manager.set_router(port, new_router)
        return self

    def port_route(
        self, port: WebPort, path: str, handler: Callable, methods: Any = None
    ) -> App:
        return self.port_router(port, lambda r: r.route(path, handler, methods))

    def port_nest(self, port: WebPort, path: str, router: Router) -> App:
        return self.port_router(port, lambda r: r.nest(path, router))

    def port_merge(self, port: WebPort, other: Router) -> App:
        return self.port_router(port, lambda r: r.merge(other))

    def port_layer(self, port: WebPort, middleware: Callable) -> App:
        return self.port_router(port, lambda r: r.layer(middleware))

    def port_fallback(self, port: WebPort, handler: Callable) -> App:
        return self.port_router(port, lambda r: r.fallback(handler))

    def running_servers(self) -> list[tuple[WebPort, Any]]:
        """Port and address of every configured server."""
        manager = self.get_resource(WebServerManager)
        if manager is None:
            return []
        return [(port, server.ip) for port, server in manager.items()]

    def routed_ports(self) -> list[WebPort]:
        manager = self.get_resource(WebServerManager)
        return manager.ports() if manager is not None else []

    def server_count(self) -> int:
        manager = self.get_resource(WebServerManager)
        return len(manager) if manager is not None else 0

    # --- the single default server ------------------------------------------

    def router(self, router_fn: Callable[[Router], Router]) -> App:
        """Rebuild the router of the default server, creating it if needed."""
        manager = self._ensure_plugin()
        config = self.get_resource(WebServerConfig)
        if config is not None:
            default_ip, default_port = config.ip, config.port
        else:
            default_ip, default_port = DEFAULT_IP, DEFAULT_PORT

        if not manager.has_server(default_port):
            try:
                manager.add_server(WebServer(default_ip, default_port, Router()))
            except Exception as exc:
                logger.debug("Server on port %s not added: %s", default_port, exc)

        existing = manager.router(default_port)
        new_router = router_fn(existing.copy() if existing is not None else Router())
        manager.set_router(default_port, new_router)
        return self

    def route(self, path: str, handler: Callable, methods: Any = None) -> App:
        return self.router(lambda r: r.route(path, handler, methods))

    def nest(self, path: str, router: Router) -> App:
        return self.router(lambda r: r.nest(path, router))

    def merge(self, other: Router) -> App:
        return self.router(lambda r: r.merge(other))

    def layer(self, middleware: Callable) -> App:
        return self.router(lambda r: r.layer(middleware))

    def fallback(self, handler: Callable) -> App:
        return self.router(lambda r: r.fallback(handler))

    def method_not_allowed_fallback(self, handler: Callable) -> App:
        return self.router(lambda r: r.method_not_allowed_fallback(handler))