"""A single HTTP server: routing, lifecycle, retries and the accept loop."""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import errno
import functools
import http
import inspect
import ipaddress
import json
import logging
import os
import socket
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any
from urllib.parse import unquote, urlsplit

import h11

from .connections import ConnectionGuard, ConnectionTracker
from .errors import BindFailed
from .http_errors import Response
from .status import ServerStatus, WebPort
from .tasks import TaskKey, TaskStore

logger = logging.getLogger(__name__)

DEFAULT_PORT: WebPort = 8080
DEFAULT_IP = ipaddress.IPv4Address("127.0.0.1")

RETRY_DELAY_SECONDS = 10
MAX_RETRY_ATTEMPTS = 100
REQUEST_READ_TIMEOUT = 30.0
_READ_CHUNK = 65536

Handler = Callable[["Request"], Awaitable[Response]]


@dataclass
class Request:
    """An incoming HTTP request as handlers see it."""

    method: str
    path: str
    query: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    params: dict[str, str] = field(default_factory=dict)


# --- converting handler results -------------------------------------------


def _into_response(value: Any) -> Response:
    if isinstance(value, Response):
        return value
    if value is None:
        return Response(status=200)
    if isinstance(value, str):
        return Response(
            status=200,
            headers={"Content-Type": "text/plain; charset=utf-8"},
            body=value.encode("utf-8"),
        )
    if isinstance(value, (bytes, bytearray)):
        return Response(
            status=200,
            headers={"Content-Type": "application/octet-stream"},
            body=bytes(value),
        )
    if isinstance(value, (dict, list)):
        return Response(
            status=200,
            headers={"Content-Type": "application/json"},
            body=json.dumps(value).encode("utf-8"),
        )
    if isinstance(value, tuple) and len(value) == 2 and isinstance(value[0], int):
        status, body = value
        response = _into_response(body)
        return dataclasses.replace(response, status=int(status))
    raise TypeError(f"cannot turn {type(value).__name__} into a response")


def _normalize(handler: Callable[[Request], Any]) -> Handler:
    async def call(request: Request) -> Response:
        result = handler(request)
        if inspect.isawaitable(result):
            result = await result
        return _into_response(result)

    return call


def _not_found(request: Request) -> Response:
    return Response(status=404)


def _method_not_allowed(request: Request) -> Response:
    return Response(status=405)


# --- path patterns ----------------------------------------------------------


class _Kind(enum.Enum):
    WILDCARD = 0
    PARAM = 1
    STATIC = 2


_Segment = tuple[_Kind, str]


def _parse_path(path: str) -> tuple[_Segment, ...]:
    if not path.startswith("/"):
        raise ValueError(f"paths must start with '/': {path!r}")
    raw = path[1:].split("/")
    segments: list[_Segment] = []
    for position, part in enumerate(raw):
        if part.startswith("{") and part.endswith("}"):
            name = part[1:-1]
            kind = _Kind.PARAM
            if name.startswith("*"):
                if position != len(raw) - 1:
                    raise ValueError(f"a wildcard must be the last segment: {path!r}")
                name = name[1:]
                kind = _Kind.WILDCARD
            if not name:
                raise ValueError(f"empty parameter name in {path!r}")
            segments.append((kind, name))
        elif "{" in part or "}" in part:
            raise ValueError(f"invalid segment {part!r} in {path!r}")
        else:
            segments.append((_Kind.STATIC, part))
    return tuple(segments)


def _shape(segments: Iterable[_Segment]) -> tuple:
    return tuple(
        (kind, value if kind is _Kind.STATIC else "") for kind, value in segments
    )


def _split(path: str) -> list[str]:
    return path[1:].split("/") if path.startswith("/") else [path]


def _match(segments: tuple[_Segment, ...], parts: list[str]) -> dict[str, str] | None:
    params: dict[str, str] = {}
    for position, (kind, value) in enumerate(segments):
        if kind is _Kind.WILDCARD:
            rest = "/".join(parts[position:])
            if not rest:
                return None
            params[value] = unquote(rest)
            return params
        if position >= len(parts):
            return None
        part = parts[position]
        if kind is _Kind.STATIC:
            if part != value:
                return None
        elif not part:
            return None
        else:
            params[value] = unquote(part)
    if len(parts) != len(segments):
        return None
    return params


def _normalize_methods(methods: str | Iterable[str] | None) -> tuple[str, ...]:
    if methods is None:
        return ("GET",)
    if isinstance(methods, str):
        methods = (methods,)
    names = tuple(dict.fromkeys(method.upper() for method in methods))
    if not names:
        raise ValueError("a route needs at least one method")
    return names


@dataclass
class _Route:
    path: str
    segments: tuple[_Segment, ...]
    handlers: dict[str, Handler]

    @property
    def rank(self) -> tuple[int, ...]:
        return tuple(kind.value for kind, _ in self.segments)

    def handler_for(self, method: str) -> Handler | None:
        method = method.upper()
        handler = self.handlers.get(method)
        if handler is None and method == "HEAD":
            handler = self.handlers.get("GET")
        return handler

    def allowed(self) -> str:
        methods = set(self.handlers)
        if "GET" in methods:
            methods.add("HEAD")
        return ", ".join(sorted(methods))


class Router:
    """Maps request paths and methods to handlers.

    Paths use ``{name}`` for one segment and ``{*name}`` for the rest of the
    path. Handlers take a :class:`Request` and return a :class:`Response`,
    a string, bytes, a JSON-able dict or list, ``None`` or a
    ``(status, body)`` pair; they may be coroutines.
    """

    def __init__(self) -> None:
        self._routes: dict[tuple, _Route] = {}
        self._fallback: Handler = _normalize(_not_found)
        self._has_fallback = False
        self._not_allowed: Handler = _normalize(_method_not_allowed)
        self._has_not_allowed = False
        self._nested_fallbacks: list[tuple[tuple[_Segment, ...], Handler]] = []

    def _insert(self, path: str, segments: tuple[_Segment, ...], handlers: dict[str, Handler]) -> None:
        key = _shape(segments)
        entry = self._routes.get(key)
        if entry is not None:
            if entry.path != path:
                raise ValueError(f"route {path!r} conflicts with {entry.path!r}")
            for method in handlers:
                if method in entry.handlers:
                    raise ValueError(f"a handler for {method} {path} already exists")
            entry.handlers.update(handlers)
        else:
            self._routes[key] = _Route(path, segments, dict(handlers))

    def route(self, path: str, handler: Callable[[Request], Any], methods: str | Iterable[str] | None = None) -> Router:
        """Serve ``path`` with ``handler`` for the given methods (GET by default)."""
        segments = _parse_path(path)
        wrapped = _normalize(handler)
        self._insert(path, segments, {method: wrapped for method in _normalize_methods(methods)})
        return self

    def fallback(self, handler: Callable[[Request], Any]) -> Router:
        """Handle requests that match no route."""
        self._fallback = _normalize(handler)
        self._has_fallback = True
        return self

    def method_not_allowed_fallback(self, handler: Callable[[Request], Any]) -> Router:
        """Handle requests whose path matches but whose method does not."""
        self._not_allowed = _normalize(handler)
        self._has_not_allowed = True
        return self

    def nest(self, prefix: str, router: Router) -> Router:
        """Serve every route of ``router`` below ``prefix``."""
        if prefix == "/":
            raise ValueError("nesting at the root is not supported; use merge")
        if prefix.endswith("/"):
            raise ValueError(f"a nest prefix must not end with '/': {prefix!r}")
        prefix_segments = _parse_path(prefix)
        if any(kind is _Kind.WILDCARD for kind, _ in prefix_segments):
            raise ValueError(f"a nest prefix cannot contain a wildcard: {prefix!r}")
        for route in router._routes.values():
            path = prefix if route.path == "/" else prefix + route.path
            self._insert(path, _parse_path(path), route.handlers)
        if router._has_fallback:
            self._nested_fallbacks.append((prefix_segments, router._fallback))
        for segments, handler in router._nested_fallbacks:
            self._nested_fallbacks.append((prefix_segments + segments, handler))
        return self

    def merge(self, other: Router) -> Router:
        """Add every route of ``other`` to this router."""
        if self._has_fallback and other._has_fallback:
            raise ValueError("cannot merge two routers that both have a fallback")
        for route in other._routes.values():
            self._insert(route.path, route.segments, route.handlers)
        if other._has_fallback:
            self._fallback = other._fallback
            self._has_fallback = True
        if other._has_not_allowed:
            self._not_allowed = other._not_allowed
            self._has_not_allowed = True
        self._nested_fallbacks.extend(other._nested_fallbacks)
        return self

    def layer(self, middleware: Callable[[Handler], Callable[[Request], Any]]) -> Router:
        """Wrap every handler registered so far, fallbacks included."""

        def wrap(handler: Handler) -> Handler:
            return _normalize(middleware(handler))

        for route in self._routes.values():
            route.handlers = {method: wrap(h) for method, h in route.handlers.items()}
        self._fallback = wrap(self._fallback)
        self._not_allowed = wrap(self._not_allowed)
        self._nested_fallbacks = [(s, wrap(h)) for s, h in self._nested_fallbacks]
        return self

    def copy(self) -> Router:
        """An independent router with the same routes."""
        other = Router()
        other._routes = {
            key: dataclasses.replace(route, handlers=dict(route.handlers))
            for key, route in self._routes.items()
        }
        other._fallback = self._fallback
        other._has_fallback = self._has_fallback
        other._not_allowed = self._not_allowed
        other._has_not_allowed = self._has_not_allowed
        other._nested_fallbacks = list(self._nested_fallbacks)
        return other

    def _fallback_for(self, parts: list[str]) -> Handler:
        candidates = [
            (segments, handler)
            for segments, handler in self._nested_fallbacks
            if len(parts) >= len(segments) and _match(segments, parts[: len(segments)]) is not None
        ]
        if candidates:
            return max(candidates, key=lambda item: len(item[0]))[1]
        return self._fallback

    async def dispatch(self, request: Request) -> Response:
        """Run the handler that matches the request and return its response."""
        parts = _split(request.path)
        best: tuple[_Route, dict[str, str]] | None = None
        for route in self._routes.values():
            params = _match(route.segments, parts)
            if params is not None and (best is None or route.rank > best[0].rank):
                best = (route, params)

        matched: _Route | None = None
        if best is None:
            handler = self._fallback_for(parts)
            params = {}
        else:
            matched, params = best
            found = matched.handler_for(request.method)
            handler = found if found is not None else self._not_allowed

        try:
            response = await handler(dataclasses.replace(request, params=params))
        except Exception:
            logger.exception("Handler for %s %s failed", request.method, request.path)
            return Response(status=500)

        if (
            matched is not None
            and response.status == 405
            and "Allow" not in response.headers
        ):
            response.headers["Allow"] = matched.allowed()
        return response


# --- configuration and servers ---------------------------------------------


def _seconds(value: float | timedelta) -> float:
    return value.total_seconds() if isinstance(value, timedelta) else float(value)


def _check_port(port: int) -> int:
    if not 0 <= int(port) <= 0xFFFF:
        raise ValueError(f"port out of range: {port}")
    return int(port)


@dataclass
class WebServerConfig:
    """Address of the single default server."""

    ip: Any = DEFAULT_IP
    port: WebPort = DEFAULT_PORT

    def __post_init__(self) -> None:
        self.ip = ipaddress.ip_address(self.ip)
        self.port = _check_port(self.port)


@contextlib.contextmanager
def _bound_socket(family: int, host: str, port: int):
    sock = socket.socket(family, socket.SOCK_STREAM)
    try:
        if os.name != "nt":
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        yield sock
    finally:
        sock.close()


def test_bind(ip, port: WebPort) -> None:
    """Raise :class:`BindFailed` unless ``ip:port`` can be bound right now."""
    address = ipaddress.ip_address(ip)
    logger.debug("Testing bind on %s:%s", address, port)
    try:
        with _bound_socket(socket.AF_INET, "0.0.0.0", port):
            pass
    except OSError:
        message = f"Port {port} is already in use"
        logger.error("%s:%s: %s", address, port, message)
        raise BindFailed(address, port, OSError(errno.EADDRINUSE, message)) from None

    family = socket.AF_INET6 if address.version == 6 else socket.AF_INET
    try:
        with _bound_socket(family, str(address), port):
            pass
    except OSError as exc:
        logger.error("Test bind failed on %s:%s: %s", address, port, exc)
        raise BindFailed(address, port, exc) from exc


class WebServer:
    """One HTTP server on one address, with its status and retry bookkeeping."""

    ERROR_SLEEP_INTERVAL = 0.1

    def __init__(self, ip, port: WebPort, router: Router | None = None) -> None:
        self.ip = ipaddress.ip_address(ip)
        self.port = _check_port(port)
        self.router = router if router is not None else Router()
        self.status = ServerStatus.STOPPED
        self.tasks = TaskStore()
        self._connections = ConnectionTracker()
        self.last_error: str | None = None
        self.retry_count = 0
        self.next_retry_time: float | None = None
        self.local_address: tuple | None = None

    def __repr__(self) -> str:
        return f"WebServer(ip={self.ip!s}, port={self.port}, status={self.status.name})"

    def clone(self) -> WebServer:
        """A copy with the same settings but no tasks and fresh connection counts."""
        other = WebServer(self.ip, self.port, self.router.copy())
        other.status = self.status
        other.last_error = self.last_error
        other.retry_count = self.retry_count
        other.next_retry_time = self.next_retry_time
        return other

    def stop(self) -> None:
        """Stop at once, cancelling every task."""
        self.tasks.clear()
        self.status = ServerStatus.STOPPED
        logger.debug("Stopped web-server on %s:%s", self.ip, self.port)

    def graceful_shutdown(self) -> None:
        """Stop accepting connections; established ones may finish."""
        self.status = ServerStatus.SHUTDOWN
        logger.debug("Requested graceful shutdown for web-server on %s:%s", self.ip, self.port)

    async def graceful_shutdown_with_timeout(self, timeout: float | timedelta) -> bool:
        """Shut down gracefully, then stop; True if every connection ended in time."""
        limit = _seconds(timeout)
        self.graceful_shutdown()
        start = time.monotonic()

        while time.monotonic() - start < limit:
            self.tasks.cleanup_finished_tasks()
            if TaskKey.server() not in self.tasks:
                break
            await asyncio.sleep(self.ERROR_SLEEP_INTERVAL)

        active = self.active_connections()
        logger.info("Graceful shutdown: %d active connections remaining", active)
        while active > 0 and time.monotonic() - start < limit:
            await asyncio.sleep(self.ERROR_SLEEP_INTERVAL)
            active = self.active_connections()
            if active > 0:
                logger.debug(
                    "Graceful shutdown: %d connections still active, elapsed: %.3fs",
                    active,
                    time.monotonic() - start,
                )

        completed = active == 0
        elapsed = time.monotonic() - start
        if completed:
            logger.info(
                "Graceful shutdown completed for server on %s:%s in %.3fs",
                self.ip, self.port, elapsed,
            )
        else:
            logger.warning(
                "Graceful shutdown timed out for server on %s:%s after %.3fs, "
                "%d connections still active",
                self.ip, self.port, elapsed, active,
            )
        self.stop()
        return completed

    def shutdown_requested(self) -> bool:
        return self.status.shutdown_requested()

    def new_connection(self) -> ConnectionGuard:
        return self._connections.new_connection()

    def active_connections(self) -> int:
        return self._connections.active_connections()

    def next_connection_id(self) -> int:
        return self._connections.total_connections()

    def set_error(self, error: str) -> None:
        """Record an error and mark the server failed."""
        self.last_error = error
        self.status = ServerStatus.FAILED

    def clear_error(self) -> None:
        self.last_error = None

    def should_retry(self) -> bool:
        """True once the retry delay has passed and attempts remain."""
        if self.retry_count >= MAX_RETRY_ATTEMPTS:
            return False
        if self.next_retry_time is None:
            return True
        return time.monotonic() >= self.next_retry_time

    def schedule_retry(self) -> None:
        """Arrange another start attempt, or fail once attempts run out."""
        if self.retry_count < MAX_RETRY_ATTEMPTS:
            self.retry_count += 1
            self.next_retry_time = time.monotonic() + RETRY_DELAY_SECONDS
            self.status = ServerStatus.RETRYING
            logger.info(
                "Scheduling retry attempt %d for server on %s:%s in %d seconds",
                self.retry_count, self.ip, self.port, RETRY_DELAY_SECONDS,
            )
        else:
            logger.warning(
                "Max retry attempts (%d) reached for server on %s:%s. Setting to Failed state.",
                MAX_RETRY_ATTEMPTS, self.ip, self.port,
            )
            self.set_error("Max retry attempts reached")

    def reset_retry_count(self) -> None:
        self.retry_count = 0
        self.next_retry_time = None

    async def serve(self) -> None:
        """Bind, accept connections until shutdown is requested, then return.

        Raises :class:`BindFailed` when the address cannot be bound.
        """
        try:
            test_bind(self.ip, self.port)
        except BindFailed as exc:
            logger.error(
                "Port availability test failed before bind on %s:%s: %s",
                self.ip, self.port, exc,
            )
            raise

        router = self.router
        try:
            listener = await asyncio.start_server(
                functools.partial(self._handle_client, router), str(self.ip), self.port
            )
        except OSError as exc:
            logger.error("Failed to bind server on %s:%s: %s", self.ip, self.port, exc)
            raise BindFailed(self.ip, self.port, exc) from exc

        try:
            if listener.sockets:
                self.local_address = listener.sockets[0].getsockname()
            self.status = ServerStatus.RUNNING
            self.reset_retry_count()
            logger.info("Web server listening on %s:%s", self.ip, self.port)
            while not self.shutdown_requested():
                await asyncio.sleep(self.ERROR_SLEEP_INTERVAL)
            logger.info(
                "Shutdown requested for server on port %s, stopping accept loop", self.port
            )
        finally:
            listener.close()

    async def _handle_client(
        self, router: Router, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        connection_id = self.next_connection_id()
        guard = self.new_connection()
        key = TaskKey.connection(connection_id)
        task = asyncio.current_task()
        if task is not None:
            self.tasks.insert(key, task)
            task.add_done_callback(lambda _done: self.tasks.remove(key))

        start = time.monotonic()
        conn = h11.Connection(h11.SERVER)
        with guard:
            try:
                await self._serve_connection(router, conn, reader, writer)
                logger.debug(
                    "Connection %d completed in %.3fs", connection_id, time.monotonic() - start
                )
            except h11.RemoteProtocolError as exc:
                logger.debug("Connection %d sent a malformed request: %s", connection_id, exc)
                await self._send_bad_request(conn, writer)
            except (asyncio.TimeoutError, asyncio.IncompleteReadError) as exc:
                logger.debug(
                    "Connection %d timeout after %.3fs: %s",
                    connection_id, time.monotonic() - start, exc,
                )
            except (ConnectionError, h11.LocalProtocolError) as exc:
                logger.error(
                    "Connection %d error after %.3fs: %s",
                    connection_id, time.monotonic() - start, exc,
                )
            finally:
                writer.close()

    async def _serve_connection(
        self,
        router: Router,
        conn: h11.Connection,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        while True:
            request = await asyncio.wait_for(_read_request(conn, reader), REQUEST_READ_TIMEOUT)
            if request is None:
                return
            response = await router.dispatch(request)
            await _send_response(conn, writer, response, head=request.method == "HEAD")
            if h11.MUST_CLOSE in (conn.our_state, conn.their_state):
                return
            try:
                conn.start_next_cycle()
            except h11.LocalProtocolError:
                return

    @staticmethod
    async def _send_bad_request(conn: h11.Connection, writer: asyncio.StreamWriter) -> None:
        if conn.our_state not in (h11.IDLE, h11.SEND_RESPONSE):
            return
        with contextlib.suppress(h11.LocalProtocolError, ConnectionError):
            await _send_response(conn, writer, Response(status=400), head=False)


async def _next_event(conn: h11.Connection, reader: asyncio.StreamReader):
    while True:
        event = conn.next_event()
        if event is h11.NEED_DATA:
            conn.receive_data(await reader.read(_READ_CHUNK))
            continue
        return event


async def _read_request(conn: h11.Connection, reader: asyncio.StreamReader) -> Request | None:
    event = await _next_event(conn, reader)
    if not isinstance(event, h11.Request):
        return None

    headers: dict[str, str] = {}
    for name, value in event.headers:
        key = name.decode("latin-1")
        text = value.decode("latin-1")
        headers[key] = f"{headers[key]}, {text}" if key in headers else text

    body = bytearray()
    while True:
        part = await _next_event(conn, reader)
        if isinstance(part, h11.Data):
            body.extend(part.data)
        elif isinstance(part, h11.EndOfMessage):
            break
        else:
            return None

    target = urlsplit(event.target.decode("latin-1"))
    return Request(
        method=event.method.decode("ascii").upper(),
        path=target.path or "/",
        query=target.query,
        headers=headers,
        body=bytes(body),
    )


def _phrase(status: int) -> bytes:
    try:
        return http.HTTPStatus(status).phrase.encode("ascii")
    except ValueError:
        return b""


async def _send_response(
    conn: h11.Connection, writer: asyncio.StreamWriter, response: Response, head: bool
) -> None:
    headers = [
        (name, value)
        for name, value in response.headers.items()
        if name.lower() not in ("content-length", "transfer-encoding")
    ]
    headers.append(("Content-Length", str(len(response.body))))
    writer.write(
        conn.send(
            h11.Response(
                status_code=response.status, headers=headers, reason=_phrase(response.status)
            )
        )
    )
    if not head and response.body:
        writer.write(conn.send(h11.Data(data=response.body)))
    writer.write(conn.send(h11.EndOfMessage()))
    await writer.drain()