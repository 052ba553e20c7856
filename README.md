# webgate

`webgate` adds HTTP/1.1 servers to an application that runs as a loop of
systems. Each server listens on its own port, owns its own `Router`, and is
started, retried and shut down by a `WebServerManager` kept as a resource of
the `App`. Connections are served on asyncio with `h11`.

## Installation

```
pip install webgate
```

Python 3.10 or newer is required.

## A single server

```python
from webgate.app import App, WebServerPlugin
from webgate.http_errors import Response


def hello(request):
    return Response(200, {"Content-Type": "text/html"}, b"<p>hello world!</p>")


app = App()
app.add_plugin(WebServerPlugin())
app.route("/hello_world", hello, ["GET"])
app.run()
```

`App.run()` updates the app in a loop until `App.request_exit()` is called or
the process is interrupted; on the way out it stops every server. The routing
methods add `WebServerPlugin` themselves if it is not there yet. A plugin can
be added only once; adding it again raises `ValueError`.

Without configuration the default server listens on `127.0.0.1:8080`. To
choose the address, insert a `WebServerConfig` before the plugin is added:

```python
from webgate.server import WebServerConfig

app = App()
app.insert_resource(WebServerConfig(ip="0.0.0.0", port=8080))
app.add_plugin(WebServerPlugin())
```

The default-server methods are `App.route`, `App.nest`, `App.merge`,
`App.layer`, `App.fallback`, `App.method_not_allowed_fallback` and
`App.router`, which takes a function from the current `Router` to a new one.

## Routing and handlers

`webgate.server.Router` matches paths with `{name}` for one segment and
`{*name}` for the rest of the path; matched values are in `request.params`.
Static segments win over parameters, and parameters over wildcards. Routes
answer `GET` by default (and `HEAD` through the `GET` handler); pass
`methods` to choose others. A path that matches with the wrong method gets a
405 response with an `Allow` header.

A handler receives a `webgate.server.Request` (`method`, `path`, `query`,
`headers`, `body`, `params`) and may be a plain function or a coroutine. It
may return a `Response`, a `str` (sent as text/plain), `bytes`, a `dict` or
`list` (sent as JSON), `None` (empty 200), or a `(status, body)` pair. A
handler that raises gives a 500 response.

`Router.nest(prefix, router)` mounts another router below a prefix,
`Router.merge(other)` adds its routes, and `Router.layer(middleware)` wraps
every handler registered so far: `middleware` receives the next handler and
returns a new one.

## Several ports

```python
app = App()
app.add_server("127.0.0.1", 3030)
app.add_server("0.0.0.0", 3031)

app.port_route(3030, "/", public_index, ["GET"])
app.port_route(3031, "/admin/status", admin_status, ["GET"])

print(app.routed_ports())      # ports that have a server configured
print(app.running_servers())   # (port, ip) pairs of configured servers
print(app.server_count())
app.run()
```

Routing to a port that has no server yet creates one there, on the address
from `WebServerConfig`, or on 127.0.0.1 when there is no config. The other
per-port methods are `port_nest`, `port_merge`, `port_layer`,
`port_fallback` and `port_router`. `App.update_server` adds a server with a
given router and raises if the port is already configured;
`App.remove_server` stops and removes one.

## Starting, retrying and stopping

`WebServerPlugin` installs `WebServerManager`, `HttpErrorResponses` and
`WebStaticFileExtensions` as resources, plus systems that start pending
servers, drop finished tasks and pick up servers that are due for a retry.

When a server is added, its address is test-bound. If the port is busy the
server goes into the `RETRYING` state and is tried again after 10 seconds, up
to 100 attempts, after which it is `FAILED`.

The manager is an ordinary resource, so systems can fetch and change it:

```python
from webgate.manager import WebServerManager


def report(app):
    manager = app.get_resource(WebServerManager)
    manager.stop_server(8081)
    manager.remove_server(8082)
    for port, status, error in manager.server_status_report():
        print(port, status.description(), error)


app.add_system(report)
```

Systems may also be coroutines. For a graceful shutdown, call
`manager.graceful_shutdown_with_timeout(port, timeout)` from a coroutine
system: the server stops accepting connections, and the returned task waits
until its open connections finish or the timeout passes, then removes it.
`graceful_shutdown_server` and `graceful_shutdown_all` are coroutines that do
the same and report whether every connection ended in time.
`wait_for_server_start(port, timeout)` waits until a server is running.

Other inspection methods: `server_error`, `server_failed`,
`shutdown_requested`, `active_connections` and `shutdown_status`.
`ServerStatus` has `description()`, `is_terminal()`, `can_start()`,
`can_reconfigure()` and `shutdown_requested()`.

## Static files and error pages

`webgate.static_assets.serve_file(path, extensions=None, error_responses=None)`
strips `..` and leading slashes from the path, reads the file, guesses its
content type and adds `Cache-Control: public, max-age=3600` when the
extension is in the given `WebStaticFileExtensions` (by default css, js,
images, fonts, pdf and similar). A missing file gives the 404 page from
`error_responses`, or a plain 503 response when none is passed.

`webgate.http_errors.HttpErrorResponses` holds HTML pages for 400, 401,
403, 404, 500 and 503; `create_response(status)` builds a response for any
status, and `set_response(status, html)` replaces a page.

## Errors

Failures raise subclasses of `webgate.errors.WebServerError`:
`BindFailed`, `ServerNotFound`, `ServerAlreadyRunning`, `IoError`,
`HttpError`, `ConfigError`, `OperationTimeout`, `AuthError` and
`ResourceExhausted`. `WebServerManager.add_server` raises
`ServerAlreadyRunning` for a port that is already configured;
`App.add_server` leaves the existing server in place instead.

## What it does not do

There is no command-line program; servers run inside your own `App`. Only
plain HTTP/1.1 is served: no TLS, HTTP/2 or WebSockets. Handlers receive only
the request; to reach application state they must close over it.

## Running the tests

```
pip install "webgate[test]"
pytest
```