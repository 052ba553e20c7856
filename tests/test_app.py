import asyncio
import ipaddress

import pytest

from webgate.app import App, WebServerPlugin
from webgate.errors import ServerAlreadyRunning
from webgate.http_errors import HttpErrorResponses
from webgate.manager import WebServerManager
from webgate.server import DEFAULT_IP, Request, Router, WebServerConfig
from webgate.static_assets import WebStaticFileExtensions

LOCALHOST = ipaddress.ip_address("127.0.0.1")
UNSPECIFIED = ipaddress.ip_address("0.0.0.0")


@pytest.fixture
def app():
    return App()


def _manager(app):
    return app.get_resource(WebServerManager)


def test_app_extensions(app):
    app.add_server("0.0.0.0", 20081)
    assert app.server_count() == 1

    running = app.running_servers()
    assert running == [(20081, UNSPECIFIED)]

    ports = app.routed_ports()
    assert ports == [20081]

    app.port_route(20082, "/test", lambda r: "test")
    assert app.server_count() == 2
    assert 20082 in app.routed_ports()

    app.port_route(20082, "/test2", lambda r: "test2")
    assert app.server_count() == 2

    app.route("/default", lambda r: "default")
    assert app.server_count() == 3


def test_ipv6_support(app):
    localhost_v6 = ipaddress.ip_address("::1")
    app.add_server("::1", 22080)
    app.add_server("127.0.0.1", 22081)
    app.add_server("0.0.0.0", 22082)

    manager = _manager(app)
    assert manager.get_server(22080).ip == localhost_v6
    assert manager.get_server(22081).ip == LOCALHOST
    assert manager.get_server(22082).ip == UNSPECIFIED


def test_backward_compatibility(app):
    app.insert_resource(WebServerConfig(ip="127.0.0.1", port=8080))
    app.add_plugin(WebServerPlugin())

    manager = _manager(app)
    assert len(manager) == 1
    assert manager.has_server(8080)
    assert manager.get_server(8080).ip == LOCALHOST

    app.route("/old", lambda r: "old config")
    assert len(_manager(app)) == 1


def test_error_cases(app):
    app.add_server("127.0.0.1", 0)
    assert _manager(app).has_server(0)

    app.port_route(65535, "/", lambda r: "max port")
    assert _manager(app).has_server(65535)


def test_utility_methods_usage(app):
    assert app.server_count() == 0
    assert app.routed_ports() == []
    app.add_server("127.0.0.1", 25080)
    app.add_server("127.0.0.1", 25081)
    app.add_server("0.0.0.0", 25082)

    assert app.server_count() == 3
    server_map = dict(app.running_servers())
    assert server_map == {25080: LOCALHOST, 25081: LOCALHOST, 25082: UNSPECIFIED}
    assert sorted(app.routed_ports()) == [25080, 25081, 25082]


def test_add_server_port_convenience(app):
    (
        app.port_route(26080, "/api", lambda r: "API")
        .port_route(26081, "/admin", lambda r: "Admin")
        .port_route(26082, "/health", lambda r: "Health")
    )
    manager = _manager(app)
    for port in (26080, 26081, 26082):
        assert manager.get_server(port).ip == DEFAULT_IP
    assert app.server_count() == 3


def test_port_route_uses_configured_ip(app):
    app.insert_resource(WebServerConfig(ip="0.0.0.0", port=27000))
    app.port_route(27001, "/", lambda r: "x")
    assert _manager(app).get_server(27001).ip == UNSPECIFIED


def test_add_server_twice_keeps_first(app):
    app.add_server("127.0.0.1", 24080)
    app.add_server("0.0.0.0", 24080)
    assert app.server_count() == 1
    assert _manager(app).get_server(24080).ip == LOCALHOST


def test_update_server_rejects_taken_port(app):
    app.add_server("127.0.0.1", 30500)
    with pytest.raises(ServerAlreadyRunning):
        app.update_server("127.0.0.1", 30500, Router())


@pytest.mark.asyncio
async def test_update_server_installs_router(app):
    router = Router().route("/x", lambda r: "routed")
    app.update_server("127.0.0.1", 30501, router)
    response = await _manager(app).router(30501).dispatch(Request(method="GET", path="/x"))
    assert response.status == 200
    assert response.text == "routed"


def test_remove_server(app):
    app.add_server("127.0.0.1", 30502)
    app.remove_server(30502)
    assert app.server_count() == 0
    assert app.routed_ports() == []


def test_remove_server_without_manager(app):
    with pytest.raises(LookupError):
        app.remove_server(30503)


def test_plugin_installs_resources(app):
    app.add_plugin(WebServerPlugin)
    assert app.is_plugin_added(WebServerPlugin)
    assert len(app.get_resource(WebStaticFileExtensions)) == 15
    assert app.get_resource(HttpErrorResponses).get_response(404) is not None
    assert len(_manager(app)) == 0


def test_plugin_added_twice_raises(app):
    app.add_plugin(WebServerPlugin())
    with pytest.raises(ValueError):
        app.add_plugin(WebServerPlugin())


def test_init_resource_keeps_existing(app):
    config = WebServerConfig(ip="0.0.0.0", port=9000)
    app.insert_resource(config)
    assert app.init_resource(WebServerConfig) is config
    assert app.get_resource(WebServerConfig).port == 9000


def test_run_until_exit(app):
    calls = {"startup": 0, "update": 0}
    seen_counts = []

    def startup(a):
        calls["startup"] += 1

    async def tick(a):
        calls["update"] += 1
        seen_counts.append(a.server_count())
        if calls["update"] == 3:
            a.request_exit()

    chained = app.add_startup_system(startup).add_system(tick)
    assert chained is app
    app.run()
    assert calls == {"startup": 1, "update": 3}
    assert seen_counts == [0, 0, 0]


@pytest.mark.asyncio
async def test_port_nest_and_merge(app):
    app.port_nest(31000, "/admin", Router().route("/status", lambda r: "ok"))
    app.port_merge(31000, Router().route("/health", lambda r: "fine"))
    router = _manager(app).router(31000)
    nested = await router.dispatch(Request(method="GET", path="/admin/status"))
    merged = await router.dispatch(Request(method="GET", path="/health"))
    assert nested.text == "ok"
    assert merged.text == "fine"


@pytest.mark.asyncio
async def test_port_layer_and_fallback(app):
    def add_header(handler):
        async def wrapped(request):
            response = await handler(request)
            response.headers["X-Layer"] = "yes"
            return response

        return wrapped

    app.port_route(31001, "/", lambda r: "root")
    app.port_layer(31001, add_header)
    app.port_fallback(31001, lambda r: (404, "nope"))
    router = _manager(app).router(31001)

    root = await router.dispatch(Request(method="GET", path="/"))
    assert root.headers["X-Layer"] == "yes"
    assert root.text == "root"

    missing = await router.dispatch(Request(method="GET", path="/missing"))
    assert missing.status == 404
    assert missing.text == "nope"


@pytest.mark.asyncio
async def test_default_router_fallbacks(app):
    app.insert_resource(WebServerConfig(ip="127.0.0.1", port=31100))
    app.route("/only-get", lambda r: "got")
    app.method_not_allowed_fallback(lambda r: (405, "wrong method"))
    app.fallback(lambda r: (404, "gone"))
    router = _manager(app).router(31100)

    post = await router.dispatch(Request(method="POST", path="/only-get"))
    assert post.status == 405
    assert post.text == "wrong method"
    assert post.headers["Allow"] == "GET, HEAD"

    missing = await router.dispatch(Request(method="GET", path="/nowhere"))
    assert missing.status == 404
    assert missing.text == "gone"


@pytest.mark.asyncio
async def test_serves_http_after_update(app):
    app.port_route(0, "/hello", lambda r: "hi")
    manager = _manager(app)
    await app.update()
    await manager.wait_for_server_start(0, 5.0)

    host, port = manager.get_server(0).local_address[:2]
    reader, writer = await asyncio.open_connection(host, port)
    writer.write(b"GET /hello HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n")
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), 5.0)
    writer.close()

    assert data.startswith(b"HTTP/1.1 200")
    assert data.endswith(b"hi")

    results = await manager.graceful_shutdown_all(5.0)
    assert results == {0: True}
    assert app.server_count() == 0