import ipaddress

import pytest

from webgate.errors import (
    AuthError,
    BindFailed,
    ConfigError,
    HttpError,
    IoError,
    OperationTimeout,
    ResourceExhausted,
    ServerAlreadyRunning,
    ServerNotFound,
    WebServerError,
)


def test_bind_failed_message_and_fields():
    source = OSError("Port 8080 is already in use")
    err = BindFailed("127.0.0.1", 8080, source)
    assert err.ip == ipaddress.ip_address("127.0.0.1")
    assert err.port == 8080
    assert err.source is source
    assert err.__cause__ is source
    assert str(err) == "Failed to bind to 127.0.0.1:8080: Port 8080 is already in use"


def test_bind_failed_accepts_ipv6_address_object():
    ip = ipaddress.ip_address("::1")
    err = BindFailed(ip, 9000, OSError("busy"))
    assert err.ip == ip
    assert str(err).startswith("Failed to bind to ::1:9000")


def test_server_not_found_message():
    err = ServerNotFound(8080)
    assert err.port == 8080
    assert str(err) == "No server found listening on port 8080"


def test_server_already_running_message():
    err = ServerAlreadyRunning(8080)
    assert err.port == 8080
    assert str(err) == "Server already running on port 8080"


def test_io_error_fields():
    source = OSError("async channel closed")
    err = IoError("async channel access", source)
    assert err.operation == "async channel access"
    assert err.source is source
    assert "async channel access" in str(err)
    assert str(err).endswith("async channel closed")


def test_http_error_fields():
    err = HttpError(404, "missing")
    assert (err.status, err.message) == (404, "missing")
    assert "404" in str(err) and "missing" in str(err)


def test_config_error_fields():
    err = ConfigError("server_status", "unexpected")
    assert (err.field, err.reason) == ("server_status", "unexpected")
    assert "server_status" in str(err)


def test_timeout_fields():
    err = OperationTimeout("starting server on port 80", 1500)
    assert err.operation == "starting server on port 80"
    assert err.duration_ms == 1500
    assert "1500" in str(err)


def test_auth_error_fields():
    err = AuthError("bad credentials")
    assert err.reason == "bad credentials"
    assert str(err).endswith("bad credentials")


def test_resource_exhausted_fields():
    err = ResourceExhausted("entity", "entity not found")
    assert (err.resource_type, err.details) == ("entity", "entity not found")
    assert "entity not found" in str(err)


@pytest.mark.parametrize(
    "err, fragment",
    [
        (ServerNotFound(1), "No server found listening on port 1"),
        (ServerAlreadyRunning(1), "Server already running on port 1"),
        (HttpError(500, "broken"), "broken"),
        (ConfigError("field_x", "reason_y"), "field_x"),
        (OperationTimeout("op", 1234), "1234"),
        (AuthError("denied"), "denied"),
        (ResourceExhausted("t", "details_z"), "details_z"),
        (IoError("op", OSError("boom")), "boom"),
        (BindFailed("0.0.0.0", 1, OSError("e")), "Failed to bind to 0.0.0.0:1"),
    ],
)
def test_all_errors_are_caught_as_base(err, fragment):
    with pytest.raises(WebServerError) as info:
        raise err
    assert info.value is err
    assert fragment in str(info.value)