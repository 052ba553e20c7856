import http

import pytest

from webgate.http_errors import HttpErrorResponses, Response, create_error_html


def test_create_error_html_contains_parts():
    page = create_error_html("404", "Not Found", "Sorry, we couldn't find that page.")
    assert "<title>404 - Not Found</title>" in page
    assert '<h1 class="error-code">404</h1>' in page
    assert '<h2 class="error-title">Not Found</h2>' in page
    assert '<p class="error-message">Sorry, we couldn\'t find that page.</p>' in page
    assert page.lstrip().startswith("<!DOCTYPE html>")


@pytest.mark.parametrize(
    "code,title",
    [
        (400, "Bad Request"),
        (401, "Unauthorized"),
        (403, "Forbidden"),
        (404, "Not Found"),
        (500, "Internal Server Error"),
        (503, "Service Unavailable"),
    ],
)
def test_defaults_present(code, title):
    responses = HttpErrorResponses()
    page = responses.get_response(code)
    assert page is not None
    assert f"<title>{code} - {title}</title>" in page


def test_default_count():
    assert len(HttpErrorResponses()) == 6


def test_missing_status_has_no_configured_page():
    assert HttpErrorResponses().get_response(418) is None


def test_default_page_for_unconfigured_status_uses_reason():
    page = HttpErrorResponses().get_response_or_default(405)
    assert "<title>405 - Method Not Allowed</title>" in page
    assert "An error occurred." in page


def test_unknown_status_uses_generic_title():
    page = HttpErrorResponses().get_response_or_default(599)
    assert "<title>599 - Error</title>" in page


def test_configured_page_returned_as_is():
    responses = HttpErrorResponses()
    assert responses.get_response_or_default(404) == responses.get_response(404)


def test_accepts_http_status_enum():
    responses = HttpErrorResponses()
    assert responses.get_response(http.HTTPStatus.NOT_FOUND) == responses.get_response(404)


def test_create_response():
    responses = HttpErrorResponses()
    response = responses.create_response(404)
    assert isinstance(response, Response)
    assert response.status == 404
    assert response.headers["Content-Type"] == "text/html"
    assert response.text == responses.get_response(404)


def test_create_response_for_unconfigured_status():
    responses = HttpErrorResponses()
    response = responses.create_response(418)
    assert response.status == 418
    assert response.body == responses.get_response_or_default(418).encode("utf-8")


def test_set_response_overrides():
    responses = HttpErrorResponses()
    responses.set_response(404, "<p>gone</p>")
    assert responses.get_response(404) == "<p>gone</p>"
    assert responses.create_response(404).text == "<p>gone</p>"


def test_set_response_adds_new_status():
    responses = HttpErrorResponses()
    responses.set_response(418, "<p>teapot</p>")
    assert 418 in responses
    assert len(responses) == 7