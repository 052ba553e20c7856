"""HTML error pages and the responses built from them."""

from __future__ import annotations

import http
from dataclasses import dataclass, field

_ERROR_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{code} - {title}</title>
<style>
html, body {{ margin: 0; height: 100%; }}
body {{
  display: grid;
  place-items: center;
  font-family: system-ui, sans-serif;
  background: #111418;
  color: #dde3ea;
}}
main {{
  max-width: 40rem;
  padding: 2.5rem 3rem;
  text-align: center;
  background: #1a1f26;
  border: 1px solid #2c333d;
  border-radius: 10px;
}}
.code {{ font-size: 6rem; margin: 0; color: #f07a3c; }}
.title {{ font-size: 1.75rem; margin: 0.5rem 0 1rem; }}
.message {{ color: #8b949e; margin-bottom: 2rem; }}
.back {{
  padding: 0.75rem 1.75rem;
  border: 0;
  border-radius: 6px;
  background: #f07a3c;
  color: #fff;
  font: inherit;
  cursor: pointer;
}}
footer {{ margin-top: 2rem; font-size: 0.85rem; color: #8b949e; }}
</style>
</head>
<body>
<main>
<h1 class="code">{code}</h1>
<h2 class="title">{title}</h2>
<p class="message">{message}</p>
<button class="back" onclick="history.back()">Go Back</button>
<footer>Served by WebGate</footer>
</main>
</body>
</html>
"""


@dataclass
class Response:
    """A complete HTTP response: status, headers and body."""

    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def create_error_html(code: str, title: str, message: str) -> str:
    """Render the standard error page."""
    return _ERROR_TEMPLATE.format(code=code, title=title, message=message)


def _reason(status: int) -> str:
    try:
        return http.HTTPStatus(status).phrase
    except ValueError:
        return "Error"


_DEFAULT_PAGES = (
    (400, "Bad Request", "Sorry, we couldn't process your request."),
    (401, "Unauthorized", "Sorry, you are not authorized to access this resource."),
    (403, "Forbidden", "Sorry, you don't have permission to access this resource."),
    (404, "Not Found", "Sorry, we couldn't find that page."),
    (500, "Internal Server Error", "Something went wrong on our end."),
    (503, "Service Unavailable", "The service is temporarily unavailable."),
)


class HttpErrorResponses:
    """HTML bodies for error statuses, with a generic page for the rest."""

    def __init__(self) -> None:
        self._responses: dict[int, str] = {
            code: create_error_html(str(code), title, message)
            for code, title, message in _DEFAULT_PAGES
        }

    def get_response(self, status: int) -> str | None:
        """The page configured for the status, if any."""
        return self._responses.get(int(status))

    def get_response_or_default(self, status: int) -> str:
        """The configured page, or a generic one built from the status."""
        code = int(status)
        page = self._responses.get(code)
        if page is not None:
            return page
        return create_error_html(str(code), _reason(code), "An error occurred.")

    def create_response(self, status: int) -> Response:
        """An HTML response carrying the page for the status."""
        code = int(status)
        page = self.get_response_or_default(code)
        return Response(
            status=code,
            headers={"Content-Type": "text/html"},
            body=page.encode("utf-8"),
        )

    def set_response(self, status: int, html: str) -> None:
        """Use the given page for the status."""
        self._responses[int(status)] = html

    def __contains__(self, status: object) -> bool:
        return status in self._responses

    def __len__(self) -> int:
        return len(self._responses)