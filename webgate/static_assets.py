"""Serving files from disk and deciding which ones are cacheable assets."""

from __future__ import annotations

import logging
import mimetypes
from collections.abc import Iterable, Iterator
from pathlib import PurePath

from .http_errors import HttpErrorResponses, Response
from .utils import sanitize_path

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = (
    "css", "js", "png", "jpg", "jpeg", "gif", "svg", "ico", "woff", "woff2",
    "ttf", "eot", "pdf", "webp", "avif",
)

_CACHE_CONTROL = "public, max-age=3600"


def _extension(file_path: str) -> str | None:
    suffix = PurePath(file_path).suffix
    return suffix[1:] if suffix else None


class WebStaticFileExtensions:
    """The set of file extensions that are served with cache headers."""

    DEFAULT_EXTENSIONS = DEFAULT_EXTENSIONS

    def __init__(self) -> None:
        self._extensions: set[str] = set(DEFAULT_EXTENSIONS)

    @classmethod
    def with_extensions(cls, extensions: Iterable[str]) -> WebStaticFileExtensions:
        """A set holding exactly the given extensions."""
        instance = cls()
        instance._extensions = set(extensions)
        return instance

    def add_extension(self, extension: str) -> None:
        self._extensions.add(extension)

    def remove_extension(self, extension: str) -> None:
        self._extensions.discard(extension)

    def contains(self, extension: str) -> bool:
        return extension in self._extensions

    def clear(self) -> None:
        self._extensions.clear()

    def __contains__(self, extension: object) -> bool:
        return extension in self._extensions

    def __iter__(self) -> Iterator[str]:
        return iter(self._extensions)

    def __len__(self) -> int:
        return len(self._extensions)

    def is_static_asset(self, file_path: str) -> bool:
        """True if the path's extension is one of the static extensions."""
        extension = _extension(file_path)
        return extension is not None and extension in self._extensions


def serve_file(
    file_path: str,
    extensions: WebStaticFileExtensions | None = None,
    error_responses: HttpErrorResponses | None = None,
) -> Response:
    """Read a file below the working directory and wrap it in a response.

    Missing files give the 404 page from ``error_responses``; without one,
    a plain 503 response is returned.
    """
    safe_path = sanitize_path(file_path)
    try:
        with open(safe_path, "rb") as handle:
            contents = handle.read()
    except OSError:
        logger.info("File not found: %s", safe_path)
        if error_responses is not None:
            return error_responses.create_response(404)
        logger.error("Failed to create 404 response, using default")
        return Response(
            status=503,
            headers={"Content-Type": "text/plain; charset=utf-8"},
            body=b"Service temporarily unavailable",
        )

    mime_type, _ = mimetypes.guess_type(safe_path)
    headers = {"Content-Type": mime_type or "application/octet-stream"}

    if extensions is None:
        static = _extension(safe_path) in DEFAULT_EXTENSIONS
    else:
        static = extensions.is_static_asset(safe_path)
    if static:
        headers["Cache-Control"] = _CACHE_CONTROL

    return Response(status=200, headers=headers, body=contents)