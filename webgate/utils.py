"""Path helpers."""

from __future__ import annotations


def sanitize_path(path: str) -> str:
    """Strip ``..`` sequences and leading slashes so the path stays relative."""
    return path.replace("..", "").lstrip("/")