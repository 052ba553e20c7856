"""Counting of active and total connections."""

from __future__ import annotations

import threading


class _Counters:
    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.active = 0
        self.total = 0


class ConnectionTracker:
    """Tracks active and total connections; copies share the same counters."""

    def __init__(self) -> None:
        self._counters = _Counters()

    def __copy__(self) -> ConnectionTracker:
        other = ConnectionTracker.__new__(ConnectionTracker)
        other._counters = self._counters
        return other

    def new_connection(self) -> ConnectionGuard:
        """Count a new connection; the returned guard ends it when released."""
        counters = self._counters
        with counters.lock:
            counters.total += 1
            counters.active += 1
        return ConnectionGuard(counters)

    def active_connections(self) -> int:
        return self._counters.active

    def total_connections(self) -> int:
        return self._counters.total


class ConnectionGuard:
    """Holds one active connection until released, exited, or collected."""

    def __init__(self, counters: _Counters) -> None:
        self._counters: _Counters | None = counters

    def release(self) -> None:
        """End the connection; further calls do nothing."""
        counters, self._counters = self._counters, None
        if counters is not None:
            with counters.lock:
                counters.active -= 1

    def __enter__(self) -> ConnectionGuard:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __del__(self) -> None:
        self.release()