"""Bookkeeping of the tasks a server runs."""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Protocol


class _Task(Protocol):
    def done(self) -> bool: ...

    def cancel(self) -> bool: ...


class TaskKind(enum.Enum):
    SERVER = "server"
    CONNECTION = "connection"


@dataclass(frozen=True)
class TaskKey:
    """Identifies a task: the accept loop or one numbered connection."""

    kind: TaskKind
    connection_id: int | None = None

    def __post_init__(self) -> None:
        if self.kind is TaskKind.CONNECTION and self.connection_id is None:
            raise ValueError("a connection task needs a connection id")
        if self.kind is TaskKind.SERVER and self.connection_id is not None:
            raise ValueError("the server task has no connection id")

    @classmethod
    def server(cls) -> TaskKey:
        return cls(TaskKind.SERVER)

    @classmethod
    def connection(cls, connection_id: int) -> TaskKey:
        return cls(TaskKind.CONNECTION, connection_id)


def _cancel(task: _Task) -> None:
    if not task.done():
        task.cancel()


class TaskStore:
    """Thread-safe map of keys to tasks; tasks dropped from it are cancelled."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[TaskKey, _Task] = {}

    def insert(self, key: TaskKey, task: _Task) -> None:
        """Store a task, first dropping finished ones and any task under the key."""
        self.cleanup_finished_tasks()
        with self._lock:
            previous = self._tasks.get(key)
            self._tasks[key] = task
        if previous is not None and previous is not task:
            _cancel(previous)

    def remove(self, key: TaskKey) -> _Task | None:
        """Drop and cancel the task under the key, returning it."""
        with self._lock:
            task = self._tasks.pop(key, None)
        if task is not None:
            _cancel(task)
        return task

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._tasks

    def __len__(self) -> int:
        with self._lock:
            return len(self._tasks)

    def finished_task_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks.values() if task.done())

    def cleanup_finished_tasks(self) -> None:
        with self._lock:
            self._tasks = {k: t for k, t in self._tasks.items() if not t.done()}

    def clear(self) -> None:
        """Drop and cancel every task."""
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for task in tasks:
            _cancel(task)