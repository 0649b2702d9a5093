from __future__ import annotations

import threading
from typing import Callable, Iterable

from .tasks import Task, coerce_tasks

ActiveTaskListener = Callable[["Task | None", "Task | None"], None]


def find_active_task(tasks: Iterable[Task]) -> Task | None:
    """First in-progress task by list order, else first with an in-progress subtask."""
    ordered = list(tasks)
    for task in ordered:
        if task.is_in_progress:
            return task
    for task in ordered:
        if task.has_subtask_in_progress:
            return task
    return None


class ActiveTaskTracker:
    """Derives the active task and reports identity changes.

    Listeners get ``(active, previous)``. An update requested from inside a
    listener is queued and handled once the current round of notifications is
    done, so no listener is ever re-entered.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._active: Task | None = None
        self._listeners: list[ActiveTaskListener] = []
        self._notifying = False
        self._queued: list[list[Task]] = []

    @property
    def current(self) -> Task | None:
        with self._lock:
            return self._active

    @property
    def current_id(self) -> str | None:
        active = self.current
        return active.id if active is not None else None

    def subscribe(self, listener: ActiveTaskListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def update_active_task(self, tasks: Iterable[Task | dict]) -> Task | None:
        rows = coerce_tasks(list(tasks))
        with self._lock:
            if self._notifying:
                self._queued.append(rows)
                return find_active_task(rows)
            self._notifying = True
            try:
                self._apply(rows)
                while self._queued:
                    self._apply(self._queued.pop(0))
            finally:
                self._notifying = False
                self._queued.clear()
            return self._active

    def _apply(self, rows: list[Task]) -> None:
        found = find_active_task(rows)
        previous = self._active
        if (found.id if found else None) == (previous.id if previous else None):
            # Same identity; keep the fresher record without notifying.
            self._active = found
            return
        self._active = found
        for listener in list(self._listeners):
            listener(found, previous)

    def clear(self) -> None:
        with self._lock:
            self._active = None
