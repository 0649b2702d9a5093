from __future__ import annotations

from dataclasses import dataclass
from typing import Any

IN_PROGRESS = "in-progress"
_PRIORITIES = ("low", "medium", "high")


@dataclass(frozen=True)
class Subtask:
    id: str
    status: str = "pending"
    title: str = ""


@dataclass(frozen=True)
class Task:
    """Task record as handed over by the task store. Treated as immutable."""

    id: str
    status: str = "pending"
    priority: str = "medium"
    dependencies: tuple[str, ...] = ()
    subtasks: tuple[Subtask, ...] = ()
    title: str = ""
    cluster: str | None = None

    @property
    def is_in_progress(self) -> bool:
        return self.status == IN_PROGRESS

    @property
    def has_subtask_in_progress(self) -> bool:
        return any(subtask.status == IN_PROGRESS for subtask in self.subtasks)

    @property
    def is_active(self) -> bool:
        return self.is_in_progress or self.has_subtask_in_progress


def _normalize_id(value: Any) -> str:
    return str(value if value is not None else "").strip()


def _normalize_priority(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in _PRIORITIES:
        return text
    return "medium"


def subtask_from_dict(payload: dict[str, Any], index: int = 0) -> Subtask:
    return Subtask(
        id=_normalize_id(payload.get("id", index)) or str(index),
        status=str(payload.get("status", "pending") or "pending").strip().lower(),
        title=str(payload.get("title", "") or ""),
    )


def task_from_dict(payload: dict[str, Any]) -> Task:
    dependencies_raw = payload.get("dependencies", [])
    if not isinstance(dependencies_raw, (list, tuple)):
        dependencies_raw = []
    subtasks_raw = payload.get("subtasks", [])
    if not isinstance(subtasks_raw, (list, tuple)):
        subtasks_raw = []

    cluster_raw = payload.get("cluster")
    cluster = str(cluster_raw).strip() if cluster_raw not in (None, "") else None

    return Task(
        id=_normalize_id(payload.get("id")),
        status=str(payload.get("status", "pending") or "pending").strip().lower(),
        priority=_normalize_priority(payload.get("priority")),
        dependencies=tuple(
            _normalize_id(dep) for dep in dependencies_raw if _normalize_id(dep)
        ),
        subtasks=tuple(
            subtask_from_dict(row, index)
            for index, row in enumerate(subtasks_raw)
            if isinstance(row, dict)
        ),
        title=str(payload.get("title", "") or ""),
        cluster=cluster,
    )


def coerce_tasks(rows: Any) -> list[Task]:
    if not isinstance(rows, (list, tuple)):
        return []
    tasks: list[Task] = []
    for row in rows:
        if isinstance(row, Task):
            tasks.append(row)
        elif isinstance(row, dict):
            tasks.append(task_from_dict(row))
    return tasks

