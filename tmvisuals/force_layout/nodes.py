from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass, replace

from .constants import JITTER_SCALE, _stable_ratio
from .tasks import Task

_GOLDEN_ANGLE = math.pi * (3.0 - math.sqrt(5.0))


@dataclass
class PhysicsNode:
    id: str
    task_id: str = ""
    x: float = 0.0
    y: float = 0.0
    vx: float = 0.0
    vy: float = 0.0
    fx: float | None = None
    fy: float | None = None
    pinned_by: str | None = None
    priority: str = "medium"
    cluster: str | None = None
    active: bool = False
    in_progress: bool = False
    dependencies: tuple[str, ...] = ()

    @property
    def pinned(self) -> bool:
        return self.fx is not None and self.fy is not None

    def pin(self, x: float, y: float, *, source: str = "user") -> None:
        self.fx = float(x)
        self.fy = float(y)
        self.pinned_by = source

    def release(self) -> None:
        self.fx = None
        self.fy = None
        self.pinned_by = None

    def snapshot(self) -> "PhysicsNode":
        return replace(self)


@dataclass
class PhysicsLink:
    source: str
    target: str
    strength: float = 0.0
    distance: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.source}->{self.target}"


def node_id_for_task(task_id: str) -> str:
    return f"task-{task_id}"


def node_from_task(task: Task) -> PhysicsNode:
    return PhysicsNode(
        id=node_id_for_task(task.id),
        task_id=task.id,
        priority=task.priority,
        cluster=task.cluster,
        in_progress=task.is_active,
        dependencies=tuple(node_id_for_task(dep) for dep in task.dependencies),
    )


def links_from_tasks(tasks: list[Task]) -> list[PhysicsLink]:
    links: list[PhysicsLink] = []
    seen: set[str] = set()
    for task in tasks:
        target = node_id_for_task(task.id)
        for dep in task.dependencies:
            link = PhysicsLink(source=node_id_for_task(dep), target=target)
            if link.key in seen or link.source == link.target:
                continue
            seen.add(link.key)
            links.append(link)
    return links


def phyllotaxis_position(
    index: int,
    *,
    center_x: float,
    center_y: float,
    step: float,
) -> tuple[float, float]:
    radius = step * math.sqrt(0.5 + index)
    angle = index * _GOLDEN_ANGLE
    return (
        center_x + radius * math.cos(angle),
        center_y + radius * math.sin(angle),
    )


def pair_jitter(left_id: str, right_id: str) -> tuple[float, float]:
    """Small deterministic offset for coincident pairs, antisymmetric in order."""
    first, second = sorted((left_id, right_id))
    seed = f"{first}|{second}"
    angle = _stable_ratio(seed, 1) * math.tau
    magnitude = JITTER_SCALE * (0.5 + _stable_ratio(seed, 2))
    dx = math.cos(angle) * magnitude
    dy = math.sin(angle) * magnitude
    if left_id != first:
        return -dx, -dy
    return dx, dy


def dependency_levels(node_ids: list[str], links: list[PhysicsLink]) -> dict[str, int]:
    """Longest dependency chain above each node.

    Nodes caught in a cycle keep whatever level their acyclic parents gave them.
    """
    known = set(node_ids)
    children: dict[str, list[str]] = {node_id: [] for node_id in node_ids}
    pending = {node_id: 0 for node_id in node_ids}
    for link in links:
        if link.source in known and link.target in known:
            children[link.source].append(link.target)
            pending[link.target] += 1

    levels = {node_id: 0 for node_id in node_ids}
    queue = deque(node_id for node_id in node_ids if pending[node_id] == 0)
    while queue:
        node_id = queue.popleft()
        for child in children[node_id]:
            levels[child] = max(levels[child], levels[node_id] + 1)
            pending[child] -= 1
            if pending[child] == 0:
                queue.append(child)
    return levels


def seed_positions(
    node_ids: list[str],
    links: list[PhysicsLink],
    *,
    center_x: float,
    center_y: float,
    row_spacing: float,
    column_spacing: float,
) -> dict[str, tuple[float, float]]:
    """Deterministic starting positions for nodes with no prior placement.

    Linked nodes are laid out in rows by dependency level, centered on the
    layout center; isolated nodes go on a phyllotaxis spiral around it.
    """
    wanted = set(node_ids)
    linked: set[str] = set()
    for link in links:
        if link.source in wanted and link.target in wanted:
            linked.add(link.source)
            linked.add(link.target)

    positions: dict[str, tuple[float, float]] = {}
    ordered_linked = [node_id for node_id in node_ids if node_id in linked]
    if ordered_linked:
        levels = dependency_levels(ordered_linked, links)
        rows: dict[int, list[str]] = {}
        for node_id in ordered_linked:
            rows.setdefault(levels[node_id], []).append(node_id)
        depth = max(rows)
        for level, members in rows.items():
            y = center_y + (level - (depth / 2.0)) * row_spacing
            for column, node_id in enumerate(members):
                x = center_x + (column - ((len(members) - 1) / 2.0)) * column_spacing
                positions[node_id] = (x, y)

    isolated = [node_id for node_id in node_ids if node_id not in linked]
    for index, node_id in enumerate(isolated):
        positions[node_id] = phyllotaxis_position(
            index,
            center_x=center_x,
            center_y=center_y,
            step=column_spacing,
        )
    return positions
