from __future__ import annotations

import math
from typing import Any, Iterable

Bounds = tuple[float, float, float, float]


def rect_intersects_circle(
    bounds: Bounds,
    x: float,
    y: float,
    radius: float,
) -> bool:
    x0, y0, x1, y1 = bounds
    nearest_x = min(max(x, x0), x1)
    nearest_y = min(max(y, y0), y1)
    dx = x - nearest_x
    dy = y - nearest_y
    return (dx * dx) + (dy * dy) <= (radius * radius)


def rect_contains(bounds: Bounds, x: float, y: float) -> bool:
    x0, y0, x1, y1 = bounds
    return x0 <= x <= x1 and y0 <= y <= y1


def square_bounds(items: Iterable[dict[str, Any]], pad: float = 1.0) -> Bounds:
    xs: list[float] = []
    ys: list[float] = []
    for item in items:
        xs.append(float(item["x"]))
        ys.append(float(item["y"]))
    if not xs:
        return (0.0, 0.0, 1.0, 1.0)
    min_x, max_x = min(xs), max(xs)
    min_y, max_y = min(ys), max(ys)
    side = max(max_x - min_x, max_y - min_y, 1.0) + (pad * 2.0)
    cx = (min_x + max_x) * 0.5
    cy = (min_y + max_y) * 0.5
    half = side * 0.5
    return (cx - half, cy - half, cx + half, cy + half)


def quadtree_build(
    items: list[dict[str, Any]],
    *,
    bounds: Bounds | None = None,
    depth: int = 0,
    max_items: int = 8,
    max_depth: int = 10,
) -> dict[str, Any]:
    """Build a region quadtree over ``items`` (dicts carrying ``x``/``y``).

    Items that fall on no child quadrant stay on the parent as spill, so a
    point on the outer edge is never lost.
    """
    if bounds is None:
        bounds = square_bounds(items)
    node: dict[str, Any] = {
        "bounds": bounds,
        "items": list(items),
        "children": None,
    }
    if depth >= max_depth or len(items) <= max_items:
        return node

    x0, y0, x1, y1 = bounds
    mx = (x0 + x1) * 0.5
    my = (y0 + y1) * 0.5
    quadrants = [
        (x0, y0, mx, my),
        (mx, y0, x1, my),
        (x0, my, mx, y1),
        (mx, my, x1, y1),
    ]
    buckets: list[list[dict[str, Any]]] = [[], [], [], []]
    spill: list[dict[str, Any]] = []

    for item in items:
        ix = float(item["x"])
        iy = float(item["y"])
        assigned = False
        for index, (qx0, qy0, qx1, qy1) in enumerate(quadrants):
            if qx0 <= ix < qx1 and qy0 <= iy < qy1:
                buckets[index].append(item)
                assigned = True
                break
        if not assigned:
            spill.append(item)

    child_nodes: list[dict[str, Any]] = []
    for bucket, qbounds in zip(buckets, quadrants):
        if bucket:
            child_nodes.append(
                quadtree_build(
                    bucket,
                    bounds=qbounds,
                    depth=depth + 1,
                    max_items=max_items,
                    max_depth=max_depth,
                )
            )

    if not child_nodes:
        return node

    node["items"] = spill
    node["children"] = child_nodes
    return node


def quadtree_query_radius(
    node: dict[str, Any],
    x: float,
    y: float,
    radius: float,
    out: list[dict[str, Any]],
) -> None:
    """Collect candidates from every cell touching the circle.

    Callers still filter by exact distance; a cell hit only means "maybe".
    """
    if not node:
        return
    if not rect_intersects_circle(node["bounds"], x, y, radius):
        return

    items = node.get("items")
    if items:
        out.extend(items)

    children = node.get("children")
    if children:
        for child in children:
            quadtree_query_radius(child, x, y, radius, out)


def quadtree_mass_aggregate(node: dict[str, Any]) -> dict[str, Any]:
    """Fold item weights into each cell: total weight, count and centroid.

    The result is cached on the cell under ``mass_agg`` for Barnes-Hut walks.
    """
    weight_sum = 0.0
    count_sum = 0
    weighted_x = 0.0
    weighted_y = 0.0

    for item in node.get("items") or []:
        weight = max(0.0, float(item.get("weight", 1.0)))
        if weight <= 1e-12:
            continue
        weighted_x += float(item["x"]) * weight
        weighted_y += float(item["y"]) * weight
        weight_sum += weight
        count_sum += 1

    for child in node.get("children") or []:
        child_agg = quadtree_mass_aggregate(child)
        child_weight = child_agg["weight"]
        if child_weight <= 1e-12:
            continue
        weighted_x += child_agg["cx"] * child_weight
        weighted_y += child_agg["cy"] * child_weight
        weight_sum += child_weight
        count_sum += child_agg["count"]

    x0, y0, x1, y1 = node["bounds"]
    center_x = (x0 + x1) * 0.5
    center_y = (y0 + y1) * 0.5
    if weight_sum > 1e-12:
        center_x = weighted_x / weight_sum
        center_y = weighted_y / weight_sum
    aggregate = {
        "weight": weight_sum,
        "count": count_sum,
        "cx": center_x,
        "cy": center_y,
    }
    node["mass_agg"] = aggregate
    return aggregate


def quadtree_depth(node: dict[str, Any]) -> int:
    children = node.get("children")
    if not children:
        return 1
    return 1 + max(quadtree_depth(child) for child in children)


def quadtree_cell_count(node: dict[str, Any]) -> int:
    children = node.get("children")
    if not children:
        return 1
    return 1 + sum(quadtree_cell_count(child) for child in children)


def cell_width(node: dict[str, Any]) -> float:
    x0, _, x1, _ = node["bounds"]
    return max(0.0, x1 - x0)


def distance(left: dict[str, Any], right: dict[str, Any]) -> float:
    return math.hypot(
        float(left["x"]) - float(right["x"]),
        float(left["y"]) - float(right["y"]),
    )
