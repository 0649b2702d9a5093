from __future__ import annotations

import math
from typing import Any

from .config import ForceLayoutConfig
from .constants import (
    CHARGE_DISTANCE_MIN2,
    CLUSTER_PULL_STRENGTH,
    EMERGENCY_OVERLAP_MARGIN,
    EMERGENCY_SPACING_FORCE,
    SEPARATION_PROJECTION_ITERATIONS,
    SEPARATION_PROJECTION_SLACK,
    SEPARATION_STRENGTH,
)
from .nodes import PhysicsLink, PhysicsNode, pair_jitter
from .quadtree import (
    quadtree_build,
    quadtree_mass_aggregate,
    quadtree_query_radius,
    rect_contains,
)
from .spacing import SpacingState, pair_separation


def charge_points(nodes: list[PhysicsNode]) -> list[dict[str, Any]]:
    return [
        {"id": node.id, "index": index, "x": node.x, "y": node.y, "weight": 1.0}
        for index, node in enumerate(nodes)
    ]


def charge_deltas(
    points: list[dict[str, Any]],
    *,
    strength: float,
    alpha: float,
    theta: float,
    max_items: int = 8,
    max_depth: int = 10,
) -> list[tuple[float, float]]:
    """Barnes-Hut many-body repulsion.

    A cell is folded into its centroid when the point lies outside it and
    ``width / distance < theta``; everything else is summed pair by pair.
    Returns one ``(dvx, dvy)`` per input point, in input order.
    """
    if len(points) < 2 or strength == 0.0 or alpha <= 0.0:
        return [(0.0, 0.0) for _ in points]

    tree = quadtree_build(points, max_items=max_items, max_depth=max_depth)
    quadtree_mass_aggregate(tree)
    theta_sq = max(1e-9, theta * theta)
    scale = strength * alpha
    deltas: list[tuple[float, float]] = []

    for point in points:
        px = float(point["x"])
        py = float(point["y"])
        fvx = 0.0
        fvy = 0.0
        stack = [tree]
        while stack:
            cell = stack.pop()
            aggregate = cell["mass_agg"]
            if aggregate["count"] <= 0:
                continue
            bounds = cell["bounds"]
            dx = aggregate["cx"] - px
            dy = aggregate["cy"] - py
            dist_sq = (dx * dx) + (dy * dy)
            width = bounds[2] - bounds[0]
            if (
                not rect_contains(bounds, px, py)
                and dist_sq > 0.0
                and (width * width) / theta_sq < dist_sq
            ):
                if dist_sq < CHARGE_DISTANCE_MIN2:
                    dist_sq = math.sqrt(CHARGE_DISTANCE_MIN2 * dist_sq)
                fvx += dx * aggregate["weight"] * scale / dist_sq
                fvy += dy * aggregate["weight"] * scale / dist_sq
                continue

            for item in cell.get("items") or []:
                if item is point:
                    continue
                dx = float(item["x"]) - px
                dy = float(item["y"]) - py
                dist_sq = (dx * dx) + (dy * dy)
                if dist_sq == 0.0:
                    dx, dy = pair_jitter(str(point["id"]), str(item["id"]))
                    dist_sq = (dx * dx) + (dy * dy)
                if dist_sq < CHARGE_DISTANCE_MIN2:
                    dist_sq = math.sqrt(CHARGE_DISTANCE_MIN2 * dist_sq)
                weight = float(item.get("weight", 1.0))
                fvx += dx * weight * scale / dist_sq
                fvy += dy * weight * scale / dist_sq

            children = cell.get("children")
            if children:
                stack.extend(children)
        deltas.append((fvx, fvy))
    return deltas


def apply_velocity_deltas(
    nodes: list[PhysicsNode], deltas: list[tuple[float, float]]
) -> None:
    for node, (dvx, dvy) in zip(nodes, deltas):
        if node.pinned:
            continue
        node.vx += dvx
        node.vy += dvy


def apply_links(
    nodes: dict[str, PhysicsNode],
    links: list[PhysicsLink],
    degrees: dict[str, int],
    alpha: float,
) -> None:
    """Spring each link toward its target distance using predicted positions.

    The correction is split by endpoint degree so hubs move less.
    """
    for link in links:
        source = nodes.get(link.source)
        target = nodes.get(link.target)
        if source is None or target is None or link.strength <= 0.0:
            continue
        dx = (target.x + target.vx) - (source.x + source.vx)
        dy = (target.y + target.vy) - (source.y + source.vy)
        if dx == 0.0 and dy == 0.0:
            dx, dy = pair_jitter(source.id, target.id)
        length = math.sqrt((dx * dx) + (dy * dy))
        factor = (length - link.distance) / length * alpha * link.strength
        dx *= factor
        dy *= factor

        source_degree = max(1, degrees.get(source.id, 1))
        target_degree = max(1, degrees.get(target.id, 1))
        bias = source_degree / float(source_degree + target_degree)
        if target.pinned:
            bias = 0.0
        elif source.pinned:
            bias = 1.0
        if not target.pinned:
            target.vx -= dx * bias
            target.vy -= dy * bias
        if not source.pinned:
            source.vx += dx * (1.0 - bias)
            source.vy += dy * (1.0 - bias)


def apply_center(nodes: list[PhysicsNode], center: tuple[float, float], strength: float) -> None:
    """Shift free nodes so the mean position eases toward ``center``.

    A uniform translation keeps pairwise distances intact.
    """
    if not nodes or strength <= 0.0:
        return
    mean_x = sum(node.x for node in nodes) / len(nodes)
    mean_y = sum(node.y for node in nodes) / len(nodes)
    shift_x = (mean_x - center[0]) * strength
    shift_y = (mean_y - center[1]) * strength
    for node in nodes:
        if node.pinned:
            continue
        node.x -= shift_x
        node.y -= shift_y


def apply_cluster_pull(
    nodes: list[PhysicsNode], spacing: SpacingState, alpha: float
) -> None:
    # One cluster has nothing to separate from.
    if len(spacing.cluster_centers) < 2:
        return
    scale = CLUSTER_PULL_STRENGTH * alpha
    for node in nodes:
        if node.pinned:
            continue
        center = spacing.cluster_centers.get(spacing.clusters.get(node.id, ""))
        if center is None:
            continue
        node.vx += (center[0] - node.x) * scale
        node.vy += (center[1] - node.y) * scale


def _pair_shares(
    left: PhysicsNode, right: PhysicsNode, left_radius: float, right_radius: float
) -> tuple[float, float] | None:
    if left.pinned and right.pinned:
        return None
    if left.pinned:
        return 0.0, 1.0
    if right.pinned:
        return 1.0, 0.0
    left_sq = left_radius * left_radius
    right_sq = right_radius * right_radius
    total = left_sq + right_sq
    if total <= 0.0:
        return 0.5, 0.5
    # The smaller node moves more.
    return right_sq / total, left_sq / total


def _index_items(nodes: list[PhysicsNode], *, predicted: bool) -> list[dict[str, Any]]:
    items: list[dict[str, Any]] = []
    for index, node in enumerate(nodes):
        x = node.x + (node.vx if predicted else 0.0)
        y = node.y + (node.vy if predicted else 0.0)
        items.append({"id": node.id, "index": index, "x": x, "y": y})
    return items


def sampled_indices(count: int, ratio: float, tick: int) -> list[bool]:
    """Rotating stride over node indices; every node is covered within a cycle."""
    if ratio >= 1.0 or count == 0:
        return [True] * count
    stride = max(1, int(round(1.0 / max(ratio, 1e-6))))
    offset = tick % stride
    return [(index % stride) == offset for index in range(count)]


def apply_collisions(
    nodes: list[PhysicsNode],
    spacing: SpacingState,
    config: ForceLayoutConfig,
    *,
    tick: int = 0,
) -> int:
    """Push overlapping pairs apart by overlap depth and ``collision_strength``.

    Uses predicted positions (``x + vx``) like the link pass. Returns the number
    of overlapping pairs resolved.
    """
    if len(nodes) < 2 or config.collision_strength <= 0.0:
        return 0
    items = _index_items(nodes, predicted=True)
    tree = quadtree_build(
        items,
        max_items=config.quadtree_max_items,
        max_depth=config.quadtree_max_depth,
    )
    sampled = sampled_indices(len(nodes), config.collision_sample_ratio, tick)
    bonus = config.cluster_spacing if config.enable_smart_spacing else 0.0
    reach_extra = spacing.max_radius + bonus
    resolved = 0

    for item in items:
        index = item["index"]
        if not sampled[index]:
            continue
        node = nodes[index]
        radius = spacing.radius(node.id, config.collision_radius)
        candidates: list[dict[str, Any]] = []
        quadtree_query_radius(tree, item["x"], item["y"], radius + reach_extra, candidates)
        for other_item in candidates:
            other_index = other_item["index"]
            if other_index == index:
                continue
            # Each pair once: the lower index handles it unless only the other side was sampled.
            if sampled[other_index] and other_index < index:
                continue
            other = nodes[other_index]
            separation = pair_separation(node.id, other.id, spacing, config)
            dx = item["x"] - other_item["x"]
            dy = item["y"] - other_item["y"]
            dist_sq = (dx * dx) + (dy * dy)
            if dist_sq >= separation * separation:
                continue
            other_radius = spacing.radius(other.id, config.collision_radius)
            shares = _pair_shares(node, other, radius, other_radius)
            if shares is None:
                continue
            if dist_sq == 0.0:
                dx, dy = pair_jitter(node.id, other.id)
                dist_sq = (dx * dx) + (dy * dy)
            dist = math.sqrt(dist_sq)
            push = (separation - dist) / dist * config.collision_strength
            dx *= push
            dy *= push
            node.vx += dx * shares[0]
            node.vy += dy * shares[0]
            other.vx -= dx * shares[1]
            other.vy -= dy * shares[1]
            resolved += 1
    return resolved


def _close_pairs(
    nodes: list[PhysicsNode],
    reach: float,
    config: ForceLayoutConfig,
) -> list[tuple[int, int, float, float, float]]:
    """Pairs whose current centers are closer than ``reach`` as (i, j, dx, dy, d)."""
    if len(nodes) < 2 or reach <= 0.0:
        return []
    items = _index_items(nodes, predicted=False)
    tree = quadtree_build(
        items,
        max_items=config.quadtree_max_items,
        max_depth=config.quadtree_max_depth,
    )
    reach_sq = reach * reach
    pairs: list[tuple[int, int, float, float, float]] = []
    for item in items:
        candidates: list[dict[str, Any]] = []
        quadtree_query_radius(tree, item["x"], item["y"], reach, candidates)
        for other_item in candidates:
            if other_item["index"] <= item["index"]:
                continue
            dx = other_item["x"] - item["x"]
            dy = other_item["y"] - item["y"]
            dist_sq = (dx * dx) + (dy * dy)
            if dist_sq < reach_sq:
                pairs.append(
                    (item["index"], other_item["index"], dx, dy, math.sqrt(dist_sq))
                )
    return pairs


def apply_separation(
    nodes: list[PhysicsNode], config: ForceLayoutConfig, alpha: float
) -> int:
    """Velocity push for pairs closer than ``min_node_separation``."""
    minimum = config.min_node_separation
    if not config.enable_smart_spacing or minimum <= 0.0:
        return 0
    pairs = _close_pairs(nodes, minimum, config)
    for left_index, right_index, dx, dy, dist in pairs:
        left = nodes[left_index]
        right = nodes[right_index]
        shares = _pair_shares(left, right, 1.0, 1.0)
        if shares is None:
            continue
        if dist == 0.0:
            dx, dy = pair_jitter(left.id, right.id)
            dist = math.hypot(dx, dy)
        force = SEPARATION_STRENGTH * (minimum - dist) / dist * max(alpha, 0.1)
        left.vx -= dx * force * shares[0]
        left.vy -= dy * force * shares[0]
        right.vx += dx * force * shares[1]
        right.vy += dy * force * shares[1]
    return len(pairs)


def apply_emergency_overlap(
    nodes: list[PhysicsNode],
    spacing: SpacingState,
    config: ForceLayoutConfig,
) -> int:
    """Move overlapping pairs apart directly; returns how many were found."""
    reach = (spacing.max_radius * 2.0) + EMERGENCY_OVERLAP_MARGIN
    found = 0
    for left_index, right_index, dx, dy, dist in _close_pairs(nodes, reach, config):
        left = nodes[left_index]
        right = nodes[right_index]
        required = (
            spacing.radius(left.id, config.collision_radius)
            + spacing.radius(right.id, config.collision_radius)
            + EMERGENCY_OVERLAP_MARGIN
        )
        if dist >= required or dist <= 0.0:
            continue
        found += 1
        shares = _pair_shares(left, right, 1.0, 1.0)
        if shares is None:
            continue
        force = EMERGENCY_SPACING_FORCE * (required - dist) / dist
        left.x -= dx * force * shares[0]
        left.y -= dy * force * shares[0]
        right.x += dx * force * shares[1]
        right.y += dy * force * shares[1]
    return found


def enforce_min_separation(
    nodes: list[PhysicsNode], config: ForceLayoutConfig
) -> int:
    """Project positions until no pair sits closer than ``min_node_separation``.

    Gauss-Seidel sweeps over close pairs. A free node facing a pinned one takes
    the whole correction; two pinned nodes are left alone. Returns how many
    pairs the final sweep still had to correct, 0 once converged.
    """
    minimum = config.min_node_separation
    if minimum <= 0.0 or len(nodes) < 2:
        return 0
    target = minimum + SEPARATION_PROJECTION_SLACK
    remaining = 0
    for _ in range(SEPARATION_PROJECTION_ITERATIONS):
        pairs = _close_pairs(nodes, minimum, config)
        remaining = 0
        for left_index, right_index, _dx, _dy, _dist in pairs:
            left = nodes[left_index]
            right = nodes[right_index]
            shares = _pair_shares(left, right, 1.0, 1.0)
            if shares is None:
                continue
            # Positions move inside the sweep, so re-read them.
            dx = right.x - left.x
            dy = right.y - left.y
            dist = math.hypot(dx, dy)
            if dist >= minimum:
                continue
            remaining += 1
            if dist == 0.0:
                dx, dy = pair_jitter(left.id, right.id)
                dist = math.hypot(dx, dy)
            correction = (target - dist) / dist
            left.x -= dx * correction * shares[0]
            left.y -= dy * correction * shares[0]
            right.x += dx * correction * shares[1]
            right.y += dy * correction * shares[1]
        if remaining == 0:
            break
    return remaining
