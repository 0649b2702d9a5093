from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Iterable

from .config import ForceLayoutConfig
from .constants import (
    ACTIVE_RADIUS_FACTOR,
    CLUSTER_RING_RATIO,
    CONNECTIVITY_RADIUS_STEP,
    DENSITY_RADIUS_CAP,
    DENSITY_RADIUS_STEP,
    LINK_DISTANCE_RADIUS_RATIO,
    MIN_VIABLE_RADIUS_FLOOR,
    MIN_VIABLE_RADIUS_RATIO,
    PRIORITY_TIER_FACTORS,
)
from .nodes import PhysicsLink, PhysicsNode
from .quadtree import quadtree_build, quadtree_query_radius


@dataclass
class SpacingState:
    radii: dict[str, float] = field(default_factory=dict)
    clusters: dict[str, str] = field(default_factory=dict)
    cluster_centers: dict[str, tuple[float, float]] = field(default_factory=dict)
    degrees: dict[str, int] = field(default_factory=dict)
    max_radius: float = 0.0
    computed_at_tick: int = -1

    def radius(self, node_id: str, default: float) -> float:
        return self.radii.get(node_id, default)

    def same_cluster(self, left_id: str, right_id: str) -> bool:
        left = self.clusters.get(left_id)
        return left is not None and left == self.clusters.get(right_id)


def link_degrees(nodes: Iterable[PhysicsNode], links: Iterable[PhysicsLink]) -> dict[str, int]:
    degrees = {node.id: 0 for node in nodes}
    for link in links:
        if link.source in degrees and link.target in degrees:
            degrees[link.source] += 1
            degrees[link.target] += 1
    return degrees


def detect_clusters(
    nodes: list[PhysicsNode], links: list[PhysicsLink]
) -> dict[str, str]:
    """Group nodes by explicit tag, else by dependency component."""
    parent = {node.id: node.id for node in nodes}

    def find(node_id: str) -> str:
        root = node_id
        while parent[root] != root:
            root = parent[root]
        while parent[node_id] != root:
            parent[node_id], node_id = root, parent[node_id]
        return root

    for link in links:
        if link.source not in parent or link.target not in parent:
            continue
        left = find(link.source)
        right = find(link.target)
        if left == right:
            continue
        # Smallest id wins so cluster names are stable across rebuilds.
        if left < right:
            parent[right] = left
        else:
            parent[left] = right

    clusters: dict[str, str] = {}
    for node in nodes:
        if node.cluster:
            clusters[node.id] = f"tag:{node.cluster}"
        else:
            clusters[node.id] = f"component:{find(node.id)}"
    return clusters


def priority_multiplier(priority: str, config: ForceLayoutConfig) -> float:
    tier = PRIORITY_TIER_FACTORS.get(priority, PRIORITY_TIER_FACTORS["medium"])
    return config.priority_spacing_multiplier * tier


def density_factor(neighbor_count: int) -> float:
    return min(DENSITY_RADIUS_CAP, 1.0 + DENSITY_RADIUS_STEP * max(0, neighbor_count))


def base_radius(node: PhysicsNode, degree: int, config: ForceLayoutConfig) -> float:
    base = config.collision_radius
    multiplier = priority_multiplier(node.priority, config)
    if node.active or node.in_progress:
        multiplier *= ACTIVE_RADIUS_FACTOR
    multiplier *= 1.0 + (CONNECTIVITY_RADIUS_STEP * degree)
    floor = max(base * MIN_VIABLE_RADIUS_RATIO, min(MIN_VIABLE_RADIUS_FLOOR, base))
    return max(floor, base * multiplier)


def local_counts(nodes: list[PhysicsNode], radius: float, *, max_items: int = 8) -> dict[str, int]:
    if radius <= 0.0 or not nodes:
        return {node.id: 0 for node in nodes}
    items = [{"id": node.id, "x": node.x, "y": node.y} for node in nodes]
    tree = quadtree_build(items, max_items=max_items)
    radius_sq = radius * radius
    counts: dict[str, int] = {}
    for item in items:
        candidates: list[dict] = []
        quadtree_query_radius(tree, item["x"], item["y"], radius, candidates)
        count = 0
        for other in candidates:
            if other is item:
                continue
            dx = other["x"] - item["x"]
            dy = other["y"] - item["y"]
            if (dx * dx) + (dy * dy) < radius_sq:
                count += 1
        counts[item["id"]] = count
    return counts


def cluster_centers(
    nodes: list[PhysicsNode],
    clusters: dict[str, str],
    config: ForceLayoutConfig,
) -> dict[str, tuple[float, float]]:
    members: dict[str, list[PhysicsNode]] = {}
    for node in nodes:
        members.setdefault(clusters[node.id], []).append(node)
    if not members:
        return {}

    center_x, center_y = config.center
    ring = min(config.width, config.height) * CLUSTER_RING_RATIO
    ordered = sorted(members)
    centers: dict[str, tuple[float, float]] = {}
    for index, cluster_id in enumerate(ordered):
        group = members[cluster_id]
        # Layout center counts as one extra member to bias toward the middle.
        avg_x = (center_x + sum(node.x for node in group)) / (len(group) + 1)
        avg_y = (center_y + sum(node.y for node in group)) / (len(group) + 1)
        angle = (index * math.tau) / len(ordered)
        centers[cluster_id] = (
            avg_x + math.cos(angle) * ring,
            avg_y + math.sin(angle) * ring,
        )
    return centers


def compute_spacing(
    nodes: list[PhysicsNode],
    links: list[PhysicsLink],
    config: ForceLayoutConfig,
    *,
    tick: int = 0,
    clusters: dict[str, str] | None = None,
) -> SpacingState:
    degrees = link_degrees(nodes, links)
    cluster_map = clusters if clusters is not None else detect_clusters(nodes, links)

    if not config.enable_smart_spacing:
        radii = {node.id: config.collision_radius for node in nodes}
        return SpacingState(
            radii=radii,
            clusters=cluster_map,
            degrees=degrees,
            max_radius=config.collision_radius if nodes else 0.0,
            computed_at_tick=tick,
        )

    counts: dict[str, int] = {}
    if config.density_adaptation and config.cluster_spacing > 0.0:
        counts = local_counts(
            nodes, config.cluster_spacing, max_items=config.quadtree_max_items
        )

    radii: dict[str, float] = {}
    for node in nodes:
        radius = base_radius(node, degrees.get(node.id, 0), config)
        if counts:
            radius *= density_factor(counts.get(node.id, 0))
        radii[node.id] = radius

    centers: dict[str, tuple[float, float]] = {}
    if config.cluster_spacing > 0.0:
        centers = cluster_centers(nodes, cluster_map, config)

    return SpacingState(
        radii=radii,
        clusters=cluster_map,
        cluster_centers=centers,
        degrees=degrees,
        max_radius=max(radii.values(), default=0.0),
        computed_at_tick=tick,
    )


def pair_separation(
    left_id: str,
    right_id: str,
    spacing: SpacingState,
    config: ForceLayoutConfig,
) -> float:
    """Combined collision radius for a pair, with the inter-cluster bonus."""
    total = spacing.radius(left_id, config.collision_radius) + spacing.radius(
        right_id, config.collision_radius
    )
    if config.enable_smart_spacing and not spacing.same_cluster(left_id, right_id):
        total += config.cluster_spacing
    return total


def effective_link_distance(
    link: PhysicsLink, spacing: SpacingState, config: ForceLayoutConfig
) -> float:
    if not config.enable_smart_spacing:
        return config.link_distance
    combined = spacing.radius(link.source, config.collision_radius) + spacing.radius(
        link.target, config.collision_radius
    )
    return max(config.link_distance, combined * LINK_DISTANCE_RADIUS_RATIO)
