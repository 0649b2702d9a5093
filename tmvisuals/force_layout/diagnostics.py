from __future__ import annotations

import math
from typing import Any, Iterator, Literal

from .config import ForceLayoutConfig
from .constants import (
    ACCEPTABLE_FRAME_MS,
    ACCEPTABLE_OVERLAP_RATIO,
    CRITICAL_OVERLAP_RATIO,
    GOOD_FRAME_MS,
    GOOD_OVERLAP_RATIO,
)
from .governor import PerformanceSnapshot
from .nodes import PhysicsNode

LayoutQuality = Literal["good", "acceptable", "poor"]


def _pairs(nodes: list[PhysicsNode]) -> Iterator[tuple[PhysicsNode, PhysicsNode, float]]:
    for index, left in enumerate(nodes):
        for right in nodes[index + 1 :]:
            yield left, right, math.hypot(right.x - left.x, right.y - left.y)


def density_score(node_count: int, config: ForceLayoutConfig) -> float:
    area = config.width * config.height
    if area <= 0.0:
        return 0.0
    return (node_count * math.pi * config.collision_radius * config.collision_radius) / area


def test_collision_detection(
    nodes: list[PhysicsNode], config: ForceLayoutConfig
) -> dict[str, Any]:
    """Every pair closer than ``min_node_separation``, with advice.

    Pairs involving a pinned node are listed but kept out of ``overlap_count``;
    a pin can legitimately hold a node inside another's space.
    """
    minimum = config.min_node_separation
    result: dict[str, Any] = {
        "total_nodes": len(nodes),
        "min_separation": minimum,
        "collision_pairs": [],
        "overlap_count": 0,
        "pinned_overlap_count": 0,
        "critical_overlaps": 0,
        "average_distance": 0.0,
        "recommendations": [],
    }
    if len(nodes) < 2:
        result["recommendations"].append("Need at least 2 nodes to test collision detection")
        return result

    total = 0.0
    pair_count = 0
    for left, right, dist in _pairs(nodes):
        total += dist
        pair_count += 1
        if dist >= minimum:
            continue
        pinned = left.pinned or right.pinned
        result["collision_pairs"].append(
            {
                "node_a": left.id,
                "node_b": right.id,
                "distance": dist,
                "min_distance": minimum,
                "pinned": pinned,
            }
        )
        if pinned:
            result["pinned_overlap_count"] += 1
            continue
        result["overlap_count"] += 1
        if dist < minimum * CRITICAL_OVERLAP_RATIO:
            result["critical_overlaps"] += 1

    result["average_distance"] = total / pair_count if pair_count else 0.0
    recommendations = result["recommendations"]
    overlaps = result["overlap_count"]
    if overlaps:
        recommendations.append(f"Found {overlaps} node pairs closer than {minimum:g}")
        if overlaps > len(nodes) * 0.1:
            recommendations.append(
                "High overlap rate - increase collision_radius or min_node_separation"
            )
        recommendations.append("Restart the simulation to resolve overlaps")
    else:
        recommendations.append("No overlaps detected - collision handling is working")
    if result["average_distance"] < config.collision_radius * 2.0:
        recommendations.append(
            "Average node distance is low - consider increasing spacing parameters"
        )
    return result


# Not a pytest test, despite the name.
test_collision_detection.__test__ = False  # type: ignore[attr-defined]


def get_spacing_metrics(
    nodes: list[PhysicsNode], config: ForceLayoutConfig
) -> dict[str, Any]:
    distances = [dist for _, _, dist in _pairs(nodes)]
    violations = sum(1 for dist in distances if dist < config.min_node_separation)
    return {
        "average_node_distance": (sum(distances) / len(distances)) if distances else 0.0,
        "min_node_distance": min(distances) if distances else 0.0,
        "max_node_distance": max(distances) if distances else 0.0,
        "spacing_violations": violations,
        "density_score": density_score(len(nodes), config),
    }


def layout_quality(overlap_ratio: float, avg_frame_ms: float) -> LayoutQuality:
    if overlap_ratio <= GOOD_OVERLAP_RATIO and avg_frame_ms <= GOOD_FRAME_MS:
        return "good"
    if overlap_ratio <= ACCEPTABLE_OVERLAP_RATIO and avg_frame_ms <= ACCEPTABLE_FRAME_MS:
        return "acceptable"
    return "poor"


def generate_collision_report(
    nodes: list[PhysicsNode],
    config: ForceLayoutConfig,
    *,
    link_count: int = 0,
    performance: PerformanceSnapshot | None = None,
    alpha: float = 0.0,
) -> dict[str, Any]:
    collision = test_collision_detection(nodes, config)
    snapshot = performance or PerformanceSnapshot()

    # Welford over all pairwise distances.
    count = 0
    mean = 0.0
    m2 = 0.0
    low = math.inf
    high = 0.0
    for _, _, dist in _pairs(nodes):
        count += 1
        delta = dist - mean
        mean += delta / count
        m2 += delta * (dist - mean)
        low = min(low, dist)
        high = max(high, dist)
    variance = (m2 / count) if count else 0.0

    optimal = config.collision_radius * 2.5
    efficiency = max(0.0, 1.0 - abs(mean - optimal) / optimal) if count else 0.0
    overlap_ratio = (collision["overlap_count"] / len(nodes)) if nodes else 0.0
    density = density_score(len(nodes), config)
    stability = max(0.0, 1.0 - alpha)
    quality = layout_quality(overlap_ratio, snapshot.avg_frame_time_ms)

    worst = None
    for pair in collision["collision_pairs"]:
        if pair["pinned"]:
            continue
        if worst is None or pair["distance"] < worst["distance"]:
            worst = {"distance": pair["distance"], "required": pair["min_distance"]}

    recommendations: list[str] = []
    if density > 0.3:
        recommendations.append(
            "Layout density is high - increase dimensions or reduce collision_radius"
        )
    if count and efficiency < 0.5:
        recommendations.append(
            "Spacing efficiency is low - adjust force parameters for better distribution"
        )
    if collision["overlap_count"]:
        recommendations.append(
            f"{collision['overlap_count']} overlaps detected - increase collision strength or radius"
        )
    if snapshot.avg_frame_time_ms > ACCEPTABLE_FRAME_MS:
        recommendations.append("Low frame rate detected - enable performance optimizations")
    if not recommendations:
        recommendations.append("Layout is well-optimized with good spacing and performance")

    return {
        "summary": {
            "total_nodes": len(nodes),
            "total_links": int(link_count),
            "layout_dimensions": {"width": config.width, "height": config.height},
            "density": round(density, 3),
        },
        "spacing": {
            "average_node_distance": round(mean, 2),
            "distance_variance": round(variance, 2),
            "min_distance": round(low, 2) if count else 0.0,
            "max_distance": round(high, 2),
            "optimal_distance": optimal,
            "spacing_efficiency": round(efficiency, 3),
        },
        "collisions": {
            "overlap_count": collision["overlap_count"],
            "pinned_overlap_count": collision["pinned_overlap_count"],
            "critical_overlaps": collision["critical_overlaps"],
            "overlap_ratio": round(overlap_ratio, 4),
            "worst_overlap": worst,
        },
        "performance": {
            "avg_frame_time_ms": round(snapshot.avg_frame_time_ms, 3),
            "throttle_level": snapshot.throttle_level,
            "simulation_stability": round(stability, 3),
        },
        "layout_quality": quality,
        "recommendations": recommendations,
    }
