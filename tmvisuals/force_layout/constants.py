from __future__ import annotations

import hashlib
import math
import os
from typing import Any


def _safe_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return float(default)
    if not math.isfinite(number):
        return float(default)
    return number


def _safe_int(value: Any, default: int = 0) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return int(default)


def _clamp(value: float, minimum: float, maximum: float) -> float:
    return max(minimum, min(maximum, value))


def _clamp01(value: float) -> float:
    if value < 0.0:
        return 0.0
    if value > 1.0:
        return 1.0
    return value


def _stable_ratio(seed: str, offset: int = 0) -> float:
    digest = hashlib.sha256(f"{seed}|{offset}".encode("utf-8")).digest()
    return int.from_bytes(digest[:2], "big") / 65535.0


# Layout surface
LAYOUT_DEFAULT_WIDTH = max(
    1.0,
    float(os.getenv("TMV_LAYOUT_WIDTH", "1400") or "1400"),
)
LAYOUT_DEFAULT_HEIGHT = max(
    1.0,
    float(os.getenv("TMV_LAYOUT_HEIGHT", "800") or "800"),
)
LAYOUT_DEFAULT_MAX_FPS = max(
    1.0,
    min(240.0, float(os.getenv("TMV_LAYOUT_MAX_FPS", "60") or "60")),
)

# Fallback rendering surface when the host cannot report one
FALLBACK_SURFACE_WIDTH = 1200.0
FALLBACK_SURFACE_HEIGHT = 800.0

# Smart spacing
PRIORITY_TIER_FACTORS: dict[str, float] = {
    "high": 1.0,
    "medium": 0.85,
    "low": 0.7,
}
ACTIVE_RADIUS_FACTOR = 1.3
CONNECTIVITY_RADIUS_STEP = 0.1
MIN_VIABLE_RADIUS_FLOOR = 80.0
MIN_VIABLE_RADIUS_RATIO = 0.6
DENSITY_RADIUS_STEP = 0.05
DENSITY_RADIUS_CAP = 1.5
LINK_DISTANCE_RADIUS_RATIO = 1.05
RELATED_LINK_FACTOR = 1.5
CLUSTER_PULL_STRENGTH = 0.1
CLUSTER_RING_RATIO = 0.15

# Force passes
SEPARATION_STRENGTH = 0.5
EMERGENCY_OVERLAP_INTERVAL = 10
EMERGENCY_OVERLAP_MIN_NODES = 50
EMERGENCY_OVERLAP_MARGIN = 15.0
EMERGENCY_SPACING_FORCE = 2.0
JITTER_SCALE = 1e-3
CHARGE_DISTANCE_MIN2 = 1.0
SEPARATION_PROJECTION_ITERATIONS = 200
SEPARATION_PROJECTION_SLACK = 0.01

# Worker offload
WORKER_OFFLOAD_MIN_NODES = 300

# Performance governor
FRAME_HISTORY_SIZE = 60
RESOURCE_HISTORY_SIZE = 30
EVALUATION_WINDOW_FRAMES = 5
HYSTERESIS_WINDOWS = 2
THROTTLE_UP_RATIO = 1.25
THROTTLE_DOWN_RATIO = 0.8
EXHAUSTION_FRAME_RATIO = 2.0
MAX_THROTTLE_LEVEL = 5
EMERGENCY_THROTTLE_FLOOR = 3

# Each level keeps everything the previous level switched on.
THROTTLE_LADDER: tuple[dict[str, Any], ...] = (
    {
        "name": "full-quality",
        "collision_sample_ratio": 1.0,
        "barnes_hut_theta": 0.9,
        "quadtree_max_items": 8,
        "quadtree_max_depth": 10,
        "tick_rate_divisor": 1.0,
        "spacing_recompute_interval": 1,
        "simulation_frozen": False,
    },
    {
        "name": "collision-sampling",
        "collision_sample_ratio": 0.5,
        "barnes_hut_theta": 0.9,
        "quadtree_max_items": 8,
        "quadtree_max_depth": 10,
        "tick_rate_divisor": 1.0,
        "spacing_recompute_interval": 1,
        "simulation_frozen": False,
    },
    {
        "name": "coarse-spatial-index",
        "collision_sample_ratio": 0.5,
        "barnes_hut_theta": 1.2,
        "quadtree_max_items": 24,
        "quadtree_max_depth": 7,
        "tick_rate_divisor": 1.0,
        "spacing_recompute_interval": 1,
        "simulation_frozen": False,
    },
    {
        "name": "tick-rate-cap",
        "collision_sample_ratio": 0.5,
        "barnes_hut_theta": 1.5,
        "quadtree_max_items": 24,
        "quadtree_max_depth": 7,
        "tick_rate_divisor": 2.0,
        "spacing_recompute_interval": 1,
        "simulation_frozen": False,
    },
    {
        "name": "sparse-spacing",
        "collision_sample_ratio": 0.5,
        "barnes_hut_theta": 1.5,
        "quadtree_max_items": 24,
        "quadtree_max_depth": 7,
        "tick_rate_divisor": 3.0,
        "spacing_recompute_interval": 10,
        "simulation_frozen": False,
    },
    {
        "name": "frozen",
        "collision_sample_ratio": 0.5,
        "barnes_hut_theta": 1.5,
        "quadtree_max_items": 24,
        "quadtree_max_depth": 7,
        "tick_rate_divisor": 3.0,
        "spacing_recompute_interval": 10,
        "simulation_frozen": True,
    },
)

# Diagnostics verdict thresholds
GOOD_OVERLAP_RATIO = 0.01
ACCEPTABLE_OVERLAP_RATIO = 0.05
GOOD_FRAME_MS = 1000.0 / 30.0
ACCEPTABLE_FRAME_MS = 1000.0 / 15.0
CRITICAL_OVERLAP_RATIO = 0.8

# Viewport
VIEWPORT_DEFAULT_PADDING = 150.0
VIEWPORT_DEFAULT_MIN_ZOOM = 0.1
VIEWPORT_DEFAULT_MAX_ZOOM = 1.5
VIEWPORT_DEFAULT_DURATION_MS = 1000.0
VIEWPORT_NODE_WIDTH = 300.0
VIEWPORT_NODE_HEIGHT = 200.0
ANIMATE_POSITION_DELTA = 50.0
ANIMATE_ZOOM_DELTA = 0.1
EASING_NAMES: tuple[str, ...] = ("ease-out", "ease-in", "ease-in-out", "linear")

# Layout transitions
LAYOUT_TRANSITION_DURATION_MS = 500.0

DIAGNOSTIC_EVENT_LIMIT = 128
