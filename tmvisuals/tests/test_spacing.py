from __future__ import annotations

import pytest

from tmvisuals.force_layout.config import ForceLayoutConfig
from tmvisuals.force_layout.nodes import PhysicsLink, PhysicsNode
from tmvisuals.force_layout.spacing import (
    base_radius,
    compute_spacing,
    density_factor,
    detect_clusters,
    effective_link_distance,
    link_degrees,
    pair_separation,
    priority_multiplier,
)


@pytest.fixture
def config() -> ForceLayoutConfig:
    return ForceLayoutConfig()


def test_priority_tiers_scale_the_multiplier(config: ForceLayoutConfig) -> None:
    assert priority_multiplier("high", config) == pytest.approx(1.3)
    assert priority_multiplier("medium", config) == pytest.approx(1.3 * 0.85)
    assert priority_multiplier("low", config) == pytest.approx(1.3 * 0.7)
    assert priority_multiplier("unknown", config) == priority_multiplier("medium", config)


def test_active_and_connected_nodes_get_larger_radius(config: ForceLayoutConfig) -> None:
    plain = PhysicsNode("a", priority="medium")
    active = PhysicsNode("b", priority="medium", active=True)

    assert base_radius(active, 0, config) == pytest.approx(base_radius(plain, 0, config) * 1.3)
    assert base_radius(plain, 3, config) == pytest.approx(base_radius(plain, 0, config) * 1.3)


def test_radius_never_drops_below_viable_floor() -> None:
    config = ForceLayoutConfig(priority_spacing_multiplier=0.1)

    radius = base_radius(PhysicsNode("a", priority="low"), 0, config)

    assert radius == pytest.approx(max(config.collision_radius * 0.6, 80.0))


def test_density_factor_is_capped() -> None:
    assert density_factor(0) == 1.0
    assert density_factor(4) == pytest.approx(1.2)
    assert density_factor(100) == pytest.approx(1.5)


def test_clusters_follow_tags_then_components() -> None:
    nodes = [
        PhysicsNode("a"),
        PhysicsNode("b"),
        PhysicsNode("c"),
        PhysicsNode("d", cluster="ops"),
    ]
    links = [PhysicsLink("b", "a")]

    clusters = detect_clusters(nodes, links)

    assert clusters["a"] == clusters["b"] == "component:a"
    assert clusters["c"] == "component:c"
    assert clusters["d"] == "tag:ops"


def test_smart_spacing_off_uses_flat_radius_and_link_distance() -> None:
    config = ForceLayoutConfig(enable_smart_spacing=False)
    nodes = [PhysicsNode("a", priority="high"), PhysicsNode("b", x=50.0)]
    links = [PhysicsLink("a", "b")]

    state = compute_spacing(nodes, links, config)

    assert state.radii == {"a": 160.0, "b": 160.0}
    assert state.cluster_centers == {}
    assert effective_link_distance(links[0], state, config) == config.link_distance
    assert pair_separation("a", "b", state, config) == pytest.approx(320.0)


def test_link_distance_grows_with_effective_radii(config: ForceLayoutConfig) -> None:
    nodes = [PhysicsNode("a", x=0.0), PhysicsNode("b", x=1000.0)]
    links = [PhysicsLink("a", "b")]

    state = compute_spacing(nodes, links, config)

    combined = state.radii["a"] + state.radii["b"]
    assert effective_link_distance(links[0], state, config) == pytest.approx(combined * 1.05)
    assert state.degrees == link_degrees(nodes, links) == {"a": 1, "b": 1}


def test_crowded_nodes_get_density_bonus(config: ForceLayoutConfig) -> None:
    crowd = [PhysicsNode(f"n{i}", x=float(i * 10), y=0.0) for i in range(5)]
    loner = PhysicsNode("far", x=5000.0, y=5000.0)

    state = compute_spacing(crowd + [loner], [], config)

    assert state.radii["n2"] > state.radii["far"]
    assert state.max_radius == max(state.radii.values())


def test_inter_cluster_pairs_need_extra_room(config: ForceLayoutConfig) -> None:
    nodes = [PhysicsNode("a"), PhysicsNode("b"), PhysicsNode("c", x=400.0)]
    links = [PhysicsLink("a", "b")]
    state = compute_spacing(nodes, links, config)

    same = pair_separation("a", "b", state, config)
    across = pair_separation("a", "c", state, config)

    radii = state.radii
    assert same == pytest.approx(radii["a"] + radii["b"])
    assert across == pytest.approx(radii["a"] + radii["c"] + config.cluster_spacing)
    assert len(state.cluster_centers) == 2
