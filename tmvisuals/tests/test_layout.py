from __future__ import annotations

import json
from typing import Iterator

import pytest

from tmvisuals.force_layout.config import ForceLayoutConfig
from tmvisuals.force_layout.errors import ConfigurationError, UnknownNodeError
from tmvisuals.force_layout.layout import ForceDirectedLayout
from tmvisuals.force_layout.scheduling import ManualFrameScheduler


def _chain_tasks(active: str | None = None) -> list[dict]:
    rows = [
        {"id": "A", "priority": "high"},
        {"id": "B", "dependencies": ["A"]},
        {"id": "C", "dependencies": ["B"], "priority": "low"},
    ]
    for row in rows:
        if row["id"] == active:
            row["status"] = "in-progress"
    return rows


@pytest.fixture
def layout(scheduler: ManualFrameScheduler, sampler) -> Iterator[ForceDirectedLayout]:
    engine = ForceDirectedLayout(scheduler=scheduler, sampler=sampler)
    yield engine
    engine.dispose()


def test_dict_config_is_validated_up_front(scheduler: ManualFrameScheduler, sampler) -> None:
    with pytest.raises(ConfigurationError):
        ForceDirectedLayout({"alpha_decay": 5}, scheduler=scheduler, sampler=sampler)

    engine = ForceDirectedLayout({"linkDistance": 260}, scheduler=scheduler, sampler=sampler)
    assert engine.get_config().link_distance == 260.0
    engine.dispose()


def test_constructor_config_cannot_set_governor_fields(
    scheduler: ManualFrameScheduler, sampler
) -> None:
    with pytest.raises(ConfigurationError):
        ForceDirectedLayout({"simulation_frozen": True}, scheduler=scheduler, sampler=sampler)
    with pytest.raises(ConfigurationError):
        ForceDirectedLayout(
            ForceLayoutConfig(barnes_hut_theta=1.5), scheduler=scheduler, sampler=sampler
        )
    with pytest.raises(ConfigurationError):
        ForceDirectedLayout(
            ForceLayoutConfig(alpha_decay=3.0), scheduler=scheduler, sampler=sampler
        )

    engine = ForceDirectedLayout(
        ForceLayoutConfig(link_distance=250.0), scheduler=scheduler, sampler=sampler
    )
    assert engine.get_config().link_distance == 250.0
    assert not engine.get_config().simulation_frozen
    engine.dispose()


def test_set_tasks_builds_nodes_and_dependency_links(layout: ForceDirectedLayout) -> None:
    nodes = layout.set_tasks(_chain_tasks())

    assert sorted(node.task_id for node in nodes) == ["A", "B", "C"]
    assert {(link.source, link.target) for link in layout.simulation.links()} == {
        ("task-A", "task-B"),
        ("task-B", "task-C"),
    }
    assert layout.active_task is None


def test_initial_positions_are_keyed_by_task_id(layout: ForceDirectedLayout) -> None:
    layout.set_tasks([{"id": "solo"}], initial_positions={"solo": (12.0, 34.0)})

    node = layout.simulation.node("solo")
    assert (node.x, node.y) == (12.0, 34.0)


def test_active_task_is_pinned_at_center_and_moves_with_focus(
    layout: ForceDirectedLayout,
) -> None:
    center = layout.get_config().center

    layout.set_tasks(_chain_tasks(active="B"))

    assert layout.get_config().active_task_id == "B"
    focused = layout.simulation.node("B")
    assert focused.pinned_by == "focus"
    assert (focused.fx, focused.fy) == center

    layout.set_tasks(_chain_tasks(active="C"))

    assert not layout.simulation.node("B").pinned
    assert layout.simulation.node("C").pinned_by == "focus"


def test_user_pin_outranks_focus_lock(layout: ForceDirectedLayout) -> None:
    layout.set_tasks(_chain_tasks())
    assert layout.set_fixed_position("task-C", 5.0, 5.0)

    layout.set_tasks(_chain_tasks(active="C"))

    node = layout.simulation.node("C")
    assert node.pinned_by == "user"
    assert (node.fx, node.fy) == (5.0, 5.0)


def test_focus_lock_off_leaves_active_node_free(layout: ForceDirectedLayout) -> None:
    layout.update_config({"focus_lock": False})

    layout.set_tasks(_chain_tasks(active="A"))

    assert not layout.simulation.node("A").pinned


def test_update_config_rejects_invalid_and_governor_fields(
    layout: ForceDirectedLayout,
) -> None:
    before = layout.get_config()

    with pytest.raises(ConfigurationError):
        layout.update_config({"velocity_decay": 4})
    with pytest.raises(ConfigurationError):
        layout.update_config({"barnes_hut_theta": 1.2})

    assert layout.get_config() == before
    result = layout.update_config({"max_frame_rate": 500})
    assert result.warnings
    assert not layout.validate_config({"width": -1}).valid


def test_config_change_reheats_a_cooled_layout(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())
    layout.start()
    scheduler.run_until_idle()
    assert layout.simulation.status == "cooled"

    layout.update_config({"link_distance": 300})

    assert layout.simulation.status == "running"
    assert layout.alpha() == pytest.approx(0.3)


def test_layout_settles_without_overlaps(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    ended = []
    layout.on_end(ended.append)
    layout.set_tasks(_chain_tasks())

    layout.start()
    scheduler.run_until_idle()

    assert len(ended) == 1
    check = layout.test_collision_detection()
    assert check["overlap_count"] == 0
    assert layout.get_spacing_metrics()["spacing_violations"] == 0
    report = layout.generate_collision_report()
    assert report["summary"]["total_links"] == 2
    assert report["collisions"]["overlap_count"] == 0
    assert layout.governor.simulation_steps == layout.simulation.tick_count


def test_export_and_import_round_trip(layout: ForceDirectedLayout) -> None:
    layout.set_tasks(_chain_tasks())
    layout.update_config({"link_distance": 275})

    exported = json.loads(layout.export_config(include_performance_metrics=True))

    assert exported["config"]["linkDistance"] == 275.0
    assert exported["nodeCount"] == 3
    assert exported["linkCount"] == 2
    assert "throttleLevel" in exported["performanceMetrics"]
    assert "timestamp" in exported

    exported["config"]["linkDistance"] = 310
    exported["config"]["collisionSampleRatio"] = 0.5
    result = layout.import_config(json.dumps(exported))

    assert layout.get_config().link_distance == 310.0
    assert layout.get_config().collision_sample_ratio == 1.0
    assert any("collision_sample_ratio" in warning for warning in result.warnings)


def test_import_rejects_bad_payloads(layout: ForceDirectedLayout) -> None:
    with pytest.raises(ConfigurationError):
        layout.import_config("{not json")
    with pytest.raises(ConfigurationError):
        layout.import_config("[1, 2]")
    with pytest.raises(ConfigurationError):
        layout.import_config(json.dumps({"linkStrength": 9}))


def test_reset_to_defaults_keeps_or_drops_data(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks(active="A"))
    layout.update_config({"link_distance": 333})

    layout.reset_to_defaults(preserve_data=True)

    assert layout.get_config().link_distance == 200.0
    assert layout.get_config().active_task_id == "A"
    assert layout.simulation.node("A").pinned_by == "focus"
    assert layout.simulation.node_count == 3
    assert layout.simulation.status == "running"

    layout.reset_to_defaults(preserve_data=False)

    assert layout.simulation.node_count == 0
    assert layout.active_task is None
    assert layout.get_config().active_task_id is None


def test_large_task_list_is_pre_tuned(layout: ForceDirectedLayout) -> None:
    layout.set_tasks([{"id": str(index)} for index in range(60)])

    assert layout.governor.large_dataset_tuned
    assert layout.get_config().min_node_separation == pytest.approx(170.0)
    assert layout.simulation.node_count == 60


def test_shrinking_task_list_lets_throttle_recover(layout: ForceDirectedLayout) -> None:
    layout.set_tasks([{"id": str(index)} for index in range(400)])
    assert layout.governor.throttle_level == 3
    assert layout.get_config().charge_strength == pytest.approx(-1200.0)

    layout.set_tasks([{"id": str(index)} for index in range(10)])
    layout.start()
    for _ in range(40):
        layout.record_frame_time(1.0)

    config = layout.get_config()
    assert layout.governor.baseline_level == 0
    assert layout.governor.throttle_level == 0
    assert config.tick_interval_ms == 0.0
    assert config.collision_sample_ratio == 1.0
    assert config.charge_strength == pytest.approx(-800.0)


def test_layout_transition_eases_shown_positions(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())
    start = layout.simulation.node("A")
    seen = []
    layout.on_tick(lambda nodes: seen.append(next(n.x for n in nodes if n.task_id == "A")))

    transition = layout.transition_to_new_layout({"link_distance": 260}, duration_ms=100.0)
    layout.set_fixed_position("task-A", start.x + 100.0, start.y)
    for _ in range(4):
        scheduler.advance(25.0)

    assert layout.get_config().link_distance == 260.0
    assert [change.name for change in transition.changes] == ["link_distance"]
    assert seen == [
        pytest.approx(start.x + 100.0 * (1.0 - 0.75**3)),
        pytest.approx(start.x + 100.0 * (1.0 - 0.5**3)),
        pytest.approx(start.x + 100.0 * (1.0 - 0.25**3)),
        pytest.approx(start.x + 100.0),
    ]
    assert transition.finished
    assert transition.frames == 4
    assert not layout.transitioner.is_transitioning
    assert scheduler.pending_count == 0


def test_running_layout_gets_one_blended_stream(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())
    layout.start()
    scheduler.run_frames(2)
    origin = {node.id: (node.x, node.y) for node in layout.nodes()}
    seen = []
    layout.on_tick(seen.append)

    layout.transition_to_new_layout({"link_distance": 260}, duration_ms=100.0)
    scheduler.run_frames(3)

    assert len(seen) == 3
    assert {node.id: (node.x, node.y) for node in seen[0]} == origin


def test_new_layout_transition_replaces_and_cancels(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())
    seen = []
    layout.on_tick(seen.append)

    first = layout.transition_to_new_layout({"link_distance": 260}, duration_ms=200.0)
    scheduler.advance(20.0)
    second = layout.transition_to_new_layout({"link_distance": 280}, duration_ms=200.0)

    assert first.cancelled
    assert not first.finished
    assert layout.transitioner.active_transition is second

    assert layout.cancel_layout_transition()
    count = len(seen)
    scheduler.run_frames(5)

    assert second.cancelled
    assert len(seen) == count
    assert scheduler.pending_count == 0
    assert not layout.cancel_layout_transition()


def test_invalid_layout_transition_starts_nothing(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())

    with pytest.raises(ConfigurationError):
        layout.transition_to_new_layout({"link_strength": 9})

    assert not layout.transitioner.is_transitioning
    assert scheduler.pending_count == 0
    instant = layout.transition_to_new_layout({"link_distance": 240}, duration_ms=0.0)
    assert instant.finished
    assert scheduler.pending_count == 0


def test_unknown_pin_is_reported_not_raised(layout: ForceDirectedLayout) -> None:
    layout.set_tasks(_chain_tasks())

    assert not layout.set_fixed_position("nope", 0.0, 0.0)
    assert any(isinstance(event, UnknownNodeError) for event in layout.diagnostic_events)


def test_viewport_follows_active_task(
    scheduler: ManualFrameScheduler, sampler, adapter
) -> None:
    engine = ForceDirectedLayout(
        scheduler=scheduler,
        sampler=sampler,
        surface=lambda: (1200.0, 800.0),
        viewport_adapter=adapter,
    )
    engine.follow_active_task(True)

    engine.set_tasks(_chain_tasks(active="B"))
    target = engine.calculate_optimal_viewport()
    scheduler.run_until_idle(ms=50.0)

    assert target is not None
    assert adapter.viewport == target
    assert not engine.camera.is_transitioning
    engine.dispose()


def test_viewport_calls_without_active_task(layout: ForceDirectedLayout) -> None:
    layout.set_tasks(_chain_tasks())

    assert layout.calculate_optimal_viewport() is None
    assert layout.focus_active_task() is None
    assert layout.calculate_fit_viewport().zoom > 0.0


def test_dispose_stops_everything(
    layout: ForceDirectedLayout, scheduler: ManualFrameScheduler
) -> None:
    layout.set_tasks(_chain_tasks())
    layout.start()
    scheduler.advance()
    ticks = layout.simulation.tick_count

    layout.dispose()
    scheduler.run_frames(5)

    assert layout.simulation.tick_count == ticks
    assert layout.tasks == []
