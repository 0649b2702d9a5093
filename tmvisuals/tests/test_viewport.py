from __future__ import annotations

import pytest

from tmvisuals.force_layout.errors import ViewportUnavailableError
from tmvisuals.force_layout.nodes import PhysicsNode
from tmvisuals.force_layout.scheduling import ManualFrameScheduler
from tmvisuals.force_layout.viewport import (
    CameraController,
    ViewportManager,
    ViewportOptions,
    ViewportState,
    ease,
    interpolate,
    should_animate_transition,
)


def _graph() -> list[PhysicsNode]:
    return [
        PhysicsNode("task-1", task_id="1", x=0.0, y=0.0),
        PhysicsNode("task-2", task_id="2", x=400.0, y=0.0, dependencies=("task-1",)),
        PhysicsNode("task-3", task_id="3", x=2000.0, y=2000.0),
    ]


@pytest.fixture
def manager() -> ViewportManager:
    return ViewportManager(lambda: (1200.0, 800.0))


@pytest.fixture
def camera(scheduler: ManualFrameScheduler, adapter) -> CameraController:
    return CameraController(scheduler, adapter)


def test_optimal_viewport_unknown_id_returns_none(manager: ViewportManager) -> None:
    assert manager.calculate_optimal_viewport(_graph(), "missing") is None
    assert manager.calculate_optimal_viewport(_graph(), None) is None
    assert all(
        isinstance(event, ViewportUnavailableError) for event in manager.diagnostic_events
    )
    assert len(manager.diagnostic_events) == 2


def test_optimal_viewport_centers_active_and_related(manager: ViewportManager) -> None:
    viewport = manager.calculate_optimal_viewport(_graph(), "1")

    # Related task-2 is included, unrelated task-3 is not.
    box_w = 400.0 + 300.0
    expected_zoom = min((1200.0 - 300.0) / box_w, (800.0 - 300.0) / 200.0, 1.5)
    assert viewport.zoom == pytest.approx(expected_zoom)
    assert viewport.x == pytest.approx(600.0 - 200.0 * expected_zoom)
    assert viewport.y == pytest.approx(400.0)


def test_optimal_viewport_without_related_frames_one_node(manager: ViewportManager) -> None:
    viewport = manager.calculate_optimal_viewport(
        _graph(), "task-2", options={"include_related_tasks": False}
    )

    assert viewport.zoom == pytest.approx(1.5)
    assert viewport.x == pytest.approx(600.0 - 400.0 * 1.5)


def test_zoom_never_grows_with_larger_node_footprint(manager: ViewportManager) -> None:
    zooms = [
        manager.calculate_optimal_viewport(
            _graph(), "1", options={"node_width": size, "node_height": size * 0.66}
        ).zoom
        for size in (100.0, 300.0, 600.0, 1200.0, 20000.0)
    ]

    assert zooms == sorted(zooms, reverse=True)
    assert zooms[-1] == pytest.approx(0.1)


def test_fit_viewport_covers_all_and_handles_empty(manager: ViewportManager) -> None:
    nodes = _graph()

    fit = manager.calculate_fit_viewport(["1", "2", "3"], nodes)
    empty = manager.calculate_fit_viewport([], nodes)

    expected_zoom = min(1200.0 / 2300.0, 800.0 / 2300.0)
    assert fit.zoom == pytest.approx(expected_zoom)
    assert fit.x == pytest.approx(600.0 - 1000.0 * expected_zoom)
    assert empty == ViewportState()


def test_surface_falls_back_when_unavailable() -> None:
    assert ViewportManager().surface_size() == (1200.0, 800.0)
    assert ViewportManager(lambda: (0.0, 600.0)).surface_size() == (1200.0, 800.0)


@pytest.mark.parametrize("name", ["ease-out", "ease-in", "ease-in-out", "linear"])
def test_easing_curves_run_from_zero_to_one(name: str) -> None:
    samples = [ease(name, step / 10.0) for step in range(11)]

    assert samples[0] == pytest.approx(0.0)
    assert samples[-1] == pytest.approx(1.0)
    assert samples == sorted(samples)


def test_ease_out_leads_linear() -> None:
    assert ease("ease-out", 0.5) == pytest.approx(0.875)
    assert ease("ease-in-out", 0.5) == pytest.approx(0.5)
    assert ease("ease-in", 2.0) == 1.0


def test_small_moves_are_not_animated() -> None:
    start = ViewportState(0.0, 0.0, 1.0)

    assert not should_animate_transition(start, ViewportState(10.0, 10.0, 1.05))
    assert should_animate_transition(start, ViewportState(100.0, 0.0, 1.0))
    assert should_animate_transition(start, ViewportState(0.0, 0.0, 1.5))
    assert interpolate(start, ViewportState(100.0, 50.0, 2.0), 0.5) == ViewportState(50.0, 25.0, 1.5)


def test_transition_lands_exactly_on_target(
    camera: CameraController, scheduler: ManualFrameScheduler, adapter
) -> None:
    target = ViewportState(300.0, -120.0, 0.75)

    transition = camera.transition_to_viewport(target, 100.0, "ease-in-out")
    scheduler.run_until_idle(ms=16.0)

    assert transition.finished
    assert adapter.viewport == target
    assert len(adapter.writes) == transition.frames
    assert not camera.is_transitioning


def test_second_transition_replaces_the_first(
    camera: CameraController, scheduler: ManualFrameScheduler, adapter
) -> None:
    first = camera.transition_to_viewport(ViewportState(1000.0, 0.0, 1.0), 200.0)
    scheduler.advance(16.0)
    second = camera.transition_to_viewport(ViewportState(-500.0, 40.0, 0.5), 200.0)
    scheduler.run_until_idle(ms=16.0)

    assert first.cancelled
    assert not first.finished
    assert second.finished
    assert adapter.viewport == ViewportState(-500.0, 40.0, 0.5)


def test_cancel_leaves_viewport_where_it_is(
    camera: CameraController, scheduler: ManualFrameScheduler, adapter
) -> None:
    camera.transition_to_viewport(ViewportState(1000.0, 0.0, 1.0), 500.0)
    scheduler.advance(100.0)
    halfway = adapter.viewport

    assert camera.cancel_transition()
    scheduler.run_frames(3)

    assert adapter.viewport == halfway
    assert scheduler.pending_count == 0
    assert not camera.cancel_transition()


def test_zero_duration_snaps_and_zoom_is_clamped(
    camera: CameraController, adapter
) -> None:
    transition = camera.transition_to_viewport(ViewportState(5.0, 5.0, 9.0), 0.0)

    assert transition.finished
    assert adapter.viewport == ViewportState(5.0, 5.0, 1.5)


def test_follow_snaps_small_jumps(camera: CameraController, adapter) -> None:
    transition = camera.follow(ViewportState(10.0, 0.0, 1.0))

    assert transition.finished
    assert adapter.viewport == ViewportState(10.0, 0.0, 1.0)


def test_transition_without_adapter_is_recorded(scheduler: ManualFrameScheduler) -> None:
    camera = CameraController(scheduler)

    assert camera.transition_to_viewport(ViewportState(), 100.0) is None
    assert camera.current_viewport() is None
    assert isinstance(camera.diagnostic_events[0], ViewportUnavailableError)
    assert scheduler.pending_count == 0


def test_options_default_values() -> None:
    options = ViewportOptions()

    assert (options.padding, options.min_zoom, options.max_zoom) == (150.0, 0.1, 1.5)
    assert options.animation_duration_ms == 1000.0
