from __future__ import annotations

from typing import Iterator

import pytest

from tmvisuals.force_layout.config import ConfigModel
from tmvisuals.force_layout.governor import (
    PerformanceGovernor,
    ResourceSampler,
    large_dataset_tuning,
    level_profile,
)


@pytest.fixture
def governor(config_model: ConfigModel, sampler) -> Iterator[PerformanceGovernor]:
    gov = PerformanceGovernor(config_model, sampler=sampler, clock=lambda: 123.0)
    yield gov
    gov.dispose()


def _feed(governor: PerformanceGovernor, frame_ms: float, count: int) -> None:
    for _ in range(count):
        governor.record_frame_time(frame_ms)


def test_slow_windows_raise_and_fast_windows_lower_with_hysteresis(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    _feed(governor, 40.0, 5)
    assert governor.throttle_level == 0
    assert governor.last_signal == "increase"

    _feed(governor, 40.0, 5)
    assert governor.throttle_level == 1
    assert config_model.current.collision_sample_ratio == 0.5

    _feed(governor, 5.0, 5)
    assert governor.throttle_level == 1
    _feed(governor, 5.0, 5)
    assert governor.throttle_level == 0
    assert config_model.current.collision_sample_ratio == 1.0


def test_alternating_windows_never_flip_the_level(governor: PerformanceGovernor) -> None:
    for _ in range(4):
        _feed(governor, 40.0, 5)
        _feed(governor, 15.0, 5)

    assert governor.throttle_level == 0


def test_level_moves_one_rung_at_a_time(governor: PerformanceGovernor) -> None:
    steps = []
    governor.subscribe(lambda new, old, reason: steps.append(new - old))

    _feed(governor, 200.0, 100)

    assert governor.throttle_level == 5
    assert steps == [1, 1, 1, 1, 1]


def test_node_count_over_threshold_forces_emergency_floor(
    governor: PerformanceGovernor,
) -> None:
    reasons = []
    governor.subscribe(lambda new, old, reason: reasons.append(reason))

    for _ in range(25):
        governor.observe_tick(5.0, 600)

    assert governor.throttle_level == 3
    assert reasons == ["emergency", "emergency", "emergency"]
    assert governor.snapshot.node_count == 600


def test_memory_over_limit_is_recorded_and_throttles(
    config_model: ConfigModel, make_sampler
) -> None:
    governor = PerformanceGovernor(config_model, sampler=make_sampler(memory=500.0))

    _feed(governor, 5.0, 10)

    snapshot = governor.snapshot
    assert snapshot.memory_limit_exceeded
    assert snapshot.exhaustion[0]["resource"] == "memory_mb"
    assert snapshot.exhaustion[0]["limit"] == pytest.approx(200.0)
    assert governor.throttle_level == 1
    governor.dispose()


def test_slow_frames_record_frame_time_exhaustion(governor: PerformanceGovernor) -> None:
    _feed(governor, 100.0, 5)

    resources = [row["resource"] for row in governor.snapshot.exhaustion]
    assert resources == ["frame_time_ms"]
    assert governor.snapshot.avg_frame_time_ms == pytest.approx(100.0)
    assert governor.snapshot.frame_rate == pytest.approx(10.0)


def test_large_dataset_sets_baseline_and_tuning(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    sources = []
    config_model.subscribe(lambda config, previous, changes, source: sources.append(source))

    level = governor.optimize_for_large_dataset(400)

    config = config_model.current
    assert level == 3
    assert config.alpha_decay == pytest.approx(0.1)
    assert config.link_strength == pytest.approx(0.3)
    assert config.collision_radius == pytest.approx(100.0)
    assert config.min_node_separation == pytest.approx(120.0)
    assert config.tick_interval_ms == pytest.approx(1000.0 / 30.0)
    assert set(sources) == {"governor"}
    assert "large-dataset-tuning" in governor.snapshot.active_optimizations

    # Fast frames never take the level below the baseline.
    _feed(governor, 1.0, 30)
    assert governor.throttle_level == 3


def test_host_frame_rate_change_rescales_tick_cap(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    governor.optimize_for_large_dataset(400)

    config_model.merge({"max_frame_rate": 30})

    assert config_model.current.tick_interval_ms == pytest.approx(1000.0 / 15.0)


def test_shrinking_graph_lowers_baseline_and_restores_tuning(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    governor.optimize_for_large_dataset(400)
    assert config_model.current.charge_strength == pytest.approx(-1200.0)

    governor.optimize_for_large_dataset(10)

    config = config_model.current
    assert governor.baseline_level == 0
    assert not governor.large_dataset_tuned
    assert config.charge_strength == pytest.approx(-800.0)
    assert config.alpha_decay == pytest.approx(0.0228)
    assert config.collision_radius == pytest.approx(160.0)
    assert config.min_node_separation == pytest.approx(180.0)
    # The level itself only comes down through measured windows.
    assert governor.throttle_level == 3

    _feed(governor, 1.0, 40)

    assert governor.throttle_level == 0
    assert config_model.current.tick_interval_ms == 0.0
    assert config_model.current.collision_sample_ratio == 1.0


def test_dropping_to_a_smaller_band_restores_only_lifted_fields(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    governor.optimize_for_large_dataset(400)

    governor.optimize_for_large_dataset(80)

    config = config_model.current
    assert governor.large_dataset_tuned
    assert config.alpha_decay == pytest.approx(0.0228)
    assert config.link_strength == pytest.approx(0.7)
    assert config.min_node_separation == pytest.approx(160.0)


def test_host_edit_to_tuned_field_survives_untuning(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    governor.optimize_for_large_dataset(400)
    config_model.merge({"charge_strength": -900.0})

    governor.optimize_for_large_dataset(10)

    assert config_model.current.charge_strength == pytest.approx(-900.0)


def test_adaptive_quality_off_measures_without_throttling(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    config_model.merge({"adaptive_quality": False})

    _feed(governor, 200.0, 20)

    assert governor.throttle_level == 0
    assert governor.snapshot.avg_frame_time_ms == pytest.approx(200.0)


def test_monitoring_off_ignores_tick_observations(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    config_model.merge({"enable_performance_monitoring": False})

    governor.observe_tick(50.0, 10)

    assert len(governor.frame_history) == 0
    assert governor.simulation_steps == 1


def test_reset_returns_to_full_quality(
    governor: PerformanceGovernor, config_model: ConfigModel
) -> None:
    governor.optimize_for_large_dataset(400)

    governor.reset()

    assert governor.throttle_level == 0
    assert governor.baseline_level == 0
    assert config_model.current.tick_interval_ms == 0.0
    assert config_model.current.barnes_hut_theta == pytest.approx(0.9)
    assert governor.snapshot.simulation_steps == 0


def test_metrics_use_camel_case_keys(governor: PerformanceGovernor) -> None:
    governor.set_worker_offload(True)
    _feed(governor, 10.0, 5)

    metrics = governor.get_performance_metrics()

    assert metrics["throttleLevel"] == 0
    assert metrics["avgFrameTime"] == pytest.approx(10.0)
    assert metrics["lastMeasurement"] == 123.0
    assert "worker-offload" in metrics["activeOptimizations"]


def test_profiles_and_tuning_bands() -> None:
    config = ConfigModel().current

    assert level_profile(0, config)["tick_interval_ms"] == 0.0
    assert level_profile(5, config)["simulation_frozen"] is True
    assert level_profile(99, config) == level_profile(5, config)
    assert large_dataset_tuning(40) == {}
    assert "alpha_decay" not in large_dataset_tuning(80)
    assert large_dataset_tuning(80)["min_node_separation"] == pytest.approx(160.0)


def test_resource_sampler_reads_the_current_process() -> None:
    sampler = ResourceSampler()

    assert sampler.memory_mb() > 0.0
    assert sampler.cpu_percent() >= 0.0
