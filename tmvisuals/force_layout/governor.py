from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Deque, Literal

import psutil

from .config import ConfigModel, FieldChange, ForceLayoutConfig
from .constants import (
    EMERGENCY_THROTTLE_FLOOR,
    EVALUATION_WINDOW_FRAMES,
    EXHAUSTION_FRAME_RATIO,
    FRAME_HISTORY_SIZE,
    HYSTERESIS_WINDOWS,
    MAX_THROTTLE_LEVEL,
    RESOURCE_HISTORY_SIZE,
    THROTTLE_DOWN_RATIO,
    THROTTLE_LADDER,
    THROTTLE_UP_RATIO,
    _clamp,
    _safe_float,
)
from .errors import ResourceExhaustion

_LOGGER = logging.getLogger(__name__)

ThrottleSignal = Literal["increase", "decrease", "hold"]


@dataclass(frozen=True)
class PerformanceSnapshot:
    frame_rate: float = 0.0
    avg_frame_time_ms: float = 0.0
    cpu_usage: float = 0.0
    memory_usage_mb: float = 0.0
    simulation_steps: int = 0
    throttle_level: int = 0
    active_optimizations: tuple[str, ...] = ()
    last_measurement: float = 0.0
    node_count: int = 0
    memory_limit_exceeded: bool = False
    exhaustion: tuple[dict[str, Any], ...] = field(default_factory=tuple)

    def as_dict(self) -> dict[str, Any]:
        return {
            "frameRate": round(self.frame_rate, 3),
            "avgFrameTime": round(self.avg_frame_time_ms, 3),
            "cpuUsage": round(self.cpu_usage, 3),
            "memoryUsage": round(self.memory_usage_mb, 3),
            "simulationSteps": self.simulation_steps,
            "throttleLevel": self.throttle_level,
            "activeOptimizations": list(self.active_optimizations),
            "lastMeasurement": self.last_measurement,
            "nodeCount": self.node_count,
            "memoryLimitExceeded": self.memory_limit_exceeded,
            "exhaustion": [dict(row) for row in self.exhaustion],
        }


class ResourceSampler:
    """Process CPU and resident memory via psutil."""

    def __init__(self, process: psutil.Process | None = None) -> None:
        self._process = process or psutil.Process()
        # First cpu_percent call only primes the counter.
        self._process.cpu_percent(None)

    def cpu_percent(self) -> float:
        return max(0.0, _safe_float(self._process.cpu_percent(None), 0.0))

    def memory_mb(self) -> float:
        rss = _safe_float(self._process.memory_info().rss, 0.0)
        return max(0.0, rss / (1024.0 * 1024.0))


def large_dataset_tuning(node_count: int) -> dict[str, Any]:
    """Force parameters pre-tuned for big graphs, banded by node count."""
    n = max(0, int(node_count))
    tuning: dict[str, Any] = {}
    if n > 100:
        tuning.update(
            {
                "alpha_decay": 0.05,
                "alpha_min": 0.005,
                "charge_strength": max(-1200.0, -800.0 - n),
                "collision_radius": max(100.0, 160.0 - (n * 0.2)),
                "collision_strength": max(0.3, 0.8 - (n / 1000.0)),
            }
        )
    if n > 300:
        tuning.update(
            {
                "alpha_decay": 0.1,
                "link_strength": 0.3,
                "center_strength": 0.05,
            }
        )
    if n > 50:
        tuning.update(
            {
                "enable_smart_spacing": True,
                "density_adaptation": True,
                "min_node_separation": max(120.0, 200.0 - (n * 0.5)),
            }
        )
    return tuning


def level_profile(level: int, config: ForceLayoutConfig) -> dict[str, Any]:
    """Governor-owned config fields for one rung of the throttle ladder."""
    rung = THROTTLE_LADDER[int(_clamp(level, 0, MAX_THROTTLE_LEVEL))]
    divisor = float(rung["tick_rate_divisor"])
    tick_interval = 0.0
    if divisor > 1.0:
        tick_interval = 1000.0 / (config.max_frame_rate / divisor)
    return {
        "collision_sample_ratio": rung["collision_sample_ratio"],
        "barnes_hut_theta": rung["barnes_hut_theta"],
        "quadtree_max_items": rung["quadtree_max_items"],
        "quadtree_max_depth": rung["quadtree_max_depth"],
        "tick_interval_ms": tick_interval,
        "spacing_recompute_interval": rung["spacing_recompute_interval"],
        "simulation_frozen": rung["simulation_frozen"],
    }


class PerformanceGovernor:
    """Watches tick cost and memory, and walks the throttle ladder.

    The governor is the only writer of the throttle level and of the
    governor-owned config fields. Every level change goes through
    :meth:`ConfigModel.try_merge` with ``source="governor"`` so hosts see it
    as an ordinary config-change notification.
    """

    def __init__(
        self,
        config_model: ConfigModel,
        *,
        sampler: Any | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.RLock()
        self._config_model = config_model
        self._sampler = sampler if sampler is not None else ResourceSampler()
        self._clock = clock

        self.frame_history: Deque[float] = deque(maxlen=FRAME_HISTORY_SIZE)
        self.cpu_history: Deque[float] = deque(maxlen=RESOURCE_HISTORY_SIZE)
        self.memory_history: Deque[float] = deque(maxlen=RESOURCE_HISTORY_SIZE)

        self.throttle_level = 0
        self.baseline_level = 0
        self.simulation_steps = 0
        self.node_count = 0
        self.worker_offload_active = False
        self.large_dataset_tuned = False
        # Values the large-dataset tuning replaced, restored when a band lifts.
        self._pre_tuning: dict[str, Any] = {}
        self._frames_since_evaluation = 0
        self._up_streak = 0
        self._down_streak = 0
        self._last_signal: ThrottleSignal = "hold"
        self._snapshot = PerformanceSnapshot(last_measurement=self._clock())
        self._listeners: list[Callable[[int, int, str], None]] = []

        self._unsubscribe_config = config_model.subscribe(self._on_config_change)

    @property
    def snapshot(self) -> PerformanceSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def last_signal(self) -> ThrottleSignal:
        with self._lock:
            return self._last_signal

    def subscribe(self, listener: Callable[[int, int, str], None]) -> Callable[[], None]:
        """``listener(new_level, old_level, reason)`` on every level change."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Measurement
    # ------------------------------------------------------------------

    def observe_tick(self, elapsed_ms: float, node_count: int) -> None:
        """Tick observer hook for :meth:`ForceSimulation.add_tick_observer`."""
        with self._lock:
            self.simulation_steps += 1
            self.node_count = max(0, int(node_count))
        if self._config_model.current.enable_performance_monitoring:
            self.record_frame_time(elapsed_ms)

    def record_frame_time(self, frame_ms: float) -> PerformanceSnapshot:
        value = max(0.0, _safe_float(frame_ms, 0.0))
        with self._lock:
            self.frame_history.append(value)
            self._frames_since_evaluation += 1
            if self._frames_since_evaluation >= EVALUATION_WINDOW_FRAMES:
                self._frames_since_evaluation = 0
                self._measure()
                if self._config_model.current.adaptive_quality:
                    self.optimize_performance()
            return self._snapshot

    def _window(self) -> list[float]:
        history = list(self.frame_history)
        return history[-EVALUATION_WINDOW_FRAMES:]

    def _measure(self) -> PerformanceSnapshot:
        config = self._config_model.current
        window = self._window()
        avg_ms = (sum(window) / len(window)) if window else 0.0
        frame_rate = (1000.0 / avg_ms) if avg_ms > 0.0 else config.max_frame_rate

        cpu = self._sampler.cpu_percent()
        memory = self._sampler.memory_mb()
        self.cpu_history.append(cpu)
        self.memory_history.append(memory)

        budget_ms = 1000.0 / config.max_frame_rate
        exhaustion: list[ResourceExhaustion] = []
        if avg_ms > budget_ms * EXHAUSTION_FRAME_RATIO:
            exhaustion.append(
                ResourceExhaustion("frame_time_ms", avg_ms, budget_ms * EXHAUSTION_FRAME_RATIO)
            )
        memory_exceeded = memory > config.memory_usage_limit
        if memory_exceeded:
            exhaustion.append(ResourceExhaustion("memory_mb", memory, config.memory_usage_limit))
        for problem in exhaustion:
            _LOGGER.warning("performance: %s", problem)

        self._snapshot = PerformanceSnapshot(
            frame_rate=frame_rate,
            avg_frame_time_ms=avg_ms,
            cpu_usage=cpu,
            memory_usage_mb=memory,
            simulation_steps=self.simulation_steps,
            throttle_level=self.throttle_level,
            active_optimizations=self._active_optimizations(),
            last_measurement=self._clock(),
            node_count=self.node_count,
            memory_limit_exceeded=memory_exceeded,
            exhaustion=tuple(problem.as_dict() for problem in exhaustion),
        )
        return self._snapshot

    def _active_optimizations(self) -> tuple[str, ...]:
        names = [str(THROTTLE_LADDER[level]["name"]) for level in range(1, self.throttle_level + 1)]
        if self.worker_offload_active:
            names.append("worker-offload")
        if self.large_dataset_tuned:
            names.append("large-dataset-tuning")
        return tuple(names)

    # ------------------------------------------------------------------
    # Throttling
    # ------------------------------------------------------------------

    def _floor_level(self, config: ForceLayoutConfig) -> int:
        floor = self.baseline_level
        if self.node_count >= config.emergency_throttle_threshold:
            floor = max(floor, EMERGENCY_THROTTLE_FLOOR)
        return min(floor, MAX_THROTTLE_LEVEL)

    def _signal(self, snapshot: PerformanceSnapshot, config: ForceLayoutConfig) -> tuple[ThrottleSignal, bool]:
        """Direction for this window, and whether it bypasses hysteresis."""
        floor = self._floor_level(config)
        if self.throttle_level < floor:
            return "increase", True
        budget_ms = 1000.0 / config.max_frame_rate
        if snapshot.memory_limit_exceeded:
            return "increase", False
        if snapshot.avg_frame_time_ms > budget_ms * THROTTLE_UP_RATIO:
            return "increase", False
        if (
            snapshot.avg_frame_time_ms < budget_ms * THROTTLE_DOWN_RATIO
            and self.throttle_level > floor
        ):
            return "decrease", False
        return "hold", False

    def optimize_performance(self) -> int:
        """Evaluate the latest snapshot and move at most one rung."""
        with self._lock:
            config = self._config_model.current
            signal, forced = self._signal(self._snapshot, config)
            self._last_signal = signal
            if signal == "increase":
                self._down_streak = 0
                self._up_streak += 1
                if (forced or self._up_streak >= HYSTERESIS_WINDOWS) and (
                    self.throttle_level < MAX_THROTTLE_LEVEL
                ):
                    self._up_streak = 0
                    reason = "emergency" if forced else "degraded"
                    if forced:
                        _LOGGER.warning(
                            "emergency throttling: %d nodes >= threshold %d",
                            self.node_count,
                            config.emergency_throttle_threshold,
                        )
                    self._set_level(self.throttle_level + 1, reason)
            elif signal == "decrease":
                self._up_streak = 0
                self._down_streak += 1
                if self._down_streak >= HYSTERESIS_WINDOWS and self.throttle_level > 0:
                    self._down_streak = 0
                    self._set_level(self.throttle_level - 1, "recovered")
            else:
                self._up_streak = 0
                self._down_streak = 0
            return self.throttle_level

    def optimize_for_large_dataset(self, node_count: int) -> int:
        """Size the throttle baseline and force tuning to the current graph.

        Called on every data change. A smaller graph lowers the baseline, and
        fields whose tuning band no longer applies go back to the values they
        had before tuning. The throttle level itself only comes down through
        measured windows in :meth:`optimize_performance`.
        """
        count = max(0, int(node_count))
        with self._lock:
            config = self._config_model.current
            self.node_count = count
            quarter = max(1.0, config.emergency_throttle_threshold / 4.0)
            baseline = min(MAX_THROTTLE_LEVEL - 1, int(count / quarter))
            if baseline != self.baseline_level:
                _LOGGER.info(
                    "throttle baseline %d -> %d for %d nodes",
                    self.baseline_level,
                    baseline,
                    count,
                )
            self.baseline_level = baseline

            tuning = large_dataset_tuning(count)
            restore = {
                name: value for name, value in self._pre_tuning.items() if name not in tuning
            }
            saved = {
                name: getattr(config, name) for name in tuning if name not in self._pre_tuning
            }
            changes = {**restore, **tuning}
            if changes:
                result = self._config_model.try_merge(changes, source="governor")
                if result.valid:
                    for name in restore:
                        del self._pre_tuning[name]
                    self._pre_tuning.update(saved)
                else:
                    _LOGGER.warning("large dataset tuning rejected: %s", "; ".join(result.errors))
            self.large_dataset_tuned = bool(self._pre_tuning)
            if self.throttle_level < self.baseline_level:
                self._set_level(self.baseline_level, "large-dataset")
            return self.throttle_level

    def _set_level(self, level: int, reason: str) -> None:
        level = int(_clamp(level, 0, MAX_THROTTLE_LEVEL))
        previous = self.throttle_level
        if level == previous:
            return
        config = self._config_model.current
        result = self._config_model.try_merge(level_profile(level, config), source="governor")
        if not result.valid:
            _LOGGER.warning("throttle profile rejected: %s", "; ".join(result.errors))
            return
        self.throttle_level = level
        self._snapshot = replace(
            self._snapshot,
            throttle_level=level,
            active_optimizations=self._active_optimizations(),
        )
        _LOGGER.info(
            "throttle level %d -> %d (%s, %s)",
            previous,
            level,
            THROTTLE_LADDER[level]["name"],
            reason,
        )
        for listener in list(self._listeners):
            listener(level, previous, reason)

    def set_worker_offload(self, active: bool) -> None:
        with self._lock:
            self.worker_offload_active = bool(active)

    def get_performance_metrics(self) -> dict[str, Any]:
        with self._lock:
            return self._snapshot.as_dict()

    def reset(self) -> None:
        """Drop histories and return to full quality."""
        with self._lock:
            self.frame_history.clear()
            self.cpu_history.clear()
            self.memory_history.clear()
            self.baseline_level = 0
            self.node_count = 0
            self.simulation_steps = 0
            self.large_dataset_tuned = False
            self._pre_tuning.clear()
            self._frames_since_evaluation = 0
            self._up_streak = 0
            self._down_streak = 0
            self._last_signal = "hold"
            self._set_level(0, "reset")
            self._snapshot = PerformanceSnapshot(last_measurement=self._clock())

    def dispose(self) -> None:
        self._unsubscribe_config()
        with self._lock:
            self._listeners.clear()
            self.frame_history.clear()
            self.cpu_history.clear()
            self.memory_history.clear()

    def _on_config_change(
        self,
        config: ForceLayoutConfig,
        previous: ForceLayoutConfig,
        changes: list[FieldChange],
        source: str,
    ) -> None:
        if source == "governor":
            return
        names = {change.name for change in changes}
        with self._lock:
            # A host edit to a tuned field becomes the value to restore.
            for change in changes:
                if change.name in self._pre_tuning:
                    self._pre_tuning[change.name] = change.new
        if "max_frame_rate" not in names:
            return
        with self._lock:
            if float(THROTTLE_LADDER[self.throttle_level]["tick_rate_divisor"]) <= 1.0:
                return
            profile = level_profile(self.throttle_level, config)
            self._config_model.try_merge(
                {"tick_interval_ms": profile["tick_interval_ms"]}, source="governor"
            )
