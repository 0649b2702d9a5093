from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .active_task import ActiveTaskListener, ActiveTaskTracker
from .config import (
    DEFAULT_FORCE_CONFIG,
    GOVERNOR_FIELDS,
    ConfigListener,
    ConfigModel,
    FieldChange,
    ForceLayoutConfig,
    ValidationResult,
    diff_for_transition,
    normalize_key,
    to_serializable,
)
from .constants import LAYOUT_TRANSITION_DURATION_MS
from .diagnostics import (
    generate_collision_report,
    get_spacing_metrics,
    test_collision_detection,
)
from .errors import ConfigurationError
from .governor import PerformanceGovernor, PerformanceSnapshot
from .nodes import PhysicsNode, links_from_tasks, node_from_task, node_id_for_task
from .offload import ForceOffloader
from .scheduling import FrameScheduler, ManualFrameScheduler
from .simulation import ForceSimulation, NodesCallback
from .tasks import Task, coerce_tasks
from .transition import LayoutTransition, LayoutTransitioner
from .viewport import (
    CameraController,
    SurfaceProvider,
    Transition,
    ViewportAdapter,
    ViewportManager,
    ViewportOptions,
    ViewportState,
)

_LOGGER = logging.getLogger(__name__)

FOCUS_PIN_SOURCE = "focus"
REHEAT_ALPHA = 0.3


class ForceDirectedLayout:
    def __init__(
        self,
        config: ForceLayoutConfig | dict[str, Any] | None = None,
        *,
        scheduler: FrameScheduler | None = None,
        surface: SurfaceProvider | None = None,
        viewport_adapter: ViewportAdapter | None = None,
        viewport_options: ViewportOptions | None = None,
        sampler: Any | None = None,
        offloader: ForceOffloader | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        partial = config or {}
        if isinstance(config, ForceLayoutConfig):
            partial = {
                change.name: change.new
                for change in diff_for_transition(DEFAULT_FORCE_CONFIG, config)
            }
        # Same rules as update_config, governor fields included.
        checked = ConfigModel().try_merge(partial, source="host")
        if not checked.valid or checked.config is None:
            raise ConfigurationError(checked.errors, checked.warnings)
        initial = checked.config

        self.scheduler: FrameScheduler = scheduler or ManualFrameScheduler()
        self.config_model = ConfigModel(initial)
        self.offloader = offloader or ForceOffloader()
        self.simulation = ForceSimulation(
            self.config_model,
            self.scheduler,
            offloader=self.offloader,
            clock=clock,
        )
        self.governor = PerformanceGovernor(self.config_model, sampler=sampler)
        self.viewport = ViewportManager(surface, viewport_options)
        options = self.viewport.options
        self.camera = CameraController(
            self.scheduler,
            viewport_adapter,
            min_zoom=options.min_zoom,
            max_zoom=options.max_zoom,
        )
        self.tracker = ActiveTaskTracker()
        self.transitioner = LayoutTransitioner(self.simulation, self.scheduler)

        self._tasks: list[Task] = []
        self._follow_active = False
        self._disposed = False
        self._unsubscribers = [
            self.config_model.subscribe(self._on_config_change),
            self.simulation.add_tick_observer(self._observe_tick),
            self.tracker.subscribe(self._on_active_change),
        ]

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks)

    def set_tasks(
        self,
        tasks: Iterable[Task | dict[str, Any]],
        initial_positions: dict[str, tuple[float, float]] | None = None,
    ) -> list[PhysicsNode]:
        """Re-sync the task list; positions survive for tasks already known.

        ``initial_positions`` is keyed by task id.
        """
        rows = coerce_tasks(list(tasks))
        self._tasks = rows
        if self.config_model.current.adaptive_quality:
            self.governor.optimize_for_large_dataset(len(rows))

        positions = None
        if initial_positions:
            positions = {
                node_id_for_task(str(task_id)): position
                for task_id, position in initial_positions.items()
            }
        self.simulation.set_data(
            [node_from_task(task) for task in rows],
            links_from_tasks(rows),
            positions,
        )
        self.sync_active_task()
        self._reheat()
        return self.simulation.nodes()

    def sync_active_task(self) -> Task | None:
        return self.tracker.update_active_task(self._tasks)

    def nodes(self) -> list[PhysicsNode]:
        return self.simulation.nodes()

    # ------------------------------------------------------------------
    # Config
    # ------------------------------------------------------------------

    def get_config(self) -> ForceLayoutConfig:
        return self.config_model.current

    def validate_config(self, partial: dict[str, Any] | None) -> ValidationResult:
        return self.config_model.validate(partial)

    def update_config(self, partial: dict[str, Any]) -> ValidationResult:
        """Merge host changes; raises :class:`ConfigurationError` on any error."""
        try:
            result = self.config_model.merge(partial, source="host")
        except ConfigurationError as exc:
            _LOGGER.warning("config update rejected: %s", exc)
            raise
        for warning in result.warnings:
            _LOGGER.info("config warning: %s", warning)
        if result.changes:
            self._reheat()
        return result

    def subscribe_config(self, listener: ConfigListener) -> Callable[[], None]:
        """Every config change, host or engine initiated, with its source."""
        return self.config_model.subscribe(listener)

    def export_config(self, include_performance_metrics: bool = False) -> str:
        payload: dict[str, Any] = {
            "config": to_serializable(self.config_model.current),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "nodeCount": self.simulation.node_count,
            "linkCount": self.simulation.link_count,
        }
        if include_performance_metrics:
            payload["performanceMetrics"] = self.governor.get_performance_metrics()
        return json.dumps(payload, indent=2)

    def import_config(self, text: str) -> ValidationResult:
        try:
            payload = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError([f"invalid configuration JSON: {exc}"]) from exc
        if isinstance(payload, dict) and isinstance(payload.get("config"), dict):
            payload = payload["config"]
        if not isinstance(payload, dict):
            raise ConfigurationError(["configuration payload must be an object"])

        partial: dict[str, Any] = {}
        skipped: list[str] = []
        for key, value in payload.items():
            name = normalize_key(key)
            if name in GOVERNOR_FIELDS:
                skipped.append(name)
                continue
            partial[key] = value

        result = self.config_model.merge(partial, source="import")
        for name in skipped:
            result.warnings.append(f"{name} is managed by the performance governor; ignored")
        if result.changes:
            self._reheat()
        return result

    def reset_to_defaults(self, preserve_data: bool = True) -> None:
        self.camera.cancel_transition()
        self.transitioner.cancel()
        self.simulation.release_fixed_positions(FOCUS_PIN_SOURCE)
        self.config_model.replace_all(DEFAULT_FORCE_CONFIG, source="reset")
        self.governor.reset()
        if not preserve_data:
            self._tasks = []
            self.tracker.clear()
            self.simulation.set_data([], [])
        else:
            self.sync_active_task()
            active_id = self.tracker.current_id
            if active_id is not None:
                self.config_model.try_merge({"active_task_id": active_id}, source="focus")
        _LOGGER.info("layout reset to defaults (preserve_data=%s)", preserve_data)
        self.simulation.restart()

    # ------------------------------------------------------------------
    # Simulation
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.simulation.start()

    def stop(self) -> None:
        self.simulation.stop()

    def restart(self) -> None:
        self.simulation.restart()

    def alpha(self, value: float | None = None) -> float:
        return self.simulation.alpha(value)

    def tick(self) -> list[PhysicsNode]:
        return self.simulation.tick()

    def on_tick(self, callback: NodesCallback) -> Callable[[], None]:
        return self.simulation.on_tick(callback)

    def on_end(self, callback: NodesCallback) -> Callable[[], None]:
        return self.simulation.on_end(callback)

    def set_fixed_position(self, node_id: str, x: float, y: float) -> bool:
        return self.simulation.set_fixed_position(node_id, x, y, source="user")

    def release_fixed_positions(self, source: str | None = None) -> int:
        return self.simulation.release_fixed_positions(source)

    def _reheat(self) -> None:
        if self.simulation.status == "idle":
            return
        if self.simulation.alpha() < REHEAT_ALPHA:
            self.simulation.alpha(REHEAT_ALPHA)

    def _observe_tick(self, elapsed_ms: float, node_count: int) -> None:
        config = self.config_model.current
        self.governor.set_worker_offload(
            self.offloader.should_offload(node_count, config.use_worker_offload)
        )
        self.governor.observe_tick(elapsed_ms, node_count)

    # ------------------------------------------------------------------
    # Active task and focus
    # ------------------------------------------------------------------

    def subscribe_active_task(self, listener: ActiveTaskListener) -> Callable[[], None]:
        return self.tracker.subscribe(listener)

    @property
    def active_task(self) -> Task | None:
        return self.tracker.current

    def follow_active_task(self, enabled: bool = True) -> None:
        """Move the camera to every new active task as it changes."""
        self._follow_active = bool(enabled)

    def _on_active_change(self, active: Task | None, previous: Task | None) -> None:
        self.config_model.try_merge(
            {"active_task_id": active.id if active is not None else None},
            source="focus",
        )
        if self._follow_active and active is not None:
            self.focus_active_task()

    def _on_config_change(
        self,
        config: ForceLayoutConfig,
        previous: ForceLayoutConfig,
        changes: list[FieldChange],
        source: str,
    ) -> None:
        for change in changes:
            if change.name in ("active_task_id", "focus_lock"):
                self._apply_focus_lock(config.active_task_id)
                self._reheat()
                return

    def _apply_focus_lock(self, active_id: str | None) -> None:
        config = self.config_model.current
        self.simulation.release_fixed_positions(FOCUS_PIN_SOURCE)
        if not config.focus_lock or active_id is None:
            return
        node = self.simulation.node(active_id) or self.simulation.node(
            node_id_for_task(active_id)
        )
        if node is None:
            return
        if node.pinned:
            # A user pin outranks the focus lock.
            return
        center_x, center_y = config.center
        self.simulation.set_fixed_position(
            node.id, center_x, center_y, source=FOCUS_PIN_SOURCE
        )

    # ------------------------------------------------------------------
    # Viewport
    # ------------------------------------------------------------------

    def calculate_optimal_viewport(
        self,
        active_id: str | None = None,
        options: ViewportOptions | dict[str, Any] | None = None,
    ) -> ViewportState | None:
        target = active_id if active_id is not None else self.tracker.current_id
        return self.viewport.calculate_optimal_viewport(
            self.simulation.nodes(),
            target,
            self.camera.current_viewport(),
            options,
        )

    def calculate_fit_viewport(
        self,
        tasks: Iterable[Task | str] | None = None,
        options: ViewportOptions | dict[str, Any] | None = None,
    ) -> ViewportState:
        chosen = list(tasks) if tasks is not None else list(self._tasks)
        return self.viewport.calculate_fit_viewport(chosen, self.simulation.nodes(), options)

    def focus_active_task(
        self,
        duration_ms: float | None = None,
        easing: str = "ease-out",
    ) -> Transition | None:
        target = self.calculate_optimal_viewport()
        if target is None:
            return None
        duration = (
            self.viewport.options.animation_duration_ms if duration_ms is None else duration_ms
        )
        return self.camera.follow(target, duration, easing)

    def transition_to_viewport(
        self,
        target: ViewportState,
        duration_ms: float | None = None,
        easing: str = "ease-out",
    ) -> Transition | None:
        duration = (
            self.viewport.options.animation_duration_ms if duration_ms is None else duration_ms
        )
        return self.camera.transition_to_viewport(target, duration, easing)

    def cancel_transition(self) -> bool:
        return self.camera.cancel_transition()

    # ------------------------------------------------------------------
    # Layout transitions
    # ------------------------------------------------------------------

    def transition_to_new_layout(
        self,
        partial: dict[str, Any],
        duration_ms: float = LAYOUT_TRANSITION_DURATION_MS,
        easing: str = "ease-out",
    ) -> LayoutTransition:
        """Apply a config change and ease the shown layout into the new one.

        Positions are captured before the change. Tick callbacks then receive
        snapshots blended from those positions toward the live simulation
        over ``duration_ms``. An invalid ``partial`` raises
        :class:`ConfigurationError` and starts nothing.
        """
        origin = {node.id: (node.x, node.y) for node in self.simulation.nodes()}
        result = self.update_config(partial)
        return self.transitioner.begin(origin, duration_ms, easing, tuple(result.changes))

    def cancel_layout_transition(self) -> bool:
        """Stop blending; tick callbacks get live positions from the next tick."""
        return self.transitioner.cancel()

    # ------------------------------------------------------------------
    # Performance and diagnostics
    # ------------------------------------------------------------------

    def get_performance_metrics(self) -> dict[str, Any]:
        return self.governor.get_performance_metrics()

    @property
    def performance_snapshot(self) -> PerformanceSnapshot:
        return self.governor.snapshot

    def record_frame_time(self, frame_ms: float) -> PerformanceSnapshot:
        return self.governor.record_frame_time(frame_ms)

    def optimize_performance(self) -> int:
        return self.governor.optimize_performance()

    def optimize_for_large_dataset(self, node_count: int | None = None) -> int:
        count = self.simulation.node_count if node_count is None else node_count
        return self.governor.optimize_for_large_dataset(count)

    def test_collision_detection(self) -> dict[str, Any]:
        return test_collision_detection(self.simulation.nodes(), self.config_model.current)

    def get_spacing_metrics(self) -> dict[str, Any]:
        return get_spacing_metrics(self.simulation.nodes(), self.config_model.current)

    def generate_collision_report(self) -> dict[str, Any]:
        return generate_collision_report(
            self.simulation.nodes(),
            self.config_model.current,
            link_count=self.simulation.link_count,
            performance=self.governor.snapshot,
            alpha=self.simulation.alpha(),
        )

    @property
    def diagnostic_events(self) -> list[Any]:
        events: list[Any] = list(self.simulation.diagnostic_events)
        events.extend(self.viewport.diagnostic_events)
        events.extend(self.camera.diagnostic_events)
        return events

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        self.transitioner.dispose()
        self.camera.dispose()
        self.simulation.dispose()
        self.governor.dispose()
        self._tasks = []
        self.tracker.clear()
