from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable, Literal

from .config import ConfigModel, FieldChange, ForceLayoutConfig
from .constants import (
    DIAGNOSTIC_EVENT_LIMIT,
    EMERGENCY_OVERLAP_INTERVAL,
    EMERGENCY_OVERLAP_MIN_NODES,
    RELATED_LINK_FACTOR,
    _clamp01,
    _safe_float,
)
from .errors import LayoutError, UnknownNodeError
from .forces import (
    apply_center,
    apply_cluster_pull,
    apply_collisions,
    apply_emergency_overlap,
    apply_links,
    apply_separation,
    apply_velocity_deltas,
    charge_deltas,
    charge_points,
    enforce_min_separation,
)
from .nodes import PhysicsLink, PhysicsNode, seed_positions
from .offload import ForceOffloader
from .scheduling import FrameScheduler, ManualFrameScheduler
from .spacing import SpacingState, compute_spacing, effective_link_distance

_LOGGER = logging.getLogger(__name__)

SimulationStatus = Literal["idle", "running", "cooled", "stopped"]
NodesCallback = Callable[[list[PhysicsNode]], None]
SnapshotFilter = Callable[[list[PhysicsNode]], list[PhysicsNode]]
TickObserver = Callable[[float, int], None]
DiagnosticListener = Callable[[LayoutError], None]

# Config fields that change radii, link targets or cluster centers.
_SPACING_FIELDS = frozenset(
    {
        "collision_radius",
        "link_distance",
        "link_strength",
        "width",
        "height",
        "active_task_id",
        "focus_strength",
        "enable_smart_spacing",
        "priority_spacing_multiplier",
        "cluster_spacing",
        "density_adaptation",
        "quadtree_max_items",
    }
)


class ForceSimulation:
    """Sole writer of node positions.

    States::

        idle -> running -> cooled   (alpha <= alpha_min)
                        -> stopped  (stop())
        cooled/stopped -> running   (restart(), or alpha() raised above alpha_min)

    ``stop()`` bumps a generation token under the lock, so a frame that was
    already queued cannot tick once ``stop()`` has returned.
    """

    def __init__(
        self,
        config_model: ConfigModel | None = None,
        scheduler: FrameScheduler | None = None,
        *,
        offloader: ForceOffloader | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._lock = threading.RLock()
        self._config_model = config_model or ConfigModel()
        self._scheduler: FrameScheduler = scheduler or ManualFrameScheduler()
        self._offloader = offloader or ForceOffloader()
        self._clock = clock

        self._nodes: list[PhysicsNode] = []
        self._by_id: dict[str, PhysicsNode] = {}
        self._by_task: dict[str, PhysicsNode] = {}
        self._links: list[PhysicsLink] = []
        self._spacing = SpacingState()
        self._spacing_dirty = True
        self._focus_dirty = False

        self._alpha = 1.0
        self._status: SimulationStatus = "idle"
        self._tick_count = 0
        self._generation = 0
        self._frame_handle: int | None = None
        self._last_frame_ms: float | None = None
        self._in_tick = False
        self._thawed = False

        self._tick_callbacks: list[NodesCallback] = []
        self._end_callbacks: list[NodesCallback] = []
        self._tick_observers: list[TickObserver] = []
        self._diagnostic_listeners: list[DiagnosticListener] = []
        self._snapshot_filter: SnapshotFilter | None = None
        self.diagnostic_events: deque[LayoutError] = deque(maxlen=DIAGNOSTIC_EVENT_LIMIT)

        self.last_tick_ms = 0.0
        self.cooling_events = 0
        self.frozen_frames = 0
        self.last_collision_pairs = 0
        self.last_emergency_overlaps = 0

        self._unsubscribe_config = self._config_model.subscribe(self._on_config_change)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def config(self) -> ForceLayoutConfig:
        return self._config_model.current

    @property
    def status(self) -> SimulationStatus:
        with self._lock:
            return self._status

    @property
    def tick_count(self) -> int:
        with self._lock:
            return self._tick_count

    @property
    def node_count(self) -> int:
        with self._lock:
            return len(self._nodes)

    @property
    def link_count(self) -> int:
        with self._lock:
            return len(self._links)

    @property
    def spacing(self) -> SpacingState:
        with self._lock:
            return self._spacing

    def nodes(self) -> list[PhysicsNode]:
        with self._lock:
            return [node.snapshot() for node in self._nodes]

    def links(self) -> list[PhysicsLink]:
        with self._lock:
            return [
                PhysicsLink(link.source, link.target, link.strength, link.distance)
                for link in self._links
            ]

    def node(self, node_id: str) -> PhysicsNode | None:
        with self._lock:
            found = self._resolve(node_id)
            return found.snapshot() if found is not None else None

    def _resolve(self, node_id: Any) -> PhysicsNode | None:
        key = str(node_id)
        return self._by_id.get(key) or self._by_task.get(key)

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def _register(self, bucket: list, callback: Callable) -> Callable[[], None]:
        with self._lock:
            bucket.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in bucket:
                    bucket.remove(callback)

        return unsubscribe

    def on_tick(self, callback: NodesCallback) -> Callable[[], None]:
        return self._register(self._tick_callbacks, callback)

    def on_end(self, callback: NodesCallback) -> Callable[[], None]:
        return self._register(self._end_callbacks, callback)

    def on_diagnostic(self, callback: DiagnosticListener) -> Callable[[], None]:
        return self._register(self._diagnostic_listeners, callback)

    def add_tick_observer(self, observer: TickObserver) -> Callable[[], None]:
        """``observer(elapsed_ms, node_count)`` runs after every completed tick."""
        return self._register(self._tick_observers, observer)

    def set_snapshot_filter(self, snapshot_filter: SnapshotFilter | None) -> None:
        """Reshape what tick callbacks see; integration and end callbacks are untouched."""
        with self._lock:
            self._snapshot_filter = snapshot_filter

    def emit_tick(self, snapshot: list[PhysicsNode]) -> None:
        """Fire tick callbacks with ``snapshot`` without integrating."""
        with self._lock:
            callbacks = list(self._tick_callbacks)
        for callback in callbacks:
            callback(snapshot)

    def report(self, error: LayoutError) -> None:
        """Record a non-fatal problem on the diagnostic channel."""
        with self._lock:
            self.diagnostic_events.append(error)
            listeners = list(self._diagnostic_listeners)
        _LOGGER.warning("layout diagnostic: %s", error)
        for listener in listeners:
            listener(error)

    # ------------------------------------------------------------------
    # Data
    # ------------------------------------------------------------------

    def set_data(
        self,
        nodes: list[PhysicsNode],
        links: list[PhysicsLink],
        initial_positions: dict[str, tuple[float, float]] | None = None,
    ) -> None:
        """Replace the working set, carrying state over by node id.

        A node present before and after keeps its position, velocity and pin.
        New nodes take ``initial_positions`` when given, else a seeded spot.
        Links naming unknown nodes are dropped and reported.
        """
        with self._lock:
            config = self._config_model.current
            previous = self._by_id
            rebuilt: list[PhysicsNode] = []
            by_id: dict[str, PhysicsNode] = {}
            unplaced: list[str] = []

            for incoming in nodes:
                if incoming.id in by_id:
                    continue
                node = incoming.snapshot()
                prior = previous.get(node.id)
                if prior is not None:
                    node.x, node.y = prior.x, prior.y
                    node.vx, node.vy = prior.vx, prior.vy
                    if prior.pinned and not node.pinned:
                        node.pin(prior.fx, prior.fy, source=prior.pinned_by or "user")
                elif initial_positions and node.id in initial_positions:
                    x, y = initial_positions[node.id]
                    node.x = _safe_float(x, config.center[0])
                    node.y = _safe_float(y, config.center[1])
                else:
                    unplaced.append(node.id)
                rebuilt.append(node)
                by_id[node.id] = node

            kept_links: list[PhysicsLink] = []
            seen: set[str] = set()
            for link in links:
                missing = [end for end in (link.source, link.target) if end not in by_id]
                if missing:
                    for node_id in missing:
                        self._report_unknown(node_id, "set_data")
                    continue
                if link.source == link.target or link.key in seen:
                    continue
                seen.add(link.key)
                kept_links.append(PhysicsLink(link.source, link.target))

            if unplaced:
                seeded = seed_positions(
                    unplaced,
                    kept_links,
                    center_x=config.center[0],
                    center_y=config.center[1],
                    row_spacing=max(config.link_distance, config.min_node_separation),
                    column_spacing=max(config.min_node_separation, 1.0),
                )
                for node_id in unplaced:
                    by_id[node_id].x, by_id[node_id].y = seeded[node_id]

            self._nodes = rebuilt
            self._by_id = by_id
            self._by_task = {node.task_id: node for node in rebuilt if node.task_id}
            self._links = kept_links
            self._apply_focus_flags(config)
            self._refresh_spacing(config)

    def _report_unknown(self, node_id: Any, operation: str) -> None:
        self.report(UnknownNodeError(node_id, operation))

    # ------------------------------------------------------------------
    # Pins
    # ------------------------------------------------------------------

    def set_fixed_position(
        self, node_id: str, x: float, y: float, *, source: str = "user"
    ) -> bool:
        with self._lock:
            node = self._resolve(node_id)
            if node is None:
                self._report_unknown(node_id, "set_fixed_position")
                return False
            node.pin(_safe_float(x, node.x), _safe_float(y, node.y), source=source)
            node.x, node.y = node.fx, node.fy
            node.vx = node.vy = 0.0
            return True

    def release_fixed_position(self, node_id: str) -> bool:
        with self._lock:
            node = self._resolve(node_id)
            if node is None:
                self._report_unknown(node_id, "release_fixed_position")
                return False
            node.release()
            return True

    def release_fixed_positions(self, source: str | None = None) -> int:
        """Unpin every node, or only those pinned by ``source``."""
        released = 0
        with self._lock:
            for node in self._nodes:
                if not node.pinned:
                    continue
                if source is not None and node.pinned_by != source:
                    continue
                node.release()
                released += 1
        return released

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._status == "running":
                return
            if self._status == "cooled" and self._alpha <= self.config.alpha_min:
                return
            self._status = "running"
            self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._generation += 1
            self._cancel_frame()
            if self._status != "idle":
                self._status = "stopped"

    def restart(self) -> None:
        with self._lock:
            self._generation += 1
            self._cancel_frame()
            self._alpha = 1.0
            self._thawed = self.config.simulation_frozen
            self._status = "running"
            self._last_frame_ms = None
            self._schedule()
        _LOGGER.info("simulation restarted with %d nodes", self.node_count)

    def alpha(self, value: float | None = None) -> float:
        with self._lock:
            if value is None:
                return self._alpha
            self._alpha = _clamp01(_safe_float(value, self._alpha))
            if self._status == "cooled" and self._alpha > self.config.alpha_min:
                self._status = "running"
                self._schedule()
            return self._alpha

    def dispose(self) -> None:
        self.stop()
        with self._lock:
            self._tick_callbacks.clear()
            self._end_callbacks.clear()
            self._tick_observers.clear()
            self._diagnostic_listeners.clear()
            self.diagnostic_events.clear()
            self._snapshot_filter = None
        self._unsubscribe_config()
        self._offloader.shutdown()

    def _schedule(self) -> None:
        if self._frame_handle is not None:
            return
        generation = self._generation
        self._frame_handle = self._scheduler.request_frame(
            lambda now_ms: self._on_frame(generation, now_ms)
        )

    def _cancel_frame(self) -> None:
        if self._frame_handle is not None:
            self._scheduler.cancel_frame(self._frame_handle)
            self._frame_handle = None

    def _on_frame(self, generation: int, now_ms: float) -> None:
        with self._lock:
            if generation != self._generation or self._status != "running":
                return
            self._frame_handle = None
            config = self._config_model.current
            interval = config.tick_interval_ms
            if (
                interval > 0.0
                and self._last_frame_ms is not None
                and (now_ms - self._last_frame_ms) < interval
            ):
                self._schedule()
                return
            self._last_frame_ms = now_ms
            if config.simulation_frozen and not self._thawed:
                self.frozen_frames += 1
                self._schedule()
                return
            self.tick()
            if generation == self._generation and self._status == "running":
                self._schedule()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    def tick(self) -> list[PhysicsNode]:
        """Run one integration step and fire callbacks; returns the snapshot."""
        with self._lock:
            if self._in_tick:
                raise RuntimeError("tick() cannot be called from a simulation callback")
            self._in_tick = True
            try:
                config = self._config_model.current
                started = self._clock()
                self._step(config)

                cooled = False
                if self._alpha <= config.alpha_min and self._status != "cooled":
                    cooled = True
                    if config.enable_smart_spacing:
                        enforce_min_separation(self._nodes, config)
                    self._status = "cooled"
                    self._thawed = False
                    self._generation += 1
                    self._cancel_frame()
                    self.cooling_events += 1
                    _LOGGER.debug(
                        "simulation cooled after %d ticks (alpha=%.5f)",
                        self._tick_count,
                        self._alpha,
                    )

                elapsed_ms = (self._clock() - started) * 1000.0
                self.last_tick_ms = elapsed_ms
                snapshot = [node.snapshot() for node in self._nodes]
                shown = snapshot
                if self._snapshot_filter is not None:
                    shown = self._snapshot_filter([node.snapshot() for node in snapshot])
                for callback in list(self._tick_callbacks):
                    callback(shown)
                if cooled:
                    for callback in list(self._end_callbacks):
                        callback(snapshot)
                for observer in list(self._tick_observers):
                    observer(elapsed_ms, len(snapshot))
                return snapshot
            finally:
                self._in_tick = False

    def _step(self, config: ForceLayoutConfig) -> None:
        self._tick_count += 1
        tick = self._tick_count
        nodes = self._nodes
        alpha = self._alpha

        if self._focus_dirty:
            self._focus_dirty = False
            self._apply_focus_flags(config)
            self._spacing_dirty = True

        if nodes:
            due = (tick - self._spacing.computed_at_tick) >= config.spacing_recompute_interval
            if self._spacing_dirty or due:
                self._refresh_spacing(config)
            spacing = self._spacing

            points = charge_points(nodes)
            if self._offloader.should_offload(len(nodes), config.use_worker_offload):
                deltas = self._offloader.charge(
                    points,
                    strength=config.charge_strength,
                    alpha=alpha,
                    theta=config.barnes_hut_theta,
                    max_items=config.quadtree_max_items,
                    max_depth=config.quadtree_max_depth,
                )
            else:
                deltas = charge_deltas(
                    points,
                    strength=config.charge_strength,
                    alpha=alpha,
                    theta=config.barnes_hut_theta,
                    max_items=config.quadtree_max_items,
                    max_depth=config.quadtree_max_depth,
                )
            apply_velocity_deltas(nodes, deltas)
            apply_links(self._by_id, self._links, spacing.degrees, alpha)
            if config.enable_smart_spacing:
                apply_cluster_pull(nodes, spacing, alpha)
            self.last_collision_pairs = apply_collisions(nodes, spacing, config, tick=tick)
            apply_separation(nodes, config, alpha)
            apply_center(nodes, config.center, config.center_strength)

            keep = 1.0 - config.velocity_decay
            for node in nodes:
                if node.pinned:
                    node.x, node.y = node.fx, node.fy
                    node.vx = node.vy = 0.0
                    continue
                node.vx *= keep
                node.vy *= keep
                node.x += node.vx
                node.y += node.vy

            if (
                config.enable_smart_spacing
                and len(nodes) > EMERGENCY_OVERLAP_MIN_NODES
                and tick % EMERGENCY_OVERLAP_INTERVAL == 0
                and config.collision_sample_ratio >= 1.0
            ):
                self.last_emergency_overlaps = apply_emergency_overlap(nodes, spacing, config)

        self._alpha *= 1.0 - config.alpha_decay

    # ------------------------------------------------------------------
    # Spacing and focus
    # ------------------------------------------------------------------

    def _apply_focus_flags(self, config: ForceLayoutConfig) -> None:
        active_id = config.active_task_id
        for node in self._nodes:
            node.active = active_id is not None and active_id in (node.id, node.task_id)

    def _refresh_spacing(self, config: ForceLayoutConfig) -> None:
        self._spacing = compute_spacing(
            self._nodes, self._links, config, tick=self._tick_count
        )
        self._spacing_dirty = False

        active = {node.id for node in self._nodes if node.active}
        related: set[str] = set()
        for link in self._links:
            if link.source in active:
                related.add(link.target)
            if link.target in active:
                related.add(link.source)
        related -= active

        for link in self._links:
            strength = config.link_strength
            if link.source in active or link.target in active:
                strength *= config.focus_strength
            elif link.source in related or link.target in related:
                strength *= RELATED_LINK_FACTOR
            link.strength = strength
            link.distance = effective_link_distance(link, self._spacing, config)

    def _on_config_change(
        self,
        config: ForceLayoutConfig,
        previous: ForceLayoutConfig,
        changes: list[FieldChange],
        source: str,
    ) -> None:
        # No lock here: flags are picked up at the start of the next tick.
        names = {change.name for change in changes}
        if "active_task_id" in names:
            self._focus_dirty = True
        if names & _SPACING_FIELDS:
            self._spacing_dirty = True
