from __future__ import annotations

import logging
import math
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Protocol

from .constants import (
    ANIMATE_POSITION_DELTA,
    ANIMATE_ZOOM_DELTA,
    DIAGNOSTIC_EVENT_LIMIT,
    EASING_NAMES,
    FALLBACK_SURFACE_HEIGHT,
    FALLBACK_SURFACE_WIDTH,
    VIEWPORT_DEFAULT_DURATION_MS,
    VIEWPORT_DEFAULT_MAX_ZOOM,
    VIEWPORT_DEFAULT_MIN_ZOOM,
    VIEWPORT_DEFAULT_PADDING,
    VIEWPORT_NODE_HEIGHT,
    VIEWPORT_NODE_WIDTH,
    _clamp,
    _clamp01,
    _safe_float,
)
from .errors import LayoutError, ViewportUnavailableError
from .nodes import PhysicsNode
from .scheduling import FrameScheduler
from .tasks import Task

_LOGGER = logging.getLogger(__name__)

SurfaceProvider = Callable[[], tuple[float, float] | None]


@dataclass(frozen=True)
class ViewportState:
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0

    def clamped(self, min_zoom: float, max_zoom: float) -> "ViewportState":
        return ViewportState(self.x, self.y, _clamp(self.zoom, min_zoom, max_zoom))


@dataclass(frozen=True)
class ViewportOptions:
    padding: float = VIEWPORT_DEFAULT_PADDING
    include_related_tasks: bool = True
    max_zoom: float = VIEWPORT_DEFAULT_MAX_ZOOM
    min_zoom: float = VIEWPORT_DEFAULT_MIN_ZOOM
    animation_duration_ms: float = VIEWPORT_DEFAULT_DURATION_MS
    node_width: float = VIEWPORT_NODE_WIDTH
    node_height: float = VIEWPORT_NODE_HEIGHT


class ViewportAdapter(Protocol):
    """Host side of the camera. The controller is its only writer while a transition runs."""

    def get_viewport(self) -> ViewportState: ...

    def set_viewport(self, viewport: ViewportState) -> None: ...


def ease(name: str, progress: float) -> float:
    p = _clamp01(progress)
    if name == "ease-out":
        return 1.0 - (1.0 - p) ** 3
    if name == "ease-in":
        return p**3
    if name == "ease-in-out":
        if p < 0.5:
            return 4.0 * p**3
        return 1.0 - ((-2.0 * p + 2.0) ** 3) / 2.0
    return p


def interpolate(start: ViewportState, end: ViewportState, progress: float) -> ViewportState:
    return ViewportState(
        x=start.x + (end.x - start.x) * progress,
        y=start.y + (end.y - start.y) * progress,
        zoom=start.zoom + (end.zoom - start.zoom) * progress,
    )


def should_animate_transition(start: ViewportState, end: ViewportState) -> bool:
    moved = math.hypot(end.x - start.x, end.y - start.y)
    return moved > ANIMATE_POSITION_DELTA or abs(end.zoom - start.zoom) > ANIMATE_ZOOM_DELTA


def _bounds(nodes: Iterable[PhysicsNode]) -> tuple[float, float, float, float] | None:
    xs: list[float] = []
    ys: list[float] = []
    for node in nodes:
        x = _safe_float(node.x, math.nan)
        y = _safe_float(node.y, math.nan)
        if math.isnan(x) or math.isnan(y):
            continue
        xs.append(x)
        ys.append(y)
    if not xs:
        return None
    return min(xs), min(ys), max(xs), max(ys)


class ViewportManager:
    """Computes target viewports; holds no camera state of its own."""

    def __init__(
        self,
        surface: SurfaceProvider | None = None,
        options: ViewportOptions | None = None,
    ) -> None:
        self._surface = surface
        self.options = options or ViewportOptions()
        self.diagnostic_events: deque[LayoutError] = deque(maxlen=DIAGNOSTIC_EVENT_LIMIT)

    def surface_size(self) -> tuple[float, float]:
        size = self._surface() if self._surface is not None else None
        if size is None:
            return FALLBACK_SURFACE_WIDTH, FALLBACK_SURFACE_HEIGHT
        width = _safe_float(size[0], 0.0)
        height = _safe_float(size[1], 0.0)
        if width <= 0.0 or height <= 0.0:
            return FALLBACK_SURFACE_WIDTH, FALLBACK_SURFACE_HEIGHT
        return width, height

    def _options(self, overrides: ViewportOptions | dict[str, Any] | None) -> ViewportOptions:
        if overrides is None:
            return self.options
        if isinstance(overrides, ViewportOptions):
            return overrides
        merged = {**self.options.__dict__, **overrides}
        return ViewportOptions(**merged)

    def _record(self, reason: str) -> None:
        error = ViewportUnavailableError(reason)
        self.diagnostic_events.append(error)
        _LOGGER.debug("viewport unavailable: %s", reason)

    def _frame(
        self,
        bounds: tuple[float, float, float, float],
        opts: ViewportOptions,
        *,
        node_margin: bool,
    ) -> ViewportState:
        width, height = self.surface_size()
        min_x, min_y, max_x, max_y = bounds
        if node_margin:
            # Padding comes off the surface; the node footprint goes on the box.
            box_w = (max_x - min_x) + opts.node_width
            box_h = (max_y - min_y) + opts.node_height
            scale_x = (width - opts.padding * 2.0) / max(box_w, 1e-9)
            scale_y = (height - opts.padding * 2.0) / max(box_h, 1e-9)
        else:
            box_w = (max_x - min_x) + opts.padding * 2.0
            box_h = (max_y - min_y) + opts.padding * 2.0
            scale_x = width / max(box_w, 1e-9)
            scale_y = height / max(box_h, 1e-9)
        zoom = max(opts.min_zoom, min(scale_x, scale_y, opts.max_zoom))
        center_x = (min_x + max_x) / 2.0
        center_y = (min_y + max_y) / 2.0
        return ViewportState(
            x=(width / 2.0) - center_x * zoom,
            y=(height / 2.0) - center_y * zoom,
            zoom=zoom,
        )

    def calculate_optimal_viewport(
        self,
        nodes: list[PhysicsNode],
        active_id: str | None,
        current: ViewportState | None = None,
        options: ViewportOptions | dict[str, Any] | None = None,
    ) -> ViewportState | None:
        """Frame the active node, plus its direct neighbours when asked.

        Returns None when the id matches no node; the caller keeps its current
        viewport.
        """
        opts = self._options(options)
        if active_id is None:
            self._record("no active task")
            return None
        key = str(active_id)
        active = next((node for node in nodes if key in (node.id, node.task_id)), None)
        if active is None:
            self._record(f"active task {key!r} has no node")
            return None

        targets = [active]
        if opts.include_related_tasks:
            related = set(active.dependencies)
            for node in nodes:
                if node.id != active.id and active.id in node.dependencies:
                    related.add(node.id)
            targets.extend(node for node in nodes if node.id in related and node.id != active.id)

        bounds = _bounds(targets)
        if bounds is None:
            return current or ViewportState()
        return self._frame(bounds, opts, node_margin=True)

    def calculate_fit_viewport(
        self,
        tasks: Iterable[Task | str],
        nodes: list[PhysicsNode],
        options: ViewportOptions | dict[str, Any] | None = None,
    ) -> ViewportState:
        opts = self._options(options)
        wanted = {task.id if isinstance(task, Task) else str(task) for task in tasks}
        chosen = [node for node in nodes if node.task_id in wanted or node.id in wanted]
        bounds = _bounds(chosen)
        if bounds is None:
            return ViewportState()
        return self._frame(bounds, opts, node_margin=False)

    def should_animate_transition(self, start: ViewportState, end: ViewportState) -> bool:
        return should_animate_transition(start, end)


@dataclass
class Transition:
    start: ViewportState
    target: ViewportState
    duration_ms: float
    easing: str
    started_ms: float
    frames: int = 0
    finished: bool = False
    cancelled: bool = False
    handle: int | None = field(default=None, repr=False)


class CameraController:
    """Animates the attached viewport; at most one transition at a time."""

    def __init__(
        self,
        scheduler: FrameScheduler,
        adapter: ViewportAdapter | None = None,
        *,
        min_zoom: float = VIEWPORT_DEFAULT_MIN_ZOOM,
        max_zoom: float = VIEWPORT_DEFAULT_MAX_ZOOM,
    ) -> None:
        self._lock = threading.RLock()
        self._scheduler = scheduler
        self._adapter = adapter
        self.min_zoom = float(min_zoom)
        self.max_zoom = float(max_zoom)
        self._active: Transition | None = None
        self.diagnostic_events: deque[LayoutError] = deque(maxlen=DIAGNOSTIC_EVENT_LIMIT)

    def attach(self, adapter: ViewportAdapter | None) -> None:
        with self._lock:
            self._cancel_locked()
            self._adapter = adapter

    @property
    def is_transitioning(self) -> bool:
        with self._lock:
            return self._active is not None

    @property
    def active_transition(self) -> Transition | None:
        with self._lock:
            return self._active

    def current_viewport(self) -> ViewportState | None:
        with self._lock:
            if self._adapter is None:
                return None
            return self._adapter.get_viewport()

    def transition_to_viewport(
        self,
        target: ViewportState,
        duration_ms: float = VIEWPORT_DEFAULT_DURATION_MS,
        easing: str = "ease-out",
    ) -> Transition | None:
        """Start animating toward ``target``, replacing any running transition."""
        with self._lock:
            self._cancel_locked()
            if self._adapter is None:
                error = ViewportUnavailableError("no viewport adapter attached")
                self.diagnostic_events.append(error)
                _LOGGER.debug("camera transition skipped: %s", error)
                return None
            if easing not in EASING_NAMES:
                easing = "linear"
            goal = target.clamped(self.min_zoom, self.max_zoom)
            start = self._adapter.get_viewport().clamped(self.min_zoom, self.max_zoom)
            transition = Transition(
                start=start,
                target=goal,
                duration_ms=max(0.0, _safe_float(duration_ms, 0.0)),
                easing=easing,
                started_ms=self._scheduler.now_ms(),
            )
            if transition.duration_ms <= 0.0:
                self._adapter.set_viewport(goal)
                transition.finished = True
                return transition
            self._active = transition
            self._request(transition)
            return transition

    def follow(
        self,
        target: ViewportState,
        duration_ms: float = VIEWPORT_DEFAULT_DURATION_MS,
        easing: str = "ease-out",
    ) -> Transition | None:
        """Animate only when the jump is large enough, else snap."""
        current = self.current_viewport()
        if current is not None and not should_animate_transition(current, target):
            return self.transition_to_viewport(target, 0.0, easing)
        return self.transition_to_viewport(target, duration_ms, easing)

    def cancel_transition(self) -> bool:
        with self._lock:
            return self._cancel_locked()

    def _cancel_locked(self) -> bool:
        active = self._active
        if active is None:
            return False
        active.cancelled = True
        if active.handle is not None:
            self._scheduler.cancel_frame(active.handle)
            active.handle = None
        self._active = None
        _LOGGER.debug("camera transition cancelled after %d frames", active.frames)
        return True

    def _request(self, transition: Transition) -> None:
        transition.handle = self._scheduler.request_frame(
            lambda now_ms: self._on_frame(transition, now_ms)
        )

    def _on_frame(self, transition: Transition, now_ms: float) -> None:
        with self._lock:
            # A replaced or cancelled transition must not write again.
            if transition is not self._active or self._adapter is None:
                return
            transition.handle = None
            progress = _clamp01((now_ms - transition.started_ms) / transition.duration_ms)
            eased = ease(transition.easing, progress)
            if progress >= 1.0:
                self._adapter.set_viewport(transition.target)
            else:
                self._adapter.set_viewport(
                    interpolate(transition.start, transition.target, eased)
                )
            transition.frames += 1
            if progress >= 1.0:
                transition.finished = True
                self._active = None
                return
            self._request(transition)

    def dispose(self) -> None:
        with self._lock:
            self._cancel_locked()
            self._adapter = None
