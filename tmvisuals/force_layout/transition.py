from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .config import FieldChange
from .constants import EASING_NAMES, LAYOUT_TRANSITION_DURATION_MS, _clamp01, _safe_float
from .nodes import PhysicsNode
from .scheduling import FrameScheduler
from .simulation import ForceSimulation
from .viewport import ease

_LOGGER = logging.getLogger(__name__)


@dataclass
class LayoutTransition:
    origin: dict[str, tuple[float, float]]
    duration_ms: float
    easing: str
    started_ms: float
    changes: tuple[FieldChange, ...] = ()
    eased: float = 0.0
    frames: int = 0
    finished: bool = False
    cancelled: bool = False
    handle: int | None = field(default=None, repr=False)

    def blend(self, snapshot: list[PhysicsNode]) -> list[PhysicsNode]:
        """Move each snapshot node from its captured position toward its live one."""
        eased = self.eased
        if eased >= 1.0:
            return snapshot
        for node in snapshot:
            start = self.origin.get(node.id)
            if start is None:
                continue
            node.x = start[0] + (node.x - start[0]) * eased
            node.y = start[1] + (node.y - start[1]) * eased
        return snapshot


class LayoutTransitioner:
    """Eases the layout hosts see from a captured arrangement to the live one.

    The simulation keeps integrating underneath; only the snapshots handed to
    tick callbacks are blended. While the simulation is running its own ticks
    carry the blended positions. Once it is idle, cooled or stopped, the
    transition frames fire the tick callbacks themselves, so a host gets one
    stream of positions either way.
    """

    def __init__(self, simulation: ForceSimulation, scheduler: FrameScheduler) -> None:
        self._lock = threading.RLock()
        self._simulation = simulation
        self._scheduler = scheduler
        self._active: LayoutTransition | None = None

    @property
    def is_transitioning(self) -> bool:
        with self._lock:
            return self._active is not None

    @property
    def active_transition(self) -> LayoutTransition | None:
        with self._lock:
            return self._active

    def begin(
        self,
        origin: dict[str, tuple[float, float]],
        duration_ms: float = LAYOUT_TRANSITION_DURATION_MS,
        easing: str = "ease-out",
        changes: tuple[FieldChange, ...] = (),
    ) -> LayoutTransition:
        """Start a transition, replacing any that is still running."""
        with self._lock:
            self._cancel_locked()
            if easing not in EASING_NAMES:
                easing = "linear"
            transition = LayoutTransition(
                origin=dict(origin),
                duration_ms=max(0.0, _safe_float(duration_ms, 0.0)),
                easing=easing,
                started_ms=self._scheduler.now_ms(),
                changes=tuple(changes),
            )
            if transition.duration_ms <= 0.0:
                transition.eased = 1.0
                transition.finished = True
                return transition
            self._active = transition
            self._simulation.set_snapshot_filter(transition.blend)
            self._request(transition)
            return transition

    def cancel(self) -> bool:
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
        self._simulation.set_snapshot_filter(None)
        _LOGGER.debug("layout transition cancelled after %d frames", active.frames)
        return True

    def _request(self, transition: LayoutTransition) -> None:
        transition.handle = self._scheduler.request_frame(
            lambda now_ms: self._on_frame(transition, now_ms)
        )

    def _on_frame(self, transition: LayoutTransition, now_ms: float) -> None:
        with self._lock:
            if transition is not self._active:
                return
            transition.handle = None
            progress = _clamp01((now_ms - transition.started_ms) / transition.duration_ms)
            transition.eased = 1.0 if progress >= 1.0 else ease(transition.easing, progress)
            transition.frames += 1
            emit = self._simulation.status != "running"
            snapshot = transition.blend(self._simulation.nodes()) if emit else []
            if progress >= 1.0:
                transition.finished = True
                self._active = None
                self._simulation.set_snapshot_filter(None)
            else:
                self._request(transition)
        if emit:
            self._simulation.emit_tick(snapshot)

    def dispose(self) -> None:
        self.cancel()
