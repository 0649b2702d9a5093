from __future__ import annotations

import itertools
import logging
import threading
import time
from typing import Callable, Protocol

FrameCallback = Callable[[float], None]

_LOGGER = logging.getLogger(__name__)


class FrameScheduler(Protocol):
    """Per-frame signal source: the render loop of whatever hosts the layout."""

    def now_ms(self) -> float: ...

    def request_frame(self, callback: FrameCallback) -> int: ...

    def cancel_frame(self, handle: int) -> None: ...


class ManualFrameScheduler:
    """Headless scheduler. Frames only run when the caller advances the clock.

    Callbacks requested while a frame is running wait for the next frame, the
    same way a browser animation frame behaves.
    """

    def __init__(self, start_ms: float = 0.0, frame_ms: float = 1000.0 / 60.0) -> None:
        self._now = float(start_ms)
        self.frame_ms = float(frame_ms)
        self._handles = itertools.count(1)
        self._pending: dict[int, FrameCallback] = {}
        self.frames_run = 0

    def now_ms(self) -> float:
        return self._now

    def request_frame(self, callback: FrameCallback) -> int:
        handle = next(self._handles)
        self._pending[handle] = callback
        return handle

    def cancel_frame(self, handle: int) -> None:
        self._pending.pop(handle, None)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def advance(self, ms: float | None = None) -> int:
        """Move the clock forward one frame and run what was pending."""
        self._now += self.frame_ms if ms is None else float(ms)
        due = list(self._pending.items())
        self._pending.clear()
        for _handle, callback in due:
            callback(self._now)
        self.frames_run += 1
        return len(due)

    def run_frames(self, count: int, ms: float | None = None) -> int:
        ran = 0
        for _ in range(max(0, int(count))):
            if not self._pending:
                break
            ran += self.advance(ms)
        return ran

    def run_until_idle(self, *, max_frames: int = 10_000, ms: float | None = None) -> int:
        frames = 0
        while self._pending and frames < max_frames:
            self.advance(ms)
            frames += 1
        return frames


class ThreadedFrameScheduler:
    """Background frame pump at a fixed rate, for hosts without a render loop."""

    def __init__(self, fps: float = 60.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._interval = 1.0 / max(1.0, float(fps))
        self._clock = clock
        self._lock = threading.Lock()
        self._handles = itertools.count(1)
        self._pending: dict[int, FrameCallback] = {}
        self._wake = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def now_ms(self) -> float:
        return self._clock() * 1000.0

    def request_frame(self, callback: FrameCallback) -> int:
        with self._lock:
            handle = next(self._handles)
            self._pending[handle] = callback
            if self._thread is None or not self._thread.is_alive():
                self._stop.clear()
                self._thread = threading.Thread(
                    target=self._run,
                    name="tmvisuals-frame-pump",
                    daemon=True,
                )
                self._thread.start()
        self._wake.set()
        return handle

    def cancel_frame(self, handle: int) -> None:
        with self._lock:
            self._pending.pop(handle, None)

    def close(self, timeout: float = 1.0) -> None:
        self._stop.set()
        self._wake.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        with self._lock:
            self._pending.clear()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            with self._lock:
                due = list(self._pending.values())
                self._pending.clear()
            if not due:
                self._wake.wait(self._interval)
                self._wake.clear()
                continue
            started = self._clock()
            for callback in due:
                try:
                    callback(self.now_ms())
                except Exception:
                    # The pump thread has no caller to hand the error to.
                    _LOGGER.exception("frame callback failed")
            elapsed = self._clock() - started
            remaining = self._interval - elapsed
            if remaining > 0.0:
                self._stop.wait(remaining)
