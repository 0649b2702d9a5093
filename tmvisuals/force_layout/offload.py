from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor
from typing import Any

from .constants import WORKER_OFFLOAD_MIN_NODES
from .forces import charge_deltas

_LOGGER = logging.getLogger(__name__)


class ForceOffloader:
    """Runs the Barnes-Hut charge pass in an executor for large graphs.

    The simulation still integrates exactly once per tick: :meth:`charge`
    blocks on the future before returning. ``processes=True`` moves the work
    to a separate interpreter, which is what actually frees the host thread
    for CPU-bound passes; the default thread pool keeps startup cheap.
    """

    def __init__(
        self,
        executor: Executor | None = None,
        *,
        processes: bool = False,
        min_nodes: int = WORKER_OFFLOAD_MIN_NODES,
    ) -> None:
        self._lock = threading.Lock()
        self._executor = executor
        self._owns_executor = executor is None
        self._processes = bool(processes)
        self.min_nodes = max(1, int(min_nodes))
        self.jobs_submitted = 0

    def should_offload(self, node_count: int, enabled: bool) -> bool:
        return bool(enabled) and node_count > self.min_nodes

    def _ensure_executor(self) -> Executor:
        with self._lock:
            if self._executor is None:
                self._owns_executor = True
                if self._processes:
                    self._executor = ProcessPoolExecutor(max_workers=1)
                else:
                    self._executor = ThreadPoolExecutor(
                        max_workers=1, thread_name_prefix="tmvisuals-charge"
                    )
                _LOGGER.debug(
                    "worker offload enabled (processes=%s, min_nodes=%d)",
                    self._processes,
                    self.min_nodes,
                )
            return self._executor

    def charge(
        self,
        points: list[dict[str, Any]],
        *,
        strength: float,
        alpha: float,
        theta: float,
        max_items: int,
        max_depth: int,
    ) -> list[tuple[float, float]]:
        executor = self._ensure_executor()
        future = executor.submit(
            charge_deltas,
            points,
            strength=strength,
            alpha=alpha,
            theta=theta,
            max_items=max_items,
            max_depth=max_depth,
        )
        self.jobs_submitted += 1
        return future.result()

    @property
    def active(self) -> bool:
        return self._executor is not None

    def shutdown(self) -> None:
        with self._lock:
            executor = self._executor
            self._executor = None
        if executor is not None and self._owns_executor:
            executor.shutdown(wait=True)
