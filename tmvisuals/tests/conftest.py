from __future__ import annotations

import pytest

from tmvisuals.force_layout.config import ConfigModel
from tmvisuals.force_layout.scheduling import ManualFrameScheduler
from tmvisuals.force_layout.viewport import ViewportState


class FakeSampler:
    def __init__(self, cpu: float = 0.0, memory: float = 10.0) -> None:
        self.cpu = cpu
        self.memory = memory

    def cpu_percent(self) -> float:
        return self.cpu

    def memory_mb(self) -> float:
        return self.memory


class FakeAdapter:
    def __init__(self, x: float = 0.0, y: float = 0.0, zoom: float = 1.0) -> None:
        self.viewport = ViewportState(x, y, zoom)
        self.writes: list[ViewportState] = []

    def get_viewport(self) -> ViewportState:
        return self.viewport

    def set_viewport(self, viewport: ViewportState) -> None:
        self.viewport = viewport
        self.writes.append(viewport)


@pytest.fixture
def sampler() -> FakeSampler:
    return FakeSampler()


@pytest.fixture
def scheduler() -> ManualFrameScheduler:
    return ManualFrameScheduler()


@pytest.fixture
def config_model() -> ConfigModel:
    return ConfigModel()


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def make_sampler() -> type[FakeSampler]:
    return FakeSampler
