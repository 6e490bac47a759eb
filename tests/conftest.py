"""Shared test fixtures for greenmode."""

import time
from contextlib import ExitStack
from pathlib import Path
from typing import Iterator
from unittest.mock import patch

import pytest

from greenmode.config import Config


class FakeMetricsSource:
    """Controllable metrics source.

    Set `load` and `available` from the test; reads are counted.
    """

    def __init__(self, load: float = 0.0, cores: int = 1, available: bool = True) -> None:
        self.load = load
        self.cores = cores
        self.available = available
        self.sample_calls = 0
        self.core_count_calls = 0

    def sample(self) -> float:
        self.sample_calls += 1
        return self.load if self.available else 0.0

    def core_count(self) -> int:
        self.core_count_calls += 1
        return self.cores

    def is_available(self) -> bool:
        return self.available


class FakeClock:
    """Monotonic clock the test advances by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_until(condition, timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll until condition() is true, or raise after timeout."""
    deadline = time.monotonic() + timeout
    while not condition():
        if time.monotonic() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        time.sleep(interval)


@pytest.fixture
def source() -> FakeMetricsSource:
    return FakeMetricsSource()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def patched_config_paths(tmp_path: Path) -> Iterator[Path]:
    """Patch Config path properties to live under tmp_path."""
    with ExitStack() as stack:
        # fmt: off
        stack.enter_context(patch.object(
            Config, "state_dir",
            new_callable=lambda: property(lambda self: tmp_path / "state")
        ))
        stack.enter_context(patch.object(
            Config, "log_path",
            new_callable=lambda: property(lambda self: tmp_path / "state" / "daemon.log")
        ))
        stack.enter_context(patch.object(
            Config, "pid_path",
            new_callable=lambda: property(lambda self: tmp_path / "run" / "daemon.pid")
        ))
        stack.enter_context(patch.object(
            Config, "config_dir",
            new_callable=lambda: property(lambda self: tmp_path / "config")
        ))
        # fmt: on
        yield tmp_path
