"""System load sources consumed by the activity monitor.

A metrics source reports a scalar load ("work demanded", comparable to a
1-minute load average) and the number of logical cores. The monitor divides
one by the other to get per-core utilisation.

Two implementations are provided:

- LoadAverageSource: kernel load average via os.getloadavg() (Linux, macOS, BSD)
- CpuTimeSource: load-average proxy built from CPU-time deltas via psutil,
  for hosts without a kernel load average (Windows)

Pick one with default_metrics_source() or inject your own.
"""

from __future__ import annotations

import math
import os
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

import psutil
import structlog

log = structlog.get_logger()

# Window of the synthesized load average, matching the kernel's 1-minute figure
LOAD_WINDOW_SECONDS = 60.0

# Seconds the first CPU-time reading spans, so the seed is not measured over
# the few milliseconds since construction
SEED_INTERVAL = 0.25


@runtime_checkable
class MetricsSource(Protocol):
    """Supplier of load and core-count readings.

    sample() must not raise when readings are unavailable: it returns 0.0
    and reports the condition through is_available().
    """

    def sample(self) -> float: ...

    def core_count(self) -> int: ...

    def is_available(self) -> bool: ...


def get_core_count() -> int:
    """Get number of logical CPU cores (never less than 1)."""
    return os.cpu_count() or 1


class LoadAverageSource:
    """1-minute kernel load average."""

    def __init__(self) -> None:
        self._core_count = get_core_count()
        self._available = hasattr(os, "getloadavg")
        if self._available:
            # Sample once so is_available() is meaningful before the first reading
            self.sample()

    def sample(self) -> float:
        if not hasattr(os, "getloadavg"):
            self._available = False
            return 0.0
        try:
            load_1min = os.getloadavg()[0]
        except OSError as e:
            if self._available:
                log.error("loadavg_read_failed", error=str(e))
            self._available = False
            return 0.0
        self._available = True
        return max(0.0, load_1min)

    def core_count(self) -> int:
        return self._core_count

    def is_available(self) -> bool:
        return self._available


class CpuTimeSource:
    """Load-average proxy derived from CPU-time deltas.

    Each sample converts busy CPU percentage into "busy cores" and folds it
    into an exponentially damped average over LOAD_WINDOW_SECONDS, the same
    recurrence the kernel uses for its load average:

        load = load * e + busy_cores * (1 - e),   e = exp(-dt / window)

    The first reading spans SEED_INTERVAL seconds and seeds the average
    directly.
    """

    def __init__(
        self,
        window: float = LOAD_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.window = window
        self._clock = clock
        self._core_count = psutil.cpu_count(logical=True) or 1
        self._load: float | None = None
        self._last_time: float | None = None
        self._available = True

        # Sample once so is_available() is meaningful before the first reading
        try:
            psutil.cpu_percent(interval=None)
        except (OSError, psutil.Error) as e:
            log.error("cpu_times_unavailable", error=str(e))
            self._available = False

    def sample(self) -> float:
        try:
            interval = SEED_INTERVAL if self._load is None else None
            busy_pct = psutil.cpu_percent(interval=interval)
        except (OSError, psutil.Error) as e:
            if self._available:
                log.error("cpu_times_read_failed", error=str(e))
            self._available = False
            return 0.0

        self._available = True
        busy_cores = max(0.0, busy_pct) / 100.0 * self._core_count
        now = self._clock()

        if self._load is None or self._last_time is None:
            self._load = busy_cores
        else:
            dt = max(0.0, now - self._last_time)
            decay = math.exp(-dt / self.window) if self.window > 0 else 0.0
            self._load = self._load * decay + busy_cores * (1.0 - decay)

        self._last_time = now
        return self._load

    def core_count(self) -> int:
        return self._core_count

    def is_available(self) -> bool:
        return self._available


def default_metrics_source() -> MetricsSource:
    """Return the metrics source suited to this host."""
    if hasattr(os, "getloadavg"):
        return LoadAverageSource()
    return CpuTimeSource()
