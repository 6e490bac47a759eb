"""Activity monitor: sampling thread around the hysteresis engine.

Usage:

    monitor = ActivityMonitor(source)
    monitor.set_thresholds(0.70, 0.30)
    monitor.set_frequency(10)
    monitor.set_callback(on_activity)   # on_activity(True) -> performance mode
    if monitor.start():
        ...
        monitor.stop()                  # returns once the thread has exited

Configuration setters only take effect while stopped. start() and stop() are
not safe to call concurrently from several threads; callers serialize them.
The callback runs on the sampling thread, one invocation at a time.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from greenmode.hysteresis import (
    MINIMUM_STATE_CHANGE_INTERVAL,
    ActivityState,
    HysteresisEngine,
    Thresholds,
)
from greenmode.metrics import MetricsSource, default_metrics_source

log = structlog.get_logger()

ActivityCallback = Callable[[bool], None]


@dataclass(frozen=True)
class Sample:
    """A single load reading."""

    raw_load: float
    timestamp: float


class ActivityMonitor:
    """Samples system load and reports activity changes through a callback."""

    def __init__(
        self,
        source: MetricsSource | None = None,
        *,
        min_interval: float = MINIMUM_STATE_CHANGE_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source if source is not None else default_metrics_source()
        self._clock = clock

        # Core count is assumed stable for the process lifetime
        self._core_count = max(1, self._source.core_count())

        self._thresholds: Thresholds | None = None
        self._frequency: float | None = None
        self._callback: ActivityCallback | None = None

        self._engine = HysteresisEngine(
            Thresholds(enter_performance=0.0, enter_power_save=0.0),
            self._core_count,
            min_interval=min_interval,
        )
        # Plain bool: single attribute store, safe to read from any thread
        self._active = False
        self._reported_state: ActivityState | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

        log.info("monitor_created", cores=self._core_count)

    # ─────────────────────────────────────────────────────────────────────
    # Configuration
    # ─────────────────────────────────────────────────────────────────────

    @property
    def core_count(self) -> int:
        return self._core_count

    @property
    def thresholds(self) -> Thresholds | None:
        return self._thresholds

    @property
    def frequency(self) -> float | None:
        return self._frequency

    @property
    def state(self) -> ActivityState:
        return self._engine.state

    @property
    def last_transition_time(self) -> float | None:
        return self._engine.last_transition_time

    def set_thresholds(self, enter_performance: float, enter_power_save: float) -> None:
        """Set hysteresis thresholds (fractions of total core capacity)."""
        if self.is_running():
            log.warning("config_ignored_while_running", setting="thresholds")
            return
        self._thresholds = Thresholds(enter_performance, enter_power_save)
        self._engine.thresholds = self._thresholds
        performance, power_save = self._thresholds.scaled(self._core_count)
        log.info(
            "thresholds_set",
            enter_performance=enter_performance,
            enter_power_save=enter_power_save,
            absolute_performance=round(performance, 2),
            absolute_power_save=round(power_save, 2),
            cores=self._core_count,
        )

    def set_frequency(self, seconds: float) -> None:
        """Set seconds between samples."""
        if self.is_running():
            log.warning("config_ignored_while_running", setting="frequency")
            return
        self._frequency = seconds
        log.info("frequency_set", seconds=seconds)

    def set_callback(self, callback: ActivityCallback | None) -> None:
        """Set the activity callback; True means performance mode."""
        if self.is_running():
            log.warning("config_ignored_while_running", setting="callback")
            return
        self._callback = callback

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def is_active(self) -> bool:
        """Last computed activity state."""
        return self._active

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Evaluate load immediately, report it, then start sampling.

        Returns False without side effects when misconfigured or when the
        metrics source is unavailable. Returns True if already running. If
        the callback calls stop() while reporting the initial state, no
        sampling thread is started.
        """
        if self.is_running():
            return True

        if self._frequency is None or self._frequency <= 0:
            log.error("monitor_start_failed", reason="frequency not set", frequency=self._frequency)
            return False
        if self._thresholds is None:
            log.error("monitor_start_failed", reason="thresholds not set")
            return False
        if not self._thresholds.is_ordered:
            log.error(
                "monitor_start_failed",
                reason="power save threshold above performance threshold",
                enter_performance=self._thresholds.enter_performance,
                enter_power_save=self._thresholds.enter_power_save,
            )
            return False
        if not self._source.is_available():
            log.error("monitor_start_failed", reason="metrics source unavailable")
            return False

        # Cleared before the initial callback so a stop() from it sticks
        self._stop_event.clear()

        # Initial evaluation runs now and skips the minimum interval
        sample = self._read_sample()
        self._engine.evaluate(sample.raw_load, sample.timestamp, initial=True)
        state = self._engine.state
        self._active = state.is_active
        log.info(
            "initial_state",
            state=state.value,
            load=round(sample.raw_load, 2),
            load_pct=self._load_pct(sample.raw_load),
        )
        self._reported_state = state
        self._notify(state)

        if self._stop_event.is_set():
            log.info("monitor_stopped", during="initial_callback")
            return True

        self._thread = threading.Thread(
            target=self._run, args=(self._frequency,), name="ActivityMonitor", daemon=True
        )
        self._thread.start()
        log.info("monitor_started", frequency=self._frequency, cores=self._core_count)
        return True

    def stop(self) -> None:
        """Stop sampling; blocks until the sampling thread has exited."""
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return

        if thread is threading.current_thread():
            # Called from the callback; the loop exits once the callback returns
            return
        thread.join()
        self._thread = None
        log.info("monitor_stopped")

    def __enter__(self) -> "ActivityMonitor":
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    # ─────────────────────────────────────────────────────────────────────
    # Sampling loop
    # ─────────────────────────────────────────────────────────────────────

    def _run(self, frequency: float) -> None:
        while not self._stop_event.wait(frequency):
            try:
                self._tick()
            except Exception as e:
                log.exception("tick_failed", error=str(e))

    def _tick(self) -> None:
        sample = self._read_sample()
        performance, power_save = self._engine.thresholds.scaled(self._core_count)
        log.debug(
            "monitor_sample",
            load=round(sample.raw_load, 2),
            load_pct=self._load_pct(sample.raw_load),
            performance_threshold=round(performance, 2),
            power_save_threshold=round(power_save, 2),
            state=self._engine.state.value,
        )

        transition = self._engine.evaluate(sample.raw_load, sample.timestamp)
        state = self._engine.state
        self._active = state.is_active

        if state is self._reported_state:
            return

        log.info(
            "activity_transition",
            transition=transition.value,
            load=round(sample.raw_load, 2),
            load_pct=self._load_pct(sample.raw_load),
            mode="performance" if state.is_active else "powersave",
        )
        self._reported_state = state
        self._notify(state)

    def _read_sample(self) -> Sample:
        now = self._clock()
        load = self._source.sample()
        if not self._source.is_available():
            log.warning("metrics_unavailable", substitute=0.0)
            load = 0.0
        return Sample(raw_load=max(0.0, load), timestamp=now)

    def _notify(self, state: ActivityState) -> None:
        if self._callback is None:
            return
        try:
            self._callback(state.is_active)
        except Exception as e:
            log.exception("activity_callback_failed", state=state.value, error=str(e))

    def _load_pct(self, load: float) -> float:
        """Average per-core utilisation as a percentage."""
        return round(load / self._core_count * 100, 1)
