"""Dual-threshold activity state machine.

IDLE   -> ACTIVE: load >  enter_performance * cores
ACTIVE -> IDLE:   load <  enter_power_save * cores

Loads between the two scaled thresholds (boundaries included) never change
state. Applied transitions are rate limited: after one, further transitions
are dropped until MINIMUM_STATE_CHANGE_INTERVAL has passed. Dropped
transitions are not queued.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum

import structlog

log = structlog.get_logger()

# Seconds that must pass between two applied state changes
MINIMUM_STATE_CHANGE_INTERVAL = 60.0


class ActivityState(Enum):
    """Binary system activity state."""

    IDLE = "idle"
    ACTIVE = "active"

    @property
    def is_active(self) -> bool:
        return self is ActivityState.ACTIVE


class Transition(Enum):
    """Outcome of a single engine evaluation."""

    NONE = "none"
    ENTERED_ACTIVE = "entered_active"
    ENTERED_IDLE = "entered_idle"
    SUPPRESSED = "suppressed"


@dataclass(frozen=True)
class Thresholds:
    """Hysteresis thresholds as fractions of total core capacity."""

    enter_performance: float
    enter_power_save: float

    @property
    def is_ordered(self) -> bool:
        """Power-save entry must not sit above performance entry."""
        return self.enter_power_save <= self.enter_performance

    def scaled(self, core_count: int) -> tuple[float, float]:
        """Return (performance, power_save) thresholds in absolute load units."""
        cores = max(1, core_count)
        return self.enter_performance * cores, self.enter_power_save * cores


class HysteresisEngine:
    """Decides activity state transitions from load samples."""

    def __init__(
        self,
        thresholds: Thresholds,
        core_count: int,
        min_interval: float = MINIMUM_STATE_CHANGE_INTERVAL,
    ) -> None:
        self.thresholds = thresholds
        self.core_count = max(1, core_count)
        self.min_interval = min_interval

        self._state = ActivityState.IDLE
        self._last_transition_time: float | None = None

    @property
    def state(self) -> ActivityState:
        return self._state

    @property
    def last_transition_time(self) -> float | None:
        """Monotonic time of the last applied transition, None if never."""
        return self._last_transition_time

    def target_state(self, load: float) -> ActivityState:
        """State the thresholds call for, ignoring the minimum interval."""
        performance, power_save = self.thresholds.scaled(self.core_count)
        if self._state is ActivityState.IDLE and load > performance:
            return ActivityState.ACTIVE
        if self._state is ActivityState.ACTIVE and load < power_save:
            return ActivityState.IDLE
        return self._state

    def evaluate(
        self,
        load: float,
        now: float | None = None,
        *,
        initial: bool = False,
    ) -> Transition:
        """Feed one load sample.

        Args:
            load: Absolute load (same units as a load average)
            now: Monotonic timestamp of the sample, defaults to time.monotonic()
            initial: First evaluation after start; exempt from the minimum interval

        Returns:
            Transition describing what happened
        """
        if now is None:
            now = time.monotonic()

        target = self.target_state(load)
        if target is self._state:
            return Transition.NONE

        if not initial and self._last_transition_time is not None:
            elapsed = now - self._last_transition_time
            if elapsed < self.min_interval:
                log.info(
                    "transition_suppressed",
                    current=self._state.value,
                    wanted=target.value,
                    load=round(load, 2),
                    elapsed=round(elapsed, 1),
                    min_interval=self.min_interval,
                )
                return Transition.SUPPRESSED

        self._state = target
        self._last_transition_time = now
        return Transition.ENTERED_ACTIVE if target.is_active else Transition.ENTERED_IDLE
