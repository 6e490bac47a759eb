"""Power-mode backends driven by the activity callback.

Each backend switches the host between a performance mode and a power
saving mode by shelling out to the platform's power tool:

- TLPManager: `tlp ac` / `tlp bat` (Linux)
- PmsetManager: `pmset` sleep and Power Nap settings (macOS)
- PowerCfgManager: `powercfg /setactive <scheme>` (Windows)
- DryRunPowerManager: logs the switch, changes nothing

Switching is idempotent: asking for the mode already applied is a no-op.
Command backends may be called from the sampling thread and from the event
loop (status queries); a lock serializes commands and the cached mode.
"""

from __future__ import annotations

import re
import shutil
import subprocess
import sys
import threading
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol, runtime_checkable

import structlog

log = structlog.get_logger()

PERFORMANCE = "performance"
POWERSAVING = "powersaving"
UNKNOWN = "unknown"

# Built-in Windows power scheme GUIDs
HIGH_PERFORMANCE_SCHEME = "8c5e7fda-e8bf-4a96-9a85-a6e23a8c635c"
POWER_SAVER_SCHEME = "a1841308-3541-4fab-bc81-f71556f20b4a"

# pmset settings per mode: -c charger, -b battery, -a all sources
PMSET_PERFORMANCE = (
    ("pmset", "-c", "sleep", "0", "displaysleep", "15", "disksleep", "0", "powernap", "1"),
)
PMSET_POWERSAVING = (
    ("pmset", "-c", "sleep", "30", "displaysleep", "10", "disksleep", "10"),
    ("pmset", "-b", "sleep", "5", "displaysleep", "2", "disksleep", "5"),
    ("pmset", "-a", "powernap", "0"),
)

# Mode switch requests allowed per window, guarding against command storms
SWITCH_RATE_LIMIT = 5
SWITCH_RATE_WINDOW = 1.0


@runtime_checkable
class PowerManager(Protocol):
    """Backend that applies performance / power saving modes."""

    def set_performance_mode(self) -> bool: ...

    def set_power_saving_mode(self) -> bool: ...

    def current_mode(self) -> str: ...

    def is_available(self) -> bool: ...


class RateLimiter:
    """Sliding-window limit on how often an operation may run."""

    def __init__(
        self,
        max_requests: int = SWITCH_RATE_LIMIT,
        window: float = SWITCH_RATE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window = window
        self._clock = clock
        self._requests: deque[float] = deque()

    def allow(self) -> bool:
        """Record a request; False if the window is already full."""
        now = self._clock()
        while self._requests and now - self._requests[0] >= self.window:
            self._requests.popleft()
        if len(self._requests) >= self.max_requests:
            return False
        self._requests.append(now)
        return True


class CommandPowerManager:
    """Shared command execution for shell-based backends."""

    name = "command"

    def __init__(
        self,
        use_sudo: bool = False,
        timeout: float = 30.0,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        self.use_sudo = use_sudo
        self.timeout = timeout
        self._mode = UNKNOWN
        self._lock = threading.Lock()
        self._rate_limiter = rate_limiter or RateLimiter()

    def current_mode(self) -> str:
        """Query the tool for the active mode, falling back to the last one applied."""
        with self._lock:
            mode = self._read_mode()
            if mode != UNKNOWN:
                self._mode = mode
            return self._mode

    def _read_mode(self) -> str:
        return UNKNOWN

    def _run(
        self, *args: str, sudo: bool | None = None
    ) -> subprocess.CompletedProcess[str] | None:
        """Run a backend command, returning None if it couldn't be run."""
        if sudo is None:
            sudo = self.use_sudo
        cmd = ["sudo", "-n", *args] if sudo else list(args)
        log.debug("power_command", backend=self.name, cmd=" ".join(cmd))
        try:
            return subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                stdin=subprocess.DEVNULL,
            )
        except FileNotFoundError:
            log.error("power_command_not_found", backend=self.name, cmd=cmd[0])
        except subprocess.TimeoutExpired:
            log.error("power_command_timeout", backend=self.name, timeout=self.timeout)
        except OSError as e:
            log.error("power_command_failed", backend=self.name, error=str(e))
        return None

    def _switch(self, mode: str, *commands: tuple[str, ...]) -> bool:
        """Run the commands that apply mode, stopping at the first failure."""
        with self._lock:
            if not self._rate_limiter.allow():
                log.warning(
                    "power_switch_rate_limited",
                    backend=self.name,
                    mode=mode,
                    max_requests=self._rate_limiter.max_requests,
                    window=self._rate_limiter.window,
                )
                return False
            if self._mode == mode:
                return True

            log.info("power_mode_switching", backend=self.name, mode=mode)
            outputs = []
            for args in commands:
                result = self._run(*args)
                if result is None or not self._succeeded(result):
                    output = _clean_output(result.stdout + result.stderr) if result else ""
                    log.error(
                        "power_mode_switch_failed",
                        backend=self.name,
                        mode=mode,
                        cmd=" ".join(args),
                        output=output,
                    )
                    return False
                outputs.append(_clean_output(result.stdout + result.stderr))

            self._mode = mode
            output = " | ".join(o for o in outputs if o)
            log.info("power_mode_switched", backend=self.name, mode=mode, output=output or None)
            return True

    def _succeeded(self, result: subprocess.CompletedProcess[str]) -> bool:
        return result.returncode == 0


class TLPManager(CommandPowerManager):
    """TLP backend: AC profile for performance, battery profile for power saving."""

    name = "tlp"

    def set_performance_mode(self) -> bool:
        return self._switch(PERFORMANCE, ("tlp", "ac"))

    def set_power_saving_mode(self) -> bool:
        return self._switch(POWERSAVING, ("tlp", "bat"))

    def is_available(self) -> bool:
        return shutil.which("tlp") is not None

    def _read_mode(self) -> str:
        result = self._run("tlp-stat", "-s")
        if result is None:
            return UNKNOWN
        return parse_tlp_mode(result.stdout)

    def _succeeded(self, result: subprocess.CompletedProcess[str]) -> bool:
        # tlp doesn't reliably set its exit status; errors show up in the output
        output = (result.stdout + result.stderr).lower()
        return result.returncode == 0 and "error" not in output


class PmsetManager(CommandPowerManager):
    """macOS backend: pmset sleep timers and Power Nap."""

    name = "pmset"

    def set_performance_mode(self) -> bool:
        return self._switch(PERFORMANCE, *PMSET_PERFORMANCE)

    def set_power_saving_mode(self) -> bool:
        return self._switch(POWERSAVING, *PMSET_POWERSAVING)

    def is_available(self) -> bool:
        return shutil.which("pmset") is not None

    def _read_mode(self) -> str:
        # Reading settings needs no privileges
        result = self._run("pmset", "-g", sudo=False)
        if result is None or result.returncode != 0:
            return UNKNOWN
        return parse_pmset_mode(result.stdout)


class PowerCfgManager(CommandPowerManager):
    """Windows power scheme backend."""

    name = "powercfg"

    def set_performance_mode(self) -> bool:
        return self._switch(PERFORMANCE, ("powercfg", "/setactive", HIGH_PERFORMANCE_SCHEME))

    def set_power_saving_mode(self) -> bool:
        return self._switch(POWERSAVING, ("powercfg", "/setactive", POWER_SAVER_SCHEME))

    def is_available(self) -> bool:
        return shutil.which("powercfg") is not None

    def _read_mode(self) -> str:
        result = self._run("powercfg", "/getactivescheme")
        if result is None or result.returncode != 0:
            return UNKNOWN
        output = result.stdout.lower()
        if HIGH_PERFORMANCE_SCHEME in output:
            return PERFORMANCE
        if POWER_SAVER_SCHEME in output:
            return POWERSAVING
        return UNKNOWN


class DryRunPowerManager:
    """Records mode switches without touching the system."""

    name = "dry-run"

    def __init__(self) -> None:
        self._mode = UNKNOWN
        self.switches: list[str] = []

    def set_performance_mode(self) -> bool:
        return self._switch(PERFORMANCE)

    def set_power_saving_mode(self) -> bool:
        return self._switch(POWERSAVING)

    def current_mode(self) -> str:
        return self._mode

    def is_available(self) -> bool:
        return True

    def _switch(self, mode: str) -> bool:
        if self._mode != mode:
            log.info("power_mode_switched", backend=self.name, mode=mode, dry_run=True)
            self._mode = mode
            self.switches.append(mode)
        return True


def parse_tlp_mode(output: str) -> str:
    """Extract the active mode from `tlp-stat -s` output."""
    match = re.search(r"^\s*Mode\s*=\s*([A-Za-z]+)", output, re.MULTILINE)
    if match:
        value = match.group(1).lower()
        if value == "ac":
            return PERFORMANCE
        if value in ("battery", "bat"):
            return POWERSAVING

    # Older TLP releases only report the default mode
    if "TLP_DEFAULT_MODE=AC" in output:
        return PERFORMANCE
    if "TLP_DEFAULT_MODE=BAT" in output:
        return POWERSAVING
    return UNKNOWN


def parse_pmset_mode(output: str) -> str:
    """Infer the mode from `pmset -g` output.

    Performance mode enables Power Nap and power saving disables it, so the
    powernap setting of the active power source identifies the mode.
    """
    match = re.search(r"^\s*powernap\s+(\d)", output, re.MULTILINE)
    if not match:
        return UNKNOWN
    return PERFORMANCE if match.group(1) == "1" else POWERSAVING


def _clean_output(output: str) -> str:
    """Collapse command output to a single log-friendly line."""
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    return " | ".join(lines)


def create_power_manager(
    backend: str = "auto",
    use_sudo: bool = False,
    timeout: float = 30.0,
) -> PowerManager | None:
    """Build the configured backend.

    "auto" prefers TLP, then pmset on macOS and powercfg on Windows. Returns
    None when no backend applies to this host.
    """
    if backend == "dry-run":
        return DryRunPowerManager()
    if backend == "tlp":
        return TLPManager(use_sudo=use_sudo, timeout=timeout)
    if backend == "pmset":
        return PmsetManager(use_sudo=use_sudo, timeout=timeout)
    if backend == "powercfg":
        return PowerCfgManager(timeout=timeout)
    if backend != "auto":
        raise ValueError(f"Unknown power backend: {backend!r}")

    tlp = TLPManager(use_sudo=use_sudo, timeout=timeout)
    if tlp.is_available():
        return tlp
    if sys.platform == "darwin":
        return PmsetManager(use_sudo=use_sudo, timeout=timeout)
    if sys.platform == "win32":
        return PowerCfgManager(timeout=timeout)
    return None
