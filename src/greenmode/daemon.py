"""Foreground daemon wiring the activity monitor to a power backend."""

import asyncio
import os
import signal
from dataclasses import dataclass
from datetime import datetime

import psutil
import structlog

from greenmode.config import Config
from greenmode.logging import configure as configure_logging
from greenmode.metrics import MetricsSource
from greenmode.monitor import ActivityMonitor
from greenmode.power import PowerManager, create_power_manager

log = structlog.get_logger()

# Seconds between heartbeat log lines
HEARTBEAT_INTERVAL = 3600


class DaemonError(RuntimeError):
    """Daemon could not start."""


@dataclass
class DaemonState:
    """Runtime state of the daemon."""

    running: bool = False
    active: bool = False
    transition_count: int = 0
    last_transition: datetime | None = None

    def record(self, active: bool) -> None:
        """Update state after an activity callback."""
        if self.last_transition is not None and active != self.active:
            self.transition_count += 1
        self.active = active
        self.last_transition = datetime.now()


class Daemon:
    """Runs the activity monitor until a shutdown signal arrives."""

    def __init__(
        self,
        config: Config,
        power_manager: PowerManager | None = None,
        source: MetricsSource | None = None,
    ):
        self.config = config
        self.state = DaemonState()

        self.power_manager = power_manager or create_power_manager(
            config.power.backend,
            use_sudo=config.power.use_sudo,
            timeout=config.power.command_timeout,
        )
        self.monitor = ActivityMonitor(source)

        self._shutdown_event = asyncio.Event()
        self._heartbeat_task: asyncio.Task | None = None

    def _on_activity(self, active: bool) -> None:
        """Activity callback, runs on the monitor's sampling thread."""
        self.state.record(active)
        assert self.power_manager is not None
        if active:
            ok = self.power_manager.set_performance_mode()
        else:
            ok = self.power_manager.set_power_saving_mode()
        if not ok:
            log.warning("power_mode_not_applied", active=active)

    async def start(self) -> None:
        """Start monitoring and wait for shutdown.

        Raises:
            DaemonError: If another instance is running, no power backend is
                available, or the monitor refuses to start.
        """
        from importlib.metadata import PackageNotFoundError, version

        try:
            pkg_version = version("greenmode")
        except PackageNotFoundError:
            pkg_version = "unknown"
        log.info("daemon_starting", version=pkg_version)

        monitoring = self.config.monitoring
        log.info(
            "daemon_config",
            frequency=monitoring.frequency,
            high_performance_threshold=monitoring.high_performance_threshold,
            power_save_threshold=monitoring.power_save_threshold,
            backend=self.config.power.backend,
        )
        for note in self.config.advisories():
            log.warning("config_advisory", note=note)

        if self._check_already_running():
            log.error("daemon_already_running")
            raise DaemonError("Daemon is already running")

        if self.power_manager is None or not self.power_manager.is_available():
            log.error("power_backend_unavailable", backend=self.config.power.backend)
            raise DaemonError(
                "Power management backend is not available on this system; "
                "install a supported backend or set power.backend"
            )
        log.info("power_backend_ready", backend=getattr(self.power_manager, "name", "custom"))

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, lambda s=sig: self._handle_signal(s))
            except NotImplementedError:
                # Windows event loops; Ctrl+C still ends asyncio.run()
                break

        self.monitor.set_thresholds(
            monitoring.high_performance_threshold, monitoring.power_save_threshold
        )
        self.monitor.set_frequency(monitoring.frequency)
        self.monitor.set_callback(self._on_activity)

        self._write_pid_file()

        # Initial evaluation and the first backend call happen inside start()
        started = await asyncio.to_thread(self.monitor.start)
        if not started:
            raise DaemonError("Failed to start activity monitor")

        self.state.running = True
        log.info("daemon_started", active=self.monitor.is_active())

        self._heartbeat_task = asyncio.create_task(self._heartbeat())
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the daemon gracefully."""
        log.info("daemon_stopping")
        self.state.running = False

        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

        # Blocks until the sampling thread has exited
        await asyncio.to_thread(self.monitor.stop)

        self._remove_pid_file()
        log.info("daemon_stopped", transitions=self.state.transition_count)

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    def _handle_signal(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        log.info("signal_received", signal=sig.name)
        self._shutdown_event.set()

    async def _heartbeat(self) -> None:
        """Log a periodic summary until shutdown."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=HEARTBEAT_INTERVAL)
                break
            except asyncio.TimeoutError:
                mode = None
                if self.power_manager is not None:
                    # Backends may shell out; keep the event loop free for signals
                    mode = await asyncio.to_thread(self.power_manager.current_mode)
                log.info(
                    "daemon_heartbeat",
                    active=self.monitor.is_active(),
                    transitions=self.state.transition_count,
                    mode=mode,
                )

    def _write_pid_file(self) -> None:
        """Write PID file."""
        self.config.pid_path.parent.mkdir(parents=True, exist_ok=True)
        self.config.pid_path.write_text(str(os.getpid()))
        log.debug("pid_file_written", path=str(self.config.pid_path))

    def _remove_pid_file(self) -> None:
        """Remove PID file if it is ours."""
        try:
            pid = int(self.config.pid_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return
        if pid == os.getpid():
            self.config.pid_path.unlink(missing_ok=True)
            log.debug("pid_file_removed")

    def _check_already_running(self) -> bool:
        """Check if another daemon owns the PID file.

        Verifies that the recorded process is actually greenmode, so a
        stale PID reused by an unrelated process after a reboot is ignored.
        """
        pid = read_pid(self.config)
        if pid is None or pid == os.getpid():
            return False

        try:
            proc = psutil.Process(pid)
            cmdline_str = " ".join(proc.cmdline()).lower()
        except psutil.NoSuchProcess:
            log.warning("pid_file_stale", reason="process not found", pid=pid)
            self.config.pid_path.unlink(missing_ok=True)
            return False
        except psutil.AccessDenied:
            # Can't inspect process - assume it's running to be safe
            log.warning("pid_check_access_denied", pid=pid)
            return True

        if "greenmode" in cmdline_str:
            log.info("daemon_already_running_verified", pid=pid)
            return True

        log.warning("pid_file_stale", reason="different process", pid=pid, actual_process=proc.name())
        self.config.pid_path.unlink(missing_ok=True)
        return False


def read_pid(config: Config) -> int | None:
    """Return the PID recorded in the PID file, or None."""
    try:
        return int(config.pid_path.read_text().strip())
    except FileNotFoundError:
        return None
    except ValueError:
        log.warning("pid_file_invalid", reason="not a number")
        config.pid_path.unlink(missing_ok=True)
        return None


async def run_daemon(config: Config | None = None, console: bool = True) -> None:
    """Run the daemon until shutdown.

    Args:
        config: Optional config, loads from file if not provided
        console: Mirror log events to stderr
    """
    if config is None:
        config = Config.load()

    configure_logging(config, console=console)

    daemon = Daemon(config)

    try:
        await daemon.start()
    except DaemonError:
        raise
    except Exception as e:
        log.exception("daemon_crashed", error=str(e))
        raise
    finally:
        await daemon.stop()
