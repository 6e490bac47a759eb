"""Tests for power-mode backends."""

import subprocess
import threading
from unittest.mock import patch

import pytest
from conftest import FakeClock

from greenmode.power import (
    HIGH_PERFORMANCE_SCHEME,
    PERFORMANCE,
    PMSET_PERFORMANCE,
    PMSET_POWERSAVING,
    POWER_SAVER_SCHEME,
    POWERSAVING,
    UNKNOWN,
    DryRunPowerManager,
    PmsetManager,
    PowerCfgManager,
    PowerManager,
    RateLimiter,
    TLPManager,
    create_power_manager,
    parse_pmset_mode,
    parse_tlp_mode,
)


def completed(returncode: int = 0, stdout: str = "", stderr: str = ""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


TLP_STAT_AC = """\
--- TLP 1.6.1 --------------------------------------------

+++ TLP Status
State          = enabled
Mode           = AC
Power source   = AC
"""

TLP_STAT_BAT = TLP_STAT_AC.replace("Mode           = AC", "Mode           = battery")


# ─────────────────────────────────────────────────────────────────────────────
# TLP
# ─────────────────────────────────────────────────────────────────────────────


def test_tlp_performance_runs_tlp_ac():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_performance_mode() is True

    cmd = mock_run.call_args.args[0]
    assert cmd == ["tlp", "ac"]
    assert mock_run.call_args.kwargs["timeout"] == 30.0


def test_tlp_power_saving_runs_tlp_bat():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_power_saving_mode() is True

    assert mock_run.call_args.args[0] == ["tlp", "bat"]


def test_tlp_with_sudo():
    manager = TLPManager(use_sudo=True, timeout=5.0)
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        manager.set_performance_mode()

    assert mock_run.call_args.args[0] == ["sudo", "-n", "tlp", "ac"]
    assert mock_run.call_args.kwargs["timeout"] == 5.0


def test_switch_is_idempotent():
    """Requesting the mode already applied runs no command."""
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        manager.set_performance_mode()
        manager.set_performance_mode()
        assert mock_run.call_count == 1

        manager.set_power_saving_mode()
        assert mock_run.call_count == 2


def test_tlp_nonzero_exit_fails():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", return_value=completed(1, stderr="denied")):
        assert manager.set_performance_mode() is False

    # Failed switch is retried next time
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_performance_mode() is True
        assert mock_run.call_count == 1


def test_tlp_error_in_output_fails():
    """tlp can exit 0 and still report an error."""
    manager = TLPManager()
    result = completed(0, stdout="Error: tlp must be run as root.")
    with patch("greenmode.power.subprocess.run", return_value=result):
        assert manager.set_performance_mode() is False


def test_missing_command_fails():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", side_effect=FileNotFoundError("tlp")):
        assert manager.set_power_saving_mode() is False


def test_command_timeout_fails():
    manager = TLPManager(timeout=1.0)
    with patch(
        "greenmode.power.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="tlp", timeout=1.0),
    ):
        assert manager.set_power_saving_mode() is False


def test_tlp_current_mode_from_tlp_stat():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", return_value=completed(stdout=TLP_STAT_BAT)):
        assert manager.current_mode() == POWERSAVING


def test_tlp_current_mode_unknown_without_tlp_stat():
    manager = TLPManager()
    with patch("greenmode.power.subprocess.run", side_effect=FileNotFoundError("tlp-stat")):
        assert manager.current_mode() == UNKNOWN


def test_tlp_availability_uses_path_lookup():
    manager = TLPManager()
    with patch("greenmode.power.shutil.which", return_value="/usr/sbin/tlp"):
        assert manager.is_available() is True
    with patch("greenmode.power.shutil.which", return_value=None):
        assert manager.is_available() is False


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        (TLP_STAT_AC, PERFORMANCE),
        (TLP_STAT_BAT, POWERSAVING),
        ("Mode = BAT\n", POWERSAVING),
        ("TLP_DEFAULT_MODE=AC\n", PERFORMANCE),
        ("TLP_DEFAULT_MODE=BAT\n", POWERSAVING),
        ("", UNKNOWN),
    ],
)
def test_parse_tlp_mode(output, expected):
    assert parse_tlp_mode(output) == expected


# ─────────────────────────────────────────────────────────────────────────────
# powercfg
# ─────────────────────────────────────────────────────────────────────────────


def test_powercfg_switches_schemes():
    manager = PowerCfgManager()
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        manager.set_performance_mode()
        manager.set_power_saving_mode()

    commands = [c.args[0] for c in mock_run.call_args_list]
    assert commands == [
        ["powercfg", "/setactive", HIGH_PERFORMANCE_SCHEME],
        ["powercfg", "/setactive", POWER_SAVER_SCHEME],
    ]


def test_powercfg_current_mode():
    manager = PowerCfgManager()
    output = f"Power Scheme GUID: {POWER_SAVER_SCHEME}  (Power saver)"
    with patch("greenmode.power.subprocess.run", return_value=completed(stdout=output)):
        assert manager.current_mode() == POWERSAVING


# ─────────────────────────────────────────────────────────────────────────────
# pmset
# ─────────────────────────────────────────────────────────────────────────────

PMSET_G = """\
System-wide power settings:
Currently in use:
 standby              1
 sleep                0
 powernap             1
 disksleep            0
 displaysleep         15
"""


def test_pmset_performance_settings():
    manager = PmsetManager(use_sudo=True)
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_performance_mode() is True

    commands = [c.args[0] for c in mock_run.call_args_list]
    assert commands == [["sudo", "-n", *args] for args in PMSET_PERFORMANCE]
    assert "powernap" in commands[0]


def test_pmset_power_saving_runs_every_source():
    manager = PmsetManager()
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_power_saving_mode() is True

    commands = [c.args[0] for c in mock_run.call_args_list]
    assert commands == [list(args) for args in PMSET_POWERSAVING]
    assert [cmd[1] for cmd in commands] == ["-c", "-b", "-a"]


def test_pmset_stops_at_first_failure():
    manager = PmsetManager()
    results = [completed(), completed(1, stderr="must be root")]
    with patch("greenmode.power.subprocess.run", side_effect=results) as mock_run:
        assert manager.set_power_saving_mode() is False
        assert mock_run.call_count == 2

    # Nothing was recorded as applied, so the next request runs every command again
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        assert manager.set_power_saving_mode() is True
        assert mock_run.call_count == len(PMSET_POWERSAVING)


def test_pmset_current_mode_reads_without_sudo():
    manager = PmsetManager(use_sudo=True)
    result = completed(stdout=PMSET_G)
    with patch("greenmode.power.subprocess.run", return_value=result) as mock_run:
        assert manager.current_mode() == PERFORMANCE

    assert mock_run.call_args.args[0] == ["pmset", "-g"]


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        (PMSET_G, PERFORMANCE),
        (PMSET_G.replace("powernap             1", "powernap             0"), POWERSAVING),
        ("Currently in use:\n sleep 1\n", UNKNOWN),
    ],
)
def test_parse_pmset_mode(output, expected):
    assert parse_pmset_mode(output) == expected


# ─────────────────────────────────────────────────────────────────────────────
# Concurrency and rate limiting
# ─────────────────────────────────────────────────────────────────────────────


def test_mode_query_does_not_undo_concurrent_switch():
    """A slow status query finishing after a switch can't mask the next switch."""
    manager = TLPManager()
    stat_started = threading.Event()
    release_stat = threading.Event()
    commands = []

    def fake_run(cmd, **kwargs):
        if cmd[0] == "tlp-stat":
            stat_started.set()
            release_stat.wait(2)
            return completed(stdout=TLP_STAT_AC)
        commands.append(cmd)
        return completed()

    with patch("greenmode.power.subprocess.run", side_effect=fake_run):
        query = threading.Thread(target=manager.current_mode)
        query.start()
        assert stat_started.wait(2)

        switch = threading.Thread(target=manager.set_power_saving_mode)
        switch.start()
        release_stat.set()
        query.join(2)
        switch.join(2)

        assert manager.set_performance_mode() is True

    assert commands == [["tlp", "bat"], ["tlp", "ac"]]


def test_rate_limiter_window():
    clock = FakeClock()
    limiter = RateLimiter(max_requests=2, window=1.0, clock=clock)

    assert limiter.allow() is True
    assert limiter.allow() is True
    assert limiter.allow() is False

    clock.advance(1.0)
    assert limiter.allow() is True


def test_switch_storm_is_rate_limited():
    clock = FakeClock()
    manager = TLPManager(rate_limiter=RateLimiter(max_requests=5, window=1.0, clock=clock))
    with patch("greenmode.power.subprocess.run", return_value=completed()) as mock_run:
        results = []
        for _ in range(3):
            results.append(manager.set_performance_mode())
            results.append(manager.set_power_saving_mode())

        assert results == [True, True, True, True, True, False]
        assert mock_run.call_count == 5

        clock.advance(1.0)
        assert manager.set_power_saving_mode() is True
        assert mock_run.call_count == 6


# ─────────────────────────────────────────────────────────────────────────────
# Dry run and factory
# ─────────────────────────────────────────────────────────────────────────────


def test_dry_run_records_switches():
    manager = DryRunPowerManager()
    with patch("greenmode.power.subprocess.run") as mock_run:
        manager.set_performance_mode()
        manager.set_performance_mode()
        manager.set_power_saving_mode()
        mock_run.assert_not_called()

    assert manager.switches == [PERFORMANCE, POWERSAVING]
    assert manager.current_mode() == POWERSAVING
    assert manager.is_available() is True


@pytest.mark.parametrize(
    ("backend", "cls"),
    [
        ("dry-run", DryRunPowerManager),
        ("tlp", TLPManager),
        ("pmset", PmsetManager),
        ("powercfg", PowerCfgManager),
    ],
)
def test_create_explicit_backend(backend, cls):
    manager = create_power_manager(backend)
    assert isinstance(manager, cls)
    assert isinstance(manager, PowerManager)


def test_create_passes_options():
    manager = create_power_manager("tlp", use_sudo=True, timeout=3.0)
    assert manager.use_sudo is True
    assert manager.timeout == 3.0


def test_create_unknown_backend():
    with pytest.raises(ValueError, match="Unknown power backend"):
        create_power_manager("cpufreq")


def test_auto_prefers_tlp():
    with patch("greenmode.power.shutil.which", return_value="/usr/sbin/tlp"):
        assert isinstance(create_power_manager("auto"), TLPManager)


def test_auto_falls_back_to_powercfg_on_windows():
    with (
        patch("greenmode.power.shutil.which", return_value=None),
        patch("greenmode.power.sys.platform", "win32"),
    ):
        assert isinstance(create_power_manager("auto"), PowerCfgManager)


def test_auto_without_backend_returns_none():
    with (
        patch("greenmode.power.shutil.which", return_value=None),
        patch("greenmode.power.sys.platform", "linux"),
    ):
        assert create_power_manager("auto") is None


def test_auto_picks_pmset_on_macos():
    with (
        patch("greenmode.power.shutil.which", return_value=None),
        patch("greenmode.power.sys.platform", "darwin"),
    ):
        manager = create_power_manager("auto", use_sudo=True)

    assert isinstance(manager, PmsetManager)
    assert manager.use_sudo is True
