"""CLI commands for greenmode."""

from pathlib import Path

import click


def _load_config(ctx: click.Context):
    """Load config from the --config path, exiting on invalid files."""
    from greenmode.config import Config

    try:
        return Config.load(ctx.obj.get("config_path"))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(package_name="greenmode")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="Use a custom configuration file",
)
@click.pass_context
def main(ctx: click.Context, config_path: Path | None) -> None:
    """Switch between performance and power saving modes based on system load."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path.resolve() if config_path else None


@main.command()
@click.option(
    "--backend",
    type=click.Choice(["auto", "tlp", "pmset", "powercfg", "dry-run"]),
    default=None,
    help="Override the configured power backend",
)
@click.option("--quiet", "-q", is_flag=True, help="Log to file only")
@click.pass_context
def run(ctx: click.Context, backend: str | None, quiet: bool) -> None:
    """Run the monitor in the foreground until interrupted."""
    import asyncio

    from greenmode import logging as console
    from greenmode.daemon import DaemonError, run_daemon

    cfg = _load_config(ctx)
    if backend is not None:
        cfg.power.backend = backend

    m = cfg.monitoring
    console.config_summary(m.frequency, m.high_performance_threshold, m.power_save_threshold)
    for note in cfg.advisories():
        console.warn(note)
    console.info(f"Logging to [cyan]{cfg.log_path}[/]")

    try:
        asyncio.run(run_daemon(cfg, console=not quiet))
    except DaemonError as e:
        console.error(str(e), console.Icon.FAIL)
        raise SystemExit(1)
    except KeyboardInterrupt:
        pass
    console.daemon_stopped()


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show daemon status, current load and the mode it calls for."""
    import psutil

    from greenmode.daemon import read_pid
    from greenmode.hysteresis import HysteresisEngine, Thresholds
    from greenmode.metrics import default_metrics_source

    cfg = _load_config(ctx)

    pid = read_pid(cfg)
    if pid is not None and psutil.pid_exists(pid):
        click.echo(f"Daemon: running (PID {pid})")
    else:
        click.echo("Daemon: stopped")

    source = default_metrics_source()
    if not source.is_available():
        click.echo("Load: unavailable")
        return

    load = source.sample()
    cores = source.core_count()
    m = cfg.monitoring
    engine = HysteresisEngine(
        Thresholds(m.high_performance_threshold, m.power_save_threshold), cores
    )
    performance, power_save = engine.thresholds.scaled(cores)
    engine.evaluate(load, initial=True)

    click.echo(f"Load: {load:.2f} ({load / cores * 100:.1f}% of {cores} cores)")
    click.echo(f"Performance above: {performance:.2f}")
    click.echo(f"Power saving below: {power_save:.2f}")
    mode = "performance" if engine.state.is_active else "power saving"
    click.echo(f"Mode from idle: {mode}")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
@click.pass_context
def config_show(ctx: click.Context) -> None:
    """Display current configuration."""
    cfg = _load_config(ctx)
    path = ctx.obj.get("config_path") or cfg.config_path

    click.echo(f"Config file: {path}")
    click.echo(f"Exists: {path.exists()}")
    click.echo()
    click.echo("[monitoring]")
    click.echo(f"  frequency = {cfg.monitoring.frequency}")
    click.echo(f"  high_performance_threshold = {cfg.monitoring.high_performance_threshold}")
    click.echo(f"  power_save_threshold = {cfg.monitoring.power_save_threshold}")
    click.echo()
    click.echo("[power]")
    click.echo(f"  backend = {cfg.power.backend}")
    click.echo(f"  use_sudo = {str(cfg.power.use_sudo).lower()}")
    click.echo(f"  command_timeout = {cfg.power.command_timeout}")
    click.echo()
    click.echo("[system]")
    click.echo(f"  log_level = {cfg.system.log_level}")


@config.command("edit")
@click.pass_context
def config_edit(ctx: click.Context) -> None:
    """Open config file in editor."""
    import os
    import subprocess

    cfg = _load_config(ctx)
    path = ctx.obj.get("config_path") or cfg.config_path

    if not path.exists():
        cfg.save(path)
        click.echo(f"Created default config at {path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
@click.pass_context
def config_reset(ctx: click.Context) -> None:
    """Reset configuration to defaults."""
    from greenmode.config import Config

    cfg = Config()
    path = ctx.obj.get("config_path") or cfg.config_path
    cfg.save(path)
    click.echo(f"Config reset to defaults at {path}")
