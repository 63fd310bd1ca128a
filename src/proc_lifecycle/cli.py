"""CLI commands for proc-lifecycle."""

import click

GROUPS = ("foreground", "background")


def _send(msg: dict) -> dict:
    """Send one request to the running daemon, exiting on failure."""
    import asyncio

    from proc_lifecycle.config import Config
    from proc_lifecycle.socket_client import send_request

    config = Config.load()
    try:
        response = asyncio.run(send_request(config.socket_path, msg))
    except FileNotFoundError:
        raise click.ClickException("Daemon is not running")
    except (ConnectionError, OSError, TimeoutError) as e:
        raise click.ClickException(f"Daemon unreachable: {e}")

    if not response.get("ok"):
        raise click.ClickException(response.get("error", "Request failed"))
    return response


@click.group()
@click.version_option(package_name="proc-lifecycle")
def main() -> None:
    """Mobile-style process lifecycle manager for Linux."""
    pass


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("group", required=False, type=click.Choice(GROUPS))
@click.argument("command", nargs=-1, type=click.UNPROCESSED)
def run(group: str | None, command: tuple[str, ...]) -> None:
    """Run the lifecycle daemon.

    With no arguments, attaches to every running process. With GROUP and
    COMMAND, launches COMMAND in that group and manages it.
    """
    import asyncio

    from proc_lifecycle.config import Config
    from proc_lifecycle.daemon import run_daemon
    from proc_lifecycle.registry import RegistryError

    if group and not command:
        raise click.UsageError(f"No command given for the {group} group")

    try:
        config = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e))

    try:
        asyncio.run(run_daemon(config, group=group, argv=list(command)))
    except (RuntimeError, RegistryError) as e:
        raise click.ClickException(str(e))


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("pid", type=int)
@click.argument("value", type=click.IntRange(-20, 20))
def priority(pid: int, value: int) -> None:
    """Set a manual priority override for PID (-20 to 20, 0 clears it)."""
    _send({"type": "set_priority", "pid": pid, "priority": value})
    click.echo(f"Priority {value} queued for PID {pid}")


@main.command(context_settings={"ignore_unknown_options": True})
@click.argument("group", type=click.Choice(GROUPS))
@click.argument("command", nargs=-1, required=True, type=click.UNPROCESSED)
def launch(group: str, command: tuple[str, ...]) -> None:
    """Launch COMMAND in GROUP through the running daemon."""
    response = _send({"type": "launch", "group": group, "argv": list(command)})
    click.echo(f"Launched {command[0]} (PID {response['pid']}) as {response['state']}")


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include cached and background processes")
def status(show_all: bool) -> None:
    """Show tracked processes and their states."""
    from rich.console import Console
    from rich.table import Table

    from proc_lifecycle.logging import state_color
    from proc_lifecycle.states import ProcessState

    response = _send({"type": "status"})
    processes = response["processes"]

    pressure = "yes" if response["memory_pressure"] else "no"
    click.echo(
        f"Daemon: running (v{response['version']}), ticks {response['tick_count']}, "
        f"tracked {len(processes)}/{response['capacity']}, memory pressure {pressure}"
    )

    hidden = {ProcessState.BACKGROUND.value, ProcessState.CACHED.value}
    if not show_all:
        processes = [p for p in processes if p["state"] not in hidden]
    if not processes:
        click.echo("No processes to show.")
        return

    processes.sort(key=lambda p: p["importance"])
    table = Table(box=None)
    table.add_column("PID", justify="right")
    table.add_column("Name")
    table.add_column("State")
    table.add_column("Importance", justify="right")
    table.add_column("Override", justify="right")
    table.add_column("Idle", justify="right")
    for p in processes:
        color = state_color(ProcessState(p["state"]))
        override = str(p["requested_priority"]) if p["requested_priority"] else "-"
        table.add_row(
            str(p["pid"]),
            p["name"],
            f"[{color}]{p['state']}[/]",
            f"{p['importance']:+.1f}",
            override,
            f"{p['idle_seconds']:.0f}s",
        )
    Console().print(table)


@main.command()
def dump() -> None:
    """Write a diagnostic dump of every tracked process to the daemon log."""
    response = _send({"type": "dump"})
    click.echo(f"Dumped {response['records']} records")


@main.group()
def config() -> None:
    """Manage configuration."""
    pass


@config.command("show")
def config_show() -> None:
    """Display current configuration."""
    from dataclasses import fields

    from proc_lifecycle.config import Config

    try:
        cfg = Config.load()
    except ValueError as e:
        raise click.ClickException(str(e))

    click.echo(f"Config file: {cfg.config_path}")
    click.echo(f"Exists: {cfg.config_path.exists()}")
    for section in ("system", "memory", "scoring", "cgroups"):
        values = getattr(cfg, section)
        click.echo()
        click.echo(f"[{section}]")
        for f in fields(values):
            click.echo(f"  {f.name} = {getattr(values, f.name)}")
    click.echo()
    click.echo("[services]")
    click.echo(f"  names = {', '.join(cfg.services.names)}")


@config.command("edit")
def config_edit() -> None:
    """Open config file in editor."""
    import os
    import subprocess

    from proc_lifecycle.config import Config

    cfg = Config.load()

    # Create config if it doesn't exist
    if not cfg.config_path.exists():
        cfg.save()
        click.echo(f"Created default config at {cfg.config_path}")

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(cfg.config_path)])


@config.command("reset")
@click.confirmation_option(prompt="Reset config to defaults?")
def config_reset() -> None:
    """Reset configuration to defaults."""
    from proc_lifecycle.config import Config

    cfg = Config()
    cfg.save()
    click.echo(f"Config reset to defaults at {cfg.config_path}")


if __name__ == "__main__":
    main()
