"""CLI main entry point

Usage:
    craftstudio instances                 # list configured instances
    craftstudio add "Node 2" --storage    # register (and auto-start) an instance
    craftstudio set <id> maxStorageGB=100 # edit config (hot reload or restart)
    craftstudio restart <id>
    craftstudio daemons                   # running daemon processes
    craftstudio logs <pid>
    craftstudio run                       # load everything and supervise until Ctrl-C
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from craftstudio import __version__
from craftstudio.config.schema import Capabilities
from craftstudio.config.store import ConfigStore
from craftstudio.core.config import CraftStudioSettings, get_config
from craftstudio.daemon.client import DaemonClient
from craftstudio.daemon.errors import SupervisorError
from craftstudio.daemon.logging_utils import get_daemon_logger
from craftstudio.daemon.supervisor import DaemonSupervisor
from craftstudio.instances.defaults import make_instance_config
from craftstudio.instances.registry import InstanceRegistry, RegistryError

console = Console()


def setup_logging(settings: CraftStudioSettings) -> None:
    """Root logger: rich console output plus an optional log file"""
    root = logging.getLogger()
    root.setLevel(settings.log_level)
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(RichHandler(console=console, rich_tracebacks=True, show_path=False))
    if settings.log_file is not None:
        log_file = settings.log_file.expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        root.addHandler(file_handler)


def parse_assignment(text: str) -> Tuple[str, Any]:
    """``KEY=VALUE`` with VALUE parsed as JSON when possible"""
    if "=" not in text:
        raise click.BadParameter(f"expected KEY=VALUE, got {text!r}")
    key, raw = text.split("=", 1)
    try:
        value = json.loads(raw)
    except ValueError:
        value = raw
    return key.strip(), value


def _build(settings: CraftStudioSettings) -> Tuple[ConfigStore, DaemonSupervisor, InstanceRegistry]:
    store = ConfigStore(settings.config_file)
    store.load()
    supervisor = DaemonSupervisor(
        settings.run_dir,
        binary=settings.daemon_binary,
        host=settings.daemon_host,
        structured_logger=get_daemon_logger(settings.log_dir),
        log_capacity=settings.daemon_log_capacity,
    )

    def client_factory(instance_id: str, url: str) -> DaemonClient:
        return DaemonClient(
            instance_id,
            url,
            reconnect_interval=settings.reconnect_interval_seconds,
            request_timeout=settings.request_timeout_seconds,
        )

    registry = InstanceRegistry(store, supervisor, client_factory=client_factory, settings=settings)
    return store, supervisor, registry


def _with_registry(
    settings: CraftStudioSettings,
    action: Callable[[InstanceRegistry], Awaitable[Any]],
    connect: bool = False,
) -> Any:
    async def _main():
        _, _, registry = _build(settings)
        await registry.load_from_config(connect=connect)
        try:
            return await action(registry)
        finally:
            await registry.shutdown()

    return asyncio.run(_main())


def _fail(message: str) -> None:
    console.print(f"[red]Error: {message}[/red]")
    raise click.Abort()


@click.group()
@click.version_option(version=__version__, prog_name="craftstudio")
@click.pass_context
def cli(ctx):
    """CraftStudio - manage local CraftOBJ daemon instances"""
    settings = get_config(force_reload=True)
    setup_logging(settings)
    ctx.obj = settings


@cli.command("instances")
@click.pass_obj
def list_instances(settings: CraftStudioSettings):
    """List configured instances."""

    async def action(registry: InstanceRegistry):
        running = {d.ws_port: d.pid for d in await registry.supervisor.list_daemons()}
        return registry.instances, registry.active_id, running

    instances, active_id, running = _with_registry(settings, action)

    if not instances:
        console.print("[yellow]No instances configured[/yellow]")
        return

    table = Table(title=f"Instances ({len(instances)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Data dir", style="dim")
    table.add_column("WS port", style="blue")
    table.add_column("Capabilities", style="magenta")
    table.add_column("Daemon")

    for instance in instances:
        marker = " *" if instance.id == active_id else ""
        pid = running.get(instance.ws_port)
        table.add_row(
            f"{instance.id}{marker}",
            instance.name,
            instance.data_dir,
            str(instance.ws_port),
            ", ".join(instance.capabilities.to_list()),
            f"[green]PID {pid}[/green]" if pid else "[dim]stopped[/dim]",
        )
    console.print(table)


@cli.command("add")
@click.argument("name")
@click.option("--data-dir", help="Data directory (generated under the nodes directory by default)")
@click.option("--storage", is_flag=True, help="Enable the storage capability")
@click.option("--aggregator", is_flag=True, help="Enable the aggregator capability")
@click.option("--port", type=int, help="Listen port")
@click.option("--ws-port", type=int, help="Control channel port")
@click.option("--auto-start/--no-auto-start", default=True, help="Start the daemon now and on every load")
@click.option("--api-key", help="Control channel API key")
@click.pass_obj
def add_instance(
    settings: CraftStudioSettings,
    name: str,
    data_dir: Optional[str],
    storage: bool,
    aggregator: bool,
    port: Optional[int],
    ws_port: Optional[int],
    auto_start: bool,
    api_key: Optional[str],
):
    """Register a new instance."""

    async def action(registry: InstanceRegistry):
        instance = make_instance_config(
            name,
            nodes_dir=settings.nodes_dir,
            data_dir=data_dir,
            auto_start=auto_start,
            capabilities=Capabilities(client=True, storage=storage, aggregator=aggregator),
            port=port,
            ws_port=ws_port,
            existing=registry.instances,
        )
        return await registry.add(instance, api_key=api_key)

    try:
        instance = _with_registry(settings, action)
    except RegistryError as e:
        _fail(str(e))
        return

    console.print(f"[green]✓ Instance added:[/green] {instance.id} ({instance.name})")
    console.print(f"[dim]Data dir: {instance.data_dir}  ws_port: {instance.ws_port}[/dim]")


@cli.command("remove")
@click.argument("instance_id")
@click.option("--stop", "stop_worker", is_flag=True, help="Also stop the daemon process")
@click.pass_obj
def remove_instance(settings: CraftStudioSettings, instance_id: str, stop_worker: bool):
    """Unregister an instance (the daemon keeps running unless --stop)."""
    try:
        _with_registry(settings, lambda registry: registry.remove(instance_id, stop_worker=stop_worker))
    except RegistryError as e:
        _fail(str(e))
        return
    console.print(f"[green]✓ Instance removed:[/green] {instance_id}")


@cli.command("set")
@click.argument("instance_id")
@click.argument("assignments", nargs=-1, required=True)
@click.pass_obj
def set_config(settings: CraftStudioSettings, instance_id: str, assignments: Tuple[str, ...]):
    """Update instance config: KEY=VALUE ... (e.g. maxStorageGB=100)."""
    patch: Dict[str, Any] = dict(parse_assignment(a) for a in assignments)

    try:
        action = _with_registry(settings, lambda registry: registry.update(instance_id, patch))
    except RegistryError as e:
        _fail(str(e))
        return

    label = "restarted" if action.value == "restart" else "hot reload"
    console.print(f"[green]✓ Updated {instance_id}[/green] ({label}): {', '.join(sorted(patch))}")


@cli.command("restart")
@click.argument("instance_id")
@click.pass_obj
def restart_instance(settings: CraftStudioSettings, instance_id: str):
    """Stop, reconfigure and start an instance's daemon."""
    try:
        result = _with_registry(settings, lambda registry: registry.restart_instance(instance_id))
    except RegistryError as e:
        _fail(str(e))
        return

    if result.ok:
        pid = f"PID {result.started_pid}" if result.started_pid else "already running"
        console.print(f"[green]✓ Restarted {instance_id}[/green] ({pid})")
    else:
        console.print(f"[yellow]Restart of {instance_id} finished with errors:[/yellow]")
        for error in result.errors:
            console.print(f"  [red]•[/red] {error}")


@cli.command("daemons")
@click.pass_obj
def list_daemons(settings: CraftStudioSettings):
    """List running daemon processes."""
    _, supervisor, _ = _build(settings)
    daemons = asyncio.run(supervisor.list_daemons())

    if not daemons:
        console.print("[yellow]No daemons running[/yellow]")
        return

    table = Table(title=f"Daemons ({len(daemons)})")
    table.add_column("PID", style="cyan")
    table.add_column("WS port", style="blue")
    table.add_column("Listen")
    table.add_column("Data dir", style="dim")
    table.add_column("Primary")
    for daemon in daemons:
        table.add_row(
            str(daemon.pid),
            str(daemon.ws_port),
            daemon.listen_addr,
            daemon.data_dir,
            "yes" if daemon.primary else "",
        )
    console.print(table)


@cli.command("logs")
@click.argument("pid", type=int)
@click.option("--since", type=int, default=0, help="Skip the first N captured lines")
@click.pass_obj
def show_logs(settings: CraftStudioSettings, pid: int, since: int):
    """Show captured output of a daemon."""
    _, supervisor, _ = _build(settings)
    try:
        lines = asyncio.run(supervisor.get_logs(pid, since=since))
    except SupervisorError as e:
        _fail(str(e))
        return
    for line in lines:
        click.echo(line)


@cli.command("run")
@click.option("--stop-on-exit", is_flag=True, help="Stop every daemon when interrupted")
@click.pass_obj
def run(settings: CraftStudioSettings, stop_on_exit: bool):
    """Load all instances, start and connect them, supervise until Ctrl-C."""

    async def _main():
        _, _, registry = _build(settings)
        try:
            loaded = await registry.load_from_config()
            console.print(f"[green]Supervising {len(loaded)} instance(s)[/green] [dim](Ctrl-C to exit)[/dim]")
            await asyncio.Event().wait()
        finally:
            await registry.shutdown(stop_workers=stop_on_exit)

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        console.print("[dim]Stopped[/dim]")


if __name__ == "__main__":
    cli()
