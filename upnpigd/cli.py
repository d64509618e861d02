"""Command line front end for the IGD control point."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich.console import Console
from rich.table import Table

from upnpigd.config import init_config, set_config
from upnpigd.control_point import ControlPoint
from upnpigd.exceptions import IGDError, SoapFault, StatisticUnavailableError
from upnpigd.logging_config import log_exception
from upnpigd.models import Config, LogLevel

logger = logging.getLogger(__name__)

T = TypeVar("T")

PORT = click.IntRange(1, 65535)
PROTOCOL = click.Choice(["TCP", "UDP"], case_sensitive=False)


def _run(config: Config, operation: Callable[[ControlPoint], Awaitable[T]]) -> T:
    """Bind a control point, run ``operation`` on it and map errors for click."""

    async def _main() -> T:
        async with ControlPoint(config) as cp:
            await cp.discover()
            return await operation(cp)

    try:
        return asyncio.run(_main())
    except IGDError as e:
        log_exception(logger, e, "Gateway operation failed", logging.DEBUG)
        raise click.ClickException(str(e)) from e


@click.group()
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="Configuration file path",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Discovery window in milliseconds",
)
@click.option(
    "--same-port/--no-same-port",
    default=None,
    help="Send M-SEARCH from the SSDP port (needed behind some firewalls)",
)
@click.option("--source-address", default=None, help="Local address to discover from")
@click.option("--verbose", "-v", count=True, help="Increase verbosity (-v: info, -vv: debug)")
@click.pass_context
def cli(
    ctx,
    config_file: str | None,
    timeout_ms: int | None,
    same_port: bool | None,
    source_address: str | None,
    verbose: int,
) -> None:
    """Discover the UPnP gateway and manage its port mappings."""
    ctx.ensure_object(dict)
    try:
        config = init_config(config_file).config
    except IGDError as e:
        raise click.ClickException(str(e)) from e

    overrides: dict[str, Any] = {}
    if timeout_ms is not None:
        overrides["timeout_ms"] = timeout_ms
    if same_port is not None:
        overrides["reuse_incoming_port"] = same_port
    if source_address:
        overrides["source_address"] = source_address
    if overrides:
        config = config.model_copy(
            update={"discovery": config.discovery.model_copy(update=overrides)}
        )

    if verbose:
        config.observability.log_level = LogLevel.DEBUG if verbose > 1 else LogLevel.INFO
    if overrides or verbose:
        set_config(config)

    ctx.obj["config"] = config


@cli.command("info")
@click.pass_context
def info(ctx) -> None:
    """Show the gateway's addresses, link and connection status."""
    console = Console()

    async def _collect(cp: ControlPoint) -> list[tuple[str, str]]:
        rows = [
            ("Internet IP", await cp.external_ip()),
            ("Router LAN IP", await cp.router_ip()),
            ("Local LAN IP", cp.lan_ip or ""),
        ]
        try:
            down, up = await cp.max_link_bitrates()
            rows.append(("Max link bitrate", f"{down}/{up}"))
        except (SoapFault, StatisticUnavailableError) as e:
            rows.append(("Max link bitrate", f"unavailable ({e.message})"))
        status = await cp.status()
        rows.append(("Status", status.connection_status))
        rows.append(("Uptime", str(status.uptime)))
        if status.last_connection_error:
            rows.append(("Last error", status.last_connection_error))
        rows.append(("Connection type", await cp.connection_type()))
        return rows

    rows = _run(ctx.obj["config"], _collect)

    table = Table(title="Internet Gateway Device", show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="green")
    for name, value in rows:
        table.add_row(name, value)
    console.print(table)


@cli.command("list")
@click.pass_context
def list_mappings(ctx) -> None:
    """List the port mappings registered on the gateway."""
    console = Console()

    async def _list(cp: ControlPoint):
        return await cp.list_port_mappings()

    mappings = _run(ctx.obj["config"], _list)
    if not mappings:
        console.print("[dim]No port mappings[/dim]")
        return

    table = Table()
    table.add_column("External", style="yellow")
    table.add_column("Protocol", style="cyan")
    table.add_column("Internal client", style="magenta")
    table.add_column("Internal", style="yellow")
    table.add_column("Enabled")
    table.add_column("Lease")
    table.add_column("Description", style="green")
    for mapping in mappings:
        table.add_row(
            str(mapping.external_port),
            mapping.protocol,
            mapping.internal_client,
            str(mapping.internal_port),
            "yes" if mapping.enabled else "no",
            str(mapping.lease_duration) if mapping.lease_duration else "permanent",
            mapping.description,
        )
    console.print(table)


@cli.command("get")
@click.argument("external_port", type=PORT)
@click.argument("protocol", type=PROTOCOL)
@click.pass_context
def get_mapping(ctx, external_port: int, protocol: str) -> None:
    """Show the mapping for EXTERNAL_PORT and PROTOCOL."""
    console = Console()

    async def _get(cp: ControlPoint):
        return await cp.get_port_mapping(external_port, protocol.upper())

    mapping = _run(ctx.obj["config"], _get)
    console.print(
        f"{mapping.protocol} {mapping.external_port} -> "
        f"[magenta]{mapping.internal_client}[/magenta]:{mapping.internal_port}"
    )


@cli.command("add")
@click.argument("external_port", type=PORT)
@click.argument("internal_port", type=PORT)
@click.argument("protocol", type=PROTOCOL)
@click.argument("description", required=False)
@click.option("--client", "internal_client", default=None, help="Internal address (default: this host)")
@click.option("--lease", "lease_duration", type=click.IntRange(min=0), default=0, help="Lease in seconds (0: permanent)")
@click.pass_context
def add_mapping(
    ctx,
    external_port: int,
    internal_port: int,
    protocol: str,
    description: str | None,
    internal_client: str | None,
    lease_duration: int,
) -> None:
    """Map EXTERNAL_PORT on the gateway to INTERNAL_PORT on this host."""
    console = Console()

    async def _add(cp: ControlPoint):
        return await cp.add_port_mapping(
            external_port,
            internal_port,
            protocol.upper(),
            description,
            internal_client,
            lease_duration=lease_duration,
        )

    mapping = _run(ctx.obj["config"], _add)
    console.print(
        f"[green]Mapped[/green] {mapping.external_port} to "
        f"{mapping.internal_client}:{mapping.internal_port} ({mapping.protocol})"
    )


@cli.command("delete")
@click.argument("external_port", type=PORT)
@click.argument("protocol", type=PROTOCOL)
@click.pass_context
def delete_mapping(ctx, external_port: int, protocol: str) -> None:
    """Delete the mapping for EXTERNAL_PORT and PROTOCOL."""
    console = Console()

    async def _delete(cp: ControlPoint):
        await cp.delete_port_mapping(external_port, protocol.upper())

    _run(ctx.obj["config"], _delete)
    console.print(f"[green]Deleted[/green] {protocol.upper()} mapping for port {external_port}")


def main() -> None:
    """Main CLI entry point."""
    cli()
