"""
transferstore CLI
=================

Operator and debugging surface over the transfer history.

Commands:
    transferstore status <transfer_id>          - Current state of a transfer and its paths
    transferstore history <transfer_id>         - Full ordered event history
    transferstore list [--since DATE]           - List transfers
    transferstore remove-peer <peer_id>         - Delete a peer and everything it owns
    transferstore purge [IDS...] [--until DATE] - Delete transfers
    transferstore recover                       - Startup recovery scan
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

import click
from dateutil import parser as date_parser
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table
import yaml

from . import __version__
from .errors import TransferStoreError


console = Console()


def load_config(config_path: str | Path) -> dict:
    """Load configuration from a YAML file, or defaults if it is missing"""
    config_path = Path(config_path)
    if config_path.exists():
        with open(config_path) as f:
            return yaml.safe_load(f) or {}
    return {}


def setup_logging(config: dict) -> None:
    level = config.get("logging", {}).get("level", "INFO")
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
        force=True,
    )


class DateParam(click.ParamType):
    """A date, ISO string or unix seconds, as naive UTC"""
    name = "date"

    def convert(self, value, param, ctx):
        if isinstance(value, datetime):
            parsed = value
        elif str(value).isdigit():
            parsed = datetime.fromtimestamp(int(value), timezone.utc)
        else:
            try:
                parsed = date_parser.parse(value)
            except (ValueError, OverflowError) as e:
                self.fail(f"{value!r} is not a date: {e}", param, ctx)
        if parsed.tzinfo is not None:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        return parsed


DATE = DateParam()


@click.group()
@click.version_option(version=__version__, prog_name="transferstore")
@click.option(
    "--config", "-c", "config_path",
    default="config.yaml",
    show_default=True,
    help="Path to the YAML configuration file",
)
@click.pass_context
def main(ctx: click.Context, config_path: str):
    """transferstore - Durable Peer-to-Peer Transfer History"""
    config = load_config(config_path)
    setup_logging(config)
    ctx.obj = {"config": config}


def _open_storage(ctx: click.Context):
    from .storage import create_storage

    storage = create_storage(ctx.obj["config"])
    ctx.call_on_close(storage.close)
    return storage


def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/red]")
    raise click.exceptions.Exit(1)


@main.command()
@click.argument("transfer_id")
@click.pass_context
def status(ctx: click.Context, transfer_id: str):
    """Show the current state of a transfer."""
    storage = _open_storage(ctx)

    try:
        transfer_state = storage.current_transfer_state(transfer_id)
        path_states = storage.path_states(transfer_id)
    except TransferStoreError as e:
        _fail(str(e))

    console.print(f"\n[bold blue]Transfer Status[/bold blue]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Field", style="dim")
    table.add_column("Value")

    table.add_row("Transfer ID", escape(transfer_id))
    table.add_row("Direction", transfer_state.direction.value)
    table.add_row("State", _format_state(transfer_state.state))
    if transfer_state.by_peer is not None:
        table.add_row("Cancelled by", "peer" if transfer_state.by_peer else "local")
    if transfer_state.status_code is not None:
        table.add_row("Status code", f"[red]{transfer_state.status_code}[/red]")
    console.print(table)
    console.print()

    console.print("[bold]Paths[/bold]")
    for path_state in path_states:
        icon = _state_icon(path_state.state)
        progress = f"{path_state.bytes or 0}/{path_state.total_bytes} bytes"
        line = f"  {icon} {escape(path_state.path_id)}: {_format_state(path_state.state)} ({progress})"
        if path_state.final_path:
            line += f" -> {escape(path_state.final_path)}"
        console.print(line)
        for anomaly in path_state.anomalies:
            console.print(f"      [yellow]! {anomaly.message}[/yellow]")


@main.command()
@click.argument("transfer_id")
@click.option("--json", "as_json", is_flag=True, help="Print the raw history as JSON")
@click.pass_context
def history(ctx: click.Context, transfer_id: str, as_json: bool):
    """Show the full event history of a transfer."""
    storage = _open_storage(ctx)

    try:
        record = storage.transfer_history(transfer_id)
    except TransferStoreError as e:
        _fail(str(e))

    if as_json:
        click.echo(json.dumps(record.to_dict(), indent=2))
        return

    data = record.to_dict()
    rows = [(state, "transfer") for state in data["states"]]
    for path in data["paths"]:
        rows.extend((state, path["path_id"]) for state in path["states"])
    rows.sort(key=lambda row: row[0]["created_at"])

    table = Table(title=f"History of {transfer_id}")
    table.add_column("Time (ms)")
    table.add_column("Entity")
    table.add_column("State")
    table.add_column("Details")

    for state, entity in rows:
        details = ", ".join(
            f"{key}={value}" for key, value in state.items()
            if key not in ("created_at", "state")
        )
        table.add_row(str(state["created_at"]), escape(entity), _format_state(state["state"]), escape(details))

    console.print(table)


@main.command("list")
@click.option("--since", "-s", type=DATE, default=None, help="Only transfers created since this date")
@click.option("--json", "as_json", is_flag=True, help="Print the raw histories as JSON")
@click.pass_context
def list_transfers(ctx: click.Context, since, as_json: bool):
    """List transfers."""
    storage = _open_storage(ctx)

    if as_json:
        records = storage.transfers_since(since)
        click.echo(json.dumps([record.to_dict() for record in records], indent=2))
        return

    states = storage.current_states(since)

    if not states:
        console.print("[dim]No transfers found[/dim]")
        return

    table = Table(title="Transfers" if since is None else f"Transfers since {since.isoformat()}")
    table.add_column("Transfer ID")
    table.add_column("Type")
    table.add_column("State")
    table.add_column("Paths")
    table.add_column("Done")

    for transfer_state, path_states in states:
        done = sum(1 for path in path_states if path.is_terminal)
        table.add_row(
            escape(transfer_state.transfer_id),
            transfer_state.direction.value,
            _format_state(transfer_state.state),
            str(len(path_states)),
            str(done),
        )

    console.print(table)


@main.command("remove-peer")
@click.argument("peer_id")
@click.confirmation_option(prompt="Delete this peer and all of its transfers?")
@click.pass_context
def remove_peer(ctx: click.Context, peer_id: str):
    """Delete a peer with all of its transfers and history."""
    storage = _open_storage(ctx)

    try:
        removed = storage.remove_peer(peer_id)
    except TransferStoreError as e:
        _fail(str(e))

    console.print(f"[green]Removed peer {peer_id} ({removed} transfers)[/green]")


@main.command()
@click.argument("transfer_ids", nargs=-1)
@click.option("--until", "-u", type=DATE, default=None, help="Purge transfers created before this date")
@click.pass_context
def purge(ctx: click.Context, transfer_ids: tuple, until):
    """Delete transfers by id, or everything created before a date."""
    if not transfer_ids and until is None:
        raise click.UsageError("Give transfer ids or --until")

    storage = _open_storage(ctx)
    purged = 0
    if transfer_ids:
        purged += storage.purge_transfers(transfer_ids)
    if until is not None:
        purged += storage.purge_transfers_until(until)

    console.print(f"[green]Purged {purged} transfers[/green]")


@main.command()
@click.pass_context
def recover(ctx: click.Context):
    """Scan the store after a restart and report interrupted transfers."""
    from .recovery import create_recovery_manager

    storage = _open_storage(ctx)
    manager = create_recovery_manager(ctx.obj["config"], storage)
    result = manager.recover()

    if result.crash_detected:
        console.print("[yellow]Previous shutdown was unclean[/yellow]")
    console.print(f"[green]Recovery complete![/green]")
    console.print(f"[dim]Transfers found:[/dim] {result.transfers_found}")
    console.print(f"[dim]Transfers finished:[/dim] {result.transfers_finished}")
    console.print(f"[dim]Transfers interrupted:[/dim] {result.transfers_interrupted}")

    if result.interrupted:
        table = Table(title="Resumable Paths")
        table.add_column("Transfer")
        table.add_column("Path")
        table.add_column("State")
        table.add_column("Offset")

        for transfer in result.interrupted:
            for path in transfer.paths:
                table.add_row(
                    escape(transfer.transfer_id),
                    escape(path.path_id),
                    _format_state(path.state),
                    f"{path.offset}/{path.total_bytes}",
                )
        console.print(table)

    for anomaly in result.anomalies:
        console.print(f"[yellow]! {escape(str(anomaly))}[/yellow]")

    manager.shutdown()


def _state_name(state) -> str:
    if state is None:
        return "new"
    return getattr(state, "value", state)


def _format_state(state) -> str:
    """Format state with color"""
    colors = {
        "new": "white",
        "pending": "cyan",
        "active": "yellow",
        "started": "yellow",
        "completed": "green",
        "cancel": "magenta",
        "failed": "red",
    }
    name = _state_name(state)
    color = colors.get(name, "white")
    return f"[{color}]{name}[/{color}]"


def _state_icon(state) -> str:
    """Get state icon"""
    icons = {
        "new": "○",
        "pending": "◐",
        "started": "◑",
        "completed": "●",
        "cancel": "⊘",
        "failed": "✗",
    }
    return icons.get(_state_name(state), "○")


if __name__ == "__main__":
    main()
