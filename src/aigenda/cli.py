"""Command-line interface for AIGENDA sync."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

import click
import yaml
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import ConfigManager, SyncSettings
from .sync import ChangeAction, DataSyncService, SyncResult, SyncStatus
from .utils.datetime import format_ms


console = Console()

STATUS_STYLES = {
    SyncStatus.SUCCESS: "green",
    SyncStatus.SKIPPED: "yellow",
    SyncStatus.OFFLINE: "yellow",
}


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def get_service(ctx: click.Context) -> DataSyncService:
    """Get a sync service with persisted state loaded."""
    settings: SyncSettings = ctx.obj['settings']
    service = DataSyncService.from_settings(settings)
    service.load()
    return service


def _display_result(result: SyncResult):
    style = STATUS_STYLES.get(result.status, "red")
    lines = [
        f"[cyan]Status:[/cyan] [{style}]{result.status.value}[/{style}]",
        f"[cyan]Pulled:[/cyan] {result.pulled}",
        f"[cyan]Pushed:[/cyan] {result.pushed}",
        f"[cyan]Synced:[/cyan] {result.synced}",
        f"[cyan]Conflicts:[/cyan] {result.conflicts}",
        f"[cyan]Errors:[/cyan] {result.errors}",
    ]
    if result.error:
        lines.append(f"[red]{result.error}[/red]")
    console.print(Panel("\n".join(lines), title="Sync", border_style=style))


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False), help="Configuration directory")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def main(ctx, config_dir, verbose):
    """AIGENDA - offline-first sync for activities and tasks."""
    ctx.ensure_object(dict)
    manager = ConfigManager(Path(config_dir) if config_dir else None)
    ctx.obj['config_manager'] = manager
    ctx.obj['settings'] = manager.settings
    setup_logging("DEBUG" if verbose else manager.settings.log_level)


@main.group(name="sync")
def sync_group():
    """Queue local changes and synchronize them with the server."""
    pass


@sync_group.command("queue")
@click.argument("entity_type")
@click.argument("action", type=click.Choice([a.value for a in ChangeAction]))
@click.option("--data", "-d", "data_json", default="{}", help="Entity payload as a JSON object")
@click.pass_context
def queue_change(ctx, entity_type: str, action: str, data_json: str):
    """Queue a change to ENTITY_TYPE for the next sync."""
    try:
        data = json.loads(data_json)
    except ValueError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--data")
    if not isinstance(data, dict):
        raise click.BadParameter("Payload must be a JSON object", param_hint="--data")

    service = get_service(ctx)
    entity_id = service.queue_change(entity_type, action, data)
    if service.mutation_log.last_persist_error:
        console.print(f"[red]Change queued but not saved: {service.mutation_log.last_persist_error}[/red]")
        ctx.exit(1)
    console.print(f"[green]Queued {action} for {entity_type}[/green] [dim]{entity_id}[/dim]")


@sync_group.command("pending")
@click.option("--entity-type", "-t", help="Only show one entity type")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def show_pending(ctx, entity_type: Optional[str], output_json: bool):
    """List changes that have not been acknowledged by the server."""
    service = get_service(ctx)
    unsynced = service.get_unsynced()
    if entity_type:
        unsynced = {k: v for k, v in unsynced.items() if k == entity_type}

    if output_json:
        click.echo(json.dumps(
            {t: [e.to_dict() for e in entries] for t, entries in unsynced.items()},
            indent=2, default=str,
        ))
        return

    if not unsynced:
        console.print("[green]No pending changes[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Type", style="cyan")
    table.add_column("Action")
    table.add_column("ID")
    table.add_column("Queued")
    table.add_column("Error", style="red")
    for t, entries in unsynced.items():
        for entry in entries:
            error = f"[{entry.error.code}] {entry.error.message}" if entry.error else ""
            table.add_row(t, entry.action.value, str(entry.entity_id), format_ms(entry.timestamp), error)
    console.print(table)


@sync_group.command("run")
@click.option("--token", envvar="AIGENDA_AUTH_TOKEN", help="Bearer token (overrides config)")
@click.pass_context
def run_sync(ctx, token: Optional[str]):
    """Run one pull-then-push sync cycle."""
    result = asyncio.run(_run_sync(ctx, token))
    _display_result(result)
    if not result.success:
        ctx.exit(1)


async def _run_sync(ctx: click.Context, token: Optional[str]) -> SyncResult:
    service = get_service(ctx)
    if token:
        service.set_auth_token(token)
    try:
        return await service.sync_data()
    finally:
        await service.transport.aclose()


@sync_group.command("watch")
@click.option("--interval", "-i", type=float, help="Seconds between sync cycles")
@click.option("--token", envvar="AIGENDA_AUTH_TOKEN", help="Bearer token (overrides config)")
@click.pass_context
def watch(ctx, interval: Optional[float], token: Optional[str]):
    """Keep syncing on a timer until interrupted."""
    try:
        asyncio.run(_watch(ctx, interval, token))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


async def _watch(ctx: click.Context, interval: Optional[float], token: Optional[str]):
    service = DataSyncService.from_settings(ctx.obj['settings'])

    def on_update(entity_type: str, payload: Any):
        count = len(payload) if isinstance(payload, list) else 1
        console.print(f"[cyan]{entity_type}[/cyan] updated ({count})")

    service.notifier.subscribe("*", on_update)
    await service.start(auth_token=token, interval_seconds=interval)
    console.print(f"[dim]Syncing every {service.scheduler.interval_seconds}s; Ctrl+C to stop[/dim]")
    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await service.aclose()


@sync_group.command("status")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def sync_status(ctx, output_json: bool):
    """Show checkpoint and pending change counts."""
    service = get_service(ctx)
    state = service.get_state()

    if output_json:
        click.echo(json.dumps({
            'last_sync_timestamp': state.last_sync_timestamp,
            'pending_count': state.pending_count,
            'errored_count': state.errored_count,
        }, indent=2))
        return

    summary_text = f"""
    [cyan]Last sync:[/cyan] {format_ms(state.last_sync_timestamp)}
    [cyan]Pending changes:[/cyan] {state.pending_count}
    [cyan]Rejected changes:[/cyan] {state.errored_count}
    """
    console.print(Panel(summary_text.strip(), title="Sync Status", border_style="cyan"))


def _id_candidates(raw: str) -> List[Any]:
    """Ids to try for a command-line id: the string itself, then its YAML scalar."""
    candidates: List[Any] = [raw]
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:
        return candidates
    if isinstance(parsed, (int, float)) and not isinstance(parsed, bool):
        candidates.append(parsed)
    return candidates


@sync_group.command("discard")
@click.argument("entity_type", required=False)
@click.argument("entity_id", required=False)
@click.option("--errored", is_flag=True, help="Discard every change the server rejected")
@click.pass_context
def discard(ctx, entity_type: Optional[str], entity_id: Optional[str], errored: bool):
    """Give up on pending changes for ENTITY_TYPE ENTITY_ID."""
    service = get_service(ctx)
    if errored:
        removed = service.discard_errored()
    elif entity_type and entity_id:
        removed = 0
        for candidate in _id_candidates(entity_id):
            removed += service.discard_change(entity_type, candidate)
    else:
        raise click.UsageError("Pass ENTITY_TYPE and ENTITY_ID, or --errored")
    console.print(f"Discarded {removed} change(s)")


@sync_group.command("clear")
@click.confirmation_option(prompt="Drop all pending changes and the sync checkpoint?")
@click.pass_context
def clear(ctx):
    """Drop all local sync state (for logout)."""
    service = get_service(ctx)
    service.clear_all()
    console.print("[green]Local sync state cleared[/green]")


@main.group(name="config")
def config_group():
    """Show or change settings."""
    pass


@config_group.command("show")
@click.pass_context
def config_show(ctx):
    settings: SyncSettings = ctx.obj['settings']
    data = settings.model_dump()
    if data.get('auth_token'):
        data['auth_token'] = '***'
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=True))


@config_group.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def config_set(ctx, key: str, value: str):
    """Set KEY to VALUE (parsed as YAML) and save."""
    manager: ConfigManager = ctx.obj['config_manager']
    try:
        manager.update_setting(key, yaml.safe_load(value))
    except (KeyError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(1)
    console.print(f"[green]{key} updated[/green]")


if __name__ == "__main__":
    main()
