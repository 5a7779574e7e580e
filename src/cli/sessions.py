"""Session commands.

List, record and edit job sessions. Remote sync happens automatically when
the ``remote`` config section is enabled and a user id is set.
"""

import json
from pathlib import Path
from typing import Any, Dict, List, Optional

import typer

from src.cli.utils import (
    CONFIG_OPTION,
    handle_errors,
    load_config,
    run_with_services,
    display_success,
    display_warning,
    display_error,
    display_info,
    format_timestamp,
)
from src.services.factory import Services

sessions_app = typer.Typer(help="Manage job sessions")


@sessions_app.command(name="list")
@handle_errors
def sessions_list(config_path: Path = CONFIG_OPTION):
    """List sessions, newest first."""
    config = load_config(config_path)

    async def _list(services: Services):
        return await services.sessions.load()

    records = run_with_services(config, _list)

    if not records:
        display_info("No sessions recorded")
        return

    typer.echo(f"{len(records)} sessions:")
    for record in records:
        typer.echo(
            f" - {record.id}  {format_timestamp(record.started_at)}  "
            f"{record.name or '(unnamed)'}  {record.hours:g}h  {record.location}"
        )


@sessions_app.command(name="show")
@handle_errors
def sessions_show(
    session_id: str = typer.Argument(..., help="Session id"),
    config_path: Path = CONFIG_OPTION,
):
    """Print one session as JSON."""
    config = load_config(config_path)

    async def _show(services: Services):
        await services.sessions.load()
        return services.sessions.get(session_id)

    record = run_with_services(config, _show)
    if record is None:
        display_error(f"Session '{session_id}' not found")
        raise typer.Exit(code=1)

    typer.echo(json.dumps(record.to_json_dict(), indent=2))


@sessions_app.command(name="add")
@handle_errors
def sessions_add(
    name: str = typer.Option(..., "--name", "-n", help="Job name"),
    employer: str = typer.Option("", help="Employer"),
    location: str = typer.Option("", help="Location or coordinates"),
    methods: str = typer.Option("", help="Access methods used"),
    coworkers: str = typer.Option("", help="Coworkers on site"),
    notes: str = typer.Option("", help="Free-form notes"),
    height: float = typer.Option(0.0, help="Working height in meters"),
    hours: float = typer.Option(0.0, help="Hours on rope"),
    photo: Optional[List[str]] = typer.Option(
        None, "--photo", help="Photo path or URL (repeatable)"
    ),
    config_path: Path = CONFIG_OPTION,
):
    """Record a new session."""
    config = load_config(config_path)
    data: Dict[str, Any] = {
        "name": name,
        "employer": employer,
        "location": location,
        "methods": methods,
        "coworkers": coworkers,
        "notes": notes,
        "height": height,
        "hours": hours,
        "photos": list(photo or []),
    }

    async def _add(services: Services):
        record = await services.sessions.create(data)
        await services.resolver.prefetch(record.remote_photos)
        return record

    record = run_with_services(config, _add)
    display_success(f"Session created: {record.id}")


@sessions_app.command(name="edit")
@handle_errors
def sessions_edit(
    session_id: str = typer.Argument(..., help="Session id"),
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    employer: Optional[str] = typer.Option(None),
    location: Optional[str] = typer.Option(None),
    methods: Optional[str] = typer.Option(None),
    coworkers: Optional[str] = typer.Option(None),
    notes: Optional[str] = typer.Option(None),
    height: Optional[float] = typer.Option(None),
    hours: Optional[float] = typer.Option(None),
    config_path: Path = CONFIG_OPTION,
):
    """Change fields of an existing session."""
    config = load_config(config_path)
    changes = {
        k: v
        for k, v in {
            "name": name,
            "employer": employer,
            "location": location,
            "methods": methods,
            "coworkers": coworkers,
            "notes": notes,
            "height": height,
            "hours": hours,
        }.items()
        if v is not None
    }

    if not changes:
        display_warning("Nothing to change")
        return

    async def _edit(services: Services):
        await services.sessions.load()
        current = services.sessions.get(session_id)
        if current is None:
            return None
        return await services.sessions.update(current.model_copy(update=changes))

    record = run_with_services(config, _edit)
    if record is None:
        display_error(f"Session '{session_id}' not found")
        raise typer.Exit(code=1)
    display_success(f"Session updated: {record.id}")


@sessions_app.command(name="delete")
@handle_errors
def sessions_delete(
    session_id: str = typer.Argument(..., help="Session id"),
    config_path: Path = CONFIG_OPTION,
):
    """Delete one session."""
    config = load_config(config_path)

    async def _delete(services: Services):
        return await services.sessions.delete(session_id)

    if run_with_services(config, _delete):
        display_success(f"Session deleted: {session_id}")
    else:
        display_warning(f"Session '{session_id}' not found locally")


@sessions_app.command(name="clear")
@handle_errors
def sessions_clear(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
    config_path: Path = CONFIG_OPTION,
):
    """Delete every session, locally and remotely."""
    if not yes and not typer.confirm("Delete every session?"):
        display_info("Aborted")
        raise typer.Exit(code=0)

    config = load_config(config_path)

    async def _clear(services: Services):
        return await services.sessions.clear_all()

    count = run_with_services(config, _clear)
    display_success(f"Deleted {count} sessions")


@sessions_app.command(name="sync")
@handle_errors
def sessions_sync(config_path: Path = CONFIG_OPTION):
    """Merge the remote copy and push local changes."""
    config = load_config(config_path)

    if not config.remote.is_configured or not config.remote.user_id:
        display_warning("Remote sync is not configured; sessions are local-only")
        raise typer.Exit(code=1)

    async def _sync(services: Services):
        records = await services.sessions.load()
        pushed = await services.sessions.sync_pending()
        return len(records), pushed

    total, pushed = run_with_services(config, _sync)
    display_success(f"Synced: {total} sessions, {pushed} pushed")
