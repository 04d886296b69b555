"""Typer CLI for StageCall."""

from __future__ import annotations

import json
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
import typer
import uvicorn

from .config import (
    load_settings,
    settings,
    settings_as_dict,
    update_config_file,
)
from .crud import create_member, get_member, rotate_member_token
from .database import get_session
from .housekeeping import purge_stale_notifications
from .models import Member
from .seed import seed_fake_data
from .storage import init_db, upgrade_database

app = typer.Typer(help="StageCall command-line interface")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Show help when no subcommand is provided."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())
        raise typer.Exit()


def _exit_if_readonly(exc: OperationalError, action: str) -> None:
    message = str(getattr(exc, "orig", exc)).lower()
    if "readonly" in message or "read-only" in message:
        typer.secho(
            f"Unable to {action} because the database is read-only. "
            f"Ensure write access to {settings.database_path}.",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@app.command("upgrade-db")
def upgrade_db(
    no_backup: bool = typer.Option(
        False,
        "--no-backup",
        help="Skip creating a .bak copy of the database before upgrading",
    ),
) -> None:
    """Upgrade the SQLite database schema if needed."""
    try:
        actions = upgrade_database(make_backup=not no_backup)
    except OperationalError as exc:
        _exit_if_readonly(exc, "upgrade")
        raise

    if not actions:
        typer.echo("Database already up to date.")
        return

    typer.echo("Database upgrade complete:")
    for action in actions:
        typer.echo(f"- {action}")


@app.command("runserver")
def runserver(
    host: str = typer.Option(settings.app_host, "--host", help="Host to bind"),
    port: int = typer.Option(settings.app_port, "--port", help="Port to bind"),
):
    """Start the FastAPI app; the housekeeping scheduler runs inside it."""
    init_db()
    config = uvicorn.Config(
        "stagecall.api:app",
        host=host,
        port=port,
        reload=False,
        proxy_headers=True,
        forwarded_allow_ips="*",
    )
    server = uvicorn.Server(config)
    typer.echo(f"Starting StageCall on {host}:{port}")
    server.run()


@app.command("add-member")
def add_member(
    name: str = typer.Argument(..., help="Display name"),
    role: str = typer.Option("member", "--role", help="Primary role"),
    email: str | None = typer.Option(None, "--email", help="Unique e-mail address"),
    extra_roles: list[str] = typer.Option(
        [], "--extra-role", help="Additional role; repeat for several"
    ),
) -> None:
    """Create a member and print their API token."""
    init_db()
    try:
        with get_session() as session:
            member = create_member(
                session, name=name, role=role, email=email, extra_roles=extra_roles
            )
            member_id, token = member.id, member.api_token
    except IntegrityError as exc:
        typer.secho(
            f"Could not create member: {getattr(exc, 'orig', exc)}",
            err=True,
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)
    typer.echo(f"Member {member_id} created.")
    typer.echo(token)


@app.command("member-token")
def member_token(
    identifier: str = typer.Argument(..., help="Member id or e-mail address"),
    rotate: bool = typer.Option(False, "--rotate", help="Issue a fresh token"),
) -> None:
    """Print (or rotate) a member's API token."""
    init_db()
    try:
        with get_session() as session:
            member = get_member(session, identifier) or session.scalars(
                select(Member).where(Member.email == identifier.strip().lower())
            ).first()
            if member is None:
                typer.secho(f"No member matches {identifier!r}", err=True, fg=typer.colors.RED)
                raise typer.Exit(code=1)
            token = rotate_member_token(session, member) if rotate else member.api_token
    except OperationalError as exc:
        _exit_if_readonly(exc, "rotate the member token")
        raise
    typer.echo(token)


@app.command("seed-data")
def seed_data(
    members: int = typer.Option(
        settings.seed_members, "--members", min=0, help="Number of members to create"
    ),
    blocked_days: int = typer.Option(
        3,
        "--blocked-days",
        min=0,
        help="Maximum blocked days to add per member",
    ),
):
    """Populate the database with fake members and availability."""
    init_db()
    stats = seed_fake_data(member_count=members, max_blocked_days=blocked_days)
    typer.echo(
        f"Seed complete: {stats['members']} members, "
        f"{stats['planners']} planners, {stats['blocked_days']} blocked days created."
    )


@app.command("cleanup-notifications")
def cleanup_notifications() -> None:
    """Delete attendance notices of rehearsals past the retention window."""
    init_db()
    stats = purge_stale_notifications()
    typer.echo(f"Cleanup complete: {stats}")


@app.command("config")
def configure(
    show: bool = typer.Option(
        False, "--show", help="Show the current effective configuration"
    ),
    default_title: str | None = typer.Option(
        None, "--default-title", help="Title used for new drafts"
    ),
    default_location: str | None = typer.Option(
        None, "--default-location", help="Location used when none is given"
    ),
    default_duration_hours: int | None = typer.Option(
        None, "--default-duration-hours", min=1, help="Default rehearsal length"
    ),
    default_deadline_option: str | None = typer.Option(
        None,
        "--default-deadline-option",
        help="Registration deadline for new rehearsals (none, 12h, 24h, 48h, 72h, 1w, 2w)",
    ),
    time_zone: str | None = typer.Option(
        None, "--time-zone", help="IANA zone for local dates and times"
    ),
    planner_roles: str | None = typer.Option(
        None,
        "--planner-roles",
        help="Comma separated roles allowed to manage the schedule",
    ),
    push_webhook_url: str | None = typer.Option(
        None, "--push-webhook-url", help="HTTP endpoint receiving push notifications"
    ),
    push_timeout_seconds: float | None = typer.Option(
        None, "--push-timeout-seconds", min=0.1, help="Timeout per push request"
    ),
    notification_retention_days: int | None = typer.Option(
        None,
        "--notification-retention-days",
        min=1,
        help="Days after a rehearsal ends before its attendance notices are deleted",
    ),
    cleanup_interval_hours: int | None = typer.Option(
        None, "--cleanup-interval-hours", min=1, help="Hours between cleanup runs"
    ),
    enable_scheduler: bool | None = typer.Option(
        None,
        "--enable-scheduler/--disable-scheduler",
        help="Toggle background scheduler (notification cleanup)",
    ),
    notifications_page_size: int | None = typer.Option(
        None, "--notifications-page-size", min=1, help="Notification feed size"
    ),
    seed_members: int | None = typer.Option(
        None, "--seed-members", min=0, help="Default seed-data members"
    ),
    host: str | None = typer.Option(None, "--host", help="Default host for runserver"),
    port: int | None = typer.Option(None, "--port", help="Default port for runserver"),
    config_path: Path | None = typer.Option(
        None, "--config-path", help="Path to stagecall.toml (default: ./stagecall.toml)"
    ),
):
    """View or update the persistent configuration file."""

    updates = {
        "default_title": default_title,
        "default_location": default_location,
        "default_duration_hours": default_duration_hours,
        "default_deadline_option": default_deadline_option,
        "time_zone": time_zone,
        "planner_roles": planner_roles,
        "push_webhook_url": push_webhook_url,
        "push_timeout_seconds": push_timeout_seconds,
        "notification_retention_days": notification_retention_days,
        "cleanup_interval_hours": cleanup_interval_hours,
        "enable_scheduler": enable_scheduler,
        "notifications_page_size": notifications_page_size,
        "seed_members": seed_members,
        "app_host": host,
        "app_port": port,
    }
    clean_updates = {k: v for k, v in updates.items() if v is not None}

    settings_ref = settings
    target_path = config_path or settings.config_path
    if clean_updates:
        settings_ref = update_config_file(clean_updates, path=target_path)
        typer.echo(f"Updated configuration in {target_path}")
    else:
        settings_ref = load_settings(target_path)
    if show or not clean_updates:
        effective = settings_as_dict(settings_ref)
        effective["config_path"] = str(target_path)
        typer.echo(json.dumps(effective, indent=2))


if __name__ == "__main__":
    app()
