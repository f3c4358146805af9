#!/usr/bin/env python3
"""
Command-line interface for the GxP e-log.

Every command that touches records authenticates with ``--username`` and a
prompted password; each invocation is one audited session (LOGIN ... LOGOUT).
"""

import logging
import sys
from contextlib import contextmanager
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import click
import pandas as pd  # type: ignore[import-untyped]
import yaml  # type: ignore[import-untyped]
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .access_control import ActingUser, Role
from .audit_trail import AuditQuery, AuditRecord, EntityType
from .config import ELogConfig, get_config, set_config
from .database import Database
from .exceptions import ELogError
from .logbook.entities import ActivityType, EquipmentStatus, LogEntryStatus, PMFrequency
from .logbook.maintenance import PMDisplayStatus
from .logbook.mutations import MarkedOffline
from .logbook.service import ELogService

console = Console()
err_console = Console(stderr=True)

logger = logging.getLogger(__name__)

STATUS_STYLES = {
    LogEntryStatus.DRAFT.value: "yellow",
    LogEntryStatus.SUBMITTED.value: "blue",
    LogEntryStatus.APPROVED.value: "green",
    PMDisplayStatus.OVERDUE.value: "red",
    PMDisplayStatus.DUE_TODAY.value: "dark_orange",
    PMDisplayStatus.UPCOMING.value: "blue",
    PMDisplayStatus.COMPLETED.value: "green",
}


def _styled(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


@contextmanager
def _errors() -> Iterator[None]:
    """Print e-log errors in red and exit with status 1."""
    try:
        yield
    except ELogError as e:
        logger.debug(f"{e.__class__.__name__}: {e.message}")
        _fail(e.message)


def _service(ctx: click.Context) -> ELogService:
    obj = ctx.ensure_object(dict)
    if "service" not in obj:
        config = get_config()
        obj["service"] = ELogService(Database.from_config(config), config)
    service: ELogService = obj["service"]
    return service


@contextmanager
def _session(ctx: click.Context, username: str, password: str) -> Iterator[ActingUser]:
    """Log in for the duration of one command."""
    service = _service(ctx)
    with _errors():
        actor = service.login(username, password)
    try:
        yield actor
    finally:
        with _errors():
            service.logout(actor)


def username_option(func: Any) -> Any:
    func = click.option(
        "--password",
        prompt=True,
        hide_input=True,
        help="Password (prompted when omitted)",
    )(func)
    func = click.option("--username", "-u", required=True, help="Your username")(func)
    return func


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option("--database-url", envvar="ELOG_DATABASE_URL", help="SQLAlchemy URL")
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.option("--log-level", help="Override the configured log level")
@click.pass_context
def cli(
    ctx: click.Context,
    database_url: Optional[str],
    config_file: Optional[str],
    log_level: Optional[str],
) -> None:
    """GxP E-Log - electronic logbook with audit trail and e-signatures."""
    try:
        config = ELogConfig.from_file(config_file) if config_file else get_config()
        overrides: Dict[str, Any] = {}
        if database_url:
            overrides["database_url"] = database_url
        if log_level:
            overrides["log_level"] = log_level
        if overrides:
            config = ELogConfig(**{**config.to_dict(), **overrides})
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")
        return
    set_config(config)

    logging.basicConfig(
        level=config.log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )

    ctx.ensure_object(dict)
    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]{config.application_name}[/bold blue] v{__version__}\n"
                "[dim]Electronic logbook for regulated manufacturing[/dim]\n\n"
                "Use [bold]elog --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database tables and the default admin account."""
    service = _service(ctx)
    with _errors():
        service.database.create_all()
        admin = service.ensure_admin_user()

    console.print(f"[green]✓[/green] Database initialized: {service.database.url}")
    if admin:
        console.print(
            f"[yellow]⚠ Default admin account '{admin.username}' created - "
            "change its password[/yellow]"
        )


# Configuration


@cli.group()
def config() -> None:
    """Inspect e-log configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    config_dict = get_config().to_dict()
    config_dict.pop("seed_admin_password", None)

    if format == "json":
        console.print_json(data=config_dict)
    elif format == "yaml":
        console.print(yaml.safe_dump(config_dict, default_flow_style=False))
    else:
        table = Table(title="E-Log Configuration", show_header=True)
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")

        categories = {
            "General": ["application_name", "environment", "timezone", "log_level"],
            "Persistence": ["database_url", "echo_sql"],
            "Identity": [
                "password_scheme",
                "password_min_length",
                "seed_admin",
                "seed_admin_username",
                "user_admin_roles",
            ],
            "Electronic Signatures": [
                "approver_roles",
                "submit_reasons",
                "approve_reasons",
            ],
            "Audit Trail": [
                "audit_default_limit",
                "audit_max_limit",
                "checksum_algorithm",
            ],
        }

        for category, settings in categories.items():
            table.add_row(f"[bold]{category}[/bold]", "")
            for setting in settings:
                value = config_dict.get(setting)
                if isinstance(value, bool):
                    value = "✓" if value else "✗"
                elif isinstance(value, list):
                    value = "\n".join(str(item) for item in value)
                table.add_row(f"  {setting}", str(value))

        console.print(table)


@config.command("validate")
def config_validate() -> None:
    """Check the configuration for settings unsuitable for GxP use."""
    config = get_config()
    issues: List[str] = []
    warnings: List[str] = []

    if config.environment == "production":
        if config.seed_admin and config.seed_admin_password == "admin":
            issues.append("Default admin password must be changed in production")
        if config.database_url.startswith("sqlite"):
            warnings.append("SQLite is not recommended for production")
    if config.password_min_length < 12:
        warnings.append("Consider increasing password minimum length to 12+ characters")
    if Role.QA.value not in config.approver_roles:
        warnings.append("QA is not an approver role")

    if issues:
        console.print("[red]✗ Configuration validation failed:[/red]")
        for issue in issues:
            console.print(f"  [red]• {issue}[/red]")
    else:
        console.print("[green]✓ Configuration is valid[/green]")

    if warnings:
        console.print("\n[yellow]⚠ Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"  [yellow]• {warning}[/yellow]")

    if issues:
        sys.exit(1)


# Users


@cli.group()
def user() -> None:
    """Manage user accounts (Admin only)."""
    pass


@user.command("create")
@click.argument("new_username")
@click.option("--full-name", required=True)
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role]),
    default=Role.OPERATOR.value,
    show_default=True,
)
@click.option("--department")
@click.option(
    "--new-password",
    prompt=True,
    hide_input=True,
    confirmation_prompt=True,
    help="Password of the new account",
)
@username_option
@click.pass_context
def user_create(
    ctx: click.Context,
    new_username: str,
    full_name: str,
    role: str,
    department: Optional[str],
    new_password: str,
    username: str,
    password: str,
) -> None:
    """Create a user account."""
    with _session(ctx, username, password) as actor, _errors():
        created = _service(ctx).create_user(
            actor,
            {
                "username": new_username,
                "password": new_password,
                "full_name": full_name,
                "role": role,
                "department": department,
            },
        )
    console.print(
        f"[green]✓[/green] Created user {created.username} ({created.role})"
    )


@user.command("list")
@username_option
@click.pass_context
def user_list(ctx: click.Context, username: str, password: str) -> None:
    """List user accounts."""
    with _session(ctx, username, password) as actor, _errors():
        users = _service(ctx).list_users(actor)

    table = Table(title="Users")
    table.add_column("Username", style="cyan")
    table.add_column("Full Name")
    table.add_column("Role", style="yellow")
    table.add_column("Department")
    table.add_column("Active")
    for u in users:
        table.add_row(
            u.username,
            u.full_name,
            u.role,
            u.department or "",
            "[green]✓[/green]" if u.is_active else "[red]✗[/red]",
        )
    console.print(table)


@user.command("deactivate")
@click.argument("user_ref")
@username_option
@click.pass_context
def user_deactivate(
    ctx: click.Context, user_ref: str, username: str, password: str
) -> None:
    """Deactivate a user account. Accounts are never deleted."""
    with _session(ctx, username, password) as actor, _errors():
        deactivated = _service(ctx).deactivate_user(actor, user_ref)
    console.print(f"[green]✓[/green] Deactivated user {deactivated.username}")


# Equipment


@cli.group()
def equipment() -> None:
    """Manage equipment."""
    pass


@equipment.command("add")
@click.argument("equipment_id")
@click.option("--name", required=True)
@click.option("--type", "equipment_type", required=True)
@click.option("--location", required=True)
@click.option("--manufacturer")
@click.option("--model")
@click.option("--serial-number")
@click.option("--pm-frequency", type=click.Choice([f.value for f in PMFrequency]))
@click.option("--description")
@username_option
@click.pass_context
def equipment_add(
    ctx: click.Context,
    equipment_id: str,
    name: str,
    equipment_type: str,
    location: str,
    manufacturer: Optional[str],
    model: Optional[str],
    serial_number: Optional[str],
    pm_frequency: Optional[str],
    description: Optional[str],
    username: str,
    password: str,
) -> None:
    """Register a piece of equipment."""
    with _session(ctx, username, password) as actor, _errors():
        created = _service(ctx).create_equipment(
            actor,
            {
                "equipment_id": equipment_id,
                "name": name,
                "type": equipment_type,
                "location": location,
                "manufacturer": manufacturer,
                "model": model,
                "serial_number": serial_number,
                "pm_frequency": pm_frequency,
                "description": description,
            },
        )
    console.print(f"[green]✓[/green] Added equipment {created.equipment_id}")


@equipment.command("list")
@click.option("--status", type=click.Choice([s.value for s in EquipmentStatus]))
@username_option
@click.pass_context
def equipment_list(
    ctx: click.Context, status: Optional[str], username: str, password: str
) -> None:
    """List equipment."""
    with _session(ctx, username, password) as actor, _errors():
        items = _service(ctx).list_equipment(actor, status=status)

    table = Table(title="Equipment")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Location")
    table.add_column("Status")
    for item in items:
        style = "red" if item.status == EquipmentStatus.OFFLINE.value else "green"
        table.add_row(
            item.equipment_id,
            item.name,
            item.type,
            item.location,
            f"[{style}]{item.status}[/{style}]",
        )
    console.print(table)


@equipment.command("delete")
@click.argument("equipment_ref")
@username_option
@click.pass_context
def equipment_delete(
    ctx: click.Context, equipment_ref: str, username: str, password: str
) -> None:
    """Delete equipment, or take it Offline if records refer to it."""
    with _session(ctx, username, password) as actor, _errors():
        outcome = _service(ctx).delete_equipment(actor, equipment_ref)

    if isinstance(outcome, MarkedOffline):
        console.print(
            f"[yellow]⚠ Equipment {outcome.equipment.equipment_id} is referenced by "
            f"{outcome.dependent_log_entries} log entries and "
            f"{outcome.dependent_pm_schedules} PM schedules; marked Offline[/yellow]"
        )
    else:
        console.print(
            f"[green]✓[/green] Equipment {outcome.equipment.equipment_id} "
            "decommissioned"
        )


# Log entries


def _parse_readings(readings: Tuple[str, ...]) -> Optional[Dict[str, float]]:
    if not readings:
        return None
    parsed: Dict[str, float] = {}
    for reading in readings:
        name, sep, value = reading.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(
                f"'{reading}' is not NAME=VALUE", param_hint="--reading"
            )
        try:
            parsed[name.strip()] = float(value)
        except ValueError:
            raise click.BadParameter(
                f"'{value}' is not a number", param_hint="--reading"
            ) from None
    return parsed


@cli.group()
def log() -> None:
    """Create, sign and list log entries."""
    pass


@log.command("create")
@click.option("--equipment", "equipment_ref", required=True, help="Equipment ID")
@click.option(
    "--activity", type=click.Choice([a.value for a in ActivityType]), required=True
)
@click.option("--description", required=True)
@click.option(
    "--start", "start_time", type=click.DateTime(), default=None, help="Default: now"
)
@click.option("--end", "end_time", type=click.DateTime())
@click.option("--batch", "batch_number")
@click.option("--reading", "readings", multiple=True, help="NAME=VALUE, repeatable")
@username_option
@click.pass_context
def log_create(
    ctx: click.Context,
    equipment_ref: str,
    activity: str,
    description: str,
    start_time: Optional[datetime],
    end_time: Optional[datetime],
    batch_number: Optional[str],
    readings: Tuple[str, ...],
    username: str,
    password: str,
) -> None:
    """Create a Draft log entry."""
    parsed_readings = _parse_readings(readings)
    with _session(ctx, username, password) as actor, _errors():
        entry = _service(ctx).create_log_entry(
            actor,
            {
                "equipment_id": equipment_ref,
                "activity_type": activity,
                "description": description,
                "start_time": start_time or datetime.now(),
                "end_time": end_time,
                "batch_number": batch_number,
                "readings": parsed_readings,
            },
        )
    console.print(f"[green]✓[/green] Created log entry {entry.log_id} (Draft)")


@log.command("list")
@click.option("--status", type=click.Choice([s.value for s in LogEntryStatus]))
@click.option("--equipment", "equipment_ref", help="Equipment ID")
@click.option("--limit", type=int, default=50, show_default=True)
@username_option
@click.pass_context
def log_list(
    ctx: click.Context,
    status: Optional[str],
    equipment_ref: Optional[str],
    limit: int,
    username: str,
    password: str,
) -> None:
    """List log entries, newest first."""
    with _session(ctx, username, password) as actor, _errors():
        entries = _service(ctx).list_log_entries(
            actor, status=status, equipment_ref=equipment_ref, limit=limit
        )

    table = Table(title=f"Log Entries ({len(entries)})")
    table.add_column("Log ID", style="cyan")
    table.add_column("Activity")
    table.add_column("Start", style="dim")
    table.add_column("Description")
    table.add_column("Status")
    for entry in entries:
        table.add_row(
            entry.log_id,
            entry.activity_type,
            entry.start_time.strftime("%Y-%m-%d %H:%M"),
            entry.description,
            _styled(entry.status),
        )
    console.print(table)


def _sign(
    ctx: click.Context,
    action: str,
    entry_ref: str,
    reason: str,
    username: str,
    password: str,
) -> None:
    """Sign with the credentials the session was opened with."""
    with _session(ctx, username, password) as actor, _errors():
        service = _service(ctx)
        sign = (
            service.submit_log_entry
            if action == "submit"
            else service.approve_log_entry
        )
        entry = sign(actor, entry_ref, username, password, reason)
    console.print(
        f"[green]✓[/green] Log entry {entry.log_id} is now {_styled(entry.status)}"
    )


@log.command("submit")
@click.argument("entry_ref")
@click.option("--reason", required=True, help="Declared signing reason")
@username_option
@click.pass_context
def log_submit(
    ctx: click.Context, entry_ref: str, reason: str, username: str, password: str
) -> None:
    """Sign and submit a Draft entry."""
    _sign(ctx, "submit", entry_ref, reason, username, password)


@log.command("approve")
@click.argument("entry_ref")
@click.option("--reason", required=True, help="Declared signing reason")
@username_option
@click.pass_context
def log_approve(
    ctx: click.Context, entry_ref: str, reason: str, username: str, password: str
) -> None:
    """Sign and approve a Submitted entry (QA or Admin)."""
    _sign(ctx, "approve", entry_ref, reason, username, password)


# Preventive maintenance


@cli.group()
def pm() -> None:
    """Preventive maintenance schedules."""
    pass


@pm.command("add")
@click.option("--equipment", "equipment_ref", required=True, help="Equipment ID")
@click.option("--task", "task_name", required=True)
@click.option(
    "--frequency", type=click.Choice([f.value for f in PMFrequency]), required=True
)
@click.option("--last-completed", type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--next-due", type=click.DateTime(formats=["%Y-%m-%d"]))
@username_option
@click.pass_context
def pm_add(
    ctx: click.Context,
    equipment_ref: str,
    task_name: str,
    frequency: str,
    last_completed: Optional[datetime],
    next_due: Optional[datetime],
    username: str,
    password: str,
) -> None:
    """Schedule a maintenance task."""
    with _session(ctx, username, password) as actor, _errors():
        schedule = _service(ctx).create_pm_schedule(
            actor,
            {
                "equipment_id": equipment_ref,
                "task_name": task_name,
                "frequency": frequency,
                "last_completed": last_completed.date() if last_completed else None,
                "next_due": next_due.date() if next_due else None,
            },
        )
    console.print(
        f"[green]✓[/green] Scheduled {schedule.task_name} ({schedule.id}), "
        f"next due {schedule.next_due}"
    )


@pm.command("list")
@click.option("--equipment", "equipment_ref", help="Equipment ID")
@username_option
@click.pass_context
def pm_list(
    ctx: click.Context, equipment_ref: Optional[str], username: str, password: str
) -> None:
    """List maintenance tasks by due date."""
    with _session(ctx, username, password) as actor, _errors():
        schedules = _service(ctx).list_pm_schedules(actor, equipment_ref=equipment_ref)

    table = Table(title="Preventive Maintenance")
    table.add_column("ID", style="dim")
    table.add_column("Task", style="cyan")
    table.add_column("Frequency")
    table.add_column("Last Completed")
    table.add_column("Next Due")
    table.add_column("Status")
    for s in schedules:
        table.add_row(
            s.id,
            s.task_name,
            s.frequency,
            str(s.last_completed or "-"),
            str(s.next_due),
            _styled(s.display_status.value),
        )
    console.print(table)


@pm.command("complete")
@click.argument("schedule_id")
@click.option(
    "--date",
    "completed_on",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Completion date, default today",
)
@username_option
@click.pass_context
def pm_complete(
    ctx: click.Context,
    schedule_id: str,
    completed_on: Optional[datetime],
    username: str,
    password: str,
) -> None:
    """Record completion of a maintenance task."""
    completed: Optional[date] = completed_on.date() if completed_on else None
    with _session(ctx, username, password) as actor, _errors():
        schedule = _service(ctx).complete_pm_task(actor, schedule_id, completed)
    console.print(
        f"[green]✓[/green] {schedule.task_name} completed, "
        f"next due {schedule.next_due}"
    )


# Audit trail


@cli.group()
def audit() -> None:
    """Audit trail review and export."""
    pass


@audit.command("trail")
@click.option("--limit", type=int, default=None, help="Default: configured limit")
@username_option
@click.pass_context
def audit_trail(
    ctx: click.Context, limit: Optional[int], username: str, password: str
) -> None:
    """Show the most recent audit records."""
    with _session(ctx, username, password) as actor, _errors():
        records = _service(ctx).audit_trail(actor, limit=limit)

    table = Table(title=f"Audit Trail ({len(records)} records)")
    table.add_column("#", style="dim")
    table.add_column("Timestamp", style="cyan")
    table.add_column("User", style="green")
    table.add_column("Action", style="yellow")
    table.add_column("Entity", style="blue")
    table.add_column("Reason")
    for record in records:
        table.add_row(
            str(record.id),
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.user_id,
            str(record.action),
            f"{record.entity_type}:{record.entity_id or '-'}",
            record.reason or "",
        )
    console.print(table)


@audit.command("history")
@click.argument("entity_type", type=click.Choice([t.value for t in EntityType]))
@click.argument("entity_id")
@username_option
@click.pass_context
def audit_history(
    ctx: click.Context, entity_type: str, entity_id: str, username: str, password: str
) -> None:
    """Show every audit record of one entity, oldest first."""
    with _session(ctx, username, password) as actor, _errors():
        records = _service(ctx).entity_history(actor, entity_type, entity_id)

    if not records:
        console.print(
            f"[yellow]No audit records for {entity_type} {entity_id}[/yellow]"
        )
        return

    for record in records:
        console.print(record.to_log_format())


@audit.command("verify")
@username_option
@click.pass_context
def audit_verify(ctx: click.Context, username: str, password: str) -> None:
    """Recompute audit record checksums."""
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
    ) as progress:
        progress.add_task("Verifying audit trail integrity...", total=None)
        with _session(ctx, username, password) as actor, _errors():
            results = _service(ctx).verify_integrity(actor)
        progress.stop()

    if results["invalid"]:
        console.print(
            f"[red]✗ {results['invalid']} of {results['total_checked']} audit "
            "records failed verification[/red]"
        )
        for item in results["invalid_records"]:
            console.print(f"  [red]• record {item['id']} ({item['timestamp']})[/red]")
        sys.exit(1)

    console.print(
        f"[green]✓ All {results['total_checked']} audit records verified[/green]"
    )


@audit.command("export")
@click.option("--output", type=click.Path(), required=True, help="Output file path")
@click.option("--format", type=click.Choice(["json", "csv", "excel"]), default="csv")
@click.option("--start-date", type=click.DateTime(), help="Start of time range")
@click.option("--end-date", type=click.DateTime(), help="End of time range")
@username_option
@click.pass_context
def audit_export(
    ctx: click.Context,
    output: str,
    format: str,
    start_date: Optional[datetime],
    end_date: Optional[datetime],
    username: str,
    password: str,
) -> None:
    """Export the audit trail for compliance reporting."""
    with _session(ctx, username, password) as actor, _errors():
        service = _service(ctx)
        page_size = service.config.audit_max_limit
        query = AuditQuery(
            start_date=start_date,
            end_date=end_date,
            limit=page_size,
            sort_desc=False,
        )
        records: List[AuditRecord] = []
        while True:
            page = service.query_audit(
                actor, query.model_copy(update={"offset": len(records)})
            )
            records.extend(page)
            if len(page) < page_size:
                break

    df = pd.DataFrame([record.to_dict() for record in records])

    output_path = Path(output)
    if format == "json":
        df.to_json(output_path, orient="records", date_format="iso", indent=2)
    elif format == "excel":
        df.to_excel(output_path, index=False, engine="openpyxl")
    else:  # csv
        df.to_csv(output_path, index=False)

    console.print(
        f"[green]✓ Exported {len(records)} audit records to {output_path}[/green]"
    )


if __name__ == "__main__":
    cli()
