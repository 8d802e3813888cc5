"""Command-line interface for the mail spool.

The commands work on the spool root directly, so they are usable while the
server is running or stopped.

Usage:
    mail-spool serve
    mail-spool stats
    mail-spool list failed
    mail-spool show failed 20250101-120000123456_0123456789abcdef.json
    mail-spool resubmit 20250101-120000123456_0123456789abcdef.json
    mail-spool sweep
    mail-spool enqueue message.json

Every command accepts ``--config`` (default: ``$MSP_CONFIG`` or config.ini)
and ``--root`` to point at another spool root.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Optional

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config_loader import load_settings, retention_policy
from .errors import MalformedJobError, SpoolError
from .logger import configure_logging
from .models import EmailRequest
from .retention import RetentionSweeper
from .spool import JobState, SpoolStore

console = Console()
err_console = Console(stderr=True)

STATE_CHOICE = click.Choice([state.value for state in JobState])


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def open_store(settings: Dict[str, Any]) -> SpoolStore:
    """Create a SpoolStore for the configured root."""
    return SpoolStore(
        settings["spool_root"],
        idempotency_hours=int(settings.get("idempotency_hours") or 24),
        max_body_chars=int(settings.get("max_body_chars") or 200_000),
        max_subject_chars=int(settings.get("max_subject_chars") or 300),
    )


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Path to config.ini.")
@click.option("--root", "spool_root", type=click.Path(file_okay=False), default=None,
              help="Spool root directory (overrides the configuration).")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], spool_root: Optional[str]) -> None:
    """Durable filesystem mail spool."""
    settings = load_settings(config_path)
    if spool_root:
        settings["spool_root"] = str(Path(spool_root).expanduser())
    ctx.obj = settings


@main.command("serve")
@click.pass_obj
def serve(settings: Dict[str, Any]) -> None:
    """Run the HTTP API with the delivery and retention loops."""
    from .server import run

    configure_logging(str(settings.get("log_level") or "INFO"), settings.get("log_directory"))
    run(settings)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def stats(settings: Dict[str, Any], as_json: bool) -> None:
    """Show the number of jobs in each state."""
    data = open_store(settings).stats().as_dict()
    if as_json:
        print_json(data)
        return

    table = Table(title=f"Spool {settings['spool_root']}")
    table.add_column("State", style="cyan")
    table.add_column("Jobs", justify="right")
    for state in JobState:
        count = data[state.value]
        table.add_row(state.value, "[red]?[/red]" if count < 0 else str(count))
    console.print(table)


@main.command("list")
@click.argument("state", type=STATE_CHOICE)
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_obj
def list_jobs(settings: Dict[str, Any], state: str, as_json: bool) -> None:
    """List the jobs in STATE, oldest first."""
    store = open_store(settings)
    try:
        handles = store.list_jobs(JobState(state))
    except SpoolError as e:
        print_error(str(e))
        raise SystemExit(1)

    rows = []
    for handle in handles:
        try:
            job = store.load_job(handle)
        except SpoolError as e:
            rows.append({"name": handle.name, "requestId": None, "subject": None, "to": None, "error": str(e)})
            continue
        rows.append({
            "name": handle.name,
            "requestId": job.request_id,
            "subject": job.subject,
            "to": ", ".join(job.to_emails),
            "error": None,
        })

    if as_json:
        print_json(rows)
        return
    if not rows:
        console.print(f"[dim]No {state} jobs.[/dim]")
        return

    table = Table(title=f"{state.capitalize()} jobs")
    table.add_column("Name", style="cyan")
    table.add_column("Request ID")
    table.add_column("To")
    table.add_column("Subject")
    for row in rows:
        if row["error"]:
            table.add_row(row["name"], "[red]unreadable[/red]", "", escape(row["error"]))
        else:
            table.add_row(
                row["name"],
                escape(row["requestId"]) if row["requestId"] else "[dim]derived[/dim]",
                escape(row["to"]),
                escape(row["subject"] or ""),
            )
    console.print(table)


@main.command("show")
@click.argument("state", type=STATE_CHOICE)
@click.argument("name")
@click.pass_obj
def show(settings: Dict[str, Any], state: str, name: str) -> None:
    """Print the stored record of one job."""
    store = open_store(settings)
    try:
        job = store.load_job(store.get_job(JobState(state), name))
    except FileNotFoundError:
        print_error(f"Job '{name}' not found in {state}")
        raise SystemExit(1)
    except SpoolError as e:
        print_error(str(e))
        raise SystemExit(1)
    print_json(job.to_record())


@main.command("resubmit")
@click.argument("name")
@click.pass_obj
def resubmit(settings: Dict[str, Any], name: str) -> None:
    """Move a failed job back into the queue."""
    store = open_store(settings)
    try:
        result = store.resubmit_failed(name)
    except FileNotFoundError:
        print_error(f"Job '{name}' not found in failed")
        raise SystemExit(1)
    except MalformedJobError as e:
        print_error(f"Cannot resubmit: {e}")
        raise SystemExit(1)
    except SpoolError as e:
        print_error(str(e))
        raise SystemExit(1)

    if result.duplicate:
        console.print(f"[yellow]Request {result.request_id} was already delivered today; not queued.[/yellow]")
    else:
        print_success(f"Queued as {result.job.name}")


@main.command("sweep")
@click.pass_obj
def sweep(settings: Dict[str, Any]) -> None:
    """Run one retention pass now."""
    policy = retention_policy(settings)
    report = RetentionSweeper(open_store(settings), policy).run_once()

    table = Table(title="Retention sweep")
    table.add_column("Category", style="cyan")
    table.add_column("Removed", justify="right")
    for category, count in report.deleted.items():
        table.add_row(category, str(count))
    table.add_row("queued -> failed", str(report.expired))
    if report.skipped:
        table.add_row("[yellow]skipped[/yellow]", str(report.skipped))
    console.print(table)


@main.command("enqueue")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def enqueue(settings: Dict[str, Any], file: str) -> None:
    """Queue the email described by a JSON FILE.

    The file uses the same fields as ``POST /email``.
    """
    try:
        data = json.loads(Path(file).read_text(encoding="utf-8"))
        request = EmailRequest.model_validate(data).normalized()
    except (json.JSONDecodeError, ValidationError) as e:
        print_error(f"Invalid request file: {e}")
        raise SystemExit(1)

    store = open_store(settings)
    error = request.validation_error(
        max_subject_chars=store.max_subject_chars,
        max_body_chars=store.max_body_chars,
    )
    if error:
        print_error(error)
        raise SystemExit(1)

    try:
        result = store.enqueue(request, "cli")
    except SpoolError as e:
        print_error(str(e))
        raise SystemExit(1)

    if result.duplicate:
        console.print(f"[yellow]Duplicate:[/yellow] {result.request_id} was already delivered today")
    else:
        print_success(f"Queued {result.job.name} (requestId {result.request_id})")


if __name__ == "__main__":
    main()
