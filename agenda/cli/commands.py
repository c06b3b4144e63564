"""Operator CLI for the export server."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from agenda.clock import SystemClock, to_iso

app = typer.Typer(help="Agenda scheduled export server", no_args_is_help=True)
console = Console()


def _async_run(coro):
    """Run an async coroutine."""
    return asyncio.run(coro)


@app.command()
def serve() -> None:
    """Start the API server and the trigger loop."""
    from agenda.main import run

    run()


@app.command("issue-key")
def issue_key() -> None:
    """Issue a new API key. It is printed once and cannot be recovered."""
    from agenda.database import close_db, init_db
    from agenda.security.credentials import CredentialStore

    async def _issue():
        await init_db()
        try:
            return await CredentialStore().issue()
        finally:
            await close_db()

    credential, api_key = _async_run(_issue())
    console.print(f"[green]✓[/green] Credential [bold]{credential.id}[/bold] created")
    console.print(f"  API key: [bold yellow]{api_key}[/bold yellow]")
    console.print("  [dim]Store it now. Only its hash is kept.[/dim]")


@app.command()
def pending(
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of schedules to show"),
) -> None:
    """List schedules that have not been executed yet, earliest first."""
    from agenda.database import close_db, init_db
    from agenda.modules.schedules.store import ScheduleStore

    async def _list():
        await init_db()
        try:
            return await ScheduleStore().list_pending(limit=limit)
        finally:
            await close_db()

    schedules = _async_run(_list())
    if not schedules:
        console.print("[dim]No pending schedules.[/dim]")
        return

    now = SystemClock().now_ms()
    table = Table(title=f"Pending schedules ({len(schedules)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Due (UTC)")
    table.add_column("Entries", justify="right")
    table.add_column("Recipients", justify="right")
    table.add_column("State")
    for s in schedules:
        if s.running:
            state = "[yellow]running[/yellow]"
        elif s.execution_time <= now:
            state = "[red]overdue[/red]"
        else:
            state = "[green]scheduled[/green]"
        table.add_row(
            s.id, s.name, to_iso(s.execution_time), str(s.entry_count), str(len(s.recipients)), state,
        )
    console.print(table)


@app.command()
def doctor() -> None:
    """Check configuration, storage and delivery channels."""
    console.print("\n[bold cyan]🩺 Agenda Doctor[/bold cyan]\n")
    issues = 0
    warnings = 0

    def ok(msg: str) -> None:
        console.print(f"  [green]✓[/green] {msg}")

    def warn(msg: str) -> None:
        nonlocal warnings
        warnings += 1
        console.print(f"  [yellow]⚠[/yellow] {msg}")

    def fail(msg: str) -> None:
        nonlocal issues
        issues += 1
        console.print(f"  [red]✗[/red] {msg}")

    # ── Environment ──
    console.print("[bold]Environment[/bold]")
    from agenda.config import get_settings

    try:
        settings = get_settings()
        ok(f"Config loaded (env={settings.agenda_env})")
    except Exception as exc:
        fail(f"Config failed: {exc}")
        raise typer.Exit(code=1)

    if Path(".env").exists():
        ok(".env file found")
    else:
        warn(".env file missing, using defaults")

    # ── Security ──
    console.print("\n[bold]Security[/bold]")
    if settings.agenda_api_key_salt == "change-me":
        warn("AGENDA_API_KEY_SALT is the default value")
    else:
        ok("API key salt configured")
    if settings.agenda_unattended_execution:
        if settings.agenda_custody_key:
            from agenda.security.encryption import KeyCustody

            try:
                KeyCustody(settings.agenda_custody_key, persist=False)
                ok("Custody key valid (unattended execution enabled)")
            except ValueError as exc:
                fail(str(exc))
        else:
            warn("AGENDA_CUSTODY_KEY not set; one will be generated on first start")
    else:
        ok("Unattended execution disabled; manual runs need the passphrase")

    # ── Database ──
    console.print("\n[bold]Database[/bold]")
    if settings.database_url.startswith("sqlite"):
        db_path = Path(settings.database_url.split("///", 1)[-1])
        if db_path.exists():
            ok(f"SQLite DB exists ({db_path.stat().st_size / 1024 / 1024:.1f} MB): {db_path}")
        else:
            warn(f"SQLite DB not found: {db_path} (will be created on first run)")
    else:
        ok(f"Database URL: {settings.database_url.split('@')[-1]}")

    # ── Delivery ──
    console.print("\n[bold]Delivery[/bold]")
    if settings.smtp_configured:
        ok(f"SMTP configured ({settings.smtp_server}:{settings.smtp_port})")
    else:
        warn("SMTP not configured; email recipients will fail")
    if settings.sms_configured:
        ok("Twilio SMS configured")
    else:
        warn("Twilio not configured; SMS recipients will fail")

    console.print()
    if issues:
        console.print(f"[red]{issues} issue(s)[/red], {warnings} warning(s)")
        raise typer.Exit(code=1)
    console.print(f"[green]No issues[/green], {warnings} warning(s)")
