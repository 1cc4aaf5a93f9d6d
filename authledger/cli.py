"""
AuthLedger CLI Tool

Operator commands for running the service and maintaining its store.

Usage:
    authledger serve                      - Start the API server
    authledger init-db                    - Create all tables
    authledger sweep                      - Delete expired sessions and tokens
    authledger grant-credits EMAIL AMOUNT - Top up a user's purchased pool
    authledger audit                      - Show recent audit events
"""
import asyncio
import sys

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from authledger import __version__
from authledger.errors import AuthLedgerError

# Load environment variables
load_dotenv()

console = Console()


def run(coro):
    """Run a coroutine, closing the engine afterwards."""
    from authledger.database import close_db

    async def _wrapped():
        try:
            return await coro
        finally:
            await close_db()

    return asyncio.run(_wrapped())


@click.group()
@click.version_option(version=__version__, prog_name="AuthLedger")
def main():
    """
    AuthLedger - authentication, sessions and credits service.
    """
    pass


@main.command()
@click.option("--host", default="127.0.0.1", help="Interface to bind")
@click.option("--port", default=8000, help="Port to run server on")
@click.option("--reload", is_flag=True, help="Reload on code changes")
def serve(host: str, port: int, reload: bool):
    """
    Start the AuthLedger API server.

    Example:
        authledger serve --port 8000
    """
    import uvicorn

    console.print(Panel(
        f"[bold green]Starting AuthLedger v{__version__}[/bold green]\n\n"
        f"API: [cyan]http://{host}:{port}[/cyan]\n"
        f"Health: [cyan]http://{host}:{port}/health[/cyan]\n\n"
        f"[dim]Press Ctrl+C to stop[/dim]",
        border_style="green"
    ))
    uvicorn.run("authledger.main:app", host=host, port=port, reload=reload)


@main.command("init-db")
def init_db_command():
    """Create all tables (idempotent)."""
    from authledger.database import init_db

    run(init_db())
    console.print("[green]✓[/green] Database initialized")


@main.command()
@click.option("--audit-days", type=int, default=None,
              help="Also delete audit events older than this many days")
def sweep(audit_days: int | None):
    """
    Delete expired sessions and spent single-use tokens.

    Example:
        authledger sweep --audit-days 90
    """
    from authledger.auth.audit import AuditRecorder
    from authledger.auth.one_time import OAuthStateStore, OneTimeTokenStore
    from authledger.auth.sessions import SessionStore
    from authledger.database import get_session

    async def _sweep():
        async with get_session() as session:
            sessions = await SessionStore(session).purge_expired()
            tokens = await OneTimeTokenStore(session).purge_expired()
            tokens += await OAuthStateStore(session).purge_expired()
            events = 0
            if audit_days is not None:
                events = await AuditRecorder(session).purge_older_than(audit_days)
            return sessions, tokens, events

    sessions, tokens, events = run(_sweep())
    console.print(f"[green]✓[/green] Removed {sessions} session(s), {tokens} token(s)")
    if audit_days is not None:
        console.print(f"[green]✓[/green] Removed {events} audit event(s) older than {audit_days} days")


@main.command("grant-credits")
@click.argument("email")
@click.argument("amount", type=click.IntRange(min=1))
def grant_credits(email: str, amount: int):
    """
    Add AMOUNT credits to the purchased pool of the user with EMAIL.

    Example:
        authledger grant-credits user@example.com 50
    """
    from authledger.auth.credits import CreditLedger
    from authledger.auth.users import UserStore
    from authledger.config import get_settings
    from authledger.database import get_session

    async def _grant():
        async with get_session() as session:
            user = await UserStore(session).find_by_email(email)
            if user is None:
                return None
            ledger = CreditLedger(session, get_settings().DAILY_CREDIT_ALLOTMENT)
            await ledger.add_purchased(user.id, amount)
            return await ledger.balance(user.id)

    try:
        balance = run(_grant())
    except AuthLedgerError as e:
        console.print(f"[red]✗ Error: {e.message}[/red]")
        sys.exit(1)

    if balance is None:
        console.print(f"[red]✗ No user with email {email}[/red]")
        sys.exit(1)

    console.print(
        f"[green]✓[/green] Granted {amount} credit(s) to {email} "
        f"(daily {balance.daily}, purchased {balance.purchased})"
    )


@main.command()
@click.option("--limit", default=20, help="Number of events to show")
@click.option("--email", default=None, help="Only events for this user")
@click.option("--event", "event_type", default=None, help="Only this event type")
def audit(limit: int, email: str | None, event_type: str | None):
    """
    Show recent audit events, newest first.

    Example:
        authledger audit --event failed_login --limit 50
    """
    from authledger.auth.audit import AuditRecorder
    from authledger.auth.users import UserStore
    from authledger.database import get_session
    from authledger.models import AuditEventType

    try:
        kind = AuditEventType(event_type) if event_type else None
    except ValueError:
        valid = ", ".join(t.value for t in AuditEventType)
        console.print(f"[red]✗ Unknown event type. Choose from: {valid}[/red]")
        sys.exit(1)

    async def _recent():
        async with get_session() as session:
            user_id = None
            if email:
                user = await UserStore(session).find_by_email(email)
                if user is None:
                    return None
                user_id = user.id
            return await AuditRecorder(session).recent(
                user_id=user_id, event_type=kind, limit=limit
            )

    events = run(_recent())
    if events is None:
        console.print(f"[red]✗ No user with email {email}[/red]")
        sys.exit(1)
    if not events:
        console.print("[yellow]No audit events found.[/yellow]")
        return

    table = Table(title=f"Audit events ({len(events)})", show_header=True, header_style="bold cyan")
    table.add_column("Time", style="dim")
    table.add_column("Event", style="cyan")
    table.add_column("User")
    table.add_column("IP")
    table.add_column("Details", style="dim")

    for event in events:
        table.add_row(
            event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type.value,
            event.user_id or "-",
            event.ip_address or "-",
            ", ".join(f"{k}={v}" for k, v in (event.details or {}).items() if k != "kind"),
        )

    console.print(table)


if __name__ == "__main__":
    main()
