"""CLI for Latchkey - user, passkey and housekeeping commands.

Usage:
    latchkey user list
    latchkey user show EMAIL
    latchkey passkey remove EMAIL
    latchkey ratelimit list
    latchkey ratelimit prune
    latchkey ratelimit reset IDENTIFIER
    latchkey attempts prune --days 30
    latchkey serve
"""

import asyncio
from datetime import UTC, datetime, timedelta
from typing import Any

import typer
from rich import box
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="latchkey",
    help="CLI for Latchkey",
    add_completion=False,
)
console = Console()


def _fmt(dt: datetime | None) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "-"


# =============================================================================
# User Commands
# =============================================================================

user_app = typer.Typer(help="Inspect user accounts")
app.add_typer(user_app, name="user")


async def _list_users_async() -> list[tuple[int, str, str, str, bool]]:
    from latchkey.db import get_session, repository

    async with get_session() as session:
        users = await repository.list_users(session)
        rows = []
        for user in users:
            passkey = await repository.get_passkey_by_user_id(session, user.id)
            rows.append(
                (user.id, user.name, user.email, _fmt(user.created_at), passkey is not None)
            )
        return rows


async def _show_user_async(email: str) -> dict[str, Any] | None:
    from latchkey.db import get_session, repository

    async with get_session() as session:
        user = await repository.get_user_by_email(session, email.strip().lower())
        if user is None:
            return None
        passkey = await repository.get_passkey_by_user_id(session, user.id)
        return {
            "id": user.id,
            "name": user.name,
            "email": user.email,
            "created_at": _fmt(user.created_at),
            "passkey": None
            if passkey is None
            else {
                "credential_id": passkey.credential_id,
                "counter": passkey.counter,
                "transports": ", ".join(passkey.transports or []) or "-",
                "created_at": _fmt(passkey.created_at),
                "last_used_at": _fmt(passkey.last_used_at),
            },
        }


@user_app.command("list")
def user_list() -> None:
    """List all users and whether they have a passkey."""
    try:
        users = asyncio.run(_list_users_async())
    except Exception as e:
        console.print(f"[red]Failed to list users: {e}[/red]")
        raise typer.Exit(1) from e

    if not users:
        console.print("[yellow]No users found[/yellow]")
        return

    table = Table(title="Users", box=box.ROUNDED)
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name", style="white")
    table.add_column("Email", style="white")
    table.add_column("Created", style="green")
    table.add_column("Passkey", style="yellow")

    for user_id, name, email, created, has_passkey in users:
        table.add_row(
            str(user_id),
            name,
            email,
            created,
            "[green]✓[/green]" if has_passkey else "[dim]-[/dim]",
        )

    console.print(table)


@user_app.command("show")
def user_show(
    email: str = typer.Argument(..., help="The user's email address"),
) -> None:
    """Show a user and their passkey."""
    try:
        data = asyncio.run(_show_user_async(email))
    except Exception as e:
        console.print(f"[red]Failed to load user: {e}[/red]")
        raise typer.Exit(1) from e

    if data is None:
        console.print(f"[red]No user with email {email}[/red]")
        raise typer.Exit(1)

    console.print(f"\n[bold cyan]User {data['id']}[/bold cyan]")
    console.print(f"  Name:    {data['name']}")
    console.print(f"  Email:   {data['email']}")
    console.print(f"  Created: {data['created_at']}")

    passkey = data["passkey"]
    if passkey is None:
        console.print("  Passkey: [dim]none[/dim]\n")
        return

    console.print("  Passkey:")
    console.print(f"    Credential: {passkey['credential_id']}")
    console.print(f"    Counter:    {passkey['counter']}")
    console.print(f"    Transports: {passkey['transports']}")
    console.print(f"    Registered: {passkey['created_at']}")
    console.print(f"    Last used:  {passkey['last_used_at']}\n")


# =============================================================================
# Passkey Commands
# =============================================================================

passkey_app = typer.Typer(help="Manage passkeys")
app.add_typer(passkey_app, name="passkey")


async def _remove_passkey_async(email: str) -> bool | None:
    """Returns None if the user doesn't exist, else whether a passkey was removed."""
    from latchkey.db import get_session, repository

    async with get_session() as session:
        user = await repository.get_user_by_email(session, email.strip().lower())
        if user is None:
            return None
        return await repository.delete_passkey_for_user(session, user.id)


@passkey_app.command("remove")
def passkey_remove(
    email: str = typer.Argument(..., help="Email of the user whose passkey to remove"),
) -> None:
    """Remove a user's passkey so they can register a new one."""
    try:
        removed = asyncio.run(_remove_passkey_async(email))
    except Exception as e:
        console.print(f"[red]Failed to remove passkey: {e}[/red]")
        raise typer.Exit(1) from e

    if removed is None:
        console.print(f"[red]No user with email {email}[/red]")
        raise typer.Exit(1)
    if not removed:
        console.print(f"[yellow]{email} has no passkey[/yellow]")
        return
    console.print(f"[green]Passkey removed for {email}[/green]")


# =============================================================================
# Rate Limit Commands
# =============================================================================

ratelimit_app = typer.Typer(help="Inspect and prune rate limit records")
app.add_typer(ratelimit_app, name="ratelimit")


async def _list_rate_limits_async(limit: int) -> list[tuple[str, str, str, str, str]]:
    from latchkey.db import get_session, repository

    async with get_session() as session:
        records = await repository.list_recent_rate_limit_records(session, limit=limit)
        return [
            (r.identifier, r.type, r.endpoint, r.status, _fmt(r.window_start)) for r in records
        ]


async def _prune_rate_limits_async() -> int:
    from latchkey.auth.rate_limit import rate_limiter
    from latchkey.db import get_session

    async with get_session() as session:
        return await rate_limiter.prune(session)


async def _reset_rate_limit_async(identifier: str) -> int:
    from latchkey.auth.rate_limit import rate_limiter
    from latchkey.db import get_session

    async with get_session() as session:
        return await rate_limiter.reset(session, identifier)


@ratelimit_app.command("list")
def ratelimit_list(
    limit: int = typer.Option(50, "--limit", "-n", help="Number of records to show"),
) -> None:
    """List the most recent rate-limited attempts."""
    try:
        records = asyncio.run(_list_rate_limits_async(limit))
    except Exception as e:
        console.print(f"[red]Failed to list rate limit records: {e}[/red]")
        raise typer.Exit(1) from e

    if not records:
        console.print("[yellow]No rate limit records[/yellow]")
        return

    status_styles = {"success": "green", "failed": "red", "bad-email": "yellow"}

    table = Table(title="Rate Limit Records", box=box.ROUNDED)
    table.add_column("Identifier", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Endpoint", style="magenta")
    table.add_column("Status")
    table.add_column("At", style="green")

    for identifier, type_, endpoint, status, at in records:
        style = status_styles.get(status, "white")
        table.add_row(identifier, type_, endpoint, f"[{style}]{status}[/{style}]", at)

    console.print(table)


@ratelimit_app.command("prune")
def ratelimit_prune() -> None:
    """Delete records older than the longest rate limit window."""
    try:
        deleted = asyncio.run(_prune_rate_limits_async())
    except Exception as e:
        console.print(f"[red]Failed to prune rate limit records: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]Deleted {deleted} stale rate limit record(s)[/green]")


@ratelimit_app.command("reset")
def ratelimit_reset(
    identifier: str = typer.Argument(..., help="IP address or email to clear"),
) -> None:
    """Clear every recorded attempt for an IP address or email."""
    try:
        deleted = asyncio.run(_reset_rate_limit_async(identifier))
    except Exception as e:
        console.print(f"[red]Failed to reset rate limits: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]Cleared {deleted} rate limit record(s) for {identifier}[/green]")


# =============================================================================
# Auth Attempt Commands
# =============================================================================

attempts_app = typer.Typer(help="Housekeeping for one-time code attempts")
app.add_typer(attempts_app, name="attempts")


async def _prune_attempts_async(days: int) -> int:
    from latchkey.db import get_session, repository

    async with get_session() as session:
        cutoff = datetime.now(UTC) - timedelta(days=days)
        return await repository.cleanup_dead_auth_attempts(session, before=cutoff)


@attempts_app.command("prune")
def attempts_prune(
    days: int = typer.Option(30, "--days", "-d", help="Keep attempts younger than this"),
) -> None:
    """Delete used or expired code attempts older than the retention period."""
    if days < 1:
        console.print("[red]Days must be at least 1[/red]")
        raise typer.Exit(1)

    try:
        deleted = asyncio.run(_prune_attempts_async(days))
    except Exception as e:
        console.print(f"[red]Failed to prune attempts: {e}[/red]")
        raise typer.Exit(1) from e

    console.print(f"[green]Deleted {deleted} dead attempt(s) older than {days} days[/green]")


# =============================================================================
# Server
# =============================================================================


@app.command("serve")
def serve(
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes"),
) -> None:
    """Run the API server."""
    from latchkey.main import run

    run(reload=reload)


# Entry point
if __name__ == "__main__":
    app()
