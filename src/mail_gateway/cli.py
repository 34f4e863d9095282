# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail gateway.

Administrative commands work directly on the usage database, without going
through the HTTP API, so they also run while the server is down.

Usage:
    mail-gateway serve --port 8000
    mail-gateway logs list --limit 20 --method POST
    mail-gateway logs cleanup --days 30
    mail-gateway stats --start 2025-01-01
    mail-gateway api-keys --key "$API_SECRET"
    mail-gateway rate-limit reset 203.0.113.7

Every command accepts ``--db`` to point at a database other than the one
named by the settings (``MGW_DB_PATH`` or ``[storage] db_path``).
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any, Optional

import click
import uvicorn
from fastapi import FastAPI
from rich.console import Console
from rich.table import Table

from .api import create_app
from .auth import fingerprint
from .config import load_settings
from .gateway import DEFAULT_LOG_RETENTION_DAYS, Gateway
from .logger import configure_logging
from .sql import create_adapter
from .store import LogFilter, UsageStore

console = Console()
err_console = Console(stderr=True)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


async def _with_store(db_path: str, action):
    """Open the store at ``db_path``, run ``action(store)`` and close it."""
    store = UsageStore(create_adapter(db_path))
    await store.open()
    try:
        return await action(store)
    finally:
        await store.close()


def build_app() -> FastAPI:
    """Application factory used by ``serve`` (uvicorn ``factory=True``)."""
    settings = load_settings()
    configure_logging(settings.log_level)
    return create_app(Gateway(settings))


db_option = click.option(
    "--db",
    "db_path",
    default=None,
    help="Database path (default: from settings).",
)


def _db(db_path: Optional[str]) -> str:
    return db_path or load_settings().db_path


@click.group()
@click.version_option(package_name="mail-gateway")
def main() -> None:
    """mail-gateway: rate-limited email sending over Gmail and SendGrid."""


@main.command("serve")
@click.option("--host", default=None, help="Bind address (default: from settings).")
@click.option("--port", type=int, default=None, help="Port (default: from settings).")
@click.option("--reload", is_flag=True, help="Reload on code changes (development).")
def serve(host: Optional[str], port: Optional[int], reload: bool) -> None:
    """Run the HTTP server."""
    settings = load_settings()
    configure_logging(settings.log_level)
    if not settings.api_secret:
        print_error("API_SECRET is not configured; refusing to start.")
        sys.exit(1)
    uvicorn.run(
        "mail_gateway.cli:build_app",
        factory=True,
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )


@main.group("logs")
def logs() -> None:
    """Inspect and prune the request log."""


@logs.command("list")
@db_option
@click.option("--limit", type=int, default=20, show_default=True, help="Rows to show.")
@click.option("--method", default=None, help="Filter by HTTP method.")
@click.option("--path", default=None, help="Filter by path substring.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def logs_list(db_path: Optional[str], limit: int, method: Optional[str], path: Optional[str], as_json: bool) -> None:
    """Show the most recent requests."""
    filters = LogFilter(method=method, path=path)

    async def _list(store: UsageStore):
        return await store.list_request_logs(limit=limit, offset=0, filters=filters)

    rows = run_async(_with_store(_db(db_path), _list))

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No requests logged.[/dim]")
        return

    table = Table(title="Request log")
    table.add_column("Timestamp", style="dim")
    table.add_column("Method")
    table.add_column("Path", style="cyan")
    table.add_column("Status", justify="right")
    table.add_column("ms", justify="right")
    table.add_column("Client")
    table.add_column("Provider")

    for row in rows:
        status = row["status_code"]
        style = "green" if row["success"] else ("yellow" if status < 500 else "red")
        table.add_row(
            row["timestamp"],
            row["method"],
            row["path"],
            f"[{style}]{status}[/{style}]",
            f"{row['duration_ms'] or 0:.1f}",
            row.get("client_ip") or "-",
            row.get("provider") or "-",
        )
    console.print(table)


@logs.command("cleanup")
@db_option
@click.option("--days", type=int, default=DEFAULT_LOG_RETENTION_DAYS, show_default=True,
              help="Delete entries older than this many days.")
def logs_cleanup(db_path: Optional[str], days: int) -> None:
    """Delete old request log entries."""

    async def _cleanup(store: UsageStore):
        return await store.delete_logs_older_than(days)

    deleted = run_async(_with_store(_db(db_path), _cleanup))
    print_success(f"Deleted {deleted} logs older than {days} days")


@main.command("stats")
@db_option
@click.option("--start", "start_date", default=None, help="ISO start date (inclusive).")
@click.option("--end", "end_date", default=None, help="ISO end date (inclusive).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def stats(db_path: Optional[str], start_date: Optional[str], end_date: Optional[str], as_json: bool) -> None:
    """Show request totals for a period."""

    async def _stats(store: UsageStore):
        return await store.request_stats(start_date, end_date)

    data = run_async(_with_store(_db(db_path), _stats))

    if as_json:
        print_json(data)
        return

    console.print("\n[bold]Request statistics[/bold]\n")
    console.print(f"  Period:     {start_date or '-'} .. {end_date or '-'}")
    console.print(f"  Total:      {data['totalRequests']}")
    console.print(f"  Successful: {data['successfulRequests']}")
    console.print(f"  Failed:     {data['failedRequests']}")
    console.print(f"  Avg (ms):   {data['averageResponseTime']:.1f}")
    if data["statusCodeBreakdown"]:
        console.print("  Status codes:")
        for code, hits in data["statusCodeBreakdown"].items():
            console.print(f"    {code}: {hits}")
    console.print()


@main.command("api-keys")
@db_option
@click.option("--key", default=None, help="Show only this API key (given in clear).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def api_keys(db_path: Optional[str], key: Optional[str], as_json: bool) -> None:
    """Show API key usage, most recently used first."""

    async def _usage(store: UsageStore):
        if key:
            row = await store.get_api_key_usage(fingerprint(key))
            return [row] if row else []
        return await store.list_api_key_usage(limit=100)

    rows = run_async(_with_store(_db(db_path), _usage))

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No API key usage recorded.[/dim]")
        return

    table = Table(title="API key usage")
    table.add_column("Key", style="cyan")
    table.add_column("Total", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Last used", style="dim")

    for row in rows:
        table.add_row(
            f"{row['api_key'][:12]}…",
            str(row["total_count"]),
            str(row["success_count"]),
            str(row["failure_count"]),
            row.get("last_used") or "-",
        )
    console.print(table)


@main.group("rate-limit")
def rate_limit() -> None:
    """Manage rate-limit windows."""


@rate_limit.command("reset")
@db_option
@click.argument("client_ip")
def rate_limit_reset(db_path: Optional[str], client_ip: str) -> None:
    """Forget every rate-limit window of CLIENT_IP."""

    async def _reset(store: UsageStore):
        return await store.reset_rate_limits(client_ip)

    removed = run_async(_with_store(_db(db_path), _reset))
    print_success(f"Rate limit reset for IP: {client_ip} ({removed} windows)")


if __name__ == "__main__":
    main()
