# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the Mailgun emulator.

Maintenance commands work directly on the storage directory named in the
configuration; they do not go through the HTTP API.

Usage:
    mailgun-emulator stats
    mailgun-emulator cleanup --days 7
    mailgun-emulator list --limit 50 --domain sandbox.example.org
    mailgun-emulator clear
    mailgun-emulator smtp-test
    mailgun-emulator serve --port 8080

Example:
    $ mailgun-emulator --config /etc/mailgun-emulator/config.ini stats --json
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections import Counter
from datetime import datetime
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from mailgun_emulator.config_loader import Settings, load_settings
from mailgun_emulator.core import MailApiCore

console = Console()
err_console = Console(stderr=True)

LIST_DEFAULT_LIMIT = 20


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


def format_bytes(size: float, precision: int = 2) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    index = 0
    while size > 1024 and index < len(units) - 1:
        size /= 1024
        index += 1
    return f"{round(size, precision):g} {units[index]}"


def format_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


def get_core(ctx: click.Context) -> MailApiCore:
    settings: Settings = ctx.obj
    return MailApiCore(settings)


@click.group()
@click.version_option(package_name="mailgun-emulator")
@click.option(
    "--config",
    "config_path",
    envvar="MGE_CONFIG",
    default=None,
    help="Path to the INI configuration file (default: config.ini).",
)
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str]) -> None:
    """Mailgun-compatible email emulator: maintenance and server commands."""
    ctx.obj = load_settings(config_path)


@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show storage statistics with a per-domain breakdown."""
    core = get_core(ctx)

    async def _stats():
        storage_stats = await core.storage_stats()
        summaries = await core.storage.list_messages(limit=None)
        return storage_stats, summaries

    storage_stats, summaries = run_async(_stats())
    by_domain = Counter(summary.domain for summary in summaries)
    timestamps = [summary.timestamp for summary in summaries]

    if as_json:
        data = storage_stats.model_dump()
        data["domains"] = dict(by_domain)
        data["oldest_timestamp"] = min(timestamps) if timestamps else None
        data["newest_timestamp"] = max(timestamps) if timestamps else None
        print_json(data)
        return

    console.print("\n[bold]Storage statistics[/bold]\n")
    console.print(f"  Messages:     {storage_stats.total_messages}")
    console.print(f"  Attachments:  {storage_stats.total_attachments}")
    console.print(f"  Total size:   {format_bytes(storage_stats.total_size_bytes)}")
    console.print(f"  Storage path: {storage_stats.storage_path}")
    console.print()

    if not summaries:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title="Messages by domain")
    table.add_column("Domain", style="cyan")
    table.add_column("Messages", justify="right")
    for domain, count in sorted(by_domain.items()):
        table.add_row(domain, str(count))
    console.print(table)
    console.print(f"\n  Oldest message: {format_timestamp(min(timestamps))}")
    console.print(f"  Newest message: {format_timestamp(max(timestamps))}")
    console.print()


@main.command("cleanup")
@click.option("--days", type=int, default=None, help="Retention in days (default: from configuration).")
@click.pass_context
def cleanup(ctx: click.Context, days: Optional[int]) -> None:
    """Delete messages older than the retention period."""
    core = get_core(ctx)
    retention = ctx.obj.storage.retention_days if days is None else days
    if retention < 0:
        print_error("--days must be zero or positive.")
        sys.exit(1)

    async def _cleanup():
        before = await core.storage_stats()
        deleted = await core.cleanup(retention)
        after = await core.storage_stats()
        return deleted, before.total_size_bytes - after.total_size_bytes

    console.print(f"Removing messages older than {retention} days...")
    deleted, freed = run_async(_cleanup())
    print_success(f"Messages deleted: {deleted}")
    if deleted:
        console.print(f"  Space freed: {format_bytes(max(freed, 0))}")


@main.command("list")
@click.option("--limit", "-n", type=int, default=LIST_DEFAULT_LIMIT, show_default=True, help="Messages to show.")
@click.option("--domain", "-d", default=None, help="Only messages of this domain.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def list_messages(ctx: click.Context, limit: int, domain: Optional[str], as_json: bool) -> None:
    """List stored messages, newest first."""
    core = get_core(ctx)
    summaries = run_async(core.storage.list_messages(domain=domain, limit=None))
    summaries.sort(key=lambda summary: summary.timestamp, reverse=True)
    summaries = summaries[: max(limit, 0)]

    if as_json:
        print_json([summary.model_dump(by_alias=True) for summary in summaries])
        return

    if not summaries:
        console.print("[dim]No messages found.[/dim]")
        return

    table = Table(title=f"Messages (last {limit})")
    table.add_column("Date", style="dim")
    table.add_column("Domain", style="cyan")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Key", style="dim")
    for summary in summaries:
        table.add_row(
            format_timestamp(summary.timestamp),
            summary.domain,
            summary.from_addr,
            summary.subject,
            summary.storage_key,
        )
    console.print(table)
    console.print(f"\nTotal messages: {len(summaries)}")


@main.command("clear")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def clear(ctx: click.Context, force: bool) -> None:
    """Delete ALL stored messages and attachments."""
    core = get_core(ctx)
    if not force:
        console.print("[bold red]This will delete ALL stored messages and attachments.[/bold red]")
        answer = click.prompt("Type 'yes' to confirm", default="", show_default=False)
        if answer.strip() != "yes":
            console.print("[dim]Cancelled.[/dim]")
            return

    messages, attachments = run_async(core.clear_all())
    print_success("Storage cleared.")
    console.print(f"  Messages deleted:    {messages}")
    console.print(f"  Attachments deleted: {attachments}")


@main.command("smtp-test")
@click.pass_context
def smtp_test(ctx: click.Context) -> None:
    """Open and close a connection to the configured SMTP relay."""
    core = get_core(ctx)
    ok, payload = run_async(core.test_smtp_connection())
    if not payload.get("smtp_enabled"):
        print_error("SMTP is not enabled (check [smtp] enabled, host and username).")
        sys.exit(1)
    target = f"{payload['smtp_host']}:{payload['smtp_port']}"
    if not ok:
        print_error(f"SMTP connection to {target} failed: {payload.get('error')}")
        sys.exit(1)
    print_success(f"SMTP connection to {target} successful.")


@main.command("serve")
@click.option("--host", "-h", default=None, help="Host to bind to (default: from configuration).")
@click.option("--port", "-p", type=int, default=None, help="Port to listen on (default: from configuration).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from mailgun_emulator.logger import configure_logging
    from mailgun_emulator.server import build_app

    settings: Settings = ctx.obj
    configure_logging(settings.logging.level, settings.logging.file, smtp_debug=settings.smtp.debug)
    bind_host = host or settings.server.host
    bind_port = port or settings.server.port
    console.print(f"Serving Mailgun emulator on http://{bind_host}:{bind_port}")
    uvicorn.run(build_app(settings), host=bind_host, port=bind_port)


if __name__ == "__main__":
    main()
