# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for vvm-sync.

Usage:
    vvm-sync --config /etc/vvm-sync/config.ini accounts list
    vvm-sync accounts add sub-1 --subscription-id 1 --server imap.example.com --port 993 \\
        --user 15551234567 --password secret --activated
    vvm-sync sync sub-1 --action full
    vvm-sync sync --action download --metrics

Logging level is read from ``VVM_LOG_LEVEL`` (default WARNING).
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from vvm_sync.carrier import CarrierConfigProvider
from vvm_sync.config_loader import load_sync_config
from vvm_sync.errors import CarrierConfigError
from vvm_sync.models import SyncAction
from vvm_sync.service import VoicemailSyncService

console = Console()
err_console = Console(stderr=True)

ACTION_CHOICES = {
    "full": SyncAction.FULL,
    "upload": SyncAction.UPLOAD_ONLY,
    "download": SyncAction.DOWNLOAD_ONLY,
}

STATUS_STYLES = {
    "success": "green",
    "retry_scheduled": "yellow",
    "skipped": "dim",
    "activation_requested": "cyan",
    "cancelled": "dim",
}


def run_async(coro):
    """Execute an async coroutine synchronously from CLI context."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print a formatted error message to stderr."""
    err_console.print(f"[red]Error:[/red] {escape(message)}")


def print_success(message: str) -> None:
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as syntax-highlighted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _configure_logging() -> None:
    level = os.environ.get("VVM_LOG_LEVEL", "WARNING").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_service(ctx: click.Context) -> VoicemailSyncService:
    obj = ctx.obj
    config = load_sync_config(obj["config_path"])
    try:
        carrier_configs = CarrierConfigProvider.from_ini(obj["config_path"])
    except CarrierConfigError as e:
        print_error(str(e))
        sys.exit(1)
    return VoicemailSyncService(config=config, db_path=obj["db_path"], carrier_configs=carrier_configs)


@click.group()
@click.version_option(package_name="vvm-sync")
@click.option("--config", "config_path", envvar="VVM_CONFIG", type=click.Path(dir_okay=False),
              help="Path to config.ini.")
@click.option("--db", "db_path", help="SQLite database path (overrides config).")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None) -> None:
    """Visual voicemail mailbox synchronization."""
    _configure_logging()
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["db_path"] = db_path


@main.command("sync")
@click.argument("account_id", required=False)
@click.option("--action", "-a", type=click.Choice(list(ACTION_CHOICES)), default="full", show_default=True,
              help="Which direction(s) to synchronize.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--metrics", "show_metrics", is_flag=True, help="Print Prometheus metrics after the run.")
@click.pass_context
def sync_command(ctx: click.Context, account_id: str | None, action: str, as_json: bool, show_metrics: bool) -> None:
    """Synchronize one account, or every account when none is given."""
    service = _build_service(ctx)

    async def _sync():
        async with service:
            return await service.request_sync(ACTION_CHOICES[action], account_id)

    results = run_async(_sync())

    if as_json:
        print_json([
            {
                "account_id": r.account_id,
                "action": r.action.value,
                "status": r.status.value,
                "attempts": r.attempts,
                "upload_ok": r.upload_ok,
                "download_ok": r.download_ok,
                "error": r.error,
            }
            for r in results
        ])
    elif not results:
        console.print("[dim]No accounts to synchronize.[/dim]")
    else:
        table = Table(title="Sync results")
        table.add_column("Account", style="cyan")
        table.add_column("Action")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")
        table.add_column("Error")
        for r in results:
            style = STATUS_STYLES.get(r.status.value, "red")
            table.add_row(
                r.account_id, r.action.value, f"[{style}]{r.status.value}[/{style}]", str(r.attempts), r.error or "-"
            )
        console.print(table)

    if show_metrics:
        click.echo(service.metrics.generate_latest().decode("utf-8"))

    if any(r.status.value in ("failed", "config_error") for r in results):
        sys.exit(1)


@main.group()
def accounts() -> None:
    """Manage voicemail accounts."""


@accounts.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def accounts_list(ctx: click.Context, as_json: bool) -> None:
    """List registered accounts."""
    service = _build_service(ctx)

    async def _list():
        await service.init()
        return await service.list_accounts()

    rows = run_async(_list())

    if as_json:
        print_json(rows)
        return

    if not rows:
        console.print("[dim]No accounts registered.[/dim]")
        return

    table = Table(title="Voicemail accounts")
    table.add_column("ID", style="cyan")
    table.add_column("Enabled")
    table.add_column("Activated")
    table.add_column("Server")
    table.add_column("Data channel")
    table.add_column("Retry (ms)", justify="right")
    table.add_column("Quota")
    for row in rows:
        quota = f"{row['quota_occupied']}/{row['quota_total']}" if row["quota_total"] is not None else "-"
        table.add_row(
            row["id"],
            "[green]yes[/green]" if row["enabled"] else "[red]no[/red]",
            "yes" if row["activated"] else "no",
            row["server_address"] or "-",
            row["data_channel_state"],
            str(row["retry_interval"]),
            quota,
        )
    console.print(table)


@accounts.command("add")
@click.argument("account_id")
@click.option("--subscription-id", type=int, help="Subscription the network request is bound to.")
@click.option("--type", "mailbox_type", type=click.Choice(["vvm_type_omtp", "vvm_type_cvvm"]),
              default="vvm_type_omtp", show_default=True)
@click.option("--destination", help="Activation destination number.")
@click.option("--server", help="IMAP server hostname.")
@click.option("--port", type=int, help="IMAP server TLS port.")
@click.option("--user", "-u", help="IMAP username.")
@click.option("--password", help="IMAP password.")
@click.option("--activated", is_flag=True, help="Credentials are already provisioned.")
@click.option("--disabled", is_flag=True, help="Register the account disabled.")
@click.pass_context
def accounts_add(
    ctx: click.Context,
    account_id: str,
    subscription_id: int | None,
    mailbox_type: str,
    destination: str | None,
    server: str | None,
    port: int | None,
    user: str | None,
    password: str | None,
    activated: bool,
    disabled: bool,
) -> None:
    """Register a voicemail account."""
    if user and password is None:
        password = click.prompt("IMAP password", hide_input=True, default="", show_default=False) or None

    service = _build_service(ctx)
    payload = {
        "id": account_id,
        "subscription_id": subscription_id,
        "mailbox_type": mailbox_type,
        "destination_number": destination,
        "server_address": server,
        "imap_port": port,
        "imap_user": user,
        "imap_password": password,
        "activated": activated,
        "enabled": not disabled,
        "base_retry_interval": service.config.base_retry_interval_ms,
    }

    async def _add():
        await service.init()
        await service.add_account(payload)

    try:
        run_async(_add())
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)

    print_success(f"Account '{account_id}' registered.")


def _set_enabled(ctx: click.Context, account_id: str, enabled: bool) -> None:
    service = _build_service(ctx)

    async def _update():
        await service.init()
        if await service.persistence.get_account(account_id) is None:
            return False
        await service.persistence.set_enabled(account_id, enabled)
        return True

    if not run_async(_update()):
        print_error(f"Account '{account_id}' not found.")
        sys.exit(1)
    print_success(f"Account '{account_id}' {'enabled' if enabled else 'disabled'}.")


@accounts.command("enable")
@click.argument("account_id")
@click.pass_context
def accounts_enable(ctx: click.Context, account_id: str) -> None:
    """Enable visual voicemail for an account."""
    _set_enabled(ctx, account_id, True)


@accounts.command("disable")
@click.argument("account_id")
@click.pass_context
def accounts_disable(ctx: click.Context, account_id: str) -> None:
    """Disable visual voicemail for an account."""
    _set_enabled(ctx, account_id, False)


if __name__ == "__main__":
    main()
