# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""Command Line Interface for lxmin"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import click
import structlog
from rich.console import Console
from rich.filesize import decimal
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TextColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from lxmin.backup.manager import BackupOptions, create_backup, run_backup
from lxmin.backup.restore import run_restore
from lxmin.config import LxminConfig
from lxmin.core import (
    LxminState,
    delete_all_backups,
    delete_backup,
    get_backup_info,
    initialize_state,
    list_backups,
    shutdown_state,
)
from lxmin.env import create_config_from_env
from lxmin.exceptions import LxminError
from lxmin.keys import Backup, validate_name
from lxmin.storage import parse_tags

console = Console()

T = TypeVar("T")


class RichProgressSink:
    """Progress sink that drives one task of a rich progress bar."""

    def __init__(self, progress: Progress, description: str):
        self.progress = progress
        # Indeterminate until the total is known (export still running)
        self.task_id = progress.add_task(description, total=None)

    def on_start(self, total: int) -> None:
        self.progress.update(self.task_id, total=total)

    def on_bytes_transferred(self, n: int) -> None:
        self.progress.advance(self.task_id, n)


def _progress() -> Progress:
    return Progress(
        TextColumn("[bold cyan]{task.description}"),
        BarColumn(),
        DownloadColumn(),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=console,
        transient=True,
    )


def _load_config(ctx: click.Context, **overrides: Any) -> LxminConfig:
    try:
        return create_config_from_env(**ctx.obj, **overrides)
    except LxminError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


def _run(config: LxminConfig, action: Callable[[LxminState], Awaitable[T]]) -> T:
    """Run an action with a fresh runtime state, exiting 1 on lxmin errors."""

    async def _main() -> T:
        state = await initialize_state(config)
        try:
            return await action(state)
        finally:
            await shutdown_state(state)

    try:
        return asyncio.run(_main())
    except LxminError as e:
        console.print(f"[red]Error:[/red] {e.message}")
        sys.exit(1)


@click.group()
@click.option("--endpoint", help="S3 endpoint URL [env: LXMIN_ENDPOINT]")
@click.option("--bucket", help="Bucket to save/restore backups [env: LXMIN_BUCKET]")
@click.option("--access-key", help="S3 access key [env: LXMIN_ACCESS_KEY]")
@click.option("--secret-key", help="S3 secret key [env: LXMIN_SECRET_KEY]")
@click.option(
    "--staging",
    type=click.Path(file_okay=False, path_type=Path),
    help="Staging directory [env: LXMIN_STAGING]",
)
@click.option("--lxc", "lxc_binary", help="lxc executable [env: LXMIN_LXC_BINARY]")
@click.option("--verbose", "-v", is_flag=True, help="Show informational log output")
@click.pass_context
def cli(ctx, endpoint, bucket, access_key, secret_key, staging, lxc_binary, verbose):
    """lxmin - backup and restore LXC instances from S3 compatible storage"""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.INFO if verbose else logging.WARNING
        )
    )
    ctx.obj = {
        "endpoint": endpoint,
        "bucket": bucket,
        "access_key": access_key,
        "secret_key": secret_key,
        "staging_root": staging,
        "lxc_binary": lxc_binary,
    }


@cli.command()
@click.argument("instance")
@click.option(
    "--optimize",
    "--optimized",
    "-O",
    "optimize",
    is_flag=True,
    help="Use the storage driver's optimized export format",
)
@click.option("--tags", help="Tags for the backup, e.g. 'category=prod&project=backup'")
@click.option("--part-size", type=int, help="Multipart part size in bytes (default: 64 MiB)")
@click.pass_context
def backup(ctx, instance, optimize, tags, part_size):
    """Backup an instance image to object storage"""
    config = _load_config(ctx)

    async def _backup(state: LxminState):
        options = BackupOptions(
            optimized=optimize,
            tags=parse_tags(tags),
            part_size=part_size or config.part_size,
        )
        target = await create_backup(config, state, instance, options)
        console.print(f"[bold cyan]Exporting '{instance}' as {target.name}...[/bold cyan]")
        with _progress() as progress:
            sink = RichProgressSink(progress, f"Uploading {target.name}")
            return await run_backup(config, state, target, options, progress=sink)

    result = _run(config, _backup)
    console.print(
        f"[green]✓[/green] Backup {result.backup.name} of '{instance}' uploaded "
        f"({decimal(result.size)}, {len(result.profiles)} profiles)"
    )


@cli.command()
@click.argument("instance")
@click.argument("backup_name")
@click.pass_context
def restore(ctx, instance, backup_name):
    """Restore an instance from object storage"""
    config = _load_config(ctx)

    async def _restore(state: LxminState):
        target = Backup(validate_name(instance, "instance"), validate_name(backup_name, "backup"))
        with _progress() as progress:
            sink = RichProgressSink(progress, f"Downloading {target.name}")
            return await run_restore(config, state, target, progress=sink)

    result = _run(config, _restore)
    for warning in result.warnings:
        console.print(f"[yellow]![/yellow] {warning}")
    console.print(f"[green]✓[/green] Instance '{instance}' restored from {backup_name}")


@cli.command(name="list")
@click.argument("instance", required=False)
@click.pass_context
def list_command(ctx, instance):
    """List backups of an instance (all instances when omitted)"""
    config = _load_config(ctx)
    backups = _run(config, lambda state: list_backups(config, state, instance))

    if not backups:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    table.add_column("Instance", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Created", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Optimized", justify="center")

    for info in backups:
        table.add_row(
            info.instance,
            info.name,
            info.created.strftime("%Y-%m-%d %H:%M:%S") if info.created else "-",
            decimal(info.size),
            "✔" if info.optimized else "✗",
        )

    console.print(table)


@cli.command()
@click.argument("instance")
@click.argument("backup_name")
@click.pass_context
def info(ctx, instance, backup_name):
    """Show metadata and tags of a backup"""
    config = _load_config(ctx)

    async def _info(state: LxminState):
        target = Backup(validate_name(instance, "instance"), validate_name(backup_name, "backup"))
        return await get_backup_info(config, state, target)

    details = _run(config, _info)

    table = Table(title=f"{details.instance}/{details.name}", show_header=True, header_style="bold magenta")
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Created", details.created.isoformat() if details.created else "-")
    table.add_row("Size", decimal(details.size))
    table.add_row("Optimized", str(details.optimized).lower())
    table.add_row("Compressed", str(details.compressed).lower())
    for key, value in sorted((details.tags or {}).items()):
        table.add_row(f"tag:{key}", value)

    console.print(table)


@cli.command()
@click.argument("instance")
@click.argument("backup_name", required=False)
@click.option("--all", "delete_all", is_flag=True, help="Delete all backups of the instance")
@click.option("--force", is_flag=True, help="Required together with --all")
@click.pass_context
def delete(ctx, instance, backup_name, delete_all, force):
    """Delete a backup (or all backups) of an instance"""
    if delete_all and not force:
        console.print("[red]Error:[/red] --all requires --force")
        sys.exit(1)
    if not delete_all and not backup_name:
        console.print("[red]Error:[/red] backup name is not optional")
        sys.exit(1)

    config = _load_config(ctx)

    async def _delete(state: LxminState) -> int:
        name = validate_name(instance, "instance")
        if delete_all:
            return await delete_all_backups(config, state, name)
        return await delete_backup(config, state, Backup(name, validate_name(backup_name, "backup")))

    deleted = _run(config, _delete)
    target = f"all backups of '{instance}'" if delete_all else f"{backup_name} of '{instance}'"
    console.print(f"[green]✓[/green] Deleted {target} ({deleted} objects)")


@cli.command()
@click.option("--address", help="Listen address HOST:PORT [env: LXMIN_ADDRESS]")
@click.option("--cert", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="TLS certificate")
@click.option("--key", type=click.Path(exists=True, dir_okay=False, path_type=Path), help="TLS private key")
@click.option(
    "--cafile",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="CA bundle for verifying client certificates",
)
@click.option("--notify-endpoint", help="Default webhook for async operations")
@click.pass_context
def serve(ctx, address, cert, key, cafile, notify_endpoint):
    """Run the REST service"""
    from lxmin.integrations.fastapi import serve as run_server

    config = _load_config(
        ctx,
        address=address,
        cert_file=cert,
        key_file=key,
        ca_file=cafile,
        notify_endpoint=notify_endpoint,
    )
    run_server(config)


if __name__ == "__main__":
    cli()
