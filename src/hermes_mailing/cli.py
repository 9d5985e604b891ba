# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for hermes-mailing.

Usage:
    # Create the queue table
    hermes-mailing install

    # Append sample messages and run a simulated worker
    hermes-mailing fill-test --quantity 1000
    hermes-mailing run-queue --test-mode --server-id 1 --max-sent 500

    # Inspect the queue
    hermes-mailing stats --json

Example:
    $ hermes-mailing -c /etc/hermes.ini run-queue --server-id 2 \\
        --sign-size 200 --retry-times 3 --spam-rule 500=10 --spam-rule 1000=30

Exit status: 0 on success, 1 on storage or schema errors, 2 on
configuration errors, 130 when interrupted.
"""

from __future__ import annotations

import asyncio
import json
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import click
from click.core import ParameterSource
from rich.console import Console
from rich.progress import Progress
from rich.table import Table

from .config_loader import ConfigurationError, load_settings, parse_spam_rules
from .dispatcher import Dispatcher
from .logger import configure_logging, get_logger
from .models import DispatchSettings
from .prometheus import DispatchMetrics
from .sql import create_adapter
from .tables import MailQueueTable, SchemaError

console = Console()
err_console = Console(stderr=True)
logger = get_logger("HermesMailing")

EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_INTERRUPTED = 130


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


def _given(ctx: click.Context, name: str) -> bool:
    """True when option ``name`` was set on the command line or by envvar."""
    return ctx.get_parameter_source(name) in (ParameterSource.COMMANDLINE, ParameterSource.ENVIRONMENT)


def _settings(ctx: click.Context, **options: Any) -> DispatchSettings:
    """Load settings, applying the explicitly given command-line options."""
    overrides = dict(ctx.obj["overrides"])
    overrides.update({name: value for name, value in options.items() if _given(ctx, name)})
    try:
        settings = load_settings(ctx.obj["config"], overrides)
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(EXIT_CONFIG)
    configure_logging(settings.log_level)
    return settings


@asynccontextmanager
async def _queue_table(settings: DispatchSettings) -> AsyncIterator[MailQueueTable]:
    adapter = create_adapter(settings.dsn, busy_timeout=settings.busy_timeout)
    await adapter.connect()
    try:
        yield MailQueueTable(adapter, settings.table, settings.fields)
    finally:
        await adapter.close()


@click.group()
@click.version_option(package_name="hermes-mailing")
@click.option("--config", "-c", "config_path", type=click.Path(dir_okay=False),
              help="INI configuration file (default: $HERMES_CONFIG or hermes.ini).")
@click.option("--dsn", help="Queue database: SQLite path or postgresql:// URL.")
@click.option("--table", help="Queue table name.")
@click.option("--log-level", type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
              help="Logging level.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, dsn: str | None, table: str | None,
         log_level: str | None) -> None:
    """hermes-mailing: multi-process mail queue dispatcher."""
    ctx.ensure_object(dict)
    ctx.obj["config"] = config_path
    ctx.obj["overrides"] = {
        key: value
        for key, value in (("dsn", dsn), ("table", table), ("log_level", log_level))
        if value is not None
    }


# ============================================================================
# RUN-QUEUE command
# ============================================================================

@main.command("run-queue")
@click.option("--test-mode/--no-test-mode", help="Simulate sends with random outcomes.")
@click.option("--test-seed", type=int, help="Seed for simulated outcomes.")
@click.option("--server-id", type=int, help="Server id of this worker (default: 0).")
@click.option("--max-sent", type=int, help="Stop after this many send attempts (checked per batch); 0 means no limit.")
@click.option("--sign-size", type=int, help="Rows claimed per batch (default: 100).")
@click.option("--page-size", type=int, help="Rows fetched per page (default: 50).")
@click.option("--retry-times", type=int, help="Retries for failed sends, 0 disables (default: 0).")
@click.option("--sign-unassigned/--no-sign-unassigned", help="Also claim rows assigned to no server.")
@click.option("--renew-signature/--no-renew-signature", help="New claim token for every batch.")
@click.option("--spam-rule", "spam_rules", multiple=True, metavar="M=N",
              help="Pause N seconds every M sends (repeatable).")
@click.option("--lite-throttle/--full-throttle", help="Throttle strategy (default: full).")
@click.option("--dry-run-throttle/--no-dry-run-throttle", help="Log throttle pauses without sleeping.")
@click.option("--metrics-port", type=int, help="Serve Prometheus metrics on this port.")
@click.pass_context
def run_queue(ctx: click.Context, **options: Any) -> None:
    """Send queued messages. Run as many workers as needed."""
    if _given(ctx, "spam_rules"):
        try:
            options["spam_rules"] = parse_spam_rules(options["spam_rules"])
        except ConfigurationError as exc:
            print_error(str(exc))
            sys.exit(EXIT_CONFIG)
    settings = _settings(ctx, **options)

    metrics = DispatchMetrics()
    if settings.metrics_port:
        from prometheus_client import start_http_server

        start_http_server(settings.metrics_port, registry=metrics.registry)
        logger.info("Serving metrics on port %d", settings.metrics_port)

    async def _run():
        dispatcher = await Dispatcher.from_settings(settings, metrics=metrics)
        try:
            return await dispatcher.run()
        finally:
            await dispatcher.close()

    try:
        report = run_async(_run())
    except KeyboardInterrupt:
        print_error("Interrupted.")
        sys.exit(EXIT_INTERRUPTED)
    except SchemaError as exc:
        print_error(str(exc))
        sys.exit(EXIT_FAILURE)
    except Exception as exc:  # storage driver errors (sqlite3, psycopg)
        logger.exception("Dispatch aborted: %s", exc)
        print_error(f"Dispatch aborted: {exc}")
        sys.exit(EXIT_FAILURE)

    print_success(
        f"{report.sent} messages processed: {report.succeeded} succeeded, "
        f"{report.failed} failed, {report.retried} to retry."
    )


# ============================================================================
# Schema commands
# ============================================================================

@main.command("install")
@click.option("--if-not-exists", is_flag=True, help="Do nothing if the table exists.")
@click.pass_context
def install(ctx: click.Context, if_not_exists: bool) -> None:
    """Create the queue table."""
    settings = _settings(ctx)

    async def _install() -> bool:
        async with _queue_table(settings) as table:
            if await table.exists():
                return False
            await table.create_schema()
            return True

    if run_async(_install()):
        print_success(f"Queue table '{settings.table}' created.")
    elif if_not_exists:
        console.print(f"Queue table '{settings.table}' already exists.")
    else:
        print_error(f"Queue table '{settings.table}' already exists.")
        sys.exit(EXIT_FAILURE)


@main.command("uninstall")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def uninstall(ctx: click.Context, force: bool) -> None:
    """Drop the queue table and every queued message."""
    settings = _settings(ctx)
    if not force:
        if not click.confirm(f"Drop queue table '{settings.table}' and all its messages?"):
            console.print("Aborted.")
            return

    async def _uninstall():
        async with _queue_table(settings) as table:
            await table.drop_schema()

    run_async(_uninstall())
    print_success(f"Queue table '{settings.table}' dropped.")


@main.command("fill-test")
@click.option("--quantity", "-n", type=click.IntRange(min=1), default=10000, show_default=True,
              help="Number of sample messages.")
@click.option("--from", "from_template", default="from_{seq}@example.com", show_default=True,
              help="Sender address template.")
@click.option("--to", "to_template", default="to_{seq}@example.com", show_default=True,
              help="Recipient address template.")
@click.pass_context
def fill_test(ctx: click.Context, quantity: int, from_template: str, to_template: str) -> None:
    """Append sample messages to the queue."""
    settings = _settings(ctx)

    async def _fill() -> int:
        async with _queue_table(settings) as table:
            if not await table.exists():
                raise SchemaError(f"Queue table '{settings.table}' does not exist")
            with Progress(console=console, transient=True) as progress:
                task = progress.add_task("Inserting messages", total=quantity)
                return await table.insert_test_messages(
                    quantity,
                    from_template,
                    to_template,
                    progress=lambda n: progress.advance(task, n),
                )

    try:
        inserted = run_async(_fill())
    except SchemaError as exc:
        print_error(str(exc))
        sys.exit(EXIT_FAILURE)
    print_success(f"{inserted} mails inserted.")


# ============================================================================
# STATS command
# ============================================================================

@main.command("stats")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def stats(ctx: click.Context, as_json: bool) -> None:
    """Show message counts per status."""
    settings = _settings(ctx)

    async def _stats():
        async with _queue_table(settings) as table:
            if not await table.exists():
                raise SchemaError(f"Queue table '{settings.table}' does not exist")
            return await table.status_counts()

    try:
        counts = run_async(_stats())
    except SchemaError as exc:
        print_error(str(exc))
        sys.exit(EXIT_FAILURE)

    if as_json:
        print_json(counts)
        return

    table = Table(title=f"Queue '{settings.table}'")
    table.add_column("Status")
    table.add_column("Messages", justify="right")
    for status, count in counts.items():
        table.add_row(status, str(count))
    console.print(table)


if __name__ == "__main__":
    main()
