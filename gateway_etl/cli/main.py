"""Main CLI entry point for the gateway ETL."""

import asyncio
import json
import time
from collections.abc import Callable
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from gateway_etl import __version__
from gateway_etl.exceptions import (
    EpochUnavailableError,
    GatewayTransportError,
    MigrationError,
    StorageError,
    TransientStorageError,
)
from gateway_etl.ingestion.application.epoch_manager import EpochManager
from gateway_etl.ingestion.application.history_service import HistoryEntry, PaymentHistoryService
from gateway_etl.ingestion.application.ingestion_service import IngestionService, IngestionStats
from gateway_etl.ingestion.application.migration_service import SchemaMigrator
from gateway_etl.ingestion.domain.enums import Direction, EventKind
from gateway_etl.ingestion.domain.events import PaymentEvent
from gateway_etl.ingestion.infrastructure.gateway_client import FederationInfo, GatewayClient
from gateway_etl.ingestion.infrastructure.record_writer import RecordWriter
from gateway_etl.ingestion.infrastructure.repository import IngestionPositionRepository
from gateway_etl.storage.database.base import init_db
from gateway_etl.storage.session import db_session
from gateway_etl.utils.config import Settings, get_settings
from gateway_etl.utils.logging import LogPerformance, configure_from_settings, get_logger
from gateway_etl.utils.metrics import start_metrics_server
from gateway_etl.utils.retry import RetryConfig

app = typer.Typer(
    name="gateway-etl",
    help="Ingest, migrate and query Lightning gateway payment records",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)
console = Console()
logger = get_logger(__name__)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"[bold blue]gateway-etl[/bold blue] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    """Gateway ETL: durable, deduplicated payment history for every federation."""


def ensure_db() -> Settings:
    """Configure logging and make sure the database is initialized."""
    settings = get_settings()
    configure_from_settings(settings)
    init_db(settings.database_url, settings.storage_timeout_seconds)
    return settings


async def _fetch_new_events(
    settings: Settings,
    resume_position: Callable[[str], int | None],
    only: list[str] | None,
) -> list[tuple[FederationInfo, list[PaymentEvent]]]:
    async with GatewayClient.from_settings(settings) as client:
        federations = await client.info()
        batches = []
        for federation in federations:
            if only and federation.federation_id not in only:
                continue
            after = resume_position(federation.federation_id)
            events = [
                event
                async for event in client.iter_events(
                    federation, after, pagination_size=settings.pagination_size
                )
            ]
            batches.append((federation, events))
    return batches


def _stats_table(results: list[tuple[FederationInfo, IngestionStats]], epoch: int) -> Table:
    table = Table(title=f"Ingestion (gateway epoch {epoch})")
    table.add_column("Federation", style="cyan")
    table.add_column("Received", justify="right")
    table.add_column("Inserted", justify="right", style="green")
    table.add_column("Already present", justify="right")
    table.add_column("Unknown kind", justify="right", style="yellow")
    table.add_column("Dropped", justify="right", style="red")
    table.add_column("Write failed", justify="right", style="red")
    table.add_column("Anomalies", justify="right", style="yellow")

    for federation, stats in results:
        table.add_row(
            federation.federation_name,
            str(stats.received),
            str(stats.inserted),
            str(stats.already_present),
            str(stats.unknown_kind),
            str(stats.missing_field + stats.invalid_field),
            str(stats.storage_failed),
            str(stats.timestamp_anomalies + stats.duplicate_mismatches),
        )
    return table


def _format_balance(balance_msat: int | None) -> str:
    if balance_msat is None:
        return "-"
    return f"{balance_msat // 1000:,} sat"


def _payments_table(results: list[tuple[FederationInfo, IngestionStats]]) -> Table:
    table = Table(title="Payments")
    table.add_column("Federation", style="cyan")
    table.add_column("Balance", justify="right")
    table.add_column("Out ok", justify="right", style="green")
    table.add_column("Out failed", justify="right", style="red")
    table.add_column("In ok", justify="right", style="green")
    table.add_column("In failed", justify="right", style="red")

    for federation, stats in results:
        table.add_row(
            federation.federation_name,
            _format_balance(federation.balance_msat),
            str(stats.payments(Direction.OUTGOING, EventKind.SUCCEEDED)),
            str(stats.payments(Direction.OUTGOING, EventKind.FAILED)),
            str(stats.payments(Direction.INCOMING, EventKind.SUCCEEDED)),
            str(stats.payments(Direction.INCOMING, EventKind.FAILED)),
        )
    return table


def _ingest_pass(
    settings: Settings,
    service: IngestionService,
    history: PaymentHistoryService,
    only: list[str] | None,
) -> list[tuple[FederationInfo, IngestionStats]]:
    """Fetch and ingest what each federation logged since the last pass."""
    batches = asyncio.run(
        _fetch_new_events(
            settings,
            lambda federation_id: history.resume_position(federation_id, service.epoch),
            only,
        )
    )
    results = []
    for info, events in batches:
        with LogPerformance("federation_ingestion", logger, federation_id=info.federation_id):
            results.append((info, service.ingest(events, info.federation_id)))
    return results


@app.command()
def run(
    federation: list[str] | None = typer.Option(
        None, "--federation", "-f", help="Only ingest these federation ids"
    ),
    once: bool = typer.Option(False, "--once", help="Ingest what the gateway has logged and exit"),
) -> None:
    """
    Ingest payment events of every federation under one gateway epoch.

    The gateway restarts its log ids with every restart and each process
    of this command gets a new epoch, so run it alongside the gateway and
    keep it running: it polls the payment log until interrupted.
    """
    settings = ensure_db()
    if settings.prometheus_enabled:
        start_metrics_server(settings.metrics_port)

    with db_session() as db:
        try:
            epoch = EpochManager(db).current_epoch()
        except EpochUnavailableError as e:
            console.print(f"[bold red]Cannot determine gateway epoch: {e}[/bold red]")
            raise typer.Exit(1)

        history = PaymentHistoryService(db)
        service = IngestionService(
            RecordWriter(db, verify_duplicates=settings.verify_duplicates),
            epoch,
            retry_config=RetryConfig(
                max_retries=settings.write_retry_attempts,
                base_delay=settings.write_retry_base_delay,
                max_delay=max(settings.write_retry_base_delay, 10.0),
                retryable_exceptions=(TransientStorageError,),
            ),
            positions=IngestionPositionRepository(db),
        )

        try:
            while True:
                try:
                    results = _ingest_pass(settings, service, history, federation)
                except GatewayTransportError as e:
                    if once:
                        console.print(f"[bold red]Gateway error: {e}[/bold red]")
                        raise typer.Exit(1)
                    logger.warning("gateway_poll_failed", error=str(e), gateway_epoch=epoch)
                else:
                    if once or any(stats.received for _, stats in results):
                        console.print(_stats_table(results, epoch))
                        console.print(_payments_table(results))
                if once:
                    break
                time.sleep(settings.poll_interval_seconds)
        except StorageError as e:
            console.print(f"[bold red]Storage failure, ingestion stopped: {e}[/bold red]")
            raise typer.Exit(2)
        except KeyboardInterrupt:
            console.print("[dim]Stopped.[/dim]")


def _entry_row(entry: HistoryEntry) -> list[str]:
    record = entry.record
    return [
        record.ts.strftime("%Y-%m-%d %H:%M:%S"),
        str(entry.gateway_epoch),
        str(record.log_id),
        record.shape.value,
        entry.source_shape.value if entry.source_shape else "-",
    ]


@app.command()
def history(
    key: str = typer.Argument(..., help="Contract id, payment hash or payment image"),
) -> None:
    """Show the lifecycle of one payment across both protocol generations."""
    ensure_db()

    with db_session() as db:
        entries = list(PaymentHistoryService(db).history_for(key))

    if not entries:
        console.print(f"[yellow]No records found for '{key}'[/yellow]")
        raise typer.Exit(1)

    table = Table(title=f"Payment history ({len(entries)} records)")
    table.add_column("Timestamp", style="cyan", width=19)
    table.add_column("Epoch", justify="right")
    table.add_column("Log id", justify="right")
    table.add_column("Shape", style="bold white")
    table.add_column("Migrated from", style="dim")
    for entry in entries:
        table.add_row(*_entry_row(entry))
    console.print(table)


def _export_line(entry: HistoryEntry) -> str:
    data = {
        "shape": entry.shape.value,
        "gateway_epoch": entry.gateway_epoch,
        "source_shape": entry.source_shape.value if entry.source_shape else None,
        **entry.record.to_dict(),
    }
    return json.dumps(data, default=lambda value: value.isoformat(), sort_keys=True)


@app.command()
def export(
    federation_id: str = typer.Argument(..., help="Federation id"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write JSON lines to this file"),
) -> None:
    """Export every visible record of a federation as JSON lines."""
    ensure_db()

    with db_session() as db:
        records = PaymentHistoryService(db).records_for_federation(federation_id)
        lines = [_export_line(entry) for entry in records]

    if output is None:
        for line in lines:
            typer.echo(line)
        return

    output.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
    console.print(f"[green]Exported {len(lines)} records to {output}[/green]")


@app.command()
def migrate(
    federation_id: str = typer.Argument(..., help="Federation id"),
    batch_size: int | None = typer.Option(None, "--batch-size", "-b", help="Rows per checkpoint"),
) -> None:
    """Copy a federation's v1 records into the v2 tables (resumable)."""
    settings = ensure_db()

    with db_session() as db:
        migrator = SchemaMigrator(
            db,
            RecordWriter(db, verify_duplicates=settings.verify_duplicates),
            batch_size or settings.migration_batch_size,
        )
        try:
            report = migrator.migrate(federation_id)
        except MigrationError as e:
            console.print(f"[bold red]Migration halted: {e}[/bold red]")
            raise typer.Exit(1)
        except StorageError as e:
            console.print(f"[bold red]Storage failure, rerun to resume: {e}[/bold red]")
            raise typer.Exit(2)

    console.print(
        Panel(
            f"State: [bold]{report.state.value}[/bold]\n"
            f"Migrated: {report.migrated}\n"
            f"Already present: {report.already_present}\n"
            f"Batches: {report.batches}\n"
            f"Field gaps: {len(report.gaps)}",
            title=f"Migration of {federation_id}",
            border_style="green" if report.completed else "yellow",
        )
    )

    gaps = report.gaps_by_field()
    if gaps:
        table = Table(title="v2 fields left empty")
        table.add_column("Field", style="yellow")
        table.add_column("Rows", justify="right")
        for name, count in sorted(gaps.items()):
            table.add_row(name, str(count))
        console.print(table)


@app.command("drop-v1")
def drop_v1(
    federation_id: str = typer.Argument(..., help="Federation id"),
    confirm: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a federation's v1 records after a completed migration."""
    settings = ensure_db()

    if not confirm:
        proceed = typer.confirm(
            f"This permanently deletes the v1 records of {federation_id}. Continue?"
        )
        if not proceed:
            console.print("[dim]Cancelled.[/dim]")
            raise typer.Exit(0)

    with db_session() as db:
        migrator = SchemaMigrator(db, RecordWriter(db), settings.migration_batch_size)
        try:
            deleted = migrator.drop_source(federation_id)
        except MigrationError as e:
            console.print(f"[bold red]Refusing to drop v1 records: {e}[/bold red]")
            raise typer.Exit(1)

    console.print(f"[green]Deleted {deleted} v1 records of {federation_id}[/green]")


@app.command()
def status(
    federation_id: str = typer.Argument(..., help="Federation id"),
) -> None:
    """Show migration state and record counts of a federation."""
    ensure_db()

    with db_session() as db:
        service = PaymentHistoryService(db)
        try:
            migration = service.migration_status(federation_id)
        except MigrationError as e:
            console.print(f"[bold red]{e}[/bold red]")
            raise typer.Exit(1)
        counts = service.shape_counts(federation_id)

    position = (
        f"epoch {migration.position[0]}, log id {migration.position[1]}"
        if migration.position
        else "-"
    )
    console.print(
        Panel(
            f"State: [bold]{migration.state.value}[/bold]\n"
            f"Cursor: {position}\n"
            f"Migrated rows: {migration.migrated_count}\n"
            f"Field gaps: {migration.gap_count}",
            title=f"Federation {federation_id}",
        )
    )

    table = Table(title="Stored records")
    table.add_column("Table", style="cyan")
    table.add_column("Rows", justify="right")
    for shape, count in counts.items():
        if count:
            table.add_row(shape.value, str(count))
    console.print(table)


if __name__ == "__main__":
    app()
