"""Command-line interface for RowLedger."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, TypeVar

import click
import structlog
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from rowledger import __version__
from rowledger.config import Config, find_config_file
from rowledger.container import DependencyContainer
from rowledger.engine import ImportEngine
from rowledger.errors import LogParseError, RowLedgerError, ValidationError
from rowledger.ingest import ParsedTable, load_log_batch, read_csv_file
from rowledger.observability import configure_logging
from rowledger.protocols import CommitState, DatasetScope, DuplicateCheckResult, HistoryScope, LogBatch, Scope

console = Console()
logger = structlog.get_logger(__name__)

T = TypeVar("T")

# Exit status of an upload that stopped at the confirmation step
EXIT_AWAITING_CONFIRMATION = 2


def _load_config(config_path: Optional[Path]) -> Config:
    path = config_path or find_config_file()
    return Config.from_yaml(path) if path else Config()


def _run(ctx: click.Context, action: Callable[[ImportEngine], Awaitable[T]]) -> T:
    """Run one engine call inside a container lifecycle; engine errors exit with status 1."""

    async def runner() -> T:
        container = DependencyContainer(config=ctx.obj["config"])
        async with container.lifecycle():
            engine = await container.get_engine()
            return await action(engine)

    try:
        return asyncio.run(runner())
    except RowLedgerError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}", highlight=False)
        raise click.exceptions.Exit(1) from e


def _read_csv(ctx: click.Context, path: Path) -> ParsedTable:
    try:
        return read_csv_file(path, ctx.obj["config"].limits)
    except ValidationError as e:
        raise click.ClickException(str(e)) from e


def _owner(ctx: click.Context) -> str:
    owner = ctx.obj.get("owner")
    if not owner:
        raise click.UsageError("--owner is required for this command")
    return owner


def _scope(ctx: click.Context, dataset_id: Optional[int], history: bool, source_name: str = "upload") -> Scope:
    if (dataset_id is None) == (not history):
        raise click.UsageError("choose exactly one of --dataset or --history")
    owner = _owner(ctx)
    return DatasetScope(owner, dataset_id) if dataset_id is not None else HistoryScope(owner, source_name)


def _parse_indices(value: Optional[str]) -> Optional[List[int]]:
    if value is None:
        return None
    try:
        return [int(part) for part in value.split(",") if part.strip()]
    except ValueError as e:
        raise click.BadParameter("expected comma-separated row indices, e.g. 0,3,4") from e


def _print_duplicate_report(columns: Sequence[str], check: DuplicateCheckResult) -> None:
    if not check.has_duplicates:
        console.print(f"[green]No duplicates[/green] against {check.existing_corpus_size} stored rows.")
        return

    console.print(
        f"[yellow]{check.duplicate_count} duplicate rows[/yellow] against {check.existing_corpus_size} stored rows."
    )
    table = Table(title="Duplicate rows")
    table.add_column("#", style="cyan", justify="right")
    for column in columns:
        table.add_column(escape(column))
    for index, row in zip(check.duplicate_indices, check.duplicate_rows):
        table.add_row(str(index), *(escape(str(row.get(column, ""))) for column in columns))
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level (overrides the configuration)",
)
@click.option("--owner", envvar="ROWLEDGER_OWNER", help="Owner whose data the command works on")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str], owner: Optional[str]) -> None:
    """RowLedger - deduplicating import engine for tabular uploads and log batches."""
    ctx.ensure_object(dict)
    try:
        loaded = _load_config(Path(config) if config else None)
    except Exception as e:
        raise click.ClickException(f"invalid configuration: {e}") from e
    if log_level:
        loaded.monitoring.log_level = log_level.upper()

    configure_logging(loaded.monitoring)
    ctx.obj["config"] = loaded
    ctx.obj["owner"] = owner


# ----------------------------------------------------------------------
# Datasets
# ----------------------------------------------------------------------


@cli.group()
def datasets() -> None:
    """Manage schema-fixed datasets."""


@datasets.command("list")
@click.pass_context
def list_datasets(ctx: click.Context) -> None:
    """List the owner's datasets, newest first."""
    owner = _owner(ctx)
    found = _run(ctx, lambda engine: engine.list_datasets(owner))

    if not found:
        console.print("No datasets.")
        return
    table = Table(title="Datasets")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Name", style="magenta")
    table.add_column("Columns")
    table.add_column("Description")
    for dataset in found:
        table.add_row(
            str(dataset.id),
            escape(dataset.name),
            escape(", ".join(dataset.columns)),
            escape(dataset.description or ""),
        )
    console.print(table)


@datasets.command("create")
@click.argument("name")
@click.option("--columns", required=True, help="Comma-separated column names")
@click.option("--description", default=None, help="Free-text description")
@click.pass_context
def create_dataset(ctx: click.Context, name: str, columns: str, description: Optional[str]) -> None:
    """Register a dataset with a fixed column set."""
    owner = _owner(ctx)
    column_list = [col.strip() for col in columns.split(",")]
    dataset = _run(ctx, lambda engine: engine.create_dataset(owner, name, column_list, description))
    console.print(f"[green]Created dataset {dataset.id}[/green] ({escape(dataset.name)})")


@datasets.command("match")
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def match_datasets(ctx: click.Context, csv_file: Path) -> None:
    """Find datasets whose columns match a CSV file's header."""
    owner = _owner(ctx)
    table_data = _read_csv(ctx, csv_file)
    found = _run(ctx, lambda engine: engine.find_datasets_matching_columns(owner, table_data.columns))

    if not found:
        console.print("No dataset matches these columns.")
        return
    for dataset in found:
        console.print(f"{dataset.id}\t{escape(dataset.name)}", highlight=False)


@datasets.command("rename")
@click.argument("dataset_id", type=int)
@click.option("--name", default=None, help="New name")
@click.option("--description", default=None, help="New description")
@click.pass_context
def rename_dataset(ctx: click.Context, dataset_id: int, name: Optional[str], description: Optional[str]) -> None:
    """Change a dataset's name or description."""
    if name is None and description is None:
        raise click.UsageError("nothing to change; pass --name and/or --description")
    owner = _owner(ctx)
    dataset = _run(ctx, lambda engine: engine.update_dataset(owner, dataset_id, name=name, description=description))
    console.print(f"[green]Updated dataset {dataset.id}[/green] ({escape(dataset.name)})")


@datasets.command("delete")
@click.argument("dataset_id", type=int)
@click.confirmation_option(prompt="Delete the dataset and all of its rows?")
@click.pass_context
def delete_dataset(ctx: click.Context, dataset_id: int) -> None:
    """Delete a dataset together with its rows."""
    owner = _owner(ctx)
    _run(ctx, lambda engine: engine.delete_dataset(owner, dataset_id))
    console.print(f"[green]Deleted dataset {dataset_id}[/green]")


@datasets.command("rows")
@click.argument("dataset_id", type=int)
@click.option("--limit", default=50, show_default=True, help="Maximum rows to show")
@click.pass_context
def dataset_rows(ctx: click.Context, dataset_id: int, limit: int) -> None:
    """Show the rows stored in a dataset."""
    owner = _owner(ctx)

    async def load(engine: ImportEngine) -> Any:
        return await engine.get_dataset(owner, dataset_id), await engine.list_dataset_rows(owner, dataset_id)

    dataset, rows = _run(ctx, load)
    table = Table(title=f"{dataset.name} ({len(rows)} rows)")
    for column in dataset.columns:
        table.add_column(escape(column))
    for row in rows[:limit]:
        table.add_row(*(escape(str(row.payload.get(column, ""))) for column in dataset.columns))
    console.print(table)


# ----------------------------------------------------------------------
# Uploads
# ----------------------------------------------------------------------


@cli.command()
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dataset", "dataset_id", type=int, default=None, help="Target dataset ID")
@click.option("--history", is_flag=True, help="Compare against the whole upload history")
@click.pass_context
def check(ctx: click.Context, csv_file: Path, dataset_id: Optional[int], history: bool) -> None:
    """Report rows of a CSV file that are already stored, without writing."""
    scope = _scope(ctx, dataset_id, history)
    table_data = _read_csv(ctx, csv_file)
    result = _run(ctx, lambda engine: engine.check_duplicates(scope, table_data.columns, table_data.rows))
    _print_duplicate_report(table_data.columns, result)


@cli.command()
@click.argument("csv_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--dataset", "dataset_id", type=int, default=None, help="Target dataset ID")
@click.option("--history", is_flag=True, help="Append to the upload history")
@click.option("--force", is_flag=True, help="Store every row, duplicates included")
@click.option("--select", "select", default=None, help="Comma-separated indices of duplicate rows to keep")
@click.pass_context
def upload(
    ctx: click.Context,
    csv_file: Path,
    dataset_id: Optional[int],
    history: bool,
    force: bool,
    select: Optional[str],
) -> None:
    """
    Upload a CSV file.

    Without --force or --select, an upload containing duplicates stops and
    exits with status 2 after listing them. Re-run with --force to keep every
    row, or with --select to keep only the listed duplicates.
    """
    if force and select is not None:
        raise click.UsageError("--force and --select cannot be combined")
    scope = _scope(ctx, dataset_id, history, csv_file.name)
    table_data = _read_csv(ctx, csv_file)

    indices = _parse_indices(select)
    selected = None
    if indices is not None:
        out_of_range = [i for i in indices if not 0 <= i < len(table_data.rows)]
        if out_of_range:
            raise click.BadParameter(f"row indices out of range: {out_of_range}", param_hint="--select")
        selected = [table_data.rows[i] for i in indices]

    outcome = _run(
        ctx,
        lambda engine: engine.commit(
            scope, table_data.columns, table_data.rows, force_upload=force, selected_subset=selected
        ),
    )

    if outcome.state is CommitState.COMMITTED:
        console.print(f"[green]Committed {outcome.inserted_count} rows.[/green]")
    elif outcome.state is CommitState.DISCARDED:
        console.print("[yellow]Nothing selected; upload discarded.[/yellow]")
    elif outcome.state is CommitState.AWAITING_CONFIRMATION:
        assert outcome.duplicate_check is not None
        _print_duplicate_report(table_data.columns, outcome.duplicate_check)
        console.print("Re-run with --force to store every row, or --select to keep chosen duplicates.")
        ctx.exit(EXIT_AWAITING_CONFIRMATION)
    else:
        console.print(f"[red]Upload failed:[/red] {escape(str(outcome.error))}", highlight=False)
        ctx.exit(1)


# ----------------------------------------------------------------------
# Log batches
# ----------------------------------------------------------------------


@cli.command("import-logs")
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_logs(ctx: click.Context, files: Sequence[Path]) -> None:
    """Import AimTrainer result files, skipping records already imported."""
    owner = _owner(ctx)
    config: Config = ctx.obj["config"]

    batches: List[LogBatch] = []
    parse_errors: List[str] = []
    for path in files:
        try:
            batches.append(load_log_batch(path, owner, config.log_batches))
        except (LogParseError, OSError) as e:
            logger.warning("Could not read log file", path=str(path), error=str(e))
            parse_errors.append(f"{path.name}: {e}")

    summary = _run(ctx, lambda engine: engine.reconcile_log_batches(owner, batches))
    summary.total_files += len(parse_errors)
    summary.errors = parse_errors + summary.errors

    table = Table(title="Log import")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta", justify="right")
    for key, value in summary.to_dict().items():
        if key != "errors":
            table.add_row(key, str(value))
    console.print(table)

    for error in summary.errors:
        console.print(f"[red]{escape(error)}[/red]", highlight=False)
    if summary.errors:
        ctx.exit(1)


@cli.group()
def logs() -> None:
    """Browse and manage imported log records."""


@logs.command("list")
@click.option("--weapon", default=None, help="Only records for this weapon")
@click.option("--challenge", default=None, help="Only records for this challenge")
@click.option("--page", default=1, show_default=True, type=int, help="Page number")
@click.option("--limit", default=None, type=int, help="Records per page")
@click.option("--all", "fetch_all", is_flag=True, help="Show every matching record")
@click.pass_context
def list_logs(
    ctx: click.Context,
    weapon: Optional[str],
    challenge: Optional[str],
    page: int,
    limit: Optional[int],
    fetch_all: bool,
) -> None:
    """List stored log records, newest first."""
    owner = _owner(ctx)
    result = _run(
        ctx,
        lambda engine: engine.list_log_records(
            owner, page=page, limit=limit, fetch_all=fetch_all, weapon=weapon, challenge_name=challenge
        ),
    )

    if not result.records:
        console.print("No log records.")
        return
    table = Table(title="Log records")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Challenge", style="magenta")
    table.add_column("Weapon")
    table.add_column("Accuracy", justify="right")
    table.add_column("Hits", justify="right")
    table.add_column("Damage", justify="right")
    table.add_column("File")
    for record in result.records:
        payload = record.payload
        table.add_row(
            str(record.id),
            escape(str(payload.get("challenge_name", ""))),
            escape(str(payload.get("weapon", ""))),
            str(payload.get("accuracy", "")),
            f"{payload.get('shots_hit', '')}/{payload.get('total_shots', '')}",
            str(payload.get("damage", "")),
            escape(record.source_name),
        )
    console.print(table)
    console.print(f"Page {result.page} of {result.total_pages}, {result.total} records", highlight=False)


@logs.command("stats")
@click.pass_context
def log_stats(ctx: click.Context) -> None:
    """Show totals and per-weapon and per-challenge breakdowns."""
    owner = _owner(ctx)
    stats = _run(ctx, lambda engine: engine.log_statistics(owner))

    summary = Table(title="Log statistics")
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", style="magenta", justify="right")
    for key, value in stats.to_dict().items():
        if not isinstance(value, list):
            summary.add_row(key, f"{value:.2f}" if isinstance(value, float) else str(value))
    console.print(summary)

    for title, groups in (("Weapons", stats.weapons), ("Challenges", stats.challenges)):
        if not groups:
            continue
        table = Table(title=title)
        table.add_column("Name", style="magenta")
        table.add_column("Records", justify="right")
        table.add_column("Avg accuracy", justify="right")
        for group in groups:
            table.add_row(escape(group.name), str(group.count), f"{group.avg_accuracy:.2f}")
        console.print(table)

    if stats.recent_batches:
        table = Table(title="Recent files")
        table.add_column("File", style="magenta")
        table.add_column("Timestamp", justify="right")
        table.add_column("Records", justify="right")
        for batch in stats.recent_batches:
            table.add_row(escape(batch.source_name), str(batch.batch_timestamp), str(batch.record_count))
        console.print(table)


@logs.command("delete")
@click.argument("record_id", type=int)
@click.confirmation_option(prompt="Delete this log record?")
@click.pass_context
def delete_log(ctx: click.Context, record_id: int) -> None:
    """Delete one stored log record."""
    owner = _owner(ctx)
    _run(ctx, lambda engine: engine.delete_log_record(owner, record_id))
    console.print(f"[green]Deleted log record {record_id}[/green]")


# ----------------------------------------------------------------------
# Upload history
# ----------------------------------------------------------------------


@cli.group()
def uploads() -> None:
    """Browse the upload history."""


@uploads.command("list")
@click.pass_context
def list_uploads(ctx: click.Context) -> None:
    """List history uploads, newest first."""
    owner = _owner(ctx)
    found = _run(ctx, lambda engine: engine.list_uploads(owner))

    if not found:
        console.print("No uploads.")
        return
    table = Table(title="Uploads")
    table.add_column("ID", style="cyan", justify="right")
    table.add_column("Source", style="magenta")
    table.add_column("Rows", justify="right")
    table.add_column("Columns", justify="right")
    table.add_column("Created")
    for item in found:
        info = item.summary()
        table.add_row(
            str(info["id"]),
            escape(info["sourceName"]),
            str(info["rowCount"]),
            str(info["columnCount"]),
            info["createdAt"] or "",
        )
    console.print(table)


@uploads.command("show")
@click.argument("upload_id", type=int)
@click.option("--limit", default=50, show_default=True, help="Maximum rows to show")
@click.pass_context
def show_upload(ctx: click.Context, upload_id: int, limit: int) -> None:
    """Show the rows stored by one history upload."""
    owner = _owner(ctx)
    found = _run(ctx, lambda engine: engine.get_upload(owner, upload_id))

    table = Table(title=f"Upload {found.id}: {escape(found.source_name)}")
    for column in found.columns:
        table.add_column(escape(column))
    for row in found.rows[:limit]:
        table.add_row(*(escape(str(row.get(column, ""))) for column in found.columns))
    console.print(table)
    console.print(f"{len(found.rows)} rows, {len(found.columns)} columns", highlight=False)


@cli.command("validate-config")
@click.pass_context
def validate_config(ctx: click.Context) -> None:
    """Print the effective configuration."""
    config: Config = ctx.obj["config"]
    console.print_json(config.model_dump_json())
    console.print("[green]Configuration is valid.[/green]")


def main() -> None:
    """Main entry point for the CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
