"""Typer-based CLI for ArchiveLedger with Pydantic v2 configuration."""

import json
import logging
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ArchiveLedger.config import (
    ArchiveLedgerConfig,
    export_config_schema,
    load_config,
    validate_config_file,
)
from ArchiveLedger.errors import PipelineBusyError
from ArchiveLedger.layout import PathLayout
from ArchiveLedger.ledger.models import STATUS_ORDER
from ArchiveLedger.pipeline import ArchivePipeline, PipelineSummary, open_ledger
from ArchiveLedger.reconcile import reconcile_existing_downloads, retry_failed

console = Console()
app = typer.Typer(help="ArchiveLedger: idempotent archive extraction and payload dedup")

_CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to config file",
    envvar="ALEDGER_CONFIG",
)
_DATA_ROOT_OPTION = typer.Option(None, "--data-root", help="Override paths.data_root")


# ============================================================================
# Setup
# ============================================================================


def _setup_logging(verbose: bool) -> None:
    """Setup logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def _load(config: Optional[str], data_root: Optional[Path]) -> ArchiveLedgerConfig:
    overrides: dict = {}
    if data_root is not None:
        overrides["paths"] = {"data_root": str(data_root)}
    return load_config(path=config, cli_overrides=overrides)


@contextmanager
def _interrupt_handling(pipeline: ArchivePipeline) -> Iterator[None]:
    """First Ctrl+C finishes the current archive, the second aborts it."""

    def handler(signum, frame) -> None:
        if pipeline.stop_event.is_set():
            console.print("[red]Aborting; the current archive will be retried next run[/red]")
            pipeline.request_abort()
        else:
            console.print("[yellow]Cancellation requested. Finishing current work...[/yellow]")
            pipeline.request_stop()

    previous = signal.signal(signal.SIGINT, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _summary_table(summary: PipelineSummary, title: str) -> Table:
    table = Table(title=title)
    table.add_column("Status", style="cyan")
    table.add_column("Archives", justify="right", style="green")
    for status in STATUS_ORDER:
        table.add_row(status.value, str(summary.counts.get(status, 0)))
    table.add_row("[bold]on disk[/bold]", str(summary.archives_on_disk))
    return table


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config: Optional[str] = _CONFIG_OPTION,
    data_root: Optional[Path] = _DATA_ROOT_OPTION,
    once: bool = typer.Option(False, "--once", help="Exit when no archive is eligible"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Verbose"),
) -> None:
    """Recover, reconcile, then process downloaded archives."""
    _setup_logging(verbose)

    try:
        cfg = _load(config, data_root)
        layout = PathLayout.from_config(cfg)
        console.print(
            Panel(
                f"[bold green]✓ Config loaded[/bold green]\n"
                f"Hash: {cfg.config_hash()[:8]}...\n"
                f"Downloads: {layout.downloads}\n"
                f"Store: {layout.store}",
                title="ArchiveLedger",
            )
        )

        layout.ensure_directories()
        with open_ledger(cfg, layout) as ledger:
            pipeline = ArchivePipeline.from_config(cfg, ledger, layout)
            with _interrupt_handling(pipeline):
                summary = pipeline.run(once=once)

        console.print(_summary_table(summary, f"Final status ({summary.processed} processed)"))
        if summary.cancelled:
            console.print("[yellow]Aborted mid-archive; it will be retried on next start[/yellow]")

    except PipelineBusyError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=2)
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        if verbose:
            raise
        raise typer.Exit(code=1)


@app.command()
def status(
    config: Optional[str] = _CONFIG_OPTION,
    data_root: Optional[Path] = _DATA_ROOT_OPTION,
) -> None:
    """Show per-status archive counts."""
    try:
        cfg = _load(config, data_root)
        layout = PathLayout.from_config(cfg)
        if not layout.ledger_path.exists():
            console.print(f"[yellow]No ledger at {layout.ledger_path}[/yellow]")
            return
        with open_ledger(cfg, layout) as ledger:
            summary = PipelineSummary(
                counts=ledger.status_counts(),
                archives_on_disk=len(layout.archives_on_disk(cfg.pipeline.archive_glob)),
            )
            payloads = ledger.payload_count()
        console.print(_summary_table(summary, "Archive status"))
        console.print(f"[cyan]Unique payloads stored: {payloads}[/cyan]")

    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def retry(
    names: Optional[List[str]] = typer.Argument(None, help="Archives to retry (default: all failed)"),
    config: Optional[str] = _CONFIG_OPTION,
    data_root: Optional[Path] = _DATA_ROOT_OPTION,
) -> None:
    """Move failed archives back to downloaded if still on disk."""
    try:
        cfg = _load(config, data_root)
        layout = PathLayout.from_config(cfg)
        with open_ledger(cfg, layout) as ledger:
            rearmed = retry_failed(
                ledger, layout.downloads, names or None, cfg.pipeline.archive_glob
            )
        if rearmed:
            for name in rearmed:
                console.print(f"[green]✓ {name} re-armed[/green]")
        else:
            console.print("[yellow]Nothing to retry[/yellow]")

    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def reconcile(
    config: Optional[str] = _CONFIG_OPTION,
    data_root: Optional[Path] = _DATA_ROOT_OPTION,
) -> None:
    """Record archives found in the downloads folder."""
    try:
        cfg = _load(config, data_root)
        layout = PathLayout.from_config(cfg)
        layout.ensure_directories()
        with open_ledger(cfg, layout) as ledger:
            report = reconcile_existing_downloads(
                ledger, layout.downloads, cfg.pipeline.archive_glob
            )

        table = Table(title="Reconcile")
        table.add_column("File", style="cyan")
        table.add_column("Result", style="green")
        for name in report.recorded:
            table.add_row(name, "recorded")
        for filename, tracked in report.matched.items():
            table.add_row(filename, f"matched {tracked}")
        for name in report.ignored:
            table.add_row(name, "[yellow]ignored[/yellow]")
        console.print(table)

    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def print_config(
    config: Optional[str] = _CONFIG_OPTION,
    raw: bool = typer.Option(False, "--raw", help="Raw JSON"),
) -> None:
    """Print merged effective config."""
    try:
        cfg = load_config(path=config)
        data = cfg.model_dump(mode="json")

        if raw:
            typer.echo(json.dumps(data, indent=2))
        else:
            console.print(
                Panel(json.dumps(data, indent=2), title="ArchiveLedger Config", expand=False)
            )

    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def validate_config(
    config: str = typer.Argument(..., help="Path to config file"),
) -> None:
    """Validate a config file."""
    try:
        validate_config_file(config)
        console.print("[green]✓ Config valid[/green]")
    except Exception as e:
        console.print(f"[red]✗ Invalid: {e}[/red]")
        raise typer.Exit(code=1)


@app.command()
def schema(
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Save schema to file"),
) -> None:
    """Export JSON Schema for ArchiveLedgerConfig."""
    try:
        schema_data = export_config_schema()

        if output:
            output.write_text(json.dumps(schema_data, indent=2))
            console.print(f"[green]✓ Schema written to {output}[/green]")
        else:
            console.print(
                Panel(json.dumps(schema_data, indent=2), title="JSON Schema", expand=False)
            )

    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(code=1)


def main() -> None:
    """Entry point for CLI."""
    app()


if __name__ == "__main__":
    main()
