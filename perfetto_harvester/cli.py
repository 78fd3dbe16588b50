"""CLI entry point for the frame harvester."""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from perfetto_harvester.analyzer import SCHEMA_VERSION, analyze_trace
from perfetto_harvester.config import AnalysisConfig
from perfetto_harvester.errors import HarvesterError
from perfetto_harvester.export import write_by_thread, write_chart, write_csv
from perfetto_harvester.trace_source import load_trace

app = typer.Typer(
    help="Perfetto Harvester - Correlate scheduler and hardware counter traces into frames",
    no_args_is_help=True
)
console = Console()


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True
    )


def _check_file(path: Path, label: str) -> None:
    if not path.exists():
        console.print(f"[red]Error:[/red] {label} not found: {path}")
        raise typer.Exit(code=1)
    if not path.is_file():
        console.print(f"[red]Error:[/red] Path is not a file: {path}")
        raise typer.Exit(code=1)


@app.callback(invoke_without_command=True)
def main():
    """Perfetto Harvester - Correlate scheduler and hardware counter traces into frames."""


@app.command()
def analyze(
    trace: Path = typer.Option(..., "--trace", help="Path to a JSON capture or Perfetto trace"),
    process: str = typer.Option(..., "--process", envvar="HARVESTER_PROCESS", help="Name prefix of the process to analyze"),
    interval_ms: int = typer.Option(..., "--interval-ms", envvar="HARVESTER_INTERVAL_MS", help="Frame width in milliseconds"),
    counters: Optional[Path] = typer.Option(None, "--counters", help="Counter CSV replacing the trace's counters"),
    workers: int = typer.Option(1, "--workers", envvar="HARVESTER_WORKERS", help="Threads used to process cores"),
    out: Path = typer.Option("analysis.json", "--out", help="Output JSON summary path"),
    csv_out: Optional[Path] = typer.Option(None, "--csv-out", help="CSV with one row per entry"),
    by_thread_out: Optional[Path] = typer.Option(None, "--by-thread-out", help="Per-thread time pivot CSV"),
    chart_out: Optional[Path] = typer.Option(None, "--chart-out", help="JSON chart payload path"),
    schema_version: str = typer.Option(SCHEMA_VERSION, "--schema-version", help="Schema version to emit in JSON"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log analysis progress"),
):
    """Build frames for a process and write the summary and exports."""
    _setup_logging(verbose)
    _check_file(trace, "Trace file")
    if counters is not None:
        _check_file(counters, "Counter file")

    console.print(f"[blue]Analyzing trace:[/blue] {trace}")
    console.print(f"[blue]Process prefix:[/blue] {process}")
    console.print(f"[blue]Interval:[/blue] {interval_ms}ms")
    if counters is not None:
        console.print(f"[blue]Counters:[/blue] {counters}")

    try:
        config = AnalysisConfig(process, interval_ms, workers)
        result, output = analyze_trace(
            trace_path=str(trace),
            config=config,
            counters_path=str(counters) if counters is not None else None,
            schema_version=schema_version
        )

        with open(out, 'w') as f:
            json.dump(result, f, indent=2)
        console.print(f"[green]✓[/green] Analysis complete: {out}")

        if csv_out is not None:
            write_csv(output, csv_out)
            console.print(f"[green]✓[/green] Entries written to: {csv_out}")
        if by_thread_out is not None:
            write_by_thread(output, by_thread_out)
            console.print(f"[green]✓[/green] Per-thread table written to: {by_thread_out}")
        if chart_out is not None:
            write_chart(output, chart_out)
            console.print(f"[green]✓[/green] Chart data written to: {chart_out}")

    except (HarvesterError, OSError) as e:
        console.print(f"[red]Error during analysis:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def processes(
    trace: Path = typer.Option(..., "--trace", help="Path to a JSON capture or Perfetto trace"),
    prefix: Optional[str] = typer.Option(None, "--prefix", help="Only list processes with this name prefix"),
):
    """List the processes found in a trace."""
    _setup_logging(False)
    _check_file(trace, "Trace file")

    try:
        data = load_trace(str(trace))
    except (HarvesterError, OSError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Processes in {trace.name}")
    table.add_column("pid", justify="right")
    table.add_column("name")
    table.add_column("threads", justify="right")
    table.add_column("start_ns", justify="right")
    table.add_column("end_ns", justify="right")
    for item in data.processes:
        if prefix and not item.name.startswith(prefix):
            continue
        table.add_row(
            str(item.pid),
            item.name,
            str(len(item.threads)),
            str(item.start_time),
            str(item.end_time)
        )
    console.print(table)


if __name__ == "__main__":
    app()
