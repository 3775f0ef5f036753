"""Lens CLI — runs warehouse models locally."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lens import __version__
from lens.core import database
from lens.core.config import get_settings
from lens.core.logging import configure_logging
from lens.dag.resolver import DAGResolver
from lens.pipeline.loader import load_builtin_project, load_models_from_file
from lens.project.runner import ProjectRunner
from lens.repositories.run_repo import RunRepository

app = typer.Typer(
    name="lens",
    help="MovieLens dimensional warehouse: incremental facts and SCD2 snapshots",
    no_args_is_help=True,
)
console = Console()

ProjectOption = typer.Option(None, "--project", "-p", help="Model file (default: built-in MovieLens project)")


def _models(project: Optional[Path]) -> dict:
    if project is None:
        return load_builtin_project()
    if not project.exists():
        console.print(f"[red]Error:[/red] File not found: {project}")
        raise typer.Exit(1)
    return load_models_from_file(project)


@app.command()
def run(
    select: Optional[str] = typer.Option(None, "--select", "-s", help="Model selector: name, name+ (with downstream), +name (with upstream)"),
    full_refresh: bool = typer.Option(False, "--full-refresh", help="Rebuild incremental models from scratch"),
    raw_dir: Optional[Path] = typer.Option(None, "--raw-dir", help="Directory holding the raw CSV files"),
    database_url: Optional[str] = typer.Option(None, "--database-url", help="Async SQLAlchemy URL or memory://"),
    project: Optional[Path] = ProjectOption,
    as_json: bool = typer.Option(False, "--json", help="Print the full run result as JSON"),
):
    """Materialize models in dependency order."""
    settings = get_settings(
        raw_data_dir=str(raw_dir) if raw_dir else None,
        database_url=database_url,
    )
    configure_logging(settings.log_level)
    models = _models(project)

    async def _run():
        async with ProjectRunner(models, settings) as runner:
            return await runner.run(select=select, full_refresh=full_refresh)

    try:
        result = asyncio.run(_run())
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
    else:
        table = Table(title=f"Run — {result.status}", show_lines=False)
        table.add_column("Model", style="bold")
        table.add_column("Status")
        table.add_column("Processed", justify="right")
        table.add_column("Written", justify="right")
        table.add_column("Rejected", justify="right")
        table.add_column("Watermark")

        for group in result.execution_order:
            for name in group:
                r = result.results.get(name)
                if r is None:
                    table.add_row(name, "[yellow]skipped[/yellow]", "—", "—", "—", "—")
                    continue
                status = r.get("status", "success")
                color = "green" if status == "success" else "red"
                written = r.get("rows_appended", r.get("rows_inserted", r.get("rows")))
                table.add_row(
                    name,
                    f"[{color}]{status}[/{color}]",
                    str(r.get("rows_processed", r.get("rows", "—"))),
                    "—" if written is None else str(written),
                    str(r.get("rows_rejected", "—")),
                    str(r.get("new_watermark") or "—"),
                )
                if r.get("error"):
                    console.print(f"[red]{name}:[/red] {r['error'][:200]}")

        console.print(table)
        console.print(f"Duration: {result.duration_ms}ms")

    if result.failed:
        raise typer.Exit(1)


@app.command(name="ls")
def list_models(project: Optional[Path] = ProjectOption):
    """List models and how they are materialized."""
    models = _models(project)

    table = Table(title="Models", show_lines=False)
    table.add_column("Name", style="bold")
    table.add_column("Materialized")
    table.add_column("Depends on")
    table.add_column("Config")

    for name in DAGResolver.from_models(models).topological_sort():
        m = models[name]
        if m.watermark_column:
            config = f"watermark={m.watermark_column}, on_schema_change={m.schema_policy.value}"
        elif m.unique_key:
            config = f"key={','.join(m.unique_key)}, updated_at={m.updated_at}"
        else:
            config = ""
        table.add_row(name, m.materialized.value, ", ".join(m.depends_on) or "—", config)

    console.print(table)


@app.command()
def dag(
    select: Optional[str] = typer.Option(None, "--select", "-s", help="Model selector"),
    project: Optional[Path] = ProjectOption,
):
    """Show execution groups (models in a group run in parallel)."""
    graph = DAGResolver.from_models(_models(project))
    try:
        graph = graph.select(select) if select else graph
    except KeyError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    for i, group in enumerate(graph.parallel_groups(), start=1):
        console.print(f"[bold]{i}.[/bold] {', '.join(group)}")


@app.command()
def runs(
    name: str = typer.Argument(..., help="Model name"),
    last: int = typer.Option(10, "--last", "-l", help="Number of runs to show"),
):
    """Show recent recorded runs for a model."""
    settings = get_settings()
    if settings.in_memory:
        console.print("[dim]Runs are not recorded for in-memory warehouses[/dim]")
        return

    async def _fetch():
        database.init_engine(settings.database_url)
        await database.create_tables()
        try:
            async with database.async_session_factory() as session:
                return await RunRepository(session).list_by_model(name, limit=last)
        finally:
            await database.dispose_engine()

    model_runs = asyncio.run(_fetch())
    if not model_runs:
        console.print(f"[dim]No runs recorded for {name}[/dim]")
        return

    table = Table(title=f"Runs: {name}")
    table.add_column("Started")
    table.add_column("Status")
    table.add_column("Processed", justify="right")
    table.add_column("Written", justify="right")
    table.add_column("Rejected", justify="right")
    table.add_column("Watermark")

    for r in model_runs:
        color = "green" if r.status == "success" else "red"
        table.add_row(
            str(r.started_at or "—"),
            f"[{color}]{r.status}[/{color}]",
            str(r.rows_processed if r.rows_processed is not None else "—"),
            str(r.rows_written if r.rows_written is not None else "—"),
            str(r.rows_rejected if r.rows_rejected is not None else "—"),
            r.watermark or "—",
        )
    console.print(table)


@app.command()
def version():
    """Show Lens version."""
    console.print(f"lens v{__version__}")


if __name__ == "__main__":
    app()
