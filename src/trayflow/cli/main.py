from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from trayflow.cli._utils import parse_timestamp, parse_tray_numbers
from trayflow.config import Settings, SettingsError, load_settings
from trayflow.core.errors import LifecycleError
from trayflow.lifecycle.results import TransitionResult
from trayflow.service import TrayflowService
from trayflow.storage.sqlite_store import open_store

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _service(ctx: typer.Context) -> TrayflowService:
    return TrayflowService.from_settings(_settings(ctx))


def _when(value: str | None, option: str) -> datetime | None:
    try:
        return parse_timestamp(value)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint=option) from exc


def _print_result(result: TransitionResult) -> None:
    t = Table(title=f"{result.action.value.replace('_', ' ').title()}: {result.status.value}")
    t.add_column("Field")
    t.add_column("Value")
    t.add_row("Batch", result.batch_key or "-")
    t.add_row("From", result.from_stage or "-")
    t.add_row("To", result.to_stage or "-")
    t.add_row("Succeeded", str(result.succeeded))
    t.add_row("Failed", str(result.failed))
    console.print(t)
    for failure in result.failures:
        console.print(f"[yellow]Tray {failure.tray_id} skipped:[/yellow] {failure.reason}")
    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    if result.is_aborted:
        console.print(f"[red]Refused ({result.error_code}):[/red] {result.error}")


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Settings YAML path"),
    db: str | None = typer.Option(None, "--db", help="Override the SQLite database path"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Track microgreens trays through their growth stages."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        settings = load_settings(config)
    except SettingsError as exc:
        raise typer.BadParameter(str(exc), param_hint="--config") from exc
    if db is not None:
        settings = settings.model_copy(update={"database_path": db})
    ctx.obj = settings


@app.command()
def init(ctx: typer.Context):
    """Create the database schema and seed the stage table."""
    settings = _settings(ctx)
    with open_store(settings.database_path) as store:
        stages = len(store.load_registry())
    console.print(f"Initialised {settings.database_path} ({stages} stages)")


@app.command()
def load(ctx: typer.Context, bundle: Path):
    """Load recipes, trays, batches, harvests and plans from a YAML bundle."""
    if not bundle.exists():
        raise typer.BadParameter(f"File not found: {bundle}", param_hint="bundle")
    with _service(ctx) as service:
        try:
            counts = service.load_bundle(bundle)
        except (ValueError, ValidationError, LifecycleError) as exc:
            console.print(f"[red]Load failed:[/red] {exc}")
            raise typer.Exit(1)
    t = Table(title=f"Loaded: {bundle.name}")
    t.add_column("Section")
    t.add_column("Count")
    for section, count in counts.items():
        t.add_row(section, str(count))
    console.print(t)


@app.command()
def advance(
    ctx: typer.Context,
    tray_id: str,
    at: str | None = typer.Option(None, "--at", help="Transition time (ISO-8601); default now"),
    tray_number: list[str] | None = typer.Option(
        None,
        "--tray-number",
        help="Real tray number for a soaking tray, as TRAY_ID=NUMBER (repeatable)",
    ),
    expect: str | None = typer.Option(
        None, "--expect", help="Refuse unless the batch advances to this stage"
    ),
):
    """Advance the tray's whole batch to its next stage."""
    timestamp = _when(at, "--at")
    try:
        numbers = parse_tray_numbers(tray_number)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--tray-number") from exc
    with _service(ctx) as service:
        result = service.advance_stage(
            tray_id, timestamp, tray_numbers=numbers or None, expected_stage=expect
        )
    _print_result(result)
    if result.is_aborted:
        raise typer.Exit(1)


@app.command()
def revert(
    ctx: typer.Context,
    tray_id: str,
    reason: str | None = typer.Option(None, "--reason", help="Why the batch is moved back"),
    now: str | None = typer.Option(None, "--now", help="Reference time (ISO-8601)"),
):
    """Move the tray's whole batch back to its previous stage."""
    reference = _when(now, "--now")
    with _service(ctx) as service:
        result = service.revert_stage(tray_id, reason=reason, now=reference)
    _print_result(result)
    if result.is_aborted:
        raise typer.Exit(1)


@app.command("suspend-watering")
def suspend_watering(
    ctx: typer.Context,
    tray_id: str,
    at: str | None = typer.Option(None, "--at", help="Suspension time (ISO-8601); default now"),
):
    """Stop watering every tray in the batch."""
    when = _when(at, "--at")
    with _service(ctx) as service:
        result = service.suspend_watering(tray_id, when)
    _print_result(result)
    if result.is_aborted:
        raise typer.Exit(1)


@app.command("resume-watering")
def resume_watering(ctx: typer.Context, tray_id: str):
    """Resume watering for every tray in the batch."""
    with _service(ctx) as service:
        result = service.resume_watering(tray_id)
    _print_result(result)
    if result.is_aborted:
        raise typer.Exit(1)


@app.command("run-tasks")
def run_tasks(
    ctx: typer.Context,
    now: str | None = typer.Option(None, "--now", help="Run tasks due by this time (ISO-8601)"),
):
    """Execute every scheduled task that is due."""
    reference = _when(now, "--now")
    with _service(ctx) as service:
        results = service.run_due_scheduled_tasks(reference)
    if not results:
        console.print("No tasks due.")
        return
    t = Table(title=f"Scheduled tasks run: {len(results)}")
    t.add_column("Action")
    t.add_column("Batch")
    t.add_column("Status")
    t.add_column("To")
    t.add_column("Succeeded")
    t.add_column("Failed")
    t.add_column("Detail")
    for result in results:
        detail = result.error or "; ".join(result.warnings) or ""
        t.add_row(
            result.action.value,
            result.batch_key or "-",
            result.status.value,
            result.to_stage or "-",
            str(result.succeeded),
            str(result.failed),
            detail,
        )
    console.print(t)


@app.command()
def tasks(
    ctx: typer.Context,
    show_all: bool = typer.Option(False, "--all", help="Include inactive tasks"),
    batch: str | None = typer.Option(None, "--batch", help="Only tasks for this batch key"),
):
    """List scheduled tasks."""
    with _service(ctx) as service:
        rows = service.store.list_tasks(batch_key=batch, include_inactive=show_all)
    t = Table(title="Scheduled tasks")
    t.add_column("ID")
    t.add_column("Task")
    t.add_column("Batch")
    t.add_column("Next run")
    t.add_column("Last run")
    t.add_column("Active")
    for task in rows:
        t.add_row(
            str(task.id),
            task.task_name,
            task.batch_key,
            task.next_run_at.isoformat(),
            task.last_run_at.isoformat() if task.last_run_at else "-",
            "yes" if task.is_active else "no",
        )
    console.print(t)


@app.command()
def status(
    ctx: typer.Context,
    tray_id: str,
    now: str | None = typer.Option(None, "--now", help="Reference time (ISO-8601)"),
):
    """Show the batch a tray belongs to and its expected harvest."""
    reference = _when(now, "--now")
    with _service(ctx) as service:
        try:
            summary = service.batch_status(tray_id, reference)
        except LifecycleError as exc:
            raise typer.BadParameter(str(exc), param_hint="tray_id") from exc
    t = Table(title=f"Tray {tray_id}")
    t.add_column("Field")
    t.add_column("Value")
    for key, value in summary.items():
        if isinstance(value, list):
            value = ", ".join(str(item) for item in value)
        t.add_row(key, "-" if value is None else str(value))
    console.print(t)


@app.command("recalc-plan")
def recalc_plan(
    ctx: typer.Context,
    plan_id: str,
    as_of: str | None = typer.Option(None, "--as-of", help="Reference time (ISO-8601)"),
):
    """Recompute grams per tray and trays needed for a crop plan."""
    reference = _when(as_of, "--as-of")
    with _service(ctx) as service:
        try:
            outcome = service.recalculate_plan(plan_id, as_of=reference)
        except KeyError as exc:
            raise typer.BadParameter(str(exc.args[0]), param_hint="plan_id") from exc
        except LifecycleError as exc:
            console.print(f"[red]Recalculation failed:[/red] {exc}")
            raise typer.Exit(1)
    plan = outcome.plan
    t = Table(title=f"Crop plan {plan.id}")
    t.add_column("Metric")
    t.add_column("Previous")
    t.add_column("Current")
    t.add_row(
        "grams_per_tray", f"{outcome.previous_grams_per_tray:.2f}", f"{plan.grams_per_tray:.2f}"
    )
    t.add_row("trays_needed", str(outcome.previous_trays_needed), str(plan.trays_needed))
    console.print(t)
    for warning in outcome.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    console.print(outcome.stats.recommendation)


@app.command("yield-stats")
def yield_stats(
    ctx: typer.Context,
    recipe_id: str,
    as_of: str | None = typer.Option(None, "--as-of", help="Reference time (ISO-8601)"),
):
    """Show the harvest history behind a recipe's planning yield."""
    reference = _when(as_of, "--as-of")
    with _service(ctx) as service:
        try:
            stats = service.yield_stats(recipe_id, as_of=reference)
        except LifecycleError as exc:
            raise typer.BadParameter(str(exc), param_hint="recipe_id") from exc
    t = Table(title=f"Yield stats: {recipe_id}")
    t.add_column("Metric")
    t.add_column("Value")
    for key, value in stats.to_dict().items():
        if key == "recommendation":
            continue
        if isinstance(value, list):
            value = " to ".join(value)
        t.add_row(key, "-" if value is None else str(value))
    console.print(t)
    console.print(stats.recommendation)


if __name__ == "__main__":
    app()
