import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import storage
from .adapters import AdapterRegistry, load_adapters_file
from .callbacks import ingest_callback
from .config import Settings, get_config, load_settings, set_config
from .dispatcher import route_execution
from .errors import RenderqError
from .events import fan_out, LoggingSink
from .matcher import get_compatible_engines
from .models import (
    CostProfile,
    ExecutionPlan,
    ProcessingLocation,
    RouteRequest,
    RouterEvent,
    RouterPhase,
    RouterStatus,
    ScoreConstraints,
)
from .registry import EngineRegistry, get_registry, load_registry_file
from .scorer import score_engines
from .stats import get_success_tracker
from .worker import start_workers

app = typer.Typer(help="renderq - execution router and job queue for rendering engines.")

# Sub-apps so CLI supports commands like:
#   renderq worker start --count 3
#   renderq config set max-attempts 5
worker_app = typer.Typer(help="Run or stop queue workers.")
config_app = typer.Typer(help="Read and change settings.")

app.add_typer(worker_app, name="worker")
app.add_typer(config_app, name="config")

console = Console()

_PHASE_STYLE = {
    RouterPhase.DISPATCH_FAILED: "red",
    RouterPhase.DISPATCH_CANCELLED: "yellow",
    RouterPhase.PARTIAL_SUCCESS: "yellow",
    RouterPhase.ROUTE_REJECTED: "red",
    RouterPhase.NO_COMPATIBLE_ENGINE: "red",
    RouterPhase.ROUTE_COMPLETED: "green",
    RouterPhase.JOB_ENQUEUED: "cyan",
}


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging")):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _fail(message: str) -> None:
    print(f"[red]{escape(message)}[/red]")
    raise typer.Exit(1)


def _settings() -> Settings:
    try:
        return load_settings()
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")


def _registry(settings: Settings) -> EngineRegistry:
    if settings.registry_path:
        return EngineRegistry(load_registry_file(settings.registry_path))
    return get_registry()


def _adapters(settings: Settings) -> AdapterRegistry:
    if settings.adapters_path:
        return load_adapters_file(settings.adapters_path)
    return AdapterRegistry()


def _read_json(path: Path):
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        _fail(f"Cannot read {path}: {e}")


def _load_plan(path: Path) -> ExecutionPlan:
    data = _read_json(path)
    if isinstance(data, dict) and "plan" in data:
        data = data["plan"]
    try:
        return ExecutionPlan.model_validate(data)
    except ValueError as e:
        _fail(f"Invalid plan in {path}: {e}")


def _print_event(event: RouterEvent) -> None:
    style = _PHASE_STYLE.get(event.phase, "white")
    engine = f" [bold]{event.engine_id}[/bold]" if event.engine_id else ""
    print(f"[dim]{event.timestamp:%H:%M:%S}[/dim] [{style}]{event.phase.value}[/{style}]{engine} {escape(event.message)}")


# -----------------------------
# Engines and routing
# -----------------------------
@app.command()
def engines():
    """List the engine registry."""
    try:
        registry = _registry(_settings())
    except RenderqError as e:
        _fail(str(e))
    t = Table(title="Engines")
    for c in ["id", "location", "cost", "priority", "max s", "async", "available", "capabilities"]:
        t.add_column(c)
    for e in registry.list_engines():
        t.add_row(
            e["id"],
            e["location"],
            e["cost"],
            f"{e['priority']:.2f}",
            f"{e['max_duration_sec']:g}",
            "yes" if e["async"] else "",
            "[green]yes[/green]" if e["available"] else "[red]no[/red]",
            ", ".join(e["capabilities"]),
        )
    console.print(t)


@app.command()
def match(
    plan_file: Path = typer.Argument(..., help="Execution plan JSON"),
    max_cost: Optional[CostProfile] = typer.Option(None, "--max-cost", help="Highest cost tier allowed"),
    location: Optional[ProcessingLocation] = typer.Option(None, "--location", help="Only engines at this location"),
):
    """Show compatible engines for a plan in the order they would be tried."""
    plan = _load_plan(plan_file)
    try:
        registry = _registry(_settings())
    except RenderqError as e:
        _fail(str(e))
    compatible = get_compatible_engines(plan, registry)
    ranked = score_engines(compatible, ScoreConstraints(max_cost_profile=max_cost, force_location=location))
    required = ", ".join(sorted(c.value for c in plan.required_capabilities)) or "-"
    print(f"Plan [bold]{plan.plan_id}[/bold] needs: {required}")
    if not ranked:
        print("[yellow]No compatible engine.[/yellow]")
        return
    t = Table(title="Candidates")
    for c in ["#", "id", "cost", "location", "priority"]:
        t.add_column(c)
    for i, e in enumerate(ranked, start=1):
        t.add_row(str(i), e.id, e.cost_profile.value, e.location.value, f"{e.priority_score:.2f}")
    console.print(t)


@app.command()
def route(
    plan_file: Path = typer.Argument(..., help="Execution plan JSON, or a request with a 'plan' key"),
    preferred: Optional[str] = typer.Option(None, "--preferred", help="Engine id to try first"),
    max_cost: Optional[CostProfile] = typer.Option(None, "--max-cost", help="Highest cost tier allowed"),
    location: Optional[ProcessingLocation] = typer.Option(None, "--location", help="Only engines at this location"),
    priority: Optional[int] = typer.Option(None, help="Queue priority for asynchronous engines (higher first)"),
    timeout: Optional[float] = typer.Option(None, help="Engine timeout in seconds"),
):
    """Route a plan to the best engine and print every router event."""
    data = _read_json(plan_file)
    request = dict(data) if isinstance(data, dict) and "plan" in data else {"plan": data}
    request.update(
        {
            "preferred_engine_id": preferred or request.get("preferred_engine_id"),
            "max_cost_profile": max_cost or request.get("max_cost_profile"),
            "force_location": location or request.get("force_location"),
            "priority": priority if priority is not None else request.get("priority", 0),
        }
    )
    settings = _settings()
    try:
        registry = _registry(settings)
        adapters = _adapters(settings)
    except RenderqError as e:
        _fail(str(e))

    result = route_execution(
        request,
        fan_out(_print_event, LoggingSink()),
        registry=registry,
        adapters=adapters,
        stats=get_success_tracker(settings.success_window),
        timeout=timeout if timeout is not None else settings.engine_timeout_sec,
        max_attempts=settings.max_attempts,
    )
    colour = {RouterStatus.SUCCESS: "green", RouterStatus.PARTIAL_SUCCESS: "yellow"}.get(result.status, "red")
    print(f"[{colour}]{result.status.value}[/{colour}] {result.job_id}")
    if result.attempted_engines:
        print(f"attempted: {', '.join(result.attempted_engines)}")
    if result.artifacts.get("output_ref"):
        print(f"output: {result.artifacts['output_ref']}")
    print(escape(result.human_message))
    if result.status == RouterStatus.FAILED:
        raise typer.Exit(1)


# -----------------------------
# Worker controls
# -----------------------------
@worker_app.command("start")
def worker_start_cmd(
    count: int = typer.Option(1, "--count", "-c", help="Number of worker processes"),
    reset_shutdown: bool = typer.Option(True, help="Set shutdown=false before start"),
):
    """Start worker processes."""
    if reset_shutdown:
        storage.config_set("shutdown", "false")
    print(f"Starting {count} worker(s). Ctrl+C to stop.")
    start_workers(count)


@worker_app.command("stop")
def worker_stop_cmd():
    """Signal workers to stop gracefully (finish current job)."""
    storage.config_set("shutdown", "true")
    print("[yellow]Set shutdown=true. Workers will exit after finishing the current job.[/yellow]")


# -----------------------------
# Status & listing
# -----------------------------
@app.command()
def status():
    """Show job state counts, queue depth and active workers."""
    stats = storage.queue_stats()
    tbl = Table(title="Jobs")
    tbl.add_column("State")
    tbl.add_column("Count")
    for state, count in storage.counts_by_state():
        tbl.add_row(state, str(count))
    console.print(tbl)
    oldest = stats["oldest_waiting_sec"]
    print(f"waiting={stats['waiting']} active={stats['active']} oldest_waiting={'-' if oldest is None else f'{oldest:.0f}s'}")

    wt = Table(title="Active Workers")
    wt.add_column("worker_id")
    wt.add_column("pid")
    wt.add_column("started_at")
    for w in storage.list_workers():
        wt.add_row(w["id"], str(w["pid"]), w["started_at"])
    console.print(wt)


@app.command("list")
def list_cmd(status: Optional[str] = typer.Option(None, "--status", help="Filter by status")):
    """List jobs, optionally by status."""
    jobs = storage.list_jobs(status)
    t = Table(title=f"Jobs{'' if not status else f' ({status})'}")
    for c in ["id", "status", "engine", "priority", "attempts", "next_run_at", "external id", "error"]:
        t.add_column(c)
    for j in jobs:
        t.add_row(
            j.id,
            j.status.value,
            j.engine_id,
            str(j.priority),
            f"{j.attempts}/{j.max_attempts}",
            j.next_run_at.isoformat(timespec="seconds"),
            j.external_job_id or "",
            (j.error_message or "")[:60],
        )
    console.print(t)


@app.command()
def job(job_id: str):
    """Show one job as JSON."""
    try:
        record = storage.get_job(job_id)
    except RenderqError as e:
        _fail(str(e))
    console.print_json(record.model_dump_json())


@app.command()
def callback(
    payload: Optional[str] = typer.Argument(
        None,
        help="Callback JSON e.g. '{\"external_job_id\":\"ext-1\",\"status\":\"completed\",\"output_ref\":\"s3://...\"}'",
    ),
    json_file: Optional[Path] = typer.Option(None, "--json-file", help="Read callback JSON from a file"),
):
    """Apply an engine callback to its job."""
    if json_file:
        data = _read_json(json_file)
    elif payload:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise typer.BadParameter(f"Invalid JSON: {e.msg}")
    else:
        raise typer.BadParameter("Provide a JSON payload or --json-file.")
    try:
        updated = ingest_callback(data)
    except RenderqError as e:
        _fail(str(e))
    if updated is None:
        print("[yellow]Callback ignored (job already finished).[/yellow]")
    else:
        print(f"Job [bold]{updated.id}[/bold] is now {updated.status.value}")


@app.command()
def sweep(threshold: Optional[float] = typer.Option(None, help="Stuck threshold in seconds")):
    """Fail-and-retry jobs stuck in processing."""
    if threshold is None:
        threshold = _settings().stuck_threshold_sec
    recovered = storage.recover_stuck(threshold)
    for j in recovered:
        print(f"{j.id} -> {j.status.value}")
    print(f"Recovered {len(recovered)} stuck job(s).")


@app.command()
def retry(job_id: str):
    """Queue a fresh copy of a failed job. The failed record stays as history."""
    try:
        copy = storage.requeue_copy(job_id)
    except RenderqError as e:
        _fail(str(e))
    print(f"[green]Re-queued[/green] {job_id} as [bold]{copy.id}[/bold]")


# -----------------------------
# Config
# -----------------------------
@config_app.command("set")
def config_set_cmd(key: str = typer.Argument(..., help="Config key"), value: str = typer.Argument(..., help="Value")):
    try:
        set_config(key, value)
    except RenderqError as e:
        _fail(str(e))
    print(f"set {key}={value}")


@config_app.command("get")
def config_get_cmd(key: str = typer.Argument(..., help="Config key")):
    print(get_config(key) or "")


@config_app.command("list")
def config_list_cmd():
    t = Table(title="Config")
    t.add_column("key")
    t.add_column("value")
    for k, v in storage.config_items().items():
        t.add_row(k, v)
    console.print(t)
