"""Command-line interface for relaycore."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click

from relaycore import __version__
from relaycore.errors import ConfigError, PayloadError, RelayError, UnknownRouteError


@click.group()
@click.version_option(version=__version__, prog_name="relaycore")
def main() -> None:
    """relaycore -- ingest, match, summarize, and snapshot KPIs."""


# ---------------------------------------------------------------------------
# helpers
# ---------------------------------------------------------------------------


def _project(directory: str) -> Path:
    from relaycore.logging.events import set_project_dir

    project_dir = Path(directory)
    try:
        set_project_dir(project_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc))
    return project_dir


def _runtime(project_dir: Path) -> Any:
    from relaycore.runtime import RelayRuntime

    try:
        return RelayRuntime.from_project(project_dir)
    except RelayError as exc:
        raise click.ClickException(str(exc))


def _read_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text())
    except json.JSONDecodeError as exc:
        raise click.ClickException(f"{path}: invalid JSON: {exc}")


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


@main.command()
@click.argument("directory", type=click.Path())
def init(directory: str) -> None:
    """Create a new relay project in DIRECTORY."""
    from relaycore.project import scaffold_project

    try:
        result = scaffold_project(Path(directory))
    except FileExistsError as exc:
        raise click.ClickException(str(exc))
    click.echo(f"Created project at {result}")


# ---------------------------------------------------------------------------
# Ingest
# ---------------------------------------------------------------------------


@main.command()
@click.argument("route_id")
@click.argument("file", type=click.Path(exists=True))
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
@click.option("--proof", is_flag=True, help="Require an explicit event timestamp.")
def ingest(route_id: str, file: str, directory: str, proof: bool) -> None:
    """Ingest records from FILE through ROUTE_ID and print the recompute result.

    FILE holds one record, a list of records, or ``{"records": ..., "meta": ...}``.
    """
    project_dir = _project(directory)
    runtime = _runtime(project_dir)

    data = _read_json(file)
    meta: dict[str, Any] = {}
    if isinstance(data, dict) and "records" in data:
        meta = data.get("meta") or {}
        data = data["records"]

    try:
        outcome = runtime.ingest(route_id, data, meta=meta, proof=proof)
    except (UnknownRouteError, PayloadError) as exc:
        raise click.ClickException(str(exc))

    batch = outcome.batch
    click.echo(f"Ingested {batch.ingested} record(s) into {batch.sheet_id} (failed: {batch.failed})")
    if outcome.recompute is not None:
        report = outcome.recompute
        click.echo(f"Rebuilt matches: {', '.join(report.rebuilt_matches) or '-'}")
        click.echo(f"Rebuilt summaries: {', '.join(report.rebuilt_summaries) or '-'}")
        for sheet_id, count in sorted(report.exceptions.items()):
            click.echo(f"  {sheet_id}: {count} exception(s)")
        if report.kpi_seq is not None:
            click.echo(f"KPI snapshot #{report.kpi_seq}")


@main.command()
@click.argument("route_id")
@click.argument("file", type=click.Path(exists=True))
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
def preview(route_id: str, file: str, directory: str) -> None:
    """Dry-run ROUTE_ID against the record in FILE; nothing is appended."""
    from relaycore.project import load_registries
    from relaycore.routes import preview_route

    project_dir = _project(directory)
    try:
        _, routes = load_registries(project_dir)
        result = preview_route(routes, route_id, _read_json(file))
    except (ConfigError, UnknownRouteError) as exc:
        raise click.ClickException(str(exc))
    _echo_json(result.model_dump(mode="json"))


@main.command()
@click.argument("route_id")
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
@click.option("--seed", type=int, default=None, help="RNG seed for reproducible output.")
def mock(route_id: str, directory: str, seed: int | None) -> None:
    """Print a synthetic source record for ROUTE_ID."""
    from relaycore.project import load_registries
    from relaycore.routes import generate_mock_record

    try:
        _, routes = load_registries(Path(directory))
        record = generate_mock_record(routes, route_id, seed=seed)
    except (ConfigError, UnknownRouteError) as exc:
        raise click.ClickException(str(exc))
    _echo_json(record)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


@main.command()
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
def hashes(directory: str) -> None:
    """Print state hashes of the seeded project."""
    runtime = _runtime(_project(directory))
    _echo_json(runtime.state_hashes())


@main.command()
@click.argument("branch_id")
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
def kpis(branch_id: str, directory: str) -> None:
    """Print the latest KPI snapshot of BRANCH_ID."""
    runtime = _runtime(_project(directory))
    history = runtime.kpi_history(branch_id)
    if not history:
        raise click.ClickException(f"No KPI snapshots for branch {branch_id!r}")
    latest = history[-1]
    click.echo(f"Snapshot #{latest.seq} (triggered by {latest.triggered_by})")
    for metric_id, reading in sorted(latest.metrics.items()):
        line = f"  {metric_id:28s} {reading.value:g} {reading.unit}"
        if reading.formula:
            line += f"  [{reading.source_cell} {reading.formula}]"
        click.echo(line)


@main.command()
@click.argument("out_dir", type=click.Path())
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
@click.option(
    "--kind",
    "kinds",
    multiple=True,
    type=click.Choice(["fact", "match", "summary"]),
    help="Restrict to sheet kind (repeatable).",
)
def export(out_dir: str, directory: str, kinds: tuple[str, ...]) -> None:
    """Export every sheet of the seeded project to Parquet in OUT_DIR."""
    from relaycore.export import export_sheets

    runtime = _runtime(_project(directory))
    manifest = export_sheets(runtime.store, Path(out_dir), kinds=kinds or None)
    click.echo(f"Exported {len(manifest)} sheet(s) to {out_dir}")


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


@main.command("import-xlsx")
@click.argument("xlsx_file", type=click.Path(exists=True))
@click.option("--project", "directory", default=None, type=click.Path(exists=True), help="Write the report here.")
@click.option("--json", "as_json", is_flag=True, help="Output the full report as JSON.")
def import_xlsx_cmd(xlsx_file: str, directory: str | None, as_json: bool) -> None:
    """Build formula dependency order for each sheet of XLSX_FILE."""
    from relaycore.xlsx_import import import_xlsx

    project_dir = _project(directory) if directory else None
    report = import_xlsx(Path(xlsx_file), project_dir)
    if as_json:
        _echo_json(report)
        return
    for sheet in report["sheets"]:
        status = "CYCLE" if sheet["has_cycle"] else "ok"
        click.echo(
            f"{sheet['name']}: {sheet['formulas']} formula(s), {sheet['edges']} edge(s), {status}"
        )
        if sheet["has_cycle"]:
            click.echo(f"  cyclic: {', '.join(sheet['cyclic_cells'])}")
    for warning in report["warnings"]:
        click.echo(f"WARNING: {warning}")


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


@main.command()
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
@click.option("--host", default="127.0.0.1", help="Host to bind to.")
@click.option("--port", type=int, default=3020, help="Port to listen on.")
def serve(directory: str, host: str, port: int) -> None:
    """Run the HTTP ingestion gateway."""
    import uvicorn

    from relaycore.gateway.server import create_app

    project_dir = _project(directory)
    try:
        app = create_app(project_dir=project_dir)
    except RelayError as exc:
        raise click.ClickException(str(exc))

    click.echo(f"Serving gateway at http://{host}:{port}")
    click.echo("Press Ctrl+C to stop")
    try:
        uvicorn.run(app, host=host, port=port, log_level="warning")
    except KeyboardInterrupt:
        click.echo("\nStopped.")


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@main.command("events")
@click.option("--project", "directory", default=".", type=click.Path(exists=True), help="Project directory.")
@click.option("--level", default=None, type=click.Choice(["info", "warning", "error"]), help="Filter by level.")
@click.option("--type", "event_type", default=None, help="Filter by event type.")
@click.option("--batch-id", default=None, help="Filter by batch ID.")
@click.option("--route-id", default=None, help="Filter by route ID.")
@click.option("--limit", default=100, type=int, help="Maximum events to show.")
def events_cmd(
    directory: str,
    level: str | None,
    event_type: str | None,
    batch_id: str | None,
    route_id: str | None,
    limit: int,
) -> None:
    """Show the structured event log of the project."""
    from relaycore.logging.sink import EventSink

    sink = EventSink(Path(directory))
    events = sink.read_global(
        level=level, event_type=event_type, batch_id=batch_id, route_id=route_id, limit=limit
    )
    if not events:
        click.echo("No events found.")
        return

    for evt in events:
        ts = evt.get("ts", "")
        lvl = evt.get("level", "").upper()
        etype = evt.get("event_type", "")
        msg = evt.get("message", "")
        err = evt.get("error_code")
        line = f"[{ts}] {lvl:7s} {etype}: {msg}"
        if err:
            line += f"  ({err})"
        click.echo(line)
