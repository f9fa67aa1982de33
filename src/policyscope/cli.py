from __future__ import annotations

import contextlib
import json
import signal
import threading
from collections.abc import Iterator
from pathlib import Path

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from policyscope import __version__
from policyscope.config import AuditConfig, config_json_schema, load_config_from_file
from policyscope.context import RunContext
from policyscope.errors import PipelineInconsistency
from policyscope.logging import configure_logging
from policyscope.models import NOT_TARGETED
from policyscope.report import (
    render_csv,
    render_json,
    render_table,
    render_targeting_json,
    render_targeting_table,
)
from policyscope.runner import AuditRunner
from policyscope.snapshot import Snapshot, load_snapshot, snapshot_json_schema

ARG_SNAPSHOT = typer.Argument(
    ..., exists=True, readable=True, dir_okay=False, help="Snapshot JSON/YAML file"
)
OPT_CONFIG = typer.Option(
    None, "--config", exists=True, readable=True, dir_okay=False, help="Run configuration YAML"
)
OPT_OUTPUT = typer.Option(None, "--output", help="Write output to file")
OPT_SOURCE = typer.Option(
    None, "--source", help="Only query this compliance source (repeatable)"
)

EXIT_INVALID = 1
EXIT_INCONSISTENT = 2
EXIT_CANCELLED = 130

app = typer.Typer(help="policyscope CLI", add_completion=False)
schema_app = typer.Typer(help="Schema export")
app.add_typer(schema_app, name="schema")

console = Console()


def _fail(exc: Exception) -> typer.Exit:
    console.print(f"[red]{escape(str(exc))}[/red]")
    return typer.Exit(code=EXIT_INVALID)


def _read_snapshot(path: Path) -> Snapshot:
    try:
        return load_snapshot(path)
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        raise _fail(exc) from exc


def _read_config(path: Path | None, sources: list[str] | None) -> AuditConfig:
    try:
        config = load_config_from_file(path)
    except (ValueError, ValidationError, yaml.YAMLError) as exc:
        raise _fail(exc) from exc
    if sources:
        config = config.model_copy(update={"sources": sources})
    return config


def _emit(text: str, output: Path | None) -> None:
    if output:
        output.write_text(text, encoding="utf-8")
        console.print(f"Wrote {output}")
    else:
        typer.echo(text.rstrip("\n"))


@contextlib.contextmanager
def _cancel_on_interrupt(context: RunContext) -> Iterator[None]:
    """Turn Ctrl-C into a run cancellation so a partial report is still printed."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = signal.signal(signal.SIGINT, lambda signum, frame: context.cancel())
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


_RENDERERS = {"table": render_table, "json": render_json, "csv": render_csv}


@app.command()
def version() -> None:
    console.print(__version__)


@app.command()
def audit(
    path: Path = ARG_SNAPSHOT,
    config_path: Path | None = OPT_CONFIG,
    format: str = typer.Option("table", "--format", help="table/json/csv"),
    output: Path | None = OPT_OUTPUT,
    source: list[str] | None = OPT_SOURCE,
) -> None:
    """Resolve targeting and reconcile compliance for the snapshot's device."""
    if format not in _RENDERERS:
        console.print(f"Unknown format: {format}")
        raise typer.Exit(code=EXIT_INVALID)
    config = _read_config(config_path, source)
    configure_logging(config.log_level, config.log_format)
    snapshot = _read_snapshot(path)

    context = RunContext(snapshot.device.id, config)
    try:
        runner = AuditRunner.from_snapshot(snapshot, context)
    except ValueError as exc:
        raise _fail(exc) from exc

    exit_code = 0
    with _cancel_on_interrupt(context):
        try:
            report = runner.run()
        except PipelineInconsistency as exc:
            if exc.report is None:
                raise
            console.print(f"[red]{escape(str(exc))}[/red]")
            report = exc.report
            exit_code = EXIT_INCONSISTENT

    _emit(_RENDERERS[format](report), output)

    if report.cancelled:
        incomplete = ", ".join(report.incomplete_policies) or "none"
        console.print(f"[yellow]Run cancelled; incomplete policies: {incomplete}[/yellow]")
        exit_code = exit_code or EXIT_CANCELLED
    if exit_code:
        raise typer.Exit(code=exit_code)


@app.command()
def targeting(
    path: Path = ARG_SNAPSHOT,
    format: str = typer.Option("table", "--format", help="table/json"),
    show_all: bool = typer.Option(False, "--all", help="Include policies that are not targeted"),
    output: Path | None = OPT_OUTPUT,
) -> None:
    """Show which policies target the device, and why."""
    snapshot = _read_snapshot(path)
    catalog = snapshot.policy_catalog()
    pairs = catalog.evaluate_all(snapshot.membership_set(), snapshot.filter_catalog())
    if not show_all:
        pairs = [(policy, result) for policy, result in pairs if result.status != NOT_TARGETED]
    if format == "table":
        _emit(render_targeting_table(pairs), output)
    elif format == "json":
        _emit(render_targeting_json(pairs), output)
    else:
        console.print(f"Unknown format: {format}")
        raise typer.Exit(code=EXIT_INVALID)


@app.command()
def validate(path: Path = ARG_SNAPSHOT) -> None:
    """Validate a snapshot file."""
    snapshot = _read_snapshot(path)
    console.print(
        f"OK: device {snapshot.device.id}, {len(snapshot.memberships)} group(s), "
        f"{len(snapshot.filters)} filter(s), {len(snapshot.policies)} policy(ies)"
    )


@schema_app.command("snapshot")
def schema_snapshot(output: Path | None = OPT_OUTPUT) -> None:
    """Print the snapshot JSON schema (for exporter authors)."""
    _emit(json.dumps(snapshot_json_schema(), indent=2), output)


@schema_app.command("config")
def schema_config(output: Path | None = OPT_OUTPUT) -> None:
    """Print the run configuration JSON schema."""
    _emit(json.dumps(config_json_schema(), indent=2), output)


def main() -> None:
    """Entrypoint for `python -m policyscope.cli`."""

    app(prog_name="policyscope")


if __name__ == "__main__":
    main()
