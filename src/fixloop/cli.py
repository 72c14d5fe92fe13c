"""CLI commands for running the test-fix-test loop."""

from __future__ import annotations

import logging
import signal
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer

from .errors import ConfigError, InfrastructureError
from .memory.schema import DefectState
from .memory.store import DefectStore
from .orchestrator import Orchestrator, OrchestratorRun, RunStatus
from .settings import (
    DEFAULT_CONFIG_NAME,
    Settings,
    default_config,
    load_config,
    resolve_settings,
    write_config,
)
from .tools.test_runner import Classification, Scope, TestRunner
from .tools.vcs import GitError

APP_HELP = "Automated test-fix-test orchestration."

EXIT_RESOLVED = 0
EXIT_UNRESOLVED = 1
EXIT_EXHAUSTED = 2
EXIT_INFRASTRUCTURE = 3

_STATUS_EXIT_CODES = {
    RunStatus.RESOLVED: EXIT_RESOLVED,
    RunStatus.UNRESOLVED: EXIT_UNRESOLVED,
    RunStatus.EXHAUSTED: EXIT_EXHAUSTED,
}

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION = typer.Option(
    DEFAULT_CONFIG_NAME,
    "--config",
    "-c",
    help="Path to the fixloop configuration file.",
)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    _configure_logging(verbose)


def _load_settings(config: str, **overrides: object) -> Settings:
    """Load and resolve settings, exiting with the infrastructure code on bad config."""

    config_path = Path(config)
    try:
        settings = resolve_settings(load_config(config_path), config_path=config_path.resolve())
        for name, value in overrides.items():
            if value is not None:
                setattr(settings, name, value)
        # Surface an unknown tier before anything runs.
        settings.active_tier
    except ConfigError as error:
        typer.echo(f"Configuration error: {error}")
        raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error
    return settings


def _open_store(settings: Settings) -> DefectStore:
    return DefectStore(settings.db_path, branch_prefix=settings.branch_prefix)


def _render_run(run: OrchestratorRun) -> None:
    typer.echo(f"Run {run.run_id}: {run.status.value}")
    if run.defect_id is not None:
        typer.echo(f"- Defect: #{run.defect_id}")
    typer.echo(f"- Iterations: {run.iteration}/{run.max_iterations}")
    for attempt in run.attempts:
        ref = attempt.change_ref[:12] if attempt.change_ref else "no change"
        typer.echo(f"  - attempt {attempt.ordinal}: {attempt.outcome.value} ({ref})")
    if run.reason:
        typer.echo(f"- Reason: {run.reason}")
    if run.artifact_path is not None:
        typer.echo(f"- Artifact: {run.artifact_path.as_posix()}")


def _ensure_gitignore(repo_root: Path, data_root: Path) -> bool:
    """Add the data directory to ``.gitignore`` so producer commits never pick it up."""

    try:
        relative = data_root.resolve().relative_to(repo_root.resolve())
    except ValueError:
        return False
    entry = f"/{relative.as_posix()}"
    gitignore = repo_root / ".gitignore"
    existing = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
    lines = {line.strip() for line in existing.splitlines()}
    if entry in lines or f"{entry}/" in lines:
        return False
    prefix = "" if not existing or existing.endswith("\n") else "\n"
    with gitignore.open("a", encoding="utf-8") as handle:
        handle.write(f"{prefix}{entry}\n")
    return True


@app.command()
def init(
    config: str = _CONFIG_OPTION,
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration file."),
    name: Optional[str] = typer.Option(None, "--name", help="Project name recorded in the configuration."),
) -> None:
    """Write the default configuration and prepare the data directory."""

    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        raise typer.Exit(code=1)

    config_data = default_config()
    if name:
        config_data["project"]["name"] = name
    write_config(config_path, config_data)
    typer.echo(f"Wrote configuration to {config_path}")

    settings = resolve_settings(config_data, config_path=config_path.resolve(), environ={})
    settings.data_root.mkdir(parents=True, exist_ok=True)
    if _ensure_gitignore(settings.repo_root, settings.data_root):
        typer.echo(f"Added {settings.data_root.name} to .gitignore")


@app.command()
def run(
    config: str = _CONFIG_OPTION,
    max_iterations: Optional[int] = typer.Option(
        None,
        "--max-iterations",
        "-n",
        min=1,
        help="Override the fix/gate iteration budget for this run.",
    ),
    tier: Optional[str] = typer.Option(None, "--tier", help="Remediation tier to use for this run."),
) -> None:
    """Run the loop once and exit with a status-specific code."""

    settings = _load_settings(config, max_iterations=max_iterations, tier=tier)
    with _open_store(settings) as store:
        try:
            orchestrator = Orchestrator.from_settings(settings, store=store)
            result = orchestrator.run_once()
        except GitError as error:
            typer.echo(f"Repository error: {error}")
            raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error
        except InfrastructureError as error:
            if error.run is not None:
                _render_run(error.run)
            typer.echo(f"Infrastructure error: {error}")
            raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error
    _render_run(result)
    raise typer.Exit(code=_STATUS_EXIT_CODES[result.status])


@app.command()
def watch(
    config: str = _CONFIG_OPTION,
    interval: Optional[float] = typer.Option(
        None,
        "--interval",
        min=0.0,
        help="Seconds to wait between runs (defaults to iteration.poll_interval_seconds).",
    ),
    max_runs: Optional[int] = typer.Option(None, "--max-runs", min=1, help="Stop after this many runs."),
) -> None:
    """Poll: run the loop repeatedly until interrupted."""

    settings = _load_settings(config)
    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        typer.echo(f"Received signal {signum}; stopping at the next iteration boundary.")
        stop_event.set()

    previous = {sig: signal.signal(sig, _request_stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        with _open_store(settings) as store:
            orchestrator = Orchestrator.from_settings(settings, store=store, stop_event=stop_event)
            orchestrator.watch(interval=interval, max_runs=max_runs, on_run=_render_run)
    except GitError as error:
        typer.echo(f"Repository error: {error}")
        raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error
    except InfrastructureError as error:
        if error.run is not None:
            _render_run(error.run)
        typer.echo(f"Infrastructure error: {error}")
        raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    typer.echo("Watch stopped.")


@app.command("test")
def test_command(
    config: str = _CONFIG_OPTION,
    scope: Scope = typer.Option(Scope.FULL, "--scope", "-s", help="Test scope to run."),
    output_lines: int = typer.Option(40, "--tail", min=0, help="Lines of output to show."),
) -> None:
    """Run one test scope and print its classification."""

    settings = _load_settings(config)
    runner = TestRunner(settings.repo_root, settings.test_commands, fixtures=settings.fixtures)
    try:
        result = runner.run(scope)
    except InfrastructureError as error:
        typer.echo(f"Infrastructure error: {error}")
        raise typer.Exit(code=EXIT_INFRASTRUCTURE) from error

    exit_label = "none" if result.exit_code is None else str(result.exit_code)
    typer.echo(f"{scope.value}: {result.classification.value} (exit {exit_label}, {result.duration:.1f}s)")
    if output_lines:
        for line in result.raw_output.splitlines()[-output_lines:]:
            typer.echo(f"  {line}")
    if result.classification == Classification.INFRASTRUCTURE_ERROR:
        raise typer.Exit(code=EXIT_INFRASTRUCTURE)
    if not result.ok:
        raise typer.Exit(code=1)


@app.command()
def defects(
    config: str = _CONFIG_OPTION,
    show_all: bool = typer.Option(False, "--all", help="Include closed defects."),
) -> None:
    """List tracked defects."""

    settings = _load_settings(config)
    with _open_store(settings) as store:
        records = store.list_defects(state=None if show_all else DefectState.OPEN)
    now = datetime.now(timezone.utc)
    if not records:
        typer.echo("No defects." if show_all else "No open defects.")
        return
    for defect in records:
        lease = f" leased by {defect.lease_holder}" if defect.lease_active(now) else ""
        labels = ", ".join(defect.labels)
        typer.echo(f"#{defect.id} [{defect.state.value}] {defect.title} ({labels}){lease}")


@app.command()
def show(
    defect_id: int = typer.Argument(..., help="Identifier of the defect to display."),
    config: str = _CONFIG_OPTION,
    runs: int = typer.Option(5, "--runs", min=0, help="Number of recent test runs to list."),
) -> None:
    """Show a defect with its attempts and comments."""

    settings = _load_settings(config)
    with _open_store(settings) as store:
        defect = store.get_defect(defect_id)
        if defect is None:
            typer.echo(f"Defect #{defect_id} not found.")
            raise typer.Exit(code=1)
        attempts = store.list_attempts(defect)
        comments = store.list_comments(defect)
        test_runs = store.list_test_runs(defect.id, limit=runs)

    typer.echo(f"#{defect.id} [{defect.state.value}] {defect.title}")
    typer.echo(f"Labels: {', '.join(defect.labels) or 'none'}")
    typer.echo(f"Archive branch: {defect.archive_branch}")
    typer.echo(f"Opened: {defect.created_at.isoformat()}")
    if defect.closed_at is not None:
        typer.echo(f"Closed: {defect.closed_at.isoformat()}")
    if attempts:
        typer.echo("Attempts:")
        for attempt in attempts:
            archived = f" archived {attempt.archive_ref[:12]}" if attempt.archive_ref else ""
            ref = attempt.change_ref[:12] if attempt.change_ref else "no change"
            typer.echo(f"- {attempt.ordinal}: {attempt.outcome.value} ({ref}){archived}")
    if test_runs:
        typer.echo("Recent test runs:")
        for record in test_runs:
            ref = str(record.metadata.get("ref") or "")[:12] or "working tree"
            typer.echo(f"- {record.created_at.isoformat()} {record.scope}: {record.classification} at {ref}")
    if comments:
        typer.echo("Comments:")
        for comment in comments:
            typer.echo(f"--- {comment.created_at.isoformat()}")
            typer.echo(comment.body)


if __name__ == "__main__":
    app()
