from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from taskdag.config.settings import home_dir, log_level
from taskdag.report.stats import build_stats
from taskdag.state.model import RunState
from taskdag.state.store import StateStore
from taskdag.util.errors import RunNotFoundError, StoreError
from taskdag.util.ids import is_safe_run_id
from taskdag.util.logging import configure_logging

app = typer.Typer(help="Inspect persisted task-DAG runs")
console = Console()

_STATUS_STYLE = {
    "SUCCEEDED": "green",
    "FAILED": "red",
    "SKIPPED": "yellow",
    "CANCELLED": "magenta",
    "RUNNING": "cyan",
}


def _exit_code_for_state(state: RunState) -> int:
    if state.status == "SUCCEEDED":
        return 0
    if state.status == "CANCELLED":
        return 4
    if state.status == "RUNNING":
        return 5
    return 3


def _store(home: Path | None) -> StateStore:
    return StateStore(home if home is not None else home_dir())


def _validate_run_id_or_exit(run_id: str) -> None:
    if not is_safe_run_id(run_id):
        console.print(f"[red]Invalid run_id:[/red] {run_id}")
        raise typer.Exit(2)


def _load_or_exit(store: StateStore, run_id: str) -> RunState:
    try:
        return store.load(run_id)
    except RunNotFoundError as exc:
        console.print(f"[red]Run not found:[/red] {run_id}")
        raise typer.Exit(2) from exc
    except StoreError as exc:
        console.print(f"[red]Failed to load state:[/red] {exc}")
        raise typer.Exit(2) from exc


def _styled(status: str) -> str:
    style = _STATUS_STYLE.get(status)
    return f"[{style}]{status}[/{style}]" if style else status


@app.callback()
def main(
    log_level_opt: Annotated[str | None, typer.Option("--log-level")] = None,
) -> None:
    configure_logging(log_level_opt or log_level())


@app.command()
def status(
    run_id: Annotated[str, typer.Argument()],
    home: Annotated[Path | None, typer.Option("--home")] = None,
    as_json: Annotated[bool, typer.Option("--json")] = False,
) -> None:
    _validate_run_id_or_exit(run_id)
    state = _load_or_exit(_store(home), run_id)

    if as_json:
        typer.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))
        raise typer.Exit(0)

    stats = build_stats(state)
    table = Table(title=f"Run Status: {run_id} ({state.dag_id})")
    table.add_column("task_id")
    table.add_column("status")
    table.add_column("duration_sec", justify="right")
    table.add_column("detail")
    for task in state.spec.tasks:
        result = state.results.get(task.id)
        detail = ""
        if result is not None:
            if result.error is not None:
                detail = result.error
            elif result.exit_summary is not None and result.exit_summary.message:
                detail = result.exit_summary.message
        table.add_row(
            task.id,
            _styled(state.tasks[task.id]),
            "-" if result is None or result.duration_sec is None else str(result.duration_sec),
            detail,
        )
    console.print(table)
    console.print(f"state: [bold]{_styled(state.status)}[/bold]")
    console.print(f"progress: {stats.finished}/{stats.total} ({stats.percentage:.0f}%)")
    if stats.resumable:
        console.print("resumable: [bold]yes[/bold]")
    raise typer.Exit(_exit_code_for_state(state))


@app.command("list")
def list_runs(
    home: Annotated[Path | None, typer.Option("--home")] = None,
) -> None:
    store = _store(home)
    try:
        run_ids = store.list_runs()
    except StoreError as exc:
        console.print(f"[red]Failed to list runs:[/red] {exc}")
        raise typer.Exit(2) from exc
    if not run_ids:
        console.print("no runs found")
        return

    table = Table(title="Runs")
    table.add_column("run_id")
    table.add_column("dag_id")
    table.add_column("status")
    table.add_column("tasks", justify="right")
    table.add_column("updated_at")
    for run_id in run_ids:
        try:
            state = store.load(run_id)
        except StoreError:
            table.add_row(run_id, "-", "[red]BROKEN[/red]", "-", "-")
            continue
        stats = build_stats(state)
        table.add_row(
            run_id,
            state.dag_id,
            _styled(state.status),
            f"{stats.finished}/{stats.total}",
            state.updated_at,
        )
    console.print(table)


@app.command()
def forget(
    run_id: Annotated[str, typer.Argument()],
    home: Annotated[Path | None, typer.Option("--home")] = None,
) -> None:
    _validate_run_id_or_exit(run_id)
    store = _store(home)
    if not store.exists(run_id):
        console.print(f"[red]Run not found:[/red] {run_id}")
        raise typer.Exit(2)
    try:
        store.delete(run_id)
    except StoreError as exc:
        console.print(f"[red]Failed to delete run:[/red] {exc}")
        raise typer.Exit(2) from exc
    console.print(f"deleted: [bold]{run_id}[/bold]")


if __name__ == "__main__":
    app()
