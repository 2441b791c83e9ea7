"""Thin CLI wrapper for buildgraph.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from buildgraph import __version__
from buildgraph.config import get_settings, print_settings_json

app = typer.Typer(
    name="buildgraph",
    help="Build graph runner - CI jobs with snapshot and artifact dependencies",
    no_args_is_help=True,
)
console = Console()

STATE_COLORS = {
    "success": "green",
    "failed": "red",
    "not_started": "yellow",
    "running": "blue",
    "blocked_on_dependency": "magenta",
    "pending": "white",
}

STATE_MARKERS = {
    "success": "✓",
    "failed": "✗",
    "not_started": "⊘",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"buildgraph version {__version__}")
        raise typer.Exit()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2, default=str),
        soft_wrap=True,
        markup=False,
        highlight=False,
    )


def _state_label(state: str) -> str:
    color = STATE_COLORS.get(state, "white")
    marker = STATE_MARKERS.get(state, "•")
    return f"[{color}]{marker} {state}[/{color}]"


def _parse_params(values: list[str] | None) -> dict[str, str]:
    params: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            console.print(f"[red]Invalid parameter '{item}', expected NAME=VALUE[/red]")
            raise typer.Exit(code=1)
        params[name.strip()] = value
    return params


def _load_graph(pipeline: Path | None) -> Any:
    import yaml
    from pydantic import ValidationError

    from buildgraph.jobs.graph import (
        CyclicDependencyError,
        DuplicateJobError,
        UnresolvedDependencyError,
    )
    from buildgraph.jobs.io import load_job_graph

    path = pipeline or get_settings().pipeline_path
    try:
        return load_job_graph(path)
    except FileNotFoundError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except (
        UnresolvedDependencyError,
        CyclicDependencyError,
        DuplicateJobError,
    ) as e:
        console.print(
            f"[red]Invalid dependency graph ({e.code}): {escape(str(e))}[/red]"
        )
        raise typer.Exit(code=1) from None
    except (yaml.YAMLError, ValueError) as e:
        console.print(f"[red]Invalid pipeline: {escape(str(e))}[/red]")
        raise typer.Exit(code=1) from None


def _session_factory() -> Any:
    from buildgraph.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


PipelineOption = Annotated[
    Path | None,
    typer.Option(
        "--pipeline",
        "-f",
        help="Pipeline file or directory (default: BUILDGRAPH_PIPELINE_PATH)",
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]
ParamOption = Annotated[
    list[str] | None,
    typer.Option("--param", "-p", help="Parameter override NAME=VALUE (repeatable)"),
]


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Build graph runner - CI jobs with snapshot and artifact dependencies."""
    _configure_logging(get_settings().log_level)


@app.command()
def config(json_output: JsonOption = False) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings), soft_wrap=True, markup=False)
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Workspace directory: {settings.workspace_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Pipeline path:       {settings.pipeline_path}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Shell:               {settings.shell}")
        console.print()
        console.print("[bold]Concurrency:[/bold]")
        console.print(f"  Max runs:            {settings.max_concurrent_runs}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Run timeout:         {settings.run_timeout}")
        console.print(f"  Lock timeout:        {settings.lock_timeout}")


jobs_app = typer.Typer(help="Inspect build job configuration")
app.add_typer(jobs_app, name="jobs")


@jobs_app.command("list")
def jobs_list(
    pipeline: PipelineOption = None,
    json_output: JsonOption = False,
) -> None:
    """List jobs in topological order."""
    graph = _load_graph(pipeline)

    if json_output:
        _print_json(
            [
                {
                    "id": job.absolute_id,
                    "name": job.display_name,
                    "dependencies": [
                        link.target for link in graph.links(job.absolute_id)
                    ],
                }
                for job in graph.jobs
            ]
        )
        return

    if not len(graph):
        console.print("[yellow]No jobs found[/yellow]")
        return

    console.print(f"[bold]Found {len(graph)} job(s):[/bold]")
    console.print()
    for job in graph.jobs:
        console.print(f"  [green]{job.absolute_id}[/green]")
        console.print(f"    Name: {job.display_name}")
        for link in graph.links(job.absolute_id):
            console.print(
                f"    Depends on: {link.target} "
                f"({link.reuse_builds.value}, {link.on_dependency_failure.value})"
            )


@jobs_app.command("show")
def jobs_show(
    job_id: Annotated[str, typer.Argument(help="Job id to show")],
    pipeline: PipelineOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the definition of a job."""
    from buildgraph.jobs.graph import JobNotFoundError
    from buildgraph.jobs.io import job_to_dict, job_to_yaml_string

    graph = _load_graph(pipeline)
    try:
        job = graph.get(job_id)
    except JobNotFoundError:
        console.print(f"[red]Job not found: {job_id}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(job_to_dict(job))
    else:
        console.print(job_to_yaml_string(job), markup=False)


@jobs_app.command("validate")
def jobs_validate(
    path: Annotated[
        Path | None,
        typer.Argument(help="Pipeline file or directory to validate"),
    ] = None,
) -> None:
    """Validate pipeline configuration without running anything."""
    from buildgraph.jobs.io import validate_pipeline_directory

    target = path or get_settings().pipeline_path
    if not target.exists():
        console.print(f"[red]Path not found: {target}[/red]")
        raise typer.Exit(code=1)

    if target.is_dir():
        result = validate_pipeline_directory(target)
        for r in result.results:
            if r.success:
                console.print(
                    f"  [green]✓ {r.path}[/green] ({len(r.job_ids)} job(s))"
                )
            else:
                console.print(f"  [red]✗ {r.path}[/red]")
                console.print(f"      {r.error}", markup=False)
        if result.failed > 0:
            raise typer.Exit(code=1)

    graph = _load_graph(target)
    console.print(
        f"[green]✓ Valid pipeline: {len(graph)} job(s) "
        f"in {len(graph.levels())} stage(s)[/green]"
    )


@jobs_app.command("plan")
def jobs_plan(
    job_id: Annotated[str, typer.Argument(help="Job id to plan")],
    params: ParamOption = None,
    pipeline: PipelineOption = None,
    json_output: JsonOption = False,
) -> None:
    """Show the execution plan of a job without running it.

    Reuse decisions are taken against the current run history.
    """
    from buildgraph.db import get_session
    from buildgraph.jobs.graph import JobNotFoundError
    from buildgraph.pipeline.service import plan_job

    graph = _load_graph(pipeline)
    overrides = _parse_params(params)
    factory = _session_factory()

    with get_session(factory) as session:
        try:
            plan = plan_job(session, graph, job_id, overrides)
        except JobNotFoundError:
            console.print(f"[red]Job not found: {job_id}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        _print_json(plan.to_dict())
        return

    console.print(f"[bold]Plan for {plan.root_node.job_id}:[/bold]")
    for index, level in enumerate(plan.levels, start=1):
        jobs = ", ".join(plan.nodes[key].job_id for key in level)
        console.print(f"  Stage {index}: [blue]{jobs}[/blue]")
    for node in plan.reused:
        console.print(
            f"  [green]Reuse {node.job_id} from run #{node.reused_run_id}[/green]"
        )
    unresolved = plan.root_node.unresolved_params
    if unresolved:
        console.print(
            f"  [yellow]Unresolved parameters: {', '.join(sorted(unresolved))}[/yellow]"
        )


@app.command("run")
def run_job(
    job_id: Annotated[str, typer.Argument(help="Job id to trigger")],
    params: ParamOption = None,
    pipeline: PipelineOption = None,
    json_output: JsonOption = False,
) -> None:
    """Trigger a job and its dependency chain.

    Exits with code 1 unless the triggered job succeeds.
    """
    from buildgraph.jobs.graph import JobNotFoundError
    from buildgraph.pipeline.service import trigger

    graph = _load_graph(pipeline)
    overrides = _parse_params(params)
    factory = _session_factory()

    if not json_output:
        console.print(f"[blue]Triggering {job_id}...[/blue]")

    try:
        result = trigger(factory, graph, job_id, get_settings(), overrides)
    except JobNotFoundError:
        console.print(f"[red]Job not found: {job_id}[/red]")
        raise typer.Exit(code=1) from None

    if json_output:
        _print_json(result.to_dict())
    else:
        console.print()
        console.print("[bold]Runs:[/bold]")
        for node in result.plan.builds:
            outcome = result.outcomes[node.key]
            console.print(
                f"  {_state_label(outcome.state.value)}  {outcome.job_id} "
                f"(run #{outcome.run_id})"
            )
            if outcome.error_message:
                console.print(f"      {outcome.error_message}", markup=False)
        for node in result.plan.reused:
            outcome = result.outcomes[node.key]
            console.print(
                f"  [green]↺ reused[/green]  {outcome.job_id} (run #{outcome.run_id})"
            )
        console.print()
        console.print(f"  [green]Succeeded: {result.succeeded}[/green]")
        console.print(f"  [blue]Reused: {result.reused}[/blue]")
        if result.failed:
            console.print(f"  [red]Failed: {result.failed}[/red]")
        if result.not_started:
            console.print(f"  [yellow]Not started: {result.not_started}[/yellow]")

    if not result.success:
        raise typer.Exit(code=1)


runs_app = typer.Typer(help="Inspect run history")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    job_id: Annotated[
        str | None,
        typer.Option("--job", "-j", help="Filter by absolute job id"),
    ] = None,
    state: Annotated[
        str | None,
        typer.Option("--state", "-s", help="Filter by run state"),
    ] = None,
    trigger_id: Annotated[
        str | None,
        typer.Option("--trigger", "-t", help="Filter by trigger id"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of runs to return"),
    ] = 100,
    json_output: JsonOption = False,
) -> None:
    """List runs, newest first."""
    from buildgraph.db import get_session
    from buildgraph.runs.service import list_runs, run_to_dict
    from buildgraph.types import RunState

    state_filter: RunState | None = None
    if state:
        try:
            state_filter = RunState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print(f"Valid values: {', '.join(s.value for s in RunState)}")
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with get_session(factory) as session:
        runs = list_runs(
            session,
            job_id=job_id,
            state=state_filter,
            trigger_id=trigger_id,
            limit=limit,
        )

        if json_output:
            _print_json([run_to_dict(r) for r in runs])
            return

        if not runs:
            console.print("[yellow]No runs found[/yellow]")
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            console.print(f"  Run #{r.id}  {_state_label(r.state)}  {r.job_id}")
            if r.error_message:
                console.print(f"    Error: {r.error_message}", markup=False)


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run id to show")],
    json_output: JsonOption = False,
) -> None:
    """Show a run with the dependency runs it consumed."""
    from buildgraph.db import get_session
    from buildgraph.runs.service import RunNotFoundError, get_run, run_to_dict

    factory = _session_factory()
    with get_session(factory) as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

        data = run_to_dict(run, include_dependencies=True)

    if json_output:
        _print_json(data)
        return

    console.print(f"[bold]Run #{data['id']}[/bold]  {_state_label(data['state'])}")
    console.print(f"  Job: {data['job_id']}")
    console.print(f"  Trigger: {data['trigger_id']}")
    console.print(f"  Params key: {data['params_key']}")
    console.print(f"  Log: {data['log_path']}")
    console.print(f"  Artifacts: {data['artifact_count']}")
    if data["error_message"]:
        console.print(f"  Error ({data['error_type']}): {data['error_message']}")
    for dep in data["dependencies"]:
        reused = " (reused)" if dep["reused"] else ""
        console.print(
            f"  Dependency: {dep['target_job_id']} run #{dep['target_run_id']} "
            f"{dep['target_state']}{reused}"
        )


artifacts_app = typer.Typer(help="Inspect published artifacts")
app.add_typer(artifacts_app, name="artifacts")


@artifacts_app.command("list")
def artifacts_list(
    run_id: Annotated[int, typer.Argument(help="Run id")],
    json_output: JsonOption = False,
) -> None:
    """List artifacts published by a run."""
    from buildgraph.db import get_session
    from buildgraph.runs.service import (
        RunNotFoundError,
        artifact_to_dict,
        get_run_artifacts,
    )

    factory = _session_factory()
    with get_session(factory) as session:
        try:
            artifacts = [
                artifact_to_dict(a) for a in get_run_artifacts(session, run_id)
            ]
        except RunNotFoundError:
            console.print(f"[red]Run not found: {run_id}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        _print_json(artifacts)
        return

    if not artifacts:
        console.print("[yellow]No artifacts found[/yellow]")
        return

    console.print(f"[bold]Found {len(artifacts)} artifact(s):[/bold]")
    for a in artifacts:
        console.print(f"  {a['relative_path']}  ({a['size_bytes']} bytes)")
        console.print(f"    SHA256: {a['sha256']}")


if __name__ == "__main__":
    app()
