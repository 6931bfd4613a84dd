"""Command line interface for inspecting safedeploy pipelines."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Optional

import typer

from safedeploy import build_safe_deployment_pipeline, get_repository, load_config
from safedeploy.dispatch import load_pipeline_definition
from safedeploy.errors import ConfigurationError

app = typer.Typer(help="CLI for safedeploy pipelines")

pipeline_app = typer.Typer(help="Commands for inspecting pipeline definitions")
execution_app = typer.Typer(help="Commands for inspecting pipeline executions")

app.add_typer(pipeline_app, name="pipeline")
app.add_typer(execution_app, name="execution")

_SECRET_KEYS = {"oauth_token"}


@app.callback()
def main() -> None:
    """Safedeploy CLI entry point."""
    pass


@pipeline_app.command("show")
def pipeline_show(
    config: Optional[Path] = typer.Option(None, help="Path to safedeploy.yaml"),
    definition: Optional[Path] = typer.Option(
        None, help="YAML pipeline definition to show instead of the standard pipeline"
    ),
) -> None:
    """
    Show the stages and run-order groups of a pipeline.

    Without ``--definition`` the standard Source, Build, Train, DeployDev,
    DeployPrd pipeline is built from configuration. Secrets in action
    configuration are masked.

    Example:
        safedeploy pipeline show
        # Output: Pipeline nyctaxi (source: CodeCommit)
        #         Stage Source
        #           [1] GitSource (Source) -> ModelSourceOutput
    """
    try:
        if definition is not None:
            pipeline = load_pipeline_definition(definition)
        else:
            pipeline = build_safe_deployment_pipeline(
                load_config(str(config) if config else None)
            )
    except ConfigurationError as e:
        typer.secho(f"Invalid pipeline: {e.message}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    typer.echo(f"Pipeline {pipeline.pipeline_id} (source: {pipeline.source_provider})")
    for stage in pipeline.stages:
        typer.echo(f"Stage {stage.name}")
        for group in stage.groups():
            for action in group.actions:
                line = f"  [{group.run_order}] {action.name} ({action.kind.value})"
                if action.input_artifacts:
                    line += f" <- {', '.join(action.input_artifacts)}"
                if action.output_artifacts:
                    line += f" -> {', '.join(action.output_artifacts)}"
                typer.echo(line)
                for key, value in sorted(action.configuration.items()):
                    if key in _SECRET_KEYS:
                        value = "****"
                    typer.echo(f"      {key}: {value}")


@execution_app.command("list")
def execution_list(pipeline_id: Optional[str] = None) -> None:
    """
    List executions with their current status.

    Example:
        safedeploy execution list --pipeline-id nyctaxi
        # Output: 3f1c...    nyctaxi    Paused    DeployDev
    """
    repo = get_repository()
    executions = asyncio.run(repo.list_executions(pipeline_id))
    if not executions:
        typer.echo("No executions found")
        return
    for ex in executions:
        stage = ex.stage_results[-1].stage if ex.stage_results else "-"
        typer.echo(f"{ex.execution_id}\t{ex.pipeline_id}\t{ex.status.value}\t{stage}")


@execution_app.command("show")
def execution_show(execution_id: str) -> None:
    """
    Show stage results and action history of one execution.

    Args:
        execution_id: Execution to inspect (get from 'execution list')
    """
    repo = get_repository()
    ex = asyncio.run(repo.get_execution(execution_id))
    if ex is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {ex.execution_id}: {ex.status.value}")
    typer.echo(f"Pipeline: {ex.pipeline_id} @ {ex.source_revision}")
    if ex.failed_stage:
        typer.echo(
            f"Failed at {ex.failed_stage}"
            + (f"/{ex.failed_action}" if ex.failed_action else "")
            + (f": {ex.reason}" if ex.reason else "")
        )
    for stage in ex.stage_results:
        typer.echo(f"Stage {stage.stage}: {stage.status.value}")
        for action in stage.actions:
            typer.echo(
                f"- {action.action}: {action.status.value}"
                + (f" after {action.attempts} attempts" if action.attempts > 1 else "")
                + (f" ({action.message})" if action.message else "")
            )
    history = asyncio.run(repo.get_action_history(execution_id))
    if history:
        typer.echo("History:")
        for record in history:
            typer.echo(
                f"- {record.stage}/{record.action} #{record.attempt}: {record.status}"
                + (
                    f" ({record.started_at} -> {record.completed_at})"
                    if record.started_at or record.completed_at
                    else ""
                )
            )


if __name__ == "__main__":
    app()
