"""Converge CLI.

Thin front end over the engine: load declarations, show plans, run applies.

Usage:
    converge validate site.yaml            # Check the graph is well formed
    converge plan site.yaml                # Show what an apply would do
    converge apply site.yaml               # Converge real resources
    converge force-unlock                  # Remove a stale state lock
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
from pathlib import Path

import click

from .config import ConfigurationError, EngineConfig
from .graph import GraphError, build_graph
from .loader import DeclarationLoadError, load_declarations
from .main import apply_declarations, setup_logging
from .planner import ActionType, Plan, PlanError, Planner
from .provider import load_entry_point_providers
from .state import FileStateStore, StateError

OP_SYMBOLS = {
    ActionType.CREATE: "+",
    ActionType.UPDATE: "~",
    ActionType.DELETE: "-",
    ActionType.REPLACE: "-/+",
    ActionType.NO_OP: " ",
}

OP_COLORS = {
    ActionType.CREATE: "green",
    ActionType.UPDATE: "yellow",
    ActionType.DELETE: "red",
    ActionType.REPLACE: "magenta",
    ActionType.NO_OP: None,
}

STATUS_COLORS = {
    "applied": "green",
    "no-op": None,
    "failed": "red",
    "blocked": "yellow",
}


def load_config(state: Path | None, parallelism: int | None, refresh: bool) -> EngineConfig:
    """Environment configuration with command-line overrides."""
    try:
        config = EngineConfig.from_env()
        overrides: dict[str, object] = {}
        if state is not None:
            overrides["state_path"] = state
        if parallelism is not None:
            overrides["parallelism"] = parallelism
        if refresh:
            overrides["refresh_before_apply"] = True
        return dataclasses.replace(config, **overrides) if overrides else config
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


def render_plan(plan: Plan) -> None:
    """Echo a plan grouped by wave."""
    for index, wave in enumerate(plan.waves):
        click.echo(f"Wave {index + 1}:")
        for action in wave:
            change = plan.changes[action.node_id]
            shown = change.action if not action.replacing else ActionType.REPLACE
            symbol = OP_SYMBOLS[shown]
            label = f"  {symbol:>3} {action.key} ({action.op.value}): {action.reason}"
            click.secho(label, fg=OP_COLORS[shown])

    summary = plan.summary()
    click.echo(
        f"\nPlan: {summary['create']} to create, {summary['update']} to update, "
        f"{summary['replace']} to replace, {summary['delete']} to delete, "
        f"{summary['no-op']} unchanged."
    )


@click.group()
@click.version_option(version="0.1.0", prog_name="converge")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
@click.option("--json-logs/--text-logs", default=True, help="Log format on stderr")
def cli(verbose: bool, json_logs: bool) -> None:
    """Converge declared resources onto real infrastructure."""
    setup_logging(logging.DEBUG if verbose else logging.WARNING, json_output=json_logs)


@cli.command()
@click.argument("declarations", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def validate(declarations: Path) -> None:
    """Check that declarations form a valid dependency graph."""
    try:
        graph = build_graph(load_declarations(declarations))
    except (DeclarationLoadError, GraphError) as e:
        raise click.ClickException(str(e)) from e
    click.secho(
        f"✓ {len(graph.nodes)} resources, {len(graph.edges)} dependencies", fg="green"
    )


@cli.command()
@click.argument("declarations", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--state", "-s", type=click.Path(path_type=Path), help="State file")
@click.option("--json", "as_json", is_flag=True, help="Print the plan as JSON")
def plan(declarations: Path, state: Path | None, as_json: bool) -> None:
    """Show the actions an apply would take."""
    config = load_config(state, None, False)
    providers = load_entry_point_providers()
    try:
        graph = build_graph(load_declarations(declarations))
        with FileStateStore(config.state_path) as store:
            result = Planner(providers if providers.resource_types else None).plan(
                graph, store.records()
            )
    except (DeclarationLoadError, GraphError, PlanError, StateError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(
            json.dumps(
                {
                    "summary": result.summary(),
                    "waves": [[a.to_dict() for a in wave] for wave in result.waves],
                },
                indent=2,
            )
        )
    else:
        render_plan(result)


@cli.command()
@click.argument("declarations", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--state", "-s", type=click.Path(path_type=Path), help="State file")
@click.option("--parallelism", "-p", type=int, help="Max concurrent operations per wave")
@click.option("--refresh", is_flag=True, help="Read live resources before planning")
@click.option("--json", "as_json", is_flag=True, help="Print the run report as JSON")
def apply(
    declarations: Path,
    state: Path | None,
    parallelism: int | None,
    refresh: bool,
    as_json: bool,
) -> None:
    """Converge resources to the declarations."""
    config = load_config(state, parallelism, refresh)
    providers = load_entry_point_providers()
    try:
        report = asyncio.run(apply_declarations(declarations, providers, config))
    except (DeclarationLoadError, GraphError, PlanError, StateError) as e:
        raise click.ClickException(str(e)) from e

    if as_json:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        for result in report.results:
            line = f"  {result.node_id}: {result.status.value}"
            if result.error:
                line += f" ({result.error})"
            click.secho(line, fg=STATUS_COLORS[result.status.value])
        counts = report.counts()
        click.echo(
            f"\nApply {'complete' if report.success else 'incomplete'}: "
            f"{counts['applied']} applied, {counts['no-op']} unchanged, "
            f"{counts['failed']} failed, {counts['blocked']} blocked."
        )

    raise SystemExit(report.exit_code)


@cli.command("force-unlock")
@click.option("--state", "-s", type=click.Path(path_type=Path), help="State file")
@click.confirmation_option(prompt="Remove the state lock even if a run may hold it?")
def force_unlock(state: Path | None) -> None:
    """Remove a state lock left behind by a crashed run."""
    config = load_config(state, None, False)
    holder = FileStateStore(config.state_path).force_unlock()
    if holder is None:
        click.echo("State is not locked")
    else:
        click.secho(f"✓ Removed lock held by {holder.get('owner', 'unknown')}", fg="green")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
