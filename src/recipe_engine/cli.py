"""
Recipe Workflow Engine CLI
"""
import asyncio
import json
import logging
from pathlib import Path

import click
from dotenv import load_dotenv

from .config import EngineSettings
from .core.access import AllowAllAuthorizer
from .core.cron import upcoming_runs, parse_expression
from .core.engine import ExecutionEngine
from .core.parser import RecipeParser
from .exceptions import RecipeEngineError
from .storage.repository import (
    InMemoryRecipeRepository, InMemoryExecutionRepository, InMemoryArtifactRepository
)
from .utils import parse_datetime


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


@click.group()
@click.option('--log-level', default=None, help='Logging level (default: LOG_LEVEL or INFO)')
@click.pass_context
def cli(ctx, log_level):
    """Recipe Workflow Engine CLI"""
    load_dotenv()
    settings = EngineSettings.from_env()
    _configure_logging(log_level or settings.log_level)
    ctx.obj = settings


@cli.command()
@click.option('--host', default=None, help='Host to bind to')
@click.option('--port', default=None, type=int, help='Port to bind to')
@click.option('--reload', is_flag=True, help='Enable auto-reload')
@click.pass_obj
def serve(settings, host, port, reload):
    """Start the API server"""
    import uvicorn

    host = host or settings.api_host
    port = port or settings.api_port
    click.echo(f"Starting API server on {host}:{port}")
    uvicorn.run(
        "recipe_engine.api:app",
        host=host,
        port=port,
        reload=reload or settings.api_reload
    )


@cli.command()
@click.argument('recipe_file', type=click.Path(exists=True, dir_okay=False))
def validate(recipe_file):
    """Validate a recipe definition file"""
    try:
        recipe = RecipeParser().parse_file(Path(recipe_file))
    except RecipeEngineError as e:
        raise click.ClickException(str(e))
    click.echo(f"Recipe '{recipe.name}' is valid ({len(recipe.steps)} steps)")


@cli.command()
@click.argument('recipe_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--context', 'context_json', default='{}', help='Execution context as JSON')
@click.option('--max-wait-ms', default=None, type=int, help='Ceiling for wait steps')
@click.pass_obj
def run(settings, recipe_file, context_json, max_wait_ms):
    """Run a recipe from file with in-memory storage"""
    try:
        context = json.loads(context_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"Invalid JSON: {e}", param_hint='--context')
    if not isinstance(context, dict):
        raise click.BadParameter("Context must be a JSON object", param_hint='--context')
    if max_wait_ms is not None:
        settings.max_wait_ms = max_wait_ms

    try:
        recipe = RecipeParser().parse_file(Path(recipe_file))
    except RecipeEngineError as e:
        raise click.ClickException(str(e))

    async def _run():
        recipes = InMemoryRecipeRepository()
        executions = InMemoryExecutionRepository()
        artifacts = InMemoryArtifactRepository()
        settings.auto_run = False
        engine = ExecutionEngine(
            recipe_repository=recipes,
            execution_repository=executions,
            artifact_repository=artifacts,
            authorizer=AllowAllAuthorizer(recipes, executions),
            settings=settings,
        )
        await recipes.save(recipe)
        execution = await engine.start_execution_internal(
            recipe.id, {"triggered_by": "cli", **context}
        )
        execution = await engine.run_execution(execution.id)
        return execution, await artifacts.list_by_execution(execution.id)

    execution, produced = asyncio.run(_run())
    click.echo(json.dumps({
        "execution": execution.to_dict(),
        "artifacts": [a.to_dict() for a in produced],
    }, indent=2, ensure_ascii=False))

    if execution.status.value == "failed":
        raise SystemExit(1)


@cli.command('next-run')
@click.argument('expression')
@click.option('--from', 'from_time', default=None, help='ISO-8601 start time (UTC if naive)')
@click.option('--count', default=1, type=click.IntRange(1, 100), help='Number of runs to list')
@click.pass_obj
def next_run(settings, expression, from_time, count):
    """Show upcoming fire times of a cron expression (UTC)"""
    if parse_expression(expression) is None:
        raise click.ClickException(f"Invalid cron expression: '{expression}'")
    try:
        start = parse_datetime(from_time) if from_time else None
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--from')

    runs = upcoming_runs(expression, count, start, settings.search_horizon_days)
    if not runs:
        click.echo("No matching time within the search horizon")
        return
    for moment in runs:
        click.echo(moment.isoformat())


@cli.command()
@click.option('--now', 'now_text', default=None, help='ISO-8601 sweep time (default: now)')
@click.pass_obj
def sweep(settings, now_text):
    """Fire all due schedules once (requires DATABASE_URL)"""
    from .services import build_services

    if not settings.database_url:
        raise click.ClickException("DATABASE_URL is required for sweep")
    now = parse_datetime(now_text) if now_text else None

    async def _sweep():
        settings.auto_run = True
        services = await build_services(settings)
        try:
            started = await services.dispatcher.process_due_schedules(now)
            for execution in started:
                await services.engine.wait_for_execution(execution.id)
            return started
        finally:
            await services.close()

    started = asyncio.run(_sweep())
    click.echo(f"Started {len(started)} executions")


def main():
    cli()


if __name__ == '__main__':
    main()
