"""
Main CLI entry point for Vector Sync Orchestrator

Provides command-line interface for configuration checks, job definition
validation, source connectivity and resource governor inspection.
"""

import asyncio
import json
import sys
from typing import Any, Dict

import click
import yaml

from ..adapters.postgres import PostgresSourceAdapter
from ..core.config import OrchestratorConfig, load_job_definitions
from ..core.exceptions import VectorSyncError
from ..models.source import SourceType
from ..models.worker import format_bytes
from ..services.resource_governor import ResourceGovernor
from ..utils.logger import setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--log-level', '-l', default=None, help='Log level (overrides the configuration file)')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, log_level, verbose):
    """Vector Sync Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    try:
        settings = OrchestratorConfig.from_yaml(config) if config else OrchestratorConfig()
    except VectorSyncError as e:
        click.echo(f"Invalid configuration: {e.message}", err=True)
        sys.exit(1)

    # Set up logging
    logger = setup_logger(
        "vector_sync_orchestrator",
        level=log_level or settings.logging.level,
        structured=settings.logging.structured and not verbose,
        log_file=settings.logging.log_file
    )
    ctx.obj['logger'] = logger
    ctx.obj['config_path'] = config
    ctx.obj['config'] = settings
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def config(ctx):
    """Configuration commands"""
    pass


@cli.group()
@click.pass_context
def jobs(ctx):
    """Job definition commands"""
    pass


@cli.group()
@click.pass_context
def governor(ctx):
    """Resource governor commands"""
    pass


# Config Commands
@config.command('show')
@click.option('--format', 'output_format', type=click.Choice(['yaml', 'json']), default='yaml',
              help='Output format')
@click.pass_context
def show_config(ctx, output_format):
    """Print the effective configuration"""
    data = ctx.obj['config'].to_dict()
    if output_format == 'json':
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@config.command('validate')
@click.argument('path', type=click.Path(exists=True))
def validate_config(path):
    """Validate a configuration file"""
    try:
        settings = OrchestratorConfig.from_yaml(path)
    except VectorSyncError as e:
        click.echo(f"Invalid configuration: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"Configuration OK: {path}")
    click.echo(f"  Max concurrency: {settings.scheduler.max_concurrency}")
    click.echo(f"  Max retries: {settings.retry.max_retries}")
    click.echo(f"  Sample size: {settings.consistency.sample_size}")
    click.echo(f"  Tiers: {', '.join(name.value for name in settings.governor.tiers)}")


# Job Commands
@jobs.command('validate')
@click.argument('path', type=click.Path(exists=True))
@click.pass_context
def validate_jobs(ctx, path):
    """Validate a job definition file"""
    try:
        definitions = load_job_definitions(path)
    except VectorSyncError as e:
        click.echo(f"Invalid job definitions: {e.message}", err=True)
        sys.exit(1)

    click.echo(f"{len(definitions)} job(s) OK")
    click.echo()
    click.echo(f"{'Job ID':<24} {'Kind':<12} {'Priority':<9} {'Collection':<24} {'Next run'}")
    click.echo("-" * 96)
    for job in definitions:
        next_run = job.schedule.next_fire_time().isoformat() if job.schedule else "-"
        click.echo(f"{job.job_id:<24} {job.kind.value:<12} {job.priority:<9} "
                   f"{job.target_collection:<24} {next_run}")


@jobs.command('test-sources')
@click.argument('path', type=click.Path(exists=True))
@click.option('--timeout', type=float, default=10.0, help='Connection timeout in seconds')
@click.pass_context
def test_sources(ctx, path, timeout):
    """Test connectivity to every PostgreSQL source used by a job file"""

    async def _test() -> Dict[str, bool]:
        adapter = PostgresSourceAdapter(command_timeout=timeout)
        results = {}
        try:
            for job in load_job_definitions(path):
                source = job.source
                if source.source_type is not SourceType.POSTGRESQL or source.source_id in results:
                    continue
                results[source.source_id] = await adapter.test_connection(source)
        finally:
            await adapter.close()
        return results

    try:
        results = asyncio.run(_test())
    except VectorSyncError as e:
        click.echo(f"Error: {e.message}", err=True)
        sys.exit(1)

    for source_id, ok in results.items():
        click.echo(f"{source_id:<24} {'OK' if ok else 'UNREACHABLE'}")
    if not all(results.values()):
        sys.exit(1)


# Governor Commands
@governor.command('status')
@click.option('--json', 'as_json', is_flag=True, help='Output as JSON')
@click.pass_context
def governor_status(ctx, as_json):
    """Show memory usage and worker tiers"""
    status = ResourceGovernor(ctx.obj['config'].governor).status()
    if as_json:
        click.echo(json.dumps(status, indent=2))
        return
    _display_governor_status(status)


@governor.command('batch-size')
@click.option('--item-size', type=int, required=True, help='Estimated bytes per record')
@click.option('--max-items', type=int, default=1000, help='Upper bound on records per batch')
@click.pass_context
def batch_size(ctx, item_size, max_items):
    """Compute the batch size the governor would use right now"""
    resource_governor = ResourceGovernor(ctx.obj['config'].governor)
    try:
        size = resource_governor.calculate_batch_size(item_size, max_items)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    budget = resource_governor.memory_snapshot()
    click.echo(f"Batch size: {size}")
    if ctx.obj['verbose']:
        click.echo(f"Available memory: {format_bytes(budget.available_bytes)}")
        click.echo(f"Hard cap: {resource_governor.settings.hard_batch_cap}")


# Helper Functions
def _display_governor_status(status: Dict[str, Any]):
    """Display governor status"""
    memory = status['memory']
    click.echo("Memory:")
    click.echo(f"  Used: {memory['used']}")
    click.echo(f"  Max: {memory['max']}")
    click.echo(f"  Usage: {memory['usage_ratio'] * 100:.1f}% (threshold {memory['threshold'] * 100:.0f}%)")
    click.echo()

    click.echo("Tiers:")
    click.echo(f"{'Tier':<14} {'Core':<6} {'Max':<6} {'Queue cap':<10} {'Running':<8} {'Queued'}")
    click.echo("-" * 56)
    for name, tier in status['tiers'].items():
        click.echo(f"{name:<14} {tier['core_workers']:<6} {tier['max_workers']:<6} "
                   f"{tier['queue_capacity']:<10} {tier['running']:<8} {tier['queued']}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
