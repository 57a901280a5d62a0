#!/usr/bin/env python3
"""
TimeTide CLI - Command Line Interface
"""

import asyncio
import json
from typing import Any, Awaitable, Callable

import click

from timetide.config import load_config
from timetide.core.errors import TimetideError
from timetide.core.logging_manager import setup_logging
from timetide.core.scheduler import TimetideScheduler

DATETIME_FORMATS = ['%Y-%m-%dT%H:%M:%S', '%Y-%m-%dT%H:%M', '%Y-%m-%d %H:%M', '%Y-%m-%d']


def _run(ctx: click.Context, action: Callable[[TimetideScheduler], Awaitable[Any]],
         drain: bool = False) -> Any:
    """Build a scheduler, run one action against it and close it again"""

    async def runner():
        scheduler = TimetideScheduler(ctx.obj['config'])
        try:
            await scheduler.db.create_tables()
            result = await action(scheduler)
            if drain:
                processed = await scheduler.worker_pool.run_until_idle()
                click.echo(f"Processed {processed} jobs")
            return result
        finally:
            await scheduler.db.close()

    try:
        return asyncio.run(runner())
    except TimetideError as e:
        click.echo(f"Error: {e}", err=True)
        raise click.Abort()


@click.group()
@click.option('--config', 'config_path', type=click.Path(dir_okay=False), default=None,
              help='Path to a YAML configuration file')
@click.pass_context
def cli(ctx: click.Context, config_path):
    """TimeTide scheduling core command line interface"""
    config = load_config(config_path)
    setup_logging(config.get('logging', {}))
    ctx.ensure_object(dict)
    ctx.obj['config'] = config


@cli.command('init-db')
@click.pass_context
def init_db(ctx: click.Context):
    """Create database tables"""

    async def action(scheduler: TimetideScheduler):
        return await scheduler.db.health_check()

    healthy = _run(ctx, action)
    click.echo("Database ready" if healthy else "Database created but health check failed")


@cli.command()
@click.pass_context
def worker(ctx: click.Context):
    """Run the worker pool and periodic jobs until interrupted"""

    async def run_worker():
        scheduler = TimetideScheduler(ctx.obj['config'])
        await scheduler.start()
        click.echo(f"Worker {scheduler.worker_pool.worker_id} running; press Ctrl+C to stop")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await scheduler.stop()

    try:
        asyncio.run(run_worker())
    except KeyboardInterrupt:
        click.echo("Worker stopped")


@cli.command()
@click.argument('calendar_id')
@click.option('--full', is_flag=True, help='Force a full pull instead of an incremental one')
@click.option('--wait', is_flag=True, help='Process queued jobs before exiting')
@click.pass_context
def sync(ctx: click.Context, calendar_id: str, full: bool, wait: bool):
    """Queue a sync of one calendar"""
    job_id = _run(ctx, lambda scheduler: scheduler.trigger_calendar_sync(calendar_id, full), drain=wait)
    click.echo(f"Sync queued as job {job_id}")


@cli.command('sync-user')
@click.argument('user_id')
@click.option('--wait', is_flag=True, help='Process queued jobs before exiting')
@click.pass_context
def sync_user(ctx: click.Context, user_id: str, wait: bool):
    """Queue a sync of every enabled calendar of a user"""
    job_ids = _run(ctx, lambda scheduler: scheduler.trigger_user_calendar_sync(user_id), drain=wait)
    click.echo(f"Queued {len(job_ids)} calendar syncs")


@cli.command()
@click.argument('user_id')
@click.argument('start', type=click.DateTime(formats=DATETIME_FORMATS))
@click.argument('end', type=click.DateTime(formats=DATETIME_FORMATS))
@click.pass_context
def conflicts(ctx: click.Context, user_id: str, start, end):
    """Check a [START, END) window (UTC) against the user's calendars"""
    result = _run(ctx, lambda scheduler: scheduler.check_calendar_conflicts(
        user_id, start, end
    ))
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command('retry-delivery')
@click.argument('delivery_id')
@click.option('--wait', is_flag=True, help='Process queued jobs before exiting')
@click.pass_context
def retry_delivery(ctx: click.Context, delivery_id: str, wait: bool):
    """Manually re-attempt a webhook delivery"""
    job_id = _run(ctx, lambda scheduler: scheduler.retry_webhook_delivery(delivery_id), drain=wait)
    click.echo(f"Retry queued as job {job_id}")


@cli.command('test-webhook')
@click.argument('webhook_id')
@click.pass_context
def test_webhook(ctx: click.Context, webhook_id: str):
    """Send a synthetic event to a webhook and show the outcome"""
    result = _run(ctx, lambda scheduler: scheduler.test_webhook(webhook_id))
    click.echo(json.dumps(result, indent=2))


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show database health and job counts"""
    result = _run(ctx, lambda scheduler: scheduler.get_status())
    click.echo(json.dumps(result, indent=2))


if __name__ == '__main__':
    cli()
