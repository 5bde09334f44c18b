"""Command-line interface for the parallel downloader."""

import sys

import click
from loguru import logger

from .config import ConfigManager, get_config_manager
from .coordinator import Coordinator
from .exceptions import DownloaderError
from .log_setup import configure_logging
from .models import (
    CachePolicy,
    CoordinatorOptions,
    CoordinatorResult,
    MetadataKey,
    NamingPolicy,
    PrefixMode,
    QueueProgress,
    ResumeAction,
)
from .sources import load_source
from .task_queue import TaskQueue, store_path


def ask_resume(progress: QueueProgress) -> ResumeAction:
    if click.confirm("Resume previous download?", default=True):
        return ResumeAction.RESUME
    if click.confirm("Start fresh (discard previous progress)?", default=False):
        return ResumeAction.FRESH
    return ResumeAction.ABORT


def ask_cleanup(result: CoordinatorResult) -> bool:
    return click.confirm("Delete cache?", default=result.failed_tasks == 0)


def log_progress(progress: QueueProgress):
    pct = (progress.finished / progress.total) * 100 if progress.total > 0 else 0
    logger.info(
        f"Progress: {progress.finished}/{progress.total} ({pct:.1f}%) | "
        f"completed {progress.completed}, failed {progress.failed}, "
        f"in progress {progress.in_progress}"
    )


def open_existing_queue(ctx, group_key: str) -> TaskQueue:
    root_dir = ctx.obj['config'].download.root_dir
    if not store_path(root_dir, group_key).exists():
        logger.error(f"No stored run found for {group_key}")
        sys.exit(1)
    return TaskQueue(root_dir, group_key)


@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--log-level', default=None, help='Log level (DEBUG, INFO, WARNING, ERROR)')
@click.option('--root-dir', default=None, help='Root directory for downloads and cache')
@click.pass_context
def main(ctx, config, log_level, root_dir):
    """Parallel downloader with a resumable task queue."""
    config_manager = get_config_manager(config)
    config_manager.update_from_cli_args(log_level=log_level, root_dir=root_dir)

    app_config = config_manager.get_config()
    configure_logging(app_config.log_level)

    ctx.ensure_object(dict)
    ctx.obj['config'] = app_config
    ctx.obj['config_manager'] = config_manager


@main.command()
@click.argument('locator')
@click.option('--source', '-s', default=None, help="Source name ('http', 'huggingface') or 'module:factory'")
@click.option('--start', default=1, type=click.IntRange(min=1), show_default=True, help='First unit (page)')
@click.option('--end', default=None, type=click.IntRange(min=1), help='Last unit (page), defaults to --start')
@click.option('--all', 'all_units', is_flag=True, help='Download every unit from --start on')
@click.option('--workers', '-w', default=None, type=int, help='Number of worker processes (1-10)')
@click.option('--fresh', is_flag=True, help='Discard any previous progress')
@click.option('--verbose', '-v', is_flag=True, help='Verbose worker logging')
@click.option('--prefix-mode', type=click.Choice([m.value for m in PrefixMode]),
              default=PrefixMode.PAGE.value, show_default=True, help='File name prefix')
@click.option('--prefix', default=None, help="Prefix used with --prefix-mode custom")
@click.option('--cache', 'cache_policy', type=click.Choice(['auto', 'delete', 'keep', 'ask']),
              default='auto', show_default=True, help='What to do with the queue after the run')
@click.option('--yes', '-y', is_flag=True, help='Do not prompt; resume previous progress')
@click.pass_context
def run(ctx, locator, source, start, end, all_units, workers, fresh, verbose,
        prefix_mode, prefix, cache_policy, yes):
    """Download every item discovered for LOCATOR."""
    config_manager = ctx.obj['config_manager']
    config_manager.update_from_cli_args(source=source, workers=workers)
    app_config = config_manager.get_config()
    download = app_config.download

    if all_units and end is not None:
        raise click.UsageError("--end and --all are mutually exclusive")
    end_unit = None if all_units else (end or start)

    try:
        options = CoordinatorOptions(
            start_unit=start,
            end_unit=end_unit,
            workers=download.workers,
            force_fresh=fresh,
            verbose=verbose,
            naming=NamingPolicy(mode=PrefixMode(prefix_mode), custom_prefix=prefix),
            cache_policy=CachePolicy.AUTO if cache_policy == 'ask' else CachePolicy(cache_policy),
            unit_delay=download.unit_delay,
            poll_interval=download.poll_interval,
            worker_poll_delay=download.worker_poll_delay,
            download_attempts=download.download_attempts,
            download_backoff=download.download_backoff,
            log_level=app_config.log_level,
        )
    except ValueError as e:
        raise click.UsageError(str(e))

    try:
        download_source = load_source(download.source, app_config)
    except (ValueError, TypeError, ImportError, AttributeError) as e:
        logger.error(f"Failed to load source '{download.source}': {e}")
        sys.exit(1)

    logger.info(f"Downloading {locator} with {options.workers} workers ({options.mode.value} mode)")

    try:
        coordinator = Coordinator(
            locator,
            download.root_dir,
            download_source,
            options,
            resume_decider=None if yes else ask_resume,
            cleanup_decider=ask_cleanup if cache_policy == 'ask' and not yes else None,
            on_progress=log_progress,
        )
        result = coordinator.run()
    except KeyboardInterrupt:
        logger.warning("Interrupted; run again to resume")
        sys.exit(130)
    except DownloaderError as e:
        logger.error(f"Download failed: {e}")
        sys.exit(1)

    if result.failed_tasks > 0:
        logger.warning(f"{result.failed_tasks} items failed; use 'parallel-downloader failed {locator}'")
        sys.exit(1)
    if result.remaining_tasks > 0:
        logger.warning(f"{result.remaining_tasks} items not finished; run again to resume")
        sys.exit(1)


@main.command()
@click.argument('group_key')
@click.pass_context
def status(ctx, group_key):
    """Show progress of a stored run."""
    with open_existing_queue(ctx, group_key) as queue:
        progress = queue.get_progress()
        pct = (progress.finished / progress.total) * 100 if progress.total > 0 else 0

        click.echo(f"Run: {group_key}")
        click.echo("=" * 60)
        click.echo(f"  Pending: {progress.pending}")
        click.echo(f"  In progress: {progress.in_progress}")
        click.echo(f"  Completed: {progress.completed}")
        click.echo(f"  Failed: {progress.failed}")
        click.echo(f"  Total: {progress.total} ({pct:.1f}% finished)")
        click.echo(f"  Ingestion complete: {'yes' if queue.is_ingestion_complete() else 'no'}")

        for key in (MetadataKey.TOTAL_UNITS, MetadataKey.TOTAL_ITEMS, MetadataKey.START_TIME):
            value = queue.get_metadata(key)
            if value is not None:
                click.echo(f"  {key.value}: {value}")


@main.command()
@click.argument('group_key')
@click.pass_context
def failed(ctx, group_key):
    """List failed tasks of a stored run."""
    with open_existing_queue(ctx, group_key) as queue:
        tasks = queue.get_failed_tasks()

    if not tasks:
        click.echo("No failed tasks")
        return

    click.echo(f"Failed tasks ({len(tasks)}):")
    for task in tasks:
        click.echo(f"  [unit {task.sequence_key}] {task.name} (attempts: {task.retry_count})")
        if task.last_error:
            click.echo(f"    {task.last_error}")


@main.command()
@click.argument('group_key')
@click.pass_context
def reset(ctx, group_key):
    """Return tasks left in progress by a crashed run to pending."""
    with open_existing_queue(ctx, group_key) as queue:
        count = queue.reset_in_progress()
    click.echo(f"Reset {count} in-progress tasks to pending")


@main.command()
@click.argument('group_key')
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def clean(ctx, group_key, yes):
    """Delete the stored queue of a run."""
    queue = open_existing_queue(ctx, group_key)
    if not yes and not click.confirm(f"Delete stored run for {group_key}?", default=False):
        queue.close()
        click.echo("Aborted")
        return
    queue.delete()
    click.echo(f"Deleted stored run for {group_key}")


@main.command()
@click.option('--output', '-o', default='config.ini', help='Output file path')
def init_config(output):
    """Create a sample configuration file."""
    config_manager = ConfigManager()
    config_manager.create_sample_config(output)
    click.echo(f"Created sample configuration file: {output}")
    click.echo("Edit the file and uncomment the settings you want to use.")


if __name__ == '__main__':
    main()
