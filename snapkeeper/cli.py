"""
Command line interface.

    snapkeeper [--config PATH] COMMAND

Commands: config, init, list, run, prune, unlock, history, schedule.
A missing or unknown command prints usage and exits with status 1.
"""

import os
import logging
from datetime import datetime

import click
from sqlalchemy.exc import SQLAlchemyError

from snapkeeper import __version__, configure_logging
from snapkeeper.config import DEFAULT_CONFIG_PATH, ConfigError, load_config, write_config_file
from snapkeeper.backup.coordinator import RunCoordinator
from snapkeeper.backup.targets import resolve_targets
from snapkeeper.history import HistoryStore, open_history
from snapkeeper.scheduler import init_scheduler, start_scheduler
from snapkeeper.utils.lock import AlreadyRunningError


logger = logging.getLogger(__name__)

STATUS_COLORS = {
    'success': 'green',
    'partial': 'yellow',
    'failed': 'red',
    'running': 'cyan',
}


class CommandGroup(click.Group):
    """Group that answers an unknown command with usage and exit status 1."""

    def resolve_command(self, ctx, args):
        if args and self.get_command(ctx, args[0]) is None:
            click.echo(ctx.get_help(), err=True)
            ctx.exit(1)
        return super().resolve_command(ctx, args)


def _error(message: str):
    """Report an error that happens before logging is configured."""
    timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
    click.secho(f"[{timestamp}] ERROR: {message}", fg='red', bold=True, err=True)


def _load(ctx):
    """Load and validate the configuration; exit 1 on a configuration error."""
    try:
        config = load_config(ctx.obj['config_path'])
        config.validate()
        targets = resolve_targets(config)
    except ConfigError as e:
        _error(str(e))
        ctx.exit(1)
    return config, targets


def _execute(ctx, operation: str):
    config, targets = _load(ctx)
    log_path = configure_logging(config.logs_dir, operation)

    coordinator = RunCoordinator(config, targets=targets, history=open_history(config.history_url))
    try:
        summary = coordinator.execute(operation)
    except (AlreadyRunningError, ConfigError) as e:
        logger.error(str(e))
        ctx.exit(1)

    logger.info(f"Log file: {log_path}")
    ctx.exit(summary.exit_code)


@click.group(cls=CommandGroup, invoke_without_command=True)
@click.option(
    '--config', 'config_path',
    envvar='SNAPKEEPER_CONFIG',
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    type=click.Path(dir_okay=False),
    help='Configuration file.'
)
@click.version_option(__version__, prog_name='snapkeeper')
@click.pass_context
def cli(ctx, config_path):
    """Crash-safe backups of directories and databases into restic repositories."""
    ctx.obj = {'config_path': config_path}
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help(), err=True)
        ctx.exit(1)


@cli.command('config')
@click.pass_context
def config_command(ctx):
    """Create the configuration file interactively."""
    path = ctx.obj['config_path']
    if os.path.exists(path):
        _error(f"Configuration already exists: {path}")
        ctx.exit(1)

    password = click.prompt('Repository password', hide_input=True, confirmation_prompt=True)
    api_key = click.prompt('Pushover API key (optional)', default='', show_default=False)
    user_key = click.prompt('Pushover user key (optional)', default='', show_default=False)

    try:
        write_config_file(path, password, api_key, user_key)
    except ConfigError as e:
        _error(str(e))
        ctx.exit(1)

    click.secho(f"Configuration written to {path}", fg='green')
    click.echo("Set REPOSITORY_PREFIX and BACKUP_DIRECTORIES in it, then run 'snapkeeper init'.")


@cli.command('init')
@click.pass_context
def init_command(ctx):
    """Initialize every repository (existing repositories are left alone)."""
    _execute(ctx, 'init')


@cli.command('list')
@click.pass_context
def list_command(ctx):
    """List the snapshots of every repository."""
    _execute(ctx, 'list')


@cli.command('run')
@click.pass_context
def run_command(ctx):
    """Back up databases and directories, then apply the retention policy."""
    _execute(ctx, 'run')


@cli.command('prune')
@click.pass_context
def prune_command(ctx):
    """Apply the retention policy and check every repository."""
    _execute(ctx, 'prune')


@cli.command('unlock')
@click.pass_context
def unlock_command(ctx):
    """Remove stale repository locks and check every repository."""
    _execute(ctx, 'unlock')


@cli.command('history')
@click.option('--limit', default=10, show_default=True, type=click.IntRange(min=1), help='Number of runs to show.')
@click.pass_context
def history_command(ctx, limit):
    """Show recent runs."""
    try:
        config = load_config(ctx.obj['config_path'])
    except ConfigError as e:
        _error(str(e))
        ctx.exit(1)

    if not config.history_url:
        _error("Run history is disabled (HISTORY_URL is empty)")
        ctx.exit(1)

    try:
        runs = HistoryStore(config.history_url).recent_runs(limit)
    except SQLAlchemyError as e:
        _error(f"Cannot read run history: {e}")
        ctx.exit(1)

    if not runs:
        click.echo("No runs recorded yet.")
        return

    for run in runs:
        elapsed = f"{run.elapsed_seconds:.0f}s" if run.elapsed_seconds is not None else '-'
        status = click.style(f"{run.status:<8}", fg=STATUS_COLORS.get(run.status))
        click.echo(f"{run.started_at:%Y-%m-%d %H:%M:%S}  {run.command:<7} {status} {elapsed:>7}  "
                   f"{len(run.operations)} operations")
        for operation in run.operations:
            if operation.outcome in ('success', 'already_exists'):
                continue
            click.echo(f"    {operation.target_id}/{operation.operation}: {operation.outcome} {operation.message or ''}")
        if run.error_message:
            click.echo(f"    error: {run.error_message}")


@cli.command('schedule')
@click.pass_context
def schedule_command(ctx):
    """Run backups periodically according to SCHEDULE."""
    config, _ = _load(ctx)
    configure_logging(config.logs_dir, 'schedule')

    try:
        init_scheduler(config)
    except ConfigError as e:
        logger.error(str(e))
        ctx.exit(1)

    start_scheduler()


def main():
    cli(prog_name='snapkeeper')


if __name__ == '__main__':
    main()
