"""
APScheduler configuration for periodic backups.

Runs the 'run' command on the crontab schedule from the configuration. Each
firing reloads the configuration and goes through the run lock like a
manual invocation, so a manual run and a scheduled run never overlap.
"""

import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.executors.pool import ThreadPoolExecutor

from snapkeeper import configure_logging
from snapkeeper.config import Config, ConfigError, load_config
from snapkeeper.backup.coordinator import RunCoordinator
from snapkeeper.backup.targets import resolve_targets
from snapkeeper.history import open_history
from snapkeeper.utils.lock import AlreadyRunningError


logger = logging.getLogger(__name__)

# Global scheduler instance
scheduler = None

JOB_ID = 'backup_run'


def init_scheduler(config: Config) -> BlockingScheduler:
    """
    Initialize and configure APScheduler.

    Args:
        config: Loaded configuration with SCHEDULE set

    Returns:
        The scheduler

    Raises:
        ConfigError: If SCHEDULE is missing or not a valid crontab expression
    """
    global scheduler

    if scheduler is not None:
        return scheduler

    if not config.schedule:
        raise ConfigError("SCHEDULE is not set (crontab expression, e.g. '0 3 * * *')")

    try:
        trigger = CronTrigger.from_crontab(config.schedule, timezone=config.schedule_timezone)
    except (ValueError, KeyError) as e:
        # KeyError: unknown SCHEDULE_TIMEZONE
        raise ConfigError(f"Invalid SCHEDULE {config.schedule!r} ({config.schedule_timezone}): {e}")

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': 1,  # Only one instance of a job at a time
        'misfire_grace_time': 300  # 5 minutes grace period for misfires
    }

    scheduler = BlockingScheduler(
        executors={'default': ThreadPoolExecutor(max_workers=1)},
        job_defaults=job_defaults,
        timezone=config.schedule_timezone
    )

    scheduler.add_job(
        func=_execute_run_wrapper,
        args=[config.config_path],
        trigger=trigger,
        id=JOB_ID,
        name='Scheduled backup run',
        replace_existing=True
    )

    return scheduler


def start_scheduler():
    """
    Start the scheduler. Blocks until the scheduler is shut down.
    """
    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    if scheduler.running:
        logger.info(f"Scheduler already running (state={scheduler.state})")
        return

    for job in scheduler.get_jobs():
        logger.info(f"Scheduled: {job.name} ({job.trigger})")

    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()


def stop_scheduler():
    """Stop the scheduler."""
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")


def _execute_run_wrapper(config_path: str):
    """
    Execute one scheduled run.

    Errors are reported and the scheduler keeps going; the next firing starts
    from a freshly loaded configuration.

    Args:
        config_path: Configuration file to load
    """
    try:
        config = load_config(config_path)
        config.validate()
        targets = resolve_targets(config)
    except ConfigError as e:
        logger.error(f"Scheduled run skipped, configuration error: {e}")
        return

    configure_logging(config.logs_dir, 'run')

    coordinator = RunCoordinator(config, targets=targets, history=open_history(config.history_url))
    try:
        summary = coordinator.execute('run')
    except AlreadyRunningError as e:
        logger.warning(f"Scheduled run skipped: {e}")
        return
    except ConfigError as e:
        logger.error(f"Scheduled run failed: {e}")
        return

    logger.info(f"Scheduled run completed with status: {summary.status}")
