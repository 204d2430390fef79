"""
Run coordinator - drives one run-affecting command across all repositories.

Workflow:
1. Acquire the run lock (fail fast when another run holds it)
2. Print the effective settings
3. Check that the required executables are available
4. Execute the command target by target, in resolver order
5. Cleanup staged dumps
6. Notify, record history, release the lock

Dumps and backups are fatal: the first failure aborts the remaining targets.
Maintenance operations (list, forget, check, unlock) are soft: a failure is
reported for its repository and the run moves on.
"""

import shutil
import signal
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from snapkeeper import SUCCESS
from snapkeeper.config import Config, ConfigError
from snapkeeper.utils.lock import acquire_lock
from snapkeeper.utils.notifier import Notifier
from .backend import ResticBackend, OperationResult, Outcome
from .dumps import DumpProducer, DumpError
from .retention import RetentionManager
from .targets import RepositoryTarget, resolve_targets


logger = logging.getLogger(__name__)


class MissingToolError(ConfigError):
    """Raised when a required executable cannot be found."""
    pass


class FatalOperationError(Exception):
    """Raised inside a run when a dump or backup fails."""
    pass


class RunInterrupted(Exception):
    """Raised when the process is asked to terminate during a run."""
    pass


class RunState(Enum):
    IDLE = 'idle'
    LOCK_ACQUIRED = 'lock_acquired'
    SETTINGS_PRINTED = 'settings_printed'
    BINARIES_CHECKED = 'binaries_checked'
    EXECUTING = 'executing'
    CLEANUP = 'cleanup'
    DONE = 'done'
    ABORTED = 'aborted'


@dataclass
class RunSummary:
    operation: str
    results: List[OperationResult] = field(default_factory=list)
    elapsed: float = 0.0
    aborted: bool = False
    error: Optional[str] = None

    @property
    def failures(self) -> List[OperationResult]:
        return [r for r in self.results if not r.ok]

    @property
    def status(self) -> str:
        if self.aborted:
            return 'failed'
        if self.failures:
            return 'partial'
        return 'success'

    @property
    def exit_code(self) -> int:
        return 1 if self.aborted else 0


def format_elapsed(seconds: float) -> str:
    """Format a duration as '1h 02m 03s'."""
    seconds = int(round(seconds))
    hours, remainder = divmod(seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes:02d}m {seconds:02d}s"


@contextmanager
def terminate_on_sigterm():
    """Turn SIGTERM into RunInterrupted so cleanup runs before exit."""
    if threading.current_thread() is not threading.main_thread():
        # Signal handlers can only be installed from the main thread (scheduler jobs)
        yield
        return

    def handler(signum, frame):
        raise RunInterrupted(f"Interrupted by signal {signal.Signals(signum).name}")

    previous = signal.signal(signal.SIGTERM, handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


class RunCoordinator:
    """
    Executes init / list / run / prune / unlock over every repository target.
    """

    OPERATIONS = {
        'init': '_init',
        'list': '_list',
        'run': '_run',
        'prune': '_prune',
        'unlock': '_unlock',
    }

    def __init__(
        self,
        config: Config,
        targets: Optional[List[RepositoryTarget]] = None,
        backend=None,
        dump_producer: Optional[DumpProducer] = None,
        notifier: Optional[Notifier] = None,
        history=None
    ):
        """
        Initialize run coordinator.

        Args:
            config: Validated configuration
            targets: Resolved targets (default: resolve from config)
            backend: Backend adapter (default: ResticBackend)
            dump_producer: Dump producer (default: from config when database backup is enabled)
            notifier: Notifier (default: from config)
            history: HistoryStore or None
        """
        self.config = config
        self.targets = targets if targets is not None else resolve_targets(config)
        self.backend = backend or ResticBackend.from_config(config)
        self.dump_producer = dump_producer
        if self.dump_producer is None and any(t.is_database for t in self.targets):
            self.dump_producer = DumpProducer.from_config(config)
        self.notifier = notifier or Notifier.from_config(config)
        self.history = history

        self.state = RunState.IDLE
        self.results: List[OperationResult] = []
        self._run_record = None

    def execute(self, operation: str) -> RunSummary:
        """
        Execute a command under the run lock.

        Args:
            operation: One of init, list, run, prune, unlock

        Returns:
            RunSummary (aborted when a fatal failure or interruption occurred)

        Raises:
            ValueError: If the operation is unknown
            AlreadyRunningError: If another run holds the lock
            MissingToolError: If a required executable is missing
        """
        if operation not in self.OPERATIONS:
            raise ValueError(f"Unknown operation: {operation}")

        started = time.monotonic()
        lock = acquire_lock(self.config.lock_file)
        self.state = RunState.LOCK_ACQUIRED

        # The lock is released last, after every other side effect of the run
        try:
            with terminate_on_sigterm():
                return self._execute_locked(operation, started)
        finally:
            lock.release()

    def _execute_locked(self, operation: str, started: float) -> RunSummary:
        self._print_settings(operation)
        self.state = RunState.SETTINGS_PRINTED

        self._check_binaries(operation)
        self.state = RunState.BINARIES_CHECKED

        self._history_start(operation)
        self.state = RunState.EXECUTING

        aborted = False
        error = None
        try:
            try:
                getattr(self, self.OPERATIONS[operation])()
            finally:
                self.state = RunState.CLEANUP
                self._cleanup_staging()
        except (FatalOperationError, RunInterrupted, KeyboardInterrupt) as e:
            aborted = True
            error = str(e) or 'Interrupted'
            logger.error(f"{operation} aborted: {error}")
        except Exception as e:
            self._finish(operation, started, aborted=True, error=f"Unexpected error: {e}")
            raise

        return self._finish(operation, started, aborted, error)

    # ------------------------------------------------------------------
    # Operations

    def _init(self):
        # Never aborts early: every repository gets its init attempt
        for target in self.targets:
            self._record(self.backend.init(target))

    def _list(self):
        for target in self.targets:
            result = self.backend.list_snapshots(target)
            self._record(result)
            if result.ok:
                self._print_snapshots(target, result)

    def _run(self):
        self.notifier.started()

        for target in self.targets:
            if target.is_database:
                self._backup_databases(target)
            else:
                self._backup_directory(target)

        logger.log(SUCCESS, "All backups completed")
        self._prune()

    def _prune(self):
        manager = RetentionManager(self.backend, self.config.retention_policy, on_result=self._record)
        manager.enforce_all_policies(self.targets)

    def _unlock(self):
        for target in self.targets:
            self._record(self.backend.unlock(target))
            self._record(self.backend.check(target))

    # ------------------------------------------------------------------
    # Backup steps

    def _backup_databases(self, target: RepositoryTarget):
        """
        Dump all databases into the staging directory and back it up.

        Raises:
            FatalOperationError: If any dump or the backup fails
        """
        producer = self.dump_producer
        producer.purge_stale()

        try:
            artifacts = producer.produce_all()
        except DumpError as e:
            self._record(OperationResult(target, 'dump', Outcome.FATAL_FAILURE, str(e)))
            raise FatalOperationError(f"Database dump failed: {e}")

        self._record(OperationResult(target, 'dump', Outcome.SUCCESS, f"{len(artifacts)} databases dumped"))

        try:
            result = self.backend.backup(target, producer.staging_dir)
        finally:
            producer.cleanup(artifacts)

        self._record(result)
        if result.fatal:
            raise FatalOperationError(f"Backup of {target.id} failed: {result.message}")

    def _backup_directory(self, target: RepositoryTarget):
        logger.info(f"Backing up {target.source.path} to {target.uri}")
        result = self.backend.backup(target, target.source.path)
        self._record(result)
        if result.fatal:
            raise FatalOperationError(f"Backup of {target.id} failed: {result.message}")

    def _cleanup_staging(self):
        if self.dump_producer is not None and self.dump_producer.staged:
            self.dump_producer.cleanup()

    # ------------------------------------------------------------------
    # Reporting

    def _print_settings(self, operation: str):
        logger.info(f"Starting {operation}")
        for name, value in self.config.describe().items():
            logger.info(f"  {name}: {value}")
        logger.info(f"  Repositories: {', '.join(t.id for t in self.targets)}")

    def _check_binaries(self, operation: str):
        """
        Raises:
            MissingToolError: If an executable is not installed
        """
        required = [self.config.restic_bin]
        if operation == 'run' and self.dump_producer is not None:
            required += self.dump_producer.executables()

        missing = [tool for tool in required if shutil.which(tool) is None]
        if missing:
            raise MissingToolError(f"Required tools not found: {', '.join(missing)}")

    def _record(self, result: OperationResult):
        self.results.append(result)

        line = f"[{result.target.id}] {result.operation}: {result.message}"
        if result.outcome is Outcome.SUCCESS:
            logger.log(SUCCESS, line)
        elif result.outcome is Outcome.ALREADY_EXISTS:
            logger.info(line)
        else:
            logger.error(line)

        if self.history is not None and self._run_record is not None:
            try:
                self.history.record_operation(
                    self._run_record, result.target.id, result.operation,
                    result.outcome.value, result.message
                )
            except SQLAlchemyError as e:
                logger.warning(f"Failed to record operation in history: {e}")

    def _print_snapshots(self, target: RepositoryTarget, result: OperationResult):
        logger.info(f"[{target.id}] {target.uri}: {len(result.snapshots)} snapshots")
        for snapshot in result.snapshots:
            logger.info(
                f"  {snapshot.short_id}  {snapshot.time[:19].replace('T', ' ')}  "
                f"{snapshot.hostname}  {', '.join(snapshot.paths)}"
            )

    def _history_start(self, operation: str):
        if self.history is None:
            return
        try:
            self._run_record = self.history.start_run(operation)
        except SQLAlchemyError as e:
            logger.warning(f"Failed to record run in history: {e}")

    def _finish(self, operation: str, started: float, aborted: bool, error: Optional[str]) -> RunSummary:
        summary = RunSummary(
            operation=operation,
            results=list(self.results),
            elapsed=time.monotonic() - started,
            aborted=aborted,
            error=error
        )
        self.state = RunState.ABORTED if aborted else RunState.DONE
        elapsed = format_elapsed(summary.elapsed)

        if operation == 'run':
            if aborted:
                self.notifier.failed(error or 'unknown error')
            else:
                self.notifier.succeeded(elapsed)

        if self.history is not None and self._run_record is not None:
            try:
                self.history.finish_run(self._run_record, summary.status, summary.elapsed, error)
            except SQLAlchemyError as e:
                logger.warning(f"Failed to record run in history: {e}")

        if aborted:
            logger.error(f"{operation} failed after {elapsed}")
        elif summary.failures:
            logger.warning(
                f"{operation} finished in {elapsed} with {len(summary.failures)} failed operation(s): "
                f"{', '.join(f'{r.target.id}/{r.operation}' for r in summary.failures)}"
            )
        else:
            logger.log(SUCCESS, f"{operation} finished in {elapsed}")

        return summary
