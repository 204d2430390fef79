"""
Repository backend adapter.

Drives the restic command line for one repository target per call:
- init: create the repository (an existing repository is not an error)
- backup: snapshot a path (failure is fatal for the run)
- snapshots: list snapshots
- forget --prune: apply the retention policy
- check: verify repository consistency
- unlock: remove stale repository locks

Every call returns an OperationResult instead of raising.
"""

import os
import re
import json
import shlex
import logging
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .targets import RepositoryTarget


logger = logging.getLogger(__name__)

ALREADY_INITIALIZED = re.compile(
    r'already (been )?initiali[sz]ed|config file already exists|repository master key and config already initialized',
    re.IGNORECASE
)

# Variables that would make restic take the password from somewhere else
COMPETING_PASSWORD_VARIABLES = ('RESTIC_PASSWORD_FILE', 'RESTIC_PASSWORD_COMMAND')


class Outcome(Enum):
    SUCCESS = 'success'
    ALREADY_EXISTS = 'already_exists'
    SOFT_FAILURE = 'soft_failure'
    FATAL_FAILURE = 'fatal_failure'


@dataclass(frozen=True)
class Snapshot:
    short_id: str
    time: str
    hostname: str = ''
    paths: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()


@dataclass
class OperationResult:
    target: RepositoryTarget
    operation: str
    outcome: Outcome
    message: str = ''
    snapshots: List[Snapshot] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome in (Outcome.SUCCESS, Outcome.ALREADY_EXISTS)

    @property
    def fatal(self) -> bool:
        return self.outcome is Outcome.FATAL_FAILURE


class ResticBackend:
    """
    Adapter around the restic executable.
    """

    def __init__(
        self,
        password: str,
        binary: str = 'restic',
        exclude_marker: str = '.nobackup',
        extra_env: Optional[Dict[str, str]] = None
    ):
        """
        Initialize backend adapter.

        Args:
            password: Repository password (passed to each call via its environment)
            binary: restic executable
            exclude_marker: Directories containing this file are skipped by backups
            extra_env: Transport credentials for the remote store (AWS_*, B2_*, ...)
        """
        self.password = password
        self.binary = binary
        self.exclude_marker = exclude_marker
        self.extra_env = dict(extra_env or {})

    @classmethod
    def from_config(cls, config) -> 'ResticBackend':
        return cls(
            password=config.repository_password,
            binary=config.restic_bin,
            exclude_marker=config.exclude_marker,
            extra_env=config.backend_env
        )

    def init(self, target: RepositoryTarget) -> OperationResult:
        returncode, output = self._stream(target, ['init'])
        if returncode == 0:
            return OperationResult(target, 'init', Outcome.SUCCESS, 'Repository initialized')
        if ALREADY_INITIALIZED.search(output):
            return OperationResult(target, 'init', Outcome.ALREADY_EXISTS, 'Repository already initialized')
        return OperationResult(target, 'init', Outcome.SOFT_FAILURE, _failure_message(returncode, output))

    def backup(self, target: RepositoryTarget, path: str) -> OperationResult:
        """
        Snapshot path into the target repository.

        Any non-zero exit, including restic's "incomplete snapshot" status,
        is reported as a fatal failure.
        """
        arguments = [
            'backup', path,
            '--exclude-if-present', self.exclude_marker,
            '--tag', target.id,
        ]
        returncode, output = self._stream(target, arguments)
        if returncode == 0:
            return OperationResult(target, 'backup', Outcome.SUCCESS, f'Backed up {path}')
        return OperationResult(target, 'backup', Outcome.FATAL_FAILURE, _failure_message(returncode, output))

    def list_snapshots(self, target: RepositoryTarget) -> OperationResult:
        returncode, stdout, stderr = self._capture(target, ['snapshots', '--json'])
        if returncode != 0:
            return OperationResult(target, 'snapshots', Outcome.SOFT_FAILURE, _failure_message(returncode, stderr))

        try:
            snapshots = parse_snapshots(stdout)
        except ValueError as e:
            return OperationResult(target, 'snapshots', Outcome.SOFT_FAILURE, f'Unreadable snapshot list: {e}')

        return OperationResult(
            target, 'snapshots', Outcome.SUCCESS,
            f'{len(snapshots)} snapshots', snapshots=snapshots
        )

    def forget(self, target: RepositoryTarget, policy: str) -> OperationResult:
        arguments = ['forget', '--prune'] + shlex.split(policy)
        return self._maintenance(target, 'forget', arguments, 'Retention policy applied')

    def check(self, target: RepositoryTarget) -> OperationResult:
        return self._maintenance(target, 'check', ['check'], 'Repository is consistent')

    def unlock(self, target: RepositoryTarget) -> OperationResult:
        return self._maintenance(target, 'unlock', ['unlock'], 'Repository unlocked')

    def _maintenance(self, target, operation, arguments, success_message) -> OperationResult:
        returncode, output = self._stream(target, arguments)
        if returncode == 0:
            return OperationResult(target, operation, Outcome.SUCCESS, success_message)
        return OperationResult(target, operation, Outcome.SOFT_FAILURE, _failure_message(returncode, output))

    def _environment(self, target: RepositoryTarget) -> Dict[str, str]:
        """Per-call environment carrying the repository address and credentials."""
        env = os.environ.copy()
        for name in COMPETING_PASSWORD_VARIABLES:
            env.pop(name, None)
        env.update(self.extra_env)
        env['RESTIC_REPOSITORY'] = target.uri
        env['RESTIC_PASSWORD'] = self.password
        return env

    def _stream(self, target: RepositoryTarget, arguments: List[str]) -> Tuple[int, str]:
        """
        Run restic and stream its combined output into the log.

        Returns:
            (exit code, combined output)
        """
        command = [self.binary] + arguments
        logger.debug(f"[{target.id}] $ {shlex.join(command)}")

        try:
            process = subprocess.Popen(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                env=self._environment(target)
            )
        except OSError as e:
            return 127, f"Cannot execute {self.binary}: {e}"

        lines = []
        try:
            for line in process.stdout:
                line = line.rstrip('\r\n')
                if line:
                    lines.append(line)
                    logger.info(f"[{target.id}] {line}")
            returncode = process.wait()
        except BaseException:
            # restic must not keep running (and holding its repository lock) past the run lock
            process.kill()
            process.wait()
            raise
        finally:
            process.stdout.close()

        return returncode, '\n'.join(lines)

    def _capture(self, target: RepositoryTarget, arguments: List[str]) -> Tuple[int, str, str]:
        command = [self.binary] + arguments
        logger.debug(f"[{target.id}] $ {shlex.join(command)}")

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                env=self._environment(target)
            )
        except OSError as e:
            return 127, '', f"Cannot execute {self.binary}: {e}"

        return result.returncode, result.stdout, result.stderr


def parse_snapshots(output: str) -> List[Snapshot]:
    """
    Parse the output of 'restic snapshots --json'.

    Raises:
        ValueError: If the output is not a JSON list of snapshots
    """
    data = json.loads(output or '[]')
    if not isinstance(data, list):
        raise ValueError('expected a JSON list')

    snapshots = []
    for item in data:
        if not isinstance(item, dict):
            raise ValueError(f'unexpected snapshot entry: {item!r}')
        snapshots.append(Snapshot(
            short_id=item.get('short_id') or item.get('id', '')[:8],
            time=item.get('time', ''),
            hostname=item.get('hostname', ''),
            paths=tuple(item.get('paths') or ()),
            tags=tuple(item.get('tags') or ()),
        ))
    return snapshots


def _failure_message(returncode: int, output: str) -> str:
    lines = [line for line in (output or '').splitlines() if line.strip()]
    detail = lines[-1].strip() if lines else 'no output'
    return f"exit code {returncode}: {detail}"
