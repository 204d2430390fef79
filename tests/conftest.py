"""
Shared pytest fixtures for snapkeeper tests.

This module provides fixtures for:
- Configuration pointing every local path into a temporary directory
- A fake backend returning successful results
- Fake notifier and history store
- Executable stand-ins for the database dump tools and for hanging tools
- Click CLI runner
"""

import os
import stat
import time
import signal
import threading
import logging
import dataclasses
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner

from snapkeeper.config import Config
from snapkeeper.backup.backend import ResticBackend, OperationResult, Outcome
from snapkeeper.history import HistoryStore
from snapkeeper.utils.notifier import Notifier


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers installed by configure_logging() after each test."""
    yield
    logger = logging.getLogger('snapkeeper')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def make_config(tmp_path):
    """
    Factory for Config objects with all local state under tmp_path.

    Defaults: one directory (/etc/nginx), database backup disabled,
    retention '--keep-within 7d', history disabled.
    """
    def factory(**overrides):
        base = Config(
            config_path=str(tmp_path / 'config'),
            repository_password='correct horse battery staple',
            repository_prefix='s3:s3.example.com/backups',
            retention_policy='--keep-within 7d',
            directories=('/etc/nginx',),
            logs_dir=str(tmp_path / 'logs'),
            staging_dir=str(tmp_path / 'staging'),
            lock_file=str(tmp_path / 'run.lock'),
            history_url='',
        )
        return dataclasses.replace(base, **overrides)

    return factory


@pytest.fixture
def config(make_config):
    return make_config()


def _success(operation):
    def result(target, *args):
        return OperationResult(target, operation, Outcome.SUCCESS, f'{operation} ok')
    return result


@pytest.fixture
def fake_backend():
    """
    MagicMock backend whose operations all succeed.

    Tests override individual side_effects to inject failures.
    """
    backend = MagicMock(spec=ResticBackend)
    backend.init.side_effect = _success('init')
    backend.backup.side_effect = _success('backup')
    backend.list_snapshots.side_effect = _success('snapshots')
    backend.forget.side_effect = _success('forget')
    backend.check.side_effect = _success('check')
    backend.unlock.side_effect = _success('unlock')
    return backend


@pytest.fixture
def fake_notifier():
    return MagicMock(spec=Notifier)


@pytest.fixture
def history_store():
    """In-memory history database."""
    return HistoryStore('sqlite://')


@pytest.fixture
def tools_available(monkeypatch):
    """Pretend every required executable is installed."""
    monkeypatch.setattr('snapkeeper.backup.coordinator.shutil.which', lambda name: f'/usr/bin/{name}')


@pytest.fixture
def make_script(tmp_path):
    """
    Factory creating executable /bin/sh scripts that stand in for external tools.
    """
    bin_dir = tmp_path / 'bin'
    bin_dir.mkdir()

    def factory(name, body):
        path = bin_dir / name
        path.write_text('#!/bin/sh\n' + body + '\n')
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    return factory


@pytest.fixture
def mysql_tools(make_script):
    """
    Fake mysql/mysqldump pair.

    mysql lists: information_schema, shop, blog, mysql.
    mysqldump prints a small dump naming the database (its last argument);
    it fails for any database listed in $FAIL_DATABASE.
    """
    client = make_script('mysql', "printf 'information_schema\\nshop\\nblog\\nmysql\\n'")
    dump = make_script('mysqldump', '\n'.join([
        'for last; do :; done',
        'if [ "$last" = "$FAIL_DATABASE" ]; then',
        '  echo "mysqldump: Got error: 1044: Access denied for $last" >&2',
        '  exit 2',
        'fi',
        'echo "-- MySQL dump of $last"',
        'echo "CREATE TABLE t (id int);"',
    ]))
    return client, dump


@pytest.fixture
def runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def write_config(tmp_path):
    """
    Write a configuration file and return its path.

    Local paths default into tmp_path; keyword arguments add or override keys.
    """
    def factory(**values):
        settings = {
            'RESTIC_PASSWORD': "'secret'",
            'REPOSITORY_PREFIX': 's3:s3.example.com/backups',
            'BACKUP_DIRECTORIES': "'/etc/nginx'",
            'RETENTION_POLICY': "'--keep-within 7d'",
            'LOGS_DIR': str(tmp_path / 'logs'),
            'STAGING_DIR': str(tmp_path / 'staging'),
            'LOCK_FILE': str(tmp_path / 'run.lock'),
            'HISTORY_URL': "''",
        }
        settings.update(values)
        path = tmp_path / 'config'
        path.write_text(''.join(f'{key}={value}\n' for key, value in settings.items()))
        return str(path)

    return factory


@pytest.fixture
def clean_environment(monkeypatch):
    """Remove snapkeeper/restic settings the developer's shell may export."""
    for key in list(os.environ):
        if key.startswith(('RESTIC_', 'REPOSITORY_', 'BACKUP_', 'DATABASE_', 'NOTIFY', 'PUSHOVER_', 'SNAPKEEPER_')):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def hanging_tool(make_script, tmp_path):
    """
    Factory for a tool that records its pid, prints one line and then hangs.

    Returns (script path, pid file path). The pid is that of the hanging
    process itself (the script execs into sleep).
    """
    def factory(name):
        pid_file = tmp_path / f'{name}.pid'
        script = make_script(name, f'echo $$ > {pid_file}\necho "-- started"\nexec sleep 5')
        return script, pid_file

    return factory


@pytest.fixture
def wait_for_pid():
    """Return a function blocking until a pid file is written, returning the pid."""
    def wait(pid_file, timeout=5):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if pid_file.exists():
                content = pid_file.read_text().strip()
                if content:
                    return int(content)
            time.sleep(0.02)
        raise AssertionError(f'{pid_file} was never written')

    return wait


@pytest.fixture
def terminate_when_started(wait_for_pid):
    """
    Deliver SIGTERM to the test process once the tool behind pid_file runs.

    Returns the started thread; join() it after the interrupted call.
    """
    def start(pid_file):
        def deliver():
            wait_for_pid(pid_file)
            os.kill(os.getpid(), signal.SIGTERM)

        thread = threading.Thread(target=deliver, daemon=True)
        thread.start()
        return thread

    return start


def process_exists(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    return True


@pytest.fixture
def is_running():
    return process_exists
