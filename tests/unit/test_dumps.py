"""
Unit tests for database dumps (snapkeeper/backup/dumps.py).

Tests dump commands for each engine and DumpProducer against small shell
scripts standing in for the real client and dump tools.
"""

import gzip
import os
from datetime import datetime
from unittest.mock import patch

import pytest

from snapkeeper.backup.dumps import (
    DumpError,
    DumpProducer,
    MySQLDumper,
    PostgresDumper,
    create_dumper,
)


RUN_TIME = datetime(2024, 1, 15, 3, 7)


@pytest.fixture
def producer(mysql_tools, tmp_path):
    client, dump = mysql_tools
    return DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'), 'gzip')


class TestMySQLDumper:
    """Test MySQL command construction."""

    def test_list_command(self):
        dumper = MySQLDumper(host='db.internal', port='3307', user='backup')

        assert dumper.list_command() == [
            'mysql', '--host', 'db.internal', '--port', '3307', '--user', 'backup',
            '-N', '-B', '-e', 'SHOW DATABASES'
        ]

    def test_dump_command(self):
        dumper = MySQLDumper(user='backup')

        command = dumper.dump_command('shop')

        assert command[0] == 'mysqldump'
        assert '--single-transaction' in command
        assert command[-2:] == ['--databases', 'shop']

    def test_password_in_environment_only(self):
        """Test the password never appears on the command line."""
        dumper = MySQLDumper(user='backup', password='hunter2')

        assert 'hunter2' not in ' '.join(dumper.list_command() + dumper.dump_command('shop'))
        assert dumper.environment()['MYSQL_PWD'] == 'hunter2'

    def test_system_databases_skipped(self, producer):
        assert {'information_schema', 'performance_schema', 'mysql', 'sys'} <= producer.exclude


class TestPostgresDumper:
    """Test PostgreSQL command construction."""

    def test_list_command(self):
        dumper = PostgresDumper(host='db.internal', user='postgres')

        command = dumper.list_command()

        assert command[:5] == ['psql', '--host', 'db.internal', '--username', 'postgres']
        assert '--no-password' in command
        assert 'pg_database' in command[-1]

    def test_dump_command(self):
        dumper = PostgresDumper(dump_bin='/usr/lib/postgresql/16/bin/pg_dump', port='5433')

        assert dumper.dump_command('shop') == [
            '/usr/lib/postgresql/16/bin/pg_dump', '--port', '5433', '--no-password', '--create', 'shop'
        ]

    def test_password_in_environment(self):
        dumper = PostgresDumper(password='hunter2')

        assert dumper.environment()['PGPASSWORD'] == 'hunter2'

    def test_executables(self):
        assert PostgresDumper().executables() == ['psql', 'pg_dump']


class TestCreateDumper:
    """Test create_dumper factory."""

    def test_mysql(self, make_config):
        config = make_config(database_backup=True, database_engine='mysql', database_user='backup',
                             mysqldump_bin='/opt/mysqldump')

        dumper = create_dumper(config)

        assert isinstance(dumper, MySQLDumper)
        assert dumper.user == 'backup'
        assert dumper.dump_bin == '/opt/mysqldump'

    def test_postgresql(self, make_config):
        config = make_config(database_backup=True, database_engine='postgresql', database_password='pw')

        dumper = create_dumper(config)

        assert isinstance(dumper, PostgresDumper)
        assert dumper.password == 'pw'

    def test_invalid_engine(self, make_config):
        with pytest.raises(ValueError, match='Invalid database engine'):
            create_dumper(make_config(database_engine='oracle'))

    def test_producer_from_config(self, make_config):
        config = make_config(database_backup=True, compression='xz', database_exclude=('staging',))

        producer = DumpProducer.from_config(config)

        assert producer.staging_dir == config.staging_dir
        assert producer.compression == 'xz'
        assert 'staging' in producer.exclude


class TestDumpProducer:
    """Test DumpProducer against fake tools."""

    def test_enumerate_databases(self, producer):
        """Test system databases are filtered out."""
        assert producer.enumerate_databases() == ['shop', 'blog']

    def test_enumerate_with_exclusions(self, mysql_tools, tmp_path):
        client, dump = mysql_tools
        producer = DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'), exclude=['blog'])

        assert producer.enumerate_databases() == ['shop']

    def test_produce_all(self, producer, tmp_path):
        """Test one compressed dump per database, named after the run time."""
        artifacts = producer.produce_all(now=RUN_TIME)

        staging = tmp_path / 'staging'
        assert [a.database_name for a in artifacts] == ['shop', 'blog']
        assert sorted(os.listdir(staging)) == [
            'blog-2024-01-15T0307.sql.gz',
            'shop-2024-01-15T0307.sql.gz',
        ]
        with gzip.open(staging / 'shop-2024-01-15T0307.sql.gz') as f:
            assert f.read().decode().startswith('-- MySQL dump of shop')
        assert producer.staged == artifacts

    def test_staging_directory_is_private(self, producer, tmp_path):
        producer.produce_all(now=RUN_TIME)

        assert os.stat(tmp_path / 'staging').st_mode & 0o077 == 0

    def test_dump_failure_removes_all_artifacts(self, producer, tmp_path, monkeypatch):
        """Test a failure on the second database leaves no dump behind."""
        monkeypatch.setenv('FAIL_DATABASE', 'blog')

        with pytest.raises(DumpError, match='blog failed with exit code 2.*Access denied'):
            producer.produce_all(now=RUN_TIME)

        assert os.listdir(tmp_path / 'staging') == []
        assert producer.staged == []

    def test_list_failure(self, make_script, mysql_tools, tmp_path):
        _, dump = mysql_tools
        client = make_script('broken-mysql', "echo 'ERROR 2002: Cannot connect' >&2; exit 1")
        producer = DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'))

        with pytest.raises(DumpError, match='Listing databases failed with exit code 1: ERROR 2002'):
            producer.produce_all(now=RUN_TIME)

    def test_no_databases(self, make_script, mysql_tools, tmp_path):
        _, dump = mysql_tools
        client = make_script('empty-mysql', "printf 'information_schema\\nmysql\\n'")
        producer = DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'))

        with pytest.raises(DumpError, match='No databases found'):
            producer.produce_all(now=RUN_TIME)

    def test_missing_dump_tool(self, mysql_tools, tmp_path):
        client, _ = mysql_tools
        producer = DumpProducer(MySQLDumper(client, str(tmp_path / 'missing')), str(tmp_path / 'staging'))

        with pytest.raises(DumpError, match='Cannot execute'):
            producer.produce_all(now=RUN_TIME)

        assert os.listdir(tmp_path / 'staging') == []

    def test_dump_warnings_are_logged(self, make_script, mysql_tools, tmp_path, caplog):
        """Test stderr of a successful dump is reported as a warning."""
        client, _ = mysql_tools
        dump = make_script('chatty-mysqldump', "echo 'Warning: column statistics' >&2; echo '-- dump'")
        producer = DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'))

        producer.produce_all(now=RUN_TIME)

        assert 'Warning: column statistics' in caplog.text

    def test_cleanup_selected_artifacts(self, producer):
        artifacts = producer.produce_all(now=RUN_TIME)

        removed = producer.cleanup(artifacts[:1])

        assert removed == 1
        assert not os.path.exists(artifacts[0].file_path)
        assert os.path.exists(artifacts[1].file_path)
        assert producer.staged == artifacts[1:]

    def test_cleanup_everything(self, producer):
        artifacts = producer.produce_all(now=RUN_TIME)

        assert producer.cleanup() == 2
        assert not any(os.path.exists(a.file_path) for a in artifacts)
        assert producer.staged == []

    def test_purge_stale(self, producer, tmp_path):
        """Test leftovers from an unfinished run are removed."""
        staging = tmp_path / 'staging'
        staging.mkdir()
        (staging / 'shop-2024-01-14T0307.sql.gz').write_bytes(b'old')
        (staging / 'blog-2024-01-14T0307.sql.gz').write_bytes(b'old')

        removed = producer.purge_stale()

        assert sorted(os.path.basename(p) for p in removed) == [
            'blog-2024-01-14T0307.sql.gz',
            'shop-2024-01-14T0307.sql.gz',
        ]
        assert os.listdir(staging) == []

    def test_purge_stale_without_directory(self, producer):
        assert producer.purge_stale() == []

    def test_interrupted_dump_leaves_no_process_or_file(self, mysql_tools, hanging_tool, wait_for_pid,
                                                         is_running, tmp_path):
        """Test Ctrl+C mid-dump kills the dump tool and removes the partial file."""
        client, _ = mysql_tools
        dump, pid_file = hanging_tool('slow-mysqldump')
        producer = DumpProducer(MySQLDumper(client, dump), str(tmp_path / 'staging'), 'gzip')

        def interrupted_copy(source, out, length):
            out.write(source.readline())
            wait_for_pid(pid_file)
            raise KeyboardInterrupt

        with patch('snapkeeper.backup.compression.shutil.copyfileobj', side_effect=interrupted_copy):
            with pytest.raises(KeyboardInterrupt):
                producer.produce_all(now=RUN_TIME)

        assert not is_running(wait_for_pid(pid_file))
        assert os.listdir(tmp_path / 'staging') == []
