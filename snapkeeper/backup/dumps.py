"""
Database dump production.

Supports:
- MySQLDumper: MySQL / MariaDB via mysql + mysqldump
- PostgresDumper: PostgreSQL via psql + pg_dump

Dumps are written into the staging directory, compressed while they are
produced, and removed again once the database repository has been backed up
(or as soon as anything fails).
"""

import os
import logging
import subprocess
import tempfile
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .compression import (
    compress_stream, generate_dump_filename, remove_quietly, CompressionError
)


logger = logging.getLogger(__name__)


class DumpError(Exception):
    """Raised when databases cannot be listed or dumped."""
    pass


@dataclass(frozen=True)
class DumpArtifact:
    database_name: str
    file_path: str
    created_at: datetime


class MySQLDumper:
    """
    Commands for MySQL / MariaDB servers.
    """

    SYSTEM_DATABASES = ('information_schema', 'performance_schema', 'mysql', 'sys')

    def __init__(
        self,
        client_bin: str = 'mysql',
        dump_bin: str = 'mysqldump',
        host: Optional[str] = None,
        port: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None
    ):
        self.client_bin = client_bin
        self.dump_bin = dump_bin
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def _connection_args(self) -> List[str]:
        args = []
        if self.host:
            args += ['--host', self.host]
        if self.port:
            args += ['--port', str(self.port)]
        if self.user:
            args += ['--user', self.user]
        return args

    def list_command(self) -> List[str]:
        return [self.client_bin] + self._connection_args() + ['-N', '-B', '-e', 'SHOW DATABASES']

    def dump_command(self, database_name: str) -> List[str]:
        return [self.dump_bin] + self._connection_args() + [
            '--single-transaction', '--routines', '--triggers', '--events',
            '--databases', database_name,
        ]

    def environment(self) -> Dict[str, str]:
        # Password travels through the child's environment, never argv
        env = os.environ.copy()
        if self.password:
            env['MYSQL_PWD'] = self.password
        return env

    def executables(self) -> List[str]:
        return [self.client_bin, self.dump_bin]


class PostgresDumper:
    """
    Commands for PostgreSQL servers.
    """

    SYSTEM_DATABASES = ('template0', 'template1')

    def __init__(
        self,
        client_bin: str = 'psql',
        dump_bin: str = 'pg_dump',
        host: Optional[str] = None,
        port: Optional[str] = None,
        user: Optional[str] = None,
        password: Optional[str] = None
    ):
        self.client_bin = client_bin
        self.dump_bin = dump_bin
        self.host = host
        self.port = port
        self.user = user
        self.password = password

    def _connection_args(self) -> List[str]:
        args = []
        if self.host:
            args += ['--host', self.host]
        if self.port:
            args += ['--port', str(self.port)]
        if self.user:
            args += ['--username', self.user]
        return args

    def list_command(self) -> List[str]:
        return [self.client_bin] + self._connection_args() + [
            '--no-password', '-At', '-d', 'postgres',
            '-c', 'SELECT datname FROM pg_database WHERE NOT datistemplate AND datallowconn ORDER BY datname',
        ]

    def dump_command(self, database_name: str) -> List[str]:
        return [self.dump_bin] + self._connection_args() + ['--no-password', '--create', database_name]

    def environment(self) -> Dict[str, str]:
        env = os.environ.copy()
        if self.password:
            env['PGPASSWORD'] = self.password
        return env

    def executables(self) -> List[str]:
        return [self.client_bin, self.dump_bin]


def create_dumper(config):
    """
    Factory function to create the dumper for the configured engine.

    Args:
        config: Loaded Config

    Returns:
        MySQLDumper or PostgresDumper instance

    Raises:
        ValueError: If the engine is unknown
    """
    connection = {
        'host': config.database_host,
        'port': config.database_port,
        'user': config.database_user,
        'password': config.database_password,
    }
    if config.database_engine == 'mysql':
        return MySQLDumper(config.mysql_bin, config.mysqldump_bin, **connection)
    elif config.database_engine == 'postgresql':
        return PostgresDumper(config.psql_bin, config.pg_dump_bin, **connection)
    else:
        raise ValueError(f"Invalid database engine: {config.database_engine}")


class DumpProducer:
    """
    Produces one compressed dump per database in the staging directory and
    keeps track of what it has staged until it is cleaned up.
    """

    def __init__(self, dumper, staging_dir: str, compression: str = 'gzip', exclude: Iterable[str] = ()):
        """
        Initialize dump producer.

        Args:
            dumper: MySQLDumper or PostgresDumper
            staging_dir: Directory receiving the dump files (exclusive to the current run)
            compression: Stream compression format
            exclude: Additional database names to skip
        """
        self.dumper = dumper
        self.staging_dir = staging_dir
        self.compression = compression
        self.exclude = set(exclude) | set(dumper.SYSTEM_DATABASES)
        self.staged: List[DumpArtifact] = []

    @classmethod
    def from_config(cls, config) -> 'DumpProducer':
        return cls(
            create_dumper(config),
            staging_dir=config.staging_dir,
            compression=config.compression,
            exclude=config.database_exclude
        )

    def executables(self) -> List[str]:
        return self.dumper.executables()

    def enumerate_databases(self) -> List[str]:
        """
        List the databases to dump.

        Raises:
            DumpError: If the database server cannot be queried
        """
        command = self.dumper.list_command()
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                env=self.dumper.environment()
            )
        except OSError as e:
            raise DumpError(f"Cannot execute {command[0]}: {e}")

        if result.returncode != 0:
            raise DumpError(
                f"Listing databases failed with exit code {result.returncode}: {result.stderr.strip()}"
            )

        names = [line.strip() for line in result.stdout.splitlines()]
        return [name for name in names if name and name not in self.exclude]

    def dump(self, database_name: str, destination_dir: str, timestamp: datetime) -> DumpArtifact:
        """
        Dump one database, compressing the output as it is produced.

        Args:
            database_name: Database to dump
            destination_dir: Directory for the dump file
            timestamp: Run timestamp embedded in the file name

        Returns:
            DumpArtifact for the written file

        Raises:
            DumpError: If the dump fails; no partial file is left behind
        """
        filename = generate_dump_filename(database_name, timestamp, self.compression)
        file_path = os.path.join(destination_dir, filename)
        command = self.dumper.dump_command(database_name)

        logger.info(f"Dumping database {database_name} to {filename}")

        # stderr goes to a file so a chatty dump tool cannot block on a full pipe
        with tempfile.TemporaryFile() as stderr_file:
            try:
                process = subprocess.Popen(
                    command,
                    stdout=subprocess.PIPE,
                    stderr=stderr_file,
                    env=self.dumper.environment()
                )
            except OSError as e:
                raise DumpError(f"Cannot execute {command[0]}: {e}")

            try:
                size = compress_stream(process.stdout, file_path, self.compression)
                returncode = process.wait()
            except CompressionError as e:
                process.kill()
                process.wait()
                raise DumpError(f"Dump of {database_name} failed: {e}")
            except BaseException:
                # Interrupted (SIGTERM, Ctrl+C): no dump process or partial file may outlive the run
                process.kill()
                process.wait()
                remove_quietly(file_path)
                raise
            finally:
                process.stdout.close()

            stderr_file.seek(0)
            stderr = stderr_file.read().decode(errors='replace').strip()

        if returncode != 0:
            remove_quietly(file_path)
            raise DumpError(f"Dump of {database_name} failed with exit code {returncode}: {stderr}")

        if stderr:
            logger.warning(f"{command[0]} ({database_name}): {stderr}")

        logger.info(f"Dumped {database_name} ({size / 1024 / 1024:.2f} MB)")
        return DumpArtifact(database_name, file_path, datetime.now())

    def produce_all(self, now: Optional[datetime] = None) -> List[DumpArtifact]:
        """
        Dump every database into the staging directory.

        A failure on any database removes all artifacts of this run before
        the error propagates.

        Args:
            now: Run timestamp (default: current time)

        Returns:
            List of DumpArtifact, in dump order

        Raises:
            DumpError: If listing or any dump fails
        """
        now = now or datetime.now()
        os.makedirs(self.staging_dir, mode=0o700, exist_ok=True)

        try:
            databases = self.enumerate_databases()
            if not databases:
                raise DumpError("No databases found to dump")

            logger.info(f"Dumping {len(databases)} databases: {', '.join(databases)}")
            for name in databases:
                self.staged.append(self.dump(name, self.staging_dir, now))
        except DumpError:
            self.cleanup()
            raise

        return list(self.staged)

    def cleanup(self, artifacts: Optional[List[DumpArtifact]] = None) -> int:
        """
        Delete staged artifacts.

        Args:
            artifacts: Artifacts to delete (default: everything staged by this producer)

        Returns:
            Number of files removed
        """
        if artifacts is None:
            artifacts = list(self.staged)

        removed = 0
        for artifact in artifacts:
            try:
                if remove_quietly(artifact.file_path):
                    removed += 1
            except OSError as e:
                logger.error(f"Failed to remove dump {artifact.file_path}: {e}")
            if artifact in self.staged:
                self.staged.remove(artifact)

        if removed:
            logger.info(f"Removed {removed} staged dump file(s)")
        return removed

    def purge_stale(self) -> List[str]:
        """
        Remove files left in the staging directory by an earlier run that
        did not finish. Only called while the run lock is held.

        Returns:
            Paths that were removed
        """
        if not os.path.isdir(self.staging_dir):
            return []

        removed = []
        for name in sorted(os.listdir(self.staging_dir)):
            path = os.path.join(self.staging_dir, name)
            if not os.path.isfile(path):
                continue
            try:
                os.remove(path)
            except OSError as e:
                logger.error(f"Failed to remove stale dump {path}: {e}")
                continue
            logger.warning(f"Removed stale dump from an unfinished run: {path}")
            removed.append(path)

        return removed
