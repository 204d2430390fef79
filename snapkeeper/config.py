"""
Configuration for snapkeeper.

The configuration lives in a shell-compatible KEY=value file at a fixed
per-user path. It is read once per invocation into an immutable Config that
is handed to every component.
"""

import os
import shlex
import tempfile
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple


BASE_DIR = os.path.join(os.path.expanduser('~'), '.snapkeeper')
DEFAULT_CONFIG_PATH = os.path.join(BASE_DIR, 'config')

DEFAULT_RETENTION_POLICY = '--keep-daily 7 --keep-weekly 4 --keep-monthly 12'
DEFAULT_NOTIFY_TITLE = 'Backup on {hostname}'
DEFAULT_NOTIFY_START_MESSAGE = 'Backup started'
DEFAULT_NOTIFY_SUCCESS_MESSAGE = 'Backup finished successfully in {elapsed}'
DEFAULT_NOTIFY_FAILURE_MESSAGE = 'Backup failed: {error}'

COMPRESSION_MODES = ('gzip', 'bzip2', 'xz', 'none')
DATABASE_ENGINES = ('mysql', 'postgresql')

# Environment prefixes forwarded to the backend for remote transport credentials
BACKEND_ENV_PREFIXES = ('AWS_', 'B2_', 'AZURE_', 'GOOGLE_', 'OS_', 'RCLONE_', 'ST_')

TRUE_VALUES = ('1', 'true', 'yes', 'on')
FALSE_VALUES = ('0', 'false', 'no', 'off', '')


class ConfigError(Exception):
    """Raised when the configuration is missing, unreadable or invalid."""
    pass


@dataclass(frozen=True)
class Config:
    """Immutable settings for one invocation."""

    config_path: str = DEFAULT_CONFIG_PATH

    # Repositories
    repository_password: str = ''
    repository_prefix: str = ''
    retention_policy: str = DEFAULT_RETENTION_POLICY
    exclude_marker: str = '.nobackup'
    directories: Tuple[str, ...] = ()
    backend_env: Dict[str, str] = field(default_factory=dict)

    # Databases
    database_backup: bool = False
    database_engine: str = 'mysql'
    database_repository_name: str = 'databases'
    database_host: Optional[str] = None
    database_port: Optional[str] = None
    database_user: Optional[str] = None
    database_password: Optional[str] = None
    database_exclude: Tuple[str, ...] = ()
    compression: str = 'gzip'

    # Executables
    restic_bin: str = 'restic'
    mysql_bin: str = 'mysql'
    mysqldump_bin: str = 'mysqldump'
    psql_bin: str = 'psql'
    pg_dump_bin: str = 'pg_dump'

    # Notifications
    notify_enabled: bool = False
    pushover_api_key: str = ''
    pushover_user_key: str = ''
    notify_title: str = DEFAULT_NOTIFY_TITLE
    notify_start_message: str = DEFAULT_NOTIFY_START_MESSAGE
    notify_success_message: str = DEFAULT_NOTIFY_SUCCESS_MESSAGE
    notify_failure_message: str = DEFAULT_NOTIFY_FAILURE_MESSAGE

    # Local state
    logs_dir: str = os.path.join(BASE_DIR, 'logs')
    staging_dir: str = os.path.join(BASE_DIR, 'staging')
    lock_file: str = os.path.join(tempfile.gettempdir(), 'snapkeeper.lock')
    history_url: str = 'sqlite:///' + os.path.join(BASE_DIR, 'history.db')

    # Scheduling
    schedule: str = ''
    schedule_timezone: str = 'UTC'

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], config_path: str = DEFAULT_CONFIG_PATH) -> 'Config':
        """
        Build a Config from KEY=value settings.

        Args:
            values: Settings keyed by their configuration file names
            config_path: Path the settings were read from

        Returns:
            Config instance

        Raises:
            ConfigError: If a value cannot be interpreted
        """
        defaults = cls()

        def get(key, default):
            value = values.get(key)
            return default if value is None else value

        def get_optional(key):
            return values.get(key) or None

        return cls(
            config_path=config_path,
            repository_password=get('RESTIC_PASSWORD', ''),
            repository_prefix=get('REPOSITORY_PREFIX', '').rstrip('/'),
            retention_policy=get('RETENTION_POLICY', defaults.retention_policy),
            exclude_marker=get('EXCLUDE_MARKER', defaults.exclude_marker),
            directories=tuple(_split_list('BACKUP_DIRECTORIES', values.get('BACKUP_DIRECTORIES', ''))),
            backend_env={
                key: value for key, value in values.items()
                if key.startswith(BACKEND_ENV_PREFIXES)
            },
            database_backup=_parse_bool('DATABASE_BACKUP', values.get('DATABASE_BACKUP', '')),
            database_engine=get('DATABASE_ENGINE', defaults.database_engine).lower(),
            database_repository_name=get('DATABASE_REPOSITORY_NAME', defaults.database_repository_name),
            database_host=get_optional('DATABASE_HOST'),
            database_port=get_optional('DATABASE_PORT'),
            database_user=get_optional('DATABASE_USER'),
            database_password=get_optional('DATABASE_PASSWORD'),
            database_exclude=tuple(_split_list('DATABASE_EXCLUDE', values.get('DATABASE_EXCLUDE', ''))),
            compression=get('COMPRESSION', defaults.compression).lower(),
            restic_bin=get('RESTIC_BIN', defaults.restic_bin),
            mysql_bin=get('MYSQL_BIN', defaults.mysql_bin),
            mysqldump_bin=get('MYSQLDUMP_BIN', defaults.mysqldump_bin),
            psql_bin=get('PSQL_BIN', defaults.psql_bin),
            pg_dump_bin=get('PG_DUMP_BIN', defaults.pg_dump_bin),
            notify_enabled=_parse_bool('NOTIFY', values.get('NOTIFY', '')),
            pushover_api_key=get('PUSHOVER_API_KEY', ''),
            pushover_user_key=get('PUSHOVER_USER_KEY', ''),
            notify_title=get('NOTIFY_TITLE', defaults.notify_title),
            notify_start_message=get('NOTIFY_START_MESSAGE', defaults.notify_start_message),
            notify_success_message=get('NOTIFY_SUCCESS_MESSAGE', defaults.notify_success_message),
            notify_failure_message=get('NOTIFY_FAILURE_MESSAGE', defaults.notify_failure_message),
            logs_dir=os.path.expanduser(get('LOGS_DIR', defaults.logs_dir)),
            staging_dir=os.path.expanduser(get('STAGING_DIR', defaults.staging_dir)),
            lock_file=os.path.expanduser(get('LOCK_FILE', defaults.lock_file)),
            history_url=get('HISTORY_URL', defaults.history_url),
            schedule=get('SCHEDULE', ''),
            schedule_timezone=get('SCHEDULE_TIMEZONE', defaults.schedule_timezone),
        )

    def validate(self):
        """
        Check that the settings describe a usable setup.

        Runs before the run lock is taken so a broken configuration never
        touches any resource.

        Raises:
            ConfigError: On the first problem found
        """
        if not self.repository_password:
            raise ConfigError(
                f"RESTIC_PASSWORD is not set. Run 'snapkeeper config' or edit {self.config_path}"
            )
        if not self.repository_prefix:
            raise ConfigError("REPOSITORY_PREFIX is not set")
        if not self.directories and not self.database_backup:
            raise ConfigError("Nothing to back up: set BACKUP_DIRECTORIES or enable DATABASE_BACKUP")
        if self.compression not in COMPRESSION_MODES:
            raise ConfigError(
                f"Invalid COMPRESSION: {self.compression}. Valid options: {list(COMPRESSION_MODES)}"
            )
        if self.database_backup and self.database_engine not in DATABASE_ENGINES:
            raise ConfigError(
                f"Invalid DATABASE_ENGINE: {self.database_engine}. Valid options: {list(DATABASE_ENGINES)}"
            )
        if self.database_backup and not self.database_repository_name:
            raise ConfigError("DATABASE_REPOSITORY_NAME must not be empty")
        if self.notify_enabled and not (self.pushover_api_key and self.pushover_user_key):
            raise ConfigError("NOTIFY is enabled but PUSHOVER_API_KEY or PUSHOVER_USER_KEY is missing")
        try:
            shlex.split(self.retention_policy)
        except ValueError as e:
            raise ConfigError(f"Invalid RETENTION_POLICY: {e}")

    def describe(self) -> Dict[str, str]:
        """Settings safe to print at the start of a run (no secrets)."""
        return {
            'Repository prefix': self.repository_prefix,
            'Directories': ', '.join(self.directories) or '(none)',
            'Database backup': (
                f"enabled ({self.database_engine}, repository '{self.database_repository_name}')"
                if self.database_backup else 'disabled'
            ),
            'Retention policy': self.retention_policy,
            'Compression': self.compression,
            'Exclude marker': self.exclude_marker,
            'Notifications': 'enabled' if self.notify_enabled else 'disabled',
            'Logs': self.logs_dir,
        }


def _parse_bool(key: str, value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ConfigError(f"Invalid boolean for {key}: {value!r}")


def _split_list(key: str, value: str):
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ConfigError(f"Invalid list for {key}: {e}")


def parse_config_file(path: str) -> Dict[str, str]:
    """
    Parse a KEY=value file the way a POSIX shell would read assignments.

    Quoting and comments follow shell rules. Variable expansion and command
    substitution are not performed.

    Args:
        path: File to read

    Returns:
        Dict of key to value

    Raises:
        ConfigError: If the file cannot be read or a line is not an assignment
    """
    try:
        with open(path, 'r', encoding='utf-8') as f:
            lines = f.readlines()
    except OSError as e:
        raise ConfigError(f"Cannot read configuration file {path}: {e}")

    values = {}
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith('#'):
            continue
        if line.startswith('export '):
            line = line[len('export '):].lstrip()

        key, sep, rest = line.partition('=')
        key = key.strip()
        if not sep or not key.replace('_', '').isalnum() or key[0].isdigit():
            raise ConfigError(f"{path}:{number}: expected KEY=value, got {raw.strip()!r}")

        try:
            tokens = shlex.split(rest, comments=True)
        except ValueError as e:
            raise ConfigError(f"{path}:{number}: {e}")
        if len(tokens) > 1:
            raise ConfigError(f"{path}:{number}: value of {key} must be quoted")

        values[key] = tokens[0] if tokens else ''

    return values


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Config:
    """
    Load the configuration.

    Values from the file override the process environment, which overrides
    the built-in defaults. A missing file is not an error here; validate()
    reports what is missing.

    Args:
        path: Configuration file (default: ~/.snapkeeper/config)
        environ: Environment to merge (default: os.environ)

    Returns:
        Config instance
    """
    path = path or DEFAULT_CONFIG_PATH
    environ = os.environ if environ is None else environ

    values = dict(environ)
    if os.path.exists(path):
        values.update(parse_config_file(path))

    return Config.from_mapping(values, config_path=path)


def render_config_file(password: str, api_key: str = '', user_key: str = '') -> str:
    """
    Render the initial configuration file written by 'snapkeeper config'.

    Values are shell-quoted so the file can be sourced by a shell as well as
    read back by parse_config_file without any change to their content.
    """
    defaults = Config()
    lines = [
        '# snapkeeper configuration',
        f'RESTIC_PASSWORD={shlex.quote(password)}',
        f'PUSHOVER_API_KEY={shlex.quote(api_key)}',
        f'PUSHOVER_USER_KEY={shlex.quote(user_key)}',
        f"NOTIFY={'true' if api_key and user_key else 'false'}",
        '',
        '# REPOSITORY_PREFIX=s3:s3.amazonaws.com/my-bucket',
        '# BACKUP_DIRECTORIES="/etc /var/www"',
        f'# RETENTION_POLICY={shlex.quote(defaults.retention_policy)}',
        '# DATABASE_BACKUP=false',
        f'# DATABASE_ENGINE={defaults.database_engine}',
        f'# DATABASE_REPOSITORY_NAME={defaults.database_repository_name}',
        f'# COMPRESSION={defaults.compression}',
        f'# EXCLUDE_MARKER={defaults.exclude_marker}',
        '# SCHEDULE="0 3 * * *"',
        '',
    ]
    return '\n'.join(lines)


def write_config_file(path: str, password: str, api_key: str = '', user_key: str = ''):
    """
    Create the configuration file, refusing to overwrite an existing one.

    Raises:
        ConfigError: If the file already exists or cannot be written
    """
    if os.path.exists(path):
        raise ConfigError(f"Configuration already exists: {path}")

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, mode=0o700, exist_ok=True)

    content = render_config_file(password, api_key, user_key)
    try:
        # O_EXCL so a concurrent writer cannot be clobbered
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        raise ConfigError(f"Configuration already exists: {path}")
    except OSError as e:
        raise ConfigError(f"Cannot write configuration file {path}: {e}")

    with os.fdopen(fd, 'w', encoding='utf-8') as f:
        f.write(content)
