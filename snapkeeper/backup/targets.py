"""
Repository targets.

Each backup source (a directory, or the synthetic "all databases" source)
is stored in its own repository under the configured prefix.
"""

import os
from dataclasses import dataclass
from typing import List, Union

from snapkeeper.config import Config, ConfigError


class TargetError(ConfigError):
    """Raised when the configured sources do not map to unique repositories."""
    pass


@dataclass(frozen=True)
class DirectorySource:
    path: str


@dataclass(frozen=True)
class DatabaseSource:
    """All databases of the configured server."""
    pass


BackupSource = Union[DirectorySource, DatabaseSource]


@dataclass(frozen=True)
class RepositoryTarget:
    """One independently addressed repository."""

    id: str
    uri: str
    source: BackupSource

    @property
    def is_database(self) -> bool:
        return isinstance(self.source, DatabaseSource)

    def __str__(self):
        return self.id


def repository_id(path: str) -> str:
    """Repository id of a directory: its base name ('root' for '/')."""
    name = os.path.basename(os.path.normpath(path))
    return name if name and name != os.sep else 'root'


def resolve_targets(config: Config) -> List[RepositoryTarget]:
    """
    Resolve the ordered list of repository targets.

    The database target comes first (when enabled), followed by one target
    per configured directory in configured order.

    Args:
        config: Loaded configuration

    Returns:
        List of RepositoryTarget

    Raises:
        TargetError: If two sources resolve to the same repository id
    """
    prefix = config.repository_prefix.rstrip('/')
    targets = []

    if config.database_backup:
        targets.append(RepositoryTarget(
            id=config.database_repository_name,
            uri=f"{prefix}/{config.database_repository_name}",
            source=DatabaseSource()
        ))

    for path in config.directories:
        # '.', '~/docs' and relative paths are named after the directory they point to
        path = os.path.abspath(os.path.expanduser(path))
        target_id = repository_id(path)
        targets.append(RepositoryTarget(
            id=target_id,
            uri=f"{prefix}/{target_id}",
            source=DirectorySource(path)
        ))

    seen = {}
    for target in targets:
        if target.id in seen:
            raise TargetError(
                f"Repository id '{target.id}' is used by both {_describe(seen[target.id])} "
                f"and {_describe(target)}"
            )
        seen[target.id] = target

    return targets


def _describe(target: RepositoryTarget) -> str:
    if target.is_database:
        return 'the database backup'
    return target.source.path
