"""
Backup module for snapkeeper.

This module handles the core backup functionality including:
- Repository target resolution
- Backend (restic) operations
- Database dumps with stream compression
- Retention policy enforcement
- Run orchestration
"""

from .targets import RepositoryTarget, DirectorySource, DatabaseSource, resolve_targets
from .backend import ResticBackend, OperationResult, Outcome, Snapshot
from .dumps import DumpProducer, DumpArtifact, DumpError
from .retention import RetentionManager
from .coordinator import RunCoordinator, RunSummary

__all__ = [
    'RepositoryTarget',
    'DirectorySource',
    'DatabaseSource',
    'resolve_targets',
    'ResticBackend',
    'OperationResult',
    'Outcome',
    'Snapshot',
    'DumpProducer',
    'DumpArtifact',
    'DumpError',
    'RetentionManager',
    'RunCoordinator',
    'RunSummary'
]
