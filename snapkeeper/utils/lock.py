"""
Single-instance guard for run-affecting commands.

Exclusivity comes from an advisory flock() held on the lock file, not from
the file's existence: a file left behind by a killed process carries no lock
and is simply reacquired.
"""

import os
import fcntl
import logging


logger = logging.getLogger(__name__)


class AlreadyRunningError(Exception):
    """Raised when another invocation holds the run lock."""
    pass


class RunLock:
    """Handle on an acquired lock file."""

    def __init__(self, path: str, fd: int):
        self.path = path
        self._fd = fd

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self):
        """Remove the lock file and drop the lock. Safe to call twice."""
        if not self.held:
            return

        # Unlink while still locked so no other process can lock the old inode
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove lock file {self.path}: {e}")

        os.close(self._fd)
        self._fd = None
        logger.debug(f"Released run lock: {self.path}")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()


def acquire_lock(path: str) -> RunLock:
    """
    Acquire the run lock without waiting.

    Args:
        path: Lock file path

    Returns:
        RunLock holding the lock

    Raises:
        AlreadyRunningError: If another process holds the lock
        OSError: If the lock file cannot be created
    """
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    while True:
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            holder = _read_pid(fd)
            os.close(fd)
            detail = f" (pid {holder})" if holder else ""
            raise AlreadyRunningError(f"Another snapkeeper run is already in progress{detail}. Lock file: {path}")
        except BaseException:
            os.close(fd)
            raise

        # The previous holder may have unlinked the file between our open() and
        # flock(); in that case we locked an orphaned inode and must retry.
        try:
            current = os.stat(path)
        except FileNotFoundError:
            os.close(fd)
            continue
        opened = os.fstat(fd)
        if (current.st_dev, current.st_ino) != (opened.st_dev, opened.st_ino):
            os.close(fd)
            continue

        os.ftruncate(fd, 0)
        os.write(fd, f"{os.getpid()}\n".encode())
        logger.debug(f"Acquired run lock: {path}")
        return RunLock(path, fd)


def _read_pid(fd: int) -> str:
    try:
        os.lseek(fd, 0, os.SEEK_SET)
        return os.read(fd, 32).decode(errors='replace').strip()
    except OSError:
        return ''
