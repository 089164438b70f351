"""Advisory lock on the backup directory."""

import errno
import os
from pathlib import Path
from typing import Optional

from .errors import LockConflict


LOCK_FILENAME = ".stackbackup.lock"


class BackupLock:
    """Cooperative lock file guarding a backup directory against concurrent runs.

    The lock file is created exclusively and holds the owner's PID. A lock
    left behind by a crashed run is not broken automatically: the conflict
    names the recorded PID so an operator can remove it.
    """

    def __init__(self, directory: Path):
        self.path = Path(directory) / LOCK_FILENAME
        self.acquired = False

    def acquire(self) -> None:
        """Take the lock.

        Raises:
            LockConflict: If the lock file already exists
        """
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except OSError as e:
            if e.errno != errno.EEXIST:
                raise
            raise LockConflict(str(self.path), self.holder_pid())
        try:
            os.write(fd, str(os.getpid()).encode('utf-8'))
        finally:
            os.close(fd)
        self.acquired = True

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        self.acquired = False

    def holder_pid(self) -> Optional[int]:
        """PID recorded in an existing lock file, if readable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def __enter__(self) -> "BackupLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
