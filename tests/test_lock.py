import os

import pytest

from stackbackup.errors import LockConflict
from stackbackup.lock import LOCK_FILENAME, BackupLock


def test_lock_file_holds_pid_and_is_removed_on_exit(tmp_path):
    with BackupLock(tmp_path) as lock:
        assert (tmp_path / LOCK_FILENAME).read_text() == str(os.getpid())
        assert lock.acquired
    assert not (tmp_path / LOCK_FILENAME).exists()


def test_second_lock_conflicts(tmp_path):
    with BackupLock(tmp_path):
        with pytest.raises(LockConflict) as excinfo:
            BackupLock(tmp_path).acquire()
    assert excinfo.value.holder_pid == os.getpid()


def test_stale_lock_is_not_broken(tmp_path):
    (tmp_path / LOCK_FILENAME).write_text("not-a-pid")

    lock = BackupLock(tmp_path)
    with pytest.raises(LockConflict) as excinfo:
        lock.acquire()

    assert excinfo.value.holder_pid is None
    # A failed acquire must not remove somebody else's lock
    lock.release()
    assert (tmp_path / LOCK_FILENAME).exists()


def test_lock_is_released_when_body_raises(tmp_path):
    with pytest.raises(RuntimeError):
        with BackupLock(tmp_path):
            raise RuntimeError("boom")
    assert not (tmp_path / LOCK_FILENAME).exists()
