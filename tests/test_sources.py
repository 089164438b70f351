import gzip
import os
import stat

import pytest

from stackbackup.errors import CaptureFailed, RestoreFailed, VerificationFailed
from stackbackup.snapshots import Snapshot, SnapshotKind
from stackbackup.sources import ConfigFileSource, DatabaseSource, VolumeSource, build_sources

TS = "20240108_030000"


@pytest.fixture(autouse=True)
def _backup_dir(backup_dir):
    backup_dir.mkdir()


def test_database_dump_is_streamed_through_gzip(config, notifier, runner, backup_dir):
    snapshot = DatabaseSource(config, notifier, runner).capture(backup_dir, TS, timeout=30)

    assert snapshot.path == backup_dir / "database_20240108_030000.sql.gz"
    assert gzip.decompress(snapshot.path.read_bytes()) == runner.dump
    assert runner.calls == [{
        "program": "docker",
        "args": ["exec", "n8n-postgres", "pg_dump", "-U", "n8n", "n8n"],
        "timeout": 30,
    }]
    assert not list(backup_dir.glob("*.partial"))


def test_failed_dump_leaves_partial_and_no_snapshot(config, notifier, backup_dir, make_runner):
    source = DatabaseSource(config, notifier, make_runner(fail={"pg_dump"}))

    with pytest.raises(CaptureFailed) as excinfo:
        source.capture(backup_dir, TS)

    assert excinfo.value.kind == "database"
    assert "connection refused" in excinfo.value.cause
    assert not (backup_dir / "database_20240108_030000.sql.gz").exists()
    assert (backup_dir / "database_20240108_030000.sql.gz.partial").exists()


def test_dump_timeout_is_a_capture_failure(config, notifier, backup_dir, make_runner):
    source = DatabaseSource(config, notifier, make_runner(hang={"pg_dump"}))

    with pytest.raises(CaptureFailed, match="timed out"):
        source.capture(backup_dir, TS, timeout=5)


def test_existing_snapshot_is_never_overwritten(config, notifier, runner, backup_dir):
    existing = backup_dir / "database_20240108_030000.sql.gz"
    existing.write_bytes(b"keep me")

    with pytest.raises(CaptureFailed, match="refusing to overwrite"):
        DatabaseSource(config, notifier, runner).capture(backup_dir, TS)

    assert existing.read_bytes() == b"keep me"
    assert runner.calls == []


def test_volume_is_archived_by_a_throwaway_helper(config, notifier, runner, backup_dir):
    snapshot = VolumeSource(config, notifier, runner).capture(backup_dir, TS)

    assert snapshot.path.name == "volume_20240108_030000.tar.gz"
    args = runner.calls[0]["args"]
    assert args[:2] == ["run", "--rm"]
    assert "n8n_n8n-data:/data:ro" in args
    assert f"{backup_dir.resolve()}:/backup" in args
    assert "alpine" in args
    assert VolumeSource(config, notifier, runner).verify(snapshot) == {"members": 1}


def test_failed_archive_raises(config, notifier, backup_dir, make_runner):
    with pytest.raises(CaptureFailed) as excinfo:
        VolumeSource(config, notifier, make_runner(fail={"tar"})).capture(backup_dir, TS)
    assert excinfo.value.kind == "volume"
    assert "status 2" in excinfo.value.cause


def test_archive_missing_after_success_raises(config, notifier, backup_dir, make_runner):
    class SilentRunner(make_runner):
        @staticmethod
        def _write_archive(args):
            pass

    with pytest.raises(CaptureFailed, match="did not produce"):
        VolumeSource(config, notifier, SilentRunner()).capture(backup_dir, TS)


def test_config_file_is_copied_verbatim(config, notifier, runner, backup_dir, env_file):
    os.chmod(env_file, 0o600)

    snapshot = ConfigFileSource(config, notifier, runner).capture(backup_dir, TS)

    assert snapshot.path.name == "config_20240108_030000.backup"
    assert snapshot.path.read_bytes() == env_file.read_bytes()
    assert stat.S_IMODE(snapshot.path.stat().st_mode) == 0o600
    assert runner.calls == []


def test_missing_config_file_raises(config, notifier, runner, backup_dir, env_file):
    env_file.unlink()
    with pytest.raises(CaptureFailed) as excinfo:
        ConfigFileSource(config, notifier, runner).capture(backup_dir, TS)
    assert excinfo.value.kind == "config"


def test_build_sources_follows_configuration(make_config, notifier, runner):
    assert [s.kind for s in build_sources(make_config(), notifier, runner)] == [
        SnapshotKind.DATABASE, SnapshotKind.VOLUME, SnapshotKind.CONFIG,
    ]
    only_db = make_config(volume={"enabled": False}, config_file={"path": None})
    assert [s.kind for s in build_sources(only_db, notifier, runner)] == [SnapshotKind.DATABASE]


def test_verify_detects_corrupt_dump(config, notifier, runner, backup_dir):
    path = backup_dir / "database_20240108_030000.sql.gz"
    path.write_bytes(gzip.compress(b"SELECT 1;\n" * 100)[:-12])

    with pytest.raises(VerificationFailed):
        DatabaseSource(config, notifier, runner).verify(Snapshot.from_path(path))


def test_verify_rejects_empty_dump(config, notifier, runner, backup_dir):
    path = backup_dir / "database_20240108_030000.sql.gz"
    path.write_bytes(gzip.compress(b""))

    with pytest.raises(VerificationFailed, match="empty"):
        DatabaseSource(config, notifier, runner).verify(Snapshot.from_path(path))


def test_verify_detects_corrupt_archive(config, notifier, runner, backup_dir):
    path = backup_dir / "volume_20240108_030000.tar.gz"
    path.write_bytes(b"definitely not gzip")

    with pytest.raises(VerificationFailed):
        VolumeSource(config, notifier, runner).verify(Snapshot.from_path(path))


def test_database_restore_streams_dump_into_psql(config, notifier, runner, backup_dir):
    snapshot = DatabaseSource(config, notifier, runner).capture(backup_dir, TS)

    DatabaseSource(config, notifier, runner).restore(snapshot)

    args = runner.calls[-1]["args"]
    assert args[:3] == ["exec", "-i", "n8n-postgres"]
    assert "psql" in args
    assert runner.stdin_data == runner.dump


def test_database_restore_failure(config, notifier, backup_dir, make_runner):
    path = backup_dir / "database_20240108_030000.sql.gz"
    path.write_bytes(gzip.compress(b"SELECT 1;"))

    with pytest.raises(RestoreFailed):
        DatabaseSource(config, notifier, make_runner(fail={"psql"})).restore(Snapshot.from_path(path))


def test_volume_restore_mounts_backup_read_only(config, notifier, runner, backup_dir):
    snapshot = VolumeSource(config, notifier, runner).capture(backup_dir, TS)

    VolumeSource(config, notifier, runner).restore(snapshot)

    args = runner.calls[-1]["args"]
    assert "n8n_n8n-data:/data" in args
    assert f"{backup_dir.resolve()}:/backup:ro" in args
    assert "xzf" in args


def test_config_restore_copies_back(config, notifier, runner, backup_dir, env_file):
    snapshot = ConfigFileSource(config, notifier, runner).capture(backup_dir, TS)
    env_file.write_text("CHANGED=1\n")

    ConfigFileSource(config, notifier, runner).restore(snapshot)

    assert env_file.read_text() == "POSTGRES_USER=n8n\nPOSTGRES_DB=n8n\n"


def test_truncated_dump_fails_the_restore(config, notifier, runner, backup_dir):
    path = backup_dir / "database_20240108_030000.sql.gz"
    path.write_bytes(gzip.compress(b"INSERT INTO workflow_entity VALUES (1);\n" * 5000)[:-64])

    with pytest.raises(RestoreFailed) as excinfo:
        DatabaseSource(config, notifier, runner).restore(Snapshot.from_path(path))

    assert excinfo.value.kind == "database"
    assert runner.calls[-1]["args"][:3] == ["exec", "-i", "n8n-postgres"]
