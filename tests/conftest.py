"""Shared fixtures for stackbackup tests."""

import io
import sys
import tarfile
from pathlib import Path

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stackbackup.config import Config
from stackbackup.errors import CommandTimeout
from stackbackup.runner import CommandResult
from stackbackup.snapshots import SnapshotKind, encode
from stackbackup.utils import NotificationManager


class FakeRunner:
    """Stands in for the container runtime.

    ``fail`` names steps (pg_dump, tar, psql) that exit non-zero, ``hang``
    names steps that time out and ``interrupt`` names steps that raise
    KeyboardInterrupt as if the run had been cancelled.
    """

    def __init__(self, dump=b"-- PostgreSQL database dump\nCREATE TABLE workflow_entity ();\n",
                 fail=(), hang=(), interrupt=()):
        self.dump = dump
        self.fail = set(fail)
        self.hang = set(hang)
        self.interrupt = set(interrupt)
        self.calls = []
        self.stdin_data = None

    @staticmethod
    def _step(args):
        for name in ("pg_dump", "psql", "tar"):
            if name in args:
                return name
        return None

    def _before(self, program, args, timeout):
        self.calls.append({"program": program, "args": list(args), "timeout": timeout})
        step = self._step(args)
        if step in self.interrupt:
            raise KeyboardInterrupt()
        if step in self.hang:
            raise CommandTimeout(" ".join([program] + list(args)), timeout or 0)
        return step

    def stream(self, program, args, sink, stdin=None, cwd=None, timeout=None):
        step = self._before(program, args, timeout)
        if step in self.fail:
            sink.write(b"-- partial")
            return CommandResult(returncode=1, stderr=f"{step}: connection refused")
        sink.write(self.dump)
        return CommandResult(returncode=0)

    def run(self, program, args, stdin=None, cwd=None, timeout=None):
        step = self._before(program, args, timeout)
        if stdin is not None:
            self.stdin_data = stdin.read()
        if step in self.fail:
            return CommandResult(returncode=2, stderr=f"{step}: error")
        if step == "tar" and "czf" in args:
            self._write_archive(args)
        return CommandResult(returncode=0)

    @staticmethod
    def _write_archive(args):
        mount = next(a for a in args if a.endswith(":/backup"))
        host_dir = Path(mount[: -len(":/backup")])
        target = args[args.index("czf") + 1][len("/backup/"):]
        payload = b'{"workflows": []}'
        with tarfile.open(host_dir / target, "w:gz") as tar:
            info = tarfile.TarInfo("./database.sqlite")
            info.size = len(payload)
            tar.addfile(info, io.BytesIO(payload))


def _merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


@pytest.fixture
def backup_dir(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def env_file(tmp_path):
    path = tmp_path / "n8n" / ".env"
    path.parent.mkdir()
    path.write_text("POSTGRES_USER=n8n\nPOSTGRES_DB=n8n\n")
    return path


@pytest.fixture
def write_config(tmp_path, backup_dir, env_file):
    """Write a YAML config file and return its path."""
    def _write(**sections):
        data = {
            "backup": {"destination": str(backup_dir), "retention": {"count": 7}},
            "config_file": {"path": str(env_file)},
            "notifications": {"console": False},
        }
        _merge(data, sections)
        path = tmp_path / "stackbackup.yaml"
        path.write_text(yaml.safe_dump(data))
        return path
    return _write


@pytest.fixture
def make_config(write_config):
    def _make(**sections):
        return Config(str(write_config(**sections)), environ={})
    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def notifier(config):
    return NotificationManager(config)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_snapshots():
    """Create empty snapshot files of one kind for the given timestamps."""
    def _make(directory, kind: SnapshotKind, timestamps):
        directory.mkdir(parents=True, exist_ok=True)
        paths = []
        for ts in timestamps:
            path = directory / encode(kind, ts)
            path.write_bytes(b"x")
            paths.append(path)
        return paths
    return _make


def _daily(count, start_day=1):
    """Timestamps at midnight on consecutive January 2024 days."""
    return [f"202401{day:02d}_000000" for day in range(start_day, start_day + count)]


@pytest.fixture
def daily():
    return _daily


@pytest.fixture
def make_runner():
    return FakeRunner
