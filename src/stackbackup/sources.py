"""Snapshot sources: the services whose state is captured on each run."""

import gzip
import os
import shutil
import tarfile
import zlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import CaptureFailed, CommandTimeout, RestoreFailed, VerificationFailed
from .runner import CHUNK_SIZE, CommandResult, CommandRunner
from .snapshots import PARTIAL_SUFFIX, Snapshot, SnapshotKind, encode
from .utils import NotificationManager, is_command_available


class SnapshotSource(ABC):
    """Abstract base class for one kind of snapshot artifact."""

    def __init__(self, config, notifier: NotificationManager, runner: CommandRunner):
        self.config = config
        self.notifier = notifier
        self.runner = runner

    @property
    @abstractmethod
    def kind(self) -> SnapshotKind:
        """Kind of artifact this source produces."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable name of what is being captured."""

    @abstractmethod
    def capture(self, directory: Path, timestamp: str,
                timeout: Optional[float] = None) -> Snapshot:
        """Write a new snapshot into ``directory``.

        Raises:
            CaptureFailed: If the snapshot could not be produced
        """

    @abstractmethod
    def restore(self, snapshot: Snapshot, timeout: Optional[float] = None) -> None:
        """Load ``snapshot`` back into the live service.

        Raises:
            RestoreFailed: If the service rejected the snapshot
        """

    @abstractmethod
    def verify(self, snapshot: Snapshot) -> Dict[str, Any]:
        """Check that ``snapshot`` is readable and complete.

        Raises:
            VerificationFailed: If the artifact is corrupt
        """

    @property
    def runtime(self) -> str:
        return self.config.runtime_command

    def is_available(self) -> bool:
        """Check if the container runtime needed by this source is installed."""
        return is_command_available(self.runtime)

    def _target_paths(self, directory: Path, timestamp: str):
        """Final and in-progress paths for a new snapshot.

        Raises:
            CaptureFailed: If either name is already taken
        """
        final = Path(directory) / encode(self.kind, timestamp)
        partial = final.with_name(final.name + PARTIAL_SUFFIX)
        for path in (final, partial):
            if path.exists():
                raise CaptureFailed(self.kind.value, f"refusing to overwrite existing file {path}")
        return final, partial

    def _commit(self, partial: Path, final: Path) -> Snapshot:
        """Move a completed artifact to its final name."""
        if final.exists():
            raise CaptureFailed(self.kind.value, f"refusing to overwrite existing file {final}")
        try:
            os.replace(partial, final)
        except OSError as e:
            raise CaptureFailed(self.kind.value, f"could not finalize {final.name}: {e}")
        return Snapshot.from_path(final)

    def _check(self, result: CommandResult, step: str) -> None:
        if not result.ok:
            detail = result.stderr.strip() or "no error output"
            raise CaptureFailed(self.kind.value, f"{step} exited with status {result.returncode}: {detail}")


class DatabaseSource(SnapshotSource):
    """PostgreSQL database dumped with pg_dump inside its container."""

    @property
    def kind(self) -> SnapshotKind:
        return SnapshotKind.DATABASE

    @property
    def container(self) -> str:
        return self.config.get('database.container')

    @property
    def database(self) -> str:
        return self.config.get('database.name')

    @property
    def user(self) -> str:
        return self.config.get('database.user')

    @property
    def description(self) -> str:
        return f"PostgreSQL database '{self.database}' in container '{self.container}'"

    def capture(self, directory: Path, timestamp: str,
                timeout: Optional[float] = None) -> Snapshot:
        final, partial = self._target_paths(directory, timestamp)
        args = ["exec", self.container, "pg_dump", "-U", self.user, self.database]

        try:
            with open(partial, 'xb') as raw:
                with gzip.GzipFile(filename='', mode='wb', fileobj=raw) as compressed:
                    result = self.runner.stream(self.runtime, args, sink=compressed, timeout=timeout)
        except CommandTimeout as e:
            raise CaptureFailed(self.kind.value, str(e))
        except OSError as e:
            raise CaptureFailed(self.kind.value, f"writing compressed dump failed: {e}")

        self._check(result, "pg_dump")
        return self._commit(partial, final)

    def restore(self, snapshot: Snapshot, timeout: Optional[float] = None) -> None:
        args = ["exec", "-i", self.container, "psql", "-v", "ON_ERROR_STOP=1",
                "-U", self.user, "-d", self.database]
        try:
            with gzip.open(snapshot.path, 'rb') as dump:
                result = self.runner.run(self.runtime, args, stdin=dump, timeout=timeout)
        except (CommandTimeout, OSError, EOFError, zlib.error) as e:
            raise RestoreFailed(self.kind.value, str(e))

        if not result.ok:
            raise RestoreFailed(self.kind.value,
                                f"psql exited with status {result.returncode}: {result.stderr.strip()}")

    def verify(self, snapshot: Snapshot) -> Dict[str, Any]:
        uncompressed = 0
        try:
            with gzip.open(snapshot.path, 'rb') as dump:
                for chunk in iter(lambda: dump.read(CHUNK_SIZE), b""):
                    uncompressed += len(chunk)
        except (OSError, EOFError, zlib.error) as e:
            raise VerificationFailed(str(snapshot.path), f"corrupt gzip stream: {e}")

        if uncompressed == 0:
            raise VerificationFailed(str(snapshot.path), "dump is empty")
        return {"uncompressed_size": uncompressed}


class VolumeSource(SnapshotSource):
    """Named persistent volume archived by a throwaway helper container."""

    @property
    def kind(self) -> SnapshotKind:
        return SnapshotKind.VOLUME

    @property
    def volume(self) -> str:
        return self.config.get('volume.name')

    @property
    def helper_image(self) -> str:
        return self.config.get('volume.helper_image', 'alpine')

    @property
    def description(self) -> str:
        return f"volume '{self.volume}'"

    def capture(self, directory: Path, timestamp: str,
                timeout: Optional[float] = None) -> Snapshot:
        directory = Path(directory).resolve()
        final, partial = self._target_paths(directory, timestamp)

        # Volume read-only, backup directory read-write; the container is removed on exit
        args = [
            "run", "--rm",
            "-v", f"{self.volume}:/data:ro",
            "-v", f"{directory}:/backup",
            self.helper_image,
            "tar", "czf", f"/backup/{partial.name}", "-C", "/data", ".",
        ]
        try:
            result = self.runner.run(self.runtime, args, timeout=timeout)
        except (CommandTimeout, OSError) as e:
            raise CaptureFailed(self.kind.value, str(e))

        self._check(result, "tar")
        if not partial.exists():
            raise CaptureFailed(self.kind.value, f"helper container did not produce {partial.name}")
        return self._commit(partial, final)

    def restore(self, snapshot: Snapshot, timeout: Optional[float] = None) -> None:
        directory = snapshot.path.parent.resolve()
        args = [
            "run", "--rm",
            "-v", f"{self.volume}:/data",
            "-v", f"{directory}:/backup:ro",
            self.helper_image,
            "tar", "xzf", f"/backup/{snapshot.name}", "-C", "/data",
        ]
        try:
            result = self.runner.run(self.runtime, args, timeout=timeout)
        except (CommandTimeout, OSError) as e:
            raise RestoreFailed(self.kind.value, str(e))

        if not result.ok:
            raise RestoreFailed(self.kind.value,
                                f"tar exited with status {result.returncode}: {result.stderr.strip()}")

    def verify(self, snapshot: Snapshot) -> Dict[str, Any]:
        try:
            with tarfile.open(snapshot.path, 'r:gz') as tar:
                members = tar.getmembers()
        except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
            raise VerificationFailed(str(snapshot.path), f"unreadable archive: {e}")
        return {"members": len(members)}


class ConfigFileSource(SnapshotSource):
    """Environment/configuration file copied verbatim."""

    @property
    def kind(self) -> SnapshotKind:
        return SnapshotKind.CONFIG

    @property
    def source_path(self) -> Path:
        return self.config.config_file_path

    @property
    def description(self) -> str:
        return f"configuration file {self.source_path}"

    def is_available(self) -> bool:
        return True

    def capture(self, directory: Path, timestamp: str,
                timeout: Optional[float] = None) -> Snapshot:
        final, partial = self._target_paths(directory, timestamp)
        try:
            with open(self.source_path, 'rb') as src, open(partial, 'xb') as dst:
                shutil.copyfileobj(src, dst, CHUNK_SIZE)
            # The file usually holds credentials; keep its permissions
            shutil.copymode(self.source_path, partial)
        except OSError as e:
            raise CaptureFailed(self.kind.value, f"copying {self.source_path} failed: {e}")
        return self._commit(partial, final)

    def restore(self, snapshot: Snapshot, timeout: Optional[float] = None) -> None:
        if self.source_path is None:
            raise RestoreFailed(self.kind.value, "config_file.path is not configured")
        try:
            shutil.copyfile(snapshot.path, self.source_path)
        except OSError as e:
            raise RestoreFailed(self.kind.value, str(e))

    def verify(self, snapshot: Snapshot) -> Dict[str, Any]:
        try:
            size = len(snapshot.path.read_bytes())
        except OSError as e:
            raise VerificationFailed(str(snapshot.path), str(e))
        return {"size": size}


def build_sources(config, notifier: NotificationManager,
                  runner: CommandRunner) -> List[SnapshotSource]:
    """Enabled sources in capture order (database, volume, config)."""
    sources: List[SnapshotSource] = []
    if config.database_enabled:
        sources.append(DatabaseSource(config, notifier, runner))
    if config.volume_enabled:
        sources.append(VolumeSource(config, notifier, runner))
    if config.config_file_path is not None:
        sources.append(ConfigFileSource(config, notifier, runner))
    return sources


def source_for_kind(config, notifier: NotificationManager, runner: CommandRunner,
                    kind: SnapshotKind) -> SnapshotSource:
    """Source handling ``kind``, whether or not it is enabled for capture."""
    classes = {
        SnapshotKind.DATABASE: DatabaseSource,
        SnapshotKind.VOLUME: VolumeSource,
        SnapshotKind.CONFIG: ConfigFileSource,
    }
    return classes[kind](config, notifier, runner)
