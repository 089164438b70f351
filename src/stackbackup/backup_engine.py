"""Backup engine: capture every source, report, then enforce retention."""

import json
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import BackupError, CaptureFailed, ConfigInvalid
from .lock import BackupLock
from .runner import CommandRunner
from .snapshots import Snapshot, validate_timestamp
from .sources import SnapshotSource, build_sources
from .storage_manager import RetentionResult, StorageManager
from .utils import NotificationManager, ensure_directory, format_size, generate_timestamp


class RunState(Enum):
    CAPTURING = "CAPTURING"
    REPORTING = "REPORTING"
    ENFORCING_RETENTION = "ENFORCING_RETENTION"
    DONE = "DONE"
    FAILED = "FAILED"


@dataclass
class CaptureResult:
    kind: str
    success: bool
    path: Optional[str] = None
    size: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "success": self.success,
            "path": self.path,
            "size": self.size,
            "size_human": format_size(self.size) if self.size is not None else None,
            "error": self.error,
        }


@dataclass
class RunReport:
    """Structured summary of one backup run."""

    timestamp: str
    destination: str
    state: RunState = RunState.CAPTURING
    captures: List[CaptureResult] = field(default_factory=list)
    retention: Dict[str, RetentionResult] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now().isoformat())
    finished_at: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    @property
    def deletion_errors(self) -> int:
        return sum(len(r.errors) for r in self.retention.values())

    def fail(self, error: Any) -> None:
        self.state = RunState.FAILED
        self.errors.append(str(error))
        self.finish()

    def finish(self) -> None:
        self.finished_at = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "destination": self.destination,
            "state": self.state.value,
            "success": self.succeeded,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "captures": {c.kind: c.to_dict() for c in self.captures},
            "retention": {kind: r.to_dict() for kind, r in self.retention.items()},
            "errors": list(self.errors),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


class BackupEngine:
    """Runs backups of the configured sources into the backup directory.

    A run captures the database, the volume and the optional config file in
    that order. The first capture failure aborts the run before retention so
    that good snapshots are never deleted while the new one is missing or
    corrupt. Only one run may hold the backup directory at a time.
    """

    def __init__(self, config, notification_manager: Optional[NotificationManager] = None,
                 runner: Optional[CommandRunner] = None,
                 storage_manager: Optional[StorageManager] = None,
                 sources: Optional[List[SnapshotSource]] = None):
        """Initialize backup engine.

        Args:
            config: Configuration object
            notification_manager: Notification manager instance
            runner: Command runner used for external tools
            storage_manager: Registry/retention helper for the backup directory
            sources: Snapshot sources to capture (defaults to the configured ones)
        """
        self.config = config
        self.notifier = notification_manager or NotificationManager(config)
        self.runner = runner or CommandRunner(self.notifier)
        self.storage = storage_manager or StorageManager(config, self.notifier)
        self._sources = sources
        self.last_report: Optional[RunReport] = None

    @property
    def backup_destination(self) -> Path:
        return Path(self.config.backup_destination)

    @property
    def sources(self) -> List[SnapshotSource]:
        if self._sources is None:
            self._sources = build_sources(self.config, self.notifier, self.runner)
        return self._sources

    def run(self, timestamp: Optional[str] = None) -> RunReport:
        """Execute one backup run.

        Args:
            timestamp: Run timestamp (YYYYMMDD_HHMMSS); defaults to now

        Returns:
            RunReport in state DONE

        Raises:
            ConfigInvalid: Before any I/O when the configuration is unusable
            LockConflict: If another run holds the backup directory
            CaptureFailed: If any source fails; retention is skipped
        """
        report = RunReport(timestamp=timestamp or generate_timestamp(),
                           destination=str(self.backup_destination))
        self.last_report = report

        try:
            self.config.validate()
            try:
                validate_timestamp(report.timestamp)
            except ValueError as e:
                raise ConfigInvalid('timestamp', str(e))
        except ConfigInvalid as e:
            report.fail(e)
            self.notifier.failure(str(e))
            raise

        ensure_directory(self.backup_destination)
        lock = BackupLock(self.backup_destination)
        try:
            lock.acquire()
        except BackupError as e:
            report.fail(e)
            self.notifier.failure(str(e))
            raise

        try:
            self.notifier.info(f"Creating backup: {report.timestamp}")
            snapshots = self._capture_all(report)

            report.state = RunState.REPORTING
            self._report_sizes(report, snapshots)

            report.state = RunState.ENFORCING_RETENTION
            report.retention = self.storage.cleanup_old_snapshots(self.config.retention_count)
            for result in report.retention.values():
                report.errors.extend(str(e) for e in result.errors)

            report.state = RunState.DONE
            report.finish()
            self.notifier.success(f"Backup completed successfully: {report.timestamp}")
            self.notifier.info(f"Backup location: {self.backup_destination}")
            return report

        except CaptureFailed as e:
            report.fail(e)
            self.notifier.failure(f"Backup failed: {e}")
            raise
        except KeyboardInterrupt:
            # Partial artifacts stay on disk for inspection
            report.fail("run cancelled")
            self.notifier.failure("Backup cancelled; retention skipped")
            raise
        finally:
            lock.release()

    def _capture_all(self, report: RunReport) -> List[Snapshot]:
        timeout = self.config.timeout_seconds
        deadline = time.monotonic() + timeout if timeout else None

        snapshots = []
        for source in self.sources:
            remaining = None
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    error = CaptureFailed(source.kind.value, f"run timeout of {timeout}s exceeded")
                    report.captures.append(CaptureResult(kind=source.kind.value, success=False,
                                                         error=error.cause))
                    raise error

            self.notifier.info(f"Backing up {source.description}...")
            try:
                snapshot = source.capture(self.backup_destination, report.timestamp, timeout=remaining)
            except CaptureFailed as e:
                report.captures.append(CaptureResult(kind=source.kind.value, success=False, error=e.cause))
                raise

            report.captures.append(CaptureResult(kind=source.kind.value, success=True,
                                                 path=str(snapshot.path)))
            snapshots.append(snapshot)
        return snapshots

    def _report_sizes(self, report: RunReport, snapshots: List[Snapshot]) -> None:
        sizes = {s.kind.value: s.size for s in snapshots}
        for capture in report.captures:
            capture.size = sizes.get(capture.kind)
            if capture.size is not None:
                self.notifier.success(f"{capture.kind.capitalize()} backup: {format_size(capture.size)}")
