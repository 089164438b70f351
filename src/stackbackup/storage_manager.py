"""Snapshot registry and retention enforcement for the backup directory."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import DeletionFailed
from .snapshots import KIND_ORDER, Snapshot, SnapshotKind, match
from .utils import NotificationManager, format_size, get_directory_size


@dataclass
class RetentionResult:
    """Outcome of enforcing the retain-count on one snapshot set."""

    kind: SnapshotKind
    keep: int
    kept: List[Path] = field(default_factory=list)
    deleted: List[Path] = field(default_factory=list)
    errors: List[DeletionFailed] = field(default_factory=list)
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "keep": self.keep,
            "kept": [p.name for p in self.kept],
            "deleted": [p.name for p in self.deleted],
            "errors": [{"path": e.path, "cause": e.cause} for e in self.errors],
            "dry_run": self.dry_run,
        }


class StorageManager:
    """Lists snapshots in the backup directory and applies the retention policy."""

    def __init__(self, config, notification_manager: Optional[NotificationManager] = None):
        """Initialize storage manager.

        Args:
            config: Configuration object
            notification_manager: Notification manager instance (optional)
        """
        self.config = config
        self.notifier = notification_manager or NotificationManager(config)
        self.backup_destination = Path(config.backup_destination)

    def iter_snapshots(self, kind: SnapshotKind) -> Iterator[Path]:
        """Yield snapshot paths of ``kind``, newest first.

        Ordering comes from the timestamp in the file name only; modification
        times are ignored because copying a backup changes them. A missing or
        empty directory yields nothing, and unrelated files are skipped.
        """
        if not self.backup_destination.is_dir():
            return
        names = [
            entry.name for entry in self.backup_destination.glob(kind.glob)
            if entry.is_file() and _is_kind(entry.name, kind)
        ]
        for name in sorted(names, reverse=True):
            yield self.backup_destination / name

    def list_snapshots(self, kind: SnapshotKind) -> List[Snapshot]:
        return [Snapshot.from_path(path) for path in self.iter_snapshots(kind)]

    def list_all(self, kinds: Optional[Iterable[SnapshotKind]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """Snapshot details grouped by kind, for display."""
        listing = {}
        for kind in kinds or KIND_ORDER:
            entries = []
            for snapshot in self.list_snapshots(kind):
                try:
                    size = snapshot.size
                except OSError:
                    # Deleted between listing and stat
                    continue
                entries.append({
                    "name": snapshot.name,
                    "kind": kind.value,
                    "timestamp": snapshot.timestamp,
                    "created_at": snapshot.created_at.isoformat(),
                    "file_path": str(snapshot.path),
                    "file_size": size,
                    "file_size_human": format_size(size),
                })
            listing[kind.value] = entries
        return listing

    def find_snapshot(self, name: str) -> Optional[Snapshot]:
        """Look up a snapshot by file name inside the backup directory."""
        found = match(Path(name).name)
        if found is None:
            self.notifier.error(f"Not a snapshot file name: {name}")
            return None
        path = self.backup_destination / Path(name).name
        if not path.is_file():
            self.notifier.error(f"Snapshot not found: {path}")
            return None
        return Snapshot(kind=found[0], timestamp=found[1], path=path)

    def enforce_retention(self, kind: SnapshotKind, keep: int, dry_run: bool = False) -> RetentionResult:
        """Keep the ``keep`` newest snapshots of ``kind`` and delete the rest.

        Deletion is best-effort: a file that cannot be removed is recorded as
        a :class:`DeletionFailed` and the remaining files are still processed.
        """
        if keep < 0:
            raise ValueError(f"keep must be >= 0, got {keep}")

        snapshots = list(self.iter_snapshots(kind))
        result = RetentionResult(kind=kind, keep=keep, kept=snapshots[:keep], dry_run=dry_run)

        for path in snapshots[keep:]:
            if dry_run:
                result.deleted.append(path)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                self.notifier.debug(f"Already removed: {path.name}")
                continue
            except OSError as e:
                error = DeletionFailed(str(path), str(e))
                result.errors.append(error)
                self.notifier.error(str(error))
                continue
            result.deleted.append(path)
            self.notifier.info(f"Deleted old {kind.value} snapshot: {path.name}")

        return result

    def cleanup_old_snapshots(self, keep: Optional[int] = None, dry_run: bool = False,
                              kinds: Optional[Iterable[SnapshotKind]] = None) -> Dict[str, RetentionResult]:
        """Apply the retention policy to every kind independently.

        Returns:
            Mapping of kind name to its RetentionResult
        """
        keep = self.config.retention_count if keep is None else keep
        self.notifier.info(f"Enforcing retention (keeping last {keep} per kind)...")

        results = {}
        for kind in kinds or KIND_ORDER:
            results[kind.value] = self.enforce_retention(kind, keep, dry_run=dry_run)

        deleted = sum(len(r.deleted) for r in results.values())
        errors = sum(len(r.errors) for r in results.values())
        if errors:
            self.notifier.warning(f"Retention finished with {errors} deletion error(s)")
        elif dry_run and deleted:
            self.notifier.info(f"Would delete {deleted} old snapshot(s)")
        elif deleted:
            self.notifier.success(f"Deleted {deleted} old snapshot(s)")
        else:
            self.notifier.info("No old snapshots to clean up")
        return results

    def get_storage_status(self) -> Dict[str, Any]:
        """Counts, sizes and age range of the snapshots on disk."""
        listing = self.list_all()
        kinds = {}
        total_size = 0
        for kind_name, entries in listing.items():
            size = sum(e["file_size"] for e in entries)
            total_size += size
            kinds[kind_name] = {
                "count": len(entries),
                "total_size": size,
                "total_size_human": format_size(size),
                "newest": entries[0]["created_at"] if entries else None,
                "oldest": entries[-1]["created_at"] if entries else None,
            }

        exists = self.backup_destination.is_dir()
        directory_size = get_directory_size(self.backup_destination) if exists else 0
        return {
            "destination": str(self.backup_destination),
            "exists": exists,
            "retention_count": self.config.retention_count,
            "snapshot_count": sum(k["count"] for k in kinds.values()),
            "total_snapshot_size": total_size,
            "total_snapshot_size_human": format_size(total_size),
            "directory_size": directory_size,
            "directory_size_human": format_size(directory_size),
            "kinds": kinds,
        }


def _is_kind(name: str, kind: SnapshotKind) -> bool:
    found = match(name)
    return found is not None and found[0] is kind
