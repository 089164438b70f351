"""Snapshot naming and on-disk identity.

A snapshot file is named ``<kind>_<YYYYMMDD_HHMMSS><extension>``. The
timestamp is fixed-width and zero-padded, so within one kind the lexical
order of file names is the creation order.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple

from .utils import TIMESTAMP_FORMAT


PARTIAL_SUFFIX = ".partial"


class SnapshotKind(Enum):
    DATABASE = "database"
    VOLUME = "volume"
    CONFIG = "config"

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def pattern(self) -> "re.Pattern":
        return _PATTERNS[self]

    @property
    def glob(self) -> str:
        return f"{self.value}_*{self.extension}"


_EXTENSIONS = {
    SnapshotKind.DATABASE: ".sql.gz",
    SnapshotKind.VOLUME: ".tar.gz",
    SnapshotKind.CONFIG: ".backup",
}

_PATTERNS = {
    kind: re.compile(rf"^{kind.value}_(\d{{8}}_\d{{6}}){re.escape(ext)}$")
    for kind, ext in _EXTENSIONS.items()
}

# Capture order within a run
KIND_ORDER = (SnapshotKind.DATABASE, SnapshotKind.VOLUME, SnapshotKind.CONFIG)


def validate_timestamp(timestamp: str) -> str:
    """Return ``timestamp`` if it is a real ``YYYYMMDD_HHMMSS`` moment.

    Raises:
        ValueError: If the string is malformed or not a valid date/time
    """
    if not re.fullmatch(r"\d{8}_\d{6}", timestamp):
        raise ValueError(f"Timestamp must look like YYYYMMDD_HHMMSS: {timestamp!r}")
    datetime.strptime(timestamp, TIMESTAMP_FORMAT)
    return timestamp


def encode(kind: SnapshotKind, timestamp: str) -> str:
    """Build the file name of a snapshot."""
    return f"{kind.value}_{validate_timestamp(timestamp)}{kind.extension}"


def match(filename: str) -> Optional[Tuple[SnapshotKind, str]]:
    """Return ``(kind, timestamp)`` for a snapshot file name, or None if it is not one."""
    for kind in SnapshotKind:
        found = kind.pattern.match(filename)
        if found:
            try:
                return kind, validate_timestamp(found.group(1))
            except ValueError:
                return None
    return None


def parse(filename: str) -> Tuple[SnapshotKind, str]:
    """Strict counterpart of :func:`match`.

    Raises:
        ValueError: If ``filename`` is not a snapshot file name
    """
    result = match(filename)
    if result is None:
        raise ValueError(f"Not a snapshot file name: {filename!r}")
    return result


@dataclass(frozen=True)
class Snapshot:
    """A snapshot artifact residing in the backup directory."""

    kind: SnapshotKind
    timestamp: str
    path: Path

    @classmethod
    def from_path(cls, path: Path) -> "Snapshot":
        kind, timestamp = parse(path.name)
        return cls(kind=kind, timestamp=timestamp, path=path)

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.timestamp, TIMESTAMP_FORMAT)

    @property
    def size(self) -> int:
        return self.path.stat().st_size
