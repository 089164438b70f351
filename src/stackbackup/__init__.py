"""
stackbackup - snapshot and retention engine for a single-node container stack

Captures a PostgreSQL dump, a persistent volume archive and a configuration
file into a local backup directory and keeps the most recent snapshots of
each kind.
"""

__version__ = "0.1.0"

from .backup_engine import BackupEngine, RunReport, RunState
from .storage_manager import StorageManager
from .config import Config

__all__ = [
    "BackupEngine",
    "RunReport",
    "RunState",
    "StorageManager",
    "Config"
]
