"""
sherry-sync core package

Change detection, reconciliation and transport for synchronized directories.
"""

__version__ = "1.0.0"

from .models import FileFingerprint, Operation, OperationKind, SyncState, WatchedDirectory
# sync before storage: storage modules import sync.errors
from .sync import SyncEngine, SyncError

__all__ = [
    "FileFingerprint",
    "Operation",
    "OperationKind",
    "SyncState",
    "WatchedDirectory",
    "SyncEngine",
    "SyncError",
]
