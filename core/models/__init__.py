"""
Core data models for sherry-sync

Pydantic models for configuration, fingerprints and reconciliation operations.
"""

from .config import (
    AccessRights,
    ConflictPolicy,
    DaemonSettings,
    SherryConfig,
    SourceRules,
    WatcherConfig,
)
from .sync import (
    AuthorizationState,
    FileFingerprint,
    RemoteEntry,
    SyncState,
    WatchedDirectory,
)
from .operations import Operation, OperationKind

__all__ = [
    # Configuration
    "AccessRights",
    "ConflictPolicy",
    "DaemonSettings",
    "SherryConfig",
    "SourceRules",
    "WatcherConfig",

    # Synchronization state
    "AuthorizationState",
    "FileFingerprint",
    "RemoteEntry",
    "SyncState",
    "WatchedDirectory",

    # Operations
    "Operation",
    "OperationKind",
]
