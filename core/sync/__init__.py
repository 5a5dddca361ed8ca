"""
Directory Synchronization System.

Keeps local directory trees synchronized with a remote sherry server.

Key Components:
- DirectoryEventCollector: Filesystem notifications debounced into intents
- IntentQueue / OperationBacklog: Ordered hand-off between stages
- Reconciler: Per-directory state machine and three-way planning
- SyncExecutor: Idempotent, precondition-checked operation apply
- DirectorySupervisor: Lifecycle, backoff and authorization pauses
- SyncEngine: Multi-directory coordinator
"""

from .errors import (
    SyncError,
    TransientNetworkError,
    RetryExhaustedError,
    StalePreconditionError,
    ConflictError,
    AuthError,
    LocalIOError,
    CorruptStateError,
    ConfigurationError,
    TransportError,
)
from .events import RawEvent, RawEventKind, Intent, IntentKind
from .queue import IntentQueue, OperationBacklog
from .debouncer import IntentCoalescer
from .suppression import ExpectedWriteRegistry
from .filters import PathFilter
from .watcher import DirectoryEventCollector, NotificationSource, WatchdogNotificationSource
from .planner import plan_path, conflict_path
from .executor import RetryConfig, SyncExecutor
from .reconciler import Reconciler
from .supervisor import DirectorySupervisor
from .engine import SyncEngine

__all__ = [
    "SyncError",
    "TransientNetworkError",
    "RetryExhaustedError",
    "StalePreconditionError",
    "ConflictError",
    "AuthError",
    "LocalIOError",
    "CorruptStateError",
    "ConfigurationError",
    "TransportError",
    "RawEvent",
    "RawEventKind",
    "Intent",
    "IntentKind",
    "IntentQueue",
    "OperationBacklog",
    "IntentCoalescer",
    "ExpectedWriteRegistry",
    "PathFilter",
    "DirectoryEventCollector",
    "NotificationSource",
    "WatchdogNotificationSource",
    "plan_path",
    "conflict_path",
    "RetryConfig",
    "SyncExecutor",
    "Reconciler",
    "DirectorySupervisor",
    "SyncEngine",
]
