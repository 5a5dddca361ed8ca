"""
sherry-sync - keep local directories synchronized with a sherry server.

A background daemon that detects local changes, merges them with the remote
state and reconciles both sides with conflict preservation.
"""

__version__ = "1.0.0"

# Package imports for convenient access
from core.models.config import DaemonSettings, SherryConfig
from core.sync.engine import SyncEngine

__all__ = [
    "DaemonSettings",
    "SherryConfig",
    "SyncEngine",
    "__version__",
]
