"""
Synchronization error taxonomy.

Each error class maps to one recovery strategy: retry with backoff,
re-derive from fresh state, resolve as a conflict, pause for
re-authorization, re-queue for the next catch-up, or self-heal.
"""

from typing import Optional


class SyncError(Exception):
    """Base class for all synchronization errors"""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


class TransientNetworkError(SyncError):
    """Timeout, connection reset or server-side failure; safe to retry"""


class RetryExhaustedError(TransientNetworkError):
    """A transient failure persisted through every retry attempt"""

    def __init__(self, message: str, attempts: int, path: Optional[str] = None):
        super().__init__(message, path)
        self.attempts = attempts


class StalePreconditionError(SyncError):
    """The state an operation was derived from no longer holds"""


class ConflictError(SyncError):
    """The remote rejected an operation because it changed concurrently"""


class AuthError(SyncError):
    """Credentials are missing, invalid or expired"""


class LocalIOError(SyncError):
    """Local filesystem failure such as permission denied or disk full"""


class CorruptStateError(SyncError):
    """Persisted fingerprint or journal state could not be read"""


class ConfigurationError(SyncError):
    """Invalid configuration; fatal to the affected directory only"""


class TransportError(SyncError):
    """Non-retryable rejection from the remote that is not a conflict"""

    def __init__(self, message: str, status_code: Optional[int] = None, path: Optional[str] = None):
        super().__init__(message, path)
        self.status_code = status_code
