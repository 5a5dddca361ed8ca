"""
Synchronization state models.

Fingerprints of synchronized files, remote listing entries, the per-directory
state machine and the watched directory definition.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import SourceRules


class FileFingerprint(BaseModel):
    """
    Comparable summary of a file.

    The content hash decides equality; size and mtime only let a scan skip
    re-hashing. A missing revision means the file was never synchronized.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    size: int = Field(ge=0)
    mtime: float
    content_hash: str
    revision: Optional[str] = None

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Paths are relative POSIX paths inside the watched root"""
        if not v or v.startswith('/') or '\\' in v:
            raise ValueError(f'Fingerprint path must be relative POSIX: {v!r}')
        return v

    def matches_stat(self, size: int, mtime: float, tolerance: float = 0.001) -> bool:
        """Cheap pre-filter: unchanged size and mtime means no re-hash"""
        return self.size == size and abs(self.mtime - mtime) <= tolerance

    def with_revision(self, revision: Optional[str]) -> 'FileFingerprint':
        return self.model_copy(update={'revision': revision})

    def with_path(self, path: str) -> 'FileFingerprint':
        return self.model_copy(update={'path': path})


class RemoteEntry(BaseModel):
    """One file as reported by the remote listing"""
    model_config = ConfigDict(frozen=True)

    path: str
    revision: str
    content_hash: str
    size: int = 0
    modified_at: float = 0.0


class SyncState(Enum):
    """Lifecycle state of one watched directory"""
    UNAUTHORIZED = "unauthorized"
    CATCHING_UP = "catching_up"
    WATCHING = "watching"
    RECONCILING = "reconciling"
    ERROR_BACKOFF = "error_backoff"


ALLOWED_TRANSITIONS: Dict[SyncState, FrozenSet[SyncState]] = {
    SyncState.UNAUTHORIZED: frozenset({SyncState.CATCHING_UP}),
    SyncState.CATCHING_UP: frozenset({
        SyncState.WATCHING, SyncState.ERROR_BACKOFF, SyncState.UNAUTHORIZED
    }),
    SyncState.WATCHING: frozenset({
        SyncState.RECONCILING, SyncState.CATCHING_UP,
        SyncState.ERROR_BACKOFF, SyncState.UNAUTHORIZED
    }),
    SyncState.RECONCILING: frozenset({
        SyncState.WATCHING, SyncState.CATCHING_UP,
        SyncState.ERROR_BACKOFF, SyncState.UNAUTHORIZED
    }),
    SyncState.ERROR_BACKOFF: frozenset({SyncState.CATCHING_UP, SyncState.UNAUTHORIZED}),
}


def can_transition(current: SyncState, target: SyncState) -> bool:
    return current == target or target in ALLOWED_TRANSITIONS[current]


class AuthorizationState(Enum):
    UNKNOWN = "unknown"
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"


class WatchedDirectory(BaseModel):
    """A local root bound to a remote sherry directory"""
    model_config = ConfigDict(validate_assignment=True)

    id: str
    root: Path
    remote_id: str
    user_id: str
    source: SourceRules

    authorization: AuthorizationState = AuthorizationState.UNKNOWN
    last_synced_at: Optional[datetime] = None

    @field_validator('root')
    @classmethod
    def validate_root(cls, v: Path) -> Path:
        """Root is stored absolute; existence is checked by the supervisor"""
        return v.expanduser().absolute()

    def absolute(self, relative_path: str) -> Path:
        """Absolute local path for a relative POSIX path"""
        return self.root.joinpath(*relative_path.split('/'))

    def relative(self, absolute_path: Path) -> Optional[str]:
        """Relative POSIX path, or None when outside the root"""
        try:
            rel = Path(absolute_path).relative_to(self.root)
        except ValueError:
            return None
        rel_str = rel.as_posix()
        return None if rel_str in ('', '.') else rel_str

    def definition_key(self) -> tuple:
        """Fields that, when changed in configuration, require a restart"""
        return (
            str(self.root), self.remote_id, self.user_id,
            self.source.model_dump_json()
        )
