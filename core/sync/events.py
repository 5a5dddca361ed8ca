"""
File System Event Models.

Raw notifications as produced by the platform adapters, and the debounced
per-path intents consumed by the reconciler.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator


class RawEventKind(Enum):
    """Kinds of native notifications after normalization"""
    CREATED = "created"
    MODIFIED = "modified"
    REMOVED = "removed"
    RENAMED_FROM = "renamed_from"
    RENAMED_TO = "renamed_to"


class IntentKind(Enum):
    """Coalesced outcome for one path"""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    RENAME = "rename"


class RawEvent(BaseModel):
    """
    One normalized filesystem notification.

    Ephemeral: produced on the notification thread, consumed by the
    coalescer and discarded. The two halves of a rename share ``move_id``.
    """

    path: Path
    kind: RawEventKind
    directory_id: str
    timestamp: datetime = Field(default_factory=datetime.now)
    is_directory: bool = False
    move_id: Optional[int] = None

    @field_validator('path')
    @classmethod
    def validate_path(cls, v: Path) -> Path:
        """Ensure event path is absolute"""
        if not v.is_absolute():
            raise ValueError('Event path must be absolute')
        return v

    @classmethod
    def created(cls, path: Path, directory_id: str, **kwargs) -> 'RawEvent':
        return cls(path=path, kind=RawEventKind.CREATED, directory_id=directory_id, **kwargs)

    @classmethod
    def modified(cls, path: Path, directory_id: str, **kwargs) -> 'RawEvent':
        return cls(path=path, kind=RawEventKind.MODIFIED, directory_id=directory_id, **kwargs)

    @classmethod
    def removed(cls, path: Path, directory_id: str, **kwargs) -> 'RawEvent':
        return cls(path=path, kind=RawEventKind.REMOVED, directory_id=directory_id, **kwargs)

    @classmethod
    def moved(
        cls,
        old_path: Path,
        new_path: Path,
        directory_id: str,
        move_id: int,
        **kwargs
    ) -> tuple:
        """Create the renamed-from / renamed-to pair for one move"""
        return (
            cls(path=old_path, kind=RawEventKind.RENAMED_FROM,
                directory_id=directory_id, move_id=move_id, **kwargs),
            cls(path=new_path, kind=RawEventKind.RENAMED_TO,
                directory_id=directory_id, move_id=move_id, **kwargs),
        )

    def __str__(self) -> str:
        suffix = "/" if self.is_directory else ""
        return f"{self.kind.value.upper()}: {self.path}{suffix}"


class Intent(BaseModel):
    """
    Debounced change for one relative path.

    ``sequence`` is assigned by the intent queue and gives program order
    across producers. Valid only until the reconciler consumes it.
    """

    kind: IntentKind
    path: str
    old_path: Optional[str] = None
    directory_id: str = ""
    sequence: int = 0
    timestamp: datetime = Field(default_factory=datetime.now)
    content_hash: Optional[str] = None

    @model_validator(mode='after')
    def validate_rename(self) -> 'Intent':
        if self.kind == IntentKind.RENAME and not self.old_path:
            raise ValueError('Rename intent requires old_path')
        if self.kind != IntentKind.RENAME and self.old_path is not None:
            raise ValueError('Only rename intents carry old_path')
        return self

    @classmethod
    def create(cls, path: str, **kwargs) -> 'Intent':
        return cls(kind=IntentKind.CREATE, path=path, **kwargs)

    @classmethod
    def modify(cls, path: str, **kwargs) -> 'Intent':
        return cls(kind=IntentKind.MODIFY, path=path, **kwargs)

    @classmethod
    def delete(cls, path: str, **kwargs) -> 'Intent':
        return cls(kind=IntentKind.DELETE, path=path, **kwargs)

    @classmethod
    def rename(cls, old_path: str, new_path: str, **kwargs) -> 'Intent':
        return cls(kind=IntentKind.RENAME, path=new_path, old_path=old_path, **kwargs)

    @property
    def paths(self) -> tuple:
        if self.old_path is not None:
            return (self.old_path, self.path)
        return (self.path,)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "kind": self.kind.value,
            "path": self.path,
            "old_path": self.old_path,
            "directory_id": self.directory_id,
            "sequence": self.sequence,
            "timestamp": self.timestamp.isoformat(),
        }

    def __str__(self) -> str:
        old_part = f" (from {self.old_path})" if self.old_path else ""
        return f"{self.kind.value.upper()}: {self.path}{old_part} [#{self.sequence}]"
