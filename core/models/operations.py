"""
Reconciliation operation models.

An Operation is a directed, idempotent unit of work carrying the
precondition it was derived from so the executor can detect staleness.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from pydantic import BaseModel, Field, model_validator
import uuid


class OperationKind(Enum):
    """Kinds of work the executor can apply"""
    UPLOAD = "upload"
    DOWNLOAD = "download"
    DELETE_REMOTE = "delete_remote"
    DELETE_LOCAL = "delete_local"
    RENAME_REMOTE = "rename_remote"
    RENAME_LOCAL = "rename_local"


RENAME_KINDS = frozenset({OperationKind.RENAME_REMOTE, OperationKind.RENAME_LOCAL})


class Operation(BaseModel):
    """
    One reconciliation step for a single path (or a path pair for renames).

    Preconditions:
    - expected_local_hash: content hash the local file must have, None for absent
    - expected_remote_revision: revision the remote file must have, None for absent

    For renames ``old_path`` is the source and ``path`` the destination.
    ``remote_hash`` is the content hash expected at the destination after the
    operation (downloads and renames).
    """

    op_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: OperationKind
    path: str
    old_path: Optional[str] = None

    revision: Optional[str] = None
    remote_hash: Optional[str] = None
    expected_local_hash: Optional[str] = None
    expected_remote_revision: Optional[str] = None

    conflict: bool = False
    reason: str = ""
    created_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode='after')
    def validate_shape(self) -> 'Operation':
        if self.kind in RENAME_KINDS and not self.old_path:
            raise ValueError(f'{self.kind.value} requires old_path')
        if self.kind not in RENAME_KINDS and self.old_path is not None:
            raise ValueError(f'{self.kind.value} does not take old_path')
        if self.kind == OperationKind.DOWNLOAD and not self.remote_hash:
            raise ValueError('download requires remote_hash')
        return self

    @classmethod
    def upload(
        cls,
        path: str,
        local_hash: str,
        expected_remote_revision: Optional[str],
        **kwargs
    ) -> 'Operation':
        """Push local content whose hash is ``local_hash``"""
        return cls(
            kind=OperationKind.UPLOAD,
            path=path,
            expected_local_hash=local_hash,
            expected_remote_revision=expected_remote_revision,
            **kwargs
        )

    @classmethod
    def download(
        cls,
        path: str,
        revision: Optional[str],
        remote_hash: str,
        expected_local_hash: Optional[str],
        **kwargs
    ) -> 'Operation':
        """Materialize a remote revision (None for the latest one)"""
        return cls(
            kind=OperationKind.DOWNLOAD,
            path=path,
            revision=revision,
            remote_hash=remote_hash,
            expected_local_hash=expected_local_hash,
            **kwargs
        )

    @classmethod
    def delete_remote(cls, path: str, expected_remote_revision: str, **kwargs) -> 'Operation':
        return cls(
            kind=OperationKind.DELETE_REMOTE,
            path=path,
            expected_remote_revision=expected_remote_revision,
            **kwargs
        )

    @classmethod
    def delete_local(cls, path: str, expected_local_hash: Optional[str], **kwargs) -> 'Operation':
        return cls(
            kind=OperationKind.DELETE_LOCAL,
            path=path,
            expected_local_hash=expected_local_hash,
            **kwargs
        )

    @classmethod
    def rename_remote(
        cls,
        old_path: str,
        new_path: str,
        expected_remote_revision: str,
        content_hash: str,
        conflict: bool = False,
        **kwargs
    ) -> 'Operation':
        """Move a remote file; ``content_hash`` is what must arrive at new_path"""
        return cls(
            kind=OperationKind.RENAME_REMOTE,
            path=new_path,
            old_path=old_path,
            expected_remote_revision=expected_remote_revision,
            remote_hash=content_hash,
            expected_local_hash=None if conflict else content_hash,
            conflict=conflict,
            **kwargs
        )

    @classmethod
    def rename_local(cls, old_path: str, new_path: str, expected_local_hash: str, **kwargs) -> 'Operation':
        """Move a local file aside, used to preserve a losing conflict copy"""
        return cls(
            kind=OperationKind.RENAME_LOCAL,
            path=new_path,
            old_path=old_path,
            expected_local_hash=expected_local_hash,
            conflict=True,
            **kwargs
        )

    @property
    def paths(self) -> Tuple[str, ...]:
        """Every path this operation occupies while queued or in flight"""
        if self.old_path is not None:
            return (self.old_path, self.path)
        return (self.path,)

    @property
    def touches_remote(self) -> bool:
        return self.kind in (
            OperationKind.UPLOAD, OperationKind.DELETE_REMOTE, OperationKind.RENAME_REMOTE
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for journaling"""
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Operation':
        return cls.model_validate(data)

    def __str__(self) -> str:
        source = f"{self.old_path} -> " if self.old_path else ""
        return f"{self.kind.value.upper()}: {source}{self.path}"
