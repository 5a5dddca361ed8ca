"""
Three-way reconciliation planning.

Given the last synchronized fingerprint (base), the current local state and
the current remote state of one path, derive the operations that make both
sides converge. Conflict resolution is whole-file: the losing version is
preserved under a conflict-marked sibling path, never merged.
"""

import logging
from datetime import datetime
from pathlib import PurePosixPath
from typing import Callable, List, Optional

from ..models.config import ConflictPolicy
from ..models.operations import Operation
from ..models.sync import FileFingerprint, RemoteEntry

logger = logging.getLogger(__name__)

CONFLICT_TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

Occupied = Callable[[str], bool]


def conflict_path(
    path: str,
    side: str,
    when: Optional[datetime] = None,
    occupied: Optional[Occupied] = None
) -> str:
    """
    Sibling path holding the losing version of a conflicting file.

    ``notes/todo.txt`` becomes ``notes/todo (conflict remote 20240101-120000).txt``
    where ``side`` names whose content is preserved. When that name is
    occupied, a counter is appended: ``notes/todo (conflict remote 20240101-120000 2).txt``.
    """
    when = when or datetime.now()
    pure = PurePosixPath(path)
    stamp = when.strftime(CONFLICT_TIMESTAMP_FORMAT)
    parent = pure.parent.as_posix()

    counter = 1
    while True:
        label = stamp if counter == 1 else f"{stamp} {counter}"
        name = f"{pure.stem} (conflict {side} {label}){pure.suffix}"
        candidate = name if parent in ('', '.') else f"{parent}/{name}"
        if occupied is None or not occupied(candidate):
            return candidate
        counter += 1


def local_wins(
    local: FileFingerprint,
    remote: RemoteEntry,
    policy: ConflictPolicy
) -> bool:
    """Decide the conflict winner; ties under newest_wins go to the remote"""
    if policy == ConflictPolicy.LOCAL_WINS:
        return True
    if policy == ConflictPolicy.REMOTE_WINS:
        return False
    return local.mtime > remote.modified_at


def resolve_conflict(
    path: str,
    local: FileFingerprint,
    remote: RemoteEntry,
    policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS,
    read_only: bool = False,
    now: Optional[datetime] = None,
    occupied: Optional[Occupied] = None
) -> List[Operation]:
    """
    Operations resolving divergent local and remote content of one path.

    Local wins: the remote version is renamed aside remotely, the local file
    is uploaded, then the preserved remote copy is downloaded next to it.
    Remote wins: the local file is renamed aside, uploaded under its
    conflict name, and the remote version is downloaded in its place.
    Read-only sources always resolve to the remote side and keep the
    preserved local copy local.
    """
    if not read_only and local_wins(local, remote, policy):
        preserved = conflict_path(path, "remote", now, occupied)
        logger.info(f"Conflict on {path}: keeping local version, remote preserved as {preserved}")
        return [
            Operation.rename_remote(
                path, preserved,
                expected_remote_revision=remote.revision,
                content_hash=remote.content_hash,
                conflict=True,
                reason="conflict: remote copy preserved"
            ),
            Operation.upload(path, local.content_hash, None, conflict=True, reason="conflict: local wins"),
            Operation.download(
                preserved, None, remote.content_hash, None,
                conflict=True, reason="conflict: materialize preserved remote copy"
            ),
        ]

    preserved = conflict_path(path, "local", now, occupied)
    logger.info(f"Conflict on {path}: keeping remote version, local preserved as {preserved}")
    operations = [
        Operation.rename_local(path, preserved, local.content_hash, reason="conflict: local copy preserved"),
    ]
    if not read_only:
        operations.append(Operation.upload(
            preserved, local.content_hash, None, conflict=True, reason="conflict: publish preserved local copy"
        ))
    operations.append(Operation.download(
        path, remote.revision, remote.content_hash, None, conflict=True, reason="conflict: remote wins"
    ))
    return operations


def plan_path(
    path: str,
    base: Optional[FileFingerprint],
    local: Optional[FileFingerprint],
    remote: Optional[RemoteEntry],
    policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS,
    read_only: bool = False,
    now: Optional[datetime] = None,
    occupied: Optional[Occupied] = None
) -> List[Operation]:
    """
    Derive the operations converging one path.

    Args:
        path: Relative POSIX path
        base: Last synchronized fingerprint, None if never synchronized
        local: Current local fingerprint, None if absent
        remote: Current remote entry, None if absent
        policy: Conflict policy
        read_only: Never produce operations that modify the remote
        now: Timestamp used for conflict names
        occupied: Tells whether a conflict name is already in use

    Returns:
        Operations in the order they must be applied
    """
    if base is None:
        return _plan_without_base(path, local, remote, policy, read_only, now, occupied)

    local_changed = local is None or local.content_hash != base.content_hash
    remote_changed = remote is None or remote.revision != base.revision

    if not local_changed and not remote_changed:
        return []

    if local_changed and not remote_changed:
        if read_only:
            return []
        if local is None:
            return [Operation.delete_remote(path, base.revision, reason="deleted locally")]
        return [Operation.upload(path, local.content_hash, base.revision, reason="modified locally")]

    if remote_changed and not local_changed:
        if remote is None:
            return [Operation.delete_local(path, base.content_hash, reason="deleted remotely")]
        return [Operation.download(
            path, remote.revision, remote.content_hash, base.content_hash, reason="modified remotely"
        )]

    # Both sides changed since the last sync
    if local is None and remote is None:
        # Nothing to move; the no-op delete forgets the baseline
        return [Operation.delete_local(path, None, reason="deleted on both sides")]

    if local is None:
        return [Operation.download(
            path, remote.revision, remote.content_hash, None, reason="remote edit beats local delete"
        )]

    if remote is None:
        if read_only:
            return []
        return [Operation.upload(path, local.content_hash, None, reason="local edit beats remote delete")]

    if local.content_hash == remote.content_hash:
        # Same content on both sides; the download commits without transferring
        return [Operation.download(
            path, remote.revision, remote.content_hash, local.content_hash, reason="converged independently"
        )]

    return resolve_conflict(path, local, remote, policy, read_only, now, occupied)


def _plan_without_base(
    path: str,
    local: Optional[FileFingerprint],
    remote: Optional[RemoteEntry],
    policy: ConflictPolicy,
    read_only: bool,
    now: Optional[datetime],
    occupied: Optional[Occupied]
) -> List[Operation]:
    if local is None and remote is None:
        return []

    if remote is None:
        if read_only:
            return []
        return [Operation.upload(path, local.content_hash, None, reason="new local file")]

    if local is None:
        return [Operation.download(path, remote.revision, remote.content_hash, None, reason="new remote file")]

    if local.content_hash == remote.content_hash:
        return [Operation.download(
            path, remote.revision, remote.content_hash, local.content_hash, reason="adopt identical file"
        )]

    return resolve_conflict(path, local, remote, policy, read_only, now, occupied)
