"""
Sync Executor.

Applies reconciled operations against the remote (through the transport
client) and the local tree, and commits fingerprints only after an
operation is confirmed. Every operation checks its post-condition first so
re-applying an already applied operation is a no-op, then re-checks its
precondition before doing any work.
"""

import asyncio
import logging
import os
import random
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional

import aiofiles

from .errors import (
    AuthError,
    LocalIOError,
    RetryExhaustedError,
    StalePreconditionError,
    TransientNetworkError,
)
from .filters import TEMP_PREFIX
from .suppression import ExpectedWriteRegistry
from ..models.config import DaemonSettings
from ..models.operations import Operation, OperationKind
from ..models.sync import FileFingerprint, RemoteEntry, WatchedDirectory
from ..storage.fingerprints import FingerprintStore
from ..storage.hashing import fingerprint_file, hash_bytes, read_file
from ..storage.journal import OperationJournal
from ..transport.base import TransportClient

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Backoff for transport calls failing with TransientNetworkError"""
    max_attempts: int = 5
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True

    @classmethod
    def from_settings(cls, settings: DaemonSettings) -> 'RetryConfig':
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_delay=settings.retry_initial_delay_s,
            max_delay=settings.retry_max_delay_s
        )

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt + 1``, capped, plus up to 20% jitter"""
        delay = min(self.initial_delay * (self.backoff_factor ** attempt), self.max_delay)
        if self.jitter:
            delay += delay * 0.2 * random.random()
        return delay


class SyncExecutor:
    """
    Applies one Operation at a time per path for a watched directory.

    ``apply`` returns the committed fingerprint (None when the operation
    removed the path) or raises one of the sync errors.
    """

    def __init__(
        self,
        directory: WatchedDirectory,
        store: FingerprintStore,
        journal: OperationJournal,
        transport: TransportClient,
        registry: ExpectedWriteRegistry,
        retry: Optional[RetryConfig] = None,
        sleep: Callable[[float], Any] = asyncio.sleep
    ):
        self.directory = directory
        self.store = store
        self.journal = journal
        self.transport = transport
        self.registry = registry
        self.retry = retry or RetryConfig()
        self._sleep = sleep

        self._handlers = {
            OperationKind.UPLOAD: self._apply_upload,
            OperationKind.DOWNLOAD: self._apply_download,
            OperationKind.DELETE_REMOTE: self._apply_delete_remote,
            OperationKind.DELETE_LOCAL: self._apply_delete_local,
            OperationKind.RENAME_REMOTE: self._apply_rename_remote,
            OperationKind.RENAME_LOCAL: self._apply_rename_local,
        }

        # Metrics
        self.applied = 0
        self.already_applied = 0
        self.stale = 0
        self.retries = 0

    @property
    def remote_id(self) -> str:
        return self.directory.remote_id

    async def apply(self, operation: Operation) -> Optional[FileFingerprint]:
        """Apply an operation; idempotent with respect to its post-condition"""
        handler = self._handlers[operation.kind]
        logger.debug(f"Applying {operation} ({operation.reason})")
        try:
            result = await handler(operation)
        except StalePreconditionError:
            self.stale += 1
            raise
        self.applied += 1
        return result

    async def call_remote(self, description: str, fn: Callable, *args, **kwargs) -> Any:
        """
        Call a blocking transport method off the loop with retry and backoff.

        Only TransientNetworkError is retried. Auth and conflict errors
        propagate immediately.
        """
        last_error: Optional[TransientNetworkError] = None
        for attempt in range(self.retry.max_attempts):
            try:
                return await asyncio.to_thread(fn, *args, **kwargs)
            except AuthError:
                raise
            except TransientNetworkError as e:
                last_error = e
                if attempt + 1 >= self.retry.max_attempts:
                    break
                delay = self.retry.get_delay(attempt)
                self.retries += 1
                logger.warning(f"{description} failed (attempt {attempt + 1}/{self.retry.max_attempts}), "
                               f"retrying in {delay:.2f}s: {e}")
                await self._sleep(delay)

        raise RetryExhaustedError(
            f"{description} failed after {self.retry.max_attempts} attempts: {last_error}",
            attempts=self.retry.max_attempts
        ) from last_error

    async def stat_remote(self, path: str) -> Optional[RemoteEntry]:
        return await self.call_remote(
            f"stat {path}", self.transport.stat_remote, self.remote_id, path
        )

    async def _local(self, path: str) -> Optional[FileFingerprint]:
        return await asyncio.to_thread(fingerprint_file, self.directory.root, path)

    async def _commit(
        self,
        operation: Operation,
        fingerprint: Optional[FileFingerprint] = None,
        remove: Iterable[str] = ()
    ) -> Optional[FileFingerprint]:
        async with self.store.critical():
            for path in remove:
                self.store.remove(path)
            if fingerprint is not None:
                self.store.put(fingerprint.path, fingerprint)
            self.store.mark_synced()
        await self.store.persist()
        await self.journal.clear(operation.op_id)
        return fingerprint

    def _stale(self, operation: Operation, detail: str) -> StalePreconditionError:
        logger.info(f"Stale precondition for {operation}: {detail}")
        return StalePreconditionError(f"{operation}: {detail}", path=operation.path)

    async def _apply_upload(self, operation: Operation) -> Optional[FileFingerprint]:
        path = operation.path
        snapshot = await asyncio.to_thread(read_file, self.directory.root, path)
        local = snapshot[1] if snapshot else None
        remote = await self.stat_remote(path)

        # Post-condition: remote already holds the content
        if remote is not None and remote.content_hash == operation.expected_local_hash:
            self.already_applied += 1
            if local is None or local.content_hash != remote.content_hash:
                local = FileFingerprint(
                    path=path, size=remote.size, mtime=0.0, content_hash=remote.content_hash
                )
            return await self._commit(operation, local.with_revision(remote.revision))

        if local is None:
            raise self._stale(operation, "local file disappeared")
        if local.content_hash != operation.expected_local_hash:
            raise self._stale(operation, "local content changed")
        current_revision = remote.revision if remote else None
        if current_revision != operation.expected_remote_revision:
            raise self._stale(operation, f"remote revision is {current_revision}, "
                                         f"expected {operation.expected_remote_revision}")

        await self.journal.record(operation)
        revision = await self.call_remote(
            f"upload {path}", self.transport.upload,
            self.remote_id, path, snapshot[0], operation.expected_remote_revision
        )
        logger.info(f"Uploaded {path} ({local.size} bytes) as revision {revision}")
        return await self._commit(operation, local.with_revision(revision))

    async def _apply_download(self, operation: Operation) -> Optional[FileFingerprint]:
        path = operation.path
        revision = operation.revision
        if revision is None:
            entry = await self.stat_remote(path)
            if entry is None or entry.content_hash != operation.remote_hash:
                raise self._stale(operation, "remote content is no longer the expected one")
            revision = entry.revision

        local = await self._local(path)

        # Post-condition: local already holds the content
        if local is not None and local.content_hash == operation.remote_hash:
            self.already_applied += 1
            return await self._commit(operation, local.with_revision(revision))

        current_hash = local.content_hash if local else None
        if current_hash != operation.expected_local_hash:
            raise self._stale(operation, "local content changed")

        await self.journal.record(operation)
        content = await self.call_remote(
            f"download {path}", self.transport.download, self.remote_id, path, revision
        )
        if hash_bytes(content) != operation.remote_hash:
            raise self._stale(operation, "downloaded content does not match the expected hash")

        fingerprint = await self._materialize(operation, content)
        logger.info(f"Downloaded {path} ({fingerprint.size} bytes) at revision {revision}")
        return await self._commit(operation, fingerprint.with_revision(revision))

    async def _materialize(self, operation: Operation, content: bytes) -> FileFingerprint:
        """Write content to a temp sibling, then atomically rename over the target"""
        path = operation.path
        target = self.directory.absolute(path)
        temp_file = target.parent / f"{TEMP_PREFIX}{uuid.uuid4().hex[:12]}"

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(temp_file, 'wb') as f:
                await f.write(content)
                await f.flush()

            # Last check right before replacing: the user may have written meanwhile
            current = await self._local(path)
            current_hash = current.content_hash if current else None
            if current_hash not in (operation.expected_local_hash, operation.remote_hash):
                raise self._stale(operation, "local content changed during download")

            self.registry.expect_write(path, operation.remote_hash)
            os.replace(temp_file, target)
        except OSError as e:
            raise LocalIOError(f"Cannot write {path}: {e}", path=path) from e
        finally:
            if temp_file.exists():
                temp_file.unlink()

        fingerprint = await self._local(path)
        if fingerprint is None:
            raise LocalIOError(f"{path} vanished right after download", path=path)
        return fingerprint

    async def _apply_delete_remote(self, operation: Operation) -> Optional[FileFingerprint]:
        path = operation.path
        remote = await self.stat_remote(path)

        if remote is None:
            self.already_applied += 1
            return await self._commit(operation, remove=[path])

        if self.directory.absolute(path).exists():
            raise self._stale(operation, "file was recreated locally")
        if remote.revision != operation.expected_remote_revision:
            raise self._stale(operation, f"remote revision is {remote.revision}")

        await self.journal.record(operation)
        await self.call_remote(
            f"delete {path}", self.transport.delete_remote,
            self.remote_id, path, operation.expected_remote_revision
        )
        logger.info(f"Deleted remote {path}")
        return await self._commit(operation, remove=[path])

    async def _apply_delete_local(self, operation: Operation) -> Optional[FileFingerprint]:
        path = operation.path
        local = await self._local(path)

        if local is None:
            self.already_applied += 1
            return await self._commit(operation, remove=[path])

        if local.content_hash != operation.expected_local_hash:
            raise self._stale(operation, "local content changed")

        await self.journal.record(operation)
        self.registry.expect_removal(path)
        try:
            await asyncio.to_thread(os.remove, self.directory.absolute(path))
        except FileNotFoundError:
            pass
        except OSError as e:
            self.registry.discard(path)
            raise LocalIOError(f"Cannot delete {path}: {e}", path=path) from e

        logger.info(f"Deleted local {path}")
        return await self._commit(operation, remove=[path])

    async def _apply_rename_remote(self, operation: Operation) -> Optional[FileFingerprint]:
        old_path, new_path = operation.old_path, operation.path

        local = None
        if not operation.conflict:
            local = await self._local(new_path)

        destination = await self.stat_remote(new_path)
        if destination is not None and destination.content_hash == operation.remote_hash:
            self.already_applied += 1
            return await self._commit_rename(operation, local, destination.revision)

        source = await self.stat_remote(old_path)
        if source is None or source.revision != operation.expected_remote_revision:
            raise self._stale(operation, f"remote source {old_path} changed")
        if destination is not None:
            raise self._stale(operation, f"remote destination {new_path} is occupied")
        if not operation.conflict and (local is None or local.content_hash != operation.expected_local_hash):
            raise self._stale(operation, "local destination content changed")

        await self.journal.record(operation)
        revision = await self.call_remote(
            f"rename {old_path}", self.transport.rename_remote,
            self.remote_id, old_path, new_path, operation.expected_remote_revision
        )
        logger.info(f"Renamed remote {old_path} -> {new_path}")
        return await self._commit_rename(operation, local, revision)

    async def _commit_rename(
        self,
        operation: Operation,
        local: Optional[FileFingerprint],
        revision: str
    ) -> Optional[FileFingerprint]:
        if operation.conflict or local is None:
            # The preserved copy gets its fingerprint when it is downloaded
            return await self._commit(operation, remove=[operation.old_path])
        return await self._commit(
            operation, local.with_revision(revision), remove=[operation.old_path]
        )

    async def _apply_rename_local(self, operation: Operation) -> Optional[FileFingerprint]:
        old_path, new_path = operation.old_path, operation.path

        destination = await self._local(new_path)
        if destination is not None and destination.content_hash == operation.expected_local_hash:
            self.already_applied += 1
            return await self._commit(operation, remove=[old_path])

        source = await self._local(old_path)
        if source is None or source.content_hash != operation.expected_local_hash:
            raise self._stale(operation, f"local source {old_path} changed")
        if destination is not None:
            raise self._stale(operation, f"local destination {new_path} is occupied")

        await self.journal.record(operation)
        self.registry.expect_removal(old_path)
        self.registry.expect_write(new_path, operation.expected_local_hash)
        target = self.directory.absolute(new_path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(os.rename, self.directory.absolute(old_path), target)
        except OSError as e:
            self.registry.discard(old_path)
            self.registry.discard(new_path)
            raise LocalIOError(f"Cannot rename {old_path}: {e}", path=old_path) from e

        logger.info(f"Renamed local {old_path} -> {new_path}")
        return await self._commit(operation, remove=[old_path])

    def get_stats(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "already_applied": self.already_applied,
            "stale": self.stale,
            "retries": self.retries,
            "last_synced_at": self.store.last_synced_at.isoformat() if self.store.last_synced_at else None,
        }
