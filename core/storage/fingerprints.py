"""
Durable per-directory fingerprint store.

Maps relative path to the fingerprint last confirmed on both sides. The
store is the sole source of truth for "was this path ever synchronized".
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiofiles

from ..models.sync import FileFingerprint
from ..sync.errors import CorruptStateError

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class FingerprintStore:
    """
    In-memory fingerprint map with atomic JSON persistence.

    Mutations happen on the event loop and never suspend, so a snapshot taken
    by persist() is always a consistent point-in-time copy. Read-decide-write
    sequences shared by the reconciler and the executor run under
    ``critical()``.
    """

    def __init__(self, hashes_dir: Path, directory_id: str, root: Optional[Path] = None):
        self.hashes_dir = Path(hashes_dir)
        self.directory_id = directory_id
        self.root = root
        self.file_path = self.hashes_dir / f"{directory_id}.json"

        self._fingerprints: Dict[str, FileFingerprint] = {}
        self._lock = asyncio.Lock()
        self._persist_lock = asyncio.Lock()
        self._generation = 0
        self._persisted_generation = 0

        self.last_synced_at: Optional[datetime] = None
        self.loaded = False

    def get(self, path: str) -> Optional[FileFingerprint]:
        return self._fingerprints.get(path)

    def put(self, path: str, fingerprint: FileFingerprint) -> None:
        if fingerprint.path != path:
            fingerprint = fingerprint.with_path(path)
        if fingerprint.revision is None:
            raise ValueError(f"Refusing to store unsynchronized fingerprint for {path}")
        self._fingerprints[path] = fingerprint
        self._generation += 1

    def remove(self, path: str) -> Optional[FileFingerprint]:
        removed = self._fingerprints.pop(path, None)
        if removed is not None:
            self._generation += 1
        return removed

    def snapshot_all(self) -> List[Tuple[str, FileFingerprint]]:
        return list(self._fingerprints.items())

    def as_dict(self) -> Dict[str, FileFingerprint]:
        return dict(self._fingerprints)

    def paths_under(self, relative_dir: str) -> List[str]:
        """Known paths strictly below a directory"""
        prefix = f"{relative_dir.rstrip('/')}/"
        return [path for path in self._fingerprints if path.startswith(prefix)]

    def __contains__(self, path: str) -> bool:
        return path in self._fingerprints

    def __len__(self) -> int:
        return len(self._fingerprints)

    @property
    def is_dirty(self) -> bool:
        return self._generation != self._persisted_generation

    @asynccontextmanager
    async def critical(self) -> AsyncIterator['FingerprintStore']:
        """Serialize read-then-decide-then-write sequences on this store"""
        async with self._lock:
            yield self

    def mark_synced(self, when: Optional[datetime] = None) -> None:
        self.last_synced_at = when or datetime.now()
        self._generation += 1

    def load(self) -> bool:
        """
        Load fingerprints from disk.

        Returns:
            True when state was loaded (or no file exists yet), False when the
            file was unreadable or corrupt and the store was reset to empty
        """
        self._fingerprints = {}
        self.last_synced_at = None
        self.loaded = True

        if not self.file_path.exists():
            logger.info(f"No fingerprint state for {self.directory_id}, starting empty")
            return True

        try:
            fingerprints, last_synced_at = self._read_state()
        except CorruptStateError as e:
            logger.warning(f"Fingerprint state for {self.directory_id} is corrupt, rebuilding: {e}")
            return False

        self._fingerprints = fingerprints
        self.last_synced_at = last_synced_at
        self._generation = self._persisted_generation = 0
        logger.info(f"Loaded {len(fingerprints)} fingerprints for {self.directory_id}")
        return True

    def _read_state(self) -> Tuple[Dict[str, FileFingerprint], Optional[datetime]]:
        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptStateError(f"Cannot read {self.file_path}: {e}") from e

        if not isinstance(data, dict) or data.get('version') != STORE_VERSION:
            raise CorruptStateError(f"Unsupported fingerprint state in {self.file_path}")

        fingerprints: Dict[str, FileFingerprint] = {}
        try:
            for path, entry in data.get('fingerprints', {}).items():
                fingerprint = FileFingerprint(path=path, **entry)
                if fingerprint.revision is None:
                    raise ValueError(f"missing revision for {path}")
                fingerprints[path] = fingerprint
            raw_synced = data.get('last_synced_at')
            last_synced_at = datetime.fromisoformat(raw_synced) if raw_synced else None
        except (TypeError, ValueError, AttributeError) as e:
            raise CorruptStateError(f"Invalid fingerprint entry in {self.file_path}: {e}") from e

        return fingerprints, last_synced_at

    def _serialize(self) -> Dict[str, Any]:
        return {
            'version': STORE_VERSION,
            'directory_id': self.directory_id,
            'root': str(self.root) if self.root else None,
            'last_synced_at': self.last_synced_at.isoformat() if self.last_synced_at else None,
            'fingerprints': {
                path: fingerprint.model_dump(exclude={'path'})
                for path, fingerprint in sorted(self._fingerprints.items())
            }
        }

    async def persist(self) -> None:
        """Write the current state atomically (temp file, then rename)"""
        async with self._persist_lock:
            # Snapshot taken without suspending: no mutation can interleave
            generation = self._generation
            payload = json.dumps(self._serialize(), indent=2)

            self.hashes_dir.mkdir(parents=True, exist_ok=True)
            temp_file = self.file_path.with_suffix('.tmp')
            async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                await f.write(payload)
                await f.flush()
            os.replace(temp_file, self.file_path)

            self._persisted_generation = max(self._persisted_generation, generation)
            logger.debug(f"Persisted {len(self._fingerprints)} fingerprints for {self.directory_id}")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "directory_id": self.directory_id,
            "files": len(self._fingerprints),
            "last_synced_at": self.last_synced_at.isoformat() if self.last_synced_at else None,
            "dirty": self.is_dirty,
            "file_path": str(self.file_path),
        }
