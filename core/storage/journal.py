"""
Write-ahead journal of operations sent but not yet confirmed.

A marker is recorded before an operation touches the remote or the local
tree and cleared after its fingerprint commit. Markers found at startup are
replayed through the executor's precondition checks.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Dict, List

import aiofiles
from pydantic import ValidationError

from ..models.operations import Operation

logger = logging.getLogger(__name__)


class OperationJournal:
    """Durable set of in-flight operation markers for one directory"""

    def __init__(self, journal_dir: Path, directory_id: str):
        self.journal_dir = Path(journal_dir)
        self.directory_id = directory_id
        self.file_path = self.journal_dir / f"{directory_id}.json"
        self._entries: Dict[str, Operation] = {}
        self._write_lock = asyncio.Lock()
        self._load()

    def _load(self) -> None:
        if not self.file_path.exists():
            return

        try:
            with open(self.file_path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            for entry in raw.get('operations', []):
                operation = Operation.from_dict(entry)
                self._entries[operation.op_id] = operation
        except (OSError, json.JSONDecodeError, ValidationError, AttributeError) as e:
            # Catch-up re-derives every path anyway; only replay ordering is lost
            logger.warning(f"Discarding unreadable journal for {self.directory_id}: {e}")
            self._entries = {}

        if self._entries:
            logger.info(f"Journal for {self.directory_id} holds {len(self._entries)} unconfirmed operations")

    def pending(self) -> List[Operation]:
        """Unconfirmed operations in the order they were recorded"""
        return sorted(self._entries.values(), key=lambda op: op.created_at)

    def __contains__(self, op_id: str) -> bool:
        return op_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def record(self, operation: Operation) -> None:
        self._entries[operation.op_id] = operation
        await self._write()

    async def clear(self, op_id: str) -> None:
        if self._entries.pop(op_id, None) is not None:
            await self._write()

    async def _write(self) -> None:
        async with self._write_lock:
            await self._write_locked()

    async def _write_locked(self) -> None:
        payload = json.dumps({
            'directory_id': self.directory_id,
            'operations': [op.to_dict() for op in self._entries.values()]
        }, indent=2)

        self.journal_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self.file_path.with_suffix('.tmp')
        async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
            await f.write(payload)
            await f.flush()
        os.replace(temp_file, self.file_path)
