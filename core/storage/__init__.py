"""
Storage package for sherry-sync.

Durable fingerprint state, the write-ahead operation journal, and content
hashing helpers.
"""

from .fingerprints import FingerprintStore
from .journal import OperationJournal
from .hashing import fingerprint_file, hash_bytes, hash_file, scan_tree

__all__ = [
    "FingerprintStore",
    "OperationJournal",
    "fingerprint_file",
    "hash_bytes",
    "hash_file",
    "scan_tree",
]
