"""
Content hashing and local tree scanning.

Hashes are SHA-256 hex digests computed in fixed-size chunks. Scanning uses
os.scandir and reuses known hashes when size and mtime are unchanged.
"""

import hashlib
import logging
import os
import stat as stat_module
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..models.sync import FileFingerprint
from ..sync.errors import ConfigurationError, LocalIOError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192


def hash_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def hash_file(file_path: Path) -> str:
    """Hash a file synchronously; call through asyncio.to_thread on the loop"""
    hasher = hashlib.sha256()
    with open(file_path, 'rb') as f:
        while chunk := f.read(CHUNK_SIZE):
            hasher.update(chunk)
    return hasher.hexdigest()


def fingerprint_file(root: Path, relative_path: str) -> Optional[FileFingerprint]:
    """
    Stat and hash one file.

    Returns None when the path is missing, is not a regular file, or is a
    symlink. Permission problems raise LocalIOError.
    """
    file_path = root.joinpath(*relative_path.split('/'))
    try:
        stat = os.stat(file_path, follow_symlinks=False)
        if not _is_regular(stat):
            return None
        content_hash = hash_file(file_path)
        # Content may change while hashing; the later stat describes the hashed bytes best
        stat = os.stat(file_path, follow_symlinks=False)
    except FileNotFoundError:
        return None
    except (IsADirectoryError, NotADirectoryError):
        return None
    except OSError as e:
        raise LocalIOError(f"Cannot read {relative_path}: {e}", path=relative_path) from e

    return FileFingerprint(
        path=relative_path,
        size=stat.st_size,
        mtime=stat.st_mtime,
        content_hash=content_hash
    )


def read_file(root: Path, relative_path: str) -> Optional[tuple]:
    """Read content and fingerprint together, or None when absent"""
    file_path = root.joinpath(*relative_path.split('/'))
    try:
        stat = os.stat(file_path, follow_symlinks=False)
        if not _is_regular(stat):
            return None
        with open(file_path, 'rb') as f:
            content = f.read()
    except FileNotFoundError:
        return None
    except (IsADirectoryError, NotADirectoryError):
        return None
    except OSError as e:
        raise LocalIOError(f"Cannot read {relative_path}: {e}", path=relative_path) from e

    fingerprint = FileFingerprint(
        path=relative_path,
        size=len(content),
        mtime=stat.st_mtime,
        content_hash=hash_bytes(content)
    )
    return content, fingerprint


def _is_regular(stat_result: os.stat_result) -> bool:
    return stat_module.S_ISREG(stat_result.st_mode)


def scan_tree(
    root: Path,
    accepts: Callable[[str, int], bool],
    known: Optional[Dict[str, FileFingerprint]] = None
) -> Dict[str, FileFingerprint]:
    """
    Walk the root and fingerprint every accepted regular file.

    Args:
        root: Absolute root of the watched directory
        accepts: Predicate over (relative path, size)
        known: Last synced fingerprints; reused when size and mtime match

    Returns:
        Mapping of relative POSIX path to fingerprint (revision unset)
    """
    if not root.is_dir():
        raise ConfigurationError(f"Watched root does not exist: {root}")

    known = known or {}
    result: Dict[str, FileFingerprint] = {}
    start_time = time.perf_counter()
    rehashed = 0

    def scan_directory_recursive(dir_path: str, prefix: str) -> None:
        nonlocal rehashed
        try:
            with os.scandir(dir_path) as entries:
                for entry in entries:
                    relative_path = f"{prefix}{entry.name}"
                    try:
                        if entry.is_symlink():
                            continue

                        if entry.is_dir(follow_symlinks=False):
                            scan_directory_recursive(entry.path, f"{relative_path}/")
                            continue

                        if not entry.is_file(follow_symlinks=False):
                            continue

                        stat_result = entry.stat(follow_symlinks=False)
                        if not accepts(relative_path, stat_result.st_size):
                            continue

                        previous = known.get(relative_path)
                        if previous and previous.matches_stat(stat_result.st_size, stat_result.st_mtime):
                            result[relative_path] = previous.with_revision(None)
                            continue

                        fingerprint = fingerprint_file(root, relative_path)
                        if fingerprint is not None:
                            result[relative_path] = fingerprint
                            rehashed += 1

                    except FileNotFoundError:
                        # Removed while scanning
                        continue
                    except LocalIOError as e:
                        logger.warning(f"Skipping unreadable file {relative_path}: {e}")
                    except OSError as e:
                        logger.debug(f"Skipping entry {relative_path}: {e}")

        except PermissionError as e:
            logger.warning(f"Cannot scan directory {dir_path}: {e}")

    scan_directory_recursive(str(root), "")

    elapsed = time.perf_counter() - start_time
    logger.debug(f"Scanned {root}: {len(result)} files, {rehashed} hashed in {elapsed:.3f}s")
    return result


def list_files(root: Path, relative_dir: str) -> List[str]:
    """Relative paths of all regular files below a directory inside root"""
    files: List[str] = []
    start = root.joinpath(*relative_dir.split('/')) if relative_dir else root

    def walk(dir_path: str, prefix: str) -> None:
        try:
            with os.scandir(dir_path) as entries:
                for entry in entries:
                    relative_path = f"{prefix}{entry.name}"
                    if entry.is_symlink():
                        continue
                    if entry.is_dir(follow_symlinks=False):
                        walk(entry.path, f"{relative_path}/")
                    elif entry.is_file(follow_symlinks=False):
                        files.append(relative_path)
        except (FileNotFoundError, NotADirectoryError):
            return
        except PermissionError as e:
            logger.warning(f"Cannot list directory {dir_path}: {e}")

    walk(str(start), f"{relative_dir}/" if relative_dir else "")
    return files
