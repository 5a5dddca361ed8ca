"""
Path acceptance rules for a watched directory.

Combines the daemon's own ignore list with the source rules configured for
the remote directory.
"""

from pathlib import PurePosixPath
from typing import Optional

from ..models.config import SourceRules

# Temporary files written by the executor before an atomic rename
TEMP_PREFIX = ".sherry-tmp-"


class PathFilter:
    """Decide whether a relative path takes part in synchronization"""

    IGNORED_NAMES = {
        '.DS_Store', 'Thumbs.db', 'desktop.ini', '.sherry'
    }

    IGNORED_SUFFIXES = ('.swp', '.swx', '~', '.part', '.crdownload')

    def __init__(self, source: Optional[SourceRules] = None):
        self.source = source

    def is_ignored(self, relative_path: str) -> bool:
        """Paths never synchronized regardless of source rules"""
        parts = PurePosixPath(relative_path).parts
        for part in parts:
            if part in self.IGNORED_NAMES or part.startswith(TEMP_PREFIX):
                return True
        name = parts[-1] if parts else relative_path
        return name.startswith('.~lock.') or name.endswith(self.IGNORED_SUFFIXES)

    def accepts_path(self, relative_path: str) -> bool:
        if not relative_path or self.is_ignored(relative_path):
            return False
        if self.source is not None and not self.source.accepts_name(relative_path):
            return False
        return True

    def accepts(self, relative_path: str, size: int) -> bool:
        """Full check used for existing files; deletions only need accepts_path"""
        if not self.accepts_path(relative_path):
            return False
        if self.source is not None and not self.source.accepts_size(size):
            return False
        return True
