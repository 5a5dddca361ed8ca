"""
Configuration models for sherry-sync.

Handles the sherry configuration file (sources, watchers, webhooks) and the
daemon's runtime settings with environment variable support.
"""

from enum import Enum
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_API_URL = "http://localhost:3000"


class AccessRights(Enum):
    """Access a user holds on a remote sherry directory"""
    READ = "read"
    WRITE = "write"


class ConflictPolicy(Enum):
    """Which side wins when both local and remote changed the same file"""
    NEWEST_WINS = "newest_wins"
    LOCAL_WINS = "local_wins"
    REMOTE_WINS = "remote_wins"


class SourceRules(BaseModel):
    """Remote directory (source) definition and its file acceptance rules"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    id: str
    access: AccessRights = AccessRights.WRITE

    # Size limits in bytes
    max_file_size: int = Field(default=50 * 1024 * 1024, ge=0)
    max_dir_size: int = Field(default=1024 * 1024 * 1024, ge=0)

    # Structure rules
    allow_dir: bool = True
    allowed_file_names: List[str] = Field(default_factory=list)
    allowed_file_types: List[str] = Field(default_factory=list)

    @field_validator('access', mode='before')
    @classmethod
    def validate_access(cls, v):
        """Accept access names in any case"""
        if isinstance(v, str):
            return v.lower()
        return v

    @field_validator('allowed_file_types')
    @classmethod
    def validate_file_types(cls, v: List[str]) -> List[str]:
        """Normalize extensions to a leading dot, lowercase"""
        normalized = []
        for ext in v:
            ext = ext.strip().lower()
            if not ext:
                continue
            normalized.append(ext if ext.startswith('.') else f".{ext}")
        return normalized

    @property
    def is_read_only(self) -> bool:
        return self.access == AccessRights.READ

    def accepts_name(self, relative_path: str) -> bool:
        """Check structure, name and type rules for a relative POSIX path"""
        pure = PurePosixPath(relative_path)

        if not self.allow_dir and len(pure.parts) > 1:
            return False

        if self.allowed_file_names and not any(
            fnmatch(pure.name, pattern) for pattern in self.allowed_file_names
        ):
            return False

        if self.allowed_file_types and pure.suffix.lower() not in self.allowed_file_types:
            return False

        return True

    def accepts_size(self, size: int) -> bool:
        """Check file size against the source limit (0 disables the limit)"""
        return self.max_file_size == 0 or size <= self.max_file_size


class WatcherConfig(BaseModel):
    """Binding of a local directory to a source for one user"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    source: str
    local_path: Path
    user_id: str
    hashes_id: Optional[str] = None

    @field_validator('local_path')
    @classmethod
    def validate_local_path(cls, v: Path) -> Path:
        """Expand the user directory; existence is checked per directory at start"""
        return v.expanduser()

    @property
    def watcher_id(self) -> str:
        """Identifier of the watched directory and its fingerprint file"""
        if self.hashes_id:
            return self.hashes_id
        safe_path = str(self.local_path).strip('/').replace('/', '-').replace(' ', '_')
        return f"{self.source}-{safe_path}" if safe_path else self.source


class SherryConfig(BaseModel):
    """Contents of the daemon configuration file"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    api_url: str = DEFAULT_API_URL
    sources: Dict[str, SourceRules] = Field(default_factory=dict)
    watchers: List[WatcherConfig] = Field(default_factory=list)
    webhooks: List[str] = Field(default_factory=list)

    @field_validator('api_url')
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Validate API URL format"""
        if not v.startswith(('http://', 'https://')):
            raise ValueError('API URL must start with http:// or https://')
        return v.rstrip('/')

    @model_validator(mode='before')
    @classmethod
    def fill_source_ids(cls, data):
        """Allow source entries to omit their id; the mapping key is used"""
        if isinstance(data, dict) and isinstance(data.get('sources'), dict):
            sources = {}
            for key, value in data['sources'].items():
                if isinstance(value, dict) and 'id' not in value:
                    value = {**value, 'id': key}
                sources[key] = value
            data = {**data, 'sources': sources}
        return data

    @model_validator(mode='after')
    def validate_watchers(self) -> 'SherryConfig':
        """Every watcher must reference a known source and have a unique id"""
        seen = set()
        for watcher in self.watchers:
            if watcher.source not in self.sources:
                raise ValueError(f'Watcher references unknown source: {watcher.source}')
            if watcher.watcher_id in seen:
                raise ValueError(f'Duplicate watcher id: {watcher.watcher_id}')
            seen.add(watcher.watcher_id)
        return self

    def to_dict(self) -> Dict:
        """Convert to dictionary for JSON serialization"""
        return self.model_dump(mode='json')


class DaemonSettings(BaseSettings):
    """Runtime tunables of the daemon with SHERRY_ environment overrides"""
    model_config = SettingsConfigDict(
        env_prefix="SHERRY_",
        case_sensitive=False
    )

    config_dir: Path = Field(default_factory=lambda: Path.home() / ".sherry")

    # Event collection
    debounce_ms: int = Field(default=500, ge=50, le=10000)
    max_pending_paths: int = Field(default=10000, ge=10)
    max_queued_intents: int = Field(default=10000, ge=10)
    suppression_ttl_s: float = Field(default=5.0, gt=0.0)
    health_check_interval_s: float = Field(default=2.0, gt=0.0)
    use_polling: bool = False

    # Reconciliation
    max_concurrent_operations: int = Field(default=4, ge=1, le=32)
    conflict_policy: ConflictPolicy = ConflictPolicy.NEWEST_WINS
    # Listing interval while watching; 0 disables remote change detection between catch-ups
    remote_poll_interval_s: float = Field(default=30.0, ge=0.0)

    # Retry/backoff for transient network failures
    retry_max_attempts: int = Field(default=5, ge=1, le=20)
    retry_initial_delay_s: float = Field(default=1.0, ge=0.0)
    retry_max_delay_s: float = Field(default=30.0, ge=0.0)

    # Directory-level backoff after exhausted retries
    error_backoff_initial_s: float = Field(default=5.0, ge=0.0)
    error_backoff_max_s: float = Field(default=300.0, ge=0.0)
    auth_retry_interval_s: float = Field(default=60.0, ge=0.0)

    # Shutdown
    shutdown_timeout_s: float = Field(default=10.0, ge=0.0)

    # Network
    request_timeout_s: float = Field(default=30.0, gt=0.0)

    # Logging
    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    log_to_file: bool = True

    @field_validator('config_dir')
    @classmethod
    def validate_config_dir(cls, v: Path) -> Path:
        return v.expanduser()

    @property
    def config_file(self) -> Path:
        return self.config_dir / "config.json"

    @property
    def auth_file(self) -> Path:
        return self.config_dir / "auth.json"

    @property
    def hashes_dir(self) -> Path:
        return self.config_dir / "hashes"

    @property
    def journal_dir(self) -> Path:
        return self.config_dir / "journal"

    @property
    def logs_dir(self) -> Path:
        return self.config_dir / "logs"

    @property
    def status_file(self) -> Path:
        return self.config_dir / "status.json"
