"""
File-backed authorization.

Refresh credentials live in ``<config_dir>/auth.json`` as
``{"records": {tag: {email, nickname, refresh_token}}}``; the tag is the
user id a watcher is configured with. Access tokens are only kept in memory.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Optional

from pydantic import ValidationError

from .base import AuthorizationProvider, Credentials, Session
from ..sync.errors import AuthError, ConfigurationError, TransportError

logger = logging.getLogger(__name__)

AUTH_FILE = "auth.json"


def read_auth_records(config_dir: Path) -> Dict[str, Credentials]:
    """Load every stored credential; an absent file means none"""
    auth_file = Path(config_dir) / AUTH_FILE
    if not auth_file.exists():
        return {}
    try:
        with open(auth_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return {
            tag: Credentials(**record)
            for tag, record in data.get("records", {}).items()
        }
    except (OSError, json.JSONDecodeError, AttributeError, TypeError, ValidationError) as e:
        raise ConfigurationError(f"Cannot read {auth_file}: {e}") from e


def write_auth_records(config_dir: Path, records: Dict[str, Credentials]) -> None:
    """Write credentials atomically with owner-only permissions"""
    config_dir = Path(config_dir)
    config_dir.mkdir(parents=True, exist_ok=True)
    auth_file = config_dir / AUTH_FILE
    temp_file = auth_file.with_suffix('.tmp')

    payload = {"records": {tag: record.model_dump() for tag, record in sorted(records.items())}}
    with open(temp_file, 'w', encoding='utf-8') as f:
        json.dump(payload, f, indent=2)
    os.chmod(temp_file, 0o600)
    os.replace(temp_file, auth_file)


def initialize_auth_file(config_dir: Path) -> Path:
    """Create an empty auth file when missing"""
    auth_file = Path(config_dir) / AUTH_FILE
    if not auth_file.exists():
        write_auth_records(config_dir, {})
        logger.info(f"Created {auth_file}")
    return auth_file


class FileAuthorizationProvider(AuthorizationProvider):
    """
    Exchanges the stored refresh token of one tag for access tokens.

    Thread safe: transport calls run in worker threads. A rotated refresh
    token returned by the server is written back to auth.json.
    """

    def __init__(
        self,
        config_dir: Path,
        tag: str,
        authenticate: Optional[Callable[[Credentials], Session]] = None
    ):
        self.config_dir = Path(config_dir)
        self.tag = tag
        self.authenticate = authenticate

        self._lock = threading.Lock()
        self._session: Optional[Session] = None

    def bind(self, authenticate: Callable[[Credentials], Session]) -> None:
        """Attach the transport's authenticate call"""
        self.authenticate = authenticate

    def current_token(self) -> str:
        with self._lock:
            session = self._session
        if session is not None and not session.is_expired():
            return session.access_token
        return self.reauthorize()

    def reauthorize(self) -> str:
        if self.authenticate is None:
            raise AuthError(f"No transport bound for authorizing {self.tag}")

        with self._lock:
            try:
                records = read_auth_records(self.config_dir)
            except ConfigurationError as e:
                raise AuthError(str(e)) from e

            credentials = records.get(self.tag)
            if credentials is None:
                self._session = None
                raise AuthError(f"No stored credentials for {self.tag}; run 'sherry login'")

            try:
                session = self.authenticate(credentials)
            except TransportError as e:
                self._session = None
                raise AuthError(f"Credentials for {self.tag} were rejected: {e}") from e

            if session.refresh_token and session.refresh_token != credentials.refresh_token:
                records[self.tag] = session.to_credentials(credentials.nickname)
                write_auth_records(self.config_dir, records)
                logger.debug(f"Stored rotated refresh token for {self.tag}")

            self._session = session
            logger.info(f"Authorized {self.tag} ({session.email})")
            return session.access_token

    def store_credentials(self, credentials: Credentials) -> None:
        """Save credentials for this tag (used by the login command)"""
        with self._lock:
            records = read_auth_records(self.config_dir)
            records[self.tag] = credentials
            write_auth_records(self.config_dir, records)
            self._session = None

    @property
    def is_authorized(self) -> bool:
        return self._session is not None and not self._session.is_expired()
