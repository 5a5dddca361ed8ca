"""
Transport and authorization interfaces.

The daemon talks to the remote authority only through these interfaces.
Methods are blocking; the executor runs them through asyncio.to_thread.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models.sync import RemoteEntry


class Credentials(BaseModel):
    """Stored per-user refresh credentials"""
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str
    nickname: str = ""
    refresh_token: str


class Session(BaseModel):
    """An authenticated session as returned by the auth endpoint"""
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId")
    email: str
    username: str = ""
    access_token: str = Field(alias="accessToken")
    refresh_token: str = Field(alias="refreshToken")
    expires_in: float = Field(default=0.0, alias="expiresIn")  # absolute timestamp in seconds

    def is_expired(self, now: Optional[float] = None, margin_s: float = 30.0) -> bool:
        if not self.expires_in:
            return False
        now = time.time() if now is None else now
        return now + margin_s >= self.expires_in

    def to_credentials(self, nickname: str = "") -> Credentials:
        return Credentials(
            email=self.email,
            nickname=nickname or self.username,
            refresh_token=self.refresh_token
        )


class TransportClient(ABC):
    """Remote file operations for sherry directories"""

    @abstractmethod
    def authenticate(self, credentials: Credentials) -> Session:
        """Exchange refresh credentials for a session; AuthError when rejected"""

    @abstractmethod
    def list_remote(self, remote_id: str) -> List[RemoteEntry]:
        """Every file currently in the remote directory"""

    @abstractmethod
    def stat_remote(self, remote_id: str, path: str) -> Optional[RemoteEntry]:
        """One remote file, None when absent"""

    @abstractmethod
    def upload(
        self,
        remote_id: str,
        path: str,
        content: bytes,
        expected_revision: Optional[str]
    ) -> str:
        """
        Store content at path.

        ``expected_revision`` is the revision the remote must currently have
        (None: must be absent). Returns the new revision. ConflictError when
        the precondition does not hold.
        """

    @abstractmethod
    def download(self, remote_id: str, path: str, revision: Optional[str] = None) -> bytes:
        """Content of a revision (the latest one when None)"""

    @abstractmethod
    def delete_remote(self, remote_id: str, path: str, expected_revision: str) -> None:
        pass

    @abstractmethod
    def rename_remote(
        self,
        remote_id: str,
        old_path: str,
        new_path: str,
        expected_revision: str
    ) -> str:
        """Move a file; returns the revision at the new path"""

    def get_status(self) -> Dict[str, Any]:
        return {"type": type(self).__name__}


class AuthorizationProvider(ABC):
    """Supplies bearer tokens to the transport"""

    @abstractmethod
    def current_token(self) -> str:
        """A valid access token; AuthError when none can be obtained"""

    @abstractmethod
    def reauthorize(self) -> str:
        """Force a token refresh; AuthError when credentials are rejected"""
