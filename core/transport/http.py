"""
HTTP transport for the sherry API server.

Blocking ``requests`` client; the executor calls it through
asyncio.to_thread. HTTP failures are mapped onto the sync error taxonomy:
401/403 -> AuthError, 409/412 -> ConflictError, 429, 5xx and network failures
-> TransientNetworkError, other 4xx -> TransportError.
"""

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from .base import AuthorizationProvider, Credentials, Session, TransportClient
from ..models.sync import RemoteEntry
from ..storage.hashing import hash_bytes
from ..sync.errors import AuthError, ConflictError, TransientNetworkError, TransportError

logger = logging.getLogger(__name__)

# Event kinds understood by the /events endpoint
EVENT_CREATED = "Created"
EVENT_UPDATED = "Updated"
EVENT_MOVED = "Moved"
EVENT_DELETED = "Deleted"


def parse_timestamp(value: Any) -> float:
    """Server timestamps are epoch milliseconds; returns seconds"""
    if value is None:
        return 0.0
    timestamp = float(value)
    # Values this large can only be milliseconds
    return timestamp / 1000.0 if timestamp > 1e11 else timestamp


def parse_entry(data: Dict[str, Any]) -> RemoteEntry:
    """Build a RemoteEntry from an API file record"""
    updated_at = data.get("updatedAt", data.get("createdAt"))
    revision = data.get("revision")
    if revision is None:
        revision = str(updated_at)
    return RemoteEntry(
        path=data["path"].lstrip("/"),
        revision=str(revision),
        content_hash=data["hash"],
        size=int(data.get("size", 0)),
        modified_at=parse_timestamp(updated_at)
    )


class HttpTransportClient(TransportClient):
    """TransportClient backed by the sherry REST API"""

    def __init__(
        self,
        api_url: str,
        authorization: Optional[AuthorizationProvider] = None,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None
    ):
        self.api_url = api_url.rstrip("/")
        self.authorization = authorization
        self.timeout = timeout
        self.session = session or requests.Session()

        # Metrics
        self.requests_sent = 0
        self.requests_failed = 0
        self.total_request_time = 0.0

    def _headers(self, authorized: bool) -> Dict[str, str]:
        if not authorized:
            return {}
        if self.authorization is None:
            raise AuthError("No authorization provider configured")
        return {"Authorization": f"Bearer {self.authorization.current_token()}"}

    def _request(
        self,
        method: str,
        endpoint: str,
        path: Optional[str] = None,
        authorized: bool = True,
        allow_not_found: bool = False,
        **kwargs
    ) -> Optional[requests.Response]:
        url = f"{self.api_url}{endpoint}"
        start_time = time.perf_counter()
        self.requests_sent += 1

        try:
            response = self.session.request(
                method, url, headers=self._headers(authorized), timeout=self.timeout, **kwargs
            )
        except (requests.Timeout, requests.ConnectionError) as e:
            self.requests_failed += 1
            raise TransientNetworkError(f"{method} {endpoint} failed: {e}", path=path) from e
        except requests.RequestException as e:
            self.requests_failed += 1
            raise TransportError(f"{method} {endpoint} failed: {e}", path=path) from e
        finally:
            self.total_request_time += time.perf_counter() - start_time

        status = response.status_code
        if status < 400:
            return response

        if status == 404 and allow_not_found:
            return None

        self.requests_failed += 1
        detail = f"{method} {endpoint} returned {status}: {response.text[:200]}"
        logger.debug(detail)
        if status in (401, 403):
            raise AuthError(detail, path=path)
        if status in (409, 412):
            raise ConflictError(detail, path=path)
        if status >= 500 or status == 429:
            raise TransientNetworkError(detail, path=path)
        raise TransportError(detail, status_code=status, path=path)

    def _json(self, response: requests.Response, endpoint: str) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise TransportError(f"Invalid JSON from {endpoint}: {e}") from e

    def authenticate(self, credentials: Credentials) -> Session:
        response = self._request(
            "POST", "/auth/refresh", authorized=False,
            json={"refreshToken": credentials.refresh_token}
        )
        data = self._json(response, "/auth/refresh")
        logger.info(f"Authenticated {credentials.email}")
        return Session.model_validate(data)

    def list_remote(self, remote_id: str) -> List[RemoteEntry]:
        endpoint = f"/sherries/{remote_id}/files"
        data = self._json(self._request("GET", endpoint), endpoint)
        return [parse_entry(item) for item in data]

    def stat_remote(self, remote_id: str, path: str) -> Optional[RemoteEntry]:
        endpoint = f"/sherries/{remote_id}/files/stat"
        response = self._request("GET", endpoint, path=path, allow_not_found=True, params={"path": path})
        if response is None:
            return None
        return parse_entry(self._json(response, endpoint))

    def download(self, remote_id: str, path: str, revision: Optional[str] = None) -> bytes:
        params = {"path": path}
        if revision is not None:
            params["revision"] = revision
        response = self._request("GET", f"/sherries/{remote_id}/files/content", path=path, params=params)
        return response.content

    def _post_event(self, remote_id: str, path: str, fields: Dict[str, str], content: Optional[bytes] = None):
        data = {"sherryId": remote_id, "fileName": path}
        data.update({key: value for key, value in fields.items() if value is not None})
        files = {"file": (path.rsplit("/", 1)[-1], content)} if content is not None else None
        response = self._request("POST", "/events", path=path, data=data, files=files)
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def upload(
        self,
        remote_id: str,
        path: str,
        content: bytes,
        expected_revision: Optional[str]
    ) -> str:
        content_hash = hash_bytes(content)
        result = self._post_event(remote_id, path, {
            "eventType": EVENT_CREATED if expected_revision is None else EVENT_UPDATED,
            "fileHash": content_hash,
            "expectedRevision": expected_revision,
        }, content=content)
        return self._revision_of(result, remote_id, path)

    def delete_remote(self, remote_id: str, path: str, expected_revision: str) -> None:
        self._post_event(remote_id, path, {
            "eventType": EVENT_DELETED,
            "expectedRevision": expected_revision,
        })

    def rename_remote(
        self,
        remote_id: str,
        old_path: str,
        new_path: str,
        expected_revision: str
    ) -> str:
        result = self._post_event(remote_id, new_path, {
            "eventType": EVENT_MOVED,
            "oldFileName": old_path,
            "expectedRevision": expected_revision,
        })
        return self._revision_of(result, remote_id, new_path)

    def _revision_of(self, result: Any, remote_id: str, path: str) -> str:
        if isinstance(result, dict) and "hash" in result and "path" in result:
            return parse_entry(result).revision
        # Older servers answer with plain text; ask for the new state
        entry = self.stat_remote(remote_id, path)
        if entry is None:
            raise TransportError(f"{path} missing right after it was written", path=path)
        return entry.revision

    def get_status(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "api_url": self.api_url,
            "requests_sent": self.requests_sent,
            "requests_failed": self.requests_failed,
            "avg_request_time_ms": (self.total_request_time / self.requests_sent * 1000)
            if self.requests_sent else 0.0,
        }
