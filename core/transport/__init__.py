"""
Transport package for sherry-sync.

Interfaces to the remote authority plus the HTTP and file-backed
authorization implementations.
"""

from .base import AuthorizationProvider, Credentials, Session, TransportClient
from .http import HttpTransportClient
from .auth import FileAuthorizationProvider, read_auth_records, write_auth_records

__all__ = [
    "AuthorizationProvider",
    "Credentials",
    "Session",
    "TransportClient",
    "HttpTransportClient",
    "FileAuthorizationProvider",
    "read_auth_records",
    "write_auth_records",
]
