"""
Unit tests for stored credentials and token refresh.
"""

import json
import os
import shutil
import stat
import tempfile
from pathlib import Path
from unittest.mock import Mock

import pytest

from core.sync.errors import AuthError, ConfigurationError, TransportError
from core.transport.auth import (
    AUTH_FILE, FileAuthorizationProvider, initialize_auth_file, read_auth_records, write_auth_records
)
from core.transport.base import Credentials, Session


def make_session(access_token="at-1", refresh_token="rt-1", expires_in=0.0) -> Session:
    return Session(
        user_id="u1", email="me@example.com", username="me",
        access_token=access_token, refresh_token=refresh_token, expires_in=expires_in
    )


class TestAuthRecords:
    """Test reading and writing auth.json"""

    @pytest.fixture
    def config_dir(self):
        temp_dir = Path(tempfile.mkdtemp())
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    def test_missing_file_means_no_records(self, config_dir):
        assert read_auth_records(config_dir) == {}

    def test_write_and_read_back(self, config_dir):
        records = {"u1": Credentials(email="me@example.com", nickname="me", refresh_token="rt")}
        write_auth_records(config_dir, records)

        assert read_auth_records(config_dir) == records
        data = json.loads((config_dir / AUTH_FILE).read_text())
        assert data["records"]["u1"]["refresh_token"] == "rt"

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permissions only")
    def test_file_is_owner_only(self, config_dir):
        write_auth_records(config_dir, {})

        mode = stat.S_IMODE((config_dir / AUTH_FILE).stat().st_mode)
        assert mode == 0o600

    def test_invalid_file_raises(self, config_dir):
        (config_dir / AUTH_FILE).write_text('{"records": {"u1": {"email": "x"}}}')

        with pytest.raises(ConfigurationError):
            read_auth_records(config_dir)

    def test_initialize_keeps_existing_records(self, config_dir):
        write_auth_records(config_dir, {"u1": Credentials(email="a@b.c", refresh_token="rt")})

        initialize_auth_file(config_dir)

        assert list(read_auth_records(config_dir)) == ["u1"]


class TestSession:
    """Test Session expiry handling"""

    def test_zero_expiry_never_expires(self):
        assert not make_session(expires_in=0).is_expired(now=10 ** 12)

    def test_expiry_margin(self):
        session = make_session(expires_in=1000.0)

        assert not session.is_expired(now=900.0)
        assert session.is_expired(now=975.0)

    def test_parses_api_aliases(self):
        session = Session.model_validate({
            "userId": "u1", "email": "me@example.com", "accessToken": "at", "refreshToken": "rt"
        })
        assert session.user_id == "u1"
        assert session.to_credentials("nick").nickname == "nick"


class TestFileAuthorizationProvider:
    """Test FileAuthorizationProvider token handling"""

    @pytest.fixture
    def config_dir(self):
        temp_dir = Path(tempfile.mkdtemp())
        write_auth_records(temp_dir, {"u1": Credentials(email="me@example.com", refresh_token="rt-1")})
        yield temp_dir
        shutil.rmtree(temp_dir, ignore_errors=True)

    def test_unbound_provider_raises(self, config_dir):
        with pytest.raises(AuthError):
            FileAuthorizationProvider(config_dir, "u1").current_token()

    def test_token_is_cached(self, config_dir):
        """Test that a valid session is reused instead of refreshed"""
        authenticate = Mock(return_value=make_session())
        provider = FileAuthorizationProvider(config_dir, "u1", authenticate)

        assert provider.current_token() == "at-1"
        assert provider.current_token() == "at-1"
        assert provider.is_authorized
        authenticate.assert_called_once()

    def test_expired_session_is_refreshed(self, config_dir):
        authenticate = Mock(side_effect=[make_session(expires_in=1.0), make_session(access_token="at-2")])
        provider = FileAuthorizationProvider(config_dir, "u1", authenticate)

        provider.current_token()
        assert provider.current_token() == "at-2"
        assert authenticate.call_count == 2

    def test_missing_credentials_raise(self, config_dir):
        provider = FileAuthorizationProvider(config_dir, "nobody", Mock())

        with pytest.raises(AuthError):
            provider.reauthorize()

    def test_rejected_credentials_become_auth_error(self, config_dir):
        provider = FileAuthorizationProvider(config_dir, "u1", Mock(side_effect=TransportError("bad", 400)))

        with pytest.raises(AuthError):
            provider.reauthorize()
        assert not provider.is_authorized

    def test_rotated_refresh_token_is_stored(self, config_dir):
        """Test that a new refresh token from the server replaces the stored one"""
        provider = FileAuthorizationProvider(
            config_dir, "u1", Mock(return_value=make_session(refresh_token="rt-2"))
        )

        provider.reauthorize()

        assert read_auth_records(config_dir)["u1"].refresh_token == "rt-2"

    def test_store_credentials_drops_session(self, config_dir):
        authenticate = Mock(return_value=make_session())
        provider = FileAuthorizationProvider(config_dir, "u2")
        provider.bind(authenticate)

        provider.store_credentials(Credentials(email="two@example.com", refresh_token="rt-9"))
        provider.current_token()

        authenticate.assert_called_once_with(Credentials(email="two@example.com", refresh_token="rt-9"))
        assert set(read_auth_records(config_dir)) == {"u1", "u2"}
