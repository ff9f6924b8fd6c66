"""Tests for credential storage module."""

import json
import os
import stat
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest import mock

import pytest

from src.oauth.exceptions import (
    CredentialCorruptError,
    CredentialNotFoundError,
    TokenStorageError,
)
from src.oauth.token_storage import Credential, CredentialStore


def make_credential(expires_in_seconds=3600, refresh_token="refresh_token_456"):
    return Credential(
        access_token="access_token_123",
        refresh_token=refresh_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in_seconds),
        scopes=["https://www.googleapis.com/auth/gmail.modify"],
    )


class TestCredential:
    """Tests for Credential dataclass."""

    def test_is_expired_false_for_future(self):
        assert make_credential(3600).is_expired is False

    def test_is_expired_true_for_past(self):
        assert make_credential(-10).is_expired is True

    def test_expires_within(self):
        """Token expiring in 4 minutes is within a 5 minute window."""
        credential = make_credential(240)
        assert credential.expires_within(300) is True
        assert credential.expires_within(60) is False

    def test_can_refresh(self):
        assert make_credential().can_refresh is True
        assert make_credential(refresh_token=None).can_refresh is False

    def test_from_token_response(self):
        data = {
            "access_token": "new_access",
            "refresh_token": "new_refresh",
            "expires_in": 3599,
            "scope": "scope.a scope.b",
            "token_type": "Bearer",
        }

        before = datetime.now(timezone.utc)
        credential = Credential.from_token_response(data)

        assert credential.access_token == "new_access"
        assert credential.refresh_token == "new_refresh"
        assert credential.scopes == ["scope.a", "scope.b"]
        assert before + timedelta(seconds=3590) < credential.expires_at
        assert credential.expires_at <= datetime.now(timezone.utc) + timedelta(seconds=3599)

    def test_from_token_response_keeps_previous_refresh_token(self):
        """Refresh responses without refresh_token keep the old one."""
        credential = Credential.from_token_response(
            {"access_token": "a", "expires_in": 3600},
            previous_refresh_token="old_refresh",
            requested_scopes=["scope.x"],
        )

        assert credential.refresh_token == "old_refresh"
        assert credential.scopes == ["scope.x"]

    def test_from_token_response_missing_access_token(self):
        with pytest.raises(KeyError):
            Credential.from_token_response({"expires_in": 3600})

    def test_dict_round_trip(self):
        original = make_credential()
        restored = Credential.from_dict(json.loads(json.dumps(original.to_dict())))

        assert restored == original

    def test_from_dict_accepts_legacy_format(self):
        """Records with expiry_date in milliseconds and a scope string load."""
        expiry = datetime(2030, 1, 1, tzinfo=timezone.utc)
        data = {
            "access_token": "legacy_access",
            "refresh_token": "legacy_refresh",
            "scope": "scope.a scope.b",
            "token_type": "Bearer",
            "expiry_date": int(expiry.timestamp() * 1000),
        }

        credential = Credential.from_dict(data)

        assert credential.expires_at == expiry
        assert credential.scopes == ["scope.a", "scope.b"]
        assert credential.refresh_token == "legacy_refresh"

    def test_from_dict_naive_timestamp_is_utc(self):
        credential = Credential.from_dict(
            {"access_token": "a", "expires_at": "2030-01-01T00:00:00", "scopes": []}
        )
        assert credential.expires_at.tzinfo is not None

    def test_from_dict_rejects_missing_fields(self):
        with pytest.raises(KeyError):
            Credential.from_dict({"access_token": "a"})

    def test_from_dict_rejects_wrong_scope_type(self):
        with pytest.raises(TypeError):
            Credential.from_dict(
                {"access_token": "a", "expires_at": "2030-01-01T00:00:00+00:00", "scopes": "x"}
            )


class TestCredentialStore:
    """Tests for CredentialStore class."""

    @pytest.fixture
    def temp_token_file(self):
        """Create a temporary file path for token storage."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield os.path.join(tmpdir, "nested", "credentials.json")

    @pytest.fixture
    def storage(self, temp_token_file):
        return CredentialStore(temp_token_file)

    def test_load_missing_raises_not_found(self, storage):
        """First run: nothing stored yet."""
        with pytest.raises(CredentialNotFoundError):
            storage.load()

    def test_save_then_load(self, storage):
        credential = make_credential()
        storage.save(credential)

        loaded = storage.load()

        assert loaded.access_token == credential.access_token
        assert loaded.refresh_token == credential.refresh_token
        assert loaded.expires_at == credential.expires_at
        assert loaded.scopes == credential.scopes

    def test_save_creates_parent_directory(self, storage, temp_token_file):
        storage.save(make_credential())
        assert Path(temp_token_file).exists()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_save_sets_owner_only_permissions(self, storage, temp_token_file):
        storage.save(make_credential())

        mode = stat.S_IMODE(os.stat(temp_token_file).st_mode)
        assert mode == 0o600

    def test_save_replaces_previous_record(self, storage):
        storage.save(make_credential())
        replacement = Credential(
            access_token="second",
            refresh_token=None,
            expires_at=datetime.now(timezone.utc) + timedelta(hours=2),
        )
        storage.save(replacement)

        assert storage.load().access_token == "second"
        assert storage.load().refresh_token is None

    def test_save_leaves_no_temp_files(self, storage, temp_token_file):
        storage.save(make_credential())
        storage.save(make_credential())

        assert os.listdir(os.path.dirname(temp_token_file)) == ["credentials.json"]

    def test_failed_save_keeps_previous_record(self, storage, temp_token_file):
        """A failure before the rename leaves the old file intact."""
        storage.save(make_credential())

        with mock.patch("src.oauth.token_storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(TokenStorageError):
                storage.save(
                    Credential(
                        access_token="never_written",
                        expires_at=datetime.now(timezone.utc),
                    )
                )

        assert storage.load().access_token == "access_token_123"
        assert os.listdir(os.path.dirname(temp_token_file)) == ["credentials.json"]

    def test_load_corrupt_json(self, storage, temp_token_file):
        os.makedirs(os.path.dirname(temp_token_file))
        with open(temp_token_file, "w") as f:
            f.write("{not valid json")

        with pytest.raises(CredentialCorruptError):
            storage.load()

    def test_load_wrong_shape(self, storage, temp_token_file):
        os.makedirs(os.path.dirname(temp_token_file))
        with open(temp_token_file, "w") as f:
            json.dump({"refresh_token": "only"}, f)

        with pytest.raises(CredentialCorruptError):
            storage.load()

    def test_corrupt_is_distinct_from_not_found(self, storage, temp_token_file):
        os.makedirs(os.path.dirname(temp_token_file))
        with open(temp_token_file, "w") as f:
            f.write("[]")

        with pytest.raises(CredentialCorruptError) as exc_info:
            storage.load()
        assert not isinstance(exc_info.value, CredentialNotFoundError)

    def test_is_expired_uses_buffer(self, temp_token_file):
        storage = CredentialStore(temp_token_file, refresh_buffer_seconds=300)
        credential = make_credential(240)

        assert storage.is_expired(credential) is True
        assert storage.is_expired(credential, skew_seconds=0) is False

    def test_clear(self, storage):
        storage.save(make_credential())

        assert storage.exists() is True
        assert storage.clear() is True
        assert storage.exists() is False
        assert storage.clear() is False
