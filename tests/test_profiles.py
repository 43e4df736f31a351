"""Tests for the profile store: CRUD, secrets, export and import."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable

import pytest

from entra_token.config import AuthMethod, OAuthFlow, Profile
from entra_token.exceptions import (
    ConfigurationError,
    DuplicateProfileError,
    ExportDecryptionError,
    ProfileNotFoundError,
    ProfileValidationError,
)
from entra_token.profile_export import is_encrypted_export
from entra_token.profiles import ConflictPolicy, ProfileStore
from entra_token.security.credential_storage import CredentialStore, SecretKind

TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"


@pytest.fixture
def store(tmp_path: Path, credential_store: CredentialStore) -> ProfileStore:
    """ProfileStore in a temp directory with an in-memory credential store."""
    return ProfileStore(tmp_path / "profiles.json", credential_store)


def _record(name: str, **extra: Any) -> dict[str, Any]:
    record: dict[str, Any] = {"name": name, "tenantId": TENANT_ID, "clientId": CLIENT_ID}
    record.update(extra)
    return record


# ============================================================================
# Tests: CRUD
# ============================================================================


class TestProfileCrud:
    """Tests for create, get, list, update and delete."""

    def test_create_then_get_case_insensitive(self, store: ProfileStore, profile: Profile) -> None:
        """Given a created profile, get finds it regardless of case."""
        # Act
        created = store.create(profile)

        # Assert
        assert store.get("GRAPH-PROD").client_id == CLIENT_ID
        assert created.created_at == created.updated_at

    def test_file_uses_camel_case_records(self, store: ProfileStore, profile: Profile) -> None:
        """Given a created profile, profiles.json holds a versioned camelCase document."""
        # Act
        store.create(profile)

        # Assert
        data = json.loads(store.path.read_text())
        assert data["version"] == 1
        assert data["profiles"][0]["tenantId"] == TENANT_ID
        assert store.path.stat().st_mode & 0o777 == 0o600

    def test_duplicate_name_rejected(self, store: ProfileStore, profile_factory: Callable[..., Profile]) -> None:
        """Given an existing name in another case, create raises DuplicateProfileError (exit 4)."""
        # Arrange
        store.create(profile_factory(name="graph-prod"))

        # Act & Assert
        with pytest.raises(DuplicateProfileError) as exc_info:
            store.create(profile_factory(name="Graph-Prod"))
        assert exc_info.value.exit_code == 4

    def test_get_missing_raises(self, store: ProfileStore) -> None:
        """Given no such profile, raises ProfileNotFoundError (exit 3)."""
        with pytest.raises(ProfileNotFoundError) as exc_info:
            store.get("nope")
        assert exc_info.value.exit_code == 3

    def test_list_sorted_by_name(self, store: ProfileStore, profile_factory: Callable[..., Profile]) -> None:
        """Given profiles created out of order, list returns them sorted."""
        # Arrange
        for name in ("zeta", "Alpha", "mid"):
            store.create(profile_factory(name=name))

        # Act & Assert
        assert [p.name for p in store.list()] == ["Alpha", "mid", "zeta"]

    def test_update_accepts_aliases(self, store: ProfileStore, profile: Profile) -> None:
        """Given a camelCase patch, the field is updated and updated_at advances."""
        # Arrange
        created = store.create(profile)

        # Act
        updated = store.update("graph-prod", {"defaultFlow": "DeviceCode"})

        # Assert
        assert updated.default_flow.value == "DeviceCode"
        assert updated.created_at == created.created_at
        assert updated.updated_at >= created.updated_at

    def test_update_rejects_unknown_field(self, store: ProfileStore, profile: Profile) -> None:
        """Given an unknown key, raises ProfileValidationError (exit 2)."""
        # Arrange
        store.create(profile)

        # Act & Assert
        with pytest.raises(ProfileValidationError) as exc_info:
            store.update("graph-prod", {"clientSecret": "x"})
        assert exc_info.value.exit_code == 2

    def test_update_rejects_invalid_result(self, store: ProfileStore, profile: Profile) -> None:
        """Given a patch that breaks the certificate invariant, nothing is saved."""
        # Arrange
        store.create(profile)

        # Act & Assert
        with pytest.raises(ProfileValidationError):
            store.update("graph-prod", {"authMethod": "Certificate"})
        assert store.get("graph-prod").auth_method.value == "ClientSecret"

    def test_identity_listener_on_tenant_change_rename_and_overwrite(
        self, store: ProfileStore, profile: Profile
    ) -> None:
        """Given a listener, it receives the old name for tenant changes, renames and overwrites only."""
        # Arrange
        notified: list[str] = []
        store.add_identity_listener(notified.append)
        store.create(profile)

        # Act
        store.update("graph-prod", {"redirectUri": "http://localhost:8400"})
        store.update("graph-prod", {"tenantId": "contoso.onmicrosoft.com"})
        store.update("graph-prod", {"name": "graph-contoso"})
        store.import_batch([_record("graph-contoso")], ConflictPolicy.OVERWRITE)

        # Assert
        assert notified == ["graph-prod", "graph-prod", "graph-contoso"]

    def test_rename_moves_secrets(
        self, store: ProfileStore, profile: Profile, credential_store: CredentialStore
    ) -> None:
        """Given a rename, stored secrets follow the profile."""
        # Arrange
        store.create(profile)
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "s3cr3t")

        # Act
        store.update("graph-prod", {"name": "graph-test"})

        # Assert
        assert credential_store.get("graph-test", SecretKind.CLIENT_SECRET) == "s3cr3t"
        assert not credential_store.exists("graph-prod", SecretKind.CLIENT_SECRET)
        assert not store.exists("graph-prod")

    def test_rename_onto_existing_rejected(
        self, store: ProfileStore, profile_factory: Callable[..., Profile]
    ) -> None:
        """Given a rename to a taken name, raises DuplicateProfileError."""
        # Arrange
        store.create(profile_factory(name="a"))
        store.create(profile_factory(name="b"))

        # Act & Assert
        with pytest.raises(DuplicateProfileError):
            store.update("a", {"name": "B"})

    def test_delete_removes_secrets(
        self, store: ProfileStore, profile: Profile, credential_store: CredentialStore
    ) -> None:
        """Given a profile with secrets and refresh tokens, delete removes all of them."""
        # Arrange
        store.create(profile)
        credential_store.set("graph-prod", SecretKind.CLIENT_SECRET, "s")
        credential_store.set("graph-prod", SecretKind.REFRESH_TOKENS, "{}")

        # Act
        store.delete("Graph-Prod")

        # Assert
        assert store.list() == []
        assert not any(credential_store.exists("graph-prod", kind) for kind in SecretKind)

    def test_empty_secret_rejected(self, store: ProfileStore, profile: Profile) -> None:
        """Given an empty secret value, set_secret raises ProfileValidationError."""
        # Arrange
        store.create(profile)

        # Act & Assert
        with pytest.raises(ProfileValidationError):
            store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "")

    def test_corrupt_file_is_configuration_error(self, store: ProfileStore) -> None:
        """Given a damaged profiles.json, reads raise ConfigurationError."""
        # Arrange
        store.path.write_text("[1, 2")

        # Act & Assert
        with pytest.raises(ConfigurationError):
            store.list()


# ============================================================================
# Tests: Export
# ============================================================================


class TestExport:
    """Tests for export_all."""

    def test_plain_export_has_no_secrets(
        self, store: ProfileStore, profile: Profile, credential_store: CredentialStore
    ) -> None:
        """Given stored secrets, a plain export contains none of them."""
        # Arrange
        store.create(profile)
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "super-secret-value")

        # Act
        exported = store.export_all()

        # Assert
        assert "super-secret-value" not in json.dumps(exported)
        assert exported["exportedAt"]
        assert [p["name"] for p in exported["profiles"]] == ["graph-prod"]

    def test_export_selected_names(self, store: ProfileStore, profile_factory: Callable[..., Profile]) -> None:
        """Given names, only those profiles are exported."""
        # Arrange
        store.create(profile_factory(name="a"))
        store.create(profile_factory(name="b"))

        # Act
        exported = store.export_all(names=["b"])

        # Assert
        assert [p["name"] for p in exported["profiles"]] == ["b"]

    def test_secret_export_requires_passphrase(self, store: ProfileStore, profile: Profile) -> None:
        """Given include_secrets without a passphrase, raises ConfigurationError."""
        # Arrange
        store.create(profile)

        # Act & Assert
        with pytest.raises(ConfigurationError):
            store.export_all(include_secrets=True)

    def test_encrypted_export_hides_secret(self, store: ProfileStore, profile: Profile) -> None:
        """Given include_secrets, the result is an envelope without plaintext."""
        # Arrange
        store.create(profile)
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "super-secret-value")

        # Act
        envelope = store.export_all(include_secrets=True, passphrase="correct horse")

        # Assert
        assert is_encrypted_export(envelope)
        assert "super-secret-value" not in json.dumps(envelope)


# ============================================================================
# Tests: Import
# ============================================================================


class TestImport:
    """Tests for import_batch and import_encrypted."""

    def test_default_policy_skips_existing(self, store: ProfileStore, profile: Profile) -> None:
        """Given an existing name, the default policy leaves it unchanged."""
        # Arrange
        store.create(profile)

        # Act
        report = store.import_batch([_record("graph-prod", tenantId="contoso.onmicrosoft.com"), _record("new")])

        # Assert
        assert report.skipped == ["graph-prod"]
        assert report.created == ["new"]
        assert store.get("graph-prod").tenant_id == TENANT_ID

    def test_overwrite_policy(self, store: ProfileStore, profile: Profile) -> None:
        """Given OVERWRITE, the existing profile is replaced."""
        # Arrange
        store.create(profile)

        # Act
        report = store.import_batch(
            {"profiles": [_record("graph-prod", tenantId="contoso.onmicrosoft.com")]},
            ConflictPolicy.OVERWRITE,
        )

        # Assert
        assert report.overwritten == ["graph-prod"]
        assert store.get("graph-prod").tenant_id == "contoso.onmicrosoft.com"

    def test_rename_policy_picks_free_suffix(
        self, store: ProfileStore, profile_factory: Callable[..., Profile]
    ) -> None:
        """Given RENAME_SUFFIX and a taken "-1", the import lands on "-2"."""
        # Arrange
        store.create(profile_factory(name="graph-prod"))
        store.create(profile_factory(name="graph-prod-1"))

        # Act
        report = store.import_batch([_record("graph-prod")], ConflictPolicy.RENAME_SUFFIX)

        # Assert
        assert report.renamed == [("graph-prod", "graph-prod-2")]
        assert store.exists("graph-prod-2")

    def test_invalid_record_imports_nothing(self, store: ProfileStore) -> None:
        """Given one invalid record among valid ones, nothing is written."""
        # Act & Assert
        with pytest.raises(ProfileValidationError) as exc_info:
            store.import_batch([_record("ok"), {"name": "broken"}])
        assert any("broken" in e for e in exc_info.value.errors)
        assert store.list() == []

    def test_plain_import_ignores_secret_fields(
        self, store: ProfileStore, credential_store: CredentialStore
    ) -> None:
        """Given a record carrying clientSecret, the secret is not stored anywhere."""
        # Act
        store.import_batch([_record("graph-prod", clientSecret="leaked")])

        # Assert
        assert not credential_store.exists("graph-prod", SecretKind.CLIENT_SECRET)
        assert "leaked" not in store.path.read_text()

    def test_plain_round_trip_reproduces_profiles(
        self,
        tmp_path: Path,
        store: ProfileStore,
        profile_factory: Callable[..., Profile],
        credential_store: CredentialStore,
    ) -> None:
        """Given a plain export imported into an empty store, every field comes back and no secret travels."""
        # Arrange
        store.create(profile_factory(name="graph-prod"))
        store.create(
            profile_factory(
                name="cert-app",
                auth_method=AuthMethod.CERTIFICATE,
                certificate_path=str(tmp_path / "app.pfx"),
                cache_certificate_password=True,
                authority_url="https://login.microsoftonline.us/" + TENANT_ID,
            )
        )
        store.create(
            profile_factory(
                name="user-app",
                scopes=["User.Read", "Mail.Read"],
                redirect_uri="http://localhost:8400",
                default_flow=OAuthFlow.DEVICE_CODE,
            )
        )
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "s3cr3t")
        store.set_secret("cert-app", SecretKind.CERTIFICATE_PASSWORD, "pfx-pass")
        exported = json.loads(json.dumps(store.export_all()))
        target_credentials = type(credential_store)()
        target = ProfileStore(tmp_path / "other" / "profiles.json", target_credentials)

        # Act
        report = target.import_batch(exported)

        # Assert
        assert sorted(report.created) == ["cert-app", "graph-prod", "user-app"]
        assert [p.to_record() for p in target.list()] == [p.to_record() for p in store.list()]
        assert target_credentials.secrets == {}
        assert "s3cr3t" not in target.path.read_text()

    def test_document_without_profiles_list(self, store: ProfileStore) -> None:
        """Given a mapping without "profiles", raises ProfileValidationError."""
        with pytest.raises(ProfileValidationError):
            store.import_batch({"items": []})

    def test_encrypted_round_trip_restores_secrets(
        self,
        tmp_path: Path,
        store: ProfileStore,
        profile: Profile,
        credential_store: CredentialStore,
    ) -> None:
        """Given an encrypted export imported elsewhere, profiles and secrets are restored."""
        # Arrange
        store.create(profile)
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "s3cr3t")
        envelope = store.export_all(include_secrets=True, passphrase="pass phrase")
        target = ProfileStore(tmp_path / "other" / "profiles.json", type(credential_store)())

        # Act
        report = target.import_encrypted(json.dumps(envelope), "pass phrase")

        # Assert
        assert report.created == ["graph-prod"]
        assert target.credential_store is not None
        assert target.credential_store.get("graph-prod", SecretKind.CLIENT_SECRET) == "s3cr3t"

    def test_encrypted_rename_restores_secret_under_new_name(
        self, store: ProfileStore, profile: Profile, credential_store: CredentialStore
    ) -> None:
        """Given RENAME_SUFFIX on re-import, secrets go to the renamed profile."""
        # Arrange
        store.create(profile)
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "original")
        envelope = store.export_all(include_secrets=True, passphrase="pw")
        store.set_secret("graph-prod", SecretKind.CLIENT_SECRET, "changed")

        # Act
        store.import_encrypted(envelope, "pw", ConflictPolicy.RENAME_SUFFIX)

        # Assert
        assert credential_store.get("graph-prod-1", SecretKind.CLIENT_SECRET) == "original"
        assert credential_store.get("graph-prod", SecretKind.CLIENT_SECRET) == "changed"

    def test_wrong_passphrase(self, store: ProfileStore, profile: Profile) -> None:
        """Given a wrong passphrase, raises ExportDecryptionError (exit 5) and imports nothing."""
        # Arrange
        store.create(profile)
        envelope = store.export_all(include_secrets=True, passphrase="right")
        store.delete("graph-prod")

        # Act & Assert
        with pytest.raises(ExportDecryptionError) as exc_info:
            store.import_encrypted(envelope, "wrong")
        assert exc_info.value.exit_code == 5
        assert store.list() == []
