"""Tests for credential material resolution (client secret and certificates)."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest

from entra_token.config import AuthMethod, Profile
from entra_token.exceptions import (
    CertificateNotFoundError,
    InvalidCertificatePasswordError,
    SecretNotFoundError,
)
from entra_token.security.certificate import (
    SharedSecret,
    SigningCertificate,
    find_store_certificate,
    load_certificate_file,
    resolve_credential_material,
)
from entra_token.security.credential_storage import CredentialStore, SecretKind


def _no_password() -> str:
    raise AssertionError("password should not be requested")


# ============================================================================
# Tests: Certificate loading
# ============================================================================


class TestLoadCertificateFile:
    """Tests for load_certificate_file."""

    def test_loads_unencrypted_pfx_without_asking_for_password(
        self, certificate_factory: Callable[..., tuple[Path, str]]
    ) -> None:
        """Given an unprotected PFX, no password is requested."""
        # Arrange
        path, thumbprint = certificate_factory("app.pfx")

        # Act
        material = load_certificate_file(path, _no_password)

        # Assert
        assert isinstance(material, SigningCertificate)
        assert material.thumbprint == thumbprint

    def test_loads_encrypted_pem_with_password(self, certificate_factory: Callable[..., tuple[Path, str]]) -> None:
        """Given a password-protected PEM, the provider's password unlocks it."""
        # Arrange
        path, thumbprint = certificate_factory("app.pem", password="pw")

        # Act
        material = load_certificate_file(path, lambda: "pw")

        # Assert
        assert material.thumbprint == thumbprint

    def test_wrong_password_is_distinct_from_missing_file(
        self, tmp_path: Path, certificate_factory: Callable[..., tuple[Path, str]]
    ) -> None:
        """Given a wrong password vs a missing file, different errors are raised."""
        # Arrange
        path, _ = certificate_factory("app.pfx", password="right")

        # Act & Assert
        with pytest.raises(InvalidCertificatePasswordError):
            load_certificate_file(path, lambda: "wrong")
        with pytest.raises(CertificateNotFoundError):
            load_certificate_file(tmp_path / "missing.pfx", lambda: "right")

    def test_repr_hides_private_key(self, certificate_factory: Callable[..., tuple[Path, str]]) -> None:
        """Given loaded material, repr shows only subject and thumbprint."""
        # Arrange
        path, thumbprint = certificate_factory("app.pfx")

        # Act
        text = repr(load_certificate_file(path, _no_password))

        # Assert
        assert thumbprint in text
        assert "PRIVATE" not in text


# ============================================================================
# Tests: Certificate store
# ============================================================================


class TestFindStoreCertificate:
    """Tests for thumbprint lookup in the user certificate store."""

    def test_finds_by_computed_thumbprint(
        self, tmp_path: Path, certificate_factory: Callable[..., tuple[Path, str]]
    ) -> None:
        """Given a store file with an arbitrary name, it is matched by thumbprint."""
        # Arrange
        store_dir = tmp_path / "certificates"
        certificate_factory("other.pfx", directory=store_dir)
        path, thumbprint = certificate_factory("wanted.pfx", directory=store_dir)

        # Act
        result = find_store_certificate(thumbprint.lower(), store_dir)

        # Assert
        assert result == path

    def test_unknown_thumbprint_raises(self, tmp_path: Path) -> None:
        """Given no matching certificate, raises CertificateNotFoundError."""
        with pytest.raises(CertificateNotFoundError, match="ABC123"):
            find_store_certificate("abc123", tmp_path / "certificates")


# ============================================================================
# Tests: resolve_credential_material
# ============================================================================


class TestResolveCredentialMaterial:
    """Tests for resolve_credential_material."""

    def test_client_secret_from_store(self, profile: Profile, credential_store: CredentialStore) -> None:
        """Given a stored client secret, returns SharedSecret."""
        # Arrange
        credential_store.set(profile.name, SecretKind.CLIENT_SECRET, "s3cr3t")

        # Act
        material = resolve_credential_material(profile, credential_store)

        # Assert
        assert isinstance(material, SharedSecret)
        assert material.value == "s3cr3t"
        assert "s3cr3t" not in repr(material)

    def test_environment_secret_takes_precedence(self, profile: Profile, credential_store: CredentialStore) -> None:
        """Given a secret override, the store is not consulted."""
        # Act
        material = resolve_credential_material(profile, credential_store, secret_override="from-env")

        # Assert
        assert isinstance(material, SharedSecret)
        assert material.value == "from-env"

    def test_missing_secret_raises(self, profile: Profile, credential_store: CredentialStore) -> None:
        """Given no stored secret, raises SecretNotFoundError."""
        with pytest.raises(SecretNotFoundError):
            resolve_credential_material(profile, credential_store)

    def test_certificate_never_downgrades_to_secret(
        self,
        tmp_path: Path,
        profile_factory: Callable[..., Profile],
        credential_store: CredentialStore,
    ) -> None:
        """Given a certificate profile with a missing file and a stored secret, raises instead of using the secret."""
        # Arrange
        profile = profile_factory(auth_method=AuthMethod.CERTIFICATE, certificate_path=str(tmp_path / "gone.pfx"))
        credential_store.set(profile.name, SecretKind.CLIENT_SECRET, "s3cr3t")

        # Act & Assert
        with pytest.raises(CertificateNotFoundError):
            resolve_credential_material(profile, credential_store, secret_override="from-env")

    def test_protected_certificate_uses_stored_password(
        self,
        profile_factory: Callable[..., Profile],
        credential_store: CredentialStore,
        certificate_factory: Callable[..., tuple[Path, str]],
    ) -> None:
        """Given a protected PFX and a stored password, returns SigningCertificate."""
        # Arrange
        path, thumbprint = certificate_factory("app.pfx", password="pfx-pass")
        profile = profile_factory(auth_method=AuthMethod.CERTIFICATE, certificate_path=str(path))
        credential_store.set(profile.name, SecretKind.CERTIFICATE_PASSWORD, "pfx-pass")

        # Act
        material = resolve_credential_material(profile, credential_store)

        # Assert
        assert isinstance(material, SigningCertificate)
        assert material.thumbprint == thumbprint

    def test_store_certificate_by_thumbprint(
        self,
        tmp_path: Path,
        profile_factory: Callable[..., Profile],
        credential_store: CredentialStore,
        certificate_factory: Callable[..., tuple[Path, str]],
    ) -> None:
        """Given useStoreCertificate with a thumbprint, the store certificate is loaded."""
        # Arrange
        store_dir = tmp_path / "certificates"
        _, thumbprint = certificate_factory("app.pem", directory=store_dir)
        profile = profile_factory(
            auth_method=AuthMethod.CERTIFICATE,
            use_store_certificate=True,
            thumbprint=thumbprint,
        )

        # Act
        material = resolve_credential_material(profile, credential_store, certificate_store_dir=store_dir)

        # Assert
        assert isinstance(material, SigningCertificate)
        assert material.thumbprint == thumbprint


class TestCertificatePasswordPrompt:
    """Tests for prompting when a protected certificate has no usable stored password."""

    @pytest.fixture
    def protected_profile(
        self,
        profile_factory: Callable[..., Profile],
        certificate_factory: Callable[..., tuple[Path, str]],
    ) -> Callable[..., Profile]:
        """Certificate profile over a PFX protected with "pfx-pass"."""
        path, _ = certificate_factory("app.pfx", password="pfx-pass")

        def make(**overrides: object) -> Profile:
            return profile_factory(auth_method=AuthMethod.CERTIFICATE, certificate_path=str(path), **overrides)

        return make

    def test_prompted_password_not_stored_by_default(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given no stored password and cacheCertificatePassword off, the prompt unlocks it and nothing is stored."""
        # Arrange
        profile = protected_profile()
        asked: list[str] = []

        def prompt(file_name: str) -> str:
            asked.append(file_name)
            return "pfx-pass"

        # Act
        material = resolve_credential_material(profile, credential_store, prompt_password=prompt)

        # Assert
        assert isinstance(material, SigningCertificate)
        assert asked == ["app.pfx"]
        assert not credential_store.exists(profile.name, SecretKind.CERTIFICATE_PASSWORD)

    def test_prompted_password_stored_when_caching(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given cacheCertificatePassword, the accepted password is stored for next time."""
        # Arrange
        profile = protected_profile(cache_certificate_password=True)

        # Act
        resolve_credential_material(profile, credential_store, prompt_password=lambda _name: "pfx-pass")

        # Assert
        assert credential_store.get(profile.name, SecretKind.CERTIFICATE_PASSWORD) == "pfx-pass"

    def test_wrong_entry_asks_again(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given a mistyped password, the user is asked again and only the right one is stored."""
        # Arrange
        profile = protected_profile(cache_certificate_password=True)
        answers = iter(["typo", "pfx-pass"])

        # Act
        material = resolve_credential_material(profile, credential_store, prompt_password=lambda _name: next(answers))

        # Assert
        assert isinstance(material, SigningCertificate)
        assert credential_store.get(profile.name, SecretKind.CERTIFICATE_PASSWORD) == "pfx-pass"

    def test_gives_up_after_three_wrong_entries(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given only wrong entries, raises InvalidCertificatePasswordError after three prompts."""
        # Arrange
        profile = protected_profile(cache_certificate_password=True)
        asked: list[str] = []

        def prompt(file_name: str) -> str:
            asked.append(file_name)
            return "wrong"

        # Act & Assert
        with pytest.raises(InvalidCertificatePasswordError):
            resolve_credential_material(profile, credential_store, prompt_password=prompt)
        assert len(asked) == 3
        assert not credential_store.exists(profile.name, SecretKind.CERTIFICATE_PASSWORD)

    def test_wrong_stored_password_falls_back_to_prompt(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given a stale stored password, the prompt is used and replaces it when caching."""
        # Arrange
        profile = protected_profile(cache_certificate_password=True)
        credential_store.set(profile.name, SecretKind.CERTIFICATE_PASSWORD, "old-pass")

        # Act
        resolve_credential_material(profile, credential_store, prompt_password=lambda _name: "pfx-pass")

        # Assert
        assert credential_store.get(profile.name, SecretKind.CERTIFICATE_PASSWORD) == "pfx-pass"

    def test_stored_password_skips_prompt(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given a working stored password, the user is not asked."""
        # Arrange
        profile = protected_profile()
        credential_store.set(profile.name, SecretKind.CERTIFICATE_PASSWORD, "pfx-pass")

        # Act
        material = resolve_credential_material(profile, credential_store, prompt_password=lambda _name: _no_password())

        # Assert
        assert isinstance(material, SigningCertificate)

    def test_no_prompt_and_no_stored_password(
        self, protected_profile: Callable[..., Profile], credential_store: CredentialStore
    ) -> None:
        """Given neither a stored password nor a prompt, raises SecretNotFoundError."""
        with pytest.raises(SecretNotFoundError):
            resolve_credential_material(protected_profile(), credential_store)
