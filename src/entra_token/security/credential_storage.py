"""Secure storage for profile secrets.

Provides two backends behind one interface (CredentialStore):

1. KeychainCredentialStore (strong): OS keychain via the keyring library
   - macOS: Keychain
   - Windows: Credential Locker (DPAPI)
   - Linux: Secret Service (GNOME Keyring, KDE Wallet)

2. MachineBoundFileStore (weak fallback): Fernet-encrypted files
   - Used when no keyring backend is usable (headless Linux, containers)
   - Key derived from machine id + user id + hostname, so anyone running as
     this user on this machine can recover it. Reported as NOT secure.
   - Secrets become undecryptable after a machine/user identity change;
     this surfaces as SecretDecryptionError asking for re-entry.

Key format: profile:{name}:{kind}   (name lower-cased)

Secrets are addressed by (profile, SecretKind). Profiles hold no secret values.
"""

from __future__ import annotations

__all__ = [
    "CredentialStore",
    "KeychainCredentialStore",
    "MachineBoundFileStore",
    "SecretKind",
    "create_credential_store",
    "get_credential_storage_info",
    "secret_key",
]

import base64
import getpass
import hashlib
import os
import platform
import socket
import subprocess
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from entra_token.constants import (
    APP_NAME,
    ENV_CREDENTIAL_BACKEND,
    KEYRING_SERVICE,
    MACHINE_KEY_ITERATIONS,
    SECRETS_DIRNAME,
    get_data_dir,
)
from entra_token.exceptions import (
    ConfigurationError,
    CredentialStoreError,
    SecretDecryptionError,
    SecretNotFoundError,
)
from entra_token.telemetry.system.system_logger import get_system_logger
from entra_token.utils.file_helpers import atomic_write_bytes, ensure_secure_dir, file_lock

if TYPE_CHECKING:
    from cryptography.fernet import Fernet


class SecretKind(str, Enum):
    """Kinds of secret material stored per profile."""

    CLIENT_SECRET = "client-secret"
    CERTIFICATE_PASSWORD = "certificate-password"
    REFRESH_TOKENS = "refresh-tokens"


def secret_key(profile: str, kind: SecretKind) -> str:
    """Storage key for a profile secret; profile names are case-insensitive."""
    return f"profile:{profile.strip().lower()}:{kind.value}"


class CredentialStore(ABC):
    """Uniform get/set/delete contract over a secret backend.

    Contract:
    - set() overwrites silently.
    - get() on a missing key raises SecretNotFoundError, never returns "".
    - delete() is idempotent.
    """

    backend_name: str = "unknown"
    is_secure: bool = True

    @abstractmethod
    def get(self, profile: str, kind: SecretKind) -> str:
        """Return the stored secret.

        Raises:
            SecretNotFoundError: Nothing stored for (profile, kind).
            SecretDecryptionError: Stored value cannot be decrypted.
            CredentialStoreError: Backend failure.
        """

    @abstractmethod
    def set(self, profile: str, kind: SecretKind, value: str) -> None:
        """Store ``value``, replacing any previous secret."""

    @abstractmethod
    def delete(self, profile: str, kind: SecretKind) -> None:
        """Remove the secret if present."""

    @abstractmethod
    def exists(self, profile: str, kind: SecretKind) -> bool:
        """Check whether a secret is stored."""

    @property
    def location(self) -> str:
        return self.backend_name

    def delete_profile(self, profile: str) -> None:
        """Remove every secret kind belonging to ``profile``."""
        for kind in SecretKind:
            self.delete(profile, kind)


class KeychainCredentialStore(CredentialStore):
    """Secret storage in the OS keychain via the keyring library."""

    backend_name = "keychain"
    is_secure = True

    def __init__(self, service: str = KEYRING_SERVICE) -> None:
        self._service = service

    @property
    def location(self) -> str:
        from entra_token.security.keyring_utils import describe_keyring_backend

        return f"{describe_keyring_backend()} (service '{self._service}')"

    def get(self, profile: str, kind: SecretKind) -> str:
        import keyring

        try:
            value = keyring.get_password(self._service, secret_key(profile, kind))
        except Exception as e:
            raise CredentialStoreError(f"Failed to access keychain: {e}") from e

        if value is None:
            raise SecretNotFoundError(profile, kind.value)
        return value

    def set(self, profile: str, kind: SecretKind, value: str) -> None:
        import keyring

        try:
            keyring.set_password(self._service, secret_key(profile, kind), value)
        except Exception as e:
            raise CredentialStoreError(f"Failed to save {kind.value} to keychain: {e}") from e

    def delete(self, profile: str, kind: SecretKind) -> None:
        import keyring
        from keyring.errors import PasswordDeleteError

        try:
            keyring.delete_password(self._service, secret_key(profile, kind))
        except PasswordDeleteError:
            pass
        except Exception as e:
            raise CredentialStoreError(f"Failed to delete {kind.value} from keychain: {e}") from e

    def exists(self, profile: str, kind: SecretKind) -> bool:
        import keyring

        try:
            return keyring.get_password(self._service, secret_key(profile, kind)) is not None
        except Exception:
            return False


class MachineBoundFileStore(CredentialStore):
    """Fallback secret storage in Fernet-encrypted files.

    One file per secret, named by the SHA-256 of its key, inside
    ``<data dir>/secrets``. The Fernet key is derived with PBKDF2 from
    machine id, user id and hostname; it is reproducible by anyone with the
    same identity, so this backend is labelled non-secure.

    Args:
        directory: Storage directory (defaults to the app data dir).
        identity: Explicit identity string replacing the machine-derived one.
    """

    backend_name = "machine-bound-file"
    is_secure = False

    def __init__(self, directory: Path | None = None, identity: str | None = None) -> None:
        self._directory = directory or get_data_dir() / SECRETS_DIRNAME
        self._identity = identity
        self._key: bytes | None = None

    @property
    def location(self) -> str:
        return str(self._directory)

    def _get_machine_id(self) -> str:
        """Get a stable platform-specific machine identifier."""
        system = platform.system()

        if system == "Darwin":
            try:
                result = subprocess.run(
                    ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                )
                for line in result.stdout.split("\n"):
                    if "IOPlatformUUID" in line:
                        parts = line.split("=")
                        if len(parts) >= 2:
                            return parts[1].strip().strip('"')
            except (subprocess.SubprocessError, OSError):
                pass

        elif system == "Linux":
            for path in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
                try:
                    with open(path) as f:
                        return f.read().strip()
                except OSError:
                    continue

        elif system == "Windows":
            try:
                winreg = __import__("winreg")
                key = winreg.OpenKey(
                    winreg.HKEY_LOCAL_MACHINE,
                    r"SOFTWARE\Microsoft\Cryptography",
                    0,
                    winreg.KEY_READ | winreg.KEY_WOW64_64KEY,
                )
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
                winreg.CloseKey(key)
                return str(value)
            except (OSError, ImportError, AttributeError):
                pass

        return socket.gethostname()

    def _get_user_id(self) -> str:
        getuid = getattr(os, "getuid", None)
        if getuid is not None:
            return str(getuid())
        return getpass.getuser()

    def _identity_material(self) -> str:
        if self._identity is not None:
            return self._identity
        return f"{self._get_machine_id()}:{self._get_user_id()}:{socket.gethostname()}"

    def _derive_key(self) -> bytes:
        """Derive the Fernet key from the machine/user identity."""
        if self._key is not None:
            return self._key

        combined = f"{self._identity_material()}:{APP_NAME}-secrets"
        # Static salt keeps the key stable across runs; identity gives uniqueness
        salt = f"{APP_NAME}-v1".encode()
        key = hashlib.pbkdf2_hmac(
            "sha256",
            combined.encode(),
            salt,
            iterations=MACHINE_KEY_ITERATIONS,
            dklen=32,
        )

        self._key = base64.urlsafe_b64encode(key)
        return self._key

    def _get_fernet(self) -> "Fernet":
        from cryptography.fernet import Fernet

        return Fernet(self._derive_key())

    def _path(self, profile: str, kind: SecretKind) -> Path:
        digest = hashlib.sha256(secret_key(profile, kind).encode()).hexdigest()
        return self._directory / f"{digest}.enc"

    @property
    def _lock_path(self) -> Path:
        return self._directory / ".lock"

    def get(self, profile: str, kind: SecretKind) -> str:
        from cryptography.fernet import InvalidToken

        path = self._path(profile, kind)
        try:
            encrypted = path.read_bytes()
        except FileNotFoundError:
            raise SecretNotFoundError(profile, kind.value) from None
        except OSError as e:
            raise CredentialStoreError(f"Failed to read secret file {path}: {e}") from e

        try:
            return self._get_fernet().decrypt(encrypted).decode("utf-8")
        except InvalidToken as e:
            raise SecretDecryptionError(profile, kind.value) from e

    def set(self, profile: str, kind: SecretKind, value: str) -> None:
        encrypted = self._get_fernet().encrypt(value.encode("utf-8"))
        try:
            ensure_secure_dir(self._directory)
            with file_lock(self._lock_path):
                atomic_write_bytes(self._path(profile, kind), encrypted)
        except OSError as e:
            raise CredentialStoreError(f"Failed to save {kind.value}: {e}") from e

    def delete(self, profile: str, kind: SecretKind) -> None:
        path = self._path(profile, kind)
        if not path.exists():
            return
        try:
            with file_lock(self._lock_path):
                path.unlink(missing_ok=True)
        except OSError as e:
            raise CredentialStoreError(f"Failed to delete {kind.value}: {e}") from e

    def exists(self, profile: str, kind: SecretKind) -> bool:
        return self._path(profile, kind).exists()


def _is_keyring_available() -> bool:
    from entra_token.security.keyring_utils import is_keyring_available

    return is_keyring_available()


def create_credential_store(prefer: str | None = None) -> CredentialStore:
    """Select the credential store backend for this process.

    Selection order: explicit ``prefer`` argument, then the
    ENTRA_TOKEN_CREDENTIAL_BACKEND environment variable, then auto-detection
    (keychain when a working keyring backend exists, else the file fallback).

    Args:
        prefer: "keychain", "file" or None for auto-detection.

    Returns:
        CredentialStore instance.

    Raises:
        ConfigurationError: If an unknown backend name is requested.
    """
    choice = (prefer or os.environ.get(ENV_CREDENTIAL_BACKEND) or "auto").strip().lower()
    logger = get_system_logger()

    if choice not in ("auto", "keychain", "file"):
        raise ConfigurationError(
            f"Unknown credential backend '{choice}'. Use 'keychain', 'file' or 'auto'."
        )

    if choice == "keychain" or (choice == "auto" and _is_keyring_available()):
        return KeychainCredentialStore()

    store = MachineBoundFileStore()
    logger.warning(
        {
            "event": "insecure_credential_backend",
            "backend": store.backend_name,
            "location": store.location,
            "message": (
                "No OS keychain available; secrets are stored in machine-bound "
                "encrypted files that are NOT cryptographically secure."
            ),
        }
    )
    return store


def get_credential_storage_info(store: CredentialStore) -> dict[str, Any]:
    """Describe the active backend for status output and warnings.

    Returns:
        Dict with "backend", "secure" and "location" keys.
    """
    return {
        "backend": store.backend_name,
        "secure": store.is_secure,
        "location": store.location,
    }
