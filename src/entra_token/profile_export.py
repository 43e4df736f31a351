"""Passphrase-encrypted envelope for profile exports that carry secrets.

Plain exports never contain secret material. When secrets are requested the
whole document is encrypted instead:

    {
      "format": "entra-token-export",
      "version": 1,
      "kdf": "pbkdf2-sha256",
      "iterations": 600000,
      "salt": "<base64>",
      "ciphertext": "<Fernet token>"
    }

The Fernet key is PBKDF2-HMAC-SHA256(passphrase, random 16-byte salt).
"""

from __future__ import annotations

__all__ = [
    "ENVELOPE_FORMAT",
    "decrypt_export",
    "encrypt_export",
    "is_encrypted_export",
]

import base64
import hashlib
import json
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from entra_token.constants import EXPORT_KEY_ITERATIONS
from entra_token.exceptions import ConfigurationError, ExportDecryptionError

ENVELOPE_FORMAT = "entra-token-export"
_ENVELOPE_VERSION = 1
_KDF_NAME = "pbkdf2-sha256"
_SALT_BYTES = 16


def _derive_key(passphrase: str, salt: bytes, iterations: int) -> bytes:
    key = hashlib.pbkdf2_hmac("sha256", passphrase.encode("utf-8"), salt, iterations=iterations, dklen=32)
    return base64.urlsafe_b64encode(key)


def encrypt_export(
    document: dict[str, Any],
    passphrase: str,
    *,
    iterations: int = EXPORT_KEY_ITERATIONS,
) -> dict[str, Any]:
    """Encrypt an export document.

    Args:
        document: JSON-serializable export payload (profiles and secrets).
        passphrase: User passphrase; must not be empty.
        iterations: PBKDF2 iteration count recorded in the envelope.

    Returns:
        Envelope dict (JSON-serializable).

    Raises:
        ConfigurationError: Empty passphrase.
    """
    if not passphrase:
        raise ConfigurationError("A passphrase is required to export secrets")

    salt = os.urandom(_SALT_BYTES)
    fernet = Fernet(_derive_key(passphrase, salt, iterations))
    ciphertext = fernet.encrypt(json.dumps(document).encode("utf-8"))

    return {
        "format": ENVELOPE_FORMAT,
        "version": _ENVELOPE_VERSION,
        "kdf": _KDF_NAME,
        "iterations": iterations,
        "salt": base64.b64encode(salt).decode("ascii"),
        "ciphertext": ciphertext.decode("ascii"),
    }


def is_encrypted_export(data: str | dict[str, Any]) -> bool:
    """True if ``data`` looks like an encrypted envelope."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError:
            return False
    return isinstance(data, dict) and data.get("format") == ENVELOPE_FORMAT


def decrypt_export(blob: str | dict[str, Any], passphrase: str) -> dict[str, Any]:
    """Open an encrypted envelope.

    Raises:
        ExportDecryptionError: Wrong passphrase or damaged envelope.
    """
    try:
        envelope = json.loads(blob) if isinstance(blob, str) else blob
    except json.JSONDecodeError as e:
        raise ExportDecryptionError(f"Encrypted export is not valid JSON: {e}") from e

    if not is_encrypted_export(envelope):
        raise ExportDecryptionError("Not an encrypted entra-token export")
    if envelope.get("kdf") != _KDF_NAME:
        raise ExportDecryptionError(f"Unsupported key derivation '{envelope.get('kdf')}'")

    try:
        salt = base64.b64decode(envelope["salt"], validate=True)
        iterations = int(envelope["iterations"])
        ciphertext = str(envelope["ciphertext"]).encode("ascii")
    except (KeyError, TypeError, ValueError) as e:
        raise ExportDecryptionError(f"Encrypted export is damaged: {e}") from e

    try:
        plaintext = Fernet(_derive_key(passphrase, salt, iterations)).decrypt(ciphertext)
    except InvalidToken:
        raise ExportDecryptionError(
            "Failed to decrypt profile export. Check the passphrase."
        ) from None

    document = json.loads(plaintext.decode("utf-8"))
    if not isinstance(document, dict):
        raise ExportDecryptionError("Decrypted export has an unexpected layout")
    return document
