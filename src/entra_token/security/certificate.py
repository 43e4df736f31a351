"""Credential material resolution.

Turns a Profile into the concrete material a flow needs to authenticate the
application:

- SharedSecret: client secret from the credential store (or ENTRA_CLIENT_SECRET)
- SigningCertificate: X.509 certificate + RSA private key, loaded from
  * a PKCS#12 (.pfx/.p12) or PEM file referenced by ``certificatePath``
  * the user certificate store (``<data dir>/certificates``), matched by
    SHA-1 thumbprint

Certificate containers are opened without a password first. A protected
container is then tried with the stored certificate password; when none is
stored or it is wrong, the user is asked (if a prompt is available), up to
CERTIFICATE_PASSWORD_ATTEMPTS times. A prompted password is kept in the
credential store only for profiles with cacheCertificatePassword set.
"File missing" and "wrong password" are reported as distinct errors.

Nothing in this module logs secret values or key bytes.
"""

from __future__ import annotations

__all__ = [
    "CredentialMaterial",
    "SharedSecret",
    "SigningCertificate",
    "compute_thumbprint",
    "find_store_certificate",
    "load_certificate_file",
    "resolve_credential_material",
]

import base64
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12

from entra_token.config import AuthMethod, Profile
from entra_token.constants import CERTIFICATE_PASSWORD_ATTEMPTS, CERTIFICATE_STORE_DIRNAME, get_data_dir
from entra_token.exceptions import (
    CertificateNotFoundError,
    InvalidCertificatePasswordError,
)
from entra_token.security.credential_storage import CredentialStore, SecretKind
from entra_token.telemetry.system.system_logger import get_system_logger

_PKCS12_SUFFIXES = (".pfx", ".p12")
_PEM_SUFFIXES = (".pem", ".crt", ".cer")


@dataclass(frozen=True)
class SharedSecret:
    """Client secret used in a client_secret POST body."""

    value: str = field(repr=False)

    def __repr__(self) -> str:
        return "SharedSecret(value=***)"


@dataclass(frozen=True)
class SigningCertificate:
    """Certificate and private key used to sign client assertions.

    Attributes:
        certificate: Public X.509 certificate.
        private_key: RSA private key matching the certificate.
        thumbprint: Upper-case hex SHA-1 thumbprint.
    """

    certificate: x509.Certificate
    private_key: rsa.RSAPrivateKey = field(repr=False)
    thumbprint: str

    @property
    def x5t(self) -> str:
        """Base64url SHA-1 thumbprint for the JWT ``x5t`` header."""
        return _b64url(self.certificate.fingerprint(hashes.SHA1()))

    @property
    def x5t_s256(self) -> str:
        """Base64url SHA-256 thumbprint for the JWT ``x5t#S256`` header."""
        return _b64url(self.certificate.fingerprint(hashes.SHA256()))

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    @property
    def subject(self) -> str:
        return self.certificate.subject.rfc4514_string()

    def private_key_pem(self) -> bytes:
        """PKCS#8 PEM of the private key, for PyJWT signing only."""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def __repr__(self) -> str:
        return f"SigningCertificate(subject={self.subject!r}, thumbprint={self.thumbprint!r})"


CredentialMaterial = Union[SharedSecret, SigningCertificate]


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def compute_thumbprint(certificate: x509.Certificate) -> str:
    """Upper-case hex SHA-1 thumbprint, as shown by Entra ID and Windows."""
    return hashlib.sha1(certificate.public_bytes(serialization.Encoding.DER)).hexdigest().upper()


# ============================================================================
# Container loading
# ============================================================================


def _load_pkcs12(data: bytes, password: bytes | None) -> tuple[x509.Certificate, object]:
    key, cert, _extra = pkcs12.load_key_and_certificates(data, password)
    if cert is None:
        raise CertificateNotFoundError("PKCS#12 container holds no certificate")
    return cert, key


def _load_pem(data: bytes, password: bytes | None) -> tuple[x509.Certificate, object]:
    cert = x509.load_pem_x509_certificate(data)
    if b"PRIVATE KEY" not in data:
        return cert, None
    key = serialization.load_pem_private_key(data, password=password)
    return cert, key


def _loader_for(path: Path) -> Callable[[bytes, bytes | None], tuple[x509.Certificate, object]]:
    if path.suffix.lower() in _PKCS12_SUFFIXES:
        return _load_pkcs12
    return _load_pem


def _unlock(
    path: Path,
    data: bytes,
    loader: Callable[[bytes, bytes | None], tuple[x509.Certificate, object]],
    password_provider: Callable[[], str],
    attempts: int,
) -> tuple[x509.Certificate, object]:
    for attempt in range(1, attempts + 1):
        password = password_provider()
        try:
            return loader(data, password.encode("utf-8"))
        except (ValueError, TypeError) as e:
            if attempt >= attempts:
                raise InvalidCertificatePasswordError(
                    f"The password does not unlock certificate {path} "
                    "(wrong password or damaged file). Update the stored one with "
                    "'entra-token config set-secret --kind certificate-password'."
                ) from e
            get_system_logger().warning(
                {
                    "event": "certificate_password_invalid",
                    "message": f"Password does not unlock certificate {path.name}; try again",
                }
            )
    raise InvalidCertificatePasswordError(f"No password given for certificate {path}")


def load_certificate_file(
    path: Path,
    password_provider: Callable[[], str],
    *,
    attempts: int = 1,
) -> SigningCertificate:
    """Load a signing certificate from a PKCS#12 or PEM file.

    Tries to open the container without a password first. If that fails,
    ``password_provider`` is called for up to ``attempts`` passwords.

    Args:
        path: Certificate file.
        password_provider: Returns the next password to try; may raise
            SecretNotFoundError when none is available.
        attempts: Passwords to try before giving up.

    Returns:
        SigningCertificate with an RSA private key.

    Raises:
        CertificateNotFoundError: File missing or holds no RSA private key.
        SecretNotFoundError: Password required but none available.
        InvalidCertificatePasswordError: No password unlocks the container.
    """
    if not path.is_file():
        raise CertificateNotFoundError(f"Certificate file not found: {path}")

    data = path.read_bytes()
    loader = _loader_for(path)

    try:
        cert, key = loader(data, None)
    except (ValueError, TypeError):
        cert, key = _unlock(path, data, loader, password_provider, attempts)

    if not isinstance(key, rsa.RSAPrivateKey):
        raise CertificateNotFoundError(
            f"Certificate {path} does not contain an RSA private key; "
            "client assertions require one."
        )

    material = SigningCertificate(certificate=cert, private_key=key, thumbprint=compute_thumbprint(cert))
    if material.not_valid_after < datetime.now(timezone.utc):
        get_system_logger().warning(
            {
                "event": "certificate_expired",
                "thumbprint": material.thumbprint,
                "not_valid_after": material.not_valid_after.isoformat(),
                "message": f"Certificate {material.thumbprint} expired on {material.not_valid_after:%Y-%m-%d}",
            }
        )
    return material


def _peek_certificate(path: Path) -> x509.Certificate | None:
    """Read only the public certificate, without any password."""
    try:
        data = path.read_bytes()
        if path.suffix.lower() in _PKCS12_SUFFIXES:
            _key, cert, _extra = pkcs12.load_key_and_certificates(data, None)
            return cert
        return x509.load_pem_x509_certificate(data)
    except (OSError, ValueError, TypeError):
        return None


def find_store_certificate(thumbprint: str, store_dir: Path | None = None) -> Path:
    """Locate a certificate in the user certificate store by thumbprint.

    Files named ``<THUMBPRINT>.pfx|.p12|.pem`` are matched directly; other
    certificate files in the store are inspected and matched by their
    computed SHA-1 thumbprint.

    Raises:
        CertificateNotFoundError: No certificate with this thumbprint.
    """
    directory = store_dir or get_data_dir() / CERTIFICATE_STORE_DIRNAME
    wanted = thumbprint.replace(":", "").upper()

    if directory.is_dir():
        for suffix in _PKCS12_SUFFIXES + _PEM_SUFFIXES:
            candidate = directory / f"{wanted}{suffix}"
            if candidate.is_file():
                return candidate

        for candidate in sorted(directory.iterdir()):
            if candidate.suffix.lower() not in _PKCS12_SUFFIXES + _PEM_SUFFIXES:
                continue
            cert = _peek_certificate(candidate)
            if cert is not None and compute_thumbprint(cert) == wanted:
                return candidate

    raise CertificateNotFoundError(
        f"No certificate with thumbprint {wanted} in certificate store {directory}"
    )


class _CertificatePasswords:
    """Password provider: the stored certificate password, then prompted ones."""

    def __init__(
        self,
        profile: Profile,
        store: CredentialStore,
        path: Path,
        prompt: Callable[[str], str] | None,
    ) -> None:
        self._profile = profile
        self._store = store
        self._path = path
        self._prompt = prompt
        self._has_stored = store.exists(profile.name, SecretKind.CERTIFICATE_PASSWORD)
        self._stored_used = False
        self.prompted: str | None = None

    @property
    def attempts(self) -> int:
        if self._prompt is None:
            return 1
        return int(self._has_stored) + CERTIFICATE_PASSWORD_ATTEMPTS

    def __call__(self) -> str:
        if self._prompt is None or (self._has_stored and not self._stored_used):
            self._stored_used = True
            return self._store.get(self._profile.name, SecretKind.CERTIFICATE_PASSWORD)
        self.prompted = self._prompt(self._path.name)
        return self.prompted


def resolve_credential_material(
    profile: Profile,
    store: CredentialStore,
    *,
    secret_override: str | None = None,
    certificate_store_dir: Path | None = None,
    prompt_password: Callable[[str], str] | None = None,
) -> CredentialMaterial:
    """Produce ready-to-use application credentials for ``profile``.

    Args:
        profile: Profile being authenticated.
        store: Credential store holding the profile's secrets.
        secret_override: Client secret supplied by the environment.
        certificate_store_dir: Override for the user certificate store.
        prompt_password: Asks for a certificate password given the file name.
            Without it a protected certificate needs a stored password.

    Returns:
        SharedSecret or SigningCertificate, matching ``profile.auth_method``.

    Raises:
        SecretNotFoundError: Client secret or needed certificate password missing.
        CertificateNotFoundError: Certificate file or store entry missing.
        InvalidCertificatePasswordError: No stored or entered password unlocks
            the certificate.
    """
    if profile.auth_method is AuthMethod.CLIENT_SECRET:
        if secret_override:
            return SharedSecret(secret_override)
        return SharedSecret(store.get(profile.name, SecretKind.CLIENT_SECRET))

    if profile.use_store_certificate and profile.thumbprint:
        path = find_store_certificate(profile.thumbprint, certificate_store_dir)
    else:
        path = Path(profile.certificate_path or "").expanduser()

    passwords = _CertificatePasswords(profile, store, path, prompt_password)
    material = load_certificate_file(path, passwords, attempts=passwords.attempts)

    if profile.use_store_certificate and profile.thumbprint and material.thumbprint != profile.thumbprint:
        raise CertificateNotFoundError(
            f"Certificate at {path} has thumbprint {material.thumbprint}, expected {profile.thumbprint}"
        )
    if passwords.prompted is not None and profile.cache_certificate_password:
        store.set(profile.name, SecretKind.CERTIFICATE_PASSWORD, passwords.prompted)
    return material
