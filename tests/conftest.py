"""Shared test fixtures.

Every test runs with ENTRA_TOKEN_CONFIG_DIR pointing at a temporary
directory and the file credential backend forced, so nothing touches the
real keychain or the user's profiles.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from unittest.mock import MagicMock

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from entra_token.config import Profile
from entra_token.exceptions import SecretNotFoundError
from entra_token.security.auth.http import TokenEndpointClient
from entra_token.security.credential_storage import CredentialStore, SecretKind, secret_key
from entra_token.telemetry.system.system_logger import get_system_logger

TENANT_ID = "11111111-2222-3333-4444-555555555555"
CLIENT_ID = "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"

# Bind the console handler once, outside any CliRunner stream swap
get_system_logger()


# ============================================================================
# Test doubles
# ============================================================================


class InMemoryCredentialStore(CredentialStore):
    """Dict-backed credential store for tests."""

    backend_name = "memory"
    is_secure = True

    def __init__(self) -> None:
        self.secrets: dict[str, str] = {}

    def get(self, profile: str, kind: SecretKind) -> str:
        try:
            return self.secrets[secret_key(profile, kind)]
        except KeyError:
            raise SecretNotFoundError(profile, kind.value) from None

    def set(self, profile: str, kind: SecretKind, value: str) -> None:
        self.secrets[secret_key(profile, kind)] = value

    def delete(self, profile: str, kind: SecretKind) -> None:
        self.secrets.pop(secret_key(profile, kind), None)

    def exists(self, profile: str, kind: SecretKind) -> bool:
        return secret_key(profile, kind) in self.secrets


class FakeClock:
    """Monotonic clock whose sleep() advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# ============================================================================
# Environment isolation
# ============================================================================


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point config/data dirs at tmp and clear credential overrides."""
    config_dir = tmp_path / "entra-token"
    monkeypatch.setenv("ENTRA_TOKEN_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("ENTRA_TOKEN_CREDENTIAL_BACKEND", "file")
    for name in ("ENTRA_TENANT_ID", "ENTRA_CLIENT_ID", "ENTRA_CLIENT_SECRET", "ENTRA_TOKEN_EXPORT_PASSPHRASE"):
        monkeypatch.delenv(name, raising=False)
    return config_dir


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    """Empty in-memory credential store."""
    return InMemoryCredentialStore()


@pytest.fixture
def profile_factory() -> Callable[..., Profile]:
    """Build valid profiles with overridable fields."""

    def make(**overrides: Any) -> Profile:
        fields: dict[str, Any] = {
            "name": "graph-prod",
            "tenant_id": TENANT_ID,
            "client_id": CLIENT_ID,
            "scopes": [GRAPH_SCOPE],
        }
        fields.update(overrides)
        return Profile(**fields)

    return make


@pytest.fixture
def profile(profile_factory: Callable[..., Profile]) -> Profile:
    """ClientSecret profile for Microsoft Graph."""
    return profile_factory()


@pytest.fixture
def http_client() -> MagicMock:
    """httpx.Client mock; set request.return_value or side_effect per test."""
    return MagicMock(spec=httpx.Client)


@pytest.fixture
def endpoint_client(http_client: MagicMock) -> TokenEndpointClient:
    """TokenEndpointClient over the mocked httpx client, no backoff delay."""
    return TokenEndpointClient(http_client, initial_delay=0)


@pytest.fixture
def json_response() -> Callable[..., httpx.Response]:
    """Build an httpx.Response with a JSON body."""

    def make(payload: dict[str, Any], status_code: int = 200) -> httpx.Response:
        return httpx.Response(
            status_code,
            json=payload,
            request=httpx.Request("POST", "https://login.microsoftonline.com/"),
        )

    return make


@pytest.fixture
def token_payload() -> Callable[..., dict[str, Any]]:
    """Build a token endpoint success body."""

    def make(access_token: str = "access-1", **extra: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "token_type": "Bearer",
            "access_token": access_token,
            "expires_in": 3600,
        }
        payload.update(extra)
        return payload

    return make


@pytest.fixture
def fake_clock(monkeypatch: pytest.MonkeyPatch) -> FakeClock:
    """Replace time.monotonic and time.sleep with a virtual clock."""
    clock = FakeClock()
    monkeypatch.setattr("time.monotonic", clock.monotonic)
    monkeypatch.setattr("time.sleep", clock.sleep)
    return clock


@pytest.fixture
def certificate_factory(tmp_path: Path) -> Callable[..., tuple[Path, str]]:
    """Write a self-signed RSA certificate; returns (path, SHA-1 thumbprint).

    Args (of the returned callable):
        name: File name; ".pfx"/".p12" writes PKCS#12, anything else PEM.
        password: Protects the container (None for unencrypted).
        directory: Target directory (defaults to tmp_path).
    """

    def make(name: str = "app.pfx", password: str | None = None, directory: Path | None = None) -> tuple[Path, str]:
        key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, f"entra-token-test-{uuid.uuid4().hex[:8]}")])
        now = datetime.now(timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(days=1))
            .not_valid_after(now + timedelta(days=30))
            .sign(key, hashes.SHA256())
        )

        encryption: serialization.KeySerializationEncryption
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode())
        else:
            encryption = serialization.NoEncryption()

        target_dir = directory or tmp_path
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        if path.suffix.lower() in (".pfx", ".p12"):
            path.write_bytes(pkcs12.serialize_key_and_certificates(b"test", key, cert, None, encryption))
        else:
            key_pem = key.private_bytes(serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption)
            path.write_bytes(cert.public_bytes(serialization.Encoding.PEM) + key_pem)

        thumbprint = cert.fingerprint(hashes.SHA1()).hex().upper()
        return path, thumbprint

    return make
