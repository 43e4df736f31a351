"""OS keychain probing.

The keyring library imports fine on machines where nothing can actually be
stored (headless Linux without Secret Service, locked keychains), so the
credential store backend is chosen from a real round trip, not from import
success.
"""

from __future__ import annotations

__all__ = [
    "KeyringProbe",
    "describe_keyring_backend",
    "is_keyring_available",
    "probe_keyring",
]

from dataclasses import dataclass

import keyring
from keyring.backends.fail import Keyring as FailKeyring
from keyring.errors import KeyringError

from entra_token.constants import APP_NAME
from entra_token.telemetry.system.system_logger import get_system_logger

_PROBE_USER = "availability-check"
_PROBE_VALUE = "probe"


@dataclass(frozen=True)
class KeyringProbe:
    """Outcome of a keychain round trip.

    Attributes:
        available: True when a value could be written, read back and deleted.
        backend: Dotted class name of the active keyring backend.
        reason: Why the keychain is unusable (None when available).
    """

    available: bool
    backend: str
    reason: str | None = None


def describe_keyring_backend() -> str:
    """Dotted class name of the active keyring backend."""
    backend = keyring.get_keyring()
    return f"{type(backend).__module__}.{type(backend).__name__}"


def probe_keyring(service_suffix: str = "probe") -> KeyringProbe:
    """Write, read back and delete a throwaway value in the keychain.

    Args:
        service_suffix: Probe entries go under "{APP_NAME}-{suffix}" so they
            never collide with real secrets.
    """
    backend_name = describe_keyring_backend()
    if isinstance(keyring.get_keyring(), FailKeyring):
        return KeyringProbe(False, backend_name, "no usable keyring backend")

    service = f"{APP_NAME}-{service_suffix}"
    try:
        keyring.set_password(service, _PROBE_USER, _PROBE_VALUE)
        value = keyring.get_password(service, _PROBE_USER)
        keyring.delete_password(service, _PROBE_USER)
    except KeyringError as e:
        return KeyringProbe(False, backend_name, f"{type(e).__name__}: {e}")
    except Exception as e:
        # DBus and permission failures surface as arbitrary exception types
        return KeyringProbe(False, backend_name, f"{type(e).__name__}: {e}")

    if value != _PROBE_VALUE:
        return KeyringProbe(False, backend_name, "keychain did not return the stored value")
    return KeyringProbe(True, backend_name)


def is_keyring_available(service_suffix: str = "probe") -> bool:
    """True if the keychain can store and return secrets."""
    result = probe_keyring(service_suffix)
    if not result.available:
        get_system_logger().debug(
            {
                "event": "keyring_unavailable",
                "backend": result.backend,
                "reason": result.reason,
                "message": f"OS keychain unavailable: {result.reason}",
            }
        )
    return result.available
