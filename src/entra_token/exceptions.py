"""Custom exceptions for entra-token.

Every error raised by the engine derives from EntraTokenError and carries a
distinct ``exit_code`` and ``error_kind`` so the command layer can map it to a
process exit status without inspecting messages.

Categories:

User Input Errors (never retried):
    - ProfileNotFoundError, DuplicateProfileError, ProfileValidationError
    - ConfigurationError: profile store or environment unusable

Credential Errors (require user action, never retried):
    - SecretNotFoundError: secret kind never written
    - SecretDecryptionError: stored secret unreadable after identity change
    - CertificateNotFoundError: certificate file or store entry missing
    - InvalidCertificatePasswordError: certificate cannot be unlocked
    - CredentialStoreError: backend failure (keychain locked, I/O error)

Authentication Errors (surfaced verbatim from the authority):
    - AuthorityError: any ``error=`` response from the token endpoint
    - DeviceCodeExpiredError, RefreshTokenExpiredError
    - StateMismatchError: callback failed anti-CSRF check
    - BrowserUnavailableError: no display/browser for interactive sign-in

Transient / Lifecycle:
    - NetworkError: transport failure after bounded retries
    - FlowCancelledError, FlowTimeoutError
    - CacheCorruptionError: recovered locally, never fatal

Usage:
    from entra_token.exceptions import ProfileNotFoundError, AuthorityError
"""

from __future__ import annotations

__all__ = [
    "AuthenticationError",
    "AuthorityError",
    "BrowserUnavailableError",
    "CacheCorruptionError",
    "CertificateNotFoundError",
    "ConfigurationError",
    "CredentialError",
    "CredentialStoreError",
    "DeviceCodeExpiredError",
    "DuplicateProfileError",
    "EntraTokenError",
    "ExportDecryptionError",
    "FlowCancelledError",
    "FlowTimeoutError",
    "InvalidCertificatePasswordError",
    "InvalidFlowTransition",
    "NetworkError",
    "ProfileNotFoundError",
    "ProfileValidationError",
    "RefreshTokenExpiredError",
    "SecretDecryptionError",
    "SecretNotFoundError",
    "StateMismatchError",
]


class EntraTokenError(Exception):
    """Base exception for all entra-token errors.

    Attributes:
        exit_code: Process exit code used by the CLI.
        error_kind: Stable category string for logs and JSON output.
    """

    exit_code: int = 1
    error_kind: str = "error"


# =============================================================================
# User Input Errors
# =============================================================================


class ProfileNotFoundError(EntraTokenError):
    """No profile with the requested name exists."""

    exit_code = 3
    error_kind = "profile_not_found"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Profile '{name}' not found. Run 'entra-token config list' to see available profiles."
        )


class DuplicateProfileError(EntraTokenError):
    """A profile with the requested name already exists."""

    exit_code = 4
    error_kind = "duplicate_profile"

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Profile '{name}' already exists.")


class ProfileValidationError(EntraTokenError):
    """Profile fields are inconsistent or incomplete.

    Attributes:
        errors: Individual validation messages.
    """

    exit_code = 2
    error_kind = "profile_invalid"

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        self.errors = errors or []
        super().__init__(message)


class ConfigurationError(EntraTokenError):
    """Configuration is invalid or unreadable.

    Raised when:
    - profiles.json contains invalid JSON or fails validation
    - An environment override is malformed
    """

    exit_code = 2
    error_kind = "configuration_error"


# =============================================================================
# Credential Errors
# =============================================================================


class CredentialError(EntraTokenError):
    """Base for credential resolution failures."""

    exit_code = 5
    error_kind = "credential_error"


class SecretNotFoundError(CredentialError):
    """A secret of the requested kind was never stored for the profile."""

    error_kind = "secret_not_found"

    def __init__(self, profile: str, kind: str) -> None:
        self.profile = profile
        self.kind = kind
        super().__init__(
            f"No {kind} stored for profile '{profile}'. "
            f"Store one with 'entra-token config set-secret -p {profile}'."
        )


class SecretDecryptionError(CredentialError):
    """Stored secret exists but cannot be decrypted on this machine/user."""

    error_kind = "secret_undecryptable"

    def __init__(self, profile: str, kind: str) -> None:
        self.profile = profile
        self.kind = kind
        super().__init__(
            f"Cannot decrypt stored {kind} for profile '{profile}' "
            "(machine or user identity changed). Re-enter the secret or re-authenticate."
        )


class CertificateNotFoundError(CredentialError):
    """Certificate file or certificate store entry does not exist."""

    error_kind = "certificate_not_found"


class InvalidCertificatePasswordError(CredentialError):
    """Certificate exists but the stored password does not unlock it."""

    error_kind = "invalid_certificate_password"


class CredentialStoreError(CredentialError):
    """Secret backend failed (keychain locked, I/O error)."""

    error_kind = "credential_store_error"


class ExportDecryptionError(CredentialError):
    """Encrypted profile export cannot be opened with the given passphrase."""

    error_kind = "export_decryption_failed"


# =============================================================================
# Authentication Errors
# =============================================================================


class AuthenticationError(EntraTokenError):
    """Authentication with the authority failed."""

    exit_code = 6
    error_kind = "authentication_failed"


class AuthorityError(AuthenticationError):
    """The token endpoint returned an OAuth2 ``error=`` response.

    Attributes:
        code: OAuth2 error code (e.g. ``invalid_client``).
        description: ``error_description`` as returned by the authority.
    """

    error_kind = "authority_error"

    def __init__(self, code: str, description: str | None = None) -> None:
        self.code = code
        self.description = description or ""
        message = f"{code}: {self.description}" if self.description else code
        super().__init__(message)


class DeviceCodeExpiredError(AuthorityError):
    """Device code expired before the user completed sign-in."""

    exit_code = 8
    error_kind = "expired_token"


class RefreshTokenExpiredError(AuthorityError):
    """Refresh token is expired or revoked; a full flow is required."""

    exit_code = 8
    error_kind = "expired_token"


class StateMismatchError(AuthenticationError):
    """Authorization callback ``state`` does not match this attempt."""

    error_kind = "state_mismatch"


class BrowserUnavailableError(AuthenticationError):
    """No browser or display is available for interactive sign-in."""

    error_kind = "browser_unavailable"


class InvalidFlowTransition(AuthenticationError):
    """A flow state machine was driven through an illegal transition."""

    error_kind = "invalid_flow_transition"


# =============================================================================
# Transient / Lifecycle
# =============================================================================


class NetworkError(EntraTokenError):
    """Transport failure talking to the authority after bounded retries."""

    exit_code = 7
    error_kind = "network_error"


class FlowCancelledError(EntraTokenError):
    """The caller cancelled an in-progress flow."""

    exit_code = 130
    error_kind = "cancelled"


class FlowTimeoutError(EntraTokenError):
    """The flow did not complete before its deadline."""

    exit_code = 9
    error_kind = "timed_out"


class CacheCorruptionError(EntraTokenError):
    """A token cache file or entry is malformed.

    Recovered inside the cache by treating it as a miss.
    """

    error_kind = "cache_corruption"
