"""Application-wide constants for entra-token.

Constants that define application behavior.
For per-profile settings, see config.py.
"""

import os

__all__ = [
    # Application identity
    "APP_NAME",
    "KEYRING_SERVICE",
    # Directories and files
    "CONFIG_DIR_ENV_VAR",
    "get_config_dir",
    "get_data_dir",
    "PROFILES_FILENAME",
    "TOKEN_CACHE_FILENAME",
    "SYSTEM_LOG_FILENAME",
    "LAST_TOKEN_FILENAME",
    "CERTIFICATE_STORE_DIRNAME",
    "SECRETS_DIRNAME",
    # Environment overrides
    "ENV_TENANT_ID",
    "ENV_CLIENT_ID",
    "ENV_CLIENT_SECRET",
    "ENV_CREDENTIAL_BACKEND",
    # Authority
    "DEFAULT_AUTHORITY_HOST",
    "GRAPH_API_BASE",
    "GRAPH_DEFAULT_SCOPE",
    "GRAPH_DISCOVERY_SCOPES",
    "GRAPH_DISCOVERY_CLIENT_ID",
    "GRAPH_DISCOVERY_PROFILE",
    "DEFAULT_REDIRECT_URI",
    # Token cache
    "TOKEN_SKEW_MARGIN_SECONDS",
    "DEFAULT_EXPIRES_IN_SECONDS",
    "EXPIRY_WARNING_SECONDS",
    # HTTP layer
    "OAUTH_CLIENT_TIMEOUT_SECONDS",
    "HTTP_RETRY_MAX_ATTEMPTS",
    "HTTP_RETRY_INITIAL_DELAY",
    "HTTP_RETRY_BACKOFF_MULTIPLIER",
    # Client assertion
    "CLIENT_ASSERTION_LIFETIME_SECONDS",
    "CLIENT_ASSERTION_TYPE",
    "CERTIFICATE_PASSWORD_ATTEMPTS",
    # Device flow
    "DEVICE_FLOW_POLL_INTERVAL_SECONDS",
    "DEVICE_FLOW_TIMEOUT_SECONDS",
    "DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS",
    # Interactive browser
    "LOOPBACK_HOST",
    "LOOPBACK_CALLBACK_PATH",
    "INTERACTIVE_TIMEOUT_SECONDS",
    # Key derivation
    "MACHINE_KEY_ITERATIONS",
    "EXPORT_KEY_ITERATIONS",
]

from pathlib import Path

from platformdirs import user_config_dir, user_data_dir

# ============================================================================
# Application Identity
# ============================================================================

# Application name used for directory names, keyring service, loggers
APP_NAME: str = "entra-token"

# Keyring service namespace for all stored secrets
KEYRING_SERVICE: str = APP_NAME

# ============================================================================
# Directories and Files
# ============================================================================

# Overrides both config and data directories (tests, portable installs)
CONFIG_DIR_ENV_VAR: str = "ENTRA_TOKEN_CONFIG_DIR"

PROFILES_FILENAME: str = "profiles.json"
TOKEN_CACHE_FILENAME: str = "token_cache.json"
SYSTEM_LOG_FILENAME: str = "system.jsonl"
LAST_TOKEN_FILENAME: str = "last_token.txt"
CERTIFICATE_STORE_DIRNAME: str = "certificates"
SECRETS_DIRNAME: str = "secrets"


def get_config_dir() -> Path:
    """Directory holding profiles.json and the token cache.

    Platform-specific paths:
    - macOS: ~/Library/Application Support/entra-token/
    - Linux: ~/.config/entra-token/
    - Windows: %LOCALAPPDATA%\\entra-token\\
    """
    override = os.environ.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(os.path.realpath(user_config_dir(APP_NAME)))


def get_data_dir() -> Path:
    """Directory holding the fallback secret store and the certificate store."""
    override = os.environ.get(CONFIG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path(os.path.realpath(user_data_dir(APP_NAME)))


# ============================================================================
# Environment Overrides
# ============================================================================

# Read once at profile resolution time, never persisted
ENV_TENANT_ID: str = "ENTRA_TENANT_ID"
ENV_CLIENT_ID: str = "ENTRA_CLIENT_ID"
ENV_CLIENT_SECRET: str = "ENTRA_CLIENT_SECRET"

# Forces the credential backend: "keychain" or "file"
ENV_CREDENTIAL_BACKEND: str = "ENTRA_TOKEN_CREDENTIAL_BACKEND"

# ============================================================================
# Authority
# ============================================================================

DEFAULT_AUTHORITY_HOST: str = "https://login.microsoftonline.com"

# Used by `discover` to call Microsoft Graph
GRAPH_API_BASE: str = "https://graph.microsoft.com/v1.0"
GRAPH_DEFAULT_SCOPE: str = "https://graph.microsoft.com/.default"
GRAPH_DISCOVERY_SCOPES: tuple[str, ...] = (
    "https://graph.microsoft.com/Application.Read.All",
    "https://graph.microsoft.com/Directory.Read.All",
)

# Microsoft Graph command-line tools, a well-known public client usable in any tenant
GRAPH_DISCOVERY_CLIENT_ID: str = "14d82eec-204b-4c2f-b7e8-296a70dab67e"
GRAPH_DISCOVERY_PROFILE: str = "graph-discovery"

# Redirect URI used for the authorization code flow when the profile has none
DEFAULT_REDIRECT_URI: str = "http://localhost"

# ============================================================================
# Token Cache
# ============================================================================

# Tokens expiring within this window are treated as expired
TOKEN_SKEW_MARGIN_SECONDS: int = 60

# Used when the authority omits expires_in
DEFAULT_EXPIRES_IN_SECONDS: int = 3600

# `get-token --warn-expiry` threshold
EXPIRY_WARNING_SECONDS: int = 300

# ============================================================================
# HTTP Layer
# ============================================================================

OAUTH_CLIENT_TIMEOUT_SECONDS: int = 30

# Transport-level retries only; protocol errors are never retried
HTTP_RETRY_MAX_ATTEMPTS: int = 3
HTTP_RETRY_INITIAL_DELAY: float = 0.5
HTTP_RETRY_BACKOFF_MULTIPLIER: float = 2.0

# ============================================================================
# Client Assertion (RFC 7523)
# ============================================================================

CLIENT_ASSERTION_LIFETIME_SECONDS: int = 600
CLIENT_ASSERTION_TYPE: str = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Interactive password entries before a protected certificate is given up on
CERTIFICATE_PASSWORD_ATTEMPTS: int = 3

# ============================================================================
# Device Flow (RFC 8628)
# ============================================================================

DEVICE_FLOW_POLL_INTERVAL_SECONDS: int = 5
DEVICE_FLOW_TIMEOUT_SECONDS: int = 900
DEVICE_FLOW_SLOW_DOWN_INCREMENT_SECONDS: int = 5

# ============================================================================
# Interactive Browser
# ============================================================================

LOOPBACK_HOST: str = "127.0.0.1"
LOOPBACK_CALLBACK_PATH: str = "/"
INTERACTIVE_TIMEOUT_SECONDS: int = 300

# ============================================================================
# Key Derivation
# ============================================================================

# Machine-bound fallback store (PBKDF2-HMAC-SHA256)
MACHINE_KEY_ITERATIONS: int = 100_000

# Passphrase-encrypted profile exports
EXPORT_KEY_ITERATIONS: int = 600_000
