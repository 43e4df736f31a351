"""Security domain: secret storage, credential material, OAuth2 flows.

Structure:
    keyring_utils        Keyring availability probe
    credential_storage   Multi-backend secret store (keychain / machine-bound file)
    certificate          Credential material resolution (secret or certificate)
    auth/                OAuth2 flows, token cache, JWT inspection

Import directly from submodules:
    from entra_token.security.credential_storage import create_credential_store
"""

__all__: list[str] = []
