"""entra-token: OAuth2 token acquisition for Microsoft Entra ID."""

__version__ = "0.1.0"

__all__ = ["__version__"]
