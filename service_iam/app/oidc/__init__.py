from .applications import OidcApplicationRegistry
from .federation_client import OidcFederationClient, OidcProviderRegistry

__all__ = ["OidcApplicationRegistry", "OidcFederationClient", "OidcProviderRegistry"]
