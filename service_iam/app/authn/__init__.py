from .authenticator import Authenticator
from .claims import AuthMethod, CredentialClaim, DirectoryClaim, FederationClaim, PasswordClaim

__all__ = [
    "AuthMethod",
    "Authenticator",
    "CredentialClaim",
    "DirectoryClaim",
    "FederationClaim",
    "PasswordClaim",
]
