"""
Credential claims, one variant per authentication method.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class AuthMethod(str, Enum):
    PASSWORD = "password"
    LDAP = "ldap"
    OIDC = "oidc"


@dataclass(frozen=True)
class PasswordClaim:
    """Account and password held locally, plus the OTP when the user has a key."""
    account: str
    password: str = field(repr=False)
    one_time_password: Optional[str] = field(default=None, repr=False)


@dataclass(frozen=True)
class DirectoryClaim:
    """Account and password verified by binding to the LDAP directory."""
    account: str
    password: str = field(repr=False)


@dataclass(frozen=True)
class FederationClaim:
    """Authorization code returned by an external OIDC provider."""
    provider: str
    code: str = field(repr=False)
    redirect_uri: Optional[str] = None
    nonce: Optional[str] = None


CredentialClaim = Union[PasswordClaim, DirectoryClaim, FederationClaim]
