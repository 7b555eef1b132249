from .backend_credential import BackendCredentialSigner
from .session_manager import (
    AuthorizationGrant,
    ClientContext,
    OidcSessionBinding,
    SessionManager,
    SessionToken,
)

__all__ = [
    "AuthorizationGrant",
    "BackendCredentialSigner",
    "ClientContext",
    "OidcSessionBinding",
    "SessionManager",
    "SessionToken",
]
