"""
Registry of client applications allowed to request authorization codes.

A client is registered under a name and receives a generated client id
and secret. The secret is shown once, at creation or rotation, and only
its bcrypt hash is stored.
"""

import asyncio
import secrets
from typing import Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from shared.errors import AuthenticationFailure, NotFound, ValidationError
from shared.logging import get_logger

from ..credentials import check_password, hash_password
from ..rbac.models import NAME_PATTERN, OidcApplication
from ..rbac.repository import DirectoryRepository

# Checked against for unknown client ids.
_UNKNOWN_CLIENT_HASH = hash_password("unknown-client-placeholder")


def _check_redirect_uris(uris: Iterable[str]) -> List[str]:
    checked = []
    for uri in uris:
        parts = urlsplit(uri)
        if parts.scheme not in ("http", "https") or not parts.netloc or parts.fragment:
            raise ValidationError("Invalid redirect URI", details={"redirect_uri": uri})
        checked.append(uri)
    return checked


class OidcApplicationRegistry:
    """Manage client applications and vet their authorization requests."""

    def __init__(self, repository: DirectoryRepository):
        self.repository = repository
        self.logger = get_logger("iam.oidc.applications")

    @staticmethod
    def _new_secret() -> Tuple[str, str]:
        secret = secrets.token_urlsafe(32)
        return secret, hash_password(secret)

    async def create(self, name: str, redirect_uris: Iterable[str] = (),
                     description: Optional[str] = None) -> Tuple[OidcApplication, str]:
        """Register a client. Returns the application and its plaintext secret."""
        if not name or not NAME_PATTERN.match(name):
            raise ValidationError("Invalid OIDC application name",
                                  violations=[f"name must match {NAME_PATTERN.pattern}"])
        uris = _check_redirect_uris(redirect_uris)
        secret, secret_hash = await asyncio.to_thread(self._new_secret)
        application = OidcApplication(name=name, client_id=secrets.token_urlsafe(16),
                                      client_secret_hash=secret_hash, description=description,
                                      redirect_uris=uris)
        await self.repository.add_oidc_application(application)
        self.logger.info("OIDC application registered", oidc_application=name, client_id=application.client_id)
        return application, secret

    async def get(self, name: str) -> OidcApplication:
        application = await self.repository.find_oidc_application_by_name(name)
        if application is None:
            raise NotFound("OIDC application not found", details={"oidc_application": name})
        return application

    async def list(self, offset: int = 0, limit: int = 100) -> List[OidcApplication]:
        return await self.repository.list_oidc_applications(offset, limit)

    async def update(self, name: str, new_name: Optional[str] = None, description: Optional[str] = None,
                     redirect_uris: Optional[Iterable[str]] = None) -> OidcApplication:
        application = await self.get(name)
        if new_name is not None:
            if not NAME_PATTERN.match(new_name):
                raise ValidationError("Invalid OIDC application name",
                                      violations=[f"name must match {NAME_PATTERN.pattern}"])
            application.name = new_name
        if description is not None:
            application.description = description
        if redirect_uris is not None:
            application.redirect_uris = _check_redirect_uris(redirect_uris)
        await self.repository.update_oidc_application(application)
        return application

    async def rotate_secret(self, name: str) -> Tuple[OidcApplication, str]:
        """Replace the client secret; the previous one stops working at once."""
        application = await self.get(name)
        secret, application.client_secret_hash = await asyncio.to_thread(self._new_secret)
        await self.repository.update_oidc_application(application)
        self.logger.info("OIDC application secret rotated", oidc_application=name)
        return application, secret

    async def delete(self, name: str) -> None:
        application = await self.get(name)
        await self.repository.delete_oidc_application(application.id)
        self.logger.info("OIDC application deleted", oidc_application=name)

    async def authorize(self, client_id: str, redirect_uri: Optional[str]) -> Optional[str]:
        """Check a code request and return the redirect URI the code is bound to.

        Without a redirect URI the client's only registered one is used;
        a client with several must say which.
        """
        application = await self.repository.find_oidc_application_by_client_id(client_id)
        if application is None:
            raise ValidationError("Unknown client", details={"client_id": client_id})
        if redirect_uri is None:
            if len(application.redirect_uris) > 1:
                raise ValidationError("Redirect URI required", details={"client_id": client_id})
            return application.redirect_uris[0] if application.redirect_uris else None
        if redirect_uri not in application.redirect_uris:
            raise ValidationError("Redirect URI is not registered for this client",
                                  details={"client_id": client_id, "redirect_uri": redirect_uri})
        return redirect_uri

    async def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> OidcApplication:
        """Verify client credentials. Every rejection looks the same."""
        application = await self.repository.find_oidc_application_by_client_id(client_id) if client_id else None
        secret_hash = application.client_secret_hash if application else None
        valid = await asyncio.to_thread(check_password, client_secret or "", secret_hash or _UNKNOWN_CLIENT_HASH)
        if application is None or not valid:
            self.logger.info("Client authentication failed", client_id=client_id)
            raise AuthenticationFailure("Client authentication failed")
        return application

