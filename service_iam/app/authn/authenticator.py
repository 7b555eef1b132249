"""
Authentication front door.

``authenticate`` looks the declared method up in a dispatch table and
runs exactly one path. Every rejection is the same generic
``AuthenticationFailure``; an unreachable directory or provider is an
``ExternalServiceUnavailable`` instead, so clients know to back off.
"""

from typing import Awaitable, Callable, Dict, Optional, Type, Union

from shared.errors import AuthenticationFailure, ExternalServiceUnavailable
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..credentials import CredentialStore, OtpService
from ..directory import DirectoryGroupSync, LdapDirectoryClient
from ..hooks import HookDispatcher, HookEventKind
from ..oidc import OidcProviderRegistry
from ..principal import Principal
from ..rbac import RbacDirectory
from ..rbac.models import User
from ..tokens import SessionManager
from .claims import AuthMethod, CredentialClaim, DirectoryClaim, FederationClaim, PasswordClaim

Handler = Callable[[CredentialClaim], Awaitable[Principal]]


class Authenticator:
    """Resolve credential claims to principals."""

    def __init__(self,
                 rbac: RbacDirectory,
                 credentials: CredentialStore,
                 otp: OtpService,
                 sessions: SessionManager,
                 ldap: Optional[LdapDirectoryClient] = None,
                 oidc: Optional[OidcProviderRegistry] = None,
                 hooks: Optional[HookDispatcher] = None,
                 metrics: Optional[MetricsCollector] = None,
                 password_enabled: bool = True,
                 ldap_auto_provision: bool = False,
                 ldap_sync_groups: bool = True):
        self.rbac = rbac
        self.repository = rbac.repository
        self.credentials = credentials
        self.otp = otp
        self.sessions = sessions
        self.ldap = ldap
        self.group_sync = DirectoryGroupSync(rbac) if ldap_sync_groups else None
        self.oidc = oidc or OidcProviderRegistry()
        self.hooks = hooks
        self.metrics = metrics
        self.password_enabled = password_enabled
        self.ldap_auto_provision = ldap_auto_provision
        self.logger = get_logger("iam.authn")

        self._handlers: Dict[AuthMethod, Handler] = {
            AuthMethod.PASSWORD: self._password,
            AuthMethod.LDAP: self._directory,
            AuthMethod.OIDC: self._federation,
        }
        self._claim_types: Dict[AuthMethod, Type] = {
            AuthMethod.PASSWORD: PasswordClaim,
            AuthMethod.LDAP: DirectoryClaim,
            AuthMethod.OIDC: FederationClaim,
        }

    async def authenticate(self, method: Union[AuthMethod, str], claim: CredentialClaim) -> Principal:
        try:
            method = AuthMethod(method)
        except ValueError:
            raise AuthenticationFailure("Unsupported authentication method")
        if not isinstance(claim, self._claim_types[method]):
            raise AuthenticationFailure()

        try:
            principal = await self._handlers[method](claim)
        except AuthenticationFailure:
            self._record(method, "failure")
            self.logger.info("Sign-in failed", method=method.value)
            raise
        except ExternalServiceUnavailable as e:
            self._record(method, "unavailable")
            self.logger.warning("Sign-in unavailable", method=method.value, service=e.service, reason=e.reason)
            raise

        self._record(method, "success")
        self.logger.info("Sign-in succeeded", method=method.value, user_id=principal.user_id)
        if self.hooks is not None:
            self.hooks.fire(HookEventKind.SIGN_IN, user_id=principal.user_id, account=principal.account,
                            method=method.value)
        return principal

    def _record(self, method: AuthMethod, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_authentication(method.value, outcome)

    @staticmethod
    def _usable(user: Optional[User]) -> User:
        if user is None or user.locked:
            raise AuthenticationFailure()
        return user

    async def _password(self, claim: PasswordClaim) -> Principal:
        if not self.password_enabled:
            raise AuthenticationFailure()
        user = await self.repository.find_user_by_account(claim.account)
        if user is None or user.locked:
            await self.credentials.verify_password(None, claim.password)
            raise AuthenticationFailure()

        if not await self.credentials.verify_password(user, claim.password):
            await self.credentials.record_failure(user)
            raise AuthenticationFailure()
        if await self.otp.has_key(user) and not await self.otp.verify(user, claim.one_time_password):
            await self.credentials.record_failure(user)
            raise AuthenticationFailure()

        await self.credentials.record_success(user)
        return Principal(user_id=user.id, account=user.account, auth_method=AuthMethod.PASSWORD.value)

    async def _directory(self, claim: DirectoryClaim) -> Principal:
        if self.ldap is None or not self.ldap.enabled:
            raise AuthenticationFailure()

        entry = await self.ldap.authenticate(claim.account, claim.password)
        if entry is None:
            raise AuthenticationFailure()

        user = await self.repository.find_user_by_account(claim.account)
        if user is None and self.ldap_auto_provision:
            user = await self.rbac.create_user(claim.account, name=entry.attributes.get("name"),
                                               email=entry.attributes.get("email"))
        user = self._usable(user)

        if self.group_sync is not None:
            await self.group_sync.sync(user, entry.groups)
        return Principal(user_id=user.id, account=user.account, auth_method=AuthMethod.LDAP.value,
                         attributes={"groups": entry.groups})

    async def _federation(self, claim: FederationClaim) -> Principal:
        client = self.oidc.get(claim.provider)
        if client is None:
            raise AuthenticationFailure()

        id_claims = await client.exchange_code(claim.code, claim.redirect_uri, claim.nonce)
        subject = id_claims["sub"]
        user = await self.repository.find_user_by_identity(claim.provider, subject)
        if user is None:
            binding = await self.sessions.bind_oidc_session(
                claim.provider, subject,
                claims={k: id_claims.get(k) for k in ("email", "name", "preferred_username") if k in id_claims})
            self.logger.info("Federated identity not linked", provider=claim.provider)
            raise AuthenticationFailure("Federated identity is not linked to an account",
                                        details={"oidc_session_id": binding.id})

        user = self._usable(user)
        return Principal(user_id=user.id, account=user.account, auth_method=AuthMethod.OIDC.value,
                         provider=claim.provider)
