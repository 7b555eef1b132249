"""
Session tokens, authorization codes and OIDC session bindings.

All state lives in the key-value store under a fixed TTL. A token issued
at T with TTL D validates on [T, T+D) and reports ``TokenExpired`` from
T+D on. The store cannot tell an evicted key from one that never
existed, so both surface as ``TokenExpired``.

Revocation and redemption overwrite the stored value with a marker that
keeps the remaining TTL (one atomic store command), so a revoked token
reads as ``TokenInvalid`` and a redeemed code as ``AlreadyRedeemed``.
"""

import json
import re
import secrets
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol

from shared.clock import Clock, SystemClock
from shared.errors import AlreadyRedeemed, AuthenticationFailure, TokenExpired, TokenInvalid
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..hooks import HookDispatcher, HookEventKind
from ..kvs import KeyValueStore
from ..principal import Principal

REVOKED = "__revoked__"
REDEEMED = "__redeemed__"

_TOKEN_FORMAT = re.compile(r"^[A-Za-z0-9_\-]{16,128}$")


class ClientRegistry(Protocol):
    """Vets the clients that authorization codes are issued to."""

    async def authorize(self, client_id: str, redirect_uri: Optional[str]) -> Optional[str]: ...
    async def authenticate(self, client_id: Optional[str], client_secret: Optional[str]) -> Any: ...


@dataclass(frozen=True)
class SessionToken:
    value: str
    principal: Principal
    issued_at: float
    expires_at: float

    @property
    def ttl(self) -> float:
        return self.expires_at - self.issued_at


@dataclass(frozen=True)
class ClientContext:
    """The client asking for an authorization code on behalf of a principal."""
    client_id: str
    principal: Principal
    redirect_uri: Optional[str] = None
    scope: str = "openid"
    nonce: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationGrant:
    code: str
    client_id: str
    principal: Principal
    redirect_uri: Optional[str]
    scope: str
    nonce: Optional[str]
    issued_at: float


@dataclass(frozen=True)
class OidcSessionBinding:
    """An external identity waiting to be (or already) linked to a local user."""
    id: str
    provider: str
    subject: str
    expires_at: float
    user_id: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


class SessionManager:
    """Issue, validate and revoke short-lived artifacts."""

    def __init__(self,
                 kvs: KeyValueStore,
                 token_expires: float = 1800,
                 code_expires: float = 60,
                 oidc_session_expires: float = 180,
                 clock: Optional[Clock] = None,
                 token_factory: Callable[[int], str] = secrets.token_urlsafe,
                 metrics: Optional[MetricsCollector] = None,
                 hooks: Optional[HookDispatcher] = None,
                 clients: Optional[ClientRegistry] = None):
        self.kvs = kvs
        self.clients = clients
        self.token_expires = token_expires
        self.code_expires = code_expires
        self.oidc_session_expires = oidc_session_expires
        self.clock = clock or SystemClock()
        self._token_factory = token_factory
        self.metrics = metrics
        self.hooks = hooks
        self.logger = get_logger("iam.tokens")

    def _record(self, operation: str, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_token_operation(operation, outcome)

    def _new_value(self) -> str:
        return self._token_factory(32)

    @staticmethod
    def _check_format(value: Optional[str]) -> str:
        if not value or not _TOKEN_FORMAT.match(value):
            raise TokenInvalid()
        return value

    # Session tokens

    async def issue(self, principal: Principal) -> SessionToken:
        issued_at = self.clock.now()
        token = SessionToken(value=self._new_value(), principal=principal, issued_at=issued_at,
                             expires_at=issued_at + self.token_expires)
        await self.kvs.put(f"session:{token.value}", json.dumps({
            "principal": principal.to_dict(),
            "issued_at": token.issued_at,
            "expires_at": token.expires_at,
        }), self.token_expires)

        self._record("issue", "success")
        self.logger.info("Session token issued", user_id=principal.user_id, expires_in=self.token_expires)
        return token

    async def validate(self, value: Optional[str]) -> Principal:
        """Resolve a session token to its principal."""
        session = await self.get_session(value)
        return session.principal

    async def get_session(self, value: Optional[str]) -> SessionToken:
        try:
            value = self._check_format(value)
            raw = await self.kvs.get(f"session:{value}")
            if raw is None:
                raise TokenExpired()
            if raw == REVOKED:
                raise TokenInvalid("Token revoked")

            data = json.loads(raw)
            if self.clock.now() >= data["expires_at"]:
                raise TokenExpired()
        except (TokenExpired, TokenInvalid) as e:
            self._record("validate", e.code.lower())
            raise

        self._record("validate", "success")
        return SessionToken(value=value, principal=Principal.from_dict(data["principal"]),
                            issued_at=data["issued_at"], expires_at=data["expires_at"])

    async def revoke(self, value: Optional[str]) -> bool:
        """Revoke a token. Returns False if it was not active."""
        if not value or not _TOKEN_FORMAT.match(value):
            return False
        previous = await self.kvs.mark_if_present(f"session:{value}", REVOKED)
        if previous is None or previous == REVOKED:
            self._record("revoke", "not_active")
            return False

        principal = Principal.from_dict(json.loads(previous)["principal"])
        self._record("revoke", "success")
        self.logger.info("Session token revoked", user_id=principal.user_id)
        if self.hooks is not None:
            self.hooks.fire(HookEventKind.SIGN_OUT, user_id=principal.user_id, account=principal.account)
        return True

    # Authorization codes

    async def issue_code(self, client: ClientContext) -> str:
        """Issue a code for a registered client, bound to one of its redirect URIs."""
        redirect_uri = client.redirect_uri
        if self.clients is not None:
            redirect_uri = await self.clients.authorize(client.client_id, redirect_uri)
        code = self._new_value()
        await self.kvs.put(f"code:{code}", json.dumps({
            "client_id": client.client_id,
            "principal": client.principal.to_dict(),
            "redirect_uri": redirect_uri,
            "scope": client.scope,
            "nonce": client.nonce,
            "issued_at": self.clock.now(),
        }), self.code_expires)

        self._record("issue_code", "success")
        self.logger.info("Authorization code issued", client_id=client.client_id,
                         user_id=client.principal.user_id)
        return code

    async def redeem_code(self, code: Optional[str], client_id: Optional[str] = None,
                          client_secret: Optional[str] = None) -> AuthorizationGrant:
        """Redeem an authorization code exactly once.

        Under concurrent redemption one caller gets the grant and every
        other caller gets ``AlreadyRedeemed``. With a client registry the
        client must authenticate first, so a bad secret leaves the code
        unspent.
        """
        try:
            code = self._check_format(code)
            if self.clients is not None:
                await self.clients.authenticate(client_id, client_secret)
            raw = await self.kvs.mark_if_present(f"code:{code}", REDEEMED)
            if raw is None:
                raise TokenExpired("Authorization code expired")
            if raw == REDEEMED:
                raise AlreadyRedeemed()

            data = json.loads(raw)
            if client_id is not None and client_id != data["client_id"]:
                raise TokenInvalid("Authorization code was issued to another client")
        except (TokenExpired, TokenInvalid, AlreadyRedeemed, AuthenticationFailure) as e:
            self._record("redeem_code", e.code.lower())
            raise

        self._record("redeem_code", "success")
        return AuthorizationGrant(
            code=code,
            client_id=data["client_id"],
            principal=Principal.from_dict(data["principal"]),
            redirect_uri=data["redirect_uri"],
            scope=data["scope"],
            nonce=data["nonce"],
            issued_at=data["issued_at"],
        )

    # OIDC session bindings

    async def bind_oidc_session(self, provider: str, subject: str, user_id: Optional[str] = None,
                                claims: Optional[Dict[str, Any]] = None) -> OidcSessionBinding:
        binding = OidcSessionBinding(id=self._new_value(), provider=provider, subject=subject,
                                     expires_at=self.clock.now() + self.oidc_session_expires,
                                     user_id=user_id, claims=dict(claims or {}))
        await self._store_binding(binding, self.oidc_session_expires)
        self._record("bind_oidc_session", "success")
        return binding

    async def get_oidc_session(self, binding_id: Optional[str]) -> OidcSessionBinding:
        binding_id = self._check_format(binding_id)
        raw = await self.kvs.get(f"oidc_session:{binding_id}")
        return self._binding(binding_id, raw)

    async def consume_oidc_session(self, binding_id: Optional[str]) -> OidcSessionBinding:
        """Take a binding for linking; it cannot be taken twice."""
        binding_id = self._check_format(binding_id)
        raw = await self.kvs.mark_if_present(f"oidc_session:{binding_id}", REDEEMED)
        return self._binding(binding_id, raw)

    async def restore_oidc_session(self, binding: OidcSessionBinding) -> None:
        """Put a consumed binding back when the linking step failed."""
        remaining = await self.kvs.ttl(f"oidc_session:{binding.id}")
        if remaining:
            await self._store_binding(binding, remaining)

    async def _store_binding(self, binding: OidcSessionBinding, ttl: float) -> None:
        await self.kvs.put(f"oidc_session:{binding.id}", json.dumps({
            "provider": binding.provider,
            "subject": binding.subject,
            "user_id": binding.user_id,
            "claims": binding.claims,
            "expires_at": binding.expires_at,
        }), ttl)

    def _binding(self, binding_id: str, raw: Optional[str]) -> OidcSessionBinding:
        if raw is None:
            raise TokenExpired("OIDC session expired")
        if raw == REDEEMED:
            raise AlreadyRedeemed()
        data = json.loads(raw)
        if self.clock.now() >= data["expires_at"]:
            raise TokenExpired("OIDC session expired")
        return OidcSessionBinding(id=binding_id, provider=data["provider"], subject=data["subject"],
                                  expires_at=data["expires_at"], user_id=data["user_id"],
                                  claims=data["claims"])
