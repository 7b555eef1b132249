"""
IAM service: component wiring and HTTP routes.
"""

from typing import Dict, List, Optional

import httpx
from fastapi import Depends, Request, Response
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.circuit_breaker import CircuitBreakerState
from shared.clock import Clock, SystemClock
from shared.config import IamConfig, get_config
from shared.errors import AuthenticationFailure, AuthorizationDenied, TokenInvalid, ValidationError
from shared.logging import set_user_context
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig

from .accounts import SignUpRequest, SignUpService
from .authn import AuthMethod, Authenticator, DirectoryClaim, FederationClaim, PasswordClaim
from .challenges import ChallengeKind, ChallengeWorkflow, InvitationService, ProfileVerificationService
from .credentials import CredentialStore, OtpService, PasswordPolicy
from .directory import LdapDirectoryClient
from .hooks import HookDispatcher
from .kvs import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from .oidc import OidcApplicationRegistry, OidcProviderRegistry
from .principal import Principal
from .rbac import InMemoryDirectoryRepository, PostgresDirectoryRepository, RbacDirectory, request_scope
from .rbac.models import (
    ApplicationCreateRequest,
    AssignmentRequest,
    GroupCreateRequest,
    GroupUpdateRequest,
    OidcApplicationCreateRequest,
    OidcApplicationUpdateRequest,
    PermissionCheckRequest,
    PermissionCheckResponse,
    PermissionCreateRequest,
    RealmCreateRequest,
    RoleCreateRequest,
    UserCreateRequest,
    UserUpdateRequest,
)
from .rbac.repository import DirectoryRepository
from .tokens import BackendCredentialSigner, ClientContext, SessionManager

ADMIN_PERMISSIONS = [
    f"{entity}:{action}"
    for entity in ("user", "group", "application", "realm", "role", "permission", "assignment",
                   "oidc_application")
    for action in ("read", "create", "update", "delete")
] + ["invitation:create", "oidc_provider:read"]


class SignInRequest(BaseModel):
    method: AuthMethod = AuthMethod.PASSWORD
    account: Optional[str] = None
    password: Optional[str] = None
    one_time_password: Optional[str] = None
    provider: Optional[str] = None
    code: Optional[str] = None
    redirect_uri: Optional[str] = None
    nonce: Optional[str] = None


class AuthorizationCodeRequest(BaseModel):
    client_id: str
    redirect_uri: Optional[str] = None
    scope: str = "openid"
    nonce: Optional[str] = None


class RedeemCodeRequest(BaseModel):
    code: str
    client_id: Optional[str] = None
    client_secret: Optional[str] = None


class AccountRequest(BaseModel):
    account: str


class PasswordResetRequest(BaseModel):
    code: str
    new_password: str


class PasswordChangeRequest(BaseModel):
    current_password: str
    new_password: str


class InvitationRequest(BaseModel):
    email: str
    groups: List[str] = []


class CodeRequest(BaseModel):
    code: str


class MembersRequest(BaseModel):
    accounts: List[str]


class RoleUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    permissions: Optional[List[str]] = None


class RealmUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    allowed_roles: Optional[List[str]] = None


class DescribedUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class IamService(BaseService):
    """HTTP surface over the authentication and authorization engine."""

    def __init__(self,
                 config: Optional[IamConfig] = None,
                 kvs: Optional[KeyValueStore] = None,
                 repository: Optional[DirectoryRepository] = None,
                 clock: Optional[Clock] = None,
                 http_client: Optional[httpx.AsyncClient] = None,
                 metrics: Optional[MetricsCollector] = None):
        config = config or get_config()
        self.clock = clock or SystemClock()
        self.metrics = metrics or MetricsCollector(config.service_name)
        self._build_components(config, kvs, repository, http_client)
        super().__init__(config, self.metrics)

    def _build_components(self, config: IamConfig, kvs: Optional[KeyValueStore],
                          repository: Optional[DirectoryRepository],
                          http_client: Optional[httpx.AsyncClient]) -> None:
        if kvs is None:
            kvs = (RedisKeyValueStore(config.redis_url) if config.kvs_backend == "redis"
                   else InMemoryKeyValueStore(self.clock))
        if repository is None:
            repository = (PostgresDirectoryRepository(config.postgres_dsn)
                          if config.repository_backend == "postgres" else InMemoryDirectoryRepository())
        self.kvs = kvs
        self.repository = repository
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=config.hook_timeout)
        retry = RetryConfig.from_settings(config.retry)

        self.hooks = HookDispatcher(self.http_client, timeout=config.hook_timeout, metrics=self.metrics)
        self.rbac = RbacDirectory(repository, hooks=self.hooks, metrics=self.metrics)
        self.oidc_applications = OidcApplicationRegistry(repository)
        self.sessions = SessionManager(
            kvs,
            token_expires=config.token_expires,
            code_expires=config.authorization_code_expires,
            oidc_session_expires=config.oidc_session_expires,
            clock=self.clock,
            metrics=self.metrics,
            hooks=self.hooks,
            clients=self.oidc_applications,
        )
        policy = config.verification_policy
        self.credentials = CredentialStore(
            repository,
            PasswordPolicy(config.password_policy),
            ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, policy.reset_expires,
                              single_active=True, clock=self.clock),
            lock_after=config.password_policy.num_of_trials_until_lock,
            hooks=self.hooks,
        )
        self.otp = OtpService(repository, kvs, config.otp, clock=self.clock)
        self.invitations = InvitationService(
            ChallengeWorkflow(kvs, ChallengeKind.INVITATION, policy.invitation_expires, clock=self.clock))
        self.verifications = ProfileVerificationService(
            ChallengeWorkflow(kvs, ChallengeKind.PROFILE_VERIFICATION, policy.profile_verification_expires,
                              single_active=True, clock=self.clock),
            repository)

        self.ldap = LdapDirectoryClient.from_settings(
            config.ldap, retry, config.ldap_circuit_breaker,
            on_state_change=self._breaker_changed,
            on_unavailable=self.metrics.record_external_unavailable,
        ) if config.ldap.url else None
        self.oidc = OidcProviderRegistry.from_settings(
            config.oidc_providers, self.http_client, retry=retry, clock=self.clock,
            on_unavailable=self.metrics.record_external_unavailable)

        self.authenticator = Authenticator(
            self.rbac, self.credentials, self.otp, self.sessions,
            ldap=self.ldap,
            oidc=self.oidc,
            hooks=self.hooks,
            metrics=self.metrics,
            password_enabled=config.password_enabled,
            ldap_auto_provision=config.ldap.auto_provision,
            ldap_sync_groups=config.ldap.sync_groups,
        )
        self.signup = SignUpService(self.rbac, self.credentials, self.invitations, self.sessions,
                                    enabled=config.sign_up_enabled)
        self.backend_credentials = BackendCredentialSigner(
            config.backend_credential_key, expires=config.backend_credential_expires,
            issuer=config.service_name, clock=self.clock)

    def _breaker_changed(self, name: str, old: CircuitBreakerState, new: CircuitBreakerState) -> None:
        self.metrics.record_breaker_state(name, new.value)

    async def startup(self):
        await self.kvs.start()
        await self.repository.start()
        await self.bootstrap_admin()
        self.logger.info("IAM service started")

    async def shutdown(self):
        await self.hooks.drain()
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.repository.stop()
        await self.kvs.stop()
        self.logger.info("IAM service stopped")

    async def bootstrap_admin(self) -> None:
        """Create the management application, realm, role and first administrator."""
        account = self.config.bootstrap_admin_account
        if not account or await self.repository.find_user_by_account(account):
            return

        for name in ADMIN_PERMISSIONS:
            if await self.repository.find_permission_by_name(name) is None:
                await self.rbac.create_permission(name)
        if await self.repository.find_role_by_name("iam_admin") is None:
            await self.rbac.create_role("iam_admin", "IAM administration", ADMIN_PERMISSIONS)
        if await self.repository.find_application_by_name(self.config.admin_application) is None:
            await self.rbac.create_application(self.config.admin_application)
        app = await self.rbac.get_application(self.config.admin_application)
        if await self.repository.find_realm(app.id, self.config.admin_realm) is None:
            await self.rbac.create_realm(self.config.admin_application, self.config.admin_realm)

        user = await self.rbac.create_user(account, profile_verified=True)
        if self.config.bootstrap_admin_password:
            await self.credentials.set_password(user, self.config.bootstrap_admin_password)
        await self.rbac.assign([AssignmentRequest(
            subject_type="user", subject=account, role="iam_admin",
            application=self.config.admin_application, realm=self.config.admin_realm)])
        self.logger.info("Bootstrap administrator created", account=account)

    async def _check_dependencies(self) -> Dict[str, str]:
        dependencies = {}
        if isinstance(self.kvs, RedisKeyValueStore):
            dependencies["redis"] = "ok" if await self.kvs.health_check() else "error"
        if self.ldap is not None:
            breaker = self.ldap.policy.circuit_breaker
            dependencies["ldap"] = "error" if breaker.is_open() else "ok"
        return dependencies

    def _setup_middleware(self):
        super()._setup_middleware()

        @self.app.middleware("http")
        async def permission_scope(request: Request, call_next):
            with request_scope():
                return await call_next(request)

    def _token_from(self, request: Request) -> Optional[str]:
        authorization = request.headers.get("Authorization", "")
        if authorization.lower().startswith("bearer "):
            return authorization[7:].strip()
        return request.headers.get(self.config.token_name) or request.cookies.get(self.config.token_name)

    def _setup_routes(self):
        super()._setup_routes()
        app = self.app
        config = self.config

        async def current_principal(request: Request) -> Principal:
            token = self._token_from(request)
            if not token:
                raise TokenInvalid("Missing token")
            principal = await self.sessions.validate(token)
            set_user_context(principal.user_id)
            return principal

        def require(permission: str):
            async def dependency(principal: Principal = Depends(current_principal)) -> Principal:
                if not await self.rbac.check_permission(principal, config.admin_application,
                                                        config.admin_realm, permission):
                    raise AuthorizationDenied(details={"permission": permission})
                return principal
            return dependency

        prefix = "/iam/api"

        # Authentication and sessions

        @app.post(f"{prefix}/sign_in", status_code=201)
        async def sign_in(body: SignInRequest, response: Response):
            if body.method == AuthMethod.OIDC:
                claim = FederationClaim(body.provider or "", body.code or "", body.redirect_uri, body.nonce)
            elif body.method == AuthMethod.LDAP:
                claim = DirectoryClaim(body.account or "", body.password or "")
            else:
                claim = PasswordClaim(body.account or "", body.password or "", body.one_time_password)
            principal = await self.authenticator.authenticate(body.method, claim)
            token = await self.sessions.issue(principal)
            response.set_cookie(config.token_name, token.value, max_age=config.token_expires,
                                httponly=True, samesite="lax")
            return {"token": token.value, "account": principal.account,
                    "issued_at": token.issued_at, "expires_at": token.expires_at}

        @app.post(f"{prefix}/sign_out", status_code=204)
        async def sign_out(request: Request):
            await self.sessions.revoke(self._token_from(request))
            response = Response(status_code=204)
            response.delete_cookie(config.token_name)
            return response

        @app.get(f"{prefix}/session")
        async def session(request: Request):
            token = await self.sessions.get_session(self._token_from(request))
            return {"principal": token.principal.to_dict(),
                    "issued_at": token.issued_at, "expires_at": token.expires_at}

        @app.get(f"{prefix}/session/credential")
        async def backend_credential(response: Response, principal: Principal = Depends(current_principal)):
            credential = self.backend_credentials.sign(principal, await self.rbac.permissions_by_realm(principal))
            response.headers[config.backend_header_name] = credential
            return {"credential": credential}

        @app.post(f"{prefix}/authorization_codes", status_code=201)
        async def issue_code(body: AuthorizationCodeRequest, principal: Principal = Depends(current_principal)):
            code = await self.sessions.issue_code(ClientContext(
                client_id=body.client_id, principal=principal, redirect_uri=body.redirect_uri,
                scope=body.scope, nonce=body.nonce))
            return {"code": code, "expires_in": config.authorization_code_expires}

        @app.post(f"{prefix}/authorization_codes/redeem")
        async def redeem_code(body: RedeemCodeRequest):
            grant = await self.sessions.redeem_code(body.code, body.client_id, body.client_secret)
            return {"principal": grant.principal.to_dict(), "client_id": grant.client_id,
                    "scope": grant.scope, "redirect_uri": grant.redirect_uri, "nonce": grant.nonce}

        @app.post(f"{prefix}/permissions/check", response_model=PermissionCheckResponse)
        async def check_permission(body: PermissionCheckRequest, principal: Principal = Depends(current_principal)):
            allowed = await self.rbac.check_permission(principal, body.application, body.realm, body.permission)
            return PermissionCheckResponse(allowed=allowed)

        @app.post(f"{prefix}/sign_up", status_code=201)
        async def sign_up(body: SignUpRequest):
            return await self.signup.sign_up(body)

        # Credentials and challenges

        @app.put(f"{prefix}/password_credential", status_code=204)
        async def change_password(body: PasswordChangeRequest, principal: Principal = Depends(current_principal)):
            user = await self.repository.get_user(principal.user_id)
            if user is None:
                raise AuthenticationFailure()
            await self.credentials.change_password(user, body.current_password, body.new_password)
            return Response(status_code=204)

        @app.post(f"{prefix}/password_credential/reset_code", status_code=201)
        async def issue_reset_code(body: AccountRequest, _: Principal = Depends(require("user:update"))):
            user = await self.rbac.get_user(body.account)
            return {"code": await self.credentials.issue_reset_challenge(user),
                    "expires_in": config.verification_policy.reset_expires}

        @app.post(f"{prefix}/password_credential/reset", status_code=204)
        async def reset_password(body: PasswordResetRequest):
            await self.credentials.consume_reset_challenge(body.code, body.new_password)
            return Response(status_code=204)

        @app.post(f"{prefix}/invitations", status_code=201)
        async def invite(body: InvitationRequest, _: Principal = Depends(require("invitation:create"))):
            challenge = await self.invitations.invite(body.email, body.groups)
            return {"code": challenge.code, "expires_in": config.verification_policy.invitation_expires}

        @app.get(f"{prefix}/invitation/{{code}}")
        async def view_invitation(code: str):
            challenge = await self.invitations.view(code)
            return {"email": challenge.payload.get("email"), "groups": challenge.payload.get("groups", [])}

        @app.post(f"{prefix}/user_profile_verification/request", status_code=201)
        async def request_verification(body: AccountRequest, _: Principal = Depends(require("user:update"))):
            challenge = await self.verifications.request(await self.rbac.get_user(body.account))
            return {"code": challenge.code,
                    "expires_in": config.verification_policy.profile_verification_expires}

        @app.post(f"{prefix}/user_profile_verification")
        async def verify_profile(body: CodeRequest):
            user = await self.verifications.verify(body.code)
            return {"account": user.account, "profile_verified": user.profile_verified}

        @app.put(f"{prefix}/otp_key", status_code=201)
        async def create_otp_key(principal: Principal = Depends(current_principal)):
            user = await self.rbac.get_user(principal.account)
            secret, uri = await self.otp.create_key(user)
            return {"secret": secret, "provisioning_uri": uri}

        @app.delete(f"{prefix}/otp_key", status_code=204)
        async def delete_otp_key(principal: Principal = Depends(current_principal)):
            await self.otp.delete_key(await self.rbac.get_user(principal.account))
            return Response(status_code=204)

        @app.get(f"{prefix}/oidc_providers")
        async def oidc_providers(_: Principal = Depends(require("oidc_provider:read"))):
            return {"providers": self.oidc.names()}

        # OIDC client applications

        @app.get(f"{prefix}/oidc_applications")
        async def list_oidc_applications(offset: int = 0, limit: int = 100,
                                         _: Principal = Depends(require("oidc_application:read"))):
            return [a.to_public() for a in await self.oidc_applications.list(offset, limit)]

        @app.post(f"{prefix}/oidc_applications", status_code=201)
        async def create_oidc_application(body: OidcApplicationCreateRequest,
                                          _: Principal = Depends(require("oidc_application:create"))):
            application, secret = await self.oidc_applications.create(body.name, body.redirect_uris,
                                                                      body.description)
            return {**application.to_public(), "client_secret": secret}

        @app.get(f"{prefix}/oidc_application/{{name}}")
        async def get_oidc_application(name: str, _: Principal = Depends(require("oidc_application:read"))):
            return (await self.oidc_applications.get(name)).to_public()

        @app.put(f"{prefix}/oidc_application/{{name}}")
        async def update_oidc_application(name: str, body: OidcApplicationUpdateRequest,
                                          _: Principal = Depends(require("oidc_application:update"))):
            application = await self.oidc_applications.update(name, new_name=body.name,
                                                              description=body.description,
                                                              redirect_uris=body.redirect_uris)
            return application.to_public()

        @app.post(f"{prefix}/oidc_application/{{name}}/secret")
        async def rotate_oidc_application_secret(name: str,
                                                 _: Principal = Depends(require("oidc_application:update"))):
            application, secret = await self.oidc_applications.rotate_secret(name)
            return {**application.to_public(), "client_secret": secret}

        @app.delete(f"{prefix}/oidc_application/{{name}}", status_code=204)
        async def delete_oidc_application(name: str, _: Principal = Depends(require("oidc_application:delete"))):
            await self.oidc_applications.delete(name)
            return Response(status_code=204)

        # Users

        @app.get(f"{prefix}/users")
        async def list_users(offset: int = 0, limit: int = 100, _: Principal = Depends(require("user:read"))):
            return await self.rbac.list_users(offset, limit)

        @app.post(f"{prefix}/users", status_code=201)
        async def create_user(body: UserCreateRequest, _: Principal = Depends(require("user:create"))):
            if body.password is not None:
                self.credentials.policy.validate(body.password, body.account)
            user = await self.rbac.create_user(body.account, body.name, body.email)
            if body.password is not None:
                await self.credentials.set_password(user, body.password)
            return user

        @app.get(f"{prefix}/user/{{account}}")
        async def get_user(account: str, _: Principal = Depends(require("user:read"))):
            return await self.rbac.get_user(account)

        @app.put(f"{prefix}/user/{{account}}")
        async def update_user(account: str, body: UserUpdateRequest, _: Principal = Depends(require("user:update"))):
            return await self.rbac.update_user(account, name=body.name, email=body.email, locked=body.locked)

        @app.delete(f"{prefix}/user/{{account}}", status_code=204)
        async def delete_user(account: str, _: Principal = Depends(require("user:delete"))):
            await self.rbac.delete_user(account)
            return Response(status_code=204)

        # Groups

        @app.get(f"{prefix}/groups")
        async def list_groups(offset: int = 0, limit: int = 100, _: Principal = Depends(require("group:read"))):
            return await self.rbac.list_groups(offset, limit)

        @app.post(f"{prefix}/groups", status_code=201)
        async def create_group(body: GroupCreateRequest, _: Principal = Depends(require("group:create"))):
            return await self.rbac.create_group(body.name, body.description, body.members)

        @app.get(f"{prefix}/group/{{name}}")
        async def get_group(name: str, _: Principal = Depends(require("group:read"))):
            return await self.rbac.get_group(name)

        @app.put(f"{prefix}/group/{{name}}")
        async def update_group(name: str, body: GroupUpdateRequest, _: Principal = Depends(require("group:update"))):
            return await self.rbac.update_group(name, body.name, body.description)

        @app.delete(f"{prefix}/group/{{name}}", status_code=204)
        async def delete_group(name: str, _: Principal = Depends(require("group:delete"))):
            await self.rbac.delete_group(name)
            return Response(status_code=204)

        @app.post(f"{prefix}/group/{{name}}/users")
        async def add_group_users(name: str, body: MembersRequest, _: Principal = Depends(require("group:update"))):
            return await self.rbac.add_members(name, body.accounts)

        @app.delete(f"{prefix}/group/{{name}}/users")
        async def remove_group_users(name: str, body: MembersRequest,
                                     _: Principal = Depends(require("group:update"))):
            return await self.rbac.remove_members(name, body.accounts)

        # Applications and realms

        @app.get(f"{prefix}/applications")
        async def list_applications(offset: int = 0, limit: int = 100,
                                    _: Principal = Depends(require("application:read"))):
            return await self.rbac.list_applications(offset, limit)

        @app.post(f"{prefix}/applications", status_code=201)
        async def create_application(body: ApplicationCreateRequest,
                                     _: Principal = Depends(require("application:create"))):
            return await self.rbac.create_application(body.name, body.description)

        @app.get(f"{prefix}/application/{{name}}")
        async def get_application(name: str, _: Principal = Depends(require("application:read"))):
            return await self.rbac.get_application(name)

        @app.put(f"{prefix}/application/{{name}}")
        async def update_application(name: str, body: DescribedUpdateRequest,
                                     _: Principal = Depends(require("application:update"))):
            return await self.rbac.update_application(name, body.name, body.description)

        @app.delete(f"{prefix}/application/{{name}}", status_code=204)
        async def delete_application(name: str, _: Principal = Depends(require("application:delete"))):
            await self.rbac.delete_application(name)
            return Response(status_code=204)

        @app.get(f"{prefix}/application/{{name}}/realms")
        async def list_realms(name: str, _: Principal = Depends(require("realm:read"))):
            return await self.rbac.list_realms(name)

        @app.post(f"{prefix}/application/{{name}}/realms", status_code=201)
        async def create_realm(name: str, body: RealmCreateRequest, _: Principal = Depends(require("realm:create"))):
            return await self.rbac.create_realm(name, body.name, body.description, body.allowed_roles)

        @app.get(f"{prefix}/application/{{name}}/realm/{{realm}}")
        async def get_realm(name: str, realm: str, _: Principal = Depends(require("realm:read"))):
            return await self.rbac.get_realm(name, realm)

        @app.put(f"{prefix}/application/{{name}}/realm/{{realm}}")
        async def update_realm(name: str, realm: str, body: RealmUpdateRequest,
                               _: Principal = Depends(require("realm:update"))):
            return await self.rbac.update_realm(name, realm, body.name, body.description, body.allowed_roles)

        @app.delete(f"{prefix}/application/{{name}}/realm/{{realm}}", status_code=204)
        async def delete_realm(name: str, realm: str, _: Principal = Depends(require("realm:delete"))):
            await self.rbac.delete_realm(name, realm)
            return Response(status_code=204)

        # Roles and permissions

        @app.get(f"{prefix}/roles")
        async def list_roles(offset: int = 0, limit: int = 100, _: Principal = Depends(require("role:read"))):
            return await self.rbac.list_roles(offset, limit)

        @app.post(f"{prefix}/roles", status_code=201)
        async def create_role(body: RoleCreateRequest, _: Principal = Depends(require("role:create"))):
            return await self.rbac.create_role(body.name, body.description, body.permissions)

        @app.get(f"{prefix}/role/{{name}}")
        async def get_role(name: str, _: Principal = Depends(require("role:read"))):
            return await self.rbac.get_role(name)

        @app.put(f"{prefix}/role/{{name}}")
        async def update_role(name: str, body: RoleUpdateRequest, _: Principal = Depends(require("role:update"))):
            return await self.rbac.update_role(name, body.name, body.description, body.permissions)

        @app.delete(f"{prefix}/role/{{name}}", status_code=204)
        async def delete_role(name: str, _: Principal = Depends(require("role:delete"))):
            await self.rbac.delete_role(name)
            return Response(status_code=204)

        @app.get(f"{prefix}/permissions")
        async def list_permissions(offset: int = 0, limit: int = 100,
                                   _: Principal = Depends(require("permission:read"))):
            return await self.rbac.list_permissions(offset, limit)

        @app.post(f"{prefix}/permissions", status_code=201)
        async def create_permission(body: PermissionCreateRequest,
                                    _: Principal = Depends(require("permission:create"))):
            return await self.rbac.create_permission(body.name, body.description)

        @app.get(f"{prefix}/permission/{{name}}")
        async def get_permission(name: str, _: Principal = Depends(require("permission:read"))):
            return await self.rbac.get_permission(name)

        @app.put(f"{prefix}/permission/{{name}}")
        async def update_permission(name: str, body: DescribedUpdateRequest,
                                    _: Principal = Depends(require("permission:update"))):
            return await self.rbac.update_permission(name, body.name, body.description)

        @app.delete(f"{prefix}/permission/{{name}}", status_code=204)
        async def delete_permission(name: str, _: Principal = Depends(require("permission:delete"))):
            await self.rbac.delete_permission(name)
            return Response(status_code=204)

        # Assignments

        @app.post(f"{prefix}/assignments", status_code=201)
        async def assign(body: List[AssignmentRequest], _: Principal = Depends(require("assignment:create"))):
            if not body:
                raise ValidationError("At least one assignment is required")
            return {"assigned": len(await self.rbac.assign(body))}

        @app.delete(f"{prefix}/assignments")
        async def unassign(body: List[AssignmentRequest], _: Principal = Depends(require("assignment:delete"))):
            return {"removed": await self.rbac.unassign(body)}

        @app.get(f"{prefix}/application/{{name}}/realm/{{realm}}/assignments")
        async def list_assignments(name: str, realm: str, _: Principal = Depends(require("assignment:read"))):
            return await self.rbac.list_assignments(name, realm)


def create_app(config: Optional[IamConfig] = None, **kwargs):
    """Application factory for uvicorn and tests."""
    return IamService(config, **kwargs).app


if __name__ == "__main__":
    IamService().run()
