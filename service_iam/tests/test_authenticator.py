"""
Unit tests for the authenticator.
"""

import httpx
import pytest
from unittest.mock import MagicMock, patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from ldap3.core.exceptions import LDAPSocketOpenError

from service_iam.app.authn import Authenticator, DirectoryClaim, FederationClaim, PasswordClaim
from service_iam.app.challenges import ChallengeKind, ChallengeWorkflow
from service_iam.app.credentials import CredentialStore, OtpService, PasswordPolicy
from service_iam.app.directory import LdapDirectoryClient
from service_iam.app.hooks import HookDispatcher, HookEvent, HookEventKind
from service_iam.app.kvs import InMemoryKeyValueStore
from service_iam.app.oidc import OidcFederationClient, OidcProviderRegistry
from service_iam.app.rbac import InMemoryDirectoryRepository, RbacDirectory
from service_iam.app.tokens import SessionManager
from shared.config import CircuitBreakerSettings, LdapSettings, OidcProviderSettings, OtpSettings, PasswordPolicySettings
from shared.errors import AuthenticationFailure, ExternalServiceUnavailable
from shared.metrics import MetricsCollector
from shared.resilience import ResiliencePolicy
from shared.retry import RetryConfig
from shared.test_helpers import ManualClock, MockTokenGenerator


class StubLdapConnection:
    """Directory that accepts a single password."""

    def __init__(self, password, groups=()):
        self.password = password
        self.groups = list(groups)
        self.response = []
        self.result = {}
        self.bound = False

    def __call__(self, dn, password):
        self.bound = password == self.password
        return self

    def bind(self):
        return self.bound

    def search(self, search_base, search_filter, search_scope, attributes):
        if "cn" in attributes:
            self.response = [{"type": "searchResEntry", "attributes": {"cn": [g]}} for g in self.groups]
        else:
            self.response = [{"type": "searchResEntry",
                              "attributes": {"mail": ["dave@example.com"], "displayName": ["Dave"]}}]

    def unbind(self):
        pass


class TestAuthenticator:
    """Test cases for Authenticator."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def kvs(self, clock):
        return InMemoryKeyValueStore(clock)

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("iam-test")

    @pytest.fixture
    def rbac(self):
        return RbacDirectory(InMemoryDirectoryRepository())

    @pytest.fixture
    def sessions(self, kvs, clock):
        return SessionManager(kvs, clock=clock)

    @pytest.fixture
    def credentials(self, rbac, kvs, clock):
        workflow = ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, 3600, clock=clock)
        return CredentialStore(rbac.repository, PasswordPolicy(PasswordPolicySettings()), workflow, lock_after=3)

    @pytest.fixture
    def otp(self, rbac, kvs, clock):
        return OtpService(rbac.repository, kvs, OtpSettings(), clock=clock)

    @pytest.fixture
    def directory(self):
        return StubLdapConnection("ldap-pass1", groups=["finance"])

    @pytest.fixture
    def ldap(self, directory):
        return LdapDirectoryClient.from_settings(
            LdapSettings(url="ldap://ldap.example.com"),
            RetryConfig(max_attempts=2, base_delay=0.0, jitter=False),
            CircuitBreakerSettings(failure_threshold=2),
            connection_factory=directory,
        )

    @pytest.fixture
    def idp(self):
        """Token endpoint answering with whatever ID token the test queued."""
        state = {"id_token": None}

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id_token": state["id_token"]})

        state["client"] = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return state

    @pytest.fixture
    def oidc(self, idp):
        settings = OidcProviderSettings(name="corp", client_id="iam-client", client_secret="mock-client-secret",
                                        token_endpoint="https://idp.example.com/token",
                                        issuer="https://idp.example.com", algorithms=["HS256"])
        client = OidcFederationClient(settings, idp["client"], policy=ResiliencePolicy("oidc.corp"))
        return OidcProviderRegistry([client])

    @pytest.fixture
    def authenticator(self, rbac, credentials, otp, sessions, ldap, oidc, metrics):
        return Authenticator(rbac, credentials, otp, sessions, ldap=ldap, oidc=oidc, metrics=metrics)

    @pytest.fixture
    async def alice(self, rbac, credentials):
        user = await rbac.create_user("alice")
        await credentials.set_password(user, "c0rrect-pass")
        return user

    # Password

    @pytest.mark.asyncio
    async def test_password_sign_in(self, authenticator, alice, metrics):
        principal = await authenticator.authenticate("password", PasswordClaim("alice", "c0rrect-pass"))

        assert principal.user_id == alice.id
        assert principal.auth_method == "password"
        assert metrics.registry.get_sample_value(
            "authentications_total", {"method": "password", "outcome": "success"}) == 1.0

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(self, authenticator, alice):
        with pytest.raises(AuthenticationFailure) as wrong_password:
            await authenticator.authenticate("password", PasswordClaim("alice", "wrong-pass1"))
        with pytest.raises(AuthenticationFailure) as unknown_user:
            await authenticator.authenticate("password", PasswordClaim("nobody", "wrong-pass1"))

        assert wrong_password.value.message == unknown_user.value.message
        assert wrong_password.value.details == unknown_user.value.details == {}

    @pytest.mark.asyncio
    async def test_every_rejection_checks_a_hash(self, authenticator, rbac, alice):
        await rbac.create_user("bob")
        await rbac.update_user("bob", locked=True)
        checker = MagicMock(return_value=False)

        with patch("service_iam.app.credentials.credential_store.check_password", checker):
            for account in ("alice", "nobody", "bob"):
                with pytest.raises(AuthenticationFailure):
                    await authenticator.authenticate("password", PasswordClaim(account, "wrong-pass1"))

        assert checker.call_count == 3
        assert [c.args[0] for c in checker.call_args_list] == ["wrong-pass1"] * 3

    @pytest.mark.asyncio
    async def test_lockout(self, authenticator, rbac, alice):
        for _ in range(3):
            with pytest.raises(AuthenticationFailure):
                await authenticator.authenticate("password", PasswordClaim("alice", "wrong-pass1"))

        assert (await rbac.get_user("alice")).locked is True
        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("password", PasswordClaim("alice", "c0rrect-pass"))

    @pytest.mark.asyncio
    async def test_otp_required_when_enrolled(self, authenticator, otp, alice):
        secret, _ = await otp.create_key(alice)

        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("password", PasswordClaim("alice", "c0rrect-pass"))

        principal = await authenticator.authenticate(
            "password", PasswordClaim("alice", "c0rrect-pass", one_time_password=otp.current_code(secret)))
        assert principal.account == "alice"

    @pytest.mark.asyncio
    async def test_password_disabled(self, rbac, credentials, otp, sessions, alice):
        authenticator = Authenticator(rbac, credentials, otp, sessions, password_enabled=False)

        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("password", PasswordClaim("alice", "c0rrect-pass"))

    @pytest.mark.asyncio
    async def test_unknown_method(self, authenticator):
        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("kerberos", PasswordClaim("alice", "c0rrect-pass"))

    @pytest.mark.asyncio
    async def test_claim_must_match_method(self, authenticator, alice):
        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("ldap", PasswordClaim("alice", "c0rrect-pass"))

    @pytest.mark.asyncio
    async def test_sign_in_hook(self, rbac, credentials, otp, sessions, alice):
        hooks = HookDispatcher()
        events = []

        async def record(event: HookEvent):
            events.append(event)

        hooks.register([HookEventKind.SIGN_IN], record)
        authenticator = Authenticator(rbac, credentials, otp, sessions, hooks=hooks)
        await authenticator.authenticate("password", PasswordClaim("alice", "c0rrect-pass"))
        await hooks.drain()

        assert events[0].payload["account"] == "alice"
        assert events[0].payload["method"] == "password"

    # LDAP

    @pytest.mark.asyncio
    async def test_ldap_sign_in_syncs_groups(self, authenticator, rbac):
        dave = await rbac.create_user("dave")
        await rbac.create_group("finance")

        principal = await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))

        assert principal.auth_method == "ldap"
        assert principal.attributes["groups"] == ["finance"]
        assert dave.id in (await rbac.get_group("finance")).members

    @pytest.mark.asyncio
    async def test_ldap_rejected_password(self, authenticator, rbac):
        await rbac.create_user("dave")

        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("ldap", DirectoryClaim("dave", "wrong"))

    @pytest.mark.asyncio
    async def test_ldap_user_must_exist_without_provisioning(self, authenticator):
        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))

    @pytest.mark.asyncio
    async def test_ldap_auto_provision(self, rbac, credentials, otp, sessions, ldap):
        authenticator = Authenticator(rbac, credentials, otp, sessions, ldap=ldap, ldap_auto_provision=True)

        principal = await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))

        user = await rbac.get_user("dave")
        assert principal.user_id == user.id
        assert user.email == "dave@example.com"
        assert user.name == "Dave"

    @pytest.mark.asyncio
    async def test_ldap_unavailable(self, rbac, credentials, otp, sessions, ldap, metrics):
        await rbac.create_user("dave")
        ldap._connection_factory = MagicMock(side_effect=LDAPSocketOpenError("unreachable"))
        authenticator = Authenticator(rbac, credentials, otp, sessions, ldap=ldap, metrics=metrics)

        with pytest.raises(ExternalServiceUnavailable) as first:
            await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))
        with pytest.raises(ExternalServiceUnavailable) as second:
            await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))

        assert first.value.reason == "retry_exhausted"
        assert second.value.reason == "circuit_open"
        assert metrics.registry.get_sample_value(
            "authentications_total", {"method": "ldap", "outcome": "unavailable"}) == 2.0

    @pytest.mark.asyncio
    async def test_ldap_not_configured(self, rbac, credentials, otp, sessions):
        authenticator = Authenticator(rbac, credentials, otp, sessions)

        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("ldap", DirectoryClaim("dave", "ldap-pass1"))

    # OIDC

    @pytest.mark.asyncio
    async def test_oidc_linked_identity(self, authenticator, rbac, idp, alice):
        await rbac.repository.link_identity("corp", "sub-alice", alice.id)
        idp["id_token"] = MockTokenGenerator().generate_id_token("sub-alice", nonce="n-1")

        principal = await authenticator.authenticate("oidc", FederationClaim("corp", "auth-code", nonce="n-1"))

        assert principal.user_id == alice.id
        assert principal.provider == "corp"

    @pytest.mark.asyncio
    async def test_oidc_unlinked_identity_creates_binding(self, authenticator, sessions, idp):
        idp["id_token"] = MockTokenGenerator().generate_id_token("sub-new", email="new@example.com")

        with pytest.raises(AuthenticationFailure) as exc_info:
            await authenticator.authenticate("oidc", FederationClaim("corp", "auth-code"))

        binding = await sessions.get_oidc_session(exc_info.value.details["oidc_session_id"])
        assert binding.provider == "corp"
        assert binding.subject == "sub-new"
        assert binding.claims == {"email": "new@example.com"}

    @pytest.mark.asyncio
    async def test_oidc_unknown_provider(self, authenticator):
        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("oidc", FederationClaim("github", "auth-code"))

    @pytest.mark.asyncio
    async def test_oidc_invalid_token(self, authenticator, idp):
        idp["id_token"] = MockTokenGenerator(secret="forged").generate_id_token("sub-alice")

        with pytest.raises(AuthenticationFailure):
            await authenticator.authenticate("oidc", FederationClaim("corp", "auth-code"))
