"""
Unit tests for session tokens, authorization codes and OIDC bindings.
"""

import asyncio

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_iam.app.kvs import InMemoryKeyValueStore
from service_iam.app.oidc import OidcApplicationRegistry
from service_iam.app.principal import Principal
from service_iam.app.rbac import InMemoryDirectoryRepository
from service_iam.app.tokens import ClientContext, SessionManager
from shared.errors import AlreadyRedeemed, AuthenticationFailure, TokenExpired, TokenInvalid, ValidationError
from shared.metrics import MetricsCollector
from shared.test_helpers import ManualClock, SequentialTokens


class TestSessionManager:
    """Test cases for SessionManager."""

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
    def sessions(self, kvs, clock, metrics):
        return SessionManager(kvs, token_expires=1800, code_expires=60, oidc_session_expires=180,
                              clock=clock, token_factory=SequentialTokens(), metrics=metrics)

    @pytest.fixture
    def alice(self):
        return Principal(user_id="user-alice", account="alice", auth_method="password")

    @pytest.mark.asyncio
    async def test_token_valid_until_ttl(self, sessions, clock, alice):
        """A token issued at T validates on [T, T+1800)."""
        token = await sessions.issue(alice)
        assert token.expires_at == token.issued_at + 1800

        clock.advance(1799)
        assert await sessions.validate(token.value) == alice

        clock.advance(1)
        with pytest.raises(TokenExpired):
            await sessions.validate(token.value)

    @pytest.mark.asyncio
    async def test_token_expired_after_ttl(self, sessions, clock, alice):
        token = await sessions.issue(alice)
        clock.advance(1801)

        with pytest.raises(TokenExpired):
            await sessions.validate(token.value)

    @pytest.mark.asyncio
    async def test_unknown_token_reports_expired(self, sessions):
        with pytest.raises(TokenExpired):
            await sessions.validate("tok_9999_0123456789abcdef")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [None, "", "short", "has spaces in it!!", "x" * 129])
    async def test_malformed_token_is_invalid(self, sessions, value):
        with pytest.raises(TokenInvalid):
            await sessions.validate(value)

    @pytest.mark.asyncio
    async def test_revoke(self, sessions, alice):
        token = await sessions.issue(alice)

        assert await sessions.revoke(token.value) is True
        with pytest.raises(TokenInvalid):
            await sessions.validate(token.value)

        # second revocation is a no-op
        assert await sessions.revoke(token.value) is False

    @pytest.mark.asyncio
    async def test_revoke_inactive_token(self, sessions):
        assert await sessions.revoke("tok_9999_0123456789abcdef") is False
        assert await sessions.revoke(None) is False

    @pytest.mark.asyncio
    async def test_revoked_token_expires_with_original_ttl(self, sessions, clock, alice):
        token = await sessions.issue(alice)
        clock.advance(100)
        await sessions.revoke(token.value)

        clock.advance(1700)
        with pytest.raises(TokenExpired):
            await sessions.validate(token.value)

    @pytest.mark.asyncio
    async def test_get_session(self, sessions, clock, alice):
        token = await sessions.issue(alice)
        session = await sessions.get_session(token.value)

        assert session.principal.account == "alice"
        assert session.issued_at == clock.now()
        assert session.ttl == 1800

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, sessions, alice):
        first = await sessions.issue(alice)
        second = await sessions.issue(alice)
        assert first.value != second.value

    @pytest.mark.asyncio
    async def test_redeem_code_once(self, sessions, alice):
        code = await sessions.issue_code(ClientContext(client_id="billing", principal=alice,
                                                       redirect_uri="https://billing/cb", nonce="n-1"))

        grant = await sessions.redeem_code(code, "billing")
        assert grant.principal == alice
        assert grant.redirect_uri == "https://billing/cb"
        assert grant.nonce == "n-1"

        with pytest.raises(AlreadyRedeemed):
            await sessions.redeem_code(code, "billing")

    @pytest.mark.asyncio
    async def test_concurrent_redemption_has_one_winner(self, sessions, alice):
        code = await sessions.issue_code(ClientContext(client_id="billing", principal=alice))

        results = await asyncio.gather(
            *[sessions.redeem_code(code) for _ in range(10)],
            return_exceptions=True
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(isinstance(e, AlreadyRedeemed) for e in losers)

    @pytest.mark.asyncio
    async def test_code_expires(self, sessions, clock, alice):
        code = await sessions.issue_code(ClientContext(client_id="billing", principal=alice))
        clock.advance(60)

        with pytest.raises(TokenExpired):
            await sessions.redeem_code(code)

    @pytest.mark.asyncio
    async def test_code_for_another_client(self, sessions, alice):
        code = await sessions.issue_code(ClientContext(client_id="billing", principal=alice))

        with pytest.raises(TokenInvalid):
            await sessions.redeem_code(code, "reporting")

    @pytest.mark.asyncio
    async def test_oidc_binding_lifecycle(self, sessions, clock):
        binding = await sessions.bind_oidc_session("corp", "sub-123", claims={"email": "a@example.com"})
        assert binding.expires_at == clock.now() + 180

        clock.advance(179)
        fetched = await sessions.get_oidc_session(binding.id)
        assert fetched.subject == "sub-123"
        assert fetched.claims == {"email": "a@example.com"}

        consumed = await sessions.consume_oidc_session(binding.id)
        assert consumed.provider == "corp"
        with pytest.raises(AlreadyRedeemed):
            await sessions.consume_oidc_session(binding.id)

    @pytest.mark.asyncio
    async def test_oidc_binding_expires(self, sessions, clock):
        binding = await sessions.bind_oidc_session("corp", "sub-123")
        clock.advance(180)

        with pytest.raises(TokenExpired):
            await sessions.get_oidc_session(binding.id)

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, sessions, metrics, alice):
        token = await sessions.issue(alice)
        await sessions.validate(token.value)
        with pytest.raises(TokenInvalid):
            await sessions.validate("bad")

        assert metrics.registry.get_sample_value(
            "token_operations_total", {"operation": "validate", "outcome": "success"}) == 1.0
        assert metrics.registry.get_sample_value(
            "token_operations_total", {"operation": "validate", "outcome": "token_invalid"}) == 1.0

    @pytest.mark.asyncio
    async def test_restored_binding_keeps_its_expiry(self, sessions, clock):
        binding = await sessions.bind_oidc_session("corp", "sub-123")
        clock.advance(100)
        consumed = await sessions.consume_oidc_session(binding.id)

        await sessions.restore_oidc_session(consumed)

        assert (await sessions.get_oidc_session(binding.id)).subject == "sub-123"
        clock.advance(80)
        with pytest.raises(TokenExpired):
            await sessions.get_oidc_session(binding.id)


class TestSessionManagerWithRegisteredClients:
    """Authorization codes when clients must be registered."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def registry(self):
        return OidcApplicationRegistry(InMemoryDirectoryRepository())

    @pytest.fixture
    def sessions(self, clock, registry):
        return SessionManager(InMemoryKeyValueStore(clock), clock=clock, clients=registry)

    @pytest.fixture
    async def portal(self, registry):
        return await registry.create("portal", ["https://portal.example.com/callback"])

    @pytest.fixture
    def alice(self):
        return Principal(user_id="user-alice", account="alice", auth_method="password")

    @pytest.mark.asyncio
    async def test_code_for_registered_client(self, sessions, portal, alice):
        application, secret = portal

        code = await sessions.issue_code(ClientContext(client_id=application.client_id, principal=alice))
        grant = await sessions.redeem_code(code, application.client_id, secret)

        assert grant.principal == alice
        assert grant.redirect_uri == "https://portal.example.com/callback"

    @pytest.mark.asyncio
    async def test_unknown_client_gets_no_code(self, sessions, alice):
        with pytest.raises(ValidationError):
            await sessions.issue_code(ClientContext(client_id="stranger", principal=alice))

    @pytest.mark.asyncio
    async def test_unregistered_redirect_uri(self, sessions, portal, alice):
        application, _ = portal

        with pytest.raises(ValidationError):
            await sessions.issue_code(ClientContext(client_id=application.client_id, principal=alice,
                                                    redirect_uri="https://evil.example.com/callback"))

    @pytest.mark.asyncio
    async def test_redeem_requires_client_secret(self, sessions, portal, alice):
        application, secret = portal
        code = await sessions.issue_code(ClientContext(client_id=application.client_id, principal=alice))

        with pytest.raises(AuthenticationFailure):
            await sessions.redeem_code(code, application.client_id, "wrong-secret")
        with pytest.raises(AuthenticationFailure):
            await sessions.redeem_code(code, application.client_id)

        grant = await sessions.redeem_code(code, application.client_id, secret)
        assert grant.client_id == application.client_id

    @pytest.mark.asyncio
    async def test_code_for_another_registered_client(self, sessions, registry, portal, alice):
        application, _ = portal
        other, other_secret = await registry.create("reports", ["https://reports.example.com/cb"])
        code = await sessions.issue_code(ClientContext(client_id=application.client_id, principal=alice))

        with pytest.raises(TokenInvalid):
            await sessions.redeem_code(code, other.client_id, other_secret)
