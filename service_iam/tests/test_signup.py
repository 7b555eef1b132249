"""
Unit tests for self-service sign-up.
"""

import pytest
from unittest.mock import patch

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_iam.app.accounts import SignUpRequest, SignUpService
from service_iam.app.challenges import ChallengeKind, ChallengeWorkflow, InvitationService
from service_iam.app.credentials import CredentialStore, PasswordPolicy
from service_iam.app.hooks import HookDispatcher, HookEvent, HookEventKind
from service_iam.app.kvs import InMemoryKeyValueStore
from service_iam.app.rbac import InMemoryDirectoryRepository, RbacDirectory
from service_iam.app.tokens import SessionManager
from shared.config import PasswordPolicySettings
from shared.errors import (
    AlreadyConsumed,
    AlreadyRedeemed,
    AuthorizationDenied,
    Conflict,
    NotFound,
    TokenExpired,
    ValidationError,
)
from shared.test_helpers import ManualClock


class TestSignUpService:
    """Test cases for SignUpService."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def kvs(self, clock):
        return InMemoryKeyValueStore(clock)

    @pytest.fixture
    def events(self):
        return []

    @pytest.fixture
    def hooks(self, events):
        dispatcher = HookDispatcher()

        async def record(event: HookEvent):
            events.append(event)

        dispatcher.register([HookEventKind.USER_CREATED], record)
        return dispatcher

    @pytest.fixture
    def rbac(self, hooks):
        return RbacDirectory(InMemoryDirectoryRepository(), hooks=hooks)

    @pytest.fixture
    def credentials(self, rbac, kvs, clock):
        return CredentialStore(rbac.repository, PasswordPolicy(PasswordPolicySettings()),
                               ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, 3600, clock=clock))

    @pytest.fixture
    def invitations(self, kvs, clock):
        return InvitationService(ChallengeWorkflow(kvs, ChallengeKind.INVITATION, 86400, clock=clock))

    @pytest.fixture
    def sessions(self, kvs, clock):
        return SessionManager(kvs, clock=clock)

    @pytest.fixture
    def signup(self, rbac, credentials, invitations, sessions):
        return SignUpService(rbac, credentials, invitations, sessions)

    @pytest.mark.asyncio
    async def test_sign_up_with_password(self, signup, credentials, hooks, events):
        user = await signup.sign_up(SignUpRequest(account="dave", email="dave@example.com",
                                                  password="d4ve-password"))
        await hooks.drain()

        assert user.profile_verified is False
        assert await credentials.verify_password(user, "d4ve-password") is True
        assert [e.payload["account"] for e in events] == ["dave"]

    @pytest.mark.asyncio
    async def test_invitation_joins_groups_and_verifies_email(self, signup, rbac, invitations):
        await rbac.create_group("finance")
        invitation = await invitations.invite("carol@example.com", ["finance", "gone"])

        user = await signup.sign_up(SignUpRequest(account="carol", email="carol@example.com",
                                                  password="c4rol-password",
                                                  invitation_code=invitation.code))

        assert user.profile_verified is True
        assert user.id in (await rbac.get_group("finance")).members
        with pytest.raises(AlreadyConsumed):
            await invitations.view(invitation.code)

    @pytest.mark.asyncio
    async def test_invitation_for_other_email(self, signup, invitations):
        invitation = await invitations.invite("carol@example.com")

        user = await signup.sign_up(SignUpRequest(account="carol", email="carol@elsewhere.example.com",
                                                  password="c4rol-password",
                                                  invitation_code=invitation.code))

        assert user.profile_verified is False

    @pytest.mark.asyncio
    async def test_expired_invitation_creates_nothing(self, signup, rbac, invitations, clock):
        invitation = await invitations.invite("carol@example.com")
        clock.advance(86400)

        with pytest.raises(TokenExpired):
            await signup.sign_up(SignUpRequest(account="carol", password="c4rol-password",
                                               invitation_code=invitation.code))
        with pytest.raises(NotFound):
            await rbac.get_user("carol")

    @pytest.mark.asyncio
    async def test_links_federated_identity(self, signup, rbac, sessions):
        binding = await sessions.bind_oidc_session("corp", "sub-42", claims={"email": "erin@example.com"})

        user = await signup.sign_up(SignUpRequest(account="erin", oidc_session_id=binding.id))

        linked = await rbac.repository.find_user_by_identity("corp", "sub-42")
        assert linked.id == user.id
        with pytest.raises(AlreadyRedeemed):
            await sessions.consume_oidc_session(binding.id)

    @pytest.mark.asyncio
    async def test_policy_violation_creates_nothing(self, signup, rbac, hooks, events):
        with pytest.raises(ValidationError) as exc_info:
            await signup.sign_up(SignUpRequest(account="dave", password="weak"))
        await hooks.drain()

        assert exc_info.value.violations
        with pytest.raises(NotFound):
            await rbac.get_user("dave")
        assert events == []

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, signup, rbac, credentials, invitations, hooks, events):
        invitation = await invitations.invite("carol@example.com")

        with patch.object(credentials, "set_password", side_effect=RuntimeError("storage down")):
            with pytest.raises(RuntimeError):
                await signup.sign_up(SignUpRequest(account="carol", password="c4rol-password",
                                                   invitation_code=invitation.code))
        await hooks.drain()

        with pytest.raises(NotFound):
            await rbac.get_user("carol")
        assert events == []
        assert (await invitations.view(invitation.code)).subject == "carol@example.com"

    @pytest.mark.asyncio
    async def test_failed_link_puts_invitation_and_binding_back(self, signup, rbac, invitations, sessions):
        await rbac.create_group("finance")
        erin = await rbac.create_user("erin")
        await rbac.repository.link_identity("corp", "sub-42", erin.id)
        invitation = await invitations.invite("carol@example.com", ["finance"])
        binding = await sessions.bind_oidc_session("corp", "sub-42")

        with pytest.raises(Conflict):
            await signup.sign_up(SignUpRequest(account="carol", invitation_code=invitation.code,
                                               oidc_session_id=binding.id))

        with pytest.raises(NotFound):
            await rbac.get_user("carol")
        assert (await rbac.get_group("finance")).members == set()
        assert (await invitations.view(invitation.code)).subject == "carol@example.com"
        assert (await sessions.get_oidc_session(binding.id)).subject == "sub-42"

    @pytest.mark.asyncio
    async def test_spent_invitation_leaves_binding_usable(self, signup, rbac, invitations, sessions):
        invitation = await invitations.invite("carol@example.com")
        binding = await sessions.bind_oidc_session("corp", "sub-42")

        with patch.object(invitations, "accept", side_effect=AlreadyConsumed()):
            with pytest.raises(AlreadyConsumed):
                await signup.sign_up(SignUpRequest(account="carol", invitation_code=invitation.code,
                                                   oidc_session_id=binding.id))

        assert (await sessions.get_oidc_session(binding.id)).subject == "sub-42"
        user = await signup.sign_up(SignUpRequest(account="carol", oidc_session_id=binding.id))
        assert (await rbac.repository.find_user_by_identity("corp", "sub-42")).id == user.id

    @pytest.mark.asyncio
    async def test_duplicate_account(self, signup, rbac):
        await rbac.create_user("dave")

        with pytest.raises(Conflict):
            await signup.sign_up(SignUpRequest(account="dave", password="d4ve-password"))

    @pytest.mark.asyncio
    async def test_disabled(self, rbac, credentials, invitations, sessions):
        signup = SignUpService(rbac, credentials, invitations, sessions, enabled=False)

        with pytest.raises(AuthorizationDenied):
            await signup.sign_up(SignUpRequest(account="dave", password="d4ve-password"))
