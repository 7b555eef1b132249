"""
Unit tests for single-use challenges, invitations and profile verification.
"""

import asyncio

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_iam.app.challenges import (
    ChallengeKind,
    ChallengeWorkflow,
    InvitationService,
    ProfileVerificationService,
)
from service_iam.app.kvs import InMemoryKeyValueStore
from service_iam.app.rbac import InMemoryDirectoryRepository, RbacDirectory
from shared.errors import AlreadyConsumed, TokenExpired, TokenInvalid, ValidationError
from shared.test_helpers import ManualClock, SequentialTokens


class TestChallengeWorkflow:
    """Test cases for ChallengeWorkflow."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def kvs(self, clock):
        return InMemoryKeyValueStore(clock)

    @pytest.fixture
    def workflow(self, kvs, clock):
        return ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, 600, clock=clock,
                                 token_factory=SequentialTokens("reset"))

    @pytest.mark.asyncio
    async def test_issue_and_consume(self, workflow, clock):
        challenge = await workflow.issue("user-1", {"reason": "forgot"})
        assert challenge.issued_at == clock.now()

        consumed = await workflow.consume(challenge.code)
        assert consumed.subject == "user-1"
        assert consumed.payload == {"reason": "forgot"}
        assert consumed.kind == ChallengeKind.PASSWORD_RESET

    @pytest.mark.asyncio
    async def test_second_consume_is_rejected(self, workflow):
        challenge = await workflow.issue("user-1")
        await workflow.consume(challenge.code)

        with pytest.raises(AlreadyConsumed) as exc_info:
            await workflow.consume(challenge.code)
        assert exc_info.value.code == "ALREADY_CONSUMED"

    @pytest.mark.asyncio
    async def test_concurrent_consume_has_one_winner(self, workflow):
        challenge = await workflow.issue("user-1")

        results = await asyncio.gather(*[workflow.consume(challenge.code) for _ in range(5)],
                                       return_exceptions=True)

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, AlreadyConsumed) for r in results if isinstance(r, Exception))

    @pytest.mark.asyncio
    async def test_expired_and_unknown(self, workflow, clock):
        challenge = await workflow.issue("user-1")
        clock.advance(600)

        with pytest.raises(TokenExpired):
            await workflow.consume(challenge.code)
        with pytest.raises(TokenExpired):
            await workflow.consume("never-issued")

    @pytest.mark.asyncio
    async def test_peek_does_not_consume(self, workflow):
        challenge = await workflow.issue("user-1")

        assert (await workflow.peek(challenge.code)).subject == "user-1"
        assert (await workflow.consume(challenge.code)).subject == "user-1"

    @pytest.mark.asyncio
    async def test_multiple_active_without_single_active(self, workflow):
        first = await workflow.issue("user-1")
        second = await workflow.issue("user-1")

        await workflow.consume(first.code)
        await workflow.consume(second.code)

    @pytest.mark.asyncio
    async def test_single_active(self, kvs, clock):
        workflow = ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, 600, single_active=True,
                                     clock=clock)
        first = await workflow.issue("user-1")
        second = await workflow.issue("user-1")
        other = await workflow.issue("user-2")

        with pytest.raises(TokenExpired):
            await workflow.consume(first.code)
        await workflow.consume(second.code)
        await workflow.consume(other.code)

    @pytest.mark.asyncio
    async def test_restore_keeps_remaining_ttl(self, workflow, kvs, clock):
        challenge = await workflow.issue("user-1")
        clock.advance(200)
        consumed = await workflow.consume(challenge.code)

        await workflow.restore(consumed)
        assert await kvs.ttl(f"challenge:reset:{challenge.code}") == pytest.approx(400)
        await workflow.consume(challenge.code)

    @pytest.mark.asyncio
    async def test_kinds_do_not_collide(self, kvs, clock):
        tokens = SequentialTokens("same")
        reset = ChallengeWorkflow(kvs, ChallengeKind.PASSWORD_RESET, 600, clock=clock, token_factory=tokens)
        invite = ChallengeWorkflow(kvs, ChallengeKind.INVITATION, 600, clock=clock, token_factory=tokens)

        challenge = await reset.issue("user-1")
        with pytest.raises(TokenExpired):
            await invite.consume(challenge.code)


class TestInvitationService:
    """Test cases for InvitationService."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def invitations(self, clock):
        return InvitationService(ChallengeWorkflow(InMemoryKeyValueStore(clock), ChallengeKind.INVITATION,
                                                   86400, clock=clock))

    @pytest.mark.asyncio
    async def test_invite_view_accept(self, invitations):
        challenge = await invitations.invite("carol@example.com", ["finance"])

        viewed = await invitations.view(challenge.code)
        assert viewed.payload == {"email": "carol@example.com", "groups": ["finance"]}

        accepted = await invitations.accept(challenge.code)
        assert accepted.subject == "carol@example.com"
        with pytest.raises(AlreadyConsumed):
            await invitations.view(challenge.code)

    @pytest.mark.asyncio
    async def test_invitation_expires(self, invitations, clock):
        challenge = await invitations.invite("carol@example.com")
        clock.advance(86400)

        with pytest.raises(TokenExpired):
            await invitations.accept(challenge.code)


class TestProfileVerificationService:
    """Test cases for ProfileVerificationService."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def rbac(self):
        return RbacDirectory(InMemoryDirectoryRepository())

    @pytest.fixture
    def verifications(self, rbac, clock):
        workflow = ChallengeWorkflow(InMemoryKeyValueStore(clock), ChallengeKind.PROFILE_VERIFICATION,
                                     86400, single_active=True, clock=clock)
        return ProfileVerificationService(workflow, rbac.repository)

    @pytest.mark.asyncio
    async def test_verify_profile(self, rbac, verifications):
        alice = await rbac.create_user("alice", email="alice@example.com")
        challenge = await verifications.request(alice)

        user = await verifications.verify(challenge.code)
        assert user.profile_verified is True
        assert (await rbac.get_user("alice")).profile_verified is True

        with pytest.raises(AlreadyConsumed):
            await verifications.verify(challenge.code)

    @pytest.mark.asyncio
    async def test_user_without_email(self, rbac, verifications):
        bob = await rbac.create_user("bob")

        with pytest.raises(ValidationError):
            await verifications.request(bob)

    @pytest.mark.asyncio
    async def test_email_changed_after_request(self, rbac, verifications):
        alice = await rbac.create_user("alice", email="alice@example.com")
        challenge = await verifications.request(alice)
        await rbac.update_user("alice", email="alice@other.example.com")

        with pytest.raises(ValidationError):
            await verifications.verify(challenge.code)
        assert (await rbac.get_user("alice")).profile_verified is False

    @pytest.mark.asyncio
    async def test_deleted_user(self, rbac, verifications):
        alice = await rbac.create_user("alice", email="alice@example.com")
        challenge = await verifications.request(alice)
        await rbac.delete_user("alice")

        with pytest.raises(TokenInvalid):
            await verifications.verify(challenge.code)
