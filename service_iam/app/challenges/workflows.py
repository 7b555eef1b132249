"""
Single-use, TTL-bound challenges.

Profile verification, password reset and invitation all follow one life
cycle: Issued -> Consumed on the first valid redemption, Issued -> Expired
when the store evicts the key. Consumption overwrites the stored challenge
with a marker that keeps the remaining TTL, so a repeated redemption is
told apart from an expired one.
"""

import json
import secrets
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from shared.clock import Clock, SystemClock
from shared.errors import AlreadyConsumed, TokenExpired, TokenInvalid, ValidationError
from shared.logging import get_logger

from ..kvs import KeyValueStore
from ..rbac.models import User
from ..rbac.repository import DirectoryRepository

CONSUMED = "__consumed__"


class ChallengeKind(str, Enum):
    PROFILE_VERIFICATION = "verification"
    PASSWORD_RESET = "reset"
    INVITATION = "invitation"


@dataclass
class Challenge:
    kind: ChallengeKind
    code: str
    subject: str
    issued_at: float
    payload: Dict[str, Any] = field(default_factory=dict)

    def serialize(self) -> str:
        return json.dumps({"subject": self.subject, "issued_at": self.issued_at, "payload": self.payload})

    @classmethod
    def deserialize(cls, kind: ChallengeKind, code: str, raw: str) -> "Challenge":
        data = json.loads(raw)
        return cls(kind=kind, code=code, subject=data["subject"], issued_at=data["issued_at"],
                   payload=data.get("payload") or {})


class ChallengeWorkflow:
    """Issue, inspect and consume challenges of one kind.

    With ``single_active`` set, issuing a challenge for a subject evicts
    the one issued before it.
    """

    def __init__(self,
                 kvs: KeyValueStore,
                 kind: ChallengeKind,
                 ttl: float,
                 single_active: bool = False,
                 clock: Optional[Clock] = None,
                 token_factory: Callable[[int], str] = secrets.token_urlsafe):
        self.kvs = kvs
        self.kind = kind
        self.ttl = ttl
        self.single_active = single_active
        self.clock = clock or SystemClock()
        self._token_factory = token_factory
        self.logger = get_logger(f"iam.challenges.{kind.value}")

    def _key(self, code: str) -> str:
        return f"challenge:{self.kind.value}:{code}"

    def _subject_key(self, subject: str) -> str:
        return f"challenge:{self.kind.value}:subject:{subject}"

    async def issue(self, subject: str, payload: Optional[Dict[str, Any]] = None) -> Challenge:
        challenge = Challenge(kind=self.kind, code=self._token_factory(32), subject=subject,
                              issued_at=self.clock.now(), payload=dict(payload or {}))
        await self.kvs.put(self._key(challenge.code), challenge.serialize(), self.ttl)

        if self.single_active:
            previous = await self.kvs.replace(self._subject_key(subject), challenge.code, self.ttl)
            if previous and previous != challenge.code:
                await self.kvs.delete(self._key(previous))
                self.logger.info("Previous challenge invalidated", subject=subject)

        self.logger.info("Challenge issued", subject=subject)
        return challenge

    async def peek(self, code: str) -> Challenge:
        """Read a challenge without consuming it."""
        raw = await self.kvs.get(self._key(code))
        return self._decode(code, raw)

    async def consume(self, code: str) -> Challenge:
        """Atomically consume a challenge. Exactly one caller succeeds."""
        raw = await self.kvs.mark_if_present(self._key(code), CONSUMED)
        challenge = self._decode(code, raw)
        self.logger.info("Challenge consumed", subject=challenge.subject)
        return challenge

    async def restore(self, challenge: Challenge) -> None:
        """Put a consumed challenge back when its follow-up step failed."""
        remaining = await self.kvs.ttl(self._key(challenge.code))
        if remaining:
            await self.kvs.put(self._key(challenge.code), challenge.serialize(), remaining)

    def _decode(self, code: str, raw: Optional[str]) -> Challenge:
        if raw is None:
            raise TokenExpired("Challenge expired or unknown")
        if raw == CONSUMED:
            raise AlreadyConsumed()
        return Challenge.deserialize(self.kind, code, raw)


class InvitationService:
    """Invitations carry the groups an invitee joins on sign-up."""

    def __init__(self, workflow: ChallengeWorkflow):
        self.workflow = workflow

    async def invite(self, email: str, groups: Optional[List[str]] = None) -> Challenge:
        return await self.workflow.issue(email, {"email": email, "groups": list(groups or [])})

    async def view(self, code: str) -> Challenge:
        return await self.workflow.peek(code)

    async def accept(self, code: str) -> Challenge:
        return await self.workflow.consume(code)

    async def restore(self, challenge: Challenge) -> None:
        await self.workflow.restore(challenge)


class ProfileVerificationService:
    """Confirm a user's email address."""

    def __init__(self, workflow: ChallengeWorkflow, repository: DirectoryRepository):
        self.workflow = workflow
        self.repository = repository

    async def request(self, user: User) -> Challenge:
        if not user.email:
            raise ValidationError("User has no email address to verify")
        return await self.workflow.issue(user.id, {"email": user.email})

    async def verify(self, code: str) -> User:
        challenge = await self.workflow.consume(code)
        user = await self.repository.get_user(challenge.subject)
        if user is None:
            raise TokenInvalid("Challenge subject no longer exists")
        if user.email != challenge.payload.get("email"):
            raise ValidationError("Email address changed after verification was requested")
        user.profile_verified = True
        await self.repository.update_user(user)
        return user
