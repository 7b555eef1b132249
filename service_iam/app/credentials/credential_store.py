"""
Password credentials: hashing, verification, policy, lockout and reset.
"""

import asyncio
import base64
import hashlib
from typing import Optional

import bcrypt

from shared.errors import AuthenticationFailure
from shared.logging import get_logger

from ..challenges import Challenge, ChallengeWorkflow
from ..hooks import HookDispatcher, HookEventKind
from ..rbac.models import PasswordCredential, User
from ..rbac.repository import DirectoryRepository
from .password_policy import PasswordPolicy

# bcrypt only looks at the first 72 bytes
_BCRYPT_MAX_BYTES = 72


def _prepare(password: str) -> bytes:
    encoded = password.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        encoded = base64.b64encode(hashlib.sha256(encoded).digest())
    return encoded


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_prepare(password), bcrypt.gensalt()).decode()


def check_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(_prepare(password), password_hash.encode())
    except ValueError:
        return False


# Compared against when there is no stored hash, so every rejection costs one bcrypt check.
_UNUSABLE_HASH = hash_password("unusable-password-placeholder")


class CredentialStore:
    """Stores and verifies password credentials.

    The policy is enforced every time a password is set and is never
    relaxed. After ``lock_after`` consecutive failures the account is
    locked; a successful sign-in resets the counter and a password reset
    also unlocks the account.
    """

    def __init__(self,
                 repository: DirectoryRepository,
                 policy: PasswordPolicy,
                 reset_workflow: ChallengeWorkflow,
                 lock_after: int = 10,
                 hooks: Optional[HookDispatcher] = None):
        self.repository = repository
        self.policy = policy
        self.reset_workflow = reset_workflow
        self.lock_after = lock_after
        self.hooks = hooks
        self.logger = get_logger("iam.credentials")

    async def set_password(self, user: User, password: str) -> None:
        self.policy.validate(password, user.account)
        password_hash = await asyncio.to_thread(hash_password, password)
        await self.repository.set_password_credential(
            PasswordCredential(user_id=user.id, password_hash=password_hash))
        self.logger.info("Password set", user_id=user.id)

    async def has_password(self, user: User) -> bool:
        return await self.repository.get_password_credential(user.id) is not None

    async def verify_password(self, user: Optional[User], plaintext: str) -> bool:
        """Check a password. A missing user or credential still costs one hash."""
        credential = None if user is None else await self.repository.get_password_credential(user.id)
        if credential is None:
            await asyncio.to_thread(check_password, plaintext, _UNUSABLE_HASH)
            return False
        return await asyncio.to_thread(check_password, plaintext, credential.password_hash)

    async def record_failure(self, user: User) -> None:
        """Count a failed sign-in and lock the account at the threshold."""
        failures = await self.repository.increment_failed_sign_ins(user.id)
        if self.lock_after and failures >= self.lock_after and not user.locked:
            user.locked = True
            await self.repository.update_user(user)
            self.logger.warning("Account locked after repeated failures", user_id=user.id, failures=failures)

    async def record_success(self, user: User) -> None:
        await self.repository.reset_failed_sign_ins(user.id)

    async def change_password(self, user: User, current: str, new: str) -> None:
        if not await self.verify_password(user, current):
            raise AuthenticationFailure()
        await self.set_password(user, new)
        self._password_changed(user)

    async def issue_reset_challenge(self, user: User) -> str:
        """Issue a reset code. Any earlier code for the user stops working."""
        challenge = await self.reset_workflow.issue(user.id)
        return challenge.code

    async def consume_reset_challenge(self, code: str, new_password: str) -> User:
        """Redeem a reset code and replace the password in one step.

        A policy violation is reported before the code is spent. If the
        replacement fails after redemption the code is put back.
        """
        self.policy.validate(new_password)
        challenge = await self.reset_workflow.consume(code)
        try:
            user = await self._apply_reset(challenge, new_password)
        except Exception:
            await self.reset_workflow.restore(challenge)
            raise
        self._password_changed(user)
        return user

    async def _apply_reset(self, challenge: Challenge, new_password: str) -> User:
        user = await self.repository.get_user(challenge.subject)
        if user is None:
            raise AuthenticationFailure()
        await self.set_password(user, new_password)
        await self.repository.reset_failed_sign_ins(user.id)
        if user.locked:
            user.locked = False
            await self.repository.update_user(user)
        return user

    def _password_changed(self, user: User) -> None:
        if self.hooks is not None:
            self.hooks.fire(HookEventKind.PASSWORD_CHANGED, user_id=user.id, account=user.account)
