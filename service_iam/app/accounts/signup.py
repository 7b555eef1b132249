"""
Self-service sign-up.

A new account may carry a password, an invitation (joins the invited
groups) and a pending OIDC session (links the federated identity). All
inputs are checked before the user is created; if a later step fails the
user is removed again, spent invitations and OIDC sessions are put
back and nothing is announced.
"""

import functools
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from shared.errors import AuthorizationDenied
from shared.logging import get_logger

from ..challenges import Challenge, InvitationService
from ..credentials import CredentialStore
from ..rbac import RbacDirectory
from ..rbac.models import User
from ..tokens import OidcSessionBinding, SessionManager


class SignUpRequest(BaseModel):
    account: str
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = Field(None, description="Optional when linking a federated identity")
    invitation_code: Optional[str] = None
    oidc_session_id: Optional[str] = None


class SignUpService:
    """Create accounts on behalf of their future owners."""

    def __init__(self,
                 rbac: RbacDirectory,
                 credentials: CredentialStore,
                 invitations: InvitationService,
                 sessions: SessionManager,
                 enabled: bool = True):
        self.rbac = rbac
        self.credentials = credentials
        self.invitations = invitations
        self.sessions = sessions
        self.enabled = enabled
        self.logger = get_logger("iam.accounts.signup")

    async def sign_up(self, request: SignUpRequest) -> User:
        if not self.enabled:
            raise AuthorizationDenied("Sign-up is disabled")

        if request.password is not None:
            self.credentials.policy.validate(request.password, request.account)
        invitation = await self.invitations.view(request.invitation_code) if request.invitation_code else None
        if request.oidc_session_id:
            await self.sessions.get_oidc_session(request.oidc_session_id)

        verified = bool(invitation and request.email and invitation.payload.get("email") == request.email)
        user = await self.rbac.create_user(request.account, name=request.name, email=request.email,
                                           profile_verified=verified, notify=False)
        undo: List[Callable[[], Awaitable[None]]] = []
        try:
            await self._complete(user, request, undo)
        except Exception:
            self.logger.warning("Sign-up rolled back", account=request.account)
            await self.rbac.repository.delete_user(user.id)
            for step in reversed(undo):
                await step()
            raise

        self.rbac.notify_user_created(user)
        self.logger.info("User signed up", account=user.account, user_id=user.id)
        return user

    async def _complete(self, user: User, request: SignUpRequest,
                        undo: List[Callable[[], Awaitable[None]]]) -> None:
        """Finish the account. Every single-use input spent here is put back if a later step fails."""
        if request.password is not None:
            await self.credentials.set_password(user, request.password)
        if request.invitation_code:
            invitation = await self.invitations.accept(request.invitation_code)
            undo.append(functools.partial(self.invitations.restore, invitation))
            await self._join_invited_groups(user, invitation)
        if request.oidc_session_id:
            binding = await self.sessions.consume_oidc_session(request.oidc_session_id)
            undo.append(functools.partial(self.sessions.restore_oidc_session, binding))
            await self._link(user, binding)

    async def _join_invited_groups(self, user: User, invitation: Challenge) -> None:
        for name in invitation.payload.get("groups", []):
            if await self.rbac.repository.find_group_by_name(name) is None:
                self.logger.warning("Invited group no longer exists", group=name)
                continue
            await self.rbac.add_members(name, [user.account])

    async def _link(self, user: User, binding: OidcSessionBinding) -> None:
        await self.rbac.repository.link_identity(binding.provider, binding.subject, user.id)
        self.logger.info("Federated identity linked", provider=binding.provider, user_id=user.id)
