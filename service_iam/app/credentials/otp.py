"""
TOTP second factor.

Codes are accepted within ``valid_window`` steps either side of the
current one. An accepted code is remembered in the key-value store for as
long as it could still verify, so it cannot be replayed.
"""

from typing import Optional, Tuple

import pyotp

from shared.clock import Clock, SystemClock
from shared.config import OtpSettings
from shared.logging import get_logger

from ..kvs import KeyValueStore
from ..rbac.models import User
from ..rbac.repository import DirectoryRepository


class OtpService:
    """Manage per-user TOTP secrets and verify one-time passwords."""

    def __init__(self,
                 repository: DirectoryRepository,
                 kvs: KeyValueStore,
                 settings: OtpSettings,
                 clock: Optional[Clock] = None):
        self.repository = repository
        self.kvs = kvs
        self.settings = settings
        self.clock = clock or SystemClock()
        self.logger = get_logger("iam.credentials.otp")

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self.settings.digits, interval=self.settings.interval)

    async def create_key(self, user: User) -> Tuple[str, str]:
        """Generate a new secret for ``user``, replacing any existing one.

        Returns the secret and its provisioning URI.
        """
        secret = pyotp.random_base32()
        await self.repository.set_otp_secret(user.id, secret)
        uri = self._totp(secret).provisioning_uri(name=user.account, issuer_name=self.settings.issuer)
        self.logger.info("OTP key created", user_id=user.id)
        return secret, uri

    async def delete_key(self, user: User) -> bool:
        deleted = await self.repository.delete_otp_secret(user.id)
        if deleted:
            self.logger.info("OTP key deleted", user_id=user.id)
        return deleted

    async def has_key(self, user: User) -> bool:
        return await self.repository.get_otp_secret(user.id) is not None

    def current_code(self, secret: str) -> str:
        return self._totp(secret).at(int(self.clock.now()))

    async def verify(self, user: User, code: Optional[str]) -> bool:
        """Check ``code`` for ``user`` and burn it on success."""
        if not code:
            return False
        secret = await self.repository.get_otp_secret(user.id)
        if secret is None:
            return False
        if not self._totp(secret).verify(code, for_time=int(self.clock.now()),
                                         valid_window=self.settings.valid_window):
            return False

        ttl = self.settings.interval * (2 * self.settings.valid_window + 1)
        if not await self.kvs.put_if_absent(f"otp_used:{user.id}:{code}", "1", ttl):
            self.logger.warning("OTP replay rejected", user_id=user.id)
            return False
        return True
