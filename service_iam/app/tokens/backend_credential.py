"""
Signed credential forwarded to protected backends.

The credential is a short-lived HS256 JWT naming the principal and the
permissions it holds per application and realm, so a backend can decide
without calling back.
"""

import secrets
from typing import Any, Dict, List, Optional

from jose import jwt
from jose.exceptions import JWTError

from shared.clock import Clock, SystemClock
from shared.errors import TokenExpired, TokenInvalid
from shared.logging import get_logger

from ..principal import Principal


class BackendCredentialSigner:
    """Sign and verify backend credentials."""

    algorithm = "HS256"

    def __init__(self, key: Optional[str] = None, expires: int = 300, issuer: str = "iam",
                 clock: Optional[Clock] = None):
        self.key = key or secrets.token_urlsafe(32)
        self.expires = expires
        self.issuer = issuer
        self.clock = clock or SystemClock()
        self.logger = get_logger("iam.tokens.backend")

    def sign(self, principal: Principal, permissions: Dict[str, Dict[str, List[str]]]) -> str:
        now = int(self.clock.now())
        claims = {
            "iss": self.issuer,
            "sub": principal.user_id,
            "account": principal.account,
            "auth_method": principal.auth_method,
            "permissions": permissions,
            "iat": now,
            "exp": now + self.expires,
        }
        return jwt.encode(claims, self.key, algorithm=self.algorithm)

    def verify(self, credential: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(
                credential,
                self.key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                # expiry is checked against the injected clock below
                options={"verify_exp": False, "verify_aud": False}
            )
        except JWTError as e:
            self.logger.warning("Backend credential rejected", error=str(e))
            raise TokenInvalid("Backend credential invalid")

        if self.clock.now() >= claims.get("exp", 0):
            raise TokenExpired("Backend credential expired")
        return claims
