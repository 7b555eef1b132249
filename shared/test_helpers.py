"""
Test helper functions and factory methods for the IAM service.
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from jose import jwt

from shared.config import IamConfig


class ManualClock:
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> float:
        self._now += seconds
        return self._now

    def set(self, value: float) -> None:
        self._now = value


class SequentialTokens:
    """Deterministic stand-in for ``secrets.token_urlsafe``."""

    def __init__(self, prefix: str = "tok"):
        self.prefix = prefix
        self.issued: List[str] = []

    def __call__(self, nbytes: int = 32) -> str:
        value = f"{self.prefix}_{len(self.issued):04d}_{uuid.uuid4().hex[:16]}"
        self.issued.append(value)
        return value


@dataclass
class TestUser:
    """Test user data."""
    __test__ = False

    account: str
    email: str
    password: str = "Passw0rd-123"
    groups: List[str] = field(default_factory=list)


class TestDataFactory:
    """Factory for creating test data."""

    __test__ = False

    @staticmethod
    def create_test_users() -> List[TestUser]:
        return [
            TestUser(account="alice", email="alice@example.com", groups=["finance"]),
            TestUser(account="bob", email="bob@example.com", groups=["engineering"]),
            TestUser(account="carol", email="carol@example.com"),
        ]

    @staticmethod
    def billing_scenario() -> Dict[str, Any]:
        """alice is only in finance; finance has reader in billing-app/prod."""
        return {
            "application": "billing-app",
            "realm": "prod",
            "permissions": ["invoice:read", "invoice:delete"],
            "role": {"name": "reader", "permissions": ["invoice:read"]},
            "group": {"name": "finance", "members": ["alice"]},
        }


class MockTokenGenerator:
    """Generate ID tokens the way a federated provider would."""

    def __init__(self, issuer: str = "https://idp.example.com", secret: str = "mock-client-secret",
                 audience: str = "iam-client"):
        self.issuer = issuer
        self.secret = secret
        self.audience = audience

    def generate_id_token(self, subject: str, expires_in: int = 300, nonce: Optional[str] = None,
                          **claims) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "sub": subject,
            "aud": self.audience,
            "iat": now,
            "exp": now + expires_in,
            **claims,
        }
        if nonce is not None:
            payload["nonce"] = nonce
        return jwt.encode(payload, self.secret, algorithm="HS256")


class TestEnvironment:
    """Test environment configuration."""

    __test__ = False

    @staticmethod
    def get_mock_config(**overrides) -> IamConfig:
        values = {
            "env": "test",
            "log_level": "warning",
            "kvs_backend": "memory",
            "repository_backend": "memory",
            "backend_credential_key": "test-backend-key",
            "bootstrap_admin_account": "admin",
            "bootstrap_admin_password": "Adm1n-password",
        }
        values.update(overrides)
        return IamConfig(**values)
