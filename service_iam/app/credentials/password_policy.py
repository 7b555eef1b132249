"""
Password policy checks applied when a credential is set.
"""

import re
from typing import List

from shared.config import PasswordPolicySettings
from shared.errors import ValidationError

_SYMBOL = re.compile(r"[^A-Za-z0-9]")


class PasswordPolicy:
    """Validate candidate passwords against configured rules."""

    def __init__(self, settings: PasswordPolicySettings):
        self.settings = settings
        self._pattern = re.compile(settings.pattern) if settings.pattern else None

    def violations(self, password: str, account: str = "") -> List[str]:
        s = self.settings
        found = []
        if len(password) < s.min_length:
            found.append(f"must be at least {s.min_length} characters")
        if len(password) > s.max_length:
            found.append(f"must be at most {s.max_length} characters")
        if s.require_digit and not any(c.isdigit() for c in password):
            found.append("must contain a digit")
        if s.require_upper and not any(c.isupper() for c in password):
            found.append("must contain an uppercase letter")
        if s.require_lower and not any(c.islower() for c in password):
            found.append("must contain a lowercase letter")
        if s.require_symbol and not _SYMBOL.search(password):
            found.append("must contain a symbol")
        if self._pattern is not None and not self._pattern.fullmatch(password):
            found.append("must match the configured pattern")
        if account and password.lower() == account.lower():
            found.append("must not equal the account name")
        return found

    def validate(self, password: str, account: str = "") -> None:
        """Raise ``ValidationError`` listing every violated rule."""
        found = self.violations(password, account)
        if found:
            raise ValidationError("Password does not satisfy the password policy", violations=found)
