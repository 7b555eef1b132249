"""
The resolved identity handed out by a successful authentication.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class Principal:
    """An authenticated user.

    ``auth_method`` records how the identity was established (password,
    ldap, oidc) and ``provider`` names the federation provider, if any.
    """

    user_id: str
    account: str
    auth_method: str
    provider: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Principal":
        return cls(
            user_id=data["user_id"],
            account=data["account"],
            auth_method=data["auth_method"],
            provider=data.get("provider"),
            attributes=dict(data.get("attributes") or {}),
        )
