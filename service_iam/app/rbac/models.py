"""
RBAC entities and request models.
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field

NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:@\-]{0,99}$")


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SubjectType(str, Enum):
    """Who an assignment grants a role to."""
    USER = "user"
    GROUP = "group"


@dataclass
class User:
    """A person or service account."""
    account: str
    id: str = field(default_factory=new_id)
    name: Optional[str] = None
    email: Optional[str] = None
    profile_verified: bool = False
    locked: bool = False
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Group:
    """A named set of users."""
    name: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    members: Set[str] = field(default_factory=set)


@dataclass
class Application:
    """A protected application owning realms."""
    name: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None


@dataclass
class Realm:
    """Authorization scope inside an application.

    ``allowed_roles`` limits which roles may be assigned here; empty means
    any role.
    """
    name: str
    application_id: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    allowed_roles: Set[str] = field(default_factory=set)


@dataclass
class Permission:
    """A named capability, e.g. ``invoice:read``."""
    name: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None


@dataclass
class Role:
    """A named bundle of permission ids."""
    name: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    permissions: Set[str] = field(default_factory=set)


@dataclass(frozen=True)
class Assignment:
    """Grant of a role to a user or group within a realm."""
    subject_type: SubjectType
    subject_id: str
    role_id: str
    realm_id: str


@dataclass
class OidcApplication:
    """A client that may request authorization codes for signed-in users.

    Only the bcrypt hash of the client secret is kept.
    """
    name: str
    client_id: str
    client_secret_hash: str
    id: str = field(default_factory=new_id)
    description: Optional[str] = None
    redirect_uris: List[str] = field(default_factory=list)

    def to_public(self) -> dict:
        return {"id": self.id, "name": self.name, "client_id": self.client_id,
                "description": self.description, "redirect_uris": list(self.redirect_uris)}


@dataclass
class PasswordCredential:
    """Stored password hash for a user."""
    user_id: str
    password_hash: str
    created_at: datetime = field(default_factory=utcnow)


class UserCreateRequest(BaseModel):
    account: str = Field(..., description="Unique account name")
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = Field(None, description="Initial password")


class UserUpdateRequest(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    locked: Optional[bool] = None


class GroupCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    members: List[str] = Field(default_factory=list, description="Member accounts")


class GroupUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class ApplicationCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None


class RealmCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    allowed_roles: List[str] = Field(default_factory=list, description="Role names")


class RoleCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list, description="Permission names")


class PermissionCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None


class OidcApplicationCreateRequest(BaseModel):
    name: str
    description: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list, description="Allowed redirect URIs")


class OidcApplicationUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    redirect_uris: Optional[List[str]] = None


class AssignmentRequest(BaseModel):
    subject_type: SubjectType
    subject: str = Field(..., description="User account or group name")
    role: str
    application: str
    realm: str


class PermissionCheckRequest(BaseModel):
    application: str
    realm: str
    permission: str


class PermissionCheckResponse(BaseModel):
    allowed: bool
