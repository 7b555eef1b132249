"""
Persistence port for directory entities and its in-memory adapter.

Adapters enforce uniqueness (``Conflict``) and references
(``ValidationError``) themselves and apply each call all-or-nothing.
Deletes cascade to relations (memberships, assignments, credentials).
"""

import asyncio
import copy
from typing import Dict, Iterable, List, Optional, Protocol, Set, Tuple

from shared.errors import Conflict, ValidationError

from .models import (
    Application,
    Assignment,
    Group,
    OidcApplication,
    PasswordCredential,
    Permission,
    Realm,
    Role,
    SubjectType,
    User,
)


class DirectoryRepository(Protocol):
    """Port for the relational store of directory entities."""

    async def start(self) -> None: ...
    async def stop(self) -> None: ...

    # Users
    async def add_user(self, user: User) -> None: ...
    async def get_user(self, user_id: str) -> Optional[User]: ...
    async def find_user_by_account(self, account: str) -> Optional[User]: ...
    async def list_users(self, offset: int = 0, limit: int = 100) -> List[User]: ...
    async def update_user(self, user: User) -> None: ...
    async def delete_user(self, user_id: str) -> bool: ...

    # Groups
    async def add_group(self, group: Group) -> None: ...
    async def get_group(self, group_id: str) -> Optional[Group]: ...
    async def find_group_by_name(self, name: str) -> Optional[Group]: ...
    async def list_groups(self, offset: int = 0, limit: int = 100) -> List[Group]: ...
    async def update_group(self, group: Group) -> None: ...
    async def delete_group(self, group_id: str) -> bool: ...
    async def add_group_members(self, group_id: str, user_ids: Iterable[str]) -> None: ...
    async def remove_group_members(self, group_id: str, user_ids: Iterable[str]) -> None: ...
    async def groups_of_user(self, user_id: str) -> List[Group]: ...

    # Applications and realms
    async def add_application(self, application: Application) -> None: ...
    async def get_application(self, application_id: str) -> Optional[Application]: ...
    async def find_application_by_name(self, name: str) -> Optional[Application]: ...
    async def list_applications(self, offset: int = 0, limit: int = 100) -> List[Application]: ...
    async def update_application(self, application: Application) -> None: ...
    async def delete_application(self, application_id: str) -> bool: ...
    async def add_realm(self, realm: Realm) -> None: ...
    async def get_realm(self, realm_id: str) -> Optional[Realm]: ...
    async def find_realm(self, application_id: str, name: str) -> Optional[Realm]: ...
    async def list_realms(self, application_id: str) -> List[Realm]: ...
    async def update_realm(self, realm: Realm) -> None: ...
    async def delete_realm(self, realm_id: str) -> bool: ...

    # Roles and permissions
    async def add_role(self, role: Role) -> None: ...
    async def get_role(self, role_id: str) -> Optional[Role]: ...
    async def find_role_by_name(self, name: str) -> Optional[Role]: ...
    async def list_roles(self, offset: int = 0, limit: int = 100) -> List[Role]: ...
    async def update_role(self, role: Role) -> None: ...
    async def delete_role(self, role_id: str) -> bool: ...
    async def add_permission(self, permission: Permission) -> None: ...
    async def get_permission(self, permission_id: str) -> Optional[Permission]: ...
    async def find_permission_by_name(self, name: str) -> Optional[Permission]: ...
    async def list_permissions(self, offset: int = 0, limit: int = 100) -> List[Permission]: ...
    async def update_permission(self, permission: Permission) -> None: ...
    async def delete_permission(self, permission_id: str) -> bool: ...

    # Assignments
    async def add_assignments(self, assignments: List[Assignment]) -> None: ...
    async def remove_assignments(self, assignments: List[Assignment]) -> int: ...
    async def list_assignments(self, realm_id: Optional[str] = None,
                               subject: Optional[Tuple[SubjectType, str]] = None) -> List[Assignment]: ...
    async def effective_permission_names(self, user_id: str, realm_id: str) -> Set[str]: ...

    # Credentials
    async def get_password_credential(self, user_id: str) -> Optional[PasswordCredential]: ...
    async def set_password_credential(self, credential: PasswordCredential) -> None: ...
    async def delete_password_credential(self, user_id: str) -> bool: ...
    async def increment_failed_sign_ins(self, user_id: str) -> int: ...
    async def reset_failed_sign_ins(self, user_id: str) -> None: ...
    async def get_otp_secret(self, user_id: str) -> Optional[str]: ...
    async def set_otp_secret(self, user_id: str, secret: str) -> None: ...
    async def delete_otp_secret(self, user_id: str) -> bool: ...

    # Federated identities
    async def link_identity(self, provider: str, subject: str, user_id: str) -> None: ...
    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]: ...

    # OIDC client applications
    async def add_oidc_application(self, application: OidcApplication) -> None: ...
    async def find_oidc_application_by_name(self, name: str) -> Optional[OidcApplication]: ...
    async def find_oidc_application_by_client_id(self, client_id: str) -> Optional[OidcApplication]: ...
    async def list_oidc_applications(self, offset: int = 0, limit: int = 100) -> List[OidcApplication]: ...
    async def update_oidc_application(self, application: OidcApplication) -> None: ...
    async def delete_oidc_application(self, application_id: str) -> bool: ...


class InMemoryDirectoryRepository:
    """Directory repository held in process memory."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._users: Dict[str, User] = {}
        self._groups: Dict[str, Group] = {}
        self._applications: Dict[str, Application] = {}
        self._realms: Dict[str, Realm] = {}
        self._roles: Dict[str, Role] = {}
        self._permissions: Dict[str, Permission] = {}
        self._assignments: Set[Assignment] = set()
        self._credentials: Dict[str, PasswordCredential] = {}
        self._failed_sign_ins: Dict[str, int] = {}
        self._otp_secrets: Dict[str, str] = {}
        self._identities: Dict[Tuple[str, str], str] = {}
        self._oidc_applications: Dict[str, OidcApplication] = {}

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None

    @staticmethod
    def _unique(entities: Iterable, attr: str, value, exclude_id: Optional[str], label: str) -> None:
        for entity in entities:
            if getattr(entity, attr) == value and entity.id != exclude_id:
                raise Conflict(f"{label} '{value}' already exists", details={label: value})

    @staticmethod
    def _page(items, offset: int, limit: int) -> list:
        return [copy.deepcopy(i) for i in list(items)[offset:offset + limit]]

    # Users

    async def add_user(self, user: User) -> None:
        async with self._lock:
            self._unique(self._users.values(), "account", user.account, None, "account")
            self._users[user.id] = copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[User]:
        return copy.deepcopy(self._users.get(user_id))

    async def find_user_by_account(self, account: str) -> Optional[User]:
        for user in self._users.values():
            if user.account == account:
                return copy.deepcopy(user)
        return None

    async def list_users(self, offset: int = 0, limit: int = 100) -> List[User]:
        return self._page(self._users.values(), offset, limit)

    async def update_user(self, user: User) -> None:
        async with self._lock:
            if user.id not in self._users:
                raise ValidationError("Unknown user", details={"user_id": user.id})
            self._unique(self._users.values(), "account", user.account, user.id, "account")
            self._users[user.id] = copy.deepcopy(user)

    async def delete_user(self, user_id: str) -> bool:
        async with self._lock:
            if self._users.pop(user_id, None) is None:
                return False
            for group in self._groups.values():
                group.members.discard(user_id)
            self._drop_assignments(lambda a: a.subject_type == SubjectType.USER and a.subject_id == user_id)
            self._credentials.pop(user_id, None)
            self._failed_sign_ins.pop(user_id, None)
            self._otp_secrets.pop(user_id, None)
            self._identities = {k: v for k, v in self._identities.items() if v != user_id}
            return True

    # Groups

    async def add_group(self, group: Group) -> None:
        async with self._lock:
            self._unique(self._groups.values(), "name", group.name, None, "group")
            self._require_users(group.members)
            self._groups[group.id] = copy.deepcopy(group)

    async def get_group(self, group_id: str) -> Optional[Group]:
        return copy.deepcopy(self._groups.get(group_id))

    async def find_group_by_name(self, name: str) -> Optional[Group]:
        for group in self._groups.values():
            if group.name == name:
                return copy.deepcopy(group)
        return None

    async def list_groups(self, offset: int = 0, limit: int = 100) -> List[Group]:
        return self._page(self._groups.values(), offset, limit)

    async def update_group(self, group: Group) -> None:
        async with self._lock:
            if group.id not in self._groups:
                raise ValidationError("Unknown group", details={"group_id": group.id})
            self._unique(self._groups.values(), "name", group.name, group.id, "group")
            self._require_users(group.members)
            self._groups[group.id] = copy.deepcopy(group)

    async def delete_group(self, group_id: str) -> bool:
        async with self._lock:
            if self._groups.pop(group_id, None) is None:
                return False
            self._drop_assignments(lambda a: a.subject_type == SubjectType.GROUP and a.subject_id == group_id)
            return True

    async def add_group_members(self, group_id: str, user_ids: Iterable[str]) -> None:
        user_ids = set(user_ids)
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise ValidationError("Unknown group", details={"group_id": group_id})
            self._require_users(user_ids)
            group.members |= user_ids

    async def remove_group_members(self, group_id: str, user_ids: Iterable[str]) -> None:
        async with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise ValidationError("Unknown group", details={"group_id": group_id})
            group.members -= set(user_ids)

    async def groups_of_user(self, user_id: str) -> List[Group]:
        return [copy.deepcopy(g) for g in self._groups.values() if user_id in g.members]

    def _require_users(self, user_ids: Iterable[str]) -> None:
        missing = sorted(set(user_ids) - self._users.keys())
        if missing:
            raise ValidationError("Unknown users", details={"user_ids": missing})

    # Applications and realms

    async def add_application(self, application: Application) -> None:
        async with self._lock:
            self._unique(self._applications.values(), "name", application.name, None, "application")
            self._applications[application.id] = copy.deepcopy(application)

    async def get_application(self, application_id: str) -> Optional[Application]:
        return copy.deepcopy(self._applications.get(application_id))

    async def find_application_by_name(self, name: str) -> Optional[Application]:
        for application in self._applications.values():
            if application.name == name:
                return copy.deepcopy(application)
        return None

    async def list_applications(self, offset: int = 0, limit: int = 100) -> List[Application]:
        return self._page(self._applications.values(), offset, limit)

    async def update_application(self, application: Application) -> None:
        async with self._lock:
            if application.id not in self._applications:
                raise ValidationError("Unknown application", details={"application_id": application.id})
            self._unique(self._applications.values(), "name", application.name, application.id, "application")
            self._applications[application.id] = copy.deepcopy(application)

    async def delete_application(self, application_id: str) -> bool:
        async with self._lock:
            if self._applications.pop(application_id, None) is None:
                return False
            realm_ids = {r.id for r in self._realms.values() if r.application_id == application_id}
            for realm_id in realm_ids:
                del self._realms[realm_id]
            self._drop_assignments(lambda a: a.realm_id in realm_ids)
            return True

    async def add_realm(self, realm: Realm) -> None:
        async with self._lock:
            self._check_realm(realm, exclude_id=None)
            self._realms[realm.id] = copy.deepcopy(realm)

    async def get_realm(self, realm_id: str) -> Optional[Realm]:
        return copy.deepcopy(self._realms.get(realm_id))

    async def find_realm(self, application_id: str, name: str) -> Optional[Realm]:
        for realm in self._realms.values():
            if realm.application_id == application_id and realm.name == name:
                return copy.deepcopy(realm)
        return None

    async def list_realms(self, application_id: str) -> List[Realm]:
        return [copy.deepcopy(r) for r in self._realms.values() if r.application_id == application_id]

    async def update_realm(self, realm: Realm) -> None:
        async with self._lock:
            if realm.id not in self._realms:
                raise ValidationError("Unknown realm", details={"realm_id": realm.id})
            self._check_realm(realm, exclude_id=realm.id)
            self._realms[realm.id] = copy.deepcopy(realm)

    async def delete_realm(self, realm_id: str) -> bool:
        async with self._lock:
            if self._realms.pop(realm_id, None) is None:
                return False
            self._drop_assignments(lambda a: a.realm_id == realm_id)
            return True

    def _check_realm(self, realm: Realm, exclude_id: Optional[str]) -> None:
        if realm.application_id not in self._applications:
            raise ValidationError("Realm must belong to an existing application",
                                  details={"application_id": realm.application_id})
        siblings = [r for r in self._realms.values() if r.application_id == realm.application_id]
        self._unique(siblings, "name", realm.name, exclude_id, "realm")
        missing = sorted(realm.allowed_roles - self._roles.keys())
        if missing:
            raise ValidationError("Unknown roles", details={"role_ids": missing})

    # Roles and permissions

    async def add_role(self, role: Role) -> None:
        async with self._lock:
            self._unique(self._roles.values(), "name", role.name, None, "role")
            self._require_permissions(role.permissions)
            self._roles[role.id] = copy.deepcopy(role)

    async def get_role(self, role_id: str) -> Optional[Role]:
        return copy.deepcopy(self._roles.get(role_id))

    async def find_role_by_name(self, name: str) -> Optional[Role]:
        for role in self._roles.values():
            if role.name == name:
                return copy.deepcopy(role)
        return None

    async def list_roles(self, offset: int = 0, limit: int = 100) -> List[Role]:
        return self._page(self._roles.values(), offset, limit)

    async def update_role(self, role: Role) -> None:
        async with self._lock:
            if role.id not in self._roles:
                raise ValidationError("Unknown role", details={"role_id": role.id})
            self._unique(self._roles.values(), "name", role.name, role.id, "role")
            self._require_permissions(role.permissions)
            self._roles[role.id] = copy.deepcopy(role)

    async def delete_role(self, role_id: str) -> bool:
        async with self._lock:
            if self._roles.pop(role_id, None) is None:
                return False
            for realm in self._realms.values():
                realm.allowed_roles.discard(role_id)
            self._drop_assignments(lambda a: a.role_id == role_id)
            return True

    async def add_permission(self, permission: Permission) -> None:
        async with self._lock:
            self._unique(self._permissions.values(), "name", permission.name, None, "permission")
            self._permissions[permission.id] = copy.deepcopy(permission)

    async def get_permission(self, permission_id: str) -> Optional[Permission]:
        return copy.deepcopy(self._permissions.get(permission_id))

    async def find_permission_by_name(self, name: str) -> Optional[Permission]:
        for permission in self._permissions.values():
            if permission.name == name:
                return copy.deepcopy(permission)
        return None

    async def list_permissions(self, offset: int = 0, limit: int = 100) -> List[Permission]:
        return self._page(self._permissions.values(), offset, limit)

    async def update_permission(self, permission: Permission) -> None:
        async with self._lock:
            if permission.id not in self._permissions:
                raise ValidationError("Unknown permission", details={"permission_id": permission.id})
            self._unique(self._permissions.values(), "name", permission.name, permission.id, "permission")
            self._permissions[permission.id] = copy.deepcopy(permission)

    async def delete_permission(self, permission_id: str) -> bool:
        async with self._lock:
            if self._permissions.pop(permission_id, None) is None:
                return False
            for role in self._roles.values():
                role.permissions.discard(permission_id)
            return True

    def _require_permissions(self, permission_ids: Iterable[str]) -> None:
        missing = sorted(set(permission_ids) - self._permissions.keys())
        if missing:
            raise ValidationError("Unknown permissions", details={"permission_ids": missing})

    # Assignments

    async def add_assignments(self, assignments: List[Assignment]) -> None:
        async with self._lock:
            for assignment in assignments:
                subjects = self._users if assignment.subject_type == SubjectType.USER else self._groups
                if assignment.subject_id not in subjects:
                    raise ValidationError("Unknown assignment subject",
                                          details={"subject_id": assignment.subject_id})
                if assignment.role_id not in self._roles:
                    raise ValidationError("Unknown role", details={"role_id": assignment.role_id})
                if assignment.realm_id not in self._realms:
                    raise ValidationError("Unknown realm", details={"realm_id": assignment.realm_id})
                if assignment in self._assignments:
                    raise Conflict("Assignment already exists", details={
                        "subject_id": assignment.subject_id,
                        "role_id": assignment.role_id,
                        "realm_id": assignment.realm_id,
                    })
            if len(set(assignments)) != len(assignments):
                raise Conflict("Duplicate assignments in request")
            self._assignments.update(assignments)

    async def remove_assignments(self, assignments: List[Assignment]) -> int:
        async with self._lock:
            present = self._assignments.intersection(assignments)
            self._assignments -= present
            return len(present)

    async def list_assignments(self, realm_id: Optional[str] = None,
                               subject: Optional[Tuple[SubjectType, str]] = None) -> List[Assignment]:
        return [
            a for a in self._assignments
            if (realm_id is None or a.realm_id == realm_id)
            and (subject is None or (a.subject_type, a.subject_id) == subject)
        ]

    async def effective_permission_names(self, user_id: str, realm_id: str) -> Set[str]:
        subjects = {(SubjectType.USER, user_id)}
        subjects.update((SubjectType.GROUP, g.id) for g in self._groups.values() if user_id in g.members)
        names: Set[str] = set()
        for assignment in self._assignments:
            if assignment.realm_id != realm_id:
                continue
            if (assignment.subject_type, assignment.subject_id) not in subjects:
                continue
            role = self._roles.get(assignment.role_id)
            if role is None:
                continue
            names.update(self._permissions[p].name for p in role.permissions if p in self._permissions)
        return names

    def _drop_assignments(self, predicate) -> None:
        self._assignments = {a for a in self._assignments if not predicate(a)}

    # Credentials

    async def get_password_credential(self, user_id: str) -> Optional[PasswordCredential]:
        return copy.deepcopy(self._credentials.get(user_id))

    async def set_password_credential(self, credential: PasswordCredential) -> None:
        async with self._lock:
            self._require_users([credential.user_id])
            self._credentials[credential.user_id] = copy.deepcopy(credential)

    async def delete_password_credential(self, user_id: str) -> bool:
        async with self._lock:
            return self._credentials.pop(user_id, None) is not None

    async def increment_failed_sign_ins(self, user_id: str) -> int:
        async with self._lock:
            self._failed_sign_ins[user_id] = self._failed_sign_ins.get(user_id, 0) + 1
            return self._failed_sign_ins[user_id]

    async def reset_failed_sign_ins(self, user_id: str) -> None:
        async with self._lock:
            self._failed_sign_ins.pop(user_id, None)

    async def get_otp_secret(self, user_id: str) -> Optional[str]:
        return self._otp_secrets.get(user_id)

    async def set_otp_secret(self, user_id: str, secret: str) -> None:
        async with self._lock:
            self._require_users([user_id])
            self._otp_secrets[user_id] = secret

    async def delete_otp_secret(self, user_id: str) -> bool:
        async with self._lock:
            return self._otp_secrets.pop(user_id, None) is not None

    # Federated identities

    async def link_identity(self, provider: str, subject: str, user_id: str) -> None:
        async with self._lock:
            self._require_users([user_id])
            key = (provider, subject)
            if key in self._identities and self._identities[key] != user_id:
                raise Conflict("Identity already linked", details={"provider": provider})
            self._identities[key] = user_id

    async def find_user_by_identity(self, provider: str, subject: str) -> Optional[User]:
        user_id = self._identities.get((provider, subject))
        return copy.deepcopy(self._users.get(user_id)) if user_id else None

    # OIDC client applications

    async def add_oidc_application(self, application: OidcApplication) -> None:
        async with self._lock:
            self._unique(self._oidc_applications.values(), "name", application.name, None, "oidc_application")
            self._unique(self._oidc_applications.values(), "client_id", application.client_id, None, "client_id")
            self._oidc_applications[application.id] = copy.deepcopy(application)

    async def find_oidc_application_by_name(self, name: str) -> Optional[OidcApplication]:
        for application in self._oidc_applications.values():
            if application.name == name:
                return copy.deepcopy(application)
        return None

    async def find_oidc_application_by_client_id(self, client_id: str) -> Optional[OidcApplication]:
        for application in self._oidc_applications.values():
            if application.client_id == client_id:
                return copy.deepcopy(application)
        return None

    async def list_oidc_applications(self, offset: int = 0, limit: int = 100) -> List[OidcApplication]:
        return self._page(self._oidc_applications.values(), offset, limit)

    async def update_oidc_application(self, application: OidcApplication) -> None:
        async with self._lock:
            if application.id not in self._oidc_applications:
                raise ValidationError("Unknown OIDC application", details={"oidc_application_id": application.id})
            self._unique(self._oidc_applications.values(), "name", application.name, application.id,
                         "oidc_application")
            self._oidc_applications[application.id] = copy.deepcopy(application)

    async def delete_oidc_application(self, application_id: str) -> bool:
        async with self._lock:
            return self._oidc_applications.pop(application_id, None) is not None
