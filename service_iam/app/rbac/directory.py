"""
RBAC directory: entity management by name and permission resolution.

A principal's effective permissions in a realm are the union of the
permissions of every role assigned in that realm to the principal's user
directly or to any group the user belongs to. Resolution is read-only.
Inside ``request_scope()`` results are memoized for the duration of the
scope; outside it every call goes to the repository.
"""

import contextvars
from contextlib import contextmanager
from typing import Dict, Iterable, List, Optional, Set, Tuple

from shared.errors import NotFound, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..hooks import HookDispatcher, HookEventKind
from ..principal import Principal
from .models import (
    NAME_PATTERN,
    Application,
    Assignment,
    AssignmentRequest,
    Group,
    Permission,
    Realm,
    Role,
    SubjectType,
    User,
)
from .repository import DirectoryRepository

_permission_cache: contextvars.ContextVar[Optional[Dict[Tuple[str, str, str], Set[str]]]] = \
    contextvars.ContextVar("iam_permission_cache", default=None)


@contextmanager
def request_scope():
    """Memoize permission resolution until the block exits."""
    token = _permission_cache.set({})
    try:
        yield
    finally:
        _permission_cache.reset(token)


def _invalidate_cache() -> None:
    cache = _permission_cache.get()
    if cache is not None:
        cache.clear()


def _check_name(value: str, label: str) -> str:
    if not value or not NAME_PATTERN.match(value):
        raise ValidationError(f"Invalid {label}", violations=[f"{label} must match {NAME_PATTERN.pattern}"])
    return value


class RbacDirectory:
    """Users, groups, applications, realms, roles, permissions and assignments."""

    def __init__(self,
                 repository: DirectoryRepository,
                 hooks: Optional[HookDispatcher] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.repository = repository
        self.hooks = hooks
        self.metrics = metrics
        self.logger = get_logger("iam.rbac")

    def _fire(self, kind: HookEventKind, **payload) -> None:
        if self.hooks is not None:
            self.hooks.fire(kind, **payload)

    # Lookups

    async def get_user(self, account: str) -> User:
        user = await self.repository.find_user_by_account(account)
        if user is None:
            raise NotFound("User not found", details={"account": account})
        return user

    async def get_group(self, name: str) -> Group:
        group = await self.repository.find_group_by_name(name)
        if group is None:
            raise NotFound("Group not found", details={"group": name})
        return group

    async def get_application(self, name: str) -> Application:
        application = await self.repository.find_application_by_name(name)
        if application is None:
            raise NotFound("Application not found", details={"application": name})
        return application

    async def get_realm(self, application: str, name: str) -> Realm:
        app = await self.get_application(application)
        realm = await self.repository.find_realm(app.id, name)
        if realm is None:
            raise NotFound("Realm not found", details={"application": application, "realm": name})
        return realm

    async def get_role(self, name: str) -> Role:
        role = await self.repository.find_role_by_name(name)
        if role is None:
            raise NotFound("Role not found", details={"role": name})
        return role

    async def get_permission(self, name: str) -> Permission:
        permission = await self.repository.find_permission_by_name(name)
        if permission is None:
            raise NotFound("Permission not found", details={"permission": name})
        return permission

    async def _resolve_users(self, accounts: Iterable[str]) -> Set[str]:
        ids, missing = set(), []
        for account in accounts:
            user = await self.repository.find_user_by_account(account)
            if user is None:
                missing.append(account)
            else:
                ids.add(user.id)
        if missing:
            raise ValidationError("Unknown users", details={"accounts": missing})
        return ids

    async def _resolve_permissions(self, names: Iterable[str]) -> Set[str]:
        ids, missing = set(), []
        for name in names:
            permission = await self.repository.find_permission_by_name(name)
            if permission is None:
                missing.append(name)
            else:
                ids.add(permission.id)
        if missing:
            raise ValidationError("Unknown permissions", details={"permissions": missing})
        return ids

    async def _resolve_roles(self, names: Iterable[str]) -> Set[str]:
        ids, missing = set(), []
        for name in names:
            role = await self.repository.find_role_by_name(name)
            if role is None:
                missing.append(name)
            else:
                ids.add(role.id)
        if missing:
            raise ValidationError("Unknown roles", details={"roles": missing})
        return ids

    # Users

    async def create_user(self, account: str, name: Optional[str] = None, email: Optional[str] = None,
                          profile_verified: bool = False, notify: bool = True) -> User:
        user = User(account=_check_name(account, "account"), name=name, email=email,
                    profile_verified=profile_verified)
        await self.repository.add_user(user)
        self.logger.info("User created", account=account, user_id=user.id)
        if notify:
            self.notify_user_created(user)
        return user

    def notify_user_created(self, user: User) -> None:
        self._fire(HookEventKind.USER_CREATED, user_id=user.id, account=user.account)

    async def list_users(self, offset: int = 0, limit: int = 100) -> List[User]:
        return await self.repository.list_users(offset, limit)

    async def update_user(self, account: str, name: Optional[str] = None, email: Optional[str] = None,
                          locked: Optional[bool] = None, profile_verified: Optional[bool] = None) -> User:
        user = await self.get_user(account)
        if name is not None:
            user.name = name
        if email is not None and email != user.email:
            user.email = email
            user.profile_verified = False
        if locked is not None:
            user.locked = locked
        if profile_verified is not None:
            user.profile_verified = profile_verified
        await self.repository.update_user(user)
        return user

    async def delete_user(self, account: str) -> None:
        user = await self.get_user(account)
        await self.repository.delete_user(user.id)
        _invalidate_cache()
        self.logger.info("User deleted", account=account, user_id=user.id)
        self._fire(HookEventKind.USER_DELETED, user_id=user.id, account=account)

    # Groups

    async def create_group(self, name: str, description: Optional[str] = None,
                           members: Iterable[str] = ()) -> Group:
        group = Group(name=_check_name(name, "group"), description=description,
                      members=await self._resolve_users(members))
        await self.repository.add_group(group)
        _invalidate_cache()
        self.logger.info("Group created", group=name)
        return group

    async def list_groups(self, offset: int = 0, limit: int = 100) -> List[Group]:
        return await self.repository.list_groups(offset, limit)

    async def update_group(self, name: str, new_name: Optional[str] = None,
                           description: Optional[str] = None) -> Group:
        group = await self.get_group(name)
        if new_name is not None:
            group.name = _check_name(new_name, "group")
        if description is not None:
            group.description = description
        await self.repository.update_group(group)
        return group

    async def delete_group(self, name: str) -> None:
        group = await self.get_group(name)
        await self.repository.delete_group(group.id)
        _invalidate_cache()
        self.logger.info("Group deleted", group=name)

    async def add_members(self, name: str, accounts: Iterable[str]) -> Group:
        accounts = list(accounts)
        group = await self.get_group(name)
        user_ids = await self._resolve_users(accounts)
        await self.repository.add_group_members(group.id, user_ids)
        _invalidate_cache()
        for account in accounts:
            self._fire(HookEventKind.GROUP_MEMBER_ADDED, group=name, account=account)
        return await self.get_group(name)

    async def remove_members(self, name: str, accounts: Iterable[str]) -> Group:
        group = await self.get_group(name)
        await self.repository.remove_group_members(group.id, await self._resolve_users(accounts))
        _invalidate_cache()
        return await self.get_group(name)

    # Applications and realms

    async def create_application(self, name: str, description: Optional[str] = None) -> Application:
        application = Application(name=_check_name(name, "application"), description=description)
        await self.repository.add_application(application)
        self.logger.info("Application created", application=name)
        return application

    async def list_applications(self, offset: int = 0, limit: int = 100) -> List[Application]:
        return await self.repository.list_applications(offset, limit)

    async def update_application(self, name: str, new_name: Optional[str] = None,
                                 description: Optional[str] = None) -> Application:
        application = await self.get_application(name)
        if new_name is not None:
            application.name = _check_name(new_name, "application")
        if description is not None:
            application.description = description
        await self.repository.update_application(application)
        return application

    async def delete_application(self, name: str) -> None:
        application = await self.get_application(name)
        await self.repository.delete_application(application.id)
        _invalidate_cache()

    async def create_realm(self, application: str, name: str, description: Optional[str] = None,
                           allowed_roles: Iterable[str] = ()) -> Realm:
        app = await self.repository.find_application_by_name(application)
        if app is None:
            raise ValidationError("Unknown application", details={"application": application})
        realm = Realm(name=_check_name(name, "realm"), application_id=app.id, description=description,
                      allowed_roles=await self._resolve_roles(allowed_roles))
        await self.repository.add_realm(realm)
        self.logger.info("Realm created", application=application, realm=name)
        return realm

    async def list_realms(self, application: str) -> List[Realm]:
        app = await self.get_application(application)
        return await self.repository.list_realms(app.id)

    async def update_realm(self, application: str, name: str, new_name: Optional[str] = None,
                           description: Optional[str] = None,
                           allowed_roles: Optional[Iterable[str]] = None) -> Realm:
        realm = await self.get_realm(application, name)
        if new_name is not None:
            realm.name = _check_name(new_name, "realm")
        if description is not None:
            realm.description = description
        if allowed_roles is not None:
            realm.allowed_roles = await self._resolve_roles(allowed_roles)
        await self.repository.update_realm(realm)
        return realm

    async def delete_realm(self, application: str, name: str) -> None:
        realm = await self.get_realm(application, name)
        await self.repository.delete_realm(realm.id)
        _invalidate_cache()

    # Roles and permissions

    async def create_role(self, name: str, description: Optional[str] = None,
                          permissions: Iterable[str] = ()) -> Role:
        role = Role(name=_check_name(name, "role"), description=description,
                    permissions=await self._resolve_permissions(permissions))
        await self.repository.add_role(role)
        _invalidate_cache()
        self.logger.info("Role created", role=name)
        return role

    async def list_roles(self, offset: int = 0, limit: int = 100) -> List[Role]:
        return await self.repository.list_roles(offset, limit)

    async def update_role(self, name: str, new_name: Optional[str] = None, description: Optional[str] = None,
                          permissions: Optional[Iterable[str]] = None) -> Role:
        role = await self.get_role(name)
        if new_name is not None:
            role.name = _check_name(new_name, "role")
        if description is not None:
            role.description = description
        if permissions is not None:
            role.permissions = await self._resolve_permissions(permissions)
        await self.repository.update_role(role)
        _invalidate_cache()
        return role

    async def delete_role(self, name: str) -> None:
        role = await self.get_role(name)
        await self.repository.delete_role(role.id)
        _invalidate_cache()

    async def create_permission(self, name: str, description: Optional[str] = None) -> Permission:
        permission = Permission(name=_check_name(name, "permission"), description=description)
        await self.repository.add_permission(permission)
        return permission

    async def list_permissions(self, offset: int = 0, limit: int = 100) -> List[Permission]:
        return await self.repository.list_permissions(offset, limit)

    async def update_permission(self, name: str, new_name: Optional[str] = None,
                                description: Optional[str] = None) -> Permission:
        permission = await self.get_permission(name)
        if new_name is not None:
            permission.name = _check_name(new_name, "permission")
        if description is not None:
            permission.description = description
        await self.repository.update_permission(permission)
        _invalidate_cache()
        return permission

    async def delete_permission(self, name: str) -> None:
        permission = await self.get_permission(name)
        await self.repository.delete_permission(permission.id)
        _invalidate_cache()

    # Assignments

    async def _to_assignment(self, request: AssignmentRequest) -> Assignment:
        if request.subject_type == SubjectType.USER:
            subject = await self.repository.find_user_by_account(request.subject)
        else:
            subject = await self.repository.find_group_by_name(request.subject)
        if subject is None:
            raise ValidationError("Unknown assignment subject", details={"subject": request.subject})

        role = await self.repository.find_role_by_name(request.role)
        if role is None:
            raise ValidationError("Unknown role", details={"role": request.role})

        application = await self.repository.find_application_by_name(request.application)
        realm = await self.repository.find_realm(application.id, request.realm) if application else None
        if realm is None:
            raise ValidationError("Unknown realm",
                                  details={"application": request.application, "realm": request.realm})

        if realm.allowed_roles and role.id not in realm.allowed_roles:
            raise ValidationError("Role is not allowed in realm",
                                  details={"role": request.role, "realm": request.realm})
        return Assignment(request.subject_type, subject.id, role.id, realm.id)

    async def assign(self, requests: List[AssignmentRequest]) -> List[Assignment]:
        """Create assignments; all are applied or none."""
        assignments = [await self._to_assignment(r) for r in requests]
        await self.repository.add_assignments(assignments)
        _invalidate_cache()
        for request in requests:
            self._fire(HookEventKind.ROLE_ASSIGNED, subject_type=request.subject_type.value,
                       subject=request.subject, role=request.role,
                       application=request.application, realm=request.realm)
        return assignments

    async def unassign(self, requests: List[AssignmentRequest]) -> int:
        assignments = [await self._to_assignment(r) for r in requests]
        removed = await self.repository.remove_assignments(assignments)
        _invalidate_cache()
        for request in requests:
            self._fire(HookEventKind.ROLE_UNASSIGNED, subject_type=request.subject_type.value,
                       subject=request.subject, role=request.role,
                       application=request.application, realm=request.realm)
        return removed

    async def list_assignments(self, application: str, realm: str) -> List[Assignment]:
        target = await self.get_realm(application, realm)
        return await self.repository.list_assignments(realm_id=target.id)

    # Resolution

    async def effective_permissions(self, principal: Principal, application: str, realm: str) -> Set[str]:
        """Permission names the principal holds in ``application``/``realm``.

        Unknown applications and realms yield an empty set.
        """
        key = (principal.user_id, application, realm)
        cache = _permission_cache.get()
        if cache is not None and key in cache:
            return set(cache[key])

        app = await self.repository.find_application_by_name(application)
        target = await self.repository.find_realm(app.id, realm) if app else None
        names = await self.repository.effective_permission_names(principal.user_id, target.id) if target else set()

        if cache is not None:
            cache[key] = set(names)
        return names

    async def check_permission(self, principal: Principal, application: str, realm: str,
                               permission: str) -> bool:
        allowed = permission in await self.effective_permissions(principal, application, realm)
        if self.metrics is not None:
            self.metrics.record_permission_check(allowed)
        self.logger.debug("Permission checked", user_id=principal.user_id, application=application,
                          realm=realm, permission=permission, allowed=allowed)
        return allowed

    async def permissions_by_realm(self, principal: Principal) -> Dict[str, Dict[str, List[str]]]:
        """Every non-empty permission set of the principal, keyed by application then realm."""
        realm_ids: Set[str] = set()
        subjects = [(SubjectType.USER, principal.user_id)]
        subjects += [(SubjectType.GROUP, g.id) for g in await self.repository.groups_of_user(principal.user_id)]
        for subject in subjects:
            realm_ids.update(a.realm_id for a in await self.repository.list_assignments(subject=subject))

        result: Dict[str, Dict[str, List[str]]] = {}
        for realm_id in realm_ids:
            realm = await self.repository.get_realm(realm_id)
            application = await self.repository.get_application(realm.application_id) if realm else None
            if application is None:
                continue
            names = await self.effective_permissions(principal, application.name, realm.name)
            if names:
                result.setdefault(application.name, {})[realm.name] = sorted(names)
        return result
