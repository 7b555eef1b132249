"""
LDAP directory client.

Binds are made as the user (simple bind against a DN built from the
account name) and group memberships are read with the same connection.
ldap3 is synchronous, so each bind runs in a worker thread and the
resilience policy sees an ordinary awaitable. A rejected password is an
answer from a healthy directory: it returns ``None`` and never counts
against the circuit breaker. A busy or unavailable directory is not an
answer and is raised like a lost connection.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import ldap3
from ldap3.core.exceptions import (
    LDAPBusyResult,
    LDAPCommunicationError,
    LDAPException,
    LDAPUnavailableResult,
    LDAPUnwillingToPerformResult,
)
from ldap3.utils.conv import escape_filter_chars
from ldap3.utils.dn import escape_rdn

from shared.circuit_breaker import CircuitBreaker
from shared.config import CircuitBreakerSettings, LdapSettings
from shared.logging import get_logger
from shared.resilience import ResiliencePolicy
from shared.retry import RetryConfig

from ..rbac import RbacDirectory
from ..rbac.models import User

# Bind results that describe the directory, not the credential.
DIRECTORY_DOWN_RESULTS = {
    51: LDAPBusyResult,
    52: LDAPUnavailableResult,
    53: LDAPUnwillingToPerformResult,
}

# Retried: the directory could not be reached, dropped the connection or refused to work.
LDAP_TRANSIENT_ERRORS = (LDAPCommunicationError, TimeoutError, ConnectionError,
                         *DIRECTORY_DOWN_RESULTS.values())
# Counted by the breaker: any failure of the directory itself.
LDAP_FAILURES = (LDAPException, TimeoutError, ConnectionError)

ConnectionFactory = Callable[[str, str], ldap3.Connection]


@dataclass
class DirectoryEntry:
    dn: str
    account: str
    groups: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


class LdapDirectoryClient:
    """Authenticate accounts against an LDAP directory."""

    def __init__(self,
                 settings: LdapSettings,
                 policy: ResiliencePolicy,
                 connection_factory: Optional[ConnectionFactory] = None):
        self.settings = settings
        self.policy = policy
        self._connection_factory = connection_factory or self._connect
        self.logger = get_logger("iam.directory.ldap")

    @classmethod
    def from_settings(cls, settings: LdapSettings, retry: RetryConfig, breaker: CircuitBreakerSettings,
                      **kwargs) -> "LdapDirectoryClient":
        """Build a client with its own breaker, shared by every caller of this directory."""
        circuit_breaker = CircuitBreaker.from_settings(
            breaker, expected_exception=LDAP_FAILURES, name="ldap",
            on_state_change=kwargs.pop("on_state_change", None))
        policy = ResiliencePolicy(
            "ldap",
            retry_config=retry,
            transient_exceptions=LDAP_TRANSIENT_ERRORS,
            circuit_breaker=circuit_breaker,
            on_unavailable=kwargs.pop("on_unavailable", None),
        )
        return cls(settings, policy, **kwargs)

    @property
    def enabled(self) -> bool:
        return bool(self.settings.url)

    def _connect(self, user: str, password: str) -> ldap3.Connection:
        server = ldap3.Server(self.settings.url, connect_timeout=self.settings.timeout, get_info=ldap3.NONE)
        return ldap3.Connection(server, user=user, password=password,
                                receive_timeout=self.settings.timeout, raise_exceptions=False)

    def user_dn(self, account: str) -> str:
        return self.settings.user_dn_template.format(account=escape_rdn(account))

    async def authenticate(self, account: str, password: str) -> Optional[DirectoryEntry]:
        """Bind as ``account``. ``None`` means the directory rejected the credential.

        Raises ``ExternalServiceUnavailable`` when the directory cannot be
        reached after retries or the breaker is open.
        """
        if not password:
            # an empty password would be an anonymous bind
            return None
        return await self.policy.execute(self._bind_async, account, password)

    async def _bind_async(self, account: str, password: str) -> Optional[DirectoryEntry]:
        return await asyncio.to_thread(self._bind, account, password)

    def _bind(self, account: str, password: str) -> Optional[DirectoryEntry]:
        dn = self.user_dn(account)
        conn = self._connection_factory(dn, password)
        try:
            if not conn.bind():
                result = conn.result or {}
                failure = DIRECTORY_DOWN_RESULTS.get(result.get("result"))
                if failure is not None:
                    raise failure(result=result["result"], description=result.get("description"), dn=dn)
                self.logger.info("Directory bind rejected", account=account, result=result.get("description"))
                return None
            return DirectoryEntry(dn=dn, account=account, groups=self._groups(conn, dn),
                                  attributes=self._attributes(conn, dn))
        finally:
            conn.unbind()

    def _groups(self, conn: ldap3.Connection, dn: str) -> List[str]:
        search_filter = self.settings.group_filter.format(user_dn=escape_filter_chars(dn))
        conn.search(search_base=self.settings.base_dn, search_filter=search_filter,
                    search_scope=ldap3.SUBTREE, attributes=["cn"])
        groups = []
        for item in conn.response or []:
            if item.get("type") != "searchResEntry":
                continue
            cn = _first(item.get("attributes", {}).get("cn"))
            if cn:
                groups.append(str(cn))
        return groups

    def _attributes(self, conn: ldap3.Connection, dn: str) -> Dict[str, Any]:
        conn.search(search_base=dn, search_filter="(objectClass=*)", search_scope=ldap3.BASE,
                    attributes=["mail", "displayName"])
        for item in conn.response or []:
            if item.get("type") == "searchResEntry":
                attrs = item.get("attributes", {})
                return {"email": _first(attrs.get("mail")), "name": _first(attrs.get("displayName"))}
        return {}


class DirectoryGroupSync:
    """Reflect directory group memberships into same-named local groups.

    Only additions are synced; local groups the directory does not know
    about are left alone.
    """

    def __init__(self, rbac: RbacDirectory):
        self.rbac = rbac
        self.logger = get_logger("iam.directory.sync")

    async def sync(self, user: User, groups: List[str]) -> List[str]:
        joined = []
        for name in groups:
            group = await self.rbac.repository.find_group_by_name(name)
            if group is None or user.id in group.members:
                continue
            await self.rbac.add_members(name, [user.account])
            joined.append(name)
        if joined:
            self.logger.info("Directory groups synced", user_id=user.id, groups=joined)
        return joined
