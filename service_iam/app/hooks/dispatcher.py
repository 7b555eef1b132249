"""
Best-effort lifecycle notifications.

``dispatch`` never blocks and never raises: each delivery runs as a
background task, failures are logged and counted, and URL targets get a
bounded number of attempts through the shared retry policy.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union

import httpx

from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, RetryError, retry_call


class HookEventKind(str, Enum):
    SIGN_IN = "SIGN_IN"
    SIGN_OUT = "SIGN_OUT"
    USER_CREATED = "USER_CREATED"
    USER_DELETED = "USER_DELETED"
    ROLE_ASSIGNED = "ROLE_ASSIGNED"
    ROLE_UNASSIGNED = "ROLE_UNASSIGNED"
    PASSWORD_CHANGED = "PASSWORD_CHANGED"
    GROUP_MEMBER_ADDED = "GROUP_MEMBER_ADDED"


@dataclass
class HookEvent:
    kind: HookEventKind
    payload: Dict[str, Any] = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.kind.value,
            "occurred_at": self.occurred_at.isoformat(),
            "payload": self.payload,
        }


HookHandler = Callable[[HookEvent], Awaitable[None]]
HookTarget = Union[str, HookHandler]


@dataclass
class HookRegistration:
    kinds: Set[HookEventKind]
    target: HookTarget

    @property
    def description(self) -> str:
        if isinstance(self.target, str):
            return self.target
        return getattr(self.target, "__qualname__", repr(self.target))


class HookDispatcher:
    """Fan lifecycle events out to registered targets."""

    def __init__(self,
                 http_client: Optional[httpx.AsyncClient] = None,
                 timeout: float = 5.0,
                 retry_config: Optional[RetryConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self._client = http_client
        self._owns_client = http_client is None
        self.timeout = timeout
        self.retry_config = retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)
        self.metrics = metrics
        self.logger = get_logger("iam.hooks")
        self._registrations: List[HookRegistration] = []
        self._pending: Set[asyncio.Task] = set()

    def register(self, event_kinds: Iterable[Union[HookEventKind, str]], target: HookTarget) -> HookRegistration:
        """Subscribe ``target`` (a URL or an async callable) to ``event_kinds``."""
        kinds = {HookEventKind(k) for k in event_kinds}
        if not kinds:
            raise ValueError("At least one event kind is required")
        registration = HookRegistration(kinds=kinds, target=target)
        self._registrations.append(registration)
        self.logger.info("Hook registered", target=registration.description,
                         events=sorted(k.value for k in kinds))
        return registration

    def unregister(self, registration: HookRegistration) -> None:
        self._registrations.remove(registration)

    def dispatch(self, event: HookEvent) -> int:
        """Schedule delivery to every matching target. Returns the count."""
        scheduled = 0
        for registration in self._registrations:
            if event.kind not in registration.kinds:
                continue
            task = asyncio.get_running_loop().create_task(self._deliver(registration, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)
            scheduled += 1
        return scheduled

    def fire(self, kind: HookEventKind, **payload) -> int:
        return self.dispatch(HookEvent(kind=kind, payload=payload))

    async def _deliver(self, registration: HookRegistration, event: HookEvent) -> None:
        try:
            if isinstance(registration.target, str):
                await retry_call(
                    self._post,
                    registration.target,
                    event,
                    exceptions=(httpx.TransportError, httpx.HTTPStatusError),
                    config=self.retry_config,
                    name="hook_delivery",
                )
            else:
                await asyncio.wait_for(registration.target(event), timeout=self.timeout)
            self._record(event, "delivered")

        except RetryError as e:
            self.logger.warning("Hook delivery failed", target=registration.description,
                                event=event.kind.value, attempts=e.attempts,
                                error=str(e.last_exception))
            self._record(event, "failed")
        except Exception as e:
            self.logger.warning("Hook delivery failed", target=registration.description,
                                event=event.kind.value, error=str(e))
            self._record(event, "failed")

    async def _post(self, url: str, event: HookEvent) -> None:
        response = await self._http().post(url, json=event.to_dict(), timeout=self.timeout)
        response.raise_for_status()

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    def _record(self, event: HookEvent, outcome: str) -> None:
        if self.metrics is not None:
            self.metrics.record_hook_delivery(event.kind.value, outcome)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
