"""
Execution policy for calls to external identity sources.

``ResiliencePolicy`` composes retry (outer) and an optional circuit breaker
(inner), so every attempt passes through the breaker and an open breaker
stops the retry loop immediately. Both exhaustion outcomes surface as
``ExternalServiceUnavailable``; the ``reason`` is kept for observability.
"""

import asyncio
import functools
from typing import Any, Awaitable, Callable, Optional, Tuple, Type

from shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenException
from shared.errors import ExternalServiceUnavailable
from shared.logging import get_logger
from shared.retry import RetryConfig, RetryError, retry_call


class ResiliencePolicy:
    """Retry plus optional circuit breaker around a single external call."""

    def __init__(self,
                 service: str,
                 retry_config: Optional[RetryConfig] = None,
                 transient_exceptions: Tuple[Type[BaseException], ...] = (TimeoutError, ConnectionError),
                 circuit_breaker: Optional[CircuitBreaker] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
                 on_unavailable: Optional[Callable[[str, str], None]] = None):
        self.service = service
        self.retry_config = retry_config or RetryConfig()
        self.transient_exceptions = transient_exceptions
        self.circuit_breaker = circuit_breaker
        self._sleep = sleep
        self._on_unavailable = on_unavailable
        self.logger = get_logger(f"resilience.{service}")

    async def execute(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` under the policy."""
        attempt = func
        if self.circuit_breaker is not None:
            breaker = self.circuit_breaker

            async def attempt(*a, **kw):
                return await breaker.call(func, *a, **kw)

        try:
            return await retry_call(
                attempt,
                *args,
                exceptions=self.transient_exceptions,
                config=self.retry_config,
                sleep=self._sleep,
                name=self.service,
                **kwargs
            )
        except CircuitBreakerOpenException as e:
            self._unavailable("circuit_open")
            raise ExternalServiceUnavailable(
                self.service, "circuit_open", details={"retry_after": round(e.retry_after, 3)}
            ) from e
        except RetryError as e:
            self._unavailable("retry_exhausted")
            raise ExternalServiceUnavailable(
                self.service, "retry_exhausted", details={"attempts": e.attempts}
            ) from e.last_exception

    def __call__(self, func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        """Decorator form."""

        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            return await self.execute(func, *args, **kwargs)

        return wrapper

    def _unavailable(self, reason: str) -> None:
        self.logger.error("External service unavailable", service=self.service, reason=reason)
        if self._on_unavailable is not None:
            self._on_unavailable(self.service, reason)
