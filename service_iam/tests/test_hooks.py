"""
Unit tests for the hook dispatcher.
"""

import asyncio
import json

import httpx
import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from service_iam.app.hooks import HookDispatcher, HookEvent, HookEventKind
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig


class TestHookDispatcher:
    """Test cases for HookDispatcher."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("iam-test")

    @pytest.fixture
    def received(self):
        return []

    @pytest.fixture
    def http_client(self, received):
        """HTTP client whose transport records hook posts."""

        def handler(request: httpx.Request) -> httpx.Response:
            received.append(request)
            if request.url.path == "/broken":
                return httpx.Response(500)
            return httpx.Response(204)

        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.fixture
    def dispatcher(self, http_client, metrics):
        return HookDispatcher(http_client, timeout=1.0,
                              retry_config=RetryConfig(max_attempts=3, base_delay=0.0, jitter=False),
                              metrics=metrics)

    @pytest.mark.asyncio
    async def test_callable_target(self, dispatcher):
        events = []

        async def on_sign_in(event: HookEvent):
            events.append(event)

        dispatcher.register([HookEventKind.SIGN_IN], on_sign_in)
        assert dispatcher.fire(HookEventKind.SIGN_IN, user_id="u-1", account="alice") == 1
        await dispatcher.drain()

        assert len(events) == 1
        assert events[0].payload == {"user_id": "u-1", "account": "alice"}

    @pytest.mark.asyncio
    async def test_only_matching_targets(self, dispatcher):
        events = []

        async def record(event: HookEvent):
            events.append(event.kind)

        dispatcher.register(["USER_CREATED", "USER_DELETED"], record)
        assert dispatcher.fire(HookEventKind.SIGN_OUT, user_id="u-1") == 0
        dispatcher.fire(HookEventKind.USER_DELETED, user_id="u-1")
        await dispatcher.drain()

        assert events == [HookEventKind.USER_DELETED]

    @pytest.mark.asyncio
    async def test_url_target(self, dispatcher, received, metrics):
        dispatcher.register([HookEventKind.PASSWORD_CHANGED], "http://hooks.example.com/events")
        dispatcher.fire(HookEventKind.PASSWORD_CHANGED, user_id="u-1")
        await dispatcher.drain()

        assert len(received) == 1
        body = json.loads(received[0].content)
        assert body["event"] == "PASSWORD_CHANGED"
        assert body["payload"] == {"user_id": "u-1"}
        assert metrics.registry.get_sample_value(
            "hook_deliveries_total", {"event": "PASSWORD_CHANGED", "outcome": "delivered"}) == 1.0

    @pytest.mark.asyncio
    async def test_failing_url_is_retried_then_dropped(self, dispatcher, received, metrics):
        dispatcher.register([HookEventKind.SIGN_IN], "http://hooks.example.com/broken")

        dispatcher.fire(HookEventKind.SIGN_IN, user_id="u-1")
        await dispatcher.drain()

        assert len(received) == 3
        assert metrics.registry.get_sample_value(
            "hook_deliveries_total", {"event": "SIGN_IN", "outcome": "failed"}) == 1.0

    @pytest.mark.asyncio
    async def test_failing_callable_does_not_raise(self, dispatcher, metrics):
        async def broken(event: HookEvent):
            raise RuntimeError("boom")

        dispatcher.register([HookEventKind.SIGN_IN], broken)
        dispatcher.fire(HookEventKind.SIGN_IN, user_id="u-1")
        await dispatcher.drain()

        assert metrics.registry.get_sample_value(
            "hook_deliveries_total", {"event": "SIGN_IN", "outcome": "failed"}) == 1.0

    @pytest.mark.asyncio
    async def test_slow_callable_times_out(self, dispatcher, metrics):
        async def slow(event: HookEvent):
            await asyncio.sleep(10)

        dispatcher.timeout = 0.01
        dispatcher.register([HookEventKind.SIGN_IN], slow)
        dispatcher.fire(HookEventKind.SIGN_IN, user_id="u-1")
        await dispatcher.drain()

        assert metrics.registry.get_sample_value(
            "hook_deliveries_total", {"event": "SIGN_IN", "outcome": "failed"}) == 1.0

    @pytest.mark.asyncio
    async def test_dispatch_does_not_wait(self, dispatcher):
        release = asyncio.Event()

        async def blocked(event: HookEvent):
            await release.wait()

        dispatcher.register([HookEventKind.SIGN_IN], blocked)
        dispatcher.fire(HookEventKind.SIGN_IN, user_id="u-1")
        assert dispatcher.pending == 1

        release.set()
        await dispatcher.drain()
        assert dispatcher.pending == 0

    @pytest.mark.asyncio
    async def test_unregister(self, dispatcher):
        async def record(event: HookEvent):
            pass

        registration = dispatcher.register([HookEventKind.SIGN_IN], record)
        dispatcher.unregister(registration)
        assert dispatcher.fire(HookEventKind.SIGN_IN) == 0

    def test_register_requires_events(self, dispatcher):
        with pytest.raises(ValueError):
            dispatcher.register([], "http://hooks.example.com/events")

    def test_event_serialization(self):
        event = HookEvent(kind=HookEventKind.ROLE_ASSIGNED, payload={"role": "reader"})
        data = event.to_dict()

        assert data["event"] == "ROLE_ASSIGNED"
        assert data["payload"] == {"role": "reader"}
        assert "occurred_at" in data
