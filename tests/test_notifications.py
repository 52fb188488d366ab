"""Tests for change notifications and push transports."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from src.models.events import ChangeEvent
from src.services.notifications import (
    ChangeNotifier,
    InMemoryPushTransport,
    RedisPushTransport,
    build_transport,
)


class FlakyTransport:
    """Fails the first *failures* publishes, then succeeds."""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.delivered: list[dict] = []

    async def publish(self, topic: str, payload: dict) -> None:
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("gateway unavailable")
        self.delivered.append(payload)

    async def close(self) -> None:
        pass


class TestInMemoryPushTransport:
    async def test_fan_out_to_every_subscriber(self):
        transport = InMemoryPushTransport()
        phone = transport.subscribe("phone")
        tablet = transport.subscribe("tablet")
        await transport.publish("new_schemes", {"type": "new_scheme", "scheme_id": "s1"})
        assert phone.get_nowait()["scheme_id"] == "s1"
        assert tablet.get_nowait()["scheme_id"] == "s1"

    async def test_other_topics_not_delivered(self):
        transport = InMemoryPushTransport()
        queue = transport.subscribe("phone", topic="alerts")
        await transport.publish("new_schemes", {"type": "new_scheme", "scheme_id": "s1"})
        assert queue.empty()

    def test_subscribe_is_idempotent(self):
        transport = InMemoryPushTransport()
        assert transport.subscribe("phone") is transport.subscribe("phone")
        assert transport.subscriber_count() == 1

    def test_unsubscribe(self):
        transport = InMemoryPushTransport()
        transport.subscribe("phone")
        transport.unsubscribe("phone")
        transport.unsubscribe("never-subscribed")
        assert transport.subscriber_count() == 0

    async def test_full_queue_drops_oldest(self):
        transport = InMemoryPushTransport(max_queue=2)
        queue = transport.subscribe("phone")
        for scheme_id in ("s1", "s2", "s3"):
            await transport.publish("new_schemes", {"type": "new_scheme", "scheme_id": scheme_id})
        assert queue.qsize() == 2
        assert [queue.get_nowait()["scheme_id"] for _ in range(2)] == ["s2", "s3"]


class TestChangeNotifier:
    async def test_publish_success(self):
        transport = InMemoryPushTransport()
        queue = transport.subscribe("phone")
        notifier = ChangeNotifier(transport)
        assert await notifier.publish(ChangeEvent.updated("s1")) is True
        assert queue.get_nowait() == {"type": "scheme_updated", "scheme_id": "s1"}
        assert notifier.stats() == {"published": 1, "failed": 0}

    async def test_transient_failure_is_retried(self):
        transport = FlakyTransport(failures=2)
        notifier = ChangeNotifier(transport, max_attempts=3, backoff_seconds=0)
        assert await notifier.publish(ChangeEvent.created("s1")) is True
        assert transport.calls == 3
        assert transport.delivered == [{"type": "new_scheme", "scheme_id": "s1"}]

    async def test_exhausted_retries_return_false(self):
        transport = FlakyTransport(failures=10)
        notifier = ChangeNotifier(transport, max_attempts=2, backoff_seconds=0)
        assert await notifier.publish(ChangeEvent.created("s1")) is False
        assert transport.calls == 2
        assert notifier.stats() == {"published": 0, "failed": 1}

    def test_topic_and_transport(self):
        transport = InMemoryPushTransport()
        notifier = ChangeNotifier(transport, topic="kids")
        assert notifier.topic == "kids"
        assert notifier.transport is transport


class TestBuildTransport:
    def test_inmemory_default(self):
        transport = build_transport(SimpleNamespace(push_transport="memory", redis_url=""))
        assert isinstance(transport, InMemoryPushTransport)

    def test_redis_without_url_falls_back(self):
        transport = build_transport(SimpleNamespace(push_transport="redis", redis_url=""))
        assert isinstance(transport, InMemoryPushTransport)

    @pytest.mark.asyncio
    async def test_redis_transport_selected(self):
        transport = build_transport(SimpleNamespace(push_transport="redis", redis_url="redis://localhost:6379/0"))
        assert isinstance(transport, RedisPushTransport)
        await transport.close()
