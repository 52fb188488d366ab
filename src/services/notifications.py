"""Change notifications pushed to subscribed devices.

When the change detector commits a new or updated scheme it hands a
:class:`ChangeEvent` to :class:`ChangeNotifier`, which publishes a small
id-only payload on the ``new_schemes`` topic::

    {"type": "new_scheme", "scheme_id": "<id>"}

The payload is a trigger, not data.  Devices react by running a delta sync
and fetching content from the API, so a lost or duplicated message costs
at most one extra sync.

Delivery is delegated to a :class:`PushTransport`:

    * ``InMemoryPushTransport`` -- fan-out to per-device ``asyncio.Queue``
      objects.  The default for single-process deployments; devices sharing
      the event loop subscribe to it directly.
    * ``RedisPushTransport``    -- Redis pub/sub ``PUBLISH`` on the topic.

Publishing is retried with backoff.  A final failure is logged and
reported as ``False``; it never propagates into ingestion.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Protocol

import orjson
import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.services.errors import NotifyError

if TYPE_CHECKING:
    from src.models.events import ChangeEvent

logger = structlog.get_logger(__name__)


class PushTransport(Protocol):
    async def publish(self, topic: str, payload: dict[str, str]) -> None: ...

    async def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class InMemoryPushTransport:
    """Fan-out to per-device queues subscribed to a topic.

    Each subscriber gets its own bounded queue; when a queue is full the
    oldest message is dropped, since any one trigger is enough to start a
    sync.
    """

    __slots__ = ("_max_queue", "_subscribers")

    def __init__(self, *, max_queue: int = 100) -> None:
        self._max_queue = max_queue
        self._subscribers: dict[str, dict[str, asyncio.Queue[dict[str, str]]]] = {}

    def subscribe(self, device_id: str, topic: str = "new_schemes") -> asyncio.Queue[dict[str, str]]:
        """Return the inbound queue for *device_id*, creating it on first use."""
        devices = self._subscribers.setdefault(topic, {})
        queue = devices.get(device_id)
        if queue is None:
            queue = asyncio.Queue(maxsize=self._max_queue)
            devices[device_id] = queue
            logger.debug("notifier.device_subscribed", device_id=device_id, topic=topic)
        return queue

    def unsubscribe(self, device_id: str, topic: str = "new_schemes") -> None:
        self._subscribers.get(topic, {}).pop(device_id, None)

    def subscriber_count(self, topic: str = "new_schemes") -> int:
        return len(self._subscribers.get(topic, {}))

    async def publish(self, topic: str, payload: dict[str, str]) -> None:
        for queue in self._subscribers.get(topic, {}).values():
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(dict(payload))

    async def close(self) -> None:
        self._subscribers.clear()


class RedisPushTransport:
    """Publishes payloads on a Redis pub/sub channel named after the topic."""

    __slots__ = ("_channel_prefix", "_redis")

    def __init__(self, url: str, *, channel_prefix: str = "schemewatch:") -> None:
        import redis.asyncio as aioredis

        self._redis = aioredis.Redis.from_url(url, decode_responses=False)
        self._channel_prefix = channel_prefix

    async def publish(self, topic: str, payload: dict[str, str]) -> None:
        receivers = await self._redis.publish(f"{self._channel_prefix}{topic}", orjson.dumps(payload))
        logger.debug("notifier.redis_published", topic=topic, receivers=receivers)

    async def close(self) -> None:
        await self._redis.aclose()


def build_transport(settings: Any) -> PushTransport:
    """Select the transport named by ``settings.push_transport``."""
    if settings.push_transport == "redis":
        if not settings.redis_url:
            logger.warning("notifier.redis_url_missing_using_inmemory")
            return InMemoryPushTransport()
        return RedisPushTransport(settings.redis_url)
    return InMemoryPushTransport()


# ---------------------------------------------------------------------------
# ChangeNotifier
# ---------------------------------------------------------------------------


class ChangeNotifier:
    """Publishes :class:`ChangeEvent` payloads to a push transport.

    Parameters
    ----------
    transport:
        Delivery backend.
    topic:
        Topic every event is published on.
    max_attempts:
        Total publish attempts per event before giving up.
    backoff_seconds:
        Base of the exponential backoff between attempts.
    """

    __slots__ = ("_backoff", "_failed", "_max_attempts", "_published", "_topic", "_transport")

    def __init__(
        self,
        transport: PushTransport,
        *,
        topic: str = "new_schemes",
        max_attempts: int = 3,
        backoff_seconds: float = 0.2,
    ) -> None:
        self._transport = transport
        self._topic = topic
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._published = 0
        self._failed = 0

    @property
    def transport(self) -> PushTransport:
        return self._transport

    @property
    def topic(self) -> str:
        return self._topic

    async def publish(self, event: ChangeEvent) -> bool:
        """Publish *event*.  Returns ``False`` if every attempt failed."""
        payload = event.to_payload()
        retrying = AsyncRetrying(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, max=self._backoff * 10),
        )
        try:
            await retrying(self._transport.publish, self._topic, payload)
        except RetryError as exc:
            cause = exc.last_attempt.exception()
            error = NotifyError(f"Failed to publish {payload['type']} for {event.scheme_id}: {cause}")
            self._failed += 1
            logger.error(
                "notifier.publish_failed",
                scheme_id=event.scheme_id,
                event_type=payload["type"],
                attempts=self._max_attempts,
                error=str(error),
            )
            return False

        self._published += 1
        logger.info(
            "notifier.published",
            scheme_id=event.scheme_id,
            event_type=payload["type"],
            topic=self._topic,
        )
        return True

    def stats(self) -> dict[str, int]:
        return {"published": self._published, "failed": self._failed}

    async def close(self) -> None:
        await self._transport.close()
