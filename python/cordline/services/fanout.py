"""Realtime fanout of messaging events to connected participants.

Fanout is a latency optimization, never a source of truth:
- Events are published only after the originating transaction commits
- Publishing is fire-and-forget: failures are logged and discarded, never retried
- Clients reconcile by polling the message list; an event only hints at a refetch

Buses:
- InProcessMessageBus: per-user asyncio queues for connections held by this process
- RedisMessageBus: publishes through Redis pub/sub and forwards received
  events to a local InProcessMessageBus (multi-process deployments)
- NoOpMessageBus: drops everything (fanout disabled)

Events:
- new_message: sent to every participant of the conversation
- message_status_update: sent to the message's sender when the summary status advances
"""

import asyncio
import json
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import UUID

from cordline.logging import get_logger

logger = get_logger(__name__)

NEW_MESSAGE_EVENT = "new_message"
STATUS_UPDATE_EVENT = "message_status_update"

DEFAULT_QUEUE_SIZE = 100
REDIS_CHANNEL_PREFIX = "cordline:user:"


class MessageBus(Protocol):
    """Transport for pushing events to a user's live connections."""

    def publish(self, user_id: UUID, event: str, payload: dict[str, Any]) -> None:
        """Push an event to every live connection of user_id.

        May raise on transport failure; callers go through publish_safely().
        """
        ...


@dataclass(frozen=True)
class BusEvent:
    """An event delivered to a subscriber."""

    event: str
    payload: dict[str, Any]


def publish_safely(bus: MessageBus, user_id: UUID, event: str, payload: dict[str, Any]) -> bool:
    """Publish an event, logging and discarding any failure.

    Returns:
        True if the bus accepted the event, False if publishing failed.
    """
    try:
        bus.publish(user_id, event, payload)
        return True
    except Exception as e:
        logger.warning(
            "fanout_publish_failed",
            target_user_id=str(user_id),
            fanout_event=event,
            error=str(e),
            error_type=type(e).__name__,
        )
        return False


@dataclass
class FanoutBatch:
    """Events collected inside a transaction and flushed after commit."""

    _events: list[tuple[UUID, str, dict[str, Any]]] = field(default_factory=list)

    def add(self, user_id: UUID, event: str, payload: dict[str, Any]) -> None:
        self._events.append((user_id, event, payload))

    def __len__(self) -> int:
        return len(self._events)

    def flush(self, bus: MessageBus) -> int:
        """Publish every collected event; returns how many were accepted."""
        delivered = 0
        events, self._events = self._events, []
        for user_id, event, payload in events:
            if publish_safely(bus, user_id, event, payload):
                delivered += 1
        return delivered


def format_sse(event: str, payload: dict[str, Any]) -> str:
    """Render one Server-Sent Events frame."""
    data = json.dumps(payload, separators=(",", ":"), default=str)
    return f"event: {event}\ndata: {data}\n\n"


# =============================================================================
# Buses
# =============================================================================


class NoOpMessageBus:
    """Bus used when fanout is disabled; clients rely on polling alone."""

    def publish(self, user_id: UUID, event: str, payload: dict[str, Any]) -> None:
        logger.debug("fanout_disabled", target_user_id=str(user_id), fanout_event=event)


class Subscription:
    """One live connection's event queue.

    Created on the event loop that will consume it; publishers on other
    threads hand events over with call_soon_threadsafe.
    """

    def __init__(
        self,
        bus: "InProcessMessageBus",
        user_id: UUID,
        loop: asyncio.AbstractEventLoop,
        max_queue_size: int,
    ):
        self.bus = bus
        self.user_id = user_id
        self._loop = loop
        self._queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=max_queue_size)

    def deliver(self, item: BusEvent) -> None:
        self._loop.call_soon_threadsafe(self._put, item)

    def _put(self, item: BusEvent) -> None:
        if self._queue.full():
            # Slow consumer: drop the oldest event, polling will catch up.
            self._queue.get_nowait()
            logger.warning("fanout_queue_overflow", target_user_id=str(self.user_id))
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> BusEvent | None:
        """Wait for the next event; returns None if timeout elapses first."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return None

    def close(self) -> None:
        self.bus.unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class InProcessMessageBus:
    """Thread-safe in-process pub/sub keyed by user id."""

    def __init__(self, max_queue_size: int = DEFAULT_QUEUE_SIZE):
        self.max_queue_size = max_queue_size
        self._lock = threading.Lock()
        self._subscribers: dict[UUID, set[Subscription]] = defaultdict(set)

    def subscribe(self, user_id: UUID) -> Subscription:
        """Register a live connection. Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, user_id, loop, self.max_queue_size)
        with self._lock:
            self._subscribers[user_id].add(subscription)
        logger.info("fanout_subscribed", target_user_id=str(user_id))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.user_id)
            if subscribers is not None:
                subscribers.discard(subscription)
                if not subscribers:
                    del self._subscribers[subscription.user_id]
        logger.info("fanout_unsubscribed", target_user_id=str(subscription.user_id))

    def connection_count(self, user_id: UUID) -> int:
        with self._lock:
            return len(self._subscribers.get(user_id, ()))

    def publish(self, user_id: UUID, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            subscribers = list(self._subscribers.get(user_id, ()))

        if not subscribers:
            logger.debug("fanout_no_connection", target_user_id=str(user_id), fanout_event=event)
            return

        item = BusEvent(event=event, payload=payload)
        for subscription in subscribers:
            try:
                subscription.deliver(item)
            except RuntimeError:
                # Event loop already closed: the connection is gone.
                self.unsubscribe(subscription)


class RedisMessageBus:
    """Fanout across API processes through Redis pub/sub.

    Every process publishes to cordline:user:{user_id}; a background
    listener thread forwards what it receives to the process-local bus
    holding the live connections.
    """

    def __init__(self, redis_client, local: InProcessMessageBus | None = None):
        self.redis_client = redis_client
        self.local = local or InProcessMessageBus()
        self._pubsub = None
        self._thread = None

    def publish(self, user_id: UUID, event: str, payload: dict[str, Any]) -> None:
        message = json.dumps({"event": event, "payload": payload}, default=str)
        self.redis_client.publish(f"{REDIS_CHANNEL_PREFIX}{user_id}", message)

    def subscribe(self, user_id: UUID) -> Subscription:
        return self.local.subscribe(user_id)

    def start(self) -> None:
        """Start the listener thread forwarding Redis messages to local subscribers."""
        self._pubsub = self.redis_client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.psubscribe(**{f"{REDIS_CHANNEL_PREFIX}*": self._on_message})
        self._thread = self._pubsub.run_in_thread(sleep_time=0.01, daemon=True)
        logger.info("fanout_redis_listener_started")

    def stop(self) -> None:
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        logger.info("fanout_redis_listener_stopped")

    def _on_message(self, message: dict[str, Any]) -> None:
        try:
            channel = message["channel"]
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")
            user_id = UUID(channel[len(REDIS_CHANNEL_PREFIX) :])
            body = json.loads(message["data"])
            self.local.publish(user_id, body["event"], body["payload"])
        except Exception as e:
            logger.warning("fanout_redis_message_dropped", error=str(e))
