"""
In-process change notifier.

Mutations publish a ChangeEvent after they commit; observers (WebSocket
clients, tests, the CLI) attach with subscribe() and receive events on a
bounded per-subscriber queue.

Invariants:
    - publish() never blocks and never raises into the caller
    - Each subscriber receives events in publish order
    - A subscriber whose queue is full is closed (overflowed=True) instead
      of silently dropping events; its client must resync
    - No ordering is guaranteed across subscribers

How to change safely:
    - Keep publish() synchronous; mutations call it after commit
    - New event fields must be optional for existing subscribers
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from ..schema.collections import ALL_COLLECTIONS

logger = logging.getLogger(__name__)

_CLOSED = object()


@dataclass(frozen=True)
class ChangeEvent:
    """A committed change.

    Attributes:
        collection: Changed collection, or "all" after restore/import
        action: create, update, delete, restore or replace
        record_id: Affected record (record-level actions only)
        payload: Record state after the change (the final state on delete)
        ts: Publish time (Unix ms)
    """

    collection: str
    action: str
    record_id: str | None = None
    payload: dict[str, Any] | None = None
    ts: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_wildcard(self) -> bool:
        return self.collection == ALL_COLLECTIONS

    def to_message(self) -> dict[str, Any]:
        """Wire form sent to WebSocket observers."""
        return {
            "type": "db_update",
            "collection": self.collection,
            "action": self.action,
            "record_id": self.record_id,
            "ts": self.ts,
        }


class Subscription:
    """Observer handle returned by ChangeNotifier.subscribe().

    Iterate it to receive events; iteration ends once the subscription is
    closed by unsubscribe() or by overflow.

    Example:
        >>> sub = notifier.subscribe("ws-client")
        >>> async for event in sub:
        ...     print(event.collection, event.action)
    """

    def __init__(self, sub_id: int, observer: str, queue_size: int) -> None:
        self.id = sub_id
        self.observer = observer
        self.overflowed = False
        self.delivered = 0
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=queue_size + 1)
        self._capacity = queue_size
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: ChangeEvent) -> bool:
        """Enqueue without blocking; False means the subscriber overflowed."""
        if self._closed:
            return True
        if self._queue.qsize() >= self._capacity:
            self.overflowed = True
            self._close()
            return False
        self._queue.put_nowait(event)
        return True

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            # one slot is always kept free for the close marker
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> ChangeEvent | None:
        """Next event, or None once the subscription is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        self.delivered += 1
        return item

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> ChangeEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event


class ChangeNotifier:
    """Fan-out of committed changes to attached observers."""

    def __init__(self, queue_size: int = 1000) -> None:
        """Initialize the notifier.

        Args:
            queue_size: Per-subscriber buffer before the subscriber is closed
        """
        self.queue_size = queue_size
        self._subscriptions: dict[int, Subscription] = {}
        self._ids = itertools.count(1)
        self.published = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, observer: str = "anonymous") -> Subscription:
        """Attach an observer; it receives events published from now on."""
        sub = Subscription(next(self._ids), observer, self.queue_size)
        self._subscriptions[sub.id] = sub
        logger.debug(
            "Subscriber attached",
            extra={"subscription_id": sub.id, "observer": observer},
        )
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        """Detach an observer and end its iteration. Idempotent."""
        self._subscriptions.pop(subscription.id, None)
        subscription._close()
        logger.debug(
            "Subscriber detached",
            extra={"subscription_id": subscription.id, "observer": subscription.observer},
        )

    def publish(self, event: ChangeEvent) -> int:
        """Deliver an event to every subscriber without blocking.

        Returns:
            Number of subscribers the event was queued for
        """
        self.published += 1
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if sub._offer(event):
                delivered += 1
                continue
            self._subscriptions.pop(sub.id, None)
            logger.warning(
                "Subscriber queue overflowed, closing subscription",
                extra={
                    "subscription_id": sub.id,
                    "observer": sub.observer,
                    "queue_size": self.queue_size,
                },
            )
        return delivered

    def close(self) -> None:
        """Detach every observer."""
        for sub in list(self._subscriptions.values()):
            self.unsubscribe(sub)
