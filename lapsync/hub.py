"""Broadcast hub fanning ledger events out to every subscribed connection.

Each subscriber owns an unbounded-by-default asyncio queue. Publishing only
enqueues, so a slow subscriber never holds up the ledger write path. A
subscriber whose backlog passes ``max_pending`` is evicted instead of having
events dropped; it must resubscribe and take a fresh snapshot.
"""

import asyncio
import itertools
import logging
from typing import AsyncIterator

from .events import Event

logger = logging.getLogger(__name__)


class SubscriptionClosed(Exception):
    """The subscription was closed or evicted and has no more events."""


_CLOSED = object()


class Subscription:
    """One subscriber's ordered view of hub events."""

    def __init__(self, hub: "BroadcastHub", name: str, max_pending: int | None):
        self.name = name
        self.max_pending = max_pending
        self.evicted = False
        self._hub = hub
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.delivered = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _offer(self, event: Event) -> bool:
        """Enqueue without blocking. Returns False if the subscriber was evicted."""
        if self._closed:
            return False
        if self.max_pending is not None and self._queue.qsize() >= self.max_pending:
            logger.warning(
                f"Subscriber {self.name} has {self._queue.qsize()} undelivered events, evicting"
            )
            self.evicted = True
            self.close()
            return False
        self._queue.put_nowait(event)
        return True

    async def get(self) -> Event:
        """Wait for the next event in publish order.

        Raises:
            SubscriptionClosed: No further events will arrive.
        """
        if self._closed and self._queue.empty():
            raise SubscriptionClosed(self.name)

        item = await self._queue.get()
        if item is _CLOSED:
            raise SubscriptionClosed(self.name)

        self.delivered += 1
        return item

    def close(self) -> None:
        """Stop receiving events. Anything already queued is discarded."""
        if self._closed:
            return
        self._closed = True
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(_CLOSED)
        self._hub._remove(self)

    async def __aiter__(self) -> AsyncIterator[Event]:
        while True:
            try:
                yield await self.get()
            except SubscriptionClosed:
                return


class BroadcastHub:
    """At-least-once, per-subscriber ordered fan-out of events."""

    def __init__(self, max_pending: int | None = 1000):
        """Initialize the hub.

        Args:
            max_pending: Default backlog after which a subscriber is evicted.
                None disables eviction.
        """
        self.max_pending = max_pending
        self._subscribers: list[Subscription] = []
        self._counter = itertools.count(1)
        self.published = 0

    def subscribe(self, name: str | None = None, max_pending: int | None = -1) -> Subscription:
        """Register a new subscriber.

        Args:
            name: Label used in logs.
            max_pending: Backlog limit for this subscriber; -1 uses the hub default.
        """
        if max_pending == -1:
            max_pending = self.max_pending
        subscription = Subscription(
            self,
            name=name or f"subscriber-{next(self._counter)}",
            max_pending=max_pending,
        )
        self._subscribers.append(subscription)
        logger.debug(f"Subscribed {subscription.name} ({len(self._subscribers)} total)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
            logger.debug(f"Unsubscribed {subscription.name} ({len(self._subscribers)} left)")

    def publish(self, event: Event) -> int:
        """Deliver an event to every current subscriber.

        Returns:
            Number of subscribers the event was queued for.
        """
        self.published += 1
        delivered = 0
        for subscription in list(self._subscribers):
            if subscription._offer(event):
                delivered += 1

        logger.debug(f"Published {event.type} to {delivered} subscriber(s)")
        return delivered

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        """Close every subscription."""
        for subscription in list(self._subscribers):
            subscription.close()
