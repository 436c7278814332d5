"""
In-process change feed.

Stores record the rows they insert or update during a transaction; once the
transaction commits, each change is published to the subscribers whose
table, event and conversation filters match. Delivery is best effort:
nothing is buffered for subscribers that are not connected and missed
changes are never replayed.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from quickloans.metrics import record_realtime_event

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
ALL_EVENTS = "*"


@dataclass(frozen=True)
class Change:
    """A committed row change with the whole row as payload."""
    table: str
    event: str
    record: Dict[str, Any]
    commit_ts: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    """
    One live feed bound to the event loop that created it.

    Changes are read with ``await subscription.get()`` or ``async for``;
    both stop once the subscription is closed.
    """

    def __init__(self, feed: "ChangeFeed", table: str, events: FrozenSet[str],
                 conversation_id: Optional[str], loop: asyncio.AbstractEventLoop):
        self._feed = feed
        self.table = table
        self.events = events
        self.conversation_id = conversation_id
        self._loop = loop
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, change: Change) -> bool:
        if self.closed or change.table != self.table:
            return False
        if ALL_EVENTS not in self.events and change.event not in self.events:
            return False
        if self.conversation_id is not None:
            return change.record.get("conversation_id") == self.conversation_id
        return True

    def _deliver(self, change: Optional[Change]) -> None:
        """Runs on the subscriber loop."""
        if change is not None and self.closed:
            return
        self._queue.put_nowait(change)

    def push(self, change: Optional[Change]) -> bool:
        """Hand a change to the subscriber loop from any thread."""
        try:
            self._loop.call_soon_threadsafe(self._deliver, change)
        except RuntimeError:
            # Subscriber loop is gone
            return False
        return True

    async def get(self) -> Optional[Change]:
        """Wait for the next change; returns None once the feed is closed."""
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> Change:
        change = await self.get()
        if change is None:
            raise StopAsyncIteration
        return change

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)
        # Wake up a reader blocked in get()
        self.push(None)


class ChangeFeed:
    """Thread-safe fan-out of committed changes to subscriptions."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []

    def subscribe(self, table: str, events: Iterable[str] = (ALL_EVENTS,),
                  conversation_id: Optional[str] = None) -> Subscription:
        """
        Open a subscription on the running event loop.

        Args:
            table: Table whose changes to receive
            events: INSERT, UPDATE or "*" for both
            conversation_id: Only deliver rows of this conversation
        """
        loop = asyncio.get_running_loop()
        subscription = Subscription(self, table, frozenset(events), conversation_id, loop)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(
            "Subscribed to changes",
            extra={"table": table, "events": sorted(subscription.events), "conversation_id": conversation_id},
        )
        return subscription

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, change: Change) -> int:
        """
        Deliver a committed change to every matching subscription.

        Returns:
            Number of subscriptions the change was handed to
        """
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]

        record_realtime_event(change.table, change.event)
        delivered = 0
        for subscription in targets:
            if subscription.push(change):
                delivered += 1
            else:
                logger.warning("Dropping subscription with a closed event loop", extra={"table": change.table})
                self._remove(subscription)
        return delivered

    def disconnect_all(self) -> None:
        """Drop every subscription, as when the notification channel goes away."""
        with self._lock:
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()
        logger.info("Change feed disconnected", extra={"dropped": len(subscriptions)})
