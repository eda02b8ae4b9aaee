"""
Event broadcaster for slot state and progress changes.

Every subscriber gets its own bounded queue. A new subscriber first receives
a snapshot of both slots and then only events published after it subscribed.
Publishing never blocks: when a subscriber falls behind, its oldest queued
event is dropped.

Subscriptions created with an event loop can be awaited with next_event(),
which waits on the loop instead of holding a worker thread.
"""

import asyncio
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class SlotEvent:
    """A change pushed to real-time clients."""

    type: str  # snapshot, state, progress, error
    slot: Optional[str] = None
    data: dict = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        payload = {"type": self.type, "timestamp": self.timestamp}
        if self.slot is not None:
            payload["slot"] = self.slot
        payload.update(self.data)
        return payload


class Subscription:
    """One subscriber's bounded event queue."""

    def __init__(
        self,
        broadcaster: "EventBroadcaster",
        maxsize: int,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        self._broadcaster = broadcaster
        self._queue: deque[SlotEvent] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._loop = loop
        self._wakeup = asyncio.Event() if loop is not None else None
        self.dropped = 0
        self.closed = False

    def put(self, event: SlotEvent) -> None:
        with self._cond:
            if self.closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify()
        self._wake()

    def get(self, timeout: float = None) -> Optional[SlotEvent]:
        """Next event, or None on timeout or when closed."""
        with self._cond:
            if not self._queue and not self.closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    async def next_event(self, timeout: float = None) -> Optional[SlotEvent]:
        """Await the next event on the subscription's loop.

        Returns None on timeout or when closed.
        """
        if self._wakeup is None:
            raise RuntimeError("Subscription was not created with an event loop")

        event = self.get(timeout=0)
        if event is not None or self.closed:
            return event

        self._wakeup.clear()
        # An event may have arrived before the clear
        event = self.get(timeout=0)
        if event is not None or self.closed:
            return event

        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.get(timeout=0)

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)
        with self._cond:
            self.closed = True
            self._cond.notify_all()
        self._wake()

    def _wake(self) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self._wakeup.set)
        except RuntimeError:
            # Loop closed between the check and the call
            logger.debug("Event loop closed, subscriber not woken")


class EventBroadcaster:
    """Fans out slot events to every subscriber."""

    def __init__(self, snapshot_provider: Callable[[], dict[str, Any]] = None, queue_size: int = 100):
        self._snapshot_provider = snapshot_provider
        self._queue_size = queue_size
        self._subscribers: list[Subscription] = []
        self._lock = threading.Lock()

    def set_snapshot_provider(self, provider: Callable[[], dict[str, Any]]):
        """Set the callable returning the current {slot: state} mapping."""
        self._snapshot_provider = provider

    def subscribe(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """Add a subscriber. Pass the running loop to consume with next_event()."""
        subscription = Subscription(self, self._queue_size, loop=loop)
        with self._lock:
            snapshot = self._snapshot_provider() if self._snapshot_provider else {}
            subscription.put(SlotEvent(type="snapshot", data={"slots": snapshot}))
            self._subscribers.append(subscription)
        logger.debug(f"Subscriber added ({len(self._subscribers)} connected)")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)
                logger.debug(f"Subscriber removed ({len(self._subscribers)} connected)")

    def publish(self, event: SlotEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            for subscription in subscribers:
                subscription.put(event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def close_all(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
        logger.info("All event subscribers closed")
