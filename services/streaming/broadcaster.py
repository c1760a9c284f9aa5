"""
Progress Broadcaster

Topic-keyed publish/subscribe for progress updates. The job registry
publishes here without knowing anything about transports; the SSE server
(or any in-process observer) subscribes.

Topics:
- one per job id
- GLOBAL_TOPIC, which receives every update

Delivery:
- fire-and-forget: publish() never awaits and never blocks on a subscriber
- per-topic FIFO: a subscriber sees one job's updates in emission order
- queue subscribers are fed through loop.call_soon_threadsafe, so
  publishing from a worker thread is safe

Usage:
    broadcaster = ProgressBroadcaster()

    async with broadcaster.subscribe(job_id) as subscription:
        async for update in subscription:
            print(update.progress, update.message)
"""

import asyncio
import logging
import threading
from typing import Callable, Optional
from uuid import uuid4

from services.jobs.models import GLOBAL_TOPIC, ProgressUpdate

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """
    A single listener on one topic.

    Either queue-backed (async iteration) or callback-backed
    (synchronous dispatch at publish time).
    """

    def __init__(
        self,
        broadcaster: "ProgressBroadcaster",
        topic: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        callback: Optional[Callable[[ProgressUpdate], None]] = None,
    ):
        self.subscription_id = str(uuid4())
        self.topic = topic
        self.closed = False
        self._broadcaster = broadcaster
        self._callback = callback
        self._loop = loop
        self._queue: Optional[asyncio.Queue] = asyncio.Queue() if callback is None else None

    def _deliver(self, update: ProgressUpdate):
        """Hand an update to this subscriber without blocking."""
        if self.closed:
            return

        if self._callback is not None:
            try:
                self._callback(update)
            except Exception as e:
                logger.error(f"Progress callback error on topic {self.topic}: {e}")
            return

        self._enqueue(update)

    def _enqueue(self, item: object):
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            # Subscriber's event loop is gone
            logger.debug(f"Dropping subscription {self.subscription_id}: event loop closed")
            self.closed = True
            self._broadcaster._remove(self)

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressUpdate]:
        """
        Wait for the next update.

        Returns None once the subscription is closed. Raises
        asyncio.TimeoutError if nothing arrives within timeout.
        """
        if self._queue is None:
            raise TypeError("Callback subscriptions cannot be awaited")

        if timeout is None:
            item = await self._queue.get()
        else:
            item = await asyncio.wait_for(self._queue.get(), timeout=timeout)

        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def close(self):
        """Unsubscribe and end any pending iteration."""
        if self.closed:
            return
        self.closed = True
        self._broadcaster._remove(self)
        if self._queue is not None:
            self._enqueue(_CLOSED)

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressUpdate:
        update = await self.get()
        if update is None:
            raise StopAsyncIteration
        return update

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


class ProgressBroadcaster:
    """
    Delivers ProgressUpdate events to per-job and global subscribers.

    No listener cap: every subscriber on a topic receives every update
    until it unsubscribes.
    """

    def __init__(self):
        self._topics: dict[str, dict[str, Subscription]] = {}  # topic -> subscription_id -> sub
        self._lock = threading.Lock()

    def subscribe(
        self,
        job_id: str,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscription:
        """
        Subscribe to one job's updates from this point forward.

        Must be called from a running event loop unless loop is given.
        """
        subscription = Subscription(self, job_id, loop=loop or asyncio.get_running_loop())
        self._add(subscription)
        return subscription

    def subscribe_all(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> Subscription:
        """Subscribe to every job's updates."""
        return self.subscribe(GLOBAL_TOPIC, loop=loop)

    def subscribe_callback(
        self,
        topic: str,
        callback: Callable[[ProgressUpdate], None],
    ) -> Subscription:
        """
        Register a synchronous listener.

        The callback runs inside publish(); it must not block.
        """
        subscription = Subscription(self, topic, callback=callback)
        self._add(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription):
        subscription.close()

    def publish(self, update: ProgressUpdate):
        """Publish to the update's job topic and to the global topic."""
        with self._lock:
            targets = [
                sub
                for topic in (update.job_id, GLOBAL_TOPIC)
                for sub in self._topics.get(topic, {}).values()
            ]

        for subscription in targets:
            subscription._deliver(update)

    def close_topic(self, job_id: str) -> int:
        """Close every subscription on a job topic. Returns how many were closed."""
        with self._lock:
            subscriptions = list(self._topics.get(job_id, {}).values())

        for subscription in subscriptions:
            subscription.close()
        return len(subscriptions)

    def subscriber_count(self, topic: Optional[str] = None) -> int:
        with self._lock:
            if topic is not None:
                return len(self._topics.get(topic, {}))
            return sum(len(subs) for subs in self._topics.values())

    def topics(self) -> list[str]:
        with self._lock:
            return list(self._topics.keys())

    def _add(self, subscription: Subscription):
        with self._lock:
            self._topics.setdefault(subscription.topic, {})[subscription.subscription_id] = subscription
        logger.debug(f"Subscription {subscription.subscription_id} added to {subscription.topic}")

    def _remove(self, subscription: Subscription):
        with self._lock:
            subscriptions = self._topics.get(subscription.topic)
            if subscriptions is None:
                return
            subscriptions.pop(subscription.subscription_id, None)
            if not subscriptions:
                del self._topics[subscription.topic]
        logger.debug(f"Subscription {subscription.subscription_id} removed from {subscription.topic}")
