"""
Broadcast channels for store state, running-task, and progress updates.

Readers subscribe and receive every value published after they joined,
in publish order. Channels created with replay_latest=True also hand new
subscribers the most recent value first, so a late reader starts from the
current state instead of waiting for the next change.

Channels created with latest_only=True carry full state snapshots: each
subscriber holds at most one pending value, and a newer snapshot replaces an
unread older one.
"""

import asyncio
from typing import Generic, List, Optional, TypeVar

import structlog


T = TypeVar("T")


class Subscription(Generic[T]):
    """Async-iterable view on a Broadcast channel"""

    def __init__(self, channel: "Broadcast[T]", latest_only: bool = False):
        self._channel = channel
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=1 if latest_only else 0)
        self.closed = False

    def _push(self, value: T) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(value)

    async def get(self) -> T:
        return await self._queue.get()

    def drain(self) -> List[T]:
        """Return every value that is already queued without waiting"""
        values = []
        while not self._queue.empty():
            values.append(self._queue.get_nowait())
        return values

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._channel._unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> T:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        return await self._queue.get()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()


class Broadcast(Generic[T]):
    """
    In-process publish/subscribe channel.

    publish() never blocks, so a slow reader cannot stall the scan loop.
    Event channels queue every value for each subscriber; latest_only
    channels keep one.

    Example:
        >>> channel = Broadcast("store_state", replay_latest=True, latest_only=True)
        >>> with channel.subscribe() as updates:
        ...     async for state in updates:
        ...         render(state)
    """

    def __init__(self, name: str, replay_latest: bool = False, latest_only: bool = False):
        self.name = name
        self.replay_latest = replay_latest
        self.latest_only = latest_only
        self.latest: Optional[T] = None
        self._has_value = False
        self._subscribers: List[Subscription[T]] = []

        self.logger = structlog.get_logger(__name__, channel=name)

    def subscribe(self) -> Subscription[T]:
        subscription = Subscription(self, latest_only=self.latest_only)
        if self.replay_latest and self._has_value:
            subscription._push(self.latest)
        self._subscribers.append(subscription)
        self.logger.debug("channel_subscribed", subscribers=len(self._subscribers))
        return subscription

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)

    def publish(self, value: T) -> None:
        self.latest = value
        self._has_value = True
        for subscription in list(self._subscribers):
            subscription._push(value)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
