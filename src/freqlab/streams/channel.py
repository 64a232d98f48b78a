"""Bounded broadcast channel with drop-oldest backpressure."""

import asyncio
import logging
from collections import deque
from typing import Callable, Deque, Generic, List, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ChannelClosed(Exception):
    """Raised by Subscription.get() once the channel is closed and drained."""

    pass


class Subscription(Generic[T]):
    """
    One subscriber's view of an EventChannel.

    PATTERN: Per-subscriber buffer so a slow consumer never blocks the
    producer or other subscribers.
    CRITICAL: Capacity bounds droppable (log) items only. Terminal items are
    always buffered and never evicted.
    """

    def __init__(self, channel: "EventChannel[T]", capacity: int):
        self._channel = channel
        self._capacity = capacity
        self._items: Deque[Tuple[T, bool]] = deque()
        self._droppable = 0
        self._ready = asyncio.Event()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        """True once no further items will arrive."""
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    def _offer(self, item: T, terminal: bool) -> None:
        if self._closed:
            return

        if not terminal:
            if self._droppable >= self._capacity and not self._evict_oldest():
                # Buffer is full of terminal items; drop the newcomer instead
                self._record_drop()
                return
            self._droppable += 1

        self._items.append((item, terminal))
        self._ready.set()

    def _evict_oldest(self) -> bool:
        for index, (_, terminal) in enumerate(self._items):
            if not terminal:
                del self._items[index]
                self._droppable -= 1
                self._record_drop()
                return True
        return False

    def _record_drop(self) -> None:
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 1000 == 0:
            logger.warning(
                f"Slow subscriber on '{self._channel.name}': "
                f"{self.dropped} log item(s) dropped so far"
            )

    def _close(self) -> None:
        self._closed = True
        self._ready.set()

    def get_nowait(self) -> T:
        """
        Pop the next buffered item without waiting.

        Raises:
            asyncio.QueueEmpty: If nothing is buffered
        """
        if not self._items:
            raise asyncio.QueueEmpty()
        item, terminal = self._items.popleft()
        if not terminal:
            self._droppable -= 1
        return item

    async def get(self) -> T:
        """
        Wait for the next item.

        Returns:
            Next item in publication order

        Raises:
            ChannelClosed: When the channel is closed and the buffer is empty
        """
        while not self._items:
            if self._closed:
                raise ChannelClosed(self._channel.name)
            self._ready.clear()
            await self._ready.wait()
        return self.get_nowait()

    def close(self) -> None:
        """Stop receiving items and detach from the channel."""
        self._channel._unsubscribe(self)
        self._close()

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        try:
            return await self.get()
        except ChannelClosed:
            raise StopAsyncIteration


class EventChannel(Generic[T]):
    """
    Broadcast channel feeding any number of subscriptions.

    publish() never blocks. Terminal items are retained and replayed to
    subscribers that join later, so a late subscriber still observes how a
    run ended. Closing the channel is observable by every subscriber.
    """

    def __init__(
        self,
        capacity: int = 1000,
        name: str = "channel",
        is_terminal: Optional[Callable[[T], bool]] = None,
    ):
        """
        Initialize channel.

        Args:
            capacity: Default per-subscriber buffer for droppable items
            name: Name used in log messages
            is_terminal: Classifier for items that must never be dropped
        """
        self.capacity = capacity
        self.name = name
        self._is_terminal = is_terminal
        self._subscribers: List[Subscription[T]] = []
        self._retained: List[T] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, capacity: Optional[int] = None) -> Subscription[T]:
        """
        Create a subscription.

        Args:
            capacity: Override of the per-subscriber buffer size

        Returns:
            Subscription receiving items published from now on, preceded by
            any retained terminal items
        """
        subscription: Subscription[T] = Subscription(self, capacity or self.capacity)
        for item in self._retained:
            subscription._offer(item, True)

        if self._closed:
            subscription._close()
        else:
            self._subscribers.append(subscription)
        return subscription

    def publish(self, item: T, terminal: Optional[bool] = None) -> None:
        """
        Deliver an item to every subscriber.

        Args:
            item: Item to publish
            terminal: Force the terminal flag (default: use the classifier)
        """
        if self._closed:
            logger.debug(f"Dropping item published to closed channel '{self.name}'")
            return

        if terminal is None:
            terminal = bool(self._is_terminal and self._is_terminal(item))

        if terminal:
            self._retained.append(item)

        for subscription in list(self._subscribers):
            subscription._offer(item, terminal)

    def close(self) -> None:
        """Close the channel; subscribers drain what is buffered, then stop."""
        if self._closed:
            return
        self._closed = True
        for subscription in self._subscribers:
            subscription._close()
        self._subscribers.clear()

    def _unsubscribe(self, subscription: Subscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
