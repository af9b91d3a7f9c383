"""Broadcast channels with bounded asyncio subscriptions.

A Broadcast fans each emitted item out to its current subscribers. Items
emitted before a subscription exists are not replayed, except by
BehaviorBroadcast which primes new subscribers with its latest value.
Subscriber queues are bounded; when full, the oldest item is dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any, Generic, TypeVar

T = TypeVar("T")

_DONE = object()


class StreamSubscription(Generic[T]):
    """Async iterator over items delivered by a Broadcast."""

    def __init__(
        self,
        owner: Broadcast[T],
        predicate: Callable[[T], bool] | None,
        maxsize: int,
    ) -> None:
        self._owner = owner
        self._predicate = predicate
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _push(self, item: Any) -> None:
        if item is not _DONE and self._predicate and not self._predicate(item):
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    def pending(self) -> list[T]:
        """Drain and return the items already delivered."""
        items: list[T] = []
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is _DONE:
                self._queue.put_nowait(_DONE)
                break
            items.append(item)
        return items

    def close(self) -> None:
        self._owner._remove(self)
        self._push(_DONE)

    def __aiter__(self) -> StreamSubscription[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _DONE:
            self._queue.put_nowait(_DONE)
            raise StopAsyncIteration
        return item


class Broadcast(Generic[T]):
    def __init__(self, maxsize: int = 1000) -> None:
        self._maxsize = maxsize
        self._subscribers: list[StreamSubscription[T]] = []
        self._completed = False

    @property
    def completed(self) -> bool:
        return self._completed

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self, predicate: Callable[[T], bool] | None = None) -> StreamSubscription[T]:
        subscription = StreamSubscription(self, predicate, self._maxsize)
        if self._completed:
            subscription._push(_DONE)
        else:
            self._subscribers.append(subscription)
        return subscription

    def emit(self, item: T) -> None:
        if self._completed:
            return
        for subscription in list(self._subscribers):
            subscription._push(item)

    def complete(self) -> None:
        """End every subscription. Later emits are ignored."""
        if self._completed:
            return
        self._completed = True
        for subscription in self._subscribers:
            subscription._push(_DONE)
        self._subscribers.clear()

    def _remove(self, subscription: StreamSubscription[T]) -> None:
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)


class BehaviorBroadcast(Broadcast[T]):
    """Broadcast that remembers its latest value."""

    def __init__(self, initial: T, maxsize: int = 1000) -> None:
        super().__init__(maxsize)
        self.value = initial

    def subscribe(self, predicate: Callable[[T], bool] | None = None) -> StreamSubscription[T]:
        subscription = StreamSubscription(self, predicate, self._maxsize)
        subscription._push(self.value)
        if self._completed:
            subscription._push(_DONE)
        else:
            self._subscribers.append(subscription)
        return subscription

    def emit(self, item: T) -> None:
        if self._completed:
            return
        self.value = item
        super().emit(item)
