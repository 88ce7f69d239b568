"""Push-based sources with cancellable subscriptions.

A Source pushes items to an Observer until it completes or errors; the
Subscription returned by ``subscribe`` stops delivery when disposed. Error
and completion are terminal: a source emits nothing after either.

Example:
    events = Subject()
    sub = events.subscribe(Observer(on_item=print))
    events.push({"def_name": "saw", "args": {"freq": 440}})
    sub.dispose()
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from dataclasses import dataclass
from typing import Any


def _ignore(*_: Any) -> None:
    return None


@dataclass
class Observer:
    """Callbacks receiving a source's signals."""

    on_item: Callable[[Any], None] = _ignore
    on_error: Callable[[BaseException], None] = _ignore
    on_complete: Callable[[], None] = _ignore


class Subscription:
    """Handle for a live subscription. Disposing is idempotent."""

    def __init__(self, on_dispose: Callable[[], None] | None = None) -> None:
        self._on_dispose = on_dispose
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        if self._on_dispose is not None:
            self._on_dispose()


class Source:
    """Base class for push sources."""

    def subscribe(self, observer: Observer) -> Subscription:
        raise NotImplementedError

    def map(self, fn: Callable[[Any], Any]) -> Source:
        """A source emitting ``fn(item)`` for each item of this one."""
        return MappedSource(self, fn)


class Subject(Source):
    """A source fed by explicit push(), error() and complete() calls."""

    def __init__(self) -> None:
        self._observers: list[Observer] = []
        self._error: BaseException | None = None
        self._completed = False

    @property
    def stopped(self) -> bool:
        return self._completed or self._error is not None

    def subscribe(self, observer: Observer) -> Subscription:
        if self._error is not None:
            observer.on_error(self._error)
            return Subscription()
        if self._completed:
            observer.on_complete()
            return Subscription()
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return Subscription(remove)

    def push(self, item: Any) -> None:
        if self.stopped:
            return
        for observer in list(self._observers):
            observer.on_item(item)

    def error(self, exc: BaseException) -> None:
        if self.stopped:
            return
        self._error = exc
        observers, self._observers = self._observers, []
        for observer in observers:
            observer.on_error(exc)

    def complete(self) -> None:
        if self.stopped:
            return
        self._completed = True
        observers, self._observers = self._observers, []
        for observer in observers:
            observer.on_complete()


class MappedSource(Source):
    """Items of an upstream source passed through a function.

    An exception raised by the function is delivered as the error signal
    and ends the upstream subscription.
    """

    def __init__(self, upstream: Source, fn: Callable[[Any], Any]) -> None:
        self._upstream = upstream
        self._fn = fn

    def subscribe(self, observer: Observer) -> Subscription:
        upstream_sub: Subscription | None = None
        stopped = False

        def on_item(item: Any) -> None:
            nonlocal stopped
            if stopped:
                return
            try:
                mapped = self._fn(item)
            except Exception as e:
                stopped = True
                if upstream_sub is not None:
                    upstream_sub.dispose()
                observer.on_error(e)
                return
            observer.on_item(mapped)

        def on_error(exc: BaseException) -> None:
            if not stopped:
                observer.on_error(exc)

        def on_complete() -> None:
            if not stopped:
                observer.on_complete()

        upstream_sub = self._upstream.subscribe(Observer(on_item, on_error, on_complete))
        if stopped:
            upstream_sub.dispose()
        return Subscription(upstream_sub.dispose)


class IterableSource(Source):
    """Pushes the items of a (possibly asynchronous) iterable.

    Each subscription pumps the iterable in its own task; disposing the
    subscription cancels the task.
    """

    def __init__(self, items: Iterable[Any] | AsyncIterable[Any]) -> None:
        self._items = items

    async def _aiter(self) -> AsyncIterator[Any]:
        if isinstance(self._items, AsyncIterable):
            async for item in self._items:
                yield item
        else:
            for item in self._items:
                yield item
                # Let other branches run between items
                await asyncio.sleep(0)

    def subscribe(self, observer: Observer) -> Subscription:
        async def pump() -> None:
            try:
                async for item in self._aiter():
                    observer.on_item(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                observer.on_error(e)
                return
            observer.on_complete()

        task = asyncio.get_running_loop().create_task(pump())
        return Subscription(task.cancel)


def from_iterable(items: Iterable[Any] | AsyncIterable[Any]) -> Source:
    """A source pushing each item of ``items`` then completing."""
    return IterableSource(items)
