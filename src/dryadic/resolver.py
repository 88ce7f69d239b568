"""Deep resolution of dynamic values.

A dynamic value is a literal, a callable taking the evaluation context,
an awaitable, or a mapping or sequence of further dynamic values. Before a
control message can be built, every callable in such a tree is invoked and
every awaitable awaited, giving plain data with the same shape.

Raw values are classified once into explicit variants and resolution
matches over the variants. A callable may return another callable; each
callable is expected to settle within a constant number of such hops.
That is a contract on the callables and is not checked here.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Union, cast

from dryadic.context import Context
from dryadic.errors import DryadError, ResolutionFailed
from dryadic.logging import get_logger

log = get_logger("resolver")


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Call:
    fn: Callable[[Context], Any]


@dataclass(frozen=True)
class Deferred:
    awaitable: Awaitable[Any]


@dataclass(frozen=True)
class Named:
    items: Mapping[str, Any]


@dataclass(frozen=True)
class Ordered:
    items: Sequence[Any]


Dynamic = Union[Literal, Call, Deferred, Named, Ordered]


def classify(value: Any) -> Dynamic:
    """Wrap a raw value in its dynamic variant.

    Strings and bytes are literals; lists and tuples are ordered
    collections; any other Mapping is a named collection.
    """
    if isinstance(value, (Literal, Call, Deferred, Named, Ordered)):
        return value
    if isinstance(value, (str, bytes, bytearray, int, float, bool)) or value is None:
        return Literal(value)
    if inspect.isawaitable(value):
        return Deferred(value)
    if callable(value):
        return Call(value)
    if isinstance(value, Mapping):
        return Named(value)
    if isinstance(value, (list, tuple)):
        return Ordered(value)
    return Literal(value)


async def resolve_one(value: Any, context: Context, label: str | None = None) -> Any:
    """Resolve a dynamic value to plain data.

    Args:
        value: Any dynamic value.
        context: Context callables are invoked with.
        label: Position of this value under its parent. Callables and
            nested collections see the context extended by this label.

    Returns:
        The plain value.

    Raises:
        ResolutionFailed: A callable raised or an awaitable rejected.
        DryadError: Any taxonomy error raised further down, unchanged.
    """
    node = classify(value)
    scoped = context.child(label) if label is not None else context
    try:
        match node:
            case Literal(value=plain):
                return plain
            case Call(fn=fn):
                return await resolve_one(fn(scoped), scoped)
            case Deferred(awaitable=awaitable):
                return await resolve_one(await awaitable, scoped)
            case Named(items=items):
                return await resolve_mapping(items, scoped)
            case Ordered(items=items):
                return await resolve_sequence(items, scoped)
    except DryadError:
        raise
    except Exception as e:
        raise ResolutionFailed(label if label is not None else (context.path or "<root>"), e) from e
    raise AssertionError(f"unhandled dynamic value {node!r}")


async def resolve_mapping(values: Mapping[str, Any], context: Context) -> dict[str, Any]:
    """Resolve every entry of ``values`` concurrently, keeping its keys."""
    if not values:
        return {}
    keys = list(values)
    resolved = await gather_all(resolve_one(values[key], context, str(key)) for key in keys)
    return dict(zip(keys, resolved))


async def resolve_sequence(values: Iterable[Any], context: Context) -> list[Any]:
    """Resolve every element concurrently; results follow input order."""
    items = list(values)
    if not items:
        return []
    return await gather_all(resolve_one(item, context, str(i)) for i, item in enumerate(items))


async def gather_all(awaitables: Iterable[Awaitable[Any]]) -> list[Any]:
    """Await everything concurrently; the first failure wins.

    When one awaitable fails, the others still pending are cancelled and
    drained before the failure is raised. Failures among the drained ones
    are logged, not raised. Cancelling the caller cancels every child. A
    child cancelled on its own (an abandoned branch) does not fail the
    rest; its slot in the result is None.

    Returns:
        Results in input order.
    """
    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    if not tasks:
        return []

    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise

    failed = [t for t in tasks if t in done and not t.cancelled() and t.exception() is not None]
    if not failed:
        abandoned = sum(1 for t in tasks if t.cancelled())
        if abandoned:
            log.debug("%d branch(es) abandoned; their results are None", abandoned)
        return [None if t.cancelled() else t.result() for t in tasks]

    for task in pending:
        task.cancel()
    drained = await asyncio.gather(*pending, return_exceptions=True)

    first = cast(BaseException, failed[0].exception())
    others = [t.exception() for t in failed[1:]] + [
        r for r in drained if isinstance(r, Exception)
    ]
    for other in others:
        log.debug("Sibling failure after %r: %r", first, other)
    raise first
