"""Shared test utilities for dryadic tests."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

from dryadic.context import Context

# Server options for a simulated engine: no process, loopback transport
LOOPBACK = {"transport": "loopback", "program": None}


async def until(predicate: Callable[[], bool], turns: int = 200) -> None:
    """Let the event loop run until ``predicate`` holds."""
    for _ in range(turns):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


def capture(seen: list[Context], result: Any = None) -> Callable[[Context], Any]:
    """A dryad recording the context it is evaluated with."""

    async def record(context: Context) -> Any:
        seen.append(context)
        return result

    return record


def blocker(seen: list[Context] | None = None) -> Callable[[Context], Any]:
    """A dryad that never finishes on its own."""

    async def block(context: Context) -> None:
        if seen is not None:
            seen.append(context)
        await asyncio.Event().wait()

    return block
