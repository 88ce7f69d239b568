"""Running spawn trees."""

from __future__ import annotations

import asyncio
from typing import Any

from dryadic.config import get_config
from dryadic.context import Context
from dryadic.logging import get_logger, setup_logging
from dryadic.resolver import resolve_one

log = get_logger("player")


async def play(dryad: Any, context: Context | None = None) -> Any:
    """Evaluate a root dryad to completion and return its result."""
    setup_logging(get_config().logging)
    return await resolve_one(dryad, context if context is not None else Context())


class Playing:
    """Handle for a tree evaluating in the background.

    Stopping cancels the evaluation task. Cancellation reaches every branch
    underneath, releasing their pending confirmations and subscriptions
    and quitting targets the tree booted.
    """

    def __init__(self, task: asyncio.Task[Any]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def result(self) -> Any:
        """Wait for the tree and return its result (or raise its failure)."""
        return await asyncio.shield(self._task)

    async def stop(self) -> None:
        """Cancel the tree and wait for teardown to finish."""
        if self._task.done():
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            log.debug("Stopped %s", self._task.get_name())


def spawn(dryad: Any, context: Context | None = None, *, name: str | None = None) -> Playing:
    """Start evaluating a root dryad as a task.

    Must be called with a running event loop.
    """
    task = asyncio.get_running_loop().create_task(play(dryad, context), name=name)
    return Playing(task)
