"""Node id allocation and running confirmation.

Spawning a node is fire-and-forget on the wire; the server later reports
``/n_go`` for the node once it is running. NodeWatcher bridges the two:
a spawn registers what it expects *before* sending, then awaits the
registration. Confirmations that arrive with nobody waiting are kept in a
bounded replay buffer so a late registration still sees them.
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from dryadic.errors import ConfirmationTimeout, EngineUnavailable
from dryadic.logging import get_logger

if TYPE_CHECKING:
    from dryadic.context import Context

log = get_logger("lifecycle")


def allocate_id(context: Context) -> int:
    """Draw the next node id from the context's id scope.

    Raises:
        ValueError: If the context has no id scope (no server installed).
    """
    if context.id_scope is None:
        raise ValueError("Cannot allocate a node id: context has no target server")
    return context.id_scope.next()


@dataclass
class _PendingWait:
    owner: str
    future: asyncio.Future[int]
    waiter: asyncio.Task[Any] | None = None


def _owned_by(owner: str, prefix: str) -> bool:
    return not prefix or owner == prefix or owner.startswith(prefix + ".")


class NodeWatcher:
    """Pending running-confirmations for one server.

    Each wait is keyed by node id and scoped under an owner path (the
    spawning dryad's context path) so a torn-down subtree can abandon all
    of its waits at once.
    """

    def __init__(self, target: str, *, replay_limit: int = 1024) -> None:
        self._target = target
        self._replay_limit = replay_limit
        self._waits: dict[int, _PendingWait] = {}
        self._early: OrderedDict[int, None] = OrderedDict()
        self._unavailable: str | None = None

    @property
    def target(self) -> str:
        return self._target

    def __len__(self) -> int:
        return len(self._waits)

    def pending(self) -> list[int]:
        """Node ids still awaiting confirmation."""
        return list(self._waits)

    def expect(self, owner: str, node_id: int) -> asyncio.Future[int]:
        """Register interest in ``node_id`` going live.

        Must be called before the spawn message is sent. The returned
        future resolves with the node id exactly once.

        Raises:
            EngineUnavailable: The server has disconnected.
            ValueError: ``node_id`` is already awaited.
        """
        if self._unavailable is not None:
            raise EngineUnavailable(self._target, self._unavailable)
        future: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        if node_id in self._early:
            del self._early[node_id]
            future.set_result(node_id)
            return future
        if node_id in self._waits:
            raise ValueError(f"Node {node_id} on {self._target} is already awaited")
        self._waits[node_id] = _PendingWait(owner, future)
        return future

    async def confirmed(
        self,
        future: asyncio.Future[int],
        node_id: int,
        timeout: float | None = None,
    ) -> int:
        """Await a registration made by ``expect``.

        The registration is discarded however this returns, so cancelled
        or timed-out waits leave nothing behind. The awaiting task is
        recorded so that ``abandon`` can cancel it.

        Raises:
            EngineUnavailable: The server disconnected first.
            ConfirmationTimeout: ``timeout`` elapsed first.
        """
        wait = self._waits.get(node_id)
        if wait is not None and wait.future is future:
            wait.waiter = asyncio.current_task()
        try:
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise ConfirmationTimeout(self._target, node_id, timeout or 0.0) from None
        finally:
            self.release(node_id, future)

    async def wait(self, owner: str, node_id: int, timeout: float | None = None) -> int:
        """Register and await in one step."""
        return await self.confirmed(self.expect(owner, node_id), node_id, timeout)

    def release(self, node_id: int, future: asyncio.Future[int]) -> None:
        """Drop the registration ``future`` made for ``node_id``, if still held."""
        wait = self._waits.get(node_id)
        if wait is not None and wait.future is future:
            del self._waits[node_id]

    def node_go(self, node_id: int) -> None:
        """Deliver a running confirmation for ``node_id``."""
        wait = self._waits.pop(node_id, None)
        if wait is not None:
            if not wait.future.done():
                wait.future.set_result(node_id)
            return
        self._early[node_id] = None
        while len(self._early) > self._replay_limit:
            dropped, _ = self._early.popitem(last=False)
            log.debug("Replay buffer full on %s, dropping confirmation for %d", self._target, dropped)

    def node_end(self, node_id: int) -> None:
        """Forget a replayed confirmation for a node that has ended."""
        self._early.pop(node_id, None)

    def abandon(self, owner_prefix: str) -> int:
        """Tear down every pending wait owned by ``owner_prefix`` or below it.

        A wait already being awaited has its awaiting task cancelled, so the
        cancellation stays inside the abandoned subtree: the parent sees that
        branch end as cancelled, not failed. Waits nobody awaits yet just
        have their future cancelled.

        Returns:
            Number of waits abandoned.
        """
        abandoned = [
            node_id for node_id, wait in self._waits.items() if _owned_by(wait.owner, owner_prefix)
        ]
        for node_id in abandoned:
            wait = self._waits.pop(node_id)
            if wait.waiter is not None and not wait.waiter.done():
                wait.waiter.cancel()
            else:
                wait.future.cancel()
        if abandoned:
            log.debug("Abandoned %d wait(s) under %r on %s", len(abandoned), owner_prefix, self._target)
        return len(abandoned)

    def disconnect(self, reason: str) -> None:
        """Fail every pending wait; later registrations fail immediately."""
        self._unavailable = reason
        waits = list(self._waits.values())
        self._waits.clear()
        self._early.clear()
        for wait in waits:
            if not wait.future.done():
                wait.future.set_exception(EngineUnavailable(self._target, reason))


async def await_running(context: Context, node_id: int, timeout: float | None = None) -> int:
    """Wait until ``node_id`` runs on the context's server.

    The wait is owned by the context's path.
    """
    if context.server is None:
        raise EngineUnavailable("server", "no target server in context")
    return await context.server.watcher.wait(context.path, node_id, timeout)
