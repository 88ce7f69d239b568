"""In-process engine stand-in.

LoopbackTransport answers control messages the way a synthesis server
would, without any audio: spawns are confirmed with /n_go, frees with
/n_end, and asynchronous commands with /done. It records everything sent,
which makes it the natural engine for dry runs and tests.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from dryadic.errors import EngineUnavailable
from dryadic.messages import Message

if TYPE_CHECKING:
    from dryadic.targets.protocol import MessageReceiver

_DONE_COMMANDS = {"/d_recv", "/d_load", "/d_loadDir", "/notify", "/sync", "/quit"}


class LoopbackTransport:
    """Transport whose far end is a simulated engine."""

    def __init__(self, *, auto_confirm: bool = True, synchronous: bool = False) -> None:
        """Initialize the loopback.

        Args:
            auto_confirm: Confirm spawned nodes automatically. When False,
                nodes only go live through confirm().
            synchronous: Deliver replies inside send() rather than on the
                next event loop iteration.
        """
        self.auto_confirm = auto_confirm
        self.synchronous = synchronous
        self.sent: list[Message] = []
        self._receiver: MessageReceiver | None = None
        self._closed = False
        self._failures: dict[str, str] = {}

    def attach(self, receiver: MessageReceiver) -> None:
        self._receiver = receiver

    def send(self, message: Message) -> None:
        if self._closed:
            raise EngineUnavailable("loopback", "transport closed")
        self.sent.append(message)
        for reply in self._replies(message):
            self._deliver(reply)

    def sent_to(self, address: str) -> list[Message]:
        """Messages sent so far with the given address."""
        return [m for m in self.sent if m.address == address]

    def fail_next(self, command: str, error: str) -> None:
        """Answer the next ``command`` with /fail instead of /done."""
        self._failures[command] = error

    def _replies(self, message: Message) -> list[Message]:
        args = message.args
        match message.address:
            case "/s_new":
                if self.auto_confirm:
                    return [_n_go(args[1], args[3], is_group=False)]
            case "/g_new":
                if self.auto_confirm:
                    return [_n_go(args[0], args[2], is_group=True)]
            case "/n_free":
                return [Message("/n_end", (node_id, -1, -1, -1, 0)) for node_id in args]
            case address if address in _DONE_COMMANDS:
                error = self._failures.pop(address, None)
                if error is not None:
                    return [Message("/fail", (address, error))]
                return [Message("/done", (address,))]
        return []

    def _deliver(self, reply: Message) -> None:
        if self._receiver is None:
            return
        if self.synchronous:
            self._receiver.receive(reply)
        else:
            asyncio.get_running_loop().call_soon(self._receiver.receive, reply)

    def confirm(self, node_id: int, parent: int = 0, *, is_group: bool = False) -> None:
        """Deliver /n_go for ``node_id`` right now."""
        if self._receiver is not None:
            self._receiver.receive(_n_go(node_id, parent, is_group=is_group))

    def drop(self, reason: str = "connection lost") -> None:
        """Simulate the engine going away."""
        self._closed = True
        if self._receiver is not None:
            self._receiver.disconnected(reason)

    async def close(self) -> None:
        self._closed = True


def _n_go(node_id: int, parent: int, *, is_group: bool) -> Message:
    return Message("/n_go", (node_id, parent, -1, -1, 1 if is_group else 0))
