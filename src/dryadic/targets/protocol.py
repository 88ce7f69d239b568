"""Protocols for the engines a spawn tree talks to."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from dryadic.context import IdScope
    from dryadic.lifecycle import NodeWatcher
    from dryadic.messages import Message
    from dryadic.store import ServerState


class ServerTarget(Protocol):
    """A synthesis server that nodes are spawned on.

    Implementations:
    - Server: transport-backed handle, optionally owning the engine process
    """

    name: str
    id_scope: IdScope
    state: ServerState
    watcher: NodeWatcher
    confirm_timeout: float | None

    def send(self, message: Message) -> None:
        """Queue ``message`` for transmission. Returns once accepted for send."""
        ...

    async def call_and_response(self, message: Message, timeout: float | None = None) -> Message:
        """Send ``message`` and await the engine's /done reply for it."""
        ...

    async def quit(self) -> None: ...


class InterpreterTarget(Protocol):
    """A companion interpreter that evaluates source code."""

    async def interpret(self, code: str) -> Any:
        """Evaluate ``code`` and return its JSON-decoded result.

        Raises:
            InterpretError: The interpreter reported an error.
        """
        ...

    async def quit(self) -> None: ...


class MessageReceiver(Protocol):
    """What a transport delivers incoming traffic to."""

    def receive(self, message: Message) -> None: ...

    def disconnected(self, reason: str) -> None: ...


class Transport(Protocol):
    """Carries control messages to a server and notifications back.

    Implementations:
    - LoopbackTransport: in-process engine stand-in
    - UdpTransport: datagrams through a caller-supplied Codec
    """

    def attach(self, receiver: MessageReceiver) -> None: ...

    def send(self, message: Message) -> None: ...

    async def close(self) -> None: ...


class Codec(Protocol):
    """Converts messages to and from their wire form."""

    def encode(self, message: Message) -> bytes: ...

    def decode(self, data: bytes) -> Message: ...
