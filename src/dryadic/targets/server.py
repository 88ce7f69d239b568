"""Transport-backed synthesis server handle."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from typing import TYPE_CHECKING

from dryadic.config import get_config
from dryadic.config.schema import ServerOptions
from dryadic.context import IdScope
from dryadic.errors import CommandFailed, EngineUnavailable
from dryadic.lifecycle import NodeWatcher
from dryadic.logging import TRACE, get_logger
from dryadic.messages import Message, quit_server
from dryadic.store import ServerState, Store

if TYPE_CHECKING:
    from dryadic.targets.process import EngineProcess
    from dryadic.targets.protocol import Transport

log = get_logger("server")

_serials = itertools.count(1)


class Server:
    """A running synthesis server.

    Owns the id scope, the node watcher and the per-server state view.
    Incoming traffic from the transport is dispatched here:

    - /n_go    -> running confirmation for the node watcher
    - /n_end   -> node watcher and node metadata cleanup
    - /done    -> the oldest call_and_response waiting on that command
    - /fail    -> same, failing it with CommandFailed
    """

    def __init__(
        self,
        transport: Transport,
        *,
        options: ServerOptions | None = None,
        store: Store | None = None,
        process: EngineProcess | None = None,
        name: str | None = None,
    ) -> None:
        self.options = options or ServerOptions(program=None, transport="loopback")
        self.name = name or f"server-{next(_serials)}"
        self.id_scope = IdScope(self.options.node_id_start)
        self.state = ServerState(store if store is not None else Store(), self.name)
        self.watcher = NodeWatcher(self.name, replay_limit=get_config().lifecycle.replay_limit)
        self.confirm_timeout = self.options.confirm_timeout

        self._transport = transport
        self._process = process
        self._responses: dict[str, deque[asyncio.Future[Message]]] = {}
        self._unavailable: str | None = None
        self._send_level = logging.INFO if self.options.debug else TRACE

        transport.attach(self)
        if process is not None:
            process.on_exit(lambda code: self.disconnected(f"process exited with code {code}"))

    @property
    def running(self) -> bool:
        return self._unavailable is None

    def send(self, message: Message) -> None:
        """Hand ``message`` to the transport.

        Raises:
            EngineUnavailable: The server has quit or disconnected.
        """
        if self._unavailable is not None:
            raise EngineUnavailable(self.name, self._unavailable)
        log.log(self._send_level, "%s <- %r", self.name, message)
        self._transport.send(message)

    async def call_and_response(self, message: Message, timeout: float | None = None) -> Message:
        """Send ``message`` and wait for its /done.

        Args:
            message: Command to send.
            timeout: Seconds to wait; defaults to the response_timeout option.

        Raises:
            CommandFailed: The engine answered /fail.
            EngineUnavailable: The server went away first.
            asyncio.TimeoutError: No reply in time.
        """
        if self._unavailable is not None:
            raise EngineUnavailable(self.name, self._unavailable)
        future: asyncio.Future[Message] = asyncio.get_running_loop().create_future()
        waiting = self._responses.setdefault(message.address, deque())
        waiting.append(future)
        try:
            self.send(message)
            if timeout is None:
                timeout = self.options.response_timeout
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            if future in waiting:
                waiting.remove(future)

    def receive(self, message: Message) -> None:
        """Dispatch one incoming message."""
        log.log(self._send_level, "%s -> %r", self.name, message)
        match message.address:
            case "/n_go":
                self.watcher.node_go(int(message.args[0]))
            case "/n_end":
                node_id = int(message.args[0])
                self.watcher.node_end(node_id)
                self.state.forget_node(node_id)
            case "/done":
                self._resolve_response(str(message.args[0]), message, None)
            case "/fail":
                command = str(message.args[0])
                error = str(message.args[1]) if len(message.args) > 1 else "unknown error"
                if not self._resolve_response(command, None, CommandFailed(command, error)):
                    log.warning("%s: %s failed: %s", self.name, command, error)
            case _:
                pass

    def _resolve_response(
        self, command: str, reply: Message | None, error: Exception | None
    ) -> bool:
        waiting = self._responses.get(command)
        while waiting:
            future = waiting.popleft()
            if future.done():
                continue
            if error is not None:
                future.set_exception(error)
            else:
                future.set_result(reply)  # type: ignore[arg-type]
            return True
        return False

    def disconnected(self, reason: str) -> None:
        """Fail everything pending on this server."""
        if self._unavailable is not None:
            return
        self._unavailable = reason
        log.warning("%s unavailable: %s", self.name, reason)
        self.watcher.disconnect(reason)
        for waiting in self._responses.values():
            while waiting:
                future = waiting.popleft()
                if not future.done():
                    future.set_exception(EngineUnavailable(self.name, reason))

    async def quit(self) -> None:
        """Stop the server and discard its state."""
        if self._unavailable is None:
            try:
                self.send(quit_server())
            except Exception as e:
                log.debug("Could not send /quit to %s: %s", self.name, e)
        self.disconnected("quit")
        await self._transport.close()
        if self._process is not None:
            await self._process.stop()
        self.state.clear()

    def __repr__(self) -> str:
        status = "running" if self.running else f"unavailable: {self._unavailable}"
        return f"Server({self.name!r}, {status})"
