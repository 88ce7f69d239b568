"""UDP transport to a synthesis server."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from dryadic.errors import EngineUnavailable
from dryadic.logging import get_logger

if TYPE_CHECKING:
    from dryadic.messages import Message
    from dryadic.targets.protocol import Codec, MessageReceiver

log = get_logger("udp")


class _DatagramProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: UdpTransport) -> None:
        self._owner = owner

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        self._owner._datagram(data)

    def error_received(self, exc: Exception) -> None:
        log.warning("UDP error from %s: %s", self._owner.address, exc)

    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._lost(str(exc) if exc else "connection closed")


class UdpTransport:
    """Datagram transport encoding messages with a caller-supplied codec.

    Use ``await UdpTransport.open(host, port, codec)``.
    """

    def __init__(self, host: str, port: int, codec: Codec) -> None:
        self._host = host
        self._port = port
        self._codec = codec
        self._receiver: MessageReceiver | None = None
        self._transport: asyncio.DatagramTransport | None = None
        self._closing = False

    @classmethod
    async def open(cls, host: str, port: int, codec: Codec) -> UdpTransport:
        udp = cls(host, port, codec)
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _DatagramProtocol(udp),
            remote_addr=(host, port),
        )
        udp._transport = transport
        return udp

    @property
    def address(self) -> str:
        return f"{self._host}:{self._port}"

    def attach(self, receiver: MessageReceiver) -> None:
        self._receiver = receiver

    def send(self, message: Message) -> None:
        if self._transport is None or self._transport.is_closing():
            raise EngineUnavailable(self.address, "UDP transport is closed")
        self._transport.sendto(self._codec.encode(message))

    def _datagram(self, data: bytes) -> None:
        try:
            message = self._codec.decode(data)
        except Exception as e:
            log.warning("Undecodable datagram from %s: %s", self.address, e)
            return
        if self._receiver is not None:
            self._receiver.receive(message)

    def _lost(self, reason: str) -> None:
        if self._receiver is not None and not self._closing:
            self._receiver.disconnected(reason)

    async def close(self) -> None:
        self._closing = True
        if self._transport is not None:
            self._transport.close()
