"""Engines a spawn tree runs against.

Servers and interpreters are consumed through the ServerTarget and
InterpreterTarget protocols; Server and Interpreter are the concrete
handles produced by boot_server() and boot_interpreter().
"""

from dryadic.targets.boot import boot_interpreter, boot_server
from dryadic.targets.interpreter import Interpreter
from dryadic.targets.loopback import LoopbackTransport
from dryadic.targets.process import EngineProcess
from dryadic.targets.protocol import (
    Codec,
    InterpreterTarget,
    MessageReceiver,
    ServerTarget,
    Transport,
)
from dryadic.targets.server import Server
from dryadic.targets.udp import UdpTransport

__all__ = [
    "Codec",
    "EngineProcess",
    "Interpreter",
    "InterpreterTarget",
    "LoopbackTransport",
    "MessageReceiver",
    "Server",
    "ServerTarget",
    "Transport",
    "UdpTransport",
    "boot_interpreter",
    "boot_server",
]
