"""Booting server and interpreter targets."""

from __future__ import annotations

import asyncio

from dryadic.config.schema import InterpreterOptions, ServerOptions
from dryadic.errors import BootFailed, DryadError
from dryadic.logging import get_logger
from dryadic.messages import notify
from dryadic.store import Store
from dryadic.targets.interpreter import Interpreter
from dryadic.targets.loopback import LoopbackTransport
from dryadic.targets.process import EngineProcess
from dryadic.targets.server import Server
from dryadic.targets.udp import UdpTransport

log = get_logger("boot")


async def boot_server(options: ServerOptions, store: Store | None = None) -> Server:
    """Start a server and connect to it.

    Launches ``options.program`` (unless it is None, meaning the engine is
    already running or simulated), opens the configured transport and
    registers for node notifications.

    Args:
        options: Effective server options.
        store: Process-wide store the server's state lives in.

    Returns:
        The connected Server.

    Raises:
        BootFailed: The process, the transport or the notify handshake failed.
    """
    process: EngineProcess | None = None
    if options.program:
        process = EngineProcess(
            options.program,
            ["-u", str(options.port), *options.extra_args],
            label="server",
            ready_pattern=options.ready_pattern,
            echo=options.echo,
        )
        await process.start(timeout=options.boot_timeout)

    try:
        if options.transport == "loopback":
            transport = LoopbackTransport()
            name: str | None = None
        elif options.transport == "udp":
            if options.codec is None:
                raise BootFailed("server", "the udp transport needs an OSC codec (server.codec)")
            try:
                transport = await UdpTransport.open(options.host, options.port, options.codec)
            except OSError as e:
                raise BootFailed("server", f"cannot open UDP transport: {e}") from e
            name = f"{options.host}:{options.port}"
        else:
            raise BootFailed("server", f"unknown transport {options.transport!r}")

        server = Server(transport, options=options, store=store, process=process, name=name)
        try:
            await server.call_and_response(notify(True), timeout=options.boot_timeout)
        except (DryadError, asyncio.TimeoutError) as e:
            await server.quit()
            raise BootFailed("server", f"notify handshake failed: {e}") from e
    except BaseException:
        if process is not None:
            await process.stop()
        raise

    log.info("Server %s booted", server.name)
    return server


async def boot_interpreter(options: InterpreterOptions) -> Interpreter:
    """Start an interpreter and load the request helpers.

    Raises:
        BootFailed: The process failed to start or signal ready.
    """
    process = EngineProcess(
        options.program,
        options.extra_args,
        label="interpreter",
        ready_pattern=options.ready_pattern,
        echo=options.echo,
        stdin=True,
    )
    await process.start(timeout=options.boot_timeout)

    interpreter = Interpreter(process, options=options)
    try:
        interpreter.prepare()
    except RuntimeError as e:
        await process.stop()
        raise BootFailed("interpreter", str(e), process.output_tail) from e

    log.info("Interpreter booted")
    return interpreter
