"""Engine processes launched with asyncio subprocesses."""

from __future__ import annotations

import asyncio
import re
from collections import deque
from collections.abc import Callable

from dryadic.errors import BootFailed
from dryadic.logging import VERBOSE, get_logger

log = get_logger("process")


class EngineProcess:
    """A long-running engine subprocess with a ready signal.

    Output (stdout and stderr merged) is read line by line for the whole
    life of the process: echoed to the log, kept as a short tail for
    diagnostics, and handed to line listeners. Exit listeners are called
    once when the output ends.
    """

    def __init__(
        self,
        program: str,
        args: list[str] | None = None,
        *,
        label: str = "engine",
        ready_pattern: str | None = None,
        echo: bool = True,
        stdin: bool = False,
        tail_lines: int = 50,
    ) -> None:
        """Initialize without starting.

        Args:
            program: Executable to launch.
            args: Command line arguments.
            label: Name used in logs and errors ("server", "interpreter").
            ready_pattern: Regex searched in each output line; start()
                returns on the first match. None means ready on launch.
            echo: Echo output lines to the log at VERBOSE.
            stdin: Open a pipe to the process's stdin.
            tail_lines: Number of output lines kept for diagnostics.
        """
        self._program = program
        self._args = list(args or [])
        self._label = label
        self._ready_re = re.compile(ready_pattern) if ready_pattern else None
        self._echo = echo
        self._stdin = stdin
        self._tail: deque[str] = deque(maxlen=tail_lines)
        self._line_listeners: list[Callable[[str], None]] = []
        self._exit_listeners: list[Callable[[int | None], None]] = []
        self._process: asyncio.subprocess.Process | None = None
        self._reader: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[None] | None = None

    @property
    def label(self) -> str:
        return self._label

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def output_tail(self) -> list[str]:
        return list(self._tail)

    def on_line(self, callback: Callable[[str], None]) -> None:
        self._line_listeners.append(callback)

    def on_exit(self, callback: Callable[[int | None], None]) -> None:
        self._exit_listeners.append(callback)

    async def start(self, timeout: float | None = 10.0) -> None:
        """Launch the process and wait for its ready signal.

        Raises:
            BootFailed: The program is missing, exits before signalling
                ready, or stays silent past ``timeout``.
        """
        command = " ".join([self._program, *self._args])
        log.info("Booting %s: %s", self._label, command)

        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        try:
            self._process = await asyncio.create_subprocess_exec(
                self._program,
                *self._args,
                stdin=asyncio.subprocess.PIPE if self._stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            raise BootFailed(self._label, f"program not found: {self._program}") from None
        except PermissionError:
            raise BootFailed(self._label, f"permission denied: {self._program}") from None
        except OSError as e:
            raise BootFailed(self._label, f"OS error: {e}") from e

        if self._ready_re is None:
            self._ready.set_result(None)
        self._reader = asyncio.create_task(self._read_output())

        try:
            if timeout is not None:
                await asyncio.wait_for(asyncio.shield(self._ready), timeout)
            else:
                await self._ready
        except asyncio.TimeoutError:
            self._ready.cancel()
            await self.stop()
            raise BootFailed(
                self._label, f"no ready signal within {timeout}s", self.output_tail
            ) from None
        except BootFailed:
            await self.stop()
            raise

        log.info("%s ready (pid %s)", self._label.capitalize(), self._process.pid)

    async def _read_output(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            raw = await stdout.readline()
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            self._tail.append(line)
            if self._echo:
                log.log(VERBOSE, "[%s] %s", self._label, line)
            if self._ready is not None and not self._ready.done():
                if self._ready_re is not None and self._ready_re.search(line):
                    self._ready.set_result(None)
            for callback in list(self._line_listeners):
                try:
                    callback(line)
                except Exception:
                    log.exception("Output listener failed on %s line", self._label)

        returncode = await self._process.wait()
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(
                BootFailed(self._label, f"exited with code {returncode}", self.output_tail)
            )
        log.info("%s exited with code %s", self._label.capitalize(), returncode)
        for exit_callback in list(self._exit_listeners):
            try:
                exit_callback(returncode)
            except Exception:
                log.exception("Exit listener failed for %s", self._label)

    def write(self, text: str) -> None:
        """Write ``text`` to the process's stdin.

        Raises:
            RuntimeError: The process was started without stdin or has exited.
        """
        if self._process is None or self._process.stdin is None or not self.running:
            raise RuntimeError(f"{self._label} stdin is not available")
        self._process.stdin.write(text.encode("utf-8"))

    async def stop(self, timeout: float = 3.0) -> None:
        """Terminate the process, killing it if it does not exit in time."""
        process = self._process
        if process is None:
            return
        if process.returncode is None:
            try:
                process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout)
                except asyncio.TimeoutError:
                    process.kill()
                    await process.wait()
            except ProcessLookupError:
                pass  # Process already gone
        if self._reader is not None:
            try:
                await asyncio.wait_for(self._reader, timeout)
            except asyncio.TimeoutError:
                self._reader.cancel()
