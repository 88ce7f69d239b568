"""Tests for the sclang interpreter handle."""

from __future__ import annotations

import asyncio
import re
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from dryadic.config.schema import InterpreterOptions
from dryadic.errors import BootFailed, EngineUnavailable, InterpretError
from dryadic.targets.boot import boot_interpreter
from dryadic.targets.interpreter import PRELUDE, Interpreter, wrap_request


class FakeProcess:
    """EngineProcess stand-in replying to requests through a script."""

    def __init__(self, script=None):
        self.written: list[str] = []
        self.script = script or (lambda request, code: [])
        self.running = True
        self._on_line = []
        self._on_exit = []
        self.stop = AsyncMock()

    def on_line(self, callback):
        self._on_line.append(callback)

    def on_exit(self, callback):
        self._on_exit.append(callback)

    def write(self, text):
        if not self.running:
            raise RuntimeError("interpreter stdin is not available")
        self.written.append(text)
        match = re.search(r"DRYADIC:ok:(\d+):", text)
        if match:
            loop = asyncio.get_running_loop()
            for line in self.script(int(match.group(1)), text):
                loop.call_soon(self.emit, line)

    def emit(self, line):
        for callback in self._on_line:
            callback(line)

    def exit(self, code):
        self.running = False
        for callback in self._on_exit:
            callback(code)


class TestWrapRequest:
    def test_marks_result_and_error(self):
        code = wrap_request(7, "1 + 1")
        assert "{ 1 + 1 }.value" in code
        assert '"DRYADIC:ok:7:"' in code
        assert '"DRYADIC:error:7:"' in code


class TestInterpreter:
    """Tests for Interpreter."""

    @pytest.mark.asyncio
    async def test_prepare_writes_prelude(self):
        process = FakeProcess()
        Interpreter(process).prepare()
        assert process.written == [PRELUDE + "\x0c"]

    @pytest.mark.asyncio
    async def test_result_is_json_decoded(self):
        process = FakeProcess(lambda req, code: [f'DRYADIC:ok:{req}:{{"bytes":[1,2],"name":"saw"}}'])
        lang = Interpreter(process)
        assert await lang.interpret("SynthDef(...)") == {"bytes": [1, 2], "name": "saw"}
        assert process.written[0].endswith("\x0c")

    @pytest.mark.asyncio
    async def test_unrelated_output_is_ignored(self):
        process = FakeProcess(lambda req, code: ["compiling class library...", f"DRYADIC:ok:{req}:3"])
        assert await Interpreter(process).interpret("1 + 2") == 3

    @pytest.mark.asyncio
    async def test_runtime_error(self):
        process = FakeProcess(lambda req, code: [f'DRYADIC:error:{req}:"Message \'foo\' not understood."'])
        with pytest.raises(InterpretError, match="not understood") as exc_info:
            await Interpreter(process).interpret("1.foo")
        assert exc_info.value.code == "1.foo"

    @pytest.mark.asyncio
    async def test_parse_error_fails_oldest_request(self):
        process = FakeProcess(lambda req, code: ["ERROR: syntax error, unexpected $end"])
        with pytest.raises(InterpretError, match="syntax error"):
            await Interpreter(process).interpret("{ 1 +")

    @pytest.mark.asyncio
    async def test_undecodable_result(self):
        process = FakeProcess(lambda req, code: [f"DRYADIC:ok:{req}:{{not json"])
        with pytest.raises(InterpretError, match="undecodable"):
            await Interpreter(process).interpret("x")

    @pytest.mark.asyncio
    async def test_concurrent_requests(self):
        process = FakeProcess(lambda req, code: [f"DRYADIC:ok:{req}:{req * 10}"])
        lang = Interpreter(process)
        assert await asyncio.gather(lang.interpret("a"), lang.interpret("b")) == [10, 20]

    @pytest.mark.asyncio
    async def test_timeout(self):
        lang = Interpreter(FakeProcess(), options=InterpreterOptions(interpret_timeout=0.01))
        with pytest.raises(asyncio.TimeoutError):
            await lang.interpret("loop { }")

    @pytest.mark.asyncio
    async def test_exit_fails_pending_and_later_requests(self):
        process = FakeProcess()
        lang = Interpreter(process)
        task = asyncio.ensure_future(lang.interpret("1"))
        await asyncio.sleep(0)
        process.exit(1)
        with pytest.raises(EngineUnavailable, match="exited with code 1"):
            await task
        with pytest.raises(EngineUnavailable):
            await lang.interpret("2")
        assert lang.running is False

    @pytest.mark.asyncio
    async def test_quit(self):
        process = FakeProcess()
        lang = Interpreter(process)
        await lang.quit()
        assert process.written[-1] == "0.exit;\x0c"
        process.stop.assert_awaited_once()
        assert lang.running is False


class TestBootInterpreter:
    """Tests for boot_interpreter."""

    @pytest.mark.asyncio
    async def test_boot(self):
        process = FakeProcess()
        process.start = AsyncMock()
        options = InterpreterOptions(program="/opt/sclang")
        with patch("dryadic.targets.boot.EngineProcess", return_value=process) as cls:
            lang = await boot_interpreter(options)
        assert cls.call_args.args == ("/opt/sclang", ["-i", "dryadic"])
        assert cls.call_args.kwargs["stdin"] is True
        assert process.written == [PRELUDE + "\x0c"]
        assert lang.running

    @pytest.mark.asyncio
    async def test_prelude_failure(self):
        process = FakeProcess()
        process.start = AsyncMock()
        process.running = False
        process.output_tail = ["sclang: cannot open display"]
        with patch("dryadic.targets.boot.EngineProcess", return_value=process):
            with pytest.raises(BootFailed) as exc_info:
                await boot_interpreter(InterpreterOptions())
        assert exc_info.value.output == ["sclang: cannot open display"]
        process.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_failure_propagates(self):
        process = MagicMock()
        process.start = AsyncMock(side_effect=BootFailed("interpreter", "program not found: sclang"))
        with patch("dryadic.targets.boot.EngineProcess", return_value=process):
            with pytest.raises(BootFailed, match="program not found"):
                await boot_interpreter(InterpreterOptions())
