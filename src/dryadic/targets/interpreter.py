"""sclang interpreter handle.

Code is written to the interpreter's stdin and executed with a form feed.
Each request is wrapped so that its value (or its error) is posted back
as a single marker line ``DRYADIC:<status>:<request>:<json>``, encoded
by a small JSON helper defined once at boot.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import re
from collections import OrderedDict
from typing import TYPE_CHECKING, Any

from dryadic.config.schema import InterpreterOptions
from dryadic.errors import EngineUnavailable, InterpretError
from dryadic.logging import TRACE, get_logger

if TYPE_CHECKING:
    from dryadic.targets.process import EngineProcess

log = get_logger("interpreter")

_EXECUTE = "\x0c"

_MARKER = re.compile(r"^DRYADIC:(ok|error):(\d+):(.*)$")

PRELUDE = r"""
~dryadicString = { |str|
	var out = "\"";
	str.asString.do({ |c|
		out = out ++ case
			{ c == $" } { "\\\"" }
			{ c == $\\ } { "\\\\" }
			{ c == $\n } { "\\n" }
			{ c == $\t } { "\\t" }
			{ c.ascii < 32 } { "" }
			{ c.asString };
	});
	out ++ "\""
};
~dryadicJSON = { |obj|
	case
		{ obj.isNil } { "null" }
		{ obj === true } { "true" }
		{ obj === false } { "false" }
		{ obj.isKindOf(Number) } { if(obj.isNaN or: { obj.abs == inf }) { "null" } { obj.asString } }
		{ obj.isString or: { obj.isKindOf(Symbol) } } { ~dryadicString.value(obj) }
		{ obj.isKindOf(Dictionary) } {
			"{" ++ obj.asAssociations.collect({ |a|
				~dryadicString.value(a.key) ++ ":" ++ ~dryadicJSON.value(a.value)
			}).join(",") ++ "}"
		}
		{ obj.isKindOf(SequenceableCollection) } {
			"[" ++ obj.collect({ |x| ~dryadicJSON.value(x) }).join(",") ++ "]"
		}
		{ ~dryadicString.value(obj.asString) }
};
"""


def wrap_request(request: int, code: str) -> str:
    """Wrap ``code`` so its value is posted back as a marker line."""
    return (
        "{\n"
        f"\tvar result = {{ {code} }}.value;\n"
        f'\t("DRYADIC:ok:{request}:" ++ ~dryadicJSON.value(result)).postln;\n'
        "}.try({ |err|\n"
        f'\t("DRYADIC:error:{request}:" ++ ~dryadicJSON.value(err.errorString)).postln;\n'
        "});\n"
    )


class Interpreter:
    """A booted sclang process evaluating code on request."""

    def __init__(self, process: EngineProcess, *, options: InterpreterOptions | None = None) -> None:
        self._process = process
        self.options = options or InterpreterOptions()
        self._serial = itertools.count(1)
        self._pending: OrderedDict[int, tuple[asyncio.Future[Any], str]] = OrderedDict()
        self._unavailable: str | None = None

        process.on_line(self._on_line)
        process.on_exit(self._on_exit)

    @property
    def running(self) -> bool:
        return self._unavailable is None

    def prepare(self) -> None:
        """Define the JSON helpers the request wrapper relies on."""
        self._process.write(PRELUDE + _EXECUTE)

    async def interpret(self, code: str) -> Any:
        """Evaluate ``code`` and return its JSON-decoded value.

        Raises:
            InterpretError: sclang reported a syntax or runtime error.
            EngineUnavailable: The interpreter is not running.
            asyncio.TimeoutError: interpret_timeout elapsed.
        """
        if self._unavailable is not None:
            raise EngineUnavailable("interpreter", self._unavailable)

        request = next(self._serial)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request] = (future, code)
        try:
            log.log(TRACE, "interpret #%d: %s", request, code)
            self._process.write(wrap_request(request, code) + _EXECUTE)
            timeout = self.options.interpret_timeout
            if timeout is None:
                return await future
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(request, None)

    def _on_line(self, line: str) -> None:
        match = _MARKER.match(line)
        if match:
            status, request, payload = match.group(1), int(match.group(2)), match.group(3)
            entry = self._pending.get(request)
            if entry is None or entry[0].done():
                return
            future, code = entry
            try:
                value = json.loads(payload)
            except ValueError as e:
                future.set_exception(InterpretError(f"undecodable result: {e}", code))
                return
            if status == "ok":
                future.set_result(value)
            else:
                future.set_exception(InterpretError(str(value), code))
            return

        if line.startswith("ERROR:"):
            # Parse errors never reach the wrapper; blame the oldest request
            for future, code in self._pending.values():
                if not future.done():
                    future.set_exception(InterpretError(line[len("ERROR:"):].strip(), code))
                    break

    def _on_exit(self, returncode: int | None) -> None:
        self._unavailable = f"process exited with code {returncode}"
        for future, _ in self._pending.values():
            if not future.done():
                future.set_exception(EngineUnavailable("interpreter", self._unavailable))

    async def quit(self) -> None:
        if self._unavailable is None:
            try:
                self._process.write("0.exit;" + _EXECUTE)
            except RuntimeError as e:
                log.debug("Could not ask interpreter to exit: %s", e)
        await self._process.stop()
        self._unavailable = self._unavailable or "quit"
