"""Error taxonomy for spawn trees.

Every failure a dryad can surface derives from DryadError. Abandoning a
subtree is not an error: it is ordinary asyncio cancellation and shows up
as asyncio.CancelledError.
"""

from __future__ import annotations

from typing import Any


class DryadError(Exception):
    """Base class for spawn-tree failures.

    Attributes:
        stage: The spawn stage the error originated in ("def", "args",
            "send", "confirm"), or None when raised outside a spawn.
    """

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage


class ResolutionFailed(DryadError):
    """A dynamic value's callable raised or its awaitable rejected."""

    def __init__(self, label: str, cause: BaseException) -> None:
        super().__init__(f"Failed to resolve {label!r}: {cause}")
        self.label = label
        self.cause = cause


class SpawnFailed(DryadError):
    """An unexpected exception interrupted a spawn at a given stage."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"Spawn failed during {stage}: {cause}", stage=stage)
        self.cause = cause


class BootFailed(DryadError):
    """A server or interpreter process failed to start."""

    def __init__(self, target: str, reason: str, output: list[str] | tuple[str, ...] = ()) -> None:
        super().__init__(f"Failed to boot {target}: {reason}")
        self.target = target
        self.reason = reason
        self.output = list(output)


class InterpretError(DryadError):
    """The interpreter reported an error while evaluating code."""

    def __init__(self, error: str, code: str) -> None:
        super().__init__(f"Interpreter error: {error}")
        self.error = error
        self.code = code


class CompileFailed(DryadError):
    """A SynthDef could not be compiled by the interpreter."""

    def __init__(self, def_name: str, error: Any, source: str) -> None:
        super().__init__(f"Failed to compile SynthDef '{def_name}': {error}")
        self.def_name = def_name
        self.error = error
        self.source = source


class CommandFailed(DryadError):
    """The engine answered a command with /fail."""

    def __init__(self, command: str, error: str) -> None:
        super().__init__(f"{command} failed: {error}")
        self.command = command
        self.error = error


class EngineUnavailable(DryadError):
    """The target engine is missing, quit, or disconnected."""

    def __init__(self, target: str, reason: str) -> None:
        super().__init__(f"{target} unavailable: {reason}")
        self.target = target
        self.reason = reason


class ConfirmationTimeout(DryadError):
    """No running confirmation arrived within the configured deadline."""

    def __init__(self, target: str, node_id: int, timeout: float) -> None:
        super().__init__(f"Node {node_id} on {target} not confirmed within {timeout}s")
        self.target = target
        self.node_id = node_id
        self.timeout = timeout
