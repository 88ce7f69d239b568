"""Composition primitives for spawn trees.

A dryad is a callable taking a Context and returning an awaitable. Each
primitive below builds one: evaluating it forks the context, resolves its
dynamic arguments, sends a control message and waits for the engine to
confirm the new node before anything depending on it runs.

Example:
    tree = server([
        group([
            synth("sine", {"freq": 440}),
            synth("sine", {"freq": lambda ctx: 440 * 1.5}),
        ]),
    ], {"transport": "loopback", "program": None})
    group_ids = await play(tree)
"""

from __future__ import annotations

import asyncio
import itertools
import json
from collections.abc import Awaitable, Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from dryadic.config import get_config, interpreter_options, server_options
from dryadic.config.schema import InterpreterOptions, ServerOptions
from dryadic.context import Context
from dryadic.errors import CommandFailed, CompileFailed, DryadError, EngineUnavailable, SpawnFailed
from dryadic.lifecycle import allocate_id
from dryadic.logging import get_logger
from dryadic.messages import AddAction, def_recv, group_new, synth_new
from dryadic.resolver import resolve_mapping, resolve_one, resolve_sequence
from dryadic.streams import Observer, Source
from dryadic.targets.boot import boot_interpreter, boot_server
from dryadic.targets.protocol import ServerTarget

log = get_logger("dryads")

Dryad = Callable[[Context], Awaitable[Any]]
Options = Mapping[str, Any] | None


@contextmanager
def _stage(name: str) -> Iterator[None]:
    """Tag failures raised inside the block with the spawn stage."""
    try:
        yield
    except DryadError as e:
        if e.stage is None:
            e.stage = name
        raise
    except Exception as e:
        raise SpawnFailed(name, e) from e


def _target_server(context: Context) -> ServerTarget:
    if context.server is None:
        raise EngineUnavailable("server", "no target server in context; wrap the tree in server()")
    return context.server


async def _spawn(context: Context, node_id: int, message: Any) -> int:
    """Send a spawn message and wait for the node to run."""
    target = _target_server(context)
    with _stage("send"):
        confirmation = target.watcher.expect(context.path, node_id)
        try:
            target.send(message)
        except BaseException:
            target.watcher.release(node_id, confirmation)
            confirmation.cancel()
            raise
    with _stage("confirm"):
        return await target.watcher.confirmed(confirmation, node_id, target.confirm_timeout)


def synth(def_name: Any, args: Mapping[str, Any] | None = None) -> Dryad:
    """A dryad that spawns a synth and resolves with its node id.

    Args:
        def_name: SynthDef name, or a dynamic value resolving to one
            (for example compile_synth_def(...)).
        args: Control values by name. Each may be a dynamic value: a
            callable is called with the context and awaitables are awaited.

    Returns:
        Dryad resolving with the node id once the synth is running.
    """
    controls = dict(args or {})

    async def spawn_synth(parent: Context) -> int:
        context = parent.fork()
        with _stage("def"):
            target = _target_server(context)
            resolved_def = await resolve_one(def_name, context, "def")

        node_id = allocate_id(context)
        context = context.fork(node_id=node_id)

        with _stage("args"):
            resolved_args = await resolve_mapping(controls, context)

        message = synth_new(resolved_def, node_id, AddAction.TAIL, context.group, resolved_args)
        await _spawn(context, node_id, message)

        target.state.update_node_state(node_id, {"synth_def": resolved_def})
        return node_id

    return spawn_synth


def group(children: Iterable[Any]) -> Dryad:
    """A dryad that spawns a group, then its children inside it.

    Children are evaluated concurrently only after the group is running.

    Returns:
        Dryad resolving with the children's results in order.
    """
    members = list(children)

    async def spawn_group(parent: Context) -> list[Any]:
        context = parent.fork(new_group=True)
        with _stage("send"):
            target = _target_server(context)
        node_id = allocate_id(context)

        await _spawn(context, node_id, group_new(node_id, AddAction.TAIL, context.group))
        target.state.update_node_state(node_id, {"group": True})

        return await resolve_sequence(members, context.fork(node_id=node_id, group=node_id))

    return spawn_group


def _synth_def_code(def_name: str, source: str) -> str:
    return (
        f"var def = SynthDef({json.dumps(def_name)}, {source});\n"
        "(\n"
        "\tsynthDesc: (\n"
        "\t\tname: def.name.asString,\n"
        "\t\tcontrols: def.allControlNames.collect({ |c|\n"
        "\t\t\t(name: c.name, defaultValue: c.defaultValue, rate: c.rate)\n"
        "\t\t})\n"
        "\t),\n"
        "\tbytes: def.asBytes\n"
        ")"
    )


def put_synth_def(context: Context, def_name: str, synth_desc: Any) -> None:
    """Record a SynthDef description in the server's state.

    This marks the definition as compiled and sent to the server.
    """
    _target_server(context).state.put_synth_def(def_name, synth_desc)


def compile_synth_def(def_name: str, source: str) -> Dryad:
    """A dryad compiling a SynthDef from sclang source and loading it.

    Boots a server and an interpreter when the context lacks them.

    Args:
        def_name: Name to compile the definition under.
        source: Anything sclang accepts as a SynthDef graph function, such
            as ``"{ |freq=440| Out.ar(0, SinOsc.ar(freq)) }"``.

    Returns:
        Dryad resolving with ``def_name`` once the server has the definition.

    Raises:
        CompileFailed: The interpreter rejected the source or timed out.
        CommandFailed: The server refused the definition or never answered.
    """

    async def compiler(context: Context) -> str:
        if context.interpreter is None:
            raise EngineUnavailable("interpreter", "no target interpreter in context")
        try:
            result = await context.interpreter.interpret(_synth_def_code(def_name, source))
            synth_desc = result["synthDesc"]
            data = bytes(b & 0xFF for b in result["bytes"])
        except EngineUnavailable:
            raise
        except asyncio.TimeoutError as e:
            raise CompileFailed(def_name, "interpreter did not answer in time", source) from e
        except (DryadError, LookupError, TypeError, ValueError) as e:
            raise CompileFailed(def_name, getattr(e, "error", e), source) from e

        put_synth_def(context, def_name, synth_desc)
        try:
            await _target_server(context).call_and_response(def_recv(data))
        except asyncio.TimeoutError as e:
            raise CommandFailed("/d_recv", f"no reply loading SynthDef '{def_name}'") from e
        log.debug("Loaded SynthDef %s (%d bytes)", def_name, len(data))
        return def_name

    return require_server(require_interpreter(compiler))


def stream(source: Source, *, fail_fast: bool | None = None) -> Dryad:
    """A dryad spawning each dryad pushed by ``source`` as a child.

    Children are labelled "0", "1", ... in arrival order. A failed child is
    logged and the stream carries on. The stream ends once the source
    completes or errors and in-flight children have settled. Cancelling
    the stream disposes the subscription and cancels in-flight children.

    Args:
        source: Push source of dryads.
        fail_fast: Fail the stream on the first source or child error.
            Defaults to the ``stream.fail_fast`` config setting.
    """

    async def run_stream(context: Context) -> None:
        strict = get_config().stream.fail_fast if fail_fast is None else fail_fast
        finished: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        children: set[asyncio.Task[Any]] = set()
        labels = itertools.count()

        def child_done(task: asyncio.Task[Any]) -> None:
            children.discard(task)
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                log.error("Stream child failed at %s: %s", context.path or "<root>", exc)
                if strict and not finished.done():
                    finished.set_exception(exc)

        def on_item(dryad: Any) -> None:
            if finished.done():
                return
            task = asyncio.ensure_future(resolve_one(dryad, context, str(next(labels))))
            children.add(task)
            task.add_done_callback(child_done)

        def on_error(exc: BaseException) -> None:
            log.error("Stream source error at %s: %s", context.path or "<root>", exc)
            if not finished.done():
                if strict:
                    finished.set_exception(exc)
                else:
                    finished.set_result(None)

        def on_complete() -> None:
            if not finished.done():
                finished.set_result(None)

        subscription = source.subscribe(Observer(on_item, on_error, on_complete))
        try:
            await finished
            if children:
                settled = await asyncio.gather(*children, return_exceptions=True)
                if strict:
                    for outcome in settled:
                        if isinstance(outcome, Exception):
                            raise outcome
        finally:
            subscription.dispose()
            pending = [t for t in children if not t.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

    return run_stream


def synth_stream(source: Source, params: Mapping[str, Any] | None = None) -> Dryad:
    """A stream spawning one synth per event.

    Events are mappings with an optional ``def_name`` and ``args``:
    ``{"def_name": "saw", "args": {"freq": 440}}``. ``params`` holds the
    base ``def_name`` and any other keys as base args. Event args override
    base args and the event's def_name overrides the base one.
    """
    base = dict(params or {})
    base_def = base.pop("def_name", None)

    def to_synth(event: Mapping[str, Any]) -> Dryad:
        def_name = event.get("def_name") or base_def
        if def_name is None:
            raise ValueError(f"Event has no def_name and no default was given: {event!r}")
        return synth(def_name, {**base, **(event.get("args") or {})})

    return stream(source.map(to_synth))


def interpreter(children: Iterable[Any] = (), options: Options | InterpreterOptions = None) -> Dryad:
    """A dryad booting a new interpreter for its children.

    Always boots, ignoring any interpreter already in context. The
    interpreter is quit if the dryad fails or is cancelled.

    Returns:
        Dryad resolving with the children's results in order.
    """
    members = list(children)

    async def boot_and_run(context: Context) -> list[Any]:
        lang = await boot_interpreter(interpreter_options(options))
        try:
            return await resolve_sequence(members, context.with_interpreter(lang))
        except BaseException:
            await lang.quit()
            raise

    return boot_and_run


def require_interpreter(child: Any, options: Options | InterpreterOptions = None) -> Dryad:
    """Evaluate ``child`` with an interpreter, booting one if none is in context."""

    async def with_interpreter(context: Context) -> Any:
        if context.interpreter is None:
            resolved = await interpreter([child], options)(context)
            return resolved[0]
        return await resolve_one(child, context)

    return with_interpreter


def server(children: Iterable[Any] = (), options: Options | ServerOptions = None) -> Dryad:
    """A dryad booting a new server for its children.

    Always boots, ignoring any server already in context. Children start
    from the new server's root group. The server is quit if the dryad fails
    or is cancelled.

    Returns:
        Dryad resolving with the children's results in order.
    """
    members = list(children)

    async def boot_and_run(context: Context) -> list[Any]:
        booted = await boot_server(server_options(options), context.store)
        try:
            return await resolve_sequence(members, context.with_server(booted))
        except BaseException:
            await booted.quit()
            raise

    return boot_and_run


def require_server(child: Any, options: Options | ServerOptions = None) -> Dryad:
    """Evaluate ``child`` with a server, booting one if none is in context."""

    async def with_server(context: Context) -> Any:
        if context.server is None:
            resolved = await server([child], options)(context)
            return resolved[0]
        return await resolve_one(child, context)

    return with_server
