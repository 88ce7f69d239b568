"""Tests for the composition primitives."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock, patch

import pytest

from dryadic.context import Context
from dryadic.dryads import (
    compile_synth_def,
    group,
    interpreter,
    put_synth_def,
    require_interpreter,
    require_server,
    server,
    stream,
    synth,
    synth_stream,
)
from dryadic.errors import (
    CommandFailed,
    CompileFailed,
    ConfirmationTimeout,
    EngineUnavailable,
    InterpretError,
    ResolutionFailed,
)
from dryadic.messages import Message
from dryadic.player import play, spawn
from dryadic.streams import Subject, from_iterable
from dryadic.targets.loopback import LoopbackTransport
from dryadic.targets.server import Server
from tests.utils import LOOPBACK, blocker, capture, until


class FakeInterpreter:
    """Interpreter stand-in answering every request with one reply."""

    def __init__(self, reply=None, error: Exception | None = None):
        self.interpret = AsyncMock(return_value=reply, side_effect=error)
        self.quit = AsyncMock()


def compiled(name: str = "saw") -> dict:
    return {
        "synthDesc": {"name": name, "controls": [{"name": "freq", "defaultValue": 440, "rate": "control"}]},
        "bytes": [83, 67, 103, 102, -1],
    }


class TestSynth:
    """Tests for synth()."""

    @pytest.mark.asyncio
    async def test_emits_s_new_and_resolves_with_id(self, context, loopback):
        node_id = await synth("sine", {"freq": 440})(context)

        assert node_id == 1000
        assert loopback.sent == [Message("/s_new", ("sine", 1000, 1, 0, "freq", 440))]

    @pytest.mark.asyncio
    async def test_waits_for_confirmation(self, context, loopback):
        loopback.auto_confirm = False
        task = asyncio.ensure_future(synth("sine")(context))
        await until(lambda: len(loopback.sent) == 1)
        await asyncio.sleep(0)
        assert not task.done()

        loopback.confirm(1000)
        assert await task == 1000

    @pytest.mark.asyncio
    async def test_dynamic_args_see_the_new_node(self, context, loopback):
        await synth("sine", {"out": lambda ctx: ctx.node_id, "amp": asyncio.sleep(0, 0.2)})(context)
        assert loopback.sent[0].args == ("sine", 1000, 1, 0, "out", 1000, "amp", 0.2)

    @pytest.mark.asyncio
    async def test_dynamic_def_name(self, context, loopback):
        await synth(lambda ctx: "saw")(context)
        assert loopback.sent[0].args[0] == "saw"

    @pytest.mark.asyncio
    async def test_records_node_state(self, context, server):
        node_id = await synth("sine")(context)
        assert server.state.node_state(node_id) == {"synth_def": "sine"}

    @pytest.mark.asyncio
    async def test_parent_context_unchanged(self, context):
        await synth("sine")(context)
        assert context.node_id is None
        assert context.group == 0

    @pytest.mark.asyncio
    async def test_without_server(self):
        with pytest.raises(EngineUnavailable) as exc_info:
            await synth("sine")(Context())
        assert exc_info.value.stage == "def"

    @pytest.mark.asyncio
    async def test_arg_failure_is_tagged(self, context, loopback):
        def broken(ctx):
            raise ZeroDivisionError("no")

        with pytest.raises(ResolutionFailed) as exc_info:
            await synth("sine", {"freq": broken})(context)
        assert exc_info.value.stage == "args"
        assert exc_info.value.label == "freq"
        assert loopback.sent == []

    @pytest.mark.asyncio
    async def test_send_failure_is_tagged(self, context, loopback, server):
        loopback.drop()
        with pytest.raises(EngineUnavailable) as exc_info:
            await synth("sine")(context)
        assert exc_info.value.stage == "send"
        assert len(server.watcher) == 0

    @pytest.mark.asyncio
    async def test_confirm_timeout(self, store):
        loopback = LoopbackTransport(auto_confirm=False)
        target = Server(loopback, store=store)
        target.confirm_timeout = 0.01
        ctx = Context(store=store).with_server(target)

        with pytest.raises(ConfirmationTimeout) as exc_info:
            await synth("sine")(ctx)
        assert exc_info.value.stage == "confirm"
        assert len(target.watcher) == 0

    @pytest.mark.asyncio
    async def test_abandoned_synth_does_not_fail_the_tree(self, store):
        loopback = LoopbackTransport(auto_confirm=False)
        target = Server(loopback, store=store)
        ctx = Context(store=store).with_server(target)
        seen: list[Context] = []

        task = asyncio.ensure_future(play([synth("a"), capture(seen, "kept")], ctx))
        await until(lambda: len(target.watcher) == 1 and len(seen) == 1)

        assert target.watcher.abandon("0") == 1

        assert await task == [None, "kept"]
        assert len(target.watcher) == 0

    @pytest.mark.asyncio
    async def test_disconnect_while_waiting(self, context, loopback):
        loopback.auto_confirm = False
        task = asyncio.ensure_future(synth("sine")(context))
        await until(lambda: len(loopback.sent) == 1)
        loopback.drop("engine crashed")
        with pytest.raises(EngineUnavailable, match="engine crashed") as exc_info:
            await task
        assert exc_info.value.stage == "confirm"


class TestGroup:
    """Tests for group()."""

    @pytest.mark.asyncio
    async def test_children_spawn_inside_the_group(self, context, loopback):
        result = await group([synth("a"), synth("b")])(context)

        assert result == [1001, 1002]
        assert loopback.sent[0] == Message("/g_new", (1000, 1, 0))
        children = loopback.sent_to("/s_new")
        assert sorted(m.args[0] for m in children) == ["a", "b"]
        assert all(m.args[3] == 1000 for m in children)

    @pytest.mark.asyncio
    async def test_children_wait_for_group_confirmation(self, context, loopback):
        loopback.auto_confirm = False
        task = asyncio.ensure_future(group([synth("a"), synth("b")])(context))
        await until(lambda: len(loopback.sent) == 1)
        for _ in range(5):
            await asyncio.sleep(0)
        assert [m.address for m in loopback.sent] == ["/g_new"]

        loopback.confirm(1000, is_group=True)
        await until(lambda: len(loopback.sent) == 3)
        loopback.confirm(1001)
        loopback.confirm(1002)
        assert await task == [1001, 1002]

    @pytest.mark.asyncio
    async def test_nested_groups(self, context, loopback):
        result = await group([group([synth("a")]), synth("b")])(context)
        assert result == [[1003], 1002]
        inner = loopback.sent_to("/g_new")[1]
        assert inner.args[2] == 1000

    @pytest.mark.asyncio
    async def test_children_see_the_group(self, context):
        seen: list[Context] = []
        await group([capture(seen)])(context)
        assert seen[0].group == 1000
        assert seen[0].node_id == 1000
        assert seen[0].path == "0"

    @pytest.mark.asyncio
    async def test_records_group_state(self, context, server):
        await group([])(context)
        assert server.state.node_state(1000) == {"group": True}

    @pytest.mark.asyncio
    async def test_teardown_before_children_confirm(self, context, loopback, server):
        loopback.auto_confirm = False
        baseline = len(server.watcher)
        playing = spawn(group([synth("a"), synth("b")]), context)

        await until(lambda: len(loopback.sent) == 1)
        loopback.confirm(1000, is_group=True)
        await until(lambda: len(server.watcher) == 2)

        await playing.stop()
        assert len(server.watcher) == baseline

    @pytest.mark.asyncio
    async def test_child_failure_cancels_siblings(self, context, loopback):
        seen: list[Context] = []

        def broken(ctx):
            raise RuntimeError("bad")

        with pytest.raises(ResolutionFailed):
            await group([blocker(seen), synth("a", {"freq": broken})])(context)
        assert len(seen) == 1


class TestCompileSynthDef:
    """Tests for compile_synth_def()."""

    @pytest.mark.asyncio
    async def test_failing_interpreter(self, context):
        lang = FakeInterpreter(error=InterpretError("syntax error", "..."))
        ctx = context.with_interpreter(lang)

        with pytest.raises(CompileFailed) as exc_info:
            await compile_synth_def("saw", "{SinOsc.ar(440)}")(ctx)
        assert exc_info.value.def_name == "saw"
        assert exc_info.value.source == "{SinOsc.ar(440)}"
        assert exc_info.value.error == "syntax error"

    @pytest.mark.asyncio
    async def test_malformed_reply(self, context):
        ctx = context.with_interpreter(FakeInterpreter(reply="not a def"))
        with pytest.raises(CompileFailed):
            await compile_synth_def("saw", "{}")(ctx)

    @pytest.mark.asyncio
    async def test_loads_compiled_bytes(self, context, loopback, server):
        lang = FakeInterpreter(reply=compiled())
        ctx = context.with_interpreter(lang)

        assert await compile_synth_def("saw", "{ |freq=440| Saw.ar(freq) }")(ctx) == "saw"

        code = lang.interpret.await_args.args[0]
        assert 'SynthDef("saw", { |freq=440| Saw.ar(freq) })' in code
        assert loopback.sent == [Message("/d_recv", (b"SCgf\xff",))]
        assert server.state.synth_def("saw")["name"] == "saw"

    @pytest.mark.asyncio
    async def test_as_synth_def_name(self, context, loopback):
        ctx = context.with_interpreter(FakeInterpreter(reply=compiled()))
        node_id = await synth(compile_synth_def("saw", "{}"), {"freq": 220})(ctx)

        assert [m.address for m in loopback.sent] == ["/d_recv", "/s_new"]
        assert loopback.sent[1].args == ("saw", node_id, 1, 0, "freq", 220)

    @pytest.mark.asyncio
    async def test_load_failure(self, context, loopback):
        loopback.fail_next("/d_recv", "corrupt def")
        ctx = context.with_interpreter(FakeInterpreter(reply=compiled()))
        with pytest.raises(CommandFailed, match="corrupt def"):
            await compile_synth_def("saw", "{}")(ctx)

    @pytest.mark.asyncio
    async def test_interpreter_timeout(self, context):
        ctx = context.with_interpreter(FakeInterpreter(error=asyncio.TimeoutError()))
        with pytest.raises(CompileFailed, match="did not answer"):
            await compile_synth_def("saw", "{}")(ctx)

    @pytest.mark.asyncio
    async def test_load_timeout(self, context, loopback):
        loopback._replies = lambda message: []
        server = context.server
        server.options.response_timeout = 0.01
        ctx = context.with_interpreter(FakeInterpreter(reply=compiled()))
        with pytest.raises(CommandFailed) as exc_info:
            await compile_synth_def("saw", "{}")(ctx)
        assert exc_info.value.command == "/d_recv"

    @pytest.mark.asyncio
    async def test_put_synth_def(self, context, server):
        put_synth_def(context, "pad", {"name": "pad"})
        assert server.state.synth_defs() == {"pad": {"name": "pad"}}


class TestServer:
    """Tests for server() and require_server()."""

    @pytest.mark.asyncio
    async def test_runs_children_on_a_fresh_server(self):
        seen: list[Context] = []
        result = await play(server([synth("sine"), capture(seen, "x")], LOOPBACK))

        assert result == [1000, "x"]
        assert seen[0].server is not None
        assert seen[0].group == 0
        assert seen[0].path == "1"

    @pytest.mark.asyncio
    async def test_always_boots(self, context):
        seen: list[Context] = []
        await server([capture(seen)], LOOPBACK)(context)
        assert seen[0].server is not context.server

    @pytest.mark.asyncio
    async def test_quits_when_cancelled(self):
        seen: list[Context] = []
        playing = spawn(server([blocker(seen)], LOOPBACK))
        await until(lambda: len(seen) == 1)

        await playing.stop()

        assert seen[0].server.running is False

    @pytest.mark.asyncio
    async def test_quits_when_a_child_fails(self):
        seen: list[Context] = []

        async def broken(context: Context) -> None:
            seen.append(context)
            raise RuntimeError("boom")

        with pytest.raises(ResolutionFailed, match="boom"):
            await play(server([broken], LOOPBACK))

        assert seen[0].server.running is False

    @pytest.mark.asyncio
    async def test_completed_tree_leaves_server_running(self):
        seen: list[Context] = []
        await play(server([capture(seen)], LOOPBACK))
        assert seen[0].server.running is True

    @pytest.mark.asyncio
    async def test_require_server_reuses_context_server(self, context):
        with patch("dryadic.dryads.boot_server", new=AsyncMock()) as boot:
            assert await require_server(synth("sine"))(context) == 1000
        boot.assert_not_called()

    @pytest.mark.asyncio
    async def test_require_server_boots_when_missing(self):
        seen: list[Context] = []
        result = await play(require_server(capture(seen, 42), LOOPBACK))
        assert result == 42
        assert seen[0].server is not None


class TestInterpreter:
    """Tests for interpreter() and require_interpreter()."""

    @pytest.mark.asyncio
    async def test_children_see_the_interpreter(self):
        lang = FakeInterpreter()
        seen: list[Context] = []
        with patch("dryadic.dryads.boot_interpreter", new=AsyncMock(return_value=lang)):
            result = await play(interpreter([capture(seen, 1), capture(seen, 2)]))
        assert result == [1, 2]
        assert all(ctx.interpreter is lang for ctx in seen)

    @pytest.mark.asyncio
    async def test_options_layer_over_defaults(self):
        boot = AsyncMock(return_value=FakeInterpreter())
        with patch("dryadic.dryads.boot_interpreter", new=boot):
            await play(interpreter([], {"program": "/opt/sclang"}))
        options = boot.await_args.args[0]
        assert options.program == "/opt/sclang"
        assert options.ready_pattern == "Welcome to SuperCollider"

    @pytest.mark.asyncio
    async def test_quits_when_cancelled(self):
        lang = FakeInterpreter()
        seen: list[Context] = []
        with patch("dryadic.dryads.boot_interpreter", new=AsyncMock(return_value=lang)):
            playing = spawn(interpreter([blocker(seen)]))
            await until(lambda: len(seen) == 1)
            await playing.stop()
        lang.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_quits_when_a_child_fails(self):
        lang = FakeInterpreter()

        async def broken(context: Context) -> None:
            raise RuntimeError("boom")

        with patch("dryadic.dryads.boot_interpreter", new=AsyncMock(return_value=lang)):
            with pytest.raises(ResolutionFailed):
                await play(interpreter([broken]))
        lang.quit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_require_interpreter_reuses_context_interpreter(self):
        lang = FakeInterpreter()
        seen: list[Context] = []
        with patch("dryadic.dryads.boot_interpreter", new=AsyncMock()) as boot:
            await require_interpreter(capture(seen))(Context().with_interpreter(lang))
        boot.assert_not_called()
        assert seen[0].interpreter is lang


class TestStream:
    """Tests for stream() and synth_stream()."""

    @pytest.mark.asyncio
    async def test_spawns_each_item(self, context, loopback):
        result = await stream(from_iterable([synth("a"), synth("b")]))(context)
        assert result is None
        assert [m.args[0] for m in loopback.sent_to("/s_new")] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_children_are_labelled_in_order(self, context):
        seen: list[Context] = []
        await stream(from_iterable([capture(seen), capture(seen)]))(context.child("s"))
        assert [ctx.path for ctx in seen] == ["s.0", "s.1"]

    @pytest.mark.asyncio
    async def test_waits_for_in_flight_children(self, context, loopback):
        loopback.auto_confirm = False
        source = Subject()
        task = asyncio.ensure_future(stream(source)(context))
        await asyncio.sleep(0)
        source.push(synth("a"))
        source.complete()
        await until(lambda: len(loopback.sent) == 1)
        await asyncio.sleep(0)
        assert not task.done()

        loopback.confirm(1000)
        assert await task is None

    @pytest.mark.asyncio
    async def test_source_error_ends_the_stream(self, context, caplog):
        source = Subject()
        task = asyncio.ensure_future(stream(source)(context))
        await asyncio.sleep(0)
        with caplog.at_level(logging.ERROR, logger="dryadic"):
            source.error(RuntimeError("source broke"))
            assert await task is None
        assert "source broke" in caplog.text

    @pytest.mark.asyncio
    async def test_source_error_fails_fast(self, context):
        source = Subject()
        task = asyncio.ensure_future(stream(source, fail_fast=True)(context))
        await asyncio.sleep(0)
        source.error(RuntimeError("source broke"))
        with pytest.raises(RuntimeError, match="source broke"):
            await task

    @pytest.mark.asyncio
    async def test_child_failure_is_logged(self, context, loopback, caplog):
        def broken(ctx):
            raise ValueError("bad freq")

        items = [synth("a", {"freq": broken}), synth("b")]
        with caplog.at_level(logging.ERROR, logger="dryadic"):
            assert await stream(from_iterable(items))(context) is None
        assert [m.args[0] for m in loopback.sent_to("/s_new")] == ["b"]
        assert "bad freq" in caplog.text

    @pytest.mark.asyncio
    async def test_child_failure_fails_fast(self, context):
        def broken(ctx):
            raise ValueError("bad freq")

        with pytest.raises(ResolutionFailed):
            await stream(from_iterable([synth("a", {"freq": broken})]), fail_fast=True)(context)

    @pytest.mark.asyncio
    async def test_cancel_disposes_subscription(self, context, loopback):
        loopback.auto_confirm = False
        source = Subject()
        playing = spawn(stream(source), context)
        await asyncio.sleep(0)
        source.push(synth("a"))
        await until(lambda: len(loopback.sent) == 1)

        await playing.stop()
        source.push(synth("b"))
        await asyncio.sleep(0)

        assert len(loopback.sent) == 1
        assert len(context.server.watcher) == 0

    @pytest.mark.asyncio
    async def test_synth_stream_merges_params(self, context, loopback):
        events = [
            {"args": {"freq": 220}},
            {"def_name": "saw", "args": {"amp": 0.5}},
        ]
        await synth_stream(from_iterable(events), {"def_name": "sine", "amp": 0.1})(context)

        sent = loopback.sent_to("/s_new")
        assert sent[0].args[0] == "sine"
        assert sent[0].args[4:] == ("amp", 0.1, "freq", 220)
        assert sent[1].args[0] == "saw"
        assert sent[1].args[4:] == ("amp", 0.5)

    @pytest.mark.asyncio
    async def test_synth_stream_without_def_name(self, context, loopback, caplog):
        with caplog.at_level(logging.ERROR, logger="dryadic"):
            await synth_stream(from_iterable([{"args": {"freq": 1}}]))(context)
        assert loopback.sent == []
        assert "no def_name" in caplog.text
