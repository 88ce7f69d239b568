"""Dryadic: spawn trees for a remote audio synthesis engine."""

__version__ = "0.1.0"

# Public API
from dryadic.config import Config, get_config, load_config
from dryadic.context import ROOT_GROUP, Context, IdScope
from dryadic.dryads import (
    Dryad,
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
    BootFailed,
    CommandFailed,
    CompileFailed,
    ConfirmationTimeout,
    DryadError,
    EngineUnavailable,
    InterpretError,
    ResolutionFailed,
    SpawnFailed,
)
from dryadic.lifecycle import NodeWatcher, allocate_id, await_running
from dryadic.player import Playing, play, spawn
from dryadic.resolver import gather_all, resolve_mapping, resolve_one, resolve_sequence
from dryadic.store import ServerState, StateKeys, Store
from dryadic.streams import Observer, Source, Subject, Subscription, from_iterable

__all__ = [
    # Running trees
    "play",
    "spawn",
    "Playing",
    # Primitives
    "Dryad",
    "synth",
    "group",
    "stream",
    "synth_stream",
    "interpreter",
    "require_interpreter",
    "server",
    "require_server",
    "compile_synth_def",
    "put_synth_def",
    # Context
    "Context",
    "IdScope",
    "ROOT_GROUP",
    # Resolution
    "resolve_one",
    "resolve_mapping",
    "resolve_sequence",
    "gather_all",
    # Lifecycle
    "NodeWatcher",
    "allocate_id",
    "await_running",
    # State
    "Store",
    "ServerState",
    "StateKeys",
    # Streams
    "Source",
    "Subject",
    "Observer",
    "Subscription",
    "from_iterable",
    # Config
    "Config",
    "load_config",
    "get_config",
    # Errors
    "DryadError",
    "ResolutionFailed",
    "SpawnFailed",
    "BootFailed",
    "InterpretError",
    "CompileFailed",
    "CommandFailed",
    "EngineUnavailable",
    "ConfirmationTimeout",
]
