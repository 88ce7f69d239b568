"""Process-wide keyed state and its per-server view.

Writes are whole-value replacements: ``mutate`` computes a new value from
the old one and swaps it in a single step, so two compiles racing on the
same definition name can overwrite each other but never interleave.
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Iterator
from typing import Any


class StateKeys:
    """Key roles stored per server."""

    SYNTH_DEFS = "SYNTH_DEFS"
    NODE_STATE = "NODE_STATE"


class Store:
    """Key/value state shared by every context forked from one root."""

    def __init__(self) -> None:
        self._state: dict[str, Any] = {}

    def get(self, key: str, default: Any = None) -> Any:
        return self._state.get(key, default)

    def put(self, key: str, value: Any) -> None:
        self._state[key] = value

    def mutate(self, key: str, fn: Callable[[Any], Any]) -> Any:
        """Replace the value under ``key`` with ``fn(old_value)``.

        Args:
            key: Store key.
            fn: Synchronous function from the previous value (None when the
                key is absent) to the new value. It must not modify the
                previous value in place.

        Returns:
            The new value.

        Raises:
            TypeError: If ``fn`` returned an awaitable.
        """
        new_value = fn(self._state.get(key))
        if inspect.isawaitable(new_value):
            if inspect.iscoroutine(new_value):
                new_value.close()
            raise TypeError(f"Store.mutate({key!r}) needs a synchronous function")
        self._state[key] = new_value
        return new_value

    def delete(self, key: str) -> bool:
        if key not in self._state:
            return False
        del self._state[key]
        return True

    def keys(self) -> Iterator[str]:
        return iter(list(self._state))

    def __contains__(self, key: object) -> bool:
        return key in self._state

    def __len__(self) -> int:
        return len(self._state)


class ServerState:
    """Typed accessors over the store, scoped to one server.

    Holds the definition cache (SynthDef name to its description) and the
    node metadata index (node id to annotated fields).
    """

    def __init__(self, store: Store, server_name: str) -> None:
        self._store = store
        self._prefix = f"{server_name}/"

    @property
    def store(self) -> Store:
        return self._store

    def _key(self, role: str) -> str:
        return self._prefix + role

    # --- definition cache ---

    def put_synth_def(self, def_name: str, desc: Any) -> None:
        self._store.mutate(
            self._key(StateKeys.SYNTH_DEFS),
            lambda defs: {**(defs or {}), def_name: desc},
        )

    def synth_def(self, def_name: str) -> Any:
        return (self._store.get(self._key(StateKeys.SYNTH_DEFS)) or {}).get(def_name)

    def synth_defs(self) -> dict[str, Any]:
        return dict(self._store.get(self._key(StateKeys.SYNTH_DEFS)) or {})

    # --- node metadata ---

    def update_node_state(self, node_id: int, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the metadata recorded for ``node_id``."""

        def merge(nodes: dict[int, dict[str, Any]] | None) -> dict[int, dict[str, Any]]:
            nodes = nodes or {}
            return {**nodes, node_id: {**nodes.get(node_id, {}), **fields}}

        self._store.mutate(self._key(StateKeys.NODE_STATE), merge)

    def node_state(self, node_id: int) -> dict[str, Any] | None:
        return (self._store.get(self._key(StateKeys.NODE_STATE)) or {}).get(node_id)

    def forget_node(self, node_id: int) -> None:
        def without(nodes: dict[int, dict[str, Any]] | None) -> dict[int, dict[str, Any]]:
            return {k: v for k, v in (nodes or {}).items() if k != node_id}

        self._store.mutate(self._key(StateKeys.NODE_STATE), without)

    def clear(self) -> None:
        """Drop everything recorded for this server."""
        for key in self._store.keys():
            if key.startswith(self._prefix):
                self._store.delete(key)
