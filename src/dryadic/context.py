"""Evaluation context threaded through a spawn tree.

A Context says where in the tree a dryad is being evaluated and against
which targets. It is frozen: every composition boundary forks a new one,
so a subtree can extend its environment without its ancestors or siblings
ever seeing the change. Target handles, the id scope and the store are
shared by reference across forks.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from dryadic.store import Store

if TYPE_CHECKING:
    from dryadic.targets.protocol import InterpreterTarget, ServerTarget

ROOT_GROUP = 0


class IdScope:
    """Monotonic node id source for one server.

    Ids are strictly increasing and never reused while the scope lives.
    """

    def __init__(self, start: int = 1000) -> None:
        self._counter = itertools.count(start)
        self._last: int | None = None

    def next(self) -> int:
        self._last = next(self._counter)
        return self._last

    @property
    def last(self) -> int | None:
        """The most recently issued id, or None before the first."""
        return self._last

    def __repr__(self) -> str:
        return f"IdScope(last={self._last})"


@dataclass(frozen=True)
class Context:
    """Ambient state for evaluating one node of a spawn tree.

    Attributes:
        server: Target server handle, if one has been booted or required.
        interpreter: Target interpreter handle.
        group: Group new nodes are added to.
        node_id: Id allocated by the nearest spawning ancestor.
        id_scope: Node id source of the current server.
        store: Process-wide state shared by every fork.
        path: Dotted label path of this node within the tree.
    """

    server: ServerTarget | None = None
    interpreter: InterpreterTarget | None = None
    group: int = ROOT_GROUP
    node_id: int | None = None
    id_scope: IdScope | None = None
    store: Store = field(default_factory=Store)
    path: str = ""

    def fork(self, *, new_group: bool = False, **changes: Any) -> Context:
        """Return a copy with ``changes`` applied.

        With ``new_group`` the copy's node_id is cleared; the caller sets it
        once the new group's id has been allocated.
        """
        if new_group:
            changes.setdefault("node_id", None)
        return replace(self, **changes)

    def child(self, label: str) -> Context:
        """Fork for a child evaluated under ``label``."""
        path = f"{self.path}.{label}" if self.path else label
        return replace(self, path=path)

    def with_server(self, server: ServerTarget) -> Context:
        """Fork targeting ``server``, starting again from its root group."""
        return replace(
            self,
            server=server,
            id_scope=server.id_scope,
            group=ROOT_GROUP,
            node_id=None,
        )

    def with_interpreter(self, interpreter: InterpreterTarget) -> Context:
        return replace(self, interpreter=interpreter)
