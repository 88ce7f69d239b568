"""Control message construction.

Messages are plain address/argument pairs in the shape the synthesis
server's command reference gives them. Turning them into bytes is the
job of a transport's codec.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import IntEnum
from typing import Any


class AddAction(IntEnum):
    """Where a new node is placed relative to its target."""

    HEAD = 0
    TAIL = 1
    BEFORE = 2
    AFTER = 3
    REPLACE = 4


@dataclass(frozen=True)
class Message:
    """A control message: an address and its positional arguments."""

    address: str
    args: tuple[Any, ...] = ()

    def __repr__(self) -> str:
        shown = ", ".join(
            f"<{len(a)} bytes>" if isinstance(a, (bytes, bytearray)) else repr(a) for a in self.args
        )
        return f"Message({self.address} {shown})"


def _flatten_controls(args: Mapping[str, Any]) -> list[Any]:
    flat: list[Any] = []
    for name, value in args.items():
        flat.append(name)
        flat.append(value)
    return flat


def synth_new(
    def_name: str,
    node_id: int,
    add_action: AddAction,
    target_id: int,
    args: Mapping[str, Any] | None = None,
) -> Message:
    """/s_new: create a synth from a loaded definition."""
    return Message(
        "/s_new",
        (def_name, node_id, int(add_action), target_id, *_flatten_controls(args or {})),
    )


def group_new(node_id: int, add_action: AddAction, target_id: int) -> Message:
    """/g_new: create a group."""
    return Message("/g_new", (node_id, int(add_action), target_id))


def def_recv(data: bytes) -> Message:
    """/d_recv: load a compiled definition from its binary form."""
    return Message("/d_recv", (bytes(data),))


def node_free(node_ids: Iterable[int]) -> Message:
    """/n_free: free nodes."""
    return Message("/n_free", tuple(node_ids))


def notify(on: bool = True) -> Message:
    """/notify: (un)register this client for node notifications."""
    return Message("/notify", (1 if on else 0,))


def quit_server() -> Message:
    return Message("/quit")
