"""Merge policies for configuration layers.

Two different policies meet here:

The file cascade (system, user, project, environment) merges sections key
by key. A None in a later layer leaves the earlier value alone, so a YAML
file may name a key without setting it. ``extra_args`` and other lists are
taken whole from the last layer that sets them.

Boot options handed to server() or interpreter() are laid over one section
flat. There an explicit None is a value: ``{"program": None}`` means "do
not spawn a process" even when a config file names one.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import fields
from functools import reduce
from typing import Any


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Lay one cascade layer over another.

    Sections (nested dicts) merge recursively; anything else in
    ``override`` replaces the base value unless it is None.

    Returns:
        A new dict; neither argument is modified.
    """
    merged = dict(base)
    for key, value in override.items():
        if value is None:
            continue
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def merge_configs(*layers: dict[str, Any]) -> dict[str, Any]:
    """Fold cascade layers lowest priority first; empty layers are skipped."""
    return reduce(deep_merge, (layer for layer in layers if layer), {})


def overlay_options(section: Any, overrides: Mapping[str, Any]) -> dict[str, Any]:
    """Lay per-call boot options over a section's effective values.

    Args:
        section: A section dataclass instance (ServerOptions, InterpreterOptions).
        overrides: Caller options. Every key present wins, None included.

    Returns:
        Field values as a dict, ready to rebuild the section from. Values
        are not copied, so a caller's codec object is passed through as is.
    """
    merged = {f.name: getattr(section, f.name) for f in fields(section)}
    merged.update(overrides)
    return merged
