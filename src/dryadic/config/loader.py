"""Configuration file loading and caching.

Handles:
- YAML file parsing
- Environment variable overrides
- Config caching with reload support
- Conversion from dict to typed Config dataclasses
- Layering per-call boot options over the configured defaults
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from dataclasses import fields
from pathlib import Path
from typing import Any, TypeVar

import yaml

from dryadic.config.merge import merge_configs, overlay_options
from dryadic.config.paths import get_config_paths
from dryadic.config.schema import (
    Config,
    InterpreterOptions,
    LifecycleConfig,
    LoggingConfig,
    ServerOptions,
    StreamConfig,
)

_log = logging.getLogger("dryadic.config")

_cached_config: Config | None = None

_reload_callbacks: list[Callable[[Config], None]] = []

_SECTIONS: dict[str, type] = {
    "server": ServerOptions,
    "interpreter": InterpreterOptions,
    "stream": StreamConfig,
    "lifecycle": LifecycleConfig,
    "logging": LoggingConfig,
}

_T = TypeVar("_T")


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found or invalid.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML as dict, or empty dict on error.
    """
    if not path.exists():
        return {}

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
            return data if isinstance(data, dict) else {}
    except yaml.YAMLError as e:
        _log.warning("Invalid YAML in %s: %s", path, e)
        return {}
    except PermissionError:
        _log.debug("Permission denied reading %s", path)
        return {}
    except OSError as e:
        _log.warning("Error reading %s: %s", path, e)
        return {}


def env_overrides() -> dict[str, Any]:
    """Build config dict from environment variables.

    Environment variables take highest priority.

    Returns:
        Config dict with values from environment.
    """
    overrides: dict[str, Any] = {}

    log_path = os.environ.get("DRYADIC_LOG")
    if log_path:
        overrides.setdefault("logging", {})["file"] = log_path

    scsynth = os.environ.get("DRYADIC_SCSYNTH")
    if scsynth:
        overrides.setdefault("server", {})["program"] = scsynth

    sclang = os.environ.get("DRYADIC_SCLANG")
    if sclang:
        overrides.setdefault("interpreter", {})["program"] = sclang

    return overrides


def _build_section(cls: type[_T], data: Mapping[str, Any], section: str) -> _T:
    """Instantiate a section dataclass from a mapping, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(data) - known)
    if unknown:
        _log.warning("Ignoring unknown %s option(s): %s", section, ", ".join(unknown))
    return cls(**{k: v for k, v in data.items() if k in known})


def dict_to_config(data: dict[str, Any]) -> Config:
    """Convert merged dict to typed Config dataclass.

    Args:
        data: Merged configuration dictionary.

    Returns:
        Typed Config object.
    """
    sections: dict[str, Any] = {}
    for name, cls in _SECTIONS.items():
        section_data = data.get(name) or {}
        if not isinstance(section_data, dict):
            _log.warning("Config section %r must be a mapping, got %s", name, type(section_data).__name__)
            section_data = {}
        sections[name] = _build_section(cls, section_data, name)

    extra = {k: v for k, v in data.items() if k not in _SECTIONS}

    return Config(extra=extra, **sections)


def load_config(project_root: str | None = None, reload: bool = False) -> Config:
    """Load and merge config from all sources.

    Priority order (highest to lowest):
    1. Environment variables
    2. Project config ($project_root/.dryadic/config.yaml)
    3. User config (~/.config/dryadic/config.yaml or %APPDATA%)
    4. System config (/etc/dryadic/ or %PROGRAMDATA%)

    Args:
        project_root: Project directory for project-level config.
        reload: Force reload even if cached.

    Returns:
        Merged Config object.
    """
    global _cached_config

    if _cached_config is not None and not reload and project_root is None:
        return _cached_config

    configs: list[dict[str, Any]] = []

    for path in get_config_paths(project_root):
        config_data = load_yaml_file(path)
        if config_data:
            _log.debug("Loaded config from %s", path)
            configs.append(config_data)

    env_config = env_overrides()
    if env_config:
        configs.append(env_config)

    config = dict_to_config(merge_configs(*configs))

    # Cache only global config (no project_root)
    if project_root is None:
        _cached_config = config

    return config


def get_config() -> Config:
    """Get the cached global config, loading it on first use."""
    if _cached_config is None:
        return load_config()
    return _cached_config


def reset_config() -> None:
    """Reset cached config.

    Useful for testing or forcing a reload.
    """
    global _cached_config
    _cached_config = None


def reload_config(project_root: str | None = None) -> Config:
    """Reload config from files and notify callbacks.

    Args:
        project_root: Optional project directory.

    Returns:
        The newly loaded Config.
    """
    config = load_config(project_root=project_root, reload=True)

    for callback in _reload_callbacks:
        try:
            callback(config)
        except Exception as e:
            _log.warning("Config reload callback error: %s", e)

    return config


def on_config_reload(callback: Callable[[Config], None]) -> Callable[[], None]:
    """Register a callback to be called when config is reloaded.

    Args:
        callback: Function to call with the new Config.

    Returns:
        A function to unregister the callback.
    """
    _reload_callbacks.append(callback)

    def unregister() -> None:
        if callback in _reload_callbacks:
            _reload_callbacks.remove(callback)

    return unregister


def _layer_options(defaults: _T, overrides: Mapping[str, Any] | _T | None, section: str) -> _T:
    if overrides is None:
        return defaults
    if isinstance(overrides, type(defaults)):
        return overrides
    return _build_section(type(defaults), overlay_options(defaults, overrides), section)


def server_options(overrides: Mapping[str, Any] | ServerOptions | None = None) -> ServerOptions:
    """Layer caller options over the configured server defaults.

    Args:
        overrides: Partial options mapping, a complete ServerOptions, or None.

    Returns:
        The effective ServerOptions.
    """
    return _layer_options(get_config().server, overrides, "server")


def interpreter_options(
    overrides: Mapping[str, Any] | InterpreterOptions | None = None,
) -> InterpreterOptions:
    """Layer caller options over the configured interpreter defaults."""
    return _layer_options(get_config().interpreter, overrides, "interpreter")
