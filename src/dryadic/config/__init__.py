"""Configuration management for dryadic.

Provides hierarchical YAML-based configuration with:
- System-level config (/etc/dryadic/ or %PROGRAMDATA%)
- User-level config (~/.config/dryadic/ or %APPDATA%)
- Project-level config ($project_root/.dryadic/)
- Environment variable overrides (highest priority)

Example usage:
    from dryadic.config import get_config, server_options

    config = get_config()
    print(config.server.port)

    # Boot options for one server, layered over the configured defaults
    options = server_options({"port": 57111})
"""

from dryadic.config.loader import (
    get_config,
    interpreter_options,
    load_config,
    on_config_reload,
    reload_config,
    reset_config,
    server_options,
)
from dryadic.config.merge import deep_merge, merge_configs, overlay_options
from dryadic.config.paths import (
    get_config_paths,
    get_project_config_path,
    get_system_config_path,
    get_user_config_path,
)
from dryadic.config.schema import (
    Config,
    InterpreterOptions,
    LifecycleConfig,
    LoggingConfig,
    ServerOptions,
    StreamConfig,
)

__all__ = [
    # Main API
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "reset_config",
    "on_config_reload",
    "server_options",
    "interpreter_options",
    # Schema types
    "ServerOptions",
    "InterpreterOptions",
    "StreamConfig",
    "LifecycleConfig",
    "LoggingConfig",
    # Merge
    "deep_merge",
    "merge_configs",
    "overlay_options",
    # Path utilities
    "get_config_paths",
    "get_system_config_path",
    "get_user_config_path",
    "get_project_config_path",
]
