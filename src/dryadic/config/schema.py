"""Configuration schema dataclasses for dryadic.

Defines the structure of configuration at all levels (system, user, project).
Every field has a default so partial configs merge together.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ServerOptions:
    """How to boot and talk to a synthesis server (scsynth).

    Example config.yaml:
        server:
          program: /Applications/SuperCollider.app/Contents/Resources/scsynth
          port: 57110
          confirm_timeout: 5.0
    """

    program: str | None = "scsynth"  # None or "": do not spawn, connect to a running engine
    host: str = "127.0.0.1"
    port: int = 57110
    transport: str = "udp"  # "udp" or "loopback"
    codec: Any = None  # OSC codec object, required by the udp transport
    extra_args: list[str] = field(default_factory=list)
    ready_pattern: str = r"SuperCollider 3 server ready"
    boot_timeout: float = 10.0
    confirm_timeout: float | None = None  # None: wait for /n_go indefinitely
    response_timeout: float | None = 10.0  # Deadline for /done replies
    node_id_start: int = 1000
    echo: bool = True  # Echo engine output to the log
    debug: bool = False  # Log every control message at INFO instead of TRACE


@dataclass
class InterpreterOptions:
    """How to boot the companion interpreter (sclang)."""

    program: str = "sclang"
    extra_args: list[str] = field(default_factory=lambda: ["-i", "dryadic"])
    ready_pattern: str = r"Welcome to SuperCollider"
    boot_timeout: float = 15.0
    interpret_timeout: float | None = None
    echo: bool = True
    debug: bool = False


@dataclass
class StreamConfig:
    """Error policy for stream dryads."""

    fail_fast: bool = False  # Fail the stream on the first source or child error


@dataclass
class LifecycleConfig:
    """Node lifecycle registry settings."""

    replay_limit: int = 1024  # Confirmations kept for waits not yet registered


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str | None = None  # TRACE, DEBUG, VERBOSE, INFO, WARNING, ERROR
    verbose: int | None = None  # 0..4, takes precedence over level
    file: str | None = None  # Log file path


@dataclass
class Config:
    """Root configuration object.

    Aggregates all configuration sections. All fields use default factories
    to ensure partial configs work correctly with deep merging.
    """

    server: ServerOptions = field(default_factory=ServerOptions)
    interpreter: InterpreterOptions = field(default_factory=InterpreterOptions)
    stream: StreamConfig = field(default_factory=StreamConfig)
    lifecycle: LifecycleConfig = field(default_factory=LifecycleConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    # Unknown top-level sections
    extra: dict[str, Any] = field(default_factory=dict)
