"""Root pytest configuration for all tests."""

from __future__ import annotations

import pytest

from dryadic.config import reset_config
from dryadic.context import Context
from dryadic.store import Store
from dryadic.targets.loopback import LoopbackTransport
from dryadic.targets.server import Server

# Configure pytest-asyncio to use auto mode
# This is redundant with pyproject.toml but ensures it's set
pytest_plugins = ("pytest_asyncio",)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep user config files and DRYADIC_* variables out of every test."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    for name in ("DRYADIC_LOG", "DRYADIC_SCSYNTH", "DRYADIC_SCLANG"):
        monkeypatch.delenv(name, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def loopback() -> LoopbackTransport:
    return LoopbackTransport()


@pytest.fixture
def store() -> Store:
    return Store()


@pytest.fixture
def server(loopback: LoopbackTransport, store: Store) -> Server:
    return Server(loopback, store=store)


@pytest.fixture
def context(server: Server, store: Store) -> Context:
    return Context(store=store).with_server(server)

