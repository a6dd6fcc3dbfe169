"""Pytest configuration and fixtures for sca tests.

Sessions never touch the network: ``FakeTransport.connect`` stands in for
``asyncssh.connect`` and hands out scripted connections per host.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import pytest

from sca.config import NodeConfig


class FakeReader:
    """Remote stdout that replays scripted lines."""

    def __init__(self, lines, delay: float = 0.0):
        self._lines = list(lines)
        self._delay = delay

    async def readline(self) -> str:
        if self._delay:
            await asyncio.sleep(self._delay)
        if not self._lines:
            return ""
        item = self._lines.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item + "\n"


class FakeProcess:
    def __init__(self, lines, exit_status, line_delay: float = 0.0):
        self.stdout = FakeReader(lines, line_delay)
        self.exit_status = None
        self.closed = False
        self._exit_status = exit_status

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True

    async def wait(self):
        self.exit_status = self._exit_status


class FakeConnection:
    def __init__(self, host: str, process: FakeProcess):
        self.host = host
        self.process = process
        self.commands: list[str] = []
        self.process_options: dict = {}
        self.closed = False

    def create_process(self, command, **options):
        self.commands.append(command)
        self.process_options = options
        return self.process

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True


@dataclass
class Script:
    lines: list = field(default_factory=list)
    exit_status: int | None = 0
    connect_delay: float = 0.0
    line_delay: float = 0.0
    error: BaseException | None = None


class FakeTransport:
    """Scripted replacement for asyncssh.connect."""

    def __init__(self):
        self.scripts: dict[str, Script] = {}
        self.connections: dict[str, FakeConnection] = {}
        self.connect_calls: list[tuple[str, dict]] = []

    def script(self, host: str, lines=(), **kwargs) -> None:
        self.scripts[host] = Script(lines=list(lines), **kwargs)

    async def connect(self, host: str, **options):
        self.connect_calls.append((host, options))
        script = self.scripts.get(host, Script())
        if script.connect_delay:
            await asyncio.sleep(script.connect_delay)
        if script.error is not None:
            raise script.error
        conn = FakeConnection(
            host, FakeProcess(script.lines, script.exit_status, script.line_delay)
        )
        self.connections[host] = conn
        return conn


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def make_node():
    def _make_node(name: str, **kwargs) -> NodeConfig:
        kwargs.setdefault("host", name)
        return NodeConfig(name=name, **kwargs)

    return _make_node


@pytest.fixture(autouse=True)
def isolated_config(monkeypatch, tmp_path):
    """Keep the operator's own node directory out of tests."""
    monkeypatch.delenv("SCA_CONFIG", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
