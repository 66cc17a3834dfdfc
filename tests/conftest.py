from __future__ import annotations

import asyncio
import socket
from pathlib import Path

import pytest

from mailmirror.capabilities.tunnel.base import TunnelState
from mailmirror.ports.compiler import CompileResult


def find_free_port() -> int:
    """Ask the OS for an available TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def port_is_free(port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("127.0.0.1", port))
        except OSError:
            return False
        return True


async def wait_until(predicate, timeout: float = 10.0, interval: float = 0.02) -> None:
    """Poll *predicate* until it is truthy or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within timeout")
        await asyncio.sleep(interval)


class FakeCompiler:
    """Async compiler double: wraps the source in a document.

    Sources containing ``BROKEN`` yield an explicit error result. When
    ``gate`` is set, each compile waits for it before returning.
    """

    def __init__(self) -> None:
        self.calls = 0
        self.started = 0
        self.sources: list[str] = []
        self.gate: asyncio.Event | None = None

    async def compile(self, source: str) -> CompileResult:
        self.started += 1
        self.sources.append(source)
        if self.gate is not None:
            await self.gate.wait()
        self.calls += 1
        if "BROKEN" in source:
            return CompileResult(html="", diagnostics=["syntax error on line 1"])
        return CompileResult(html=f"<html><body>{source}</body></html>")


class FakeTunnel:
    """TunnelProcessProtocol double that never spawns anything."""

    def __init__(self, url: str, error: BaseException | None = None) -> None:
        self._url = url
        self._error = error
        self.state = TunnelState.NOT_STARTED
        self.public_url: str | None = None
        self.failure_reason: str | None = None
        self.started_port: int | None = None
        self.stop_calls = 0

    @property
    def is_alive(self) -> bool:
        return self.state is TunnelState.READY

    async def start(self, port: int) -> str:
        self.started_port = port
        if self._error is not None:
            self.state = TunnelState.FAILED
            self.failure_reason = str(self._error)
            raise self._error
        self.public_url = self._url
        self.state = TunnelState.READY
        return self._url

    async def stop(self) -> None:
        self.stop_calls += 1
        self.public_url = None
        self.state = TunnelState.STOPPED


class FakeTunnelFactory:
    """Creates a fresh FakeTunnel (with a distinct URL) per session start."""

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.created: list[FakeTunnel] = []

    def __call__(self) -> FakeTunnel:
        n = len(self.created) + 1
        tunnel = FakeTunnel(f"https://preview-{n}.trycloudflare.com", self.error)
        self.created.append(tunnel)
        return tunnel


@pytest.fixture
def source_file(tmp_path: Path) -> Path:
    """A template source file with simple HTML content."""
    path = tmp_path / "email.html"
    path.write_text("<p>hi</p>", encoding="utf-8")
    return path


@pytest.fixture
def fake_compiler() -> FakeCompiler:
    return FakeCompiler()


@pytest.fixture
def tunnel_factory() -> FakeTunnelFactory:
    return FakeTunnelFactory()


@pytest.fixture
def free_port() -> int:
    return find_free_port()
