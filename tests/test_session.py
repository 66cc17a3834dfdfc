"""End-to-end tests for PreviewSession with a fake tunnel and a real server."""
from __future__ import annotations

import asyncio
from pathlib import Path
from unittest.mock import patch

import aiohttp
import pytest

from conftest import FakeCompiler, FakeTunnelFactory, port_is_free, wait_until
from mailmirror.capabilities.tunnel.cloudflared import CloudflaredTunnel
from mailmirror.config import PreviewConfig
from mailmirror.core.errors import BinaryMissingError, TunnelTimeoutError
from mailmirror.core.recompile import RecompileLoop
from mailmirror.core.session import PreviewSession


def _config(port: int, **kwargs) -> PreviewConfig:
    return PreviewConfig(port=port, debounce_ms=50, **kwargs)


async def _fetch(port: int, path: str = "/") -> str:
    async with aiohttp.ClientSession() as http:
        async with http.get(f"http://127.0.0.1:{port}{path}") as resp:
            return await resp.text()


@pytest.fixture
async def session(fake_compiler, tunnel_factory, free_port):
    s = PreviewSession(fake_compiler, config=_config(free_port), tunnel_factory=tunnel_factory)
    yield s
    await s.stop()


class TestStartStop:
    async def test_start_serves_compiled_document(self, session, source_file, free_port, tunnel_factory):
        url = await session.start(source_file)

        assert url == "https://preview-1.trycloudflare.com"
        assert session.is_running
        assert session.port == free_port
        assert session.get_public_url() == url
        assert tunnel_factory.created[0].started_port == free_port

        body = await _fetch(free_port)
        assert "<p>hi</p>" in body
        assert "EventSource('/events')" in body

    async def test_public_url_absent_before_and_after(self, session, source_file):
        assert session.get_public_url() is None
        await session.start(source_file)
        await session.stop()
        assert session.get_public_url() is None
        assert not session.is_running

    async def test_stop_frees_port_and_stops_tunnel(self, session, source_file, free_port, tunnel_factory):
        await session.start(source_file)
        await session.stop()

        assert port_is_free(free_port)
        assert tunnel_factory.created[0].stop_calls == 1

        await session.stop()
        assert tunnel_factory.created[0].stop_calls == 1

    async def test_restart_gets_fresh_url(self, session, source_file):
        first = await session.start(source_file)
        await session.stop()
        second = await session.start(source_file)
        assert first != second
        assert session.get_public_url() == second

    async def test_start_twice_rejected(self, session, source_file):
        await session.start(source_file)
        with pytest.raises(RuntimeError):
            await session.start(source_file)

    async def test_missing_source(self, session, tmp_path, free_port):
        with pytest.raises(FileNotFoundError):
            await session.start(tmp_path / "nope.mjml")
        assert port_is_free(free_port)

    async def test_share_page_shows_public_url(self, session, source_file, free_port):
        url = await session.start(source_file)
        assert url in await _fetch(free_port, "/share")


class TestLiveReload:
    async def test_edit_replaces_served_document(self, session, source_file, free_port):
        await session.start(source_file)
        await asyncio.sleep(0.5)

        source_file.write_text("<p>marker-two</p>", encoding="utf-8")
        await wait_until(lambda: "marker-two" in session.store.current.html)

        body = await _fetch(free_port)
        assert "marker-two" in body
        assert "<p>hi</p>" not in body

    async def test_viewer_notified_after_change(self, session, source_file, free_port):
        await session.start(source_file)
        await asyncio.sleep(0.5)

        async with aiohttp.ClientSession() as http:
            async with http.get(f"http://127.0.0.1:{free_port}/events") as resp:
                assert await resp.content.readline() == b"data: connected\n"
                await resp.content.readline()

                source_file.write_text("<p>changed</p>", encoding="utf-8")
                line = await asyncio.wait_for(resp.content.readline(), timeout=10)
                assert line == b"data: reload\n"

    async def test_failed_compile_sends_no_reload(self, session, source_file, free_port):
        await session.start(source_file)
        await asyncio.sleep(0.5)
        good = session.store.current

        async with aiohttp.ClientSession() as http:
            async with http.get(f"http://127.0.0.1:{free_port}/events") as resp:
                await resp.content.readline()
                await resp.content.readline()

                source_file.write_text("BROKEN", encoding="utf-8")
                await wait_until(lambda: bool(session.store.last_failure))
                with pytest.raises(asyncio.TimeoutError):
                    await asyncio.wait_for(resp.content.readline(), timeout=0.3)

        assert session.store.current is good
        assert "<p>hi</p>" in await _fetch(free_port)


class TestStartFailure:
    async def test_missing_binary_releases_everything(self, source_file, free_port):
        config = _config(free_port, tunnel_binary="mailmirror-no-such-cloudflared")
        session = PreviewSession(FakeCompiler(), config=config)

        with pytest.raises(BinaryMissingError) as exc_info:
            await session.start(source_file)

        assert "brew install cloudflared" in str(exc_info.value)
        assert port_is_free(free_port)
        assert not session.is_running
        assert session.get_public_url() is None

    async def test_watcher_stopped_after_failed_start(self, source_file, free_port):
        loops: list[RecompileLoop] = []
        original_start = RecompileLoop.start

        async def recording_start(self):
            loops.append(self)
            await original_start(self)

        session = PreviewSession(
            FakeCompiler(), config=_config(free_port),
            tunnel_factory=FakeTunnelFactory(TunnelTimeoutError("no URL")),
        )
        with patch.object(RecompileLoop, "start", recording_start):
            with pytest.raises(TunnelTimeoutError):
                await session.start(source_file)

        assert loops and not loops[0].is_watching
        assert port_is_free(free_port)

    async def test_default_tunnel_is_cloudflared(self, free_port):
        session = PreviewSession(FakeCompiler(), config=_config(free_port))
        tunnel = session._tunnel_factory()
        assert isinstance(tunnel, CloudflaredTunnel)


class TestBestEffortStop:
    async def test_failing_step_does_not_block_the_rest(self, source_file, free_port, tunnel_factory):
        session = PreviewSession(
            FakeCompiler(), config=_config(free_port), tunnel_factory=tunnel_factory,
        )
        await session.start(source_file)
        original_stop = RecompileLoop.stop

        async def failing_stop(self):
            await original_stop(self)
            raise RuntimeError("watcher refused to stop")

        with patch.object(RecompileLoop, "stop", failing_stop):
            with pytest.raises(RuntimeError, match="watcher refused"):
                await session.stop()

        assert port_is_free(free_port)
        assert tunnel_factory.created[0].stop_calls == 1
        assert not session.is_running
