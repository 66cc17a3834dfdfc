"""Preview session — composes artifact store, recompile loop, server and tunnel.

A session is either fully started or fully stopped once ``start`` returns:
a failure part-way through releases everything acquired so far before the
error propagates.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Awaitable, Callable

from mailmirror.adapters.web.server import (
    NotificationHub,
    PreviewServer,
    inject_reload_client,
)
from mailmirror.capabilities.tunnel.cloudflared import CloudflaredTunnel
from mailmirror.config import PreviewConfig
from mailmirror.core.artifact import ArtifactStore, CompiledArtifact
from mailmirror.core.events import EventBus
from mailmirror.core.recompile import RecompileLoop

if TYPE_CHECKING:
    from mailmirror.capabilities.tunnel.base import TunnelProcessProtocol
    from mailmirror.ports.compiler import CompilerPort
    from mailmirror.ports.encoder import CodeEncoderPort

logger = logging.getLogger(__name__)

TunnelFactory = Callable[[], "TunnelProcessProtocol"]


class PreviewSession:
    """One live preview: a watched source file served locally and tunnelled."""

    def __init__(
        self,
        compiler: CompilerPort,
        config: PreviewConfig | None = None,
        event_bus: EventBus | None = None,
        tunnel_factory: TunnelFactory | None = None,
        encoder: CodeEncoderPort | None = None,
    ) -> None:
        self._compiler = compiler
        self._config = config or PreviewConfig()
        self._event_bus = event_bus or EventBus()
        self._tunnel_factory = tunnel_factory or self._default_tunnel
        self._encoder = encoder

        self._source_path: Path | None = None
        self._store: ArtifactStore | None = None
        self._hub: NotificationHub | None = None
        self._loop: RecompileLoop | None = None
        self._server: PreviewServer | None = None
        self._tunnel: TunnelProcessProtocol | None = None
        self._running = False

    def _default_tunnel(self) -> TunnelProcessProtocol:
        return CloudflaredTunnel(
            binary=self._config.tunnel_binary,
            timeout=self._config.tunnel_timeout,
            event_bus=self._event_bus,
        )

    # -- Properties ------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def source_path(self) -> Path | None:
        return self._source_path

    @property
    def store(self) -> ArtifactStore | None:
        return self._store

    @property
    def hub(self) -> NotificationHub | None:
        return self._hub

    @property
    def port(self) -> int | None:
        return self._server.port if self._server else None

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    def get_public_url(self) -> str | None:
        """The tunnel's public URL, or None (before start, after stop, after a crash)."""
        if self._tunnel is None:
            return None
        return self._tunnel.public_url

    # -- Lifecycle -------------------------------------------------------------

    async def start(self, source_path: str | Path) -> str:
        """Compile, serve, watch and tunnel *source_path*. Returns the public URL."""
        if self._running:
            raise RuntimeError(f"Preview already running for {self._source_path}")

        path = Path(source_path).expanduser().resolve()
        if not path.is_file():
            raise FileNotFoundError(f"Source file not found: {path}")

        self._source_path = path
        self._store = ArtifactStore()
        self._hub = NotificationHub(self._event_bus)
        hub = self._hub

        async def _broadcast(_artifact: CompiledArtifact) -> None:
            await hub.notify_reload()

        self._loop = RecompileLoop(
            path, self._store, self._compiler,
            on_compiled=_broadcast,
            postprocess=inject_reload_client,
            event_bus=self._event_bus,
            debounce_ms=self._config.debounce_ms,
        )
        self._server = PreviewServer(
            self._store, self._hub,
            host=self._config.host,
            port=self._config.port,
            port_attempts=self._config.port_attempts,
            public_url_fn=self.get_public_url,
            encoder=self._encoder,
        )
        self._tunnel = self._tunnel_factory()

        try:
            # 1. Initial compile, so the first request sees a document
            await self._loop.compile_now()
            # 2. HTTP listener
            await self._server.start()
            # 3. File watcher
            await self._loop.start()
            # 4. Tunnel
            url = await self._tunnel.start(self._server.port)
        except BaseException:
            logger.warning("Preview start failed for %s, releasing resources", path.name)
            try:
                await self._teardown()
            except Exception:
                logger.exception("Cleanup after failed start raised")
            raise

        self._running = True
        logger.info("Preview running: %s -> %s", path.name, url)
        return url

    async def stop(self) -> None:
        """Stop watcher, viewers, listener and tunnel. Re-raises the first error."""
        if self._loop is None and self._server is None and self._tunnel is None:
            return
        try:
            await self._teardown()
        finally:
            self._running = False
        logger.info("Preview stopped")

    async def _teardown(self) -> None:
        loop, hub, server, tunnel = self._loop, self._hub, self._server, self._tunnel
        self._loop = None
        self._server = None
        self._tunnel = None

        steps: list[tuple[str, Callable[[], Awaitable[None]] | None]] = [
            ("watcher", loop.stop if loop else None),
            ("viewers", self._close_viewers(hub) if hub else None),
            ("listener", server.stop if server else None),
            ("tunnel", tunnel.stop if tunnel else None),
        ]
        first_error: BaseException | None = None
        for name, step in steps:
            if step is None:
                continue
            try:
                await step()
            except Exception as e:
                logger.exception("Failed to stop %s", name)
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    @staticmethod
    def _close_viewers(hub: NotificationHub) -> Callable[[], Awaitable[None]]:
        async def _close() -> None:
            hub.close_all()
        return _close
