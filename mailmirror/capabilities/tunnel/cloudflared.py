"""Cloudflared quick tunnel — expose a local port under a trycloudflare.com URL.

cloudflared offers no structured API for quick tunnels: the public URL is
only printed in its log output. ``extract_tunnel_url`` is the one place that
parses that output; everything else works with the typed result of
``CloudflaredTunnel.start``.
"""
from __future__ import annotations

import asyncio
import logging
import re
import shutil

from mailmirror.capabilities.tunnel.base import TunnelState, can_transition
from mailmirror.core.errors import (
    BinaryMissingError,
    TunnelProcessError,
    TunnelTimeoutError,
)
from mailmirror.core.events import EventBus, TunnelReadyEvent, TunnelStoppedEvent
from mailmirror.core.subprocess_tracker import track, untrack

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0

INSTALL_GUIDE_URL = (
    "https://developers.cloudflare.com/cloudflare-one/connections/"
    "connect-apps/install-and-setup/installation/"
)

INSTALL_MESSAGE = (
    "Cloudflare Tunnel (cloudflared) is not installed.\n\n"
    "To install:\n"
    "- macOS: brew install cloudflared\n"
    f"- Linux: follow the instructions at {INSTALL_GUIDE_URL}\n"
    f"- Windows: download from {INSTALL_GUIDE_URL}"
)

# api.trycloudflare.com is the quick-tunnel control endpoint and shows up in
# cloudflared's own error messages; it is never a public preview address.
_CLOUDFLARED_URL_RE = re.compile(r"https://(?!api\.)[a-zA-Z0-9-]+\.trycloudflare\.com")


def extract_tunnel_url(output: str) -> str | None:
    """Return the first quick-tunnel URL found in *output*, or ``None``.

    cloudflared announces the address inside an ASCII box on stderr, e.g.::

        INF |  https://calm-river-1234.trycloudflare.com  |
    """
    match = _CLOUDFLARED_URL_RE.search(output)
    return match.group(0) if match else None


class CloudflaredTunnel:
    """Supervises one ``cloudflared tunnel --url`` process.

    Single use: ``start`` may be called once. ``stop`` is idempotent and
    reachable from any state. A generation counter keeps output and exit
    callbacks from acting on a tunnel that has already been stopped.
    """

    def __init__(
        self,
        binary: str = "cloudflared",
        timeout: float = DEFAULT_TIMEOUT,
        event_bus: EventBus | None = None,
    ) -> None:
        self._binary = binary
        self._timeout = timeout
        self._event_bus = event_bus

        self._state = TunnelState.NOT_STARTED
        self._process: asyncio.subprocess.Process | None = None
        self._public_url: str | None = None
        self._failure_reason: str | None = None
        self._url_future: asyncio.Future[str] | None = None
        self._tasks: list[asyncio.Task] = []
        self._generation = 0

    @property
    def state(self) -> TunnelState:
        return self._state

    @property
    def public_url(self) -> str | None:
        return self._public_url

    @property
    def failure_reason(self) -> str | None:
        return self._failure_reason

    @property
    def is_alive(self) -> bool:
        return (
            self._state is TunnelState.READY
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    # ------------------------------------------------------------------

    async def start(self, port: int) -> str:
        """Start cloudflared for ``localhost:port``. Returns the public URL.

        Raises BinaryMissingError, TunnelTimeoutError or TunnelProcessError.
        """
        if self._state is not TunnelState.NOT_STARTED:
            raise RuntimeError(f"Tunnel cannot be started from state {self._state.value}")
        generation = self._generation

        # 1. Binary lookup
        self._transition(TunnelState.CHECKING_BINARY)
        binary_path = shutil.which(self._binary)
        if not binary_path:
            self._fail(INSTALL_MESSAGE)
            raise BinaryMissingError(INSTALL_MESSAGE)

        # 2. Spawn
        self._transition(TunnelState.SPAWNING)
        try:
            process = await asyncio.create_subprocess_exec(
                binary_path,
                "tunnel", "--url", f"http://localhost:{port}", "--no-autoupdate",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            reason = f"Failed to start cloudflared: {e}"
            if generation == self._generation:
                self._fail(reason)
            raise TunnelProcessError(reason) from e
        track(process.pid)

        if generation != self._generation:
            await self._kill(process)
            raise TunnelProcessError("Tunnel stopped during startup")

        # 3. Scan output for the public URL
        self._process = process
        self._url_future = asyncio.get_running_loop().create_future()
        self._transition(TunnelState.AWAITING_URL)
        readers = [
            asyncio.create_task(self._read_output(process.stdout, "out", generation)),
            asyncio.create_task(self._read_output(process.stderr, "err", generation)),
        ]
        self._tasks = [
            *readers,
            asyncio.create_task(self._watch_exit(process, readers, generation)),
        ]
        logger.info(
            "cloudflared started (pid %d) for port %d, waiting for public URL",
            process.pid, port,
        )

        try:
            return await asyncio.wait_for(self._url_future, timeout=self._timeout)
        except asyncio.TimeoutError:
            reason = f"Timed out after {self._timeout:g}s waiting for cloudflared tunnel URL"
            await self._abort(generation, reason)
            raise TunnelTimeoutError(reason) from None
        except TunnelProcessError as e:
            await self._abort(generation, str(e))
            raise
        except asyncio.CancelledError:
            await self._abort(generation, "Tunnel start cancelled")
            raise

    async def stop(self) -> None:
        """Kill the process and clear the URL. Safe to call repeatedly."""
        if self._state is TunnelState.STOPPED:
            return
        self._generation += 1
        self._transition(TunnelState.STOPPED)
        self._public_url = None
        if self._url_future and not self._url_future.done():
            self._url_future.set_exception(
                TunnelProcessError("Tunnel stopped before a public URL was observed"),
            )
        await self._shutdown_process()

    # ------------------------------------------------------------------

    def _transition(self, new: TunnelState) -> None:
        if not can_transition(self._state, new):
            raise RuntimeError(
                f"Illegal tunnel transition {self._state.value} -> {new.value}"
            )
        logger.debug("Tunnel state: %s -> %s", self._state.value, new.value)
        self._state = new

    def _fail(self, reason: str) -> None:
        self._failure_reason = reason
        self._transition(TunnelState.FAILED)

    async def _abort(self, generation: int, reason: str) -> None:
        """Fail a start that is still awaiting its URL and kill the process."""
        if generation != self._generation:
            return
        if self._state is TunnelState.AWAITING_URL:
            self._fail(reason)
        logger.warning("Tunnel start failed: %s", reason)
        await self._shutdown_process()

    def _on_output(self, text: str, generation: int) -> None:
        if generation != self._generation or self._state is not TunnelState.AWAITING_URL:
            return
        url = extract_tunnel_url(text)
        if url is None:
            return
        self._public_url = url
        self._transition(TunnelState.READY)
        if self._url_future and not self._url_future.done():
            self._url_future.set_result(url)
        logger.info("Tunnel URL: %s", url)
        if self._event_bus:
            self._event_bus.publish(TunnelReadyEvent(url))

    async def _read_output(
        self, stream: asyncio.StreamReader | None, label: str, generation: int,
    ) -> None:
        """Drain one output stream line by line until EOF."""
        if stream is None:
            return
        while True:
            try:
                line = await stream.readline()
            except ValueError:
                logger.debug("cloudflared(%s): skipped overlong line", label)
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                logger.debug("cloudflared(%s): %s", label, text)
            self._on_output(text, generation)

    async def _watch_exit(
        self,
        process: asyncio.subprocess.Process,
        readers: list[asyncio.Task],
        generation: int,
    ) -> None:
        # Drain output first so a URL printed just before exit is not lost
        await asyncio.gather(*readers, return_exceptions=True)
        returncode = await process.wait()
        untrack(process.pid)
        if generation != self._generation:
            return

        if self._state is TunnelState.AWAITING_URL:
            if self._url_future and not self._url_future.done():
                self._url_future.set_exception(TunnelProcessError(
                    f"cloudflared exited with code {returncode} before publishing a URL",
                    returncode=returncode,
                ))
        elif self._state is TunnelState.READY:
            logger.warning(
                "cloudflared exited unexpectedly (code %s); public URL withdrawn",
                returncode,
            )
            self._public_url = None
            self._process = None
            self._transition(TunnelState.STOPPED)
            if self._event_bus:
                self._event_bus.publish(TunnelStoppedEvent(returncode))

    async def _shutdown_process(self) -> None:
        process, self._process = self._process, None
        tasks, self._tasks = self._tasks, []
        if process is not None:
            await self._kill(process)
        current = asyncio.current_task()
        tasks = [t for t in tasks if t is not current]
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("cloudflared (pid %d) did not exit after kill", process.pid)
            logger.info("Stopped cloudflared process (pid %d)", process.pid)
        untrack(process.pid)
