"""Preview server — serves the compiled artifact and pushes reloads over SSE.

One aiohttp listener exposes the current document, a Server-Sent Events
stream that tells viewers to reload, a health probe and a share page with
the public URL and its QR code.
"""
from __future__ import annotations

import asyncio
import errno
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from html import escape
from typing import TYPE_CHECKING, Callable

from aiohttp import web

from mailmirror.core.errors import ConnectionWriteFailure
from mailmirror.core.events import (
    EventBus,
    ViewerConnectedEvent,
    ViewerDisconnectedEvent,
)

if TYPE_CHECKING:
    from mailmirror.core.artifact import ArtifactStore
    from mailmirror.ports.encoder import CodeEncoderPort

logger = logging.getLogger(__name__)

CONNECTED_FRAME = b"data: connected\n\n"
RELOAD_FRAME = b"data: reload\n\n"
PING_FRAME = b": ping\n\n"

HEARTBEAT_INTERVAL = 15.0
_ADDR_IN_USE = {errno.EADDRINUSE, getattr(errno, "WSAEADDRINUSE", errno.EADDRINUSE)}

_RELOAD_CLIENT = """
<script>
(function() {
  function connect() {
    var source = new EventSource('/events');
    source.onmessage = function(event) {
      if (event.data === 'reload') {
        window.location.reload();
      }
    };
    source.onerror = function() {
      source.close();
      setTimeout(connect, 1000);
    };
  }
  connect();
})();
</script>
"""

_PLACEHOLDER_HTML = (
    "<!DOCTYPE html>\n<html><head><meta charset=\"utf-8\">"
    "<title>MailMirror</title></head>\n"
    "<body><h1>No email template loaded</h1></body></html>"
)

_SHARE_HTML_TEMPLATE = """\
<!DOCTYPE html>
<html><head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>MailMirror preview</title>
</head><body style="font-family: sans-serif; text-align: center; padding: 20px;">
{body}
</body></html>
"""


def inject_reload_client(html: str) -> str:
    """Insert the reload client before the closing body tag, or append it."""
    idx = html.lower().rfind("</body>")
    if idx == -1:
        return html + _RELOAD_CLIENT
    return html[:idx] + _RELOAD_CLIENT + html[idx:]


PLACEHOLDER_DOCUMENT = inject_reload_client(_PLACEHOLDER_HTML)


# ---------------------------------------------------------------------------
# Notification hub
# ---------------------------------------------------------------------------

@dataclass
class ViewerConnection:
    """One open push channel to a viewer."""

    id: str
    channel: web.StreamResponse
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    closed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)


class NotificationHub:
    """Registry of live viewer connections.

    The registry is only mutated here, each mutation a single synchronous
    step. Writes always go to a snapshot of the registry.
    """

    def __init__(self, event_bus: EventBus | None = None) -> None:
        self._viewers: dict[str, ViewerConnection] = {}
        self._event_bus = event_bus

    @property
    def viewer_count(self) -> int:
        return len(self._viewers)

    @property
    def viewers(self) -> list[ViewerConnection]:
        return list(self._viewers.values())

    def register(self, channel: web.StreamResponse) -> ViewerConnection:
        viewer = ViewerConnection(id=uuid.uuid4().hex, channel=channel)
        self._viewers[viewer.id] = viewer
        logger.info("Viewer connected: %s (%d open)", viewer.id[:8], len(self._viewers))
        if self._event_bus:
            self._event_bus.publish(ViewerConnectedEvent(viewer.id, len(self._viewers)))
        return viewer

    def unregister(self, viewer_id: str) -> None:
        viewer = self._viewers.pop(viewer_id, None)
        if viewer is None:
            return
        viewer.closed.set()
        logger.info("Viewer disconnected: %s (%d open)", viewer_id[:8], len(self._viewers))
        if self._event_bus:
            self._event_bus.publish(ViewerDisconnectedEvent(viewer_id, len(self._viewers)))

    async def send(self, viewer: ViewerConnection, frame: bytes) -> bool:
        """Write one frame. A failed write evicts the viewer and returns False."""
        try:
            await self._write(viewer, frame)
        except ConnectionWriteFailure as e:
            logger.warning("%s; evicting viewer", e)
            self.unregister(viewer.id)
            return False
        return True

    async def notify_reload(self) -> int:
        """Push a reload frame to every viewer. Returns successful deliveries."""
        snapshot = list(self._viewers.values())
        if not snapshot:
            return 0
        results = await asyncio.gather(*(self.send(v, RELOAD_FRAME) for v in snapshot))
        delivered = sum(1 for ok in results if ok)
        logger.info("Reload pushed to %d/%d viewer(s)", delivered, len(snapshot))
        return delivered

    def close_all(self) -> None:
        """Release every viewer handler and clear the registry."""
        for viewer_id in list(self._viewers):
            self.unregister(viewer_id)

    @staticmethod
    async def _write(viewer: ViewerConnection, frame: bytes) -> None:
        try:
            await viewer.channel.write(frame)
        except (ConnectionError, RuntimeError, OSError) as e:
            raise ConnectionWriteFailure(viewer.id, e) from e


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def _handle_index(request: web.Request) -> web.Response:
    store: ArtifactStore = request.app["store"]
    artifact = store.current
    html = artifact.html if artifact else PLACEHOLDER_DOCUMENT
    return web.Response(
        text=html, content_type="text/html",
        headers={"Cache-Control": "no-cache"},
    )


async def _handle_health(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok"})


async def _handle_events(request: web.Request) -> web.StreamResponse:
    """GET /events — SSE stream: ``connected`` once, then ``reload`` frames."""
    hub: NotificationHub = request.app["hub"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
    await response.prepare(request)

    viewer = hub.register(response)
    try:
        if await hub.send(viewer, CONNECTED_FRAME):
            while not viewer.closed.is_set():
                try:
                    await asyncio.wait_for(
                        viewer.closed.wait(), timeout=request.app["heartbeat"],
                    )
                except asyncio.TimeoutError:
                    if not await hub.send(viewer, PING_FRAME):
                        break
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        hub.unregister(viewer.id)

    return response


async def _handle_share(request: web.Request) -> web.Response:
    """GET /share — public URL with a scannable QR code."""
    url = request.app["public_url_fn"]()
    encoder: CodeEncoderPort | None = request.app["encoder"]
    if not url:
        body = "<h2>Tunnel not ready</h2><p>No public URL is available yet.</p>"
    else:
        safe_url = escape(url)
        body = "<h2>Scan to preview on mobile</h2>"
        if encoder is not None:
            body += f'<img src="{encoder.to_data_url(url)}" alt="QR code" width="300">'
        body += f'<p><a href="{safe_url}">{safe_url}</a></p>'
    return web.Response(
        text=_SHARE_HTML_TEMPLATE.format(body=body), content_type="text/html",
    )


# ---------------------------------------------------------------------------
# App factory & server class
# ---------------------------------------------------------------------------

def _build_app(
    store: ArtifactStore,
    hub: NotificationHub,
    public_url_fn: Callable[[], str | None],
    encoder: CodeEncoderPort | None,
    heartbeat: float,
) -> web.Application:
    app = web.Application()
    app["store"] = store
    app["hub"] = hub
    app["public_url_fn"] = public_url_fn
    app["encoder"] = encoder
    app["heartbeat"] = heartbeat

    app.router.add_get("/", _handle_index)
    app.router.add_get("/events", _handle_events)
    app.router.add_get("/health", _handle_health)
    app.router.add_get("/share", _handle_share)
    return app


class PreviewServer:
    """aiohttp-based preview server bound to one port."""

    def __init__(
        self,
        store: ArtifactStore,
        hub: NotificationHub,
        host: str = "127.0.0.1",
        port: int = 3000,
        port_attempts: int = 1,
        public_url_fn: Callable[[], str | None] | None = None,
        encoder: CodeEncoderPort | None = None,
        heartbeat: float = HEARTBEAT_INTERVAL,
    ) -> None:
        self._app = _build_app(
            store, hub, public_url_fn or (lambda: None), encoder, heartbeat,
        )
        self._host = host
        self._port = port
        self._port_attempts = max(1, port_attempts)
        self._runner: web.AppRunner | None = None

    @property
    def port(self) -> int:
        """The configured port, or the bound port once started."""
        return self._port

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        runner = web.AppRunner(self._app)
        await runner.setup()
        first_port = self._port
        try:
            for attempt in range(self._port_attempts):
                port = first_port + attempt
                site = web.TCPSite(runner, self._host, port)
                try:
                    await site.start()
                except OSError as e:
                    if e.errno not in _ADDR_IN_USE or attempt + 1 >= self._port_attempts:
                        raise
                    logger.warning("Port %d in use, trying %d", port, port + 1)
                    continue
                self._port = port
                break
        except BaseException:
            await runner.cleanup()
            raise
        self._runner = runner
        logger.info("Preview server running at http://localhost:%d", self._port)

    async def stop(self) -> None:
        if self._runner:
            runner, self._runner = self._runner, None
            await runner.cleanup()
            logger.info("Preview server stopped")
