from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

from mailmirror.adapters.email.compiler import EmailCompiler
from mailmirror.adapters.outlook.fixer import OutlookFixer
from mailmirror.adapters.qr.encoder import QRCodeEncoder
from mailmirror.config import PreviewConfig
from mailmirror.core import subprocess_tracker
from mailmirror.core.errors import BinaryMissingError, TunnelError
from mailmirror.core.events import (
    ArtifactCompiledEvent,
    CompileFailedEvent,
    EventBus,
    TunnelStoppedEvent,
    ViewerConnectedEvent,
    ViewerDisconnectedEvent,
)
from mailmirror.core.session import PreviewSession

LOG_FILE = "/tmp/mailmirror.log"

logger = logging.getLogger("mailmirror")

_CONSOLE_EVENT_TYPES: list[type] = [
    ArtifactCompiledEvent,
    CompileFailedEvent,
    ViewerConnectedEvent,
    ViewerDisconnectedEvent,
    TunnelStoppedEvent,
]


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE),
        ],
    )


def format_event(ev: object) -> str | None:
    """Render a session event as one console line (None to skip)."""
    if isinstance(ev, ArtifactCompiledEvent):
        line = f"Recompiled at {ev.compiled_at:%H:%M:%S}"
        if ev.diagnostics:
            line += f" with warnings: {', '.join(ev.diagnostics)}"
        return line
    if isinstance(ev, CompileFailedEvent):
        return f"Compile failed, still serving previous version: {', '.join(ev.diagnostics)}"
    if isinstance(ev, ViewerConnectedEvent):
        return f"Viewer connected ({ev.viewer_count} watching)"
    if isinstance(ev, ViewerDisconnectedEvent):
        return f"Viewer left ({ev.viewer_count} watching)"
    if isinstance(ev, TunnelStoppedEvent):
        return f"Tunnel exited (code {ev.returncode}); public URL is no longer available"
    return None


async def _render_events(event_bus: EventBus) -> None:
    queue = event_bus.subscribe_many(_CONSOLE_EVENT_TYPES)
    try:
        while True:
            line = format_event(await queue.get())
            if line:
                print(line, flush=True)
    finally:
        event_bus.unsubscribe_all(queue)


async def preview(source: Path, config: PreviewConfig, show_qr: bool = True) -> int:
    subprocess_tracker.set_pid_file(config.pid_file)
    subprocess_tracker.cleanup_stale_pids()

    event_bus = EventBus()
    encoder = QRCodeEncoder()
    session = PreviewSession(
        EmailCompiler(), config=config, event_bus=event_bus, encoder=encoder,
    )
    renderer = asyncio.create_task(_render_events(event_bus))

    try:
        url = await session.start(source)
    except BinaryMissingError as e:
        print(str(e), file=sys.stderr)
        renderer.cancel()
        return 1
    except (TunnelError, OSError) as e:
        print(f"Failed to start preview: {e}", file=sys.stderr)
        renderer.cancel()
        return 1

    print(f"\nPreviewing {source.name}")
    print(f"Local:  http://localhost:{session.port}")
    print(f"Public: {url}")
    if show_qr:
        print()
        print(encoder.to_text(url))
    print("\nPress Ctrl+C to stop.", flush=True)

    stop_event = asyncio.Event()

    def handle_signal() -> None:
        logger.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handle_signal)
        except NotImplementedError:
            pass  # Windows: KeyboardInterrupt ends the run instead

    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down...")
        renderer.cancel()
        await session.stop()
    return 0


async def fix_outlook(source: Path, output: Path | None, config: PreviewConfig) -> int:
    html = source.read_text(encoding="utf-8")
    fixer = OutlookFixer(api_key=config.openai_api_key, model=config.outlook_model)
    if not fixer.uses_ai:
        logger.info("No OpenAI API key configured, using heuristic Outlook fixes")
    fixed = await fixer.fix(html)
    if output is None:
        print(fixed)
    else:
        output.write_text(fixed, encoding="utf-8")
        print(f"Wrote Outlook-compatible HTML to {output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailmirror",
        description="Live e-mail template preview with a public tunnel URL.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p_preview = sub.add_parser("preview", help="serve, watch and tunnel a template")
    p_preview.add_argument("source", type=Path, help="MJML or HTML template file")
    p_preview.add_argument("--port", type=int, default=None, help="local HTTP port")
    p_preview.add_argument("--no-qr", action="store_true", help="do not print a QR code")

    p_fix = sub.add_parser("fix-outlook", help="rewrite HTML for Outlook")
    p_fix.add_argument("source", type=Path, help="HTML file to fix")
    p_fix.add_argument("-o", "--output", type=Path, default=None, help="output file")
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    _setup_logging(args.verbose)
    config = PreviewConfig.from_env()

    if args.command == "preview":
        if args.port is not None:
            config.port = args.port
        return await preview(args.source, config, show_qr=not args.no_qr)
    return await fix_outlook(args.source, args.output, config)


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
