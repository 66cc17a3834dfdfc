"""Recompile loop — watch one source file, recompile on change, signal viewers.

At most one compile is in flight. Change events that arrive while a compile
runs collapse into a single follow-up compile once it finishes.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Awaitable, Callable

from watchfiles import Change, awatch

from mailmirror.core.artifact import ArtifactStore, CompiledArtifact
from mailmirror.core.errors import CompileFailure
from mailmirror.core.events import (
    ArtifactCompiledEvent,
    CompileFailedEvent,
    EventBus,
)
from mailmirror.ports.compiler import CompilerPort, CompileResult

logger = logging.getLogger(__name__)

OnCompiledFn = Callable[[CompiledArtifact], Awaitable[None]]


class RecompileLoop:
    """Keeps an ArtifactStore in sync with a source file."""

    def __init__(
        self,
        source_path: str | Path,
        store: ArtifactStore,
        compiler: CompilerPort,
        on_compiled: OnCompiledFn | None = None,
        postprocess: Callable[[str], str] | None = None,
        event_bus: EventBus | None = None,
        debounce_ms: int = 100,
    ) -> None:
        self._path = Path(source_path).resolve()
        self._store = store
        self._compiler = compiler
        self._on_compiled = on_compiled
        self._postprocess = postprocess or (lambda html: html)
        self._event_bus = event_bus
        self._debounce_ms = debounce_ms

        self._primed = False
        self._pending = False
        self._compile_count = 0
        self._compile_task: asyncio.Task | None = None
        self._watch_task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def source_path(self) -> Path:
        return self._path

    @property
    def compile_count(self) -> int:
        """Number of finished compile attempts (successful or not)."""
        return self._compile_count

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    # -- Lifecycle -------------------------------------------------------------

    async def compile_now(self) -> bool:
        """Initial compile. Updates the store but does not broadcast."""
        self._primed = True
        return await self._compile(broadcast=False)

    async def start(self) -> None:
        """Compile (unless already done) and begin watching the source file."""
        if self._watch_task is not None:
            return
        if not self._primed:
            await self.compile_now()
        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch())
        logger.info("Watching %s", self._path)

    async def stop(self) -> None:
        """Stop watching and drop any pending recompile. Idempotent."""
        self._stop_event.set()
        self._pending = False

        tasks = [t for t in (self._watch_task, self._compile_task) if t is not None]
        self._watch_task = None
        self._compile_task = None
        for task in tasks:
            if not task.done():
                task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Stopped watching %s", self._path)

    # -- Triggering ------------------------------------------------------------

    def request_compile(self) -> None:
        """Schedule a recompile, coalescing with any compile already in flight."""
        if self._stop_event.is_set():
            return
        self._pending = True
        if self._compile_task is None or self._compile_task.done():
            self._compile_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending and not self._stop_event.is_set():
            self._pending = False
            await self._compile(broadcast=True)

    async def _watch(self) -> None:
        def _is_source(change: Change, path: str) -> bool:
            return change != Change.deleted and Path(path).resolve() == self._path

        try:
            async for _changes in awatch(
                self._path.parent,
                watch_filter=_is_source,
                stop_event=self._stop_event,
                debounce=self._debounce_ms,
                recursive=False,
            ):
                logger.info("Source changed, recompiling: %s", self._path.name)
                self.request_compile()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("File watcher for %s failed", self._path)

    # -- Compile step ----------------------------------------------------------

    async def _compile(self, broadcast: bool) -> bool:
        try:
            result = await self._run_compiler()
        except CompileFailure as e:
            self._compile_count += 1
            self._store.record_failure(e.diagnostics)
            logger.warning("Compile failed for %s: %s", self._path.name, e)
            if self._event_bus:
                self._event_bus.publish(
                    CompileFailedEvent(str(self._path), e.diagnostics),
                )
            return False

        self._compile_count += 1
        artifact = CompiledArtifact(
            source_path=str(self._path),
            html=self._postprocess(result.html),
            diagnostics=tuple(result.diagnostics),
            compiled_at=datetime.now(timezone.utc),
        )
        self._store.replace(artifact)
        if artifact.diagnostics:
            logger.warning(
                "Compiled %s with warnings: %s",
                self._path.name, ", ".join(artifact.diagnostics),
            )
        else:
            logger.info("Compiled %s", self._path.name)

        if self._event_bus:
            self._event_bus.publish(ArtifactCompiledEvent(
                artifact.source_path, artifact.diagnostics, artifact.compiled_at,
            ))
        if broadcast and self._on_compiled:
            await self._on_compiled(artifact)
        return True

    async def _run_compiler(self) -> CompileResult:
        """Read the source and compile it. Raises CompileFailure."""
        try:
            source = self._path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise CompileFailure([f"Cannot read {self._path}: {e}"]) from e

        try:
            result = self._compiler.compile(source)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.exception("Compiler raised for %s", self._path.name)
            raise CompileFailure([f"Compiler error: {e}"]) from e

        if not result.html.strip():
            raise CompileFailure(result.diagnostics or ["Compiler produced no output"])
        return result
