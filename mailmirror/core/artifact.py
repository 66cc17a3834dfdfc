"""Compiled artifact store — the latest served document for one source."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class CompiledArtifact:
    source_path: str
    html: str  # served document, reload client already injected
    diagnostics: tuple[str, ...]
    compiled_at: datetime


class ArtifactStore:
    """Holds the current artifact. Written only by the recompile loop."""

    def __init__(self) -> None:
        self._current: CompiledArtifact | None = None
        self._last_failure: tuple[str, ...] = ()

    @property
    def current(self) -> CompiledArtifact | None:
        return self._current

    @property
    def last_failure(self) -> tuple[str, ...]:
        """Diagnostics of the latest failed compile (empty after a success)."""
        return self._last_failure

    def replace(self, artifact: CompiledArtifact) -> None:
        self._current = artifact
        self._last_failure = ()

    def record_failure(self, diagnostics: tuple[str, ...]) -> None:
        self._last_failure = tuple(diagnostics)
