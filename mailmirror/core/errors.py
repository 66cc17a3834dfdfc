"""Error taxonomy for preview sessions.

Tunnel errors abort a session start. Compile and connection-write failures
are raised and absorbed locally (stale artifact kept, one viewer evicted).
"""
from __future__ import annotations


class PreviewError(RuntimeError):
    """Base class for all preview errors."""


class TunnelError(PreviewError):
    """The tunnel could not produce a public URL."""


class BinaryMissingError(TunnelError):
    """The tunnel binary is not installed (message carries install guidance)."""


class TunnelTimeoutError(TunnelError):
    """No public URL was observed before the deadline."""


class TunnelProcessError(TunnelError):
    """The tunnel process failed to spawn or exited before publishing a URL."""

    def __init__(self, message: str, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class CompileFailure(PreviewError):
    """A recompile produced no usable document."""

    def __init__(self, diagnostics: list[str] | tuple[str, ...]) -> None:
        self.diagnostics = tuple(diagnostics)
        super().__init__("; ".join(self.diagnostics) or "compile failed")


class ConnectionWriteFailure(PreviewError):
    """Writing a frame to one viewer failed."""

    def __init__(self, viewer_id: str, cause: BaseException) -> None:
        super().__init__(f"write to viewer {viewer_id} failed: {cause}")
        self.viewer_id = viewer_id
        self.cause = cause
