from __future__ import annotations

from typing import Protocol


class CodeEncoderPort(Protocol):
    """Scannable-code encoder interface (URL -> image)."""

    def to_data_url(self, url: str) -> str:
        """Return an embeddable ``data:`` URL image of *url*."""
        ...

    def to_text(self, url: str) -> str:
        """Return a terminal rendering of *url*."""
        ...
