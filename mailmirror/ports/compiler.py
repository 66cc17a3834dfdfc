from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Protocol, runtime_checkable


@dataclass
class CompileResult:
    """Rendered output plus diagnostics. Blank ``html`` means the compile failed."""

    html: str
    diagnostics: list[str] = field(default_factory=list)


@runtime_checkable
class CompilerPort(Protocol):
    """Document compiler interface.

    Implementations may be sync or async. Malformed input must not raise:
    it yields empty or partial ``html`` plus non-empty ``diagnostics``.
    """

    def compile(self, source: str) -> CompileResult | Awaitable[CompileResult]:
        """Compile raw source text."""
        ...
