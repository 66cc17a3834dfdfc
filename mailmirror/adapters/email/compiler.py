"""E-mail template compiler — MJML via the ``mjml`` package, HTML passed through."""
from __future__ import annotations

import asyncio
import io
import logging

from mjml import mjml_to_html

from mailmirror.ports.compiler import CompileResult

logger = logging.getLogger(__name__)

_FRAGMENT_TEMPLATE = """\
<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1.0"></head>
<body>
{content}
</body>
</html>
"""


def detect_format(source: str) -> str:
    """Return ``"mjml"`` for MJML sources, ``"html"`` for anything else."""
    if source.strip().startswith("<mjml") or "<mj-" in source:
        return "mjml"
    return "html"


def compile_mjml(source: str) -> CompileResult:
    try:
        result = mjml_to_html(io.StringIO(source))
    except Exception as e:
        return CompileResult(html="", diagnostics=[f"MJML compilation failed: {e}"])
    errors = [str(err) for err in (result.errors or [])]
    return CompileResult(html=result.html or "", diagnostics=errors)


def compile_html(source: str) -> CompileResult:
    """Plain HTML passes through; bare fragments get a minimal document."""
    if not source.strip():
        return CompileResult(html="", diagnostics=["Source is empty"])
    lowered = source.lower()
    if "<html" in lowered or "<body" in lowered:
        return CompileResult(html=source)
    return CompileResult(html=_FRAGMENT_TEMPLATE.format(content=source))


class EmailCompiler:
    """CompilerPort implementation with MJML auto-detection.

    MJML rendering is CPU-bound and synchronous, so it runs in the default
    executor to keep the event loop responsive.
    """

    async def compile(self, source: str) -> CompileResult:
        fmt = detect_format(source)
        logger.debug("Compiling %d chars as %s", len(source), fmt)
        if fmt == "mjml":
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, compile_mjml, source)
        return compile_html(source)
