"""Outlook fixer — rewrite e-mail HTML for Outlook's Word rendering engine.

Without an OpenAI API key a heuristic rewrite is applied (VML background
fallback, flex-layout warning, mso conditional styles). With a key the
snippet is rewritten by a chat model.
"""
from __future__ import annotations

import logging
import re

logger = logging.getLogger(__name__)

_MSO_STYLE_BLOCK = (
    "<!--[if mso]>\n"
    "<style>\n"
    "  table { border-collapse: collapse; }\n"
    "  td { padding: 0; }\n"
    "</style>\n"
    "<![endif]-->\n"
)

_VML_OPEN = (
    "<!--[if gte mso 9]>\n"
    '<v:rect xmlns:v="urn:schemas-microsoft-com:vml" fill="true" stroke="false" '
    'style="width:600px;height:300px;">\n'
    '<v:fill type="tile" src="{src}" color="#FFFFFF" />\n'
    '<v:textbox inset="0,0,0,0">\n'
    "<![endif]-->\n"
)

_VML_CLOSE = "\n<!--[if gte mso 9]>\n</v:textbox>\n</v:rect>\n<![endif]-->\n"

_FLEX_NOTE = (
    "<!-- Flex layout detected: Outlook ignores display:flex, "
    "use a table-based layout instead. -->\n"
)

_BACKGROUND_RE = re.compile(r"background(?:-image)?\s*:[^;\"']*url\(\s*['\"]?([^'\")]+)")
_FLEX_RE = re.compile(r"display\s*:\s*(?:inline-)?flex")
_HEAD_RE = re.compile(r"<head[^>]*>", re.IGNORECASE)
_FENCE_RE = re.compile(r"^```[a-zA-Z]*\n(.*?)\n?```\s*$", re.DOTALL)

_PROMPT_TEMPLATE = """You are an expert email developer specializing in Outlook compatibility.

The following HTML snippet may not render correctly in Outlook (especially Outlook 2007-2019 on Windows, which uses the Word rendering engine).

Please rewrite this HTML to be compatible with Outlook by:
1. Converting CSS background images to VML (Vector Markup Language)
2. Replacing flexbox layouts with table-based layouts
3. Using inline styles instead of CSS classes
4. Adding conditional comments for Outlook-specific code
5. Using web-safe fonts with appropriate fallbacks
6. Avoiding CSS properties not supported by Outlook (like box-shadow, border-radius on tables, etc.)

HTML to fix:
{html}

Please return ONLY the fixed HTML code, with no explanation or markdown formatting."""


def build_prompt(html: str) -> str:
    return _PROMPT_TEMPLATE.format(html=html)


def fix_for_outlook(html: str) -> str:
    """Heuristic Outlook rewrite of *html*."""
    fixed = html

    bg = _BACKGROUND_RE.search(html)
    if bg:
        fixed = _VML_OPEN.format(src=bg.group(1).strip()) + fixed + _VML_CLOSE

    if _FLEX_RE.search(html):
        fixed = _FLEX_NOTE + fixed

    if "<!--[if mso]>" not in html:
        head = _HEAD_RE.search(fixed)
        if head:
            fixed = fixed[:head.end()] + "\n" + _MSO_STYLE_BLOCK + fixed[head.end():]
        else:
            fixed = _MSO_STYLE_BLOCK + fixed

    return fixed


def _strip_fences(text: str) -> str:
    match = _FENCE_RE.match(text.strip())
    return match.group(1) if match else text.strip()


class OutlookFixer:
    """Rewrites HTML for Outlook, with a chat model when an API key is set."""

    def __init__(self, api_key: str = "", model: str = "gpt-4o-mini", client=None) -> None:
        self._model = model
        self._client = client
        if self._client is None and api_key:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=api_key)

    @property
    def uses_ai(self) -> bool:
        return self._client is not None

    async def fix(self, html: str) -> str:
        if not html.strip():
            raise ValueError("Nothing to fix: HTML is empty")
        if self._client is None:
            return fix_for_outlook(html)

        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": build_prompt(html)}],
            )
            content = response.choices[0].message.content or ""
        except Exception as e:
            logger.warning("AI Outlook fix failed (%s), using heuristic rewrite", e)
            return fix_for_outlook(html)

        fixed = _strip_fences(content)
        if not fixed:
            logger.warning("AI Outlook fix returned nothing, using heuristic rewrite")
            return fix_for_outlook(html)
        logger.info("Outlook fix via %s (%d -> %d chars)", self._model, len(html), len(fixed))
        return fixed
