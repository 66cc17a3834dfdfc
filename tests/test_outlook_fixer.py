from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailmirror.adapters.outlook.fixer import (
    OutlookFixer,
    build_prompt,
    fix_for_outlook,
)


def _completion(content: str | None):
    message = SimpleNamespace(content=content)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _client(result=None, error: Exception | None = None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=result, side_effect=error)
    return client


class TestHeuristicFix:
    def test_background_image_gets_vml(self):
        html = '<td style="background-image: url(\'https://x.test/bg.png\');">Hi</td>'
        fixed = fix_for_outlook(html)
        assert "<v:rect" in fixed
        assert 'src="https://x.test/bg.png"' in fixed
        assert fixed.index("<v:rect") < fixed.index("<td")
        assert fixed.rstrip().endswith("<![endif]-->")

    def test_flex_layout_flagged(self):
        fixed = fix_for_outlook('<div style="display: flex">a</div>')
        assert "Flex layout detected" in fixed

    def test_mso_block_after_head(self):
        fixed = fix_for_outlook("<html><head><title>t</title></head><body></body></html>")
        assert fixed.index("<head>") < fixed.index("<!--[if mso]>") < fixed.index("<title>")

    def test_mso_block_prepended_without_head(self):
        fixed = fix_for_outlook("<table><tr><td>x</td></tr></table>")
        assert fixed.startswith("<!--[if mso]>")

    def test_existing_mso_block_kept_single(self):
        html = "<!--[if mso]><style></style><![endif]--><p>x</p>"
        assert fix_for_outlook(html).count("<!--[if mso]>") == 1


class TestOutlookFixer:
    async def test_no_key_uses_heuristic(self):
        fixer = OutlookFixer()
        assert not fixer.uses_ai
        assert "<!--[if mso]>" in await fixer.fix("<p>x</p>")

    async def test_empty_input_rejected(self):
        with pytest.raises(ValueError):
            await OutlookFixer().fix("  ")

    async def test_ai_result_returned(self):
        client = _client(_completion("<table><tr><td>x</td></tr></table>"))
        fixer = OutlookFixer(model="test-model", client=client)

        assert await fixer.fix("<div>x</div>") == "<table><tr><td>x</td></tr></table>"
        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["messages"][0]["content"] == build_prompt("<div>x</div>")

    async def test_markdown_fences_stripped(self):
        client = _client(_completion("```html\n<table></table>\n```"))
        assert await OutlookFixer(client=client).fix("<div>x</div>") == "<table></table>"

    async def test_api_error_falls_back(self):
        client = _client(error=RuntimeError("rate limited"))
        fixed = await OutlookFixer(client=client).fix("<p>x</p>")
        assert fixed == fix_for_outlook("<p>x</p>")

    async def test_empty_answer_falls_back(self):
        client = _client(_completion(None))
        fixed = await OutlookFixer(client=client).fix("<p>x</p>")
        assert fixed == fix_for_outlook("<p>x</p>")

    def test_prompt_embeds_html(self):
        prompt = build_prompt("<div id='hero'></div>")
        assert "<div id='hero'></div>" in prompt
        assert "VML" in prompt
