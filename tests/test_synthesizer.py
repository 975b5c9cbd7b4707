"""Tests for newsletter drafting and layout."""

import asyncio

from agents.synthesizer import TemplateSynthesizer, create_synthesizer, render_newsletter_markdown
from config import Config
from models.artifacts import NewsletterDraft, Source

from conftest import NOW

SOURCES = [
    Source(title="Battery plant opens in Nevada", url="https://a.com/1", publisher="Reuters"),
    Source(title="Battery plant costs questioned", url="https://b.com/2", publisher="FT"),
    Source(title="Solid electrolytes explained", url="https://c.com/3"),
]


class TestTemplateSynthesizer:
    """Tests for the offline synthesizer."""

    def test_draft_from_sources(self):
        draft = asyncio.run(TemplateSynthesizer().synthesize("batteries", SOURCES))
        assert draft.summary == (
            "This briefing on batteries draws on 3 sources from 2 publishers. "
            "Leading coverage: Battery plant opens in Nevada."
        )
        assert draft.key_insights == [
            "Battery plant opens in Nevada (Reuters)",
            "Battery plant costs questioned (FT)",
            "Solid electrolytes explained",
        ]
        assert draft.themes == ["battery", "plant"]

    def test_deterministic(self):
        synth = TemplateSynthesizer()
        first = asyncio.run(synth.synthesize("batteries", SOURCES))
        second = asyncio.run(synth.synthesize("batteries", SOURCES))
        assert first == second

    def test_caps_insights(self):
        draft = asyncio.run(TemplateSynthesizer(max_insights=1).synthesize("batteries", SOURCES))
        assert len(draft.key_insights) == 1

    def test_no_sources(self):
        draft = asyncio.run(TemplateSynthesizer().synthesize("batteries", []))
        assert draft.summary == "No sources were found for batteries in this cycle."
        assert draft.key_insights == []


class TestCreateSynthesizer:
    """Tests for create_synthesizer."""

    def test_template_without_key(self):
        assert isinstance(create_synthesizer(Config(gemini_api_key="")), TemplateSynthesizer)


class TestRender:
    """Tests for render_newsletter_markdown."""

    def test_sections(self):
        draft = NewsletterDraft(summary="S.", key_insights=["one", "two"], themes=["grid"])
        body = render_newsletter_markdown("batteries", draft, SOURCES[:1], 0.56, 4, True, NOW)
        assert body.startswith("# Research Update #4: batteries\n\n## Executive Summary\n\nS.")
        assert "1. one\n2. two" in body
        assert "- grid" in body
        assert "- [Battery plant opens in Nevada (Reuters)](https://a.com/1)" in body
        assert "**Research Confidence:** 56%" in body
        assert body.endswith("*Generated on 2024-01-15 09:00 UTC*")

    def test_manual_has_no_schedule_section(self):
        body = render_newsletter_markdown("batteries", NewsletterDraft(summary="S."), [], 0.0, 1, False, NOW)
        assert "Schedule Information" not in body
        assert "## Sources" not in body

    def test_draft_body_wins(self):
        draft = NewsletterDraft(summary="S.", body="custom")
        assert render_newsletter_markdown("b", draft, SOURCES, 0.5, 1, True, NOW) == "custom"
