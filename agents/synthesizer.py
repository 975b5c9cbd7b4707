"""Newsletter synthesis for research streams.

Two implementations of the same contract:

SynthesizerAgent:
    PydanticAI agent producing a structured NewsletterDraft from the analyzed
    sources. Used when GEMINI_API_KEY is configured.

TemplateSynthesizer:
    Deterministic, offline drafting from source titles and publishers. Used
    without an API key and in tests.

Both return drafts only; numbering, confidence and persistence happen in the
pipeline's finalize stage.
"""

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from pydantic_ai import Agent, RunContext, UsageLimits

from config import Config
from errors import StageFailure
from models.artifacts import NewsletterDraft, Source, normalize_title

logger = logging.getLogger(__name__)


SYNTHESIZER_PROMPTS = {
    "zh": """你是一名研究编辑，负责为订阅主题撰写定期研究简报。

你将收到一个主题以及本次研究筛选出的来源列表（标题、出处、摘要、链接）。

## 输出要求（必须符合 NewsletterDraft 结构）
- summary：2-4句执行摘要，概括本期最重要的进展。
- key_insights：3-5条关键发现，每条一句话，尽量注明出处。
- themes：2-4个跨来源的主题或趋势。
- body：留空即可，系统会自动排版。

## 约束
1. 只使用提供的来源，不要编造事实或来源。
2. 若来源信息不足，在 summary 中明确说明。
3. 输出语言为中文。""",
    "en": """You are a research editor writing a recurring briefing on a subscribed topic.

You will receive the topic and the sources selected for this cycle (title, publisher, snippet, link).

## Output requirements (must conform to NewsletterDraft)
- summary: 2-4 sentence executive summary of the most important developments.
- key_insights: 3-5 key findings, one sentence each, attributing the source where possible.
- themes: 2-4 cross-cutting themes or trends.
- body: leave empty; the system lays out the newsletter.

## Constraints
1. Use only the provided sources. Do not invent facts or sources.
2. If the sources are thin, say so in the summary.
3. Write in English.""",
}

_STOPWORDS = frozenset(
    "the a an and or of to in on for with from by at as is are was were be this that "
    "new how why what after over into about amid says said will its their has have".split()
)


class Synthesizer(Protocol):
    """Contract for the synthesis stage of research runs."""

    async def synthesize(self, topic: str, sources: list[Source]) -> NewsletterDraft:
        ...


@dataclass
class SynthesizerContext:
    """Runtime context passed to the synthesizer agent."""

    language: str = "en"
    topic: str = ""


def _create_agent(model: str) -> Agent[SynthesizerContext, NewsletterDraft]:
    agent = Agent(
        model,
        output_type=NewsletterDraft,
        deps_type=SynthesizerContext,
        system_prompt=SYNTHESIZER_PROMPTS["en"],
        retries=2,
    )

    @agent.system_prompt
    def dynamic_prompt(ctx: RunContext[SynthesizerContext]) -> str:
        return SYNTHESIZER_PROMPTS.get(ctx.deps.language, SYNTHESIZER_PROMPTS["en"])

    return agent


def _build_user_message(topic: str, sources: list[Source]) -> str:
    lines = [f"Topic: {topic}", f"Sources provided: {len(sources)}"]
    for i, source in enumerate(sources, start=1):
        lines.extend([
            "",
            f"[{i}] {source.title}",
            f"Publisher: {source.publisher or 'unknown'}",
            f"Link: {source.url}",
        ])
        if source.snippet:
            lines.append(f"Snippet: {source.snippet[:500]}")
    return "\n".join(lines)


class SynthesizerAgent:
    """Drafts research newsletters with a PydanticAI agent."""

    def __init__(self, config: Config):
        """Initialize the synthesizer agent.

        Args:
            config: Application configuration with model and language settings
        """
        self.config = config
        self._agent = _create_agent(config.synthesis_model)
        self.language = config.language

    async def synthesize(self, topic: str, sources: list[Source]) -> NewsletterDraft:
        """Draft a newsletter for `topic` from analyzed sources.

        Raises:
            StageFailure: On model or output validation errors (retryable)
        """
        try:
            result = await self._agent.run(
                _build_user_message(topic, sources),
                deps=SynthesizerContext(language=self.language, topic=topic),
                usage_limits=UsageLimits(request_limit=3),
            )
        except Exception as e:
            raise StageFailure("synthesis", f"{type(e).__name__}: {e}") from e

        usage = result.usage()
        logger.info(
            "Newsletter drafted | topic='%s' sources=%d input_tokens=%d output_tokens=%d",
            topic[:40], len(sources), usage.input_tokens or 0, usage.output_tokens or 0,
        )
        return result.output


class TemplateSynthesizer:
    """Offline synthesizer: deterministic drafts from source metadata."""

    def __init__(self, max_insights: int = 5):
        self.max_insights = max_insights

    async def synthesize(self, topic: str, sources: list[Source]) -> NewsletterDraft:
        if not sources:
            return NewsletterDraft(summary=f"No sources were found for {topic} in this cycle.")

        publishers = sorted({s.publisher for s in sources if s.publisher})
        lead = sources[0]
        summary = (
            f"This briefing on {topic} draws on {len(sources)} sources"
            + (f" from {len(publishers)} publishers" if publishers else "")
            + f". Leading coverage: {lead.title}."
        )
        insights = [
            f"{s.title} ({s.publisher})" if s.publisher else s.title
            for s in sources[: self.max_insights]
        ]

        topic_words = set(normalize_title(topic).split())
        words = Counter(
            word
            for s in sources
            for word in set(normalize_title(s.title).split())
            if len(word) > 3 and word not in _STOPWORDS and word not in topic_words
        )
        themes = [word for word, count in sorted(words.items(), key=lambda kv: (-kv[1], kv[0])) if count > 1][:4]

        return NewsletterDraft(summary=summary, key_insights=insights, themes=themes)


def create_synthesizer(config: Config) -> Synthesizer:
    """Pick the AI synthesizer when an API key is configured, else the template one."""
    if config.gemini_api_key:
        return SynthesizerAgent(config)
    logger.info("GEMINI_API_KEY not set, using template synthesizer")
    return TemplateSynthesizer()


def render_newsletter_markdown(
    topic: str,
    draft: NewsletterDraft,
    sources: list[Source],
    confidence: float,
    report_number: int,
    is_automated: bool,
    generated_at: datetime,
) -> str:
    """Lay out a draft as the newsletter body."""
    if draft.body:
        return draft.body

    lines = [
        f"# Research Update #{report_number}: {topic.strip()}",
        "",
        "## Executive Summary",
        "",
        draft.summary,
    ]

    if draft.key_insights:
        lines.extend(["", "## Key Insights", ""])
        lines.extend(f"{i}. {insight}" for i, insight in enumerate(draft.key_insights, start=1))

    if draft.themes:
        lines.extend(["", "## Themes", ""])
        lines.extend(f"- {theme}" for theme in draft.themes)

    if sources:
        lines.extend(["", "## Sources", ""])
        for source in sources:
            label = f"{source.title} ({source.publisher})" if source.publisher else source.title
            lines.append(f"- [{label}]({source.url})")

    lines.extend([
        "",
        "## Methodology",
        "",
        f"- Sources analyzed: {len(sources)}",
        "- Credibility and relevance filtering",
    ])

    if is_automated:
        lines.extend([
            "",
            "## Schedule Information",
            "",
            f"- **Research Confidence:** {round(confidence * 100)}%",
            "",
            "*This is an automated research report. The next update arrives as scheduled.*",
        ])

    lines.extend(["", "---", "", f"*Generated on {generated_at.strftime('%Y-%m-%d %H:%M UTC')}*"])
    return "\n".join(lines)
