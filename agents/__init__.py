"""Synthesis agents for research streams.

SynthesizerAgent:
    PydanticAI agent (Gemini) producing structured newsletter drafts.

TemplateSynthesizer:
    Deterministic offline drafting used without an API key.

Example:
    >>> from agents import create_synthesizer
    >>> synthesizer = create_synthesizer(config)
    >>> draft = await synthesizer.synthesize("quantum computing", sources)
"""

from agents.synthesizer import (
    Synthesizer,
    SynthesizerAgent,
    TemplateSynthesizer,
    create_synthesizer,
    render_newsletter_markdown,
)

__all__ = [
    "Synthesizer",
    "SynthesizerAgent",
    "TemplateSynthesizer",
    "create_synthesizer",
    "render_newsletter_markdown",
]
