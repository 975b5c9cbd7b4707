"""Deterministic scoring for the analysis and synthesis stages.

Nothing here calls a model or reads the clock: given the same sources, topic,
reference time and weights, every score is identical. That keeps newsletter
confidence and alert importance reproducible in tests.

Scores:
    relevance:   topic-word overlap with the title, plus an exact-phrase bonus (0-1)
    credibility: domain reputation on a 0.5 base (0-1)
    importance:  relevance scaled to 1-10, bumped for breaking keywords and recency
    confidence:  w_count * min(n / saturation, 1) + w_cred * mean(credibility), capped at 1
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import urlparse

from models.artifacts import Source, normalize_title

ACADEMIC_DOMAINS = (
    "pubmed.ncbi.nlm.nih.gov", "arxiv.org", "scholar.google.com",
    "jstor.org", "ieee.org", "acm.org", "nature.com", "science.org",
)

NEWS_DOMAINS = (
    "reuters.com", "apnews.com", "bbc.co.uk", "bbc.com", "ft.com",
    "nytimes.com", "wsj.com", "bloomberg.com", "economist.com", "theguardian.com",
)

LOW_TRUST_DOMAINS = ("medium.com", "substack.com", "blogspot.com", "wordpress.com")

BREAKING_KEYWORDS = (
    "breaking", "urgent", "alert", "developing", "live",
    "just in", "update", "confirmed", "reports", "emergency",
)

RECENT_WINDOW = timedelta(hours=2)


@dataclass(frozen=True)
class ScoringWeights:
    """Fixed weights for the confidence formula."""

    count_weight: float = 0.4
    credibility_weight: float = 0.6
    saturation: int = 10


def _domain(url: str) -> str:
    host = urlparse(url).hostname or ""
    return host.removeprefix("www.")


def _matches(domain: str, candidates: tuple[str, ...]) -> bool:
    return any(domain == c or domain.endswith("." + c) for c in candidates)


def relevance_score(text: str, topic: str) -> float:
    """How well a headline matches the stream topic (0-1)."""
    text_norm = normalize_title(text)
    topic_norm = normalize_title(topic)
    if not topic_norm:
        return 0.0
    words = set(text_norm.split())
    score = 0.0
    for word in topic_norm.split():
        if word in words:
            score += 0.3 if len(word) > 3 else 0.1
    if topic_norm in text_norm:
        score += 0.4
    return min(1.0, round(score, 4))


def is_academic(source: Source) -> bool:
    return _matches(_domain(source.url), ACADEMIC_DOMAINS)


def credibility_score(source: Source) -> float:
    """Reputation of a source's domain (0-1)."""
    domain = _domain(source.url)
    score = 0.5
    if _matches(domain, ACADEMIC_DOMAINS):
        score += 0.4
    elif _matches(domain, NEWS_DOMAINS):
        score += 0.3
    elif domain.endswith(".gov") or domain.endswith(".edu"):
        score += 0.3
    elif _matches(domain, LOW_TRUST_DOMAINS):
        score -= 0.2
    if source.publisher:
        score += 0.1
    return round(min(1.0, max(0.0, score)), 4)


def importance_score(source: Source, reference: datetime) -> int:
    """1-10 importance for an analyzed news source.

    Args:
        source: Source with relevance already filled in
        reference: Execution start time used for the recency bump
    """
    score = math.floor(source.relevance * 7)
    text = f"{source.title} {source.snippet}".lower()
    if any(keyword in text for keyword in BREAKING_KEYWORDS):
        score += 2
    if source.published_at and reference - source.published_at <= RECENT_WINDOW:
        score += 1
    return max(1, min(10, score))


def confidence_score(sources: list[Source], weights: ScoringWeights = ScoringWeights()) -> float:
    """Newsletter confidence from source count and mean credibility."""
    if not sources:
        return 0.0
    count_term = min(len(sources) / weights.saturation, 1.0)
    mean_cred = sum(s.credibility for s in sources) / len(sources)
    return round(min(1.0, weights.count_weight * count_term + weights.credibility_weight * mean_cred), 4)


def analyze_sources(
    sources: list[Source],
    topic: str,
    min_credibility: float = 0.0,
    max_sources: int | None = None,
    academic_only: bool = False,
) -> list[Source]:
    """Dedupe, score, filter and rank discovered sources.

    Duplicates are dropped by URL and by normalized title, keeping the first
    occurrence. With `academic_only`, only academic domains survive.
    Survivors are ordered by (relevance, credibility) descending, with the
    title as a stable tiebreak.
    """
    seen_urls: set[str] = set()
    seen_keys: set[str] = set()
    scored: list[Source] = []
    for source in sources:
        if source.url in seen_urls or source.key in seen_keys:
            continue
        seen_urls.add(source.url)
        seen_keys.add(source.key)
        scored.append(source.model_copy(update={
            "relevance": relevance_score(f"{source.title} {source.snippet}", topic),
            "credibility": credibility_score(source),
        }))

    kept = [s for s in scored if s.credibility >= min_credibility]
    if academic_only:
        kept = [s for s in kept if is_academic(s)]
    kept.sort(key=lambda s: (-s.relevance, -s.credibility, s.title))
    if max_sources is not None:
        kept = kept[:max_sources]
    return kept
