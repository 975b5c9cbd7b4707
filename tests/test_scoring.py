"""Tests for deterministic source scoring."""

from datetime import timedelta

import pytest

from models.artifacts import Source
from scoring import (
    ScoringWeights,
    analyze_sources,
    confidence_score,
    credibility_score,
    importance_score,
    relevance_score,
)

from conftest import NOW


class TestRelevance:
    """Tests for relevance_score."""

    def test_exact_phrase(self):
        assert relevance_score("Quantum computing breakthrough", "quantum computing") == 1.0

    def test_partial_overlap(self):
        assert relevance_score("Quantum sensors improve", "quantum computing") == pytest.approx(0.3)

    def test_short_words_count_less(self):
        assert relevance_score("AI chips", "AI policy") == pytest.approx(0.1)

    def test_no_overlap(self):
        assert relevance_score("Gardening tips", "quantum computing") == 0.0


class TestCredibility:
    """Tests for credibility_score."""

    @pytest.mark.parametrize("url,publisher,expected", [
        ("https://arxiv.org/abs/1", "", 0.9),
        ("https://www.reuters.com/a", "Reuters", 0.9),
        ("https://energy.gov/report", "", 0.8),
        ("https://someone.substack.com/p/1", "", 0.3),
        ("https://example.com/a", "", 0.5),
    ])
    def test_domains(self, url, publisher, expected):
        assert credibility_score(Source(title="t", url=url, publisher=publisher)) == pytest.approx(expected)


class TestImportance:
    """Tests for importance_score."""

    def test_breaking_and_recent(self):
        source = Source(title="Breaking: rule change", url="https://a.com", relevance=1.0,
                        published_at=NOW - timedelta(minutes=5))
        assert importance_score(source, NOW) == 10

    def test_old_plain_story(self):
        source = Source(title="Background explainer", url="https://a.com", relevance=0.6,
                        published_at=NOW - timedelta(days=2))
        assert importance_score(source, NOW) == 4

    def test_floor_is_one(self):
        assert importance_score(Source(title="Nothing", url="https://a.com"), NOW) == 1


class TestAnalyze:
    """Tests for analyze_sources."""

    def test_dedupes_by_url_and_title(self):
        sources = [
            Source(title="Fusion record set", url="https://a.com/1"),
            Source(title="Fusion record set!", url="https://b.com/2"),
            Source(title="Another fusion item", url="https://a.com/1"),
            Source(title="Fusion plant approved", url="https://c.com/3"),
        ]
        kept = analyze_sources(sources, "fusion")
        # equal scores fall back to title order
        assert [s.url for s in kept] == ["https://c.com/3", "https://a.com/1"]
        assert kept[1].title == "Fusion record set"

    def test_filters_and_caps(self):
        sources = [
            Source(title=f"fusion item {i}", url=f"https://site{i}.substack.com/p") for i in range(3)
        ] + [Source(title="fusion study", url="https://arxiv.org/abs/9")]
        kept = analyze_sources(sources, "fusion", min_credibility=0.5)
        assert [s.url for s in kept] == ["https://arxiv.org/abs/9"]
        assert len(analyze_sources(sources, "fusion", max_sources=2)) == 2

    def test_academic_only(self):
        sources = [
            Source(title="fusion news", url="https://www.reuters.com/x"),
            Source(title="fusion preprint", url="https://arxiv.org/abs/7"),
            Source(title="fusion paper", url="https://www.nature.com/articles/1"),
        ]
        kept = analyze_sources(sources, "fusion", academic_only=True)
        assert sorted(s.url for s in kept) == ["https://arxiv.org/abs/7", "https://www.nature.com/articles/1"]
        assert len(analyze_sources(sources, "fusion")) == 3

    def test_ranked_by_relevance_then_credibility(self):
        sources = [
            Source(title="Fusion energy milestone", url="https://example.com/1"),
            Source(title="Fusion energy milestone report", url="https://arxiv.org/abs/2"),
            Source(title="Unrelated", url="https://arxiv.org/abs/3"),
        ]
        ranked = analyze_sources(sources, "fusion energy")
        assert [s.url for s in ranked] == [
            "https://arxiv.org/abs/2", "https://example.com/1", "https://arxiv.org/abs/3",
        ]


class TestConfidence:
    """Tests for confidence_score."""

    def test_empty(self):
        assert confidence_score([]) == 0.0

    def test_saturates(self):
        sources = [Source(title=str(i), url=f"https://a.com/{i}", credibility=1.0) for i in range(20)]
        assert confidence_score(sources) == 1.0

    def test_custom_weights(self):
        sources = [Source(title="a", url="https://a.com", credibility=0.5)]
        weights = ScoringWeights(count_weight=0.5, credibility_weight=0.5, saturation=2)
        assert confidence_score(sources, weights) == pytest.approx(0.5)
