"""Alert filter: decides which news candidates become user-visible alerts.

Candidates are considered highest importance first. Each one must clear, in
order:
    1. the stream's alert_threshold
    2. the dedup window: no alert for the stream within dedup_window_hours
       (or earlier in the same batch) with the same source URL or a title
       whose normalized similarity reaches dedup_similarity
    3. the hourly rate limit: max_articles_per_hour, counting alerts
       already sent in the last hour

The filter reads alert history but does not write; the pipeline persists
admitted alerts inside its finalize transaction and then publishes them.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta

from rapidfuzz import fuzz

from database import Database
from models.artifacts import AlertCandidate, AlertType, NewsAlert, alert_type_for, normalize_title
from models.stream import Stream

logger = logging.getLogger(__name__)


@dataclass
class FilterStats:
    """Per-reason counts for one admission batch."""

    considered: int = 0
    admitted: int = 0
    below_threshold: int = 0
    duplicate: int = 0
    rate_limited: int = 0

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass
class Admission:
    """Result of filtering a batch: alerts to persist and why the rest were dropped."""

    alerts: list[NewsAlert] = field(default_factory=list)
    stats: FilterStats = field(default_factory=FilterStats)


def title_similarity(a: str, b: str) -> float:
    """Fuzzy ratio of two normalized titles (0-1)."""
    return fuzz.ratio(normalize_title(a), normalize_title(b)) / 100.0


class AlertFilter:
    """Threshold, dedup and rate-limit policy for news alerts."""

    def __init__(self, db: Database, dedup_window_hours: float = 24.0, dedup_similarity: float = 0.85):
        self.db = db
        self.dedup_window = timedelta(hours=dedup_window_hours)
        self.dedup_similarity = dedup_similarity

    def _is_duplicate(self, candidate: AlertCandidate, seen: list[tuple[str, str]]) -> bool:
        for url, title in seen:
            if candidate.source_url and candidate.source_url == url:
                return True
            if title_similarity(candidate.title, title) >= self.dedup_similarity:
                return True
        return False

    def admit(self, candidates: list[AlertCandidate], stream: Stream, now: datetime) -> Admission:
        """Filter a batch of candidates for a news stream.

        Args:
            candidates: Scored candidates from the synthesis stage
            stream: Stream whose news_config supplies threshold and rate limit
            now: Decision time; becomes the sent_at of admitted alerts

        Returns:
            Admission with unsaved NewsAlerts in admission order
        """
        config = stream.news_config
        result = Admission()
        result.stats.considered = len(candidates)

        history = self.db.alerts_since(stream.id, now - self.dedup_window)
        seen = [(alert.source_url, alert.title) for alert in history]
        hour_ago = now - timedelta(hours=1)
        budget = config.max_articles_per_hour - sum(1 for alert in history if alert.sent_at >= hour_ago)

        for candidate in sorted(candidates, key=lambda c: (-c.importance_score, c.title)):
            alert_type = alert_type_for(candidate.importance_score)
            if candidate.importance_score < config.alert_threshold or alert_type is None:
                result.stats.below_threshold += 1
                continue
            if self._is_duplicate(candidate, seen):
                result.stats.duplicate += 1
                continue
            if budget <= 0:
                result.stats.rate_limited += 1
                continue

            if alert_type is AlertType.BREAKING and not config.breaking_news_enabled:
                alert_type = AlertType.TRENDING
            result.alerts.append(NewsAlert(
                id=uuid.uuid4().hex,
                stream_id=stream.id,
                title=candidate.title,
                body=candidate.body,
                source_url=candidate.source_url,
                importance_score=candidate.importance_score,
                alert_type=alert_type,
                sent_at=now,
            ))
            seen.append((candidate.source_url, candidate.title))
            budget -= 1

        result.stats.admitted = len(result.alerts)
        logger.info(
            "Alerts filtered | stream=%s considered=%d admitted=%d below=%d dup=%d limited=%d",
            stream.id, result.stats.considered, result.stats.admitted,
            result.stats.below_threshold, result.stats.duplicate, result.stats.rate_limited,
        )
        return result

    def mark_read(self, alert_id: str, owner: str) -> NewsAlert:
        """Flip an alert to read.

        Raises:
            NotFound: Unknown alert or alert owned by someone else
        """
        return self.db.mark_alert_read(alert_id, owner)
