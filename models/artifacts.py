"""Pipeline artifacts: sources, newsletters and news alerts.

Research runs produce exactly one Newsletter. News runs produce zero or more
AlertCandidates, which only become NewsAlerts after the alert filter admits
them.
"""

from datetime import datetime
from enum import Enum
from hashlib import sha256
import re
import unicodedata

from pydantic import BaseModel, Field


def normalize_title(title: str) -> str:
    """Lowercase, NFKC-normalize, strip punctuation and collapse whitespace."""
    normalized = unicodedata.normalize("NFKC", title.lower())
    normalized = re.sub(r"[^\w\s]", "", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


class Source(BaseModel):
    """A document found during discovery.

    credibility and relevance are filled in by the analysis stage.
    """

    title: str = Field(description="Headline or document title")
    url: str = Field(description="Canonical URL")
    snippet: str = Field(default="", description="Short text excerpt")
    publisher: str = Field(default="", description="Outlet or site name")
    published_at: datetime | None = Field(default=None, description="Publication time (UTC)")
    credibility: float = Field(default=0.0, ge=0.0, le=1.0)
    relevance: float = Field(default=0.0, ge=0.0, le=1.0)

    @property
    def key(self) -> str:
        """Dedup key: 16-char hash of the normalized title."""
        return sha256(normalize_title(self.title).encode()).hexdigest()[:16]


class NewsletterDraft(BaseModel):
    """Synthesizer output for a research run, before numbering and persistence."""

    summary: str = Field(description="2-4 sentence executive summary")
    key_insights: list[str] = Field(default_factory=list, description="3-5 key findings")
    themes: list[str] = Field(default_factory=list, description="Cross-cutting themes")
    body: str = Field(default="", description="Optional markdown body; rendered if empty")


class Newsletter(BaseModel):
    """Immutable research artifact for one pipeline execution."""

    model_config = {"frozen": True}

    id: str
    stream_id: str
    execution_id: str = ""
    title: str
    summary: str
    body: str
    sources: list[str] = Field(default_factory=list)
    key_insights: list[str] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0)
    report_number: int = Field(ge=1)
    is_automated: bool = True
    generated_at: datetime

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "summary": self.summary,
            "content": self.body,
            "generatedAt": self.generated_at.isoformat(),
            "confidence": self.confidence,
            "sources": self.sources,
            "keyInsights": self.key_insights,
            "isAutomated": self.is_automated,
            "reportNumber": self.report_number,
        }


class AlertType(str, Enum):
    BREAKING = "breaking"
    TRENDING = "trending"
    UPDATE = "update"


def alert_type_for(score: int) -> AlertType | None:
    """Map an importance score to its alert type.

    9-10 breaking, 7-8 trending, 5-6 update; anything lower is below the
    alerting floor and has no type.
    """
    if score >= 9:
        return AlertType.BREAKING
    if score >= 7:
        return AlertType.TRENDING
    if score >= 5:
        return AlertType.UPDATE
    return None


class AlertCandidate(BaseModel):
    """A scored news item awaiting the alert filter."""

    title: str
    body: str = ""
    source_url: str
    publisher: str = ""
    published_at: datetime | None = None
    importance_score: int = Field(ge=1, le=10)

    def __str__(self) -> str:
        return f"AlertCandidate({self.importance_score}, '{self.title[:50]}')"


class NewsAlert(BaseModel):
    """A persisted, user-visible alert."""

    id: str
    stream_id: str
    title: str
    body: str = ""
    source_url: str
    importance_score: int = Field(ge=1, le=10)
    alert_type: AlertType
    is_read: bool = False
    sent_at: datetime

    def to_wire(self) -> dict:
        return {
            "id": self.id,
            "streamId": self.stream_id,
            "title": self.title,
            "content": self.body,
            "sourceUrl": self.source_url,
            "importanceScore": self.importance_score,
            "alertType": self.alert_type.value,
            "isRead": self.is_read,
            "sentAt": self.sent_at.isoformat(),
        }
