"""Stream and schedule models.

A Stream is a user's recurring topic subscription. Its ScheduleSpec says when
the pipeline should run; the run-state fields (next_run, retry_at, ...) are
owned by the scheduler and stored alongside the stream record.

Wire payloads use camelCase keys (dayOfWeek, alertThreshold, ...). Models
accept both the wire alias and the Python field name.
"""

import re
from datetime import datetime
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")

SOURCE_TYPES = ("news_api", "rss", "social")
METHODS = ("web_search", "academic_sources")


class FocusType(str, Enum):
    """Stream focus: real-time alerting or periodic deep synthesis."""

    NEWS = "news"
    RESEARCH = "research"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "bi-weekly"
    MONTHLY = "monthly"

    @property
    def period_days(self) -> int:
        """Minimum spacing in days for day-based frequencies (0 for monthly)."""
        return {"daily": 1, "weekly": 7, "bi-weekly": 14}.get(self.value, 0)


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"

    @property
    def index(self) -> int:
        """Python weekday number (Monday=0)."""
        return list(Weekday).index(self)


class ScheduleSpec(BaseModel):
    """When a stream runs.

    Pure value type: the scheduler derives next_run from a spec and an anchor
    timestamp, so two equal specs always produce the same schedule.

    Attributes:
        frequency: daily, weekly, bi-weekly or monthly
        day_of_week: Required for weekly and bi-weekly, rejected otherwise
        time: Time of day as HH:MM in the owner's timezone
        timezone: IANA timezone name of the stream owner
        day_of_month: Optional pin for monthly runs (clamped to month length)
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    frequency: Frequency = Field(description="Run frequency")
    day_of_week: Weekday | None = Field(default=None, alias="dayOfWeek")
    time: str = Field(default="09:00", description="HH:MM in owner's timezone")
    timezone: str = Field(default="UTC", description="IANA timezone name")
    day_of_month: int | None = Field(default=None, alias="dayOfMonth", ge=1, le=31)

    @field_validator("day_of_week", mode="before")
    @classmethod
    def _lower_weekday(cls, value):
        if isinstance(value, str):
            value = value.strip().lower()
            return value or None
        return value

    @field_validator("time")
    @classmethod
    def _check_time(cls, value: str) -> str:
        match = _TIME_PATTERN.match(value.strip())
        if not match:
            raise ValueError(f"time must be HH:MM, got '{value}'")
        return f"{int(match.group(1)):02d}:{match.group(2)}"

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, value: str) -> str:
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone '{value}'")
        return value

    @model_validator(mode="after")
    def _check_day_of_week(self) -> "ScheduleSpec":
        needs_day = self.frequency in (Frequency.WEEKLY, Frequency.BIWEEKLY)
        if needs_day and self.day_of_week is None:
            raise ValueError(f"day_of_week is required for {self.frequency.value} schedules")
        if not needs_day and self.day_of_week is not None:
            raise ValueError(f"day_of_week is not allowed for {self.frequency.value} schedules")
        return self

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])

    @property
    def minute(self) -> int:
        return int(self.time.split(":")[1])

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_wire(self) -> dict:
        data = {"frequency": self.frequency.value, "time": self.time, "timezone": self.timezone}
        if self.day_of_week:
            data["dayOfWeek"] = self.day_of_week.value
        if self.day_of_month:
            data["dayOfMonth"] = self.day_of_month
        return data


class NewsConfig(BaseModel):
    """Alerting policy for news-focus streams.

    real_time_alerts adds breaking-news checks between scheduled runs;
    source_types lists the provider families discovery may use.
    """

    model_config = ConfigDict(populate_by_name=True)

    alert_threshold: int = Field(default=5, ge=1, le=10, alias="alertThreshold")
    max_articles_per_hour: int = Field(default=10, ge=1, alias="maxArticlesPerHour")
    breaking_news_enabled: bool = Field(default=True, alias="breakingNewsEnabled")
    real_time_alerts: bool = Field(default=False, alias="realTimeAlerts")
    source_types: list[str] = Field(
        default_factory=lambda: ["news_api", "rss", "social"], alias="sourceTypes"
    )

    @field_validator("source_types")
    @classmethod
    def _check_source_types(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - set(SOURCE_TYPES))
        if unknown:
            raise ValueError(f"unknown source types: {', '.join(unknown)}")
        return value


class ResearchConfig(BaseModel):
    """Source-quality policy for research-focus streams."""

    model_config = ConfigDict(populate_by_name=True)

    methodology: list[str] = Field(default_factory=lambda: ["web_search", "academic_sources"])
    min_source_quality: int = Field(default=3, ge=1, le=5, alias="minSourceQuality")
    research_depth: str = Field(default="standard", alias="researchDepth")
    academic_sources_only: bool = Field(default=False, alias="academicSourcesOnly")

    @field_validator("methodology")
    @classmethod
    def _check_methodology(cls, value: list[str]) -> list[str]:
        unknown = sorted(set(value) - set(METHODS))
        if unknown:
            raise ValueError(f"unknown research methods: {', '.join(unknown)}")
        if not value:
            raise ValueError("methodology must name at least one research method")
        return value

    @field_validator("research_depth")
    @classmethod
    def _check_depth(cls, value: str) -> str:
        if value not in ("quick", "standard", "comprehensive"):
            raise ValueError(f"research_depth must be quick, standard or comprehensive, got '{value}'")
        return value

    @property
    def max_sources(self) -> int:
        return {"quick": 5, "standard": 10, "comprehensive": 25}[self.research_depth]

    @property
    def min_credibility(self) -> float:
        """Credibility floor implied by the 1-5 quality setting."""
        return (self.min_source_quality - 1) * 0.1

    @property
    def academic_only(self) -> bool:
        """Whether analysis keeps academic domains only."""
        return self.academic_sources_only or "web_search" not in self.methodology


class Stream(BaseModel):
    """A recurring topic subscription and its scheduling state.

    The run-state fields form the scheduler's backoff state machine:
        next_run: start of the current cycle; only advanced after success
        provisional_next_run: next cycle, computed at admission, committed on success
        consecutive_failures / retry_at: backoff for retrying the current cycle
    """

    id: str
    owner: str
    title: str
    description: str = ""
    focus_type: FocusType = FocusType.RESEARCH
    schedule: ScheduleSpec | None = None
    is_active: bool = True
    next_run: datetime | None = None
    last_run: datetime | None = None
    provisional_next_run: datetime | None = None
    consecutive_failures: int = 0
    retry_at: datetime | None = None
    sources_count: int = 0
    insights_count: int = 0
    has_new_update: bool = False
    last_update: datetime | None = None
    news_config: NewsConfig = Field(default_factory=NewsConfig)
    research_config: ResearchConfig = Field(default_factory=ResearchConfig)
    created_at: datetime | None = None

    def is_due(self, now: datetime) -> bool:
        """Whether the scheduler should try to start this stream at `now`."""
        if not self.is_active or self.next_run is None:
            return False
        if self.next_run > now:
            return False
        return self.retry_at is None or self.retry_at <= now

    @property
    def next_eligible_run(self) -> datetime | None:
        """When the stream next becomes eligible, accounting for backoff."""
        if not self.is_active or self.next_run is None:
            return None
        if self.retry_at and self.retry_at > self.next_run:
            return self.retry_at
        return self.next_run

    def to_wire(self) -> dict:
        eligible = self.next_eligible_run
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "focusType": self.focus_type.value,
            "isActive": self.is_active,
            "hasNewUpdate": self.has_new_update,
            "lastUpdate": self.last_update.isoformat() if self.last_update else None,
            "nextUpdate": eligible.isoformat() if eligible else None,
            "frequency": self.schedule.frequency.value if self.schedule else None,
            "schedule": self.schedule.to_wire() if self.schedule else None,
            "sources": self.sources_count,
            "insights": self.insights_count,
        }

    def __str__(self) -> str:
        return f"Stream({self.id[:8]}, '{self.title[:40]}', {self.focus_type.value})"
