"""Shared fixtures: temp store, fixed clock, fake collaborators and sessions."""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from agents.synthesizer import TemplateSynthesizer
from alerts import AlertFilter
from config import Config
from database import Database
from delivery import DeliveryBroker, Session
from errors import DeliveryFailure, StageFailure
from guard import ConcurrencyGuard
from models.artifacts import Source
from models.execution import PipelineExecution
from models.stream import FocusType, ScheduleSpec
from pipeline import PipelineEngine
from scheduler import TaskScheduler
from workers import WorkerPool

# Monday
NOW = datetime(2024, 1, 15, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSources:
    """SourceProvider returning canned sources, optionally failing first."""

    source_type = "rss"

    def __init__(self, sources: list[Source] | None = None):
        self.sources = sources or []
        self.failures = 0
        self.error: Exception = StageFailure("discovery", "feed unavailable")
        self.delay = 0.0
        self.calls: list[tuple[str, datetime | None, int]] = []

    async def discover(self, query: str, since: datetime | None, limit: int) -> list[Source]:
        self.calls.append((query, since, limit))
        if len(self.calls) <= self.failures:
            raise self.error
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.sources)


class RecordingSession(Session):
    """Session that records every event it is sent."""

    def __init__(self, owner: str, fail: bool = False):
        super().__init__(owner)
        self.fail = fail
        self.events: list[tuple[str, Any]] = []

    async def send(self, event: str, data: Any) -> None:
        if self.fail:
            raise DeliveryFailure(f"session {self.id} closed")
        self.events.append((event, data))

    def messages(self) -> list[dict]:
        return [data for event, data in self.events if event == "message"]


def make_sources(topic: str = "quantum computing") -> list[Source]:
    return [
        Source(
            title=f"Breaking: {topic} milestone reached",
            url="https://www.reuters.com/tech/milestone",
            snippet=f"Researchers report a {topic} milestone.",
            publisher="Reuters",
            published_at=NOW - timedelta(minutes=30),
        ),
        Source(
            title=f"Why {topic} matters for industry",
            url="https://arxiv.org/abs/2401.00001",
            snippet="A survey of applications.",
            publisher="arXiv",
            published_at=NOW - timedelta(days=1),
        ),
        Source(
            title="Unrelated gardening tips",
            url="https://example.medium.com/gardening",
            snippet="Tomatoes in winter.",
            published_at=NOW - timedelta(days=2),
        ),
    ]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    return Config(
        db_path=tmp_path / "relay.db",
        reports_dir=tmp_path / "reports",
        log_dir=tmp_path / "log",
        auth_tokens={"secret-token": "alice", "other-token": "bob"},
        stage_timeout_seconds=5.0,
        stage_retry_budget=2,
    )


@pytest.fixture
def db(config):
    database = Database(config.db_path)
    yield database
    database.close()


@pytest.fixture
def broker(db):
    return DeliveryBroker(db)


@pytest.fixture
def sources():
    return FakeSources(make_sources())


@pytest.fixture
def alert_filter(db, config):
    return AlertFilter(db, config.dedup_window_hours, config.dedup_similarity)


@pytest.fixture
def engine(db, broker, sources, alert_filter, config, clock):
    return PipelineEngine(
        db=db,
        broker=broker,
        sources=sources,
        synthesizer=TemplateSynthesizer(),
        alert_filter=alert_filter,
        config=config,
        clock=clock,
    )


@pytest.fixture
def guard():
    return ConcurrencyGuard(lease_seconds=300)


@pytest.fixture
def workers(engine, guard, config):
    return WorkerPool(engine, guard, asyncio.Queue(), max_workers=config.max_workers)


@pytest.fixture
def scheduler(db, guard, broker, workers, config, clock):
    return TaskScheduler(db, guard, broker, workers, config, clock=clock)


@pytest.fixture
def weekly():
    return ScheduleSpec(frequency="weekly", day_of_week="monday", time="09:00", timezone="UTC")


@pytest.fixture
def research_stream(scheduler, weekly, clock):
    return scheduler.create_stream(
        owner="alice",
        title="quantum computing",
        focus_type=FocusType.RESEARCH,
        schedule=weekly,
        now=clock() - timedelta(days=7),
    )


@pytest.fixture
def news_stream(scheduler, clock):
    return scheduler.create_stream(
        owner="alice",
        title="quantum computing",
        focus_type=FocusType.NEWS,
        schedule=ScheduleSpec(frequency="daily", time="08:00"),
        now=clock() - timedelta(days=1),
    )


@pytest.fixture
def new_execution(db):
    def factory(stream_id: str, is_automated: bool = True) -> PipelineExecution:
        execution = PipelineExecution(id=f"exec-{len(db.list_executions()) + 1}", stream_id=stream_id,
                                      is_automated=is_automated)
        db.save_execution(execution)
        return execution
    return factory
