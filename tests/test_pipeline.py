"""Tests for the pipeline engine stage machine."""

import asyncio
from datetime import timedelta

import pytest

from models.artifacts import AlertType
from models.execution import ExecutionStatus, Stage
from models.stream import FocusType, NewsConfig, ResearchConfig
from scoring import confidence_score

from conftest import NOW


def run(engine, execution):
    return asyncio.run(engine.run(execution))


def kinds(db, stream_id):
    return [(m.kind, getattr(m.payload, "stage", None)) for m in db.messages_since(stream_id, 0)]


class TestResearchRun:
    """Tests for research-focus executions."""

    def test_produces_newsletter(self, db, engine, research_stream, new_execution):
        execution = new_execution(research_stream.id, is_automated=False)
        outcome = run(engine, execution)

        assert outcome.success
        assert outcome.finished_at == NOW
        stored = db.get_execution(execution.id)
        assert stored.status is ExecutionStatus.COMPLETED
        assert stored.stage is Stage.COMPLETED
        assert stored.sources_analyzed == 3
        assert stored.insights_found == 3

        [newsletter] = db.list_newsletters(research_stream.id)
        assert newsletter.report_number == 1
        assert newsletter.execution_id == execution.id
        assert newsletter.confidence == pytest.approx(0.56)
        assert newsletter.sources[0] == "https://arxiv.org/abs/2401.00001"
        assert "# Research Update #1: quantum computing" in newsletter.body

    def test_report_numbers_increase(self, db, engine, research_stream, new_execution):
        run(engine, new_execution(research_stream.id, is_automated=False))
        run(engine, new_execution(research_stream.id, is_automated=False))
        numbers = [n.report_number for n in db.list_newsletters(research_stream.id)]
        assert numbers == [1, 2]

    def test_deterministic_scoring(self, db, engine, research_stream, new_execution):
        run(engine, new_execution(research_stream.id, is_automated=False))
        run(engine, new_execution(research_stream.id, is_automated=False))
        first, second = db.list_newsletters(research_stream.id)
        assert first.confidence == second.confidence
        assert first.key_insights == second.key_insights
        assert first.sources == second.sources

    def test_messages_in_stage_order(self, db, engine, research_stream, new_execution):
        run(engine, new_execution(research_stream.id, is_automated=False))
        assert kinds(db, research_stream.id) == [
            ("progress", "discovery"),
            ("progress", "analysis"),
            ("progress", "synthesis"),
            ("newsletter", None),
            ("progress", "completed"),
        ]

    def test_stream_counters_updated(self, db, engine, research_stream, new_execution):
        run(engine, new_execution(research_stream.id, is_automated=False))
        stream = db.get_stream(research_stream.id)
        assert stream.has_new_update
        assert stream.sources_count == 3
        assert stream.insights_count == 3
        assert stream.last_update == NOW

    def test_automated_discovery_looks_back_to_last_newsletter(self, engine, sources, research_stream, new_execution):
        run(engine, new_execution(research_stream.id))
        run(engine, new_execution(research_stream.id))
        assert sources.calls[0][1] == NOW - timedelta(days=7)
        assert sources.calls[1][1] == NOW

    def test_manual_discovery_has_no_cutoff(self, engine, sources, research_stream, new_execution):
        run(engine, new_execution(research_stream.id, is_automated=False))
        assert sources.calls[0] == ("quantum computing", None, 30)

    def test_automated_with_no_sources_completes_without_newsletter(
        self, db, engine, sources, research_stream, new_execution
    ):
        sources.sources = []
        execution = new_execution(research_stream.id)
        assert run(engine, execution).success
        assert db.list_newsletters(research_stream.id) == []
        assert not db.get_stream(research_stream.id).has_new_update

    def test_manual_with_no_sources_still_reports(self, db, engine, sources, research_stream, new_execution):
        sources.sources = []
        run(engine, new_execution(research_stream.id, is_automated=False))
        [newsletter] = db.list_newsletters(research_stream.id)
        assert newsletter.summary == "No sources were found for quantum computing in this cycle."
        assert newsletter.confidence == 0.0


class TestNewsRun:
    """Tests for news-focus executions."""

    def test_admits_alerts(self, db, engine, news_stream, new_execution):
        execution = new_execution(news_stream.id)
        assert run(engine, execution).success

        alerts = db.list_alerts(news_stream.id)
        assert sorted(a.importance_score for a in alerts) == [7, 10]
        assert db.get_execution(execution.id).insights_found == 2
        assert db.list_newsletters(news_stream.id) == []

    def test_alerts_published_after_stages(self, db, engine, news_stream, new_execution):
        run(engine, new_execution(news_stream.id))
        assert kinds(db, news_stream.id) == [
            ("progress", "discovery"),
            ("progress", "analysis"),
            ("progress", "synthesis"),
            ("alert", None),
            ("alert", None),
            ("progress", "completed"),
        ]

    def test_repeat_run_deduplicates(self, db, engine, news_stream, new_execution, clock):
        run(engine, new_execution(news_stream.id))
        clock.advance(minutes=10)
        run(engine, new_execution(news_stream.id))
        assert len(db.list_alerts(news_stream.id)) == 2


class TestSourcePolicy:
    """Tests for per-stream source settings and real-time checks."""

    def test_academic_sources_only(self, db, engine, scheduler, new_execution):
        stream = scheduler.create_stream(
            owner="alice", title="quantum computing", research_config=ResearchConfig(academic_sources_only=True)
        )
        assert run(engine, new_execution(stream.id, is_automated=False)).success
        [newsletter] = db.list_newsletters(stream.id)
        assert newsletter.sources == ["https://arxiv.org/abs/2401.00001"]

    def test_provider_not_in_source_types(self, db, engine, sources, scheduler, new_execution):
        stream = scheduler.create_stream(
            owner="alice", title="quantum computing", focus_type=FocusType.NEWS,
            news_config=NewsConfig(source_types=["news_api"]),
        )
        assert run(engine, new_execution(stream.id)).success
        assert sources.calls == []
        assert db.list_alerts(stream.id) == []

    def test_real_time_check_keeps_breaking_only(self, db, engine, sources, news_stream, new_execution):
        execution = new_execution(news_stream.id, is_automated=False)
        execution.monitor_since = NOW - timedelta(minutes=30)
        assert run(engine, execution).success

        assert sources.calls[0][1] == NOW - timedelta(minutes=30)
        [alert] = db.list_alerts(news_stream.id)
        assert alert.importance_score == 10
        assert alert.alert_type is AlertType.BREAKING


class TestStageFailures:
    """Tests for retries, timeouts and terminal failures."""

    def test_discovery_recovers_within_budget(self, db, engine, sources, research_stream, new_execution):
        sources.failures = 2
        execution = new_execution(research_stream.id)
        assert run(engine, execution).success
        assert len(sources.calls) == 3
        assert db.get_execution(execution.id).status is ExecutionStatus.COMPLETED

    def test_discovery_exhausts_budget(self, db, engine, sources, research_stream, new_execution):
        sources.failures = 3
        execution = new_execution(research_stream.id)
        outcome = run(engine, execution)

        assert not outcome.success
        assert "feed unavailable" in outcome.error
        assert len(sources.calls) == 3
        stored = db.get_execution(execution.id)
        assert stored.status is ExecutionStatus.FAILED
        assert stored.failed_stage is Stage.DISCOVERY
        assert kinds(db, research_stream.id)[-1] == ("progress", "failed")

    def test_unexpected_collaborator_error_is_retried(self, engine, sources, research_stream, new_execution):
        sources.failures = 1
        sources.error = ConnectionResetError("reset by peer")
        assert run(engine, new_execution(research_stream.id)).success
        assert len(sources.calls) == 2

    def test_timeout_fails_without_retry(self, db, engine, sources, config, research_stream, new_execution):
        config.stage_timeout_seconds = 0.05
        sources.delay = 1.0
        execution = new_execution(research_stream.id)
        outcome = run(engine, execution)

        assert not outcome.success
        assert "exceeded" in outcome.error
        assert len(sources.calls) == 1
        assert db.get_execution(execution.id).failed_stage is Stage.DISCOVERY

    def test_finalize_failure_rolls_back(self, db, engine, research_stream, new_execution, monkeypatch):
        def broken_update(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(db, "record_stream_update", broken_update)
        execution = new_execution(research_stream.id)
        outcome = run(engine, execution)

        assert not outcome.success
        assert "disk full" in outcome.error
        assert db.list_newsletters(research_stream.id) == []
        stored = db.get_execution(execution.id)
        assert stored.status is ExecutionStatus.FAILED
        assert stored.failed_stage is Stage.FINALIZE
        assert not db.get_stream(research_stream.id).has_new_update

    def test_cancel_marks_failed(self, db, engine, sources, research_stream, new_execution):
        sources.delay = 5.0
        execution = new_execution(research_stream.id)

        async def cancel_midway():
            task = asyncio.create_task(engine.run(execution))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(cancel_midway())
        stored = db.get_execution(execution.id)
        assert stored.status is ExecutionStatus.FAILED
        assert stored.error == "cancelled"


def test_confidence_formula():
    from conftest import make_sources
    from scoring import analyze_sources

    analyzed = analyze_sources(make_sources(), "quantum computing")
    # 0.4 * 3/10 + 0.6 * mean(1.0, 0.9, 0.3)
    assert confidence_score(analyzed) == pytest.approx(0.56)
