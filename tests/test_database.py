"""Tests for the SQLite store."""

import sqlite3
from datetime import timedelta

import pytest

from database import Database
from errors import NotFound
from models.artifacts import Newsletter
from models.execution import ExecutionStatus, PipelineExecution, Stage
from models.messages import ChatPayload, NoticePayload, ProgressPayload
from models.stream import FocusType, NewsConfig, ResearchConfig, ScheduleSpec, Stream

from conftest import NOW


@pytest.fixture
def stream(db):
    return db.create_stream(Stream(
        id="s1",
        owner="alice",
        title="fusion energy",
        focus_type=FocusType.RESEARCH,
        schedule=ScheduleSpec(frequency="weekly", day_of_week="monday", time="09:00", timezone="Europe/Paris"),
        next_run=NOW,
        research_config=ResearchConfig(research_depth="quick"),
        created_at=NOW - timedelta(days=7),
    ))


def newsletter(stream_id: str, number: int) -> Newsletter:
    return Newsletter(
        id=f"n{number}",
        stream_id=stream_id,
        title=f"Update #{number}",
        summary="summary",
        body="body",
        sources=["https://a.com"],
        key_insights=["one"],
        confidence=0.5,
        report_number=number,
        generated_at=NOW,
    )


class TestSchema:
    """Tests for schema creation and migration."""

    def test_creates_tables(self, db):
        tables = {row[0] for row in db.conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"streams", "scheduled_tasks", "research_sessions", "newsletters", "news_alerts", "messages"} <= tables

    def test_migrates_day_of_month(self, db):
        columns = {row["name"] for row in db.conn.execute("PRAGMA table_info(scheduled_tasks)")}
        assert "day_of_month" in columns

    def test_reopen_keeps_data(self, config, stream, db):
        db.close()
        with Database(config.db_path) as reopened:
            assert reopened.get_stream("s1").title == "fusion energy"

    def test_in_memory(self):
        with Database(":memory:") as memory:
            assert memory.stats()["streams"] == 0


class TestStreams:
    """Tests for stream records and run state."""

    def test_round_trip(self, db, stream):
        loaded = db.get_stream("s1")
        assert loaded.schedule == stream.schedule
        assert loaded.next_run == NOW
        assert loaded.is_active
        assert loaded.research_config.research_depth == "quick"

    def test_unscheduled_stream_is_inactive(self, db):
        db.create_stream(Stream(id="s2", owner="alice", title="x", created_at=NOW))
        loaded = db.get_stream("s2")
        assert loaded.schedule is None
        assert not loaded.is_active

    def test_require_missing(self, db):
        with pytest.raises(NotFound, match="stream not found: nope"):
            db.require_stream("nope")

    def test_list_by_owner_and_focus(self, db, stream):
        db.create_stream(Stream(id="s2", owner="alice", title="chips", focus_type=FocusType.NEWS,
                                news_config=NewsConfig(alert_threshold=7), created_at=NOW))
        db.create_stream(Stream(id="s3", owner="bob", title="other", created_at=NOW))
        assert [s.id for s in db.list_streams("alice")] == ["s1", "s2"]
        news = db.list_streams("alice", FocusType.NEWS)
        assert [s.id for s in news] == ["s2"]
        assert news[0].news_config.alert_threshold == 7

    def test_due_streams_respects_retry_at(self, db, stream):
        assert [s.id for s in db.due_streams(NOW)] == ["s1"]
        stream.retry_at = NOW + timedelta(minutes=5)
        db.save_run_state(stream)
        assert db.due_streams(NOW) == []
        assert [s.id for s in db.due_streams(NOW + timedelta(minutes=5))] == ["s1"]

    def test_due_streams_skips_inactive(self, db, stream):
        stream.is_active = False
        db.save_run_state(stream)
        assert db.due_streams(NOW + timedelta(days=30)) == []

    def test_record_stream_update(self, db, stream):
        db.record_stream_update("s1", 4, 2, NOW)
        loaded = db.get_stream("s1")
        assert (loaded.sources_count, loaded.insights_count) == (4, 2)
        assert loaded.has_new_update
        assert loaded.last_update == NOW


class TestExecutions:
    """Tests for execution records."""

    def test_save_and_update(self, db, stream):
        execution = PipelineExecution(id="e1", stream_id="s1")
        db.save_execution(execution)
        execution.advance(Stage.DISCOVERY)
        execution.started_at = NOW
        db.save_execution(execution)
        loaded = db.get_execution("e1")
        assert loaded.status is ExecutionStatus.RUNNING
        assert loaded.stage is Stage.DISCOVERY
        assert loaded.started_at == NOW

    def test_fail_orphaned(self, db, stream):
        running = PipelineExecution(id="e1", stream_id="s1")
        running.advance(Stage.DISCOVERY)
        db.save_execution(running)
        done = PipelineExecution(id="e2", stream_id="s1", status=ExecutionStatus.COMPLETED, stage=Stage.COMPLETED)
        db.save_execution(done)

        assert db.fail_orphaned_executions(NOW) == 1
        failed = db.get_execution("e1")
        assert failed.status is ExecutionStatus.FAILED
        assert failed.failed_stage is Stage.DISCOVERY
        assert failed.error == "process restarted"
        assert db.get_execution("e2").status is ExecutionStatus.COMPLETED


class TestNewsletters:
    """Tests for newsletter numbering."""

    def test_report_numbers(self, db, stream):
        assert db.next_report_number("s1") == 1
        db.save_newsletter(newsletter("s1", 1))
        assert db.next_report_number("s1") == 2
        assert db.latest_newsletter("s1").report_number == 1

    def test_duplicate_report_number_rejected(self, db, stream):
        db.save_newsletter(newsletter("s1", 1))
        with pytest.raises(sqlite3.IntegrityError):
            db.save_newsletter(newsletter("s1", 1).model_copy(update={"id": "other"}))

    def test_transaction_rolls_back(self, db, stream):
        with pytest.raises(RuntimeError):
            with db.transaction():
                db.save_newsletter(newsletter("s1", 1), commit=False)
                raise RuntimeError("finalize failed")
        assert db.list_newsletters("s1") == []


class TestMessages:
    """Tests for the durable message log."""

    def test_sequence_starts_at_one(self, db, stream):
        first = db.append_message("s1", ChatPayload(role="user", content="hi"), NOW)
        second = db.append_message("s1", NoticePayload(content="note"), NOW)
        assert (first.seq, second.seq) == (1, 2)
        assert db.latest_seq("s1") == 2

    def test_sequences_are_per_stream(self, db, stream):
        db.create_stream(Stream(id="s2", owner="alice", title="x", created_at=NOW))
        db.append_message("s1", ChatPayload(content="a"), NOW)
        assert db.append_message("s2", ChatPayload(content="b"), NOW).seq == 1

    def test_payload_round_trip(self, db, stream):
        payload = ProgressPayload(execution_id="e1", stage="analysis", sources_found=3)
        db.append_message("s1", payload, NOW)
        [message] = db.messages_since("s1", 0)
        assert message.payload == payload
        assert message.kind == "progress"
        assert message.to_wire()["type"] == "research_update"

    def test_messages_since_with_limit(self, db, stream):
        for i in range(5):
            db.append_message("s1", ChatPayload(content=str(i)), NOW)
        assert [m.seq for m in db.messages_since("s1", 2)] == [3, 4, 5]
        assert [m.seq for m in db.messages_since("s1", 0, limit=2)] == [1, 2]
