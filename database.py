"""SQLite storage for streams, executions, artifacts and delivered messages.

This module is the StreamStore: the only place that knows how records are laid
out on disk. Components read and write through the narrow methods below.

Database Schema:
    streams: one row per stream (identity, focus config, counters)
    scheduled_tasks: schedule spec and scheduler run state per stream
        (next_run, provisional_next_run, consecutive_failures, retry_at, is_active)
    research_sessions: one row per pipeline execution
    newsletters: research artifacts, UNIQUE(stream_id, report_number)
    news_alerts: admitted alerts
    messages: durable delivery log, UNIQUE(stream_id, seq)

Timestamps are stored as Unix epoch seconds (UTC).

Features:
    - WAL mode for concurrent read/write access
    - Automatic schema migration for new columns
    - Deferred commits for multi-row atomic writes (commit=False + commit())
    - Context manager support for auto-cleanup
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator
import uuid

from errors import NotFound
from models.artifacts import AlertType, NewsAlert, Newsletter
from models.execution import ExecutionStatus, PipelineExecution, Stage
from models.messages import Message, Payload, payload_adapter
from models.stream import FocusType, NewsConfig, ResearchConfig, ScheduleSpec, Stream

logger = logging.getLogger(__name__)


def _to_ts(value: datetime | None) -> int | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_ts(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


class Database:
    """SQLite store for the scheduling and delivery core.

    Example:
        >>> with Database("relay.db") as db:
        ...     db.create_stream(stream)
        ...     due = db.due_streams(now)
    """

    SCHEMA = """
    -- Streams: identity, focus configuration and counters
    CREATE TABLE IF NOT EXISTS streams (
        id TEXT PRIMARY KEY,
        owner TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        focus_type TEXT NOT NULL DEFAULT 'research',
        news_config TEXT,                    -- JSON NewsConfig
        research_config TEXT,                -- JSON ResearchConfig
        sources_count INTEGER DEFAULT 0,
        insights_count INTEGER DEFAULT 0,
        has_new_update INTEGER DEFAULT 0,
        last_update INTEGER,
        created_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_streams_owner ON streams(owner, focus_type);

    -- Scheduler state: one task per stream
    CREATE TABLE IF NOT EXISTS scheduled_tasks (
        stream_id TEXT PRIMARY KEY REFERENCES streams(id) ON DELETE CASCADE,
        task_type TEXT NOT NULL,             -- newsletter_generation / news_monitoring
        frequency TEXT,
        day_of_week TEXT,
        schedule_time TEXT,
        timezone TEXT DEFAULT 'UTC',
        next_run INTEGER,
        last_run INTEGER,
        provisional_next_run INTEGER,        -- next cycle, committed on success
        consecutive_failures INTEGER DEFAULT 0,
        retry_at INTEGER,                    -- backoff eligibility for the current cycle
        is_active INTEGER DEFAULT 1
    );

    CREATE INDEX IF NOT EXISTS idx_tasks_due ON scheduled_tasks(is_active, next_run);

    -- Pipeline executions
    CREATE TABLE IF NOT EXISTS research_sessions (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
        status TEXT NOT NULL,
        stage TEXT NOT NULL,
        failed_stage TEXT,
        started_at INTEGER,
        ended_at INTEGER,
        sources_analyzed INTEGER DEFAULT 0,
        insights_found INTEGER DEFAULT 0,
        confidence REAL DEFAULT 0,
        is_automated INTEGER DEFAULT 1,
        error TEXT DEFAULT ''
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_stream ON research_sessions(stream_id, status);

    -- Research newsletters (immutable)
    CREATE TABLE IF NOT EXISTS newsletters (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
        execution_id TEXT,
        title TEXT NOT NULL,
        summary TEXT,
        content TEXT,
        sources TEXT,                        -- JSON list of URLs
        key_insights TEXT,                   -- JSON list
        confidence REAL,
        report_number INTEGER NOT NULL,
        is_automated INTEGER DEFAULT 1,
        generated_at INTEGER NOT NULL,
        UNIQUE (stream_id, report_number)
    );

    -- Admitted news alerts
    CREATE TABLE IF NOT EXISTS news_alerts (
        id TEXT PRIMARY KEY,
        news_stream_id TEXT NOT NULL REFERENCES streams(id) ON DELETE CASCADE,
        title TEXT NOT NULL,
        content TEXT,
        source_url TEXT,
        importance_score INTEGER NOT NULL,
        alert_type TEXT NOT NULL,
        is_read INTEGER DEFAULT 0,
        sent_at INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_alerts_stream_sent ON news_alerts(news_stream_id, sent_at);

    -- Durable delivery log
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        stream_id TEXT NOT NULL,
        seq INTEGER NOT NULL,
        type TEXT NOT NULL,                  -- payload kind
        content TEXT,                        -- plain-text rendering
        payload TEXT NOT NULL,               -- JSON payload
        timestamp INTEGER NOT NULL,
        UNIQUE (stream_id, seq)
    );
    """

    path: Path
    conn: sqlite3.Connection

    def __init__(self, path: Path | str):
        """Open (and create if needed) the database.

        Args:
            path: SQLite file path, or ':memory:'
        """
        self.path = Path(path)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON")
        if str(path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._init_schema()
        logger.debug("Database initialized | path=%s", self.path)

    def _init_schema(self) -> None:
        self.conn.executescript(self.SCHEMA)
        self.conn.commit()
        self._migrate()

    def _migrate(self) -> None:
        """Add columns introduced after the first schema version."""
        cursor = self.conn.execute("PRAGMA table_info(scheduled_tasks)")
        columns = {row["name"] for row in cursor.fetchall()}

        if "day_of_month" not in columns:
            self.conn.execute("ALTER TABLE scheduled_tasks ADD COLUMN day_of_month INTEGER")
            self.conn.commit()
            logger.info("Database migrated | added column=scheduled_tasks.day_of_month")

    # === Transactions ===

    def commit(self) -> None:
        """Commit pending changes."""
        self.conn.commit()

    def rollback(self) -> None:
        """Discard pending changes."""
        self.conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Commit on success, roll back on any exception."""
        try:
            yield self
        except BaseException:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # === Streams ===

    _STREAM_SELECT = """
        SELECT s.*, t.frequency, t.day_of_week, t.schedule_time, t.timezone, t.day_of_month,
               t.next_run, t.last_run, t.provisional_next_run, t.consecutive_failures,
               t.retry_at, t.is_active
        FROM streams s
        LEFT JOIN scheduled_tasks t ON t.stream_id = s.id
    """

    def _row_to_stream(self, row: sqlite3.Row) -> Stream:
        schedule = None
        if row["frequency"]:
            schedule = ScheduleSpec(
                frequency=row["frequency"],
                day_of_week=row["day_of_week"],
                time=row["schedule_time"],
                timezone=row["timezone"] or "UTC",
                day_of_month=row["day_of_month"],
            )
        is_active = row["is_active"]
        return Stream(
            id=row["id"],
            owner=row["owner"],
            title=row["title"],
            description=row["description"] or "",
            focus_type=FocusType(row["focus_type"]),
            schedule=schedule,
            is_active=bool(is_active) if is_active is not None else False,
            next_run=_from_ts(row["next_run"]),
            last_run=_from_ts(row["last_run"]),
            provisional_next_run=_from_ts(row["provisional_next_run"]),
            consecutive_failures=row["consecutive_failures"] or 0,
            retry_at=_from_ts(row["retry_at"]),
            sources_count=row["sources_count"] or 0,
            insights_count=row["insights_count"] or 0,
            has_new_update=bool(row["has_new_update"]),
            last_update=_from_ts(row["last_update"]),
            news_config=NewsConfig.model_validate_json(row["news_config"]) if row["news_config"] else NewsConfig(),
            research_config=(
                ResearchConfig.model_validate_json(row["research_config"])
                if row["research_config"] else ResearchConfig()
            ),
            created_at=_from_ts(row["created_at"]),
        )

    def create_stream(self, stream: Stream, commit: bool = True) -> Stream:
        """Insert a stream and, if it has a schedule, its scheduled task."""
        created = stream.created_at or datetime.now(timezone.utc)
        self.conn.execute(
            """
            INSERT INTO streams
            (id, owner, title, description, focus_type, news_config, research_config,
             sources_count, insights_count, has_new_update, last_update, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                stream.id,
                stream.owner,
                stream.title,
                stream.description,
                stream.focus_type.value,
                stream.news_config.model_dump_json(),
                stream.research_config.model_dump_json(),
                stream.sources_count,
                stream.insights_count,
                int(stream.has_new_update),
                _to_ts(stream.last_update),
                _to_ts(created),
            ),
        )
        if stream.schedule is not None:
            self._upsert_task(stream)
        if commit:
            self.conn.commit()
        logger.debug("Stream created | id=%s owner=%s focus=%s", stream.id, stream.owner, stream.focus_type.value)
        return stream.model_copy(update={"created_at": created})

    def _upsert_task(self, stream: Stream) -> None:
        spec = stream.schedule
        task_type = "news_monitoring" if stream.focus_type is FocusType.NEWS else "newsletter_generation"
        self.conn.execute(
            """
            INSERT INTO scheduled_tasks
            (stream_id, task_type, frequency, day_of_week, schedule_time, timezone, day_of_month,
             next_run, last_run, provisional_next_run, consecutive_failures, retry_at, is_active)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(stream_id) DO UPDATE SET
                task_type=excluded.task_type,
                frequency=excluded.frequency,
                day_of_week=excluded.day_of_week,
                schedule_time=excluded.schedule_time,
                timezone=excluded.timezone,
                day_of_month=excluded.day_of_month,
                next_run=excluded.next_run,
                last_run=excluded.last_run,
                provisional_next_run=excluded.provisional_next_run,
                consecutive_failures=excluded.consecutive_failures,
                retry_at=excluded.retry_at,
                is_active=excluded.is_active
            """,
            (
                stream.id,
                task_type,
                spec.frequency.value if spec else None,
                spec.day_of_week.value if spec and spec.day_of_week else None,
                spec.time if spec else None,
                spec.timezone if spec else "UTC",
                spec.day_of_month if spec else None,
                _to_ts(stream.next_run),
                _to_ts(stream.last_run),
                _to_ts(stream.provisional_next_run),
                stream.consecutive_failures,
                _to_ts(stream.retry_at),
                int(stream.is_active),
            ),
        )

    def update_stream_topic(self, stream_id: str, title: str, description: str, commit: bool = True) -> None:
        self.conn.execute(
            "UPDATE streams SET title = ?, description = ? WHERE id = ?",
            (title, description, stream_id),
        )
        if commit:
            self.conn.commit()

    def save_run_state(self, stream: Stream, commit: bool = True) -> None:
        """Persist the stream's schedule and scheduler run state."""
        self._upsert_task(stream)
        if commit:
            self.conn.commit()

    def get_stream(self, stream_id: str) -> Stream | None:
        cursor = self.conn.execute(self._STREAM_SELECT + " WHERE s.id = ?", (stream_id,))
        row = cursor.fetchone()
        return self._row_to_stream(row) if row else None

    def require_stream(self, stream_id: str) -> Stream:
        """Get a stream or raise NotFound."""
        stream = self.get_stream(stream_id)
        if stream is None:
            raise NotFound("stream", stream_id)
        return stream

    def list_streams(self, owner: str, focus_type: FocusType | None = None) -> list[Stream]:
        query = self._STREAM_SELECT + " WHERE s.owner = ?"
        params: list[Any] = [owner]
        if focus_type is not None:
            query += " AND s.focus_type = ?"
            params.append(focus_type.value)
        query += " ORDER BY s.created_at, s.id"
        return [self._row_to_stream(row) for row in self.conn.execute(query, params).fetchall()]

    def due_streams(self, now: datetime) -> list[Stream]:
        """Active streams whose next_run and backoff have both elapsed."""
        ts = _to_ts(now)
        cursor = self.conn.execute(
            self._STREAM_SELECT
            + """
            WHERE t.is_active = 1
              AND t.next_run IS NOT NULL AND t.next_run <= ?
              AND (t.retry_at IS NULL OR t.retry_at <= ?)
            ORDER BY t.next_run, s.id
            """,
            (ts, ts),
        )
        return [self._row_to_stream(row) for row in cursor.fetchall()]

    def active_streams(self, focus_type: FocusType) -> list[Stream]:
        cursor = self.conn.execute(
            self._STREAM_SELECT + " WHERE t.is_active = 1 AND s.focus_type = ? ORDER BY s.created_at, s.id",
            (focus_type.value,),
        )
        return [self._row_to_stream(row) for row in cursor.fetchall()]

    def record_stream_update(
        self,
        stream_id: str,
        sources_count: int,
        insights_count: int,
        updated_at: datetime,
        commit: bool = True,
    ) -> None:
        """Store counters from a finished run and flag the stream as updated."""
        self.conn.execute(
            """
            UPDATE streams
            SET sources_count = ?, insights_count = ?, has_new_update = 1, last_update = ?
            WHERE id = ?
            """,
            (sources_count, insights_count, _to_ts(updated_at), stream_id),
        )
        if commit:
            self.conn.commit()

    # === Executions ===

    def _row_to_execution(self, row: sqlite3.Row) -> PipelineExecution:
        return PipelineExecution(
            id=row["id"],
            stream_id=row["stream_id"],
            status=ExecutionStatus(row["status"]),
            stage=Stage(row["stage"]),
            failed_stage=Stage(row["failed_stage"]) if row["failed_stage"] else None,
            started_at=_from_ts(row["started_at"]),
            ended_at=_from_ts(row["ended_at"]),
            sources_analyzed=row["sources_analyzed"] or 0,
            insights_found=row["insights_found"] or 0,
            confidence=row["confidence"] or 0.0,
            is_automated=bool(row["is_automated"]),
            error=row["error"] or "",
        )

    def save_execution(self, execution: PipelineExecution, commit: bool = True) -> None:
        """Insert or update an execution row."""
        self.conn.execute(
            """
            INSERT OR REPLACE INTO research_sessions
            (id, stream_id, status, stage, failed_stage, started_at, ended_at,
             sources_analyzed, insights_found, confidence, is_automated, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.id,
                execution.stream_id,
                execution.status.value,
                execution.stage.value,
                execution.failed_stage.value if execution.failed_stage else None,
                _to_ts(execution.started_at),
                _to_ts(execution.ended_at),
                execution.sources_analyzed,
                execution.insights_found,
                execution.confidence,
                int(execution.is_automated),
                execution.error,
            ),
        )
        if commit:
            self.conn.commit()

    def get_execution(self, execution_id: str) -> PipelineExecution | None:
        row = self.conn.execute("SELECT * FROM research_sessions WHERE id = ?", (execution_id,)).fetchone()
        return self._row_to_execution(row) if row else None

    def list_executions(
        self,
        stream_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[PipelineExecution]:
        query = "SELECT * FROM research_sessions WHERE 1=1"
        params: list[Any] = []
        if stream_id is not None:
            query += " AND stream_id = ?"
            params.append(stream_id)
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY started_at, rowid"
        return [self._row_to_execution(row) for row in self.conn.execute(query, params).fetchall()]

    def fail_orphaned_executions(self, now: datetime, reason: str = "process restarted") -> int:
        """Mark executions left pending/running by a previous process as failed.

        Returns:
            Number of executions failed
        """
        cursor = self.conn.execute(
            """
            UPDATE research_sessions
            SET status = 'failed', failed_stage = stage, stage = 'failed', ended_at = ?, error = ?
            WHERE status IN ('pending', 'running')
            """,
            (_to_ts(now), reason),
        )
        self.conn.commit()
        if cursor.rowcount:
            logger.warning("Orphaned executions failed | count=%d", cursor.rowcount)
        return cursor.rowcount

    # === Newsletters ===

    def _row_to_newsletter(self, row: sqlite3.Row) -> Newsletter:
        return Newsletter(
            id=row["id"],
            stream_id=row["stream_id"],
            execution_id=row["execution_id"] or "",
            title=row["title"],
            summary=row["summary"] or "",
            body=row["content"] or "",
            sources=json.loads(row["sources"] or "[]"),
            key_insights=json.loads(row["key_insights"] or "[]"),
            confidence=row["confidence"] or 0.0,
            report_number=row["report_number"],
            is_automated=bool(row["is_automated"]),
            generated_at=_from_ts(row["generated_at"]),
        )

    def next_report_number(self, stream_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(report_number), 0) AS n FROM newsletters WHERE stream_id = ?",
            (stream_id,),
        ).fetchone()
        return row["n"] + 1

    def save_newsletter(self, newsletter: Newsletter, commit: bool = True) -> None:
        self.conn.execute(
            """
            INSERT INTO newsletters
            (id, stream_id, execution_id, title, summary, content, sources, key_insights,
             confidence, report_number, is_automated, generated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                newsletter.id,
                newsletter.stream_id,
                newsletter.execution_id,
                newsletter.title,
                newsletter.summary,
                newsletter.body,
                json.dumps(newsletter.sources, ensure_ascii=False),
                json.dumps(newsletter.key_insights, ensure_ascii=False),
                newsletter.confidence,
                newsletter.report_number,
                int(newsletter.is_automated),
                _to_ts(newsletter.generated_at),
            ),
        )
        if commit:
            self.conn.commit()
        logger.debug("Newsletter saved | stream=%s report=%d", newsletter.stream_id, newsletter.report_number)

    def latest_newsletter(self, stream_id: str) -> Newsletter | None:
        row = self.conn.execute(
            "SELECT * FROM newsletters WHERE stream_id = ? ORDER BY report_number DESC LIMIT 1",
            (stream_id,),
        ).fetchone()
        return self._row_to_newsletter(row) if row else None

    def list_newsletters(self, stream_id: str) -> list[Newsletter]:
        cursor = self.conn.execute(
            "SELECT * FROM newsletters WHERE stream_id = ? ORDER BY report_number",
            (stream_id,),
        )
        return [self._row_to_newsletter(row) for row in cursor.fetchall()]

    # === News alerts ===

    def _row_to_alert(self, row: sqlite3.Row) -> NewsAlert:
        return NewsAlert(
            id=row["id"],
            stream_id=row["news_stream_id"],
            title=row["title"],
            body=row["content"] or "",
            source_url=row["source_url"] or "",
            importance_score=row["importance_score"],
            alert_type=AlertType(row["alert_type"]),
            is_read=bool(row["is_read"]),
            sent_at=_from_ts(row["sent_at"]),
        )

    def save_alert(self, alert: NewsAlert, commit: bool = True) -> None:
        self.conn.execute(
            """
            INSERT INTO news_alerts
            (id, news_stream_id, title, content, source_url, importance_score, alert_type, is_read, sent_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                alert.id,
                alert.stream_id,
                alert.title,
                alert.body,
                alert.source_url,
                alert.importance_score,
                alert.alert_type.value,
                int(alert.is_read),
                _to_ts(alert.sent_at),
            ),
        )
        if commit:
            self.conn.commit()

    def alerts_since(self, stream_id: str, since: datetime) -> list[NewsAlert]:
        """Alerts sent for a stream at or after `since`, newest first."""
        cursor = self.conn.execute(
            "SELECT * FROM news_alerts WHERE news_stream_id = ? AND sent_at >= ? ORDER BY sent_at DESC",
            (stream_id, _to_ts(since)),
        )
        return [self._row_to_alert(row) for row in cursor.fetchall()]

    def list_alerts(self, stream_id: str, unread_only: bool = False) -> list[NewsAlert]:
        query = "SELECT * FROM news_alerts WHERE news_stream_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY sent_at DESC"
        return [self._row_to_alert(row) for row in self.conn.execute(query, (stream_id,)).fetchall()]

    def mark_alert_read(self, alert_id: str, owner: str) -> NewsAlert:
        """Flip an alert to read (one-way).

        Raises:
            NotFound: If the alert does not exist or belongs to another owner
        """
        row = self.conn.execute(
            """
            SELECT a.* FROM news_alerts a
            JOIN streams s ON s.id = a.news_stream_id
            WHERE a.id = ? AND s.owner = ?
            """,
            (alert_id, owner),
        ).fetchone()
        if row is None:
            raise NotFound("alert", alert_id)
        if not row["is_read"]:
            self.conn.execute("UPDATE news_alerts SET is_read = 1 WHERE id = ?", (alert_id,))
            self.conn.commit()
        return self._row_to_alert(row).model_copy(update={"is_read": True})

    # === Messages ===

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            stream_id=row["stream_id"],
            seq=row["seq"],
            timestamp=_from_ts(row["timestamp"]),
            payload=payload_adapter.validate_json(row["payload"]),
        )

    def append_message(self, stream_id: str, payload: Payload, timestamp: datetime) -> Message:
        """Assign the next per-stream sequence number and persist the message.

        Sequence allocation and insert happen in one transaction; the
        UNIQUE(stream_id, seq) constraint rejects a concurrent writer that
        raced for the same number.
        """
        with self.transaction():
            row = self.conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM messages WHERE stream_id = ?",
                (stream_id,),
            ).fetchone()
            message = Message(
                id=uuid.uuid4().hex,
                stream_id=stream_id,
                seq=row["seq"] + 1,
                timestamp=timestamp,
                payload=payload,
            )
            self.conn.execute(
                """
                INSERT INTO messages (id, stream_id, seq, type, content, payload, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    stream_id,
                    message.seq,
                    payload.kind,
                    payload.text(),
                    payload.model_dump_json(),
                    _to_ts(timestamp),
                ),
            )
        return message

    def messages_since(self, stream_id: str, seq: int, limit: int | None = None) -> list[Message]:
        """Messages with sequence > seq in ascending order."""
        query = "SELECT * FROM messages WHERE stream_id = ? AND seq > ? ORDER BY seq"
        params: list[Any] = [stream_id, seq]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        return [self._row_to_message(row) for row in self.conn.execute(query, params).fetchall()]

    def latest_seq(self, stream_id: str) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(MAX(seq), 0) AS seq FROM messages WHERE stream_id = ?",
            (stream_id,),
        ).fetchone()
        return row["seq"]

    # === Stats ===

    def stats(self) -> dict[str, int]:
        """Row counts for status reporting."""
        counts = {}
        for key, query in (
            ("streams", "SELECT COUNT(*) FROM streams"),
            ("active_streams", "SELECT COUNT(*) FROM scheduled_tasks WHERE is_active = 1"),
            ("executions", "SELECT COUNT(*) FROM research_sessions"),
            ("failed_executions", "SELECT COUNT(*) FROM research_sessions WHERE status = 'failed'"),
            ("newsletters", "SELECT COUNT(*) FROM newsletters"),
            ("alerts", "SELECT COUNT(*) FROM news_alerts"),
            ("messages", "SELECT COUNT(*) FROM messages"),
        ):
            counts[key] = self.conn.execute(query).fetchone()[0] or 0
        return counts

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()

    def __enter__(self) -> "Database":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
