"""Task scheduler: decides when streams run and records how runs ended.

Scheduling State Machine (per stream, stored in scheduled_tasks):
    next_run              start of the current cycle; only a successful
                          automated execution moves it forward
    provisional_next_run  next cycle, computed from next_run at admission
    consecutive_failures  failed attempts at the current cycle
    retry_at              earliest retry of the current cycle (backoff)

    tick:     due (next_run <= now, retry_at <= now, active) -> guard admits
              -> pending execution queued for the worker pool
    success:  next_run = provisional, backoff reset
    failure:  retry_at = now + min(base * 2^(failures-1), cap); after
              scheduler_max_retries failures the stream is paused and a
              notice is published
    monitor:  active news streams with real_time_alerts get a breaking-news
              check every monitor_interval_seconds, run like a manual trigger

A deferred outcome (lease lost before the worker started) leaves the cycle
due without counting a failure.

Manual triggers share admission through the ConcurrencyGuard but never
touch next_run or the backoff state.
"""

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable

from config import Config
from database import Database
from delivery import DeliveryBroker
from errors import ConcurrencyConflict, NotFound, SchedulingBackoffExhausted, ValidationError
from guard import ConcurrencyGuard
from models.execution import ExecutionOutcome, PipelineExecution
from models.messages import NoticePayload, SchedulePayload
from models.stream import FocusType, NewsConfig, ResearchConfig, ScheduleSpec, Stream
from observability.tracing import trace_operation
from scheduling import backoff_delay, compute_next_run, first_run, utcnow
from workers import ExecutionRequest, WorkerPool

logger = logging.getLogger(__name__)


class TaskScheduler:
    """Periodic tick, admission and outcome recording for all streams."""

    def __init__(
        self,
        db: Database,
        guard: ConcurrencyGuard,
        broker: DeliveryBroker,
        workers: WorkerPool,
        config: Config,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.guard = guard
        self.broker = broker
        self.workers = workers
        self.config = config
        self.clock = clock
        # stream_id -> automated execution whose outcome is not yet recorded
        self._in_flight: dict[str, str] = {}
        # stream_id -> when its last real-time check was queued
        self._last_monitored: dict[str, datetime] = {}

    @property
    def outcomes(self) -> asyncio.Queue:
        return self.workers.outcomes

    # === Lookup ===

    def owned_stream(self, stream_id: str, owner: str | None) -> Stream:
        """Get a stream, hiding streams owned by someone else as NotFound."""
        stream = self.db.require_stream(stream_id)
        if owner is not None and stream.owner != owner:
            raise NotFound("stream", stream_id)
        return stream

    def _new_execution(self, stream_id: str, is_automated: bool) -> PipelineExecution:
        execution = PipelineExecution(id=uuid.uuid4().hex, stream_id=stream_id, is_automated=is_automated)
        self.db.save_execution(execution)
        return execution

    # === Admission ===

    async def tick(self, now: datetime | None = None) -> list[PipelineExecution]:
        """Queue one execution per due stream the guard admits, plus due real-time checks.

        Returns:
            Executions created by this tick
        """
        now = now or self.clock()
        created: list[PipelineExecution] = []

        with trace_operation("scheduler.tick", {"now": now.isoformat()}) as span:
            for stream in self.db.due_streams(now):
                execution = self._admit(stream, now)
                if execution is not None:
                    created.append(execution)
            created.extend(self._monitor(now))
            span["queued"] = len(created)
        return created

    def _admit(self, stream: Stream, now: datetime) -> PipelineExecution | None:
        """Guard-admit one due stream and queue its execution, or defer it."""
        if stream.id in self._in_flight:
            logger.debug("Tick deferred, outcome pending | stream=%s", stream.id)
            return None
        lease = self.guard.try_acquire(stream.id)
        if lease is None:
            logger.info("Tick deferred, stream busy | stream=%s", stream.id)
            return None

        try:
            execution = self._new_execution(stream.id, is_automated=True)
            provisional = compute_next_run(stream.schedule, stream.next_run)
            # Skip cycles missed while the process was down, staying on the schedule grid
            while provisional <= now:
                provisional = compute_next_run(stream.schedule, provisional)
            stream.provisional_next_run = provisional
            self.db.save_run_state(stream)
        except Exception:
            self.guard.release(lease)
            raise

        self._in_flight[stream.id] = execution.id
        self.workers.submit(ExecutionRequest(execution=execution, lease=lease))
        logger.info(
            "Execution queued | stream=%s execution=%s provisional_next=%s",
            stream.id, execution.id, provisional.isoformat(),
        )
        return execution

    def _monitor(self, now: datetime) -> list[PipelineExecution]:
        """Queue breaking-news checks for active news streams with real-time alerts.

        A check runs every monitor_interval_seconds per stream, looks back
        monitor_window_minutes, and is recorded like a manual run so it never
        moves the stream's schedule. Busy streams are skipped until the next tick.
        """
        created: list[PipelineExecution] = []
        interval = timedelta(seconds=self.config.monitor_interval_seconds)
        for stream in self.db.active_streams(FocusType.NEWS):
            if not stream.news_config.real_time_alerts or stream.id in self._in_flight:
                continue
            last = self._last_monitored.get(stream.id)
            if last is not None and now - last < interval:
                continue
            lease = self.guard.try_acquire(stream.id)
            if lease is None:
                continue
            try:
                execution = PipelineExecution(
                    id=uuid.uuid4().hex,
                    stream_id=stream.id,
                    is_automated=False,
                    monitor_since=now - timedelta(minutes=self.config.monitor_window_minutes),
                )
                self.db.save_execution(execution)
            except Exception:
                self.guard.release(lease)
                raise
            self._last_monitored[stream.id] = now
            self.workers.submit(ExecutionRequest(execution=execution, lease=lease))
            logger.info("Real-time check queued | stream=%s execution=%s", stream.id, execution.id)
            created.append(execution)
        return created

    async def manual_trigger(self, stream_id: str, owner: str | None = None) -> PipelineExecution:
        """Run a stream now, outside its schedule.

        Raises:
            NotFound: Unknown stream (or owned by someone else)
            ConcurrencyConflict: An execution is already running for the stream
        """
        stream = self.owned_stream(stream_id, owner)
        lease = self.guard.try_acquire(stream.id)
        if lease is None:
            raise ConcurrencyConflict(stream.id)
        try:
            execution = self._new_execution(stream.id, is_automated=False)
        except Exception:
            self.guard.release(lease)
            raise
        self.workers.submit(ExecutionRequest(execution=execution, lease=lease))
        logger.info("Manual execution queued | stream=%s execution=%s", stream.id, execution.id)
        return execution

    # === Outcomes ===

    def on_execution_outcome(self, outcome: ExecutionOutcome) -> Stream | None:
        """Record a finished execution and reschedule its stream.

        Returns:
            The updated stream, or None if it no longer exists
        """
        stream = self.db.get_stream(outcome.stream_id)
        if stream is None:
            self._in_flight.pop(outcome.stream_id, None)
            logger.warning("Outcome for unknown stream | stream=%s", outcome.stream_id)
            return None

        if not outcome.is_automated:
            if outcome.success:
                stream.last_run = outcome.finished_at
                self.db.save_run_state(stream)
            return stream

        if self._in_flight.get(stream.id) == outcome.execution_id:
            del self._in_flight[stream.id]

        if outcome.deferred:
            # Another execution owns the stream; the cycle stays due
            stream.provisional_next_run = None
            self.db.save_run_state(stream)
            logger.info("Cycle deferred, lease lost | stream=%s execution=%s", stream.id, outcome.execution_id)
            return stream

        if outcome.success:
            stream.last_run = outcome.finished_at
            if stream.is_active and stream.provisional_next_run is not None:
                stream.next_run = stream.provisional_next_run
            stream.provisional_next_run = None
            stream.consecutive_failures = 0
            stream.retry_at = None
            self.db.save_run_state(stream)
            logger.info(
                "Cycle completed | stream=%s next_run=%s",
                stream.id, stream.next_run.isoformat() if stream.next_run else None,
            )
            return stream

        stream.provisional_next_run = None
        if not stream.is_active:
            self.db.save_run_state(stream)
            return stream

        stream.consecutive_failures += 1
        if stream.consecutive_failures >= self.config.scheduler_max_retries:
            exhausted = SchedulingBackoffExhausted(stream.id, stream.consecutive_failures)
            stream.is_active = False
            stream.consecutive_failures = 0
            stream.retry_at = None
            self.db.save_run_state(stream)
            logger.warning("Stream paused | %s last_error=%s", exhausted, outcome.error)
            self.broker.publish(
                stream.id,
                NoticePayload(
                    level="warning",
                    content=(
                        f"Automatic updates paused after {exhausted.failures} consecutive failures. "
                        f"Last error: {outcome.error or 'unknown'}"
                    ),
                ),
                outcome.finished_at,
            )
            self.broker.broadcast(stream.owner, "stream-updated", {"id": stream.id, "isActive": False})
            return stream

        delay = backoff_delay(
            stream.consecutive_failures, self.config.backoff_base_seconds, self.config.backoff_cap_seconds
        )
        stream.retry_at = outcome.finished_at + timedelta(seconds=delay)
        self.db.save_run_state(stream)
        logger.warning(
            "Cycle failed, retry scheduled | stream=%s failures=%d retry_at=%s error=%s",
            stream.id, stream.consecutive_failures, stream.retry_at.isoformat(), outcome.error,
        )
        return stream

    def drain_outcomes(self) -> int:
        """Record every outcome already waiting on the queue.

        Returns:
            Number of outcomes recorded
        """
        count = 0
        while not self.outcomes.empty():
            self.on_execution_outcome(self.outcomes.get_nowait())
            self.outcomes.task_done()
            count += 1
        return count

    # === Stream management ===

    def create_stream(
        self,
        owner: str,
        title: str,
        focus_type: FocusType = FocusType.RESEARCH,
        description: str = "",
        schedule: ScheduleSpec | None = None,
        news_config: NewsConfig | None = None,
        research_config: ResearchConfig | None = None,
        now: datetime | None = None,
    ) -> Stream:
        """Create a stream; scheduled streams start active at their first occurrence."""
        title = title.strip()
        if not title:
            raise ValidationError("title is required")
        now = now or self.clock()
        stream = Stream(
            id=uuid.uuid4().hex,
            owner=owner,
            title=title,
            description=description,
            focus_type=focus_type,
            schedule=schedule,
            is_active=schedule is not None,
            next_run=first_run(schedule, now) if schedule else None,
            news_config=news_config or NewsConfig(),
            research_config=research_config or ResearchConfig(),
            created_at=now,
        )
        stream = self.db.create_stream(stream)
        logger.info("Stream created | stream=%s owner=%s focus=%s", stream.id, owner, focus_type.value)
        return stream

    def update_schedule(
        self,
        stream_id: str,
        spec: ScheduleSpec,
        now: datetime | None = None,
        owner: str | None = None,
    ) -> Stream:
        """Replace a stream's schedule and restart its cycle from now."""
        stream = self.owned_stream(stream_id, owner)
        now = now or self.clock()
        stream.schedule = spec
        stream.is_active = True
        stream.next_run = first_run(spec, now)
        stream.provisional_next_run = None
        stream.consecutive_failures = 0
        stream.retry_at = None
        self.db.save_run_state(stream)
        self.broker.publish(stream.id, SchedulePayload(schedule=spec, next_run=stream.next_run), now)
        logger.info("Schedule updated | stream=%s next_run=%s", stream.id, stream.next_run.isoformat())
        return stream

    def update_topic(self, stream_id: str, title: str, description: str = "", owner: str | None = None) -> Stream:
        """Retitle a stream. Its schedule and run state are left alone."""
        stream = self.owned_stream(stream_id, owner)
        title = title.strip()
        if not title:
            raise ValidationError("title is required")
        self.db.update_stream_topic(stream.id, title, description)
        logger.info("Stream topic updated | stream=%s title=%s", stream.id, title)
        return stream.model_copy(update={"title": title, "description": description})

    def deactivate(self, stream_id: str, owner: str | None = None) -> Stream:
        """Stop scheduling a stream. An in-flight execution is allowed to finish."""
        stream = self.owned_stream(stream_id, owner)
        stream.is_active = False
        stream.provisional_next_run = None
        stream.consecutive_failures = 0
        stream.retry_at = None
        self.db.save_run_state(stream)
        logger.info("Stream deactivated | stream=%s", stream.id)
        return stream

    def activate(self, stream_id: str, now: datetime | None = None, owner: str | None = None) -> Stream:
        """Resume scheduling from the next occurrence after now.

        Raises:
            ValidationError: If the stream has no schedule
        """
        stream = self.owned_stream(stream_id, owner)
        if stream.schedule is None:
            raise ValidationError(f"stream {stream.id} has no schedule")
        now = now or self.clock()
        stream.is_active = True
        stream.next_run = first_run(stream.schedule, now)
        stream.provisional_next_run = None
        stream.consecutive_failures = 0
        stream.retry_at = None
        self.db.save_run_state(stream)
        logger.info("Stream activated | stream=%s next_run=%s", stream.id, stream.next_run.isoformat())
        return stream

    def recover(self, now: datetime | None = None) -> int:
        """Fail executions orphaned by a previous process. Call before the first tick."""
        return self.db.fail_orphaned_executions(now or self.clock())

    # === Loops ===

    async def _consume_outcomes(self) -> None:
        while True:
            outcome = await self.outcomes.get()
            try:
                self.on_execution_outcome(outcome)
            except Exception as e:
                logger.error(
                    "Recording outcome failed | stream=%s execution=%s error=%s",
                    outcome.stream_id, outcome.execution_id, e, exc_info=True,
                )
            finally:
                self.outcomes.task_done()

    async def run(self, stop: asyncio.Event) -> None:
        """Tick every tick_interval_seconds until `stop` is set.

        Tick errors back off exponentially (capped) and never end the loop.
        """
        consumer = asyncio.create_task(self._consume_outcomes(), name="outcome-consumer")
        errors = 0
        logger.info("Scheduler started | interval=%.0fs", self.config.tick_interval_seconds)

        try:
            while not stop.is_set():
                try:
                    created = await self.tick()
                    if created:
                        logger.info("Tick complete | queued=%d", len(created))
                    errors = 0
                    delay = self.config.tick_interval_seconds
                except Exception as e:
                    errors += 1
                    delay = min(
                        self.config.tick_interval_seconds * (2 ** errors),
                        self.config.backoff_cap_seconds,
                    )
                    logger.error("Tick failed | errors=%d retry_in=%.0fs error=%s", errors, delay, e, exc_info=True)
                try:
                    await asyncio.wait_for(stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)
            logger.info("Scheduler stopped")
