"""Pipeline engine: one execution of a stream from discovery to delivery.

Pipeline Flow:
    1. DISCOVERY: ask the SourceProvider for documents on the stream's topic
       (automated research runs only look past the previous newsletter,
       real-time news checks only look back monitor_window_minutes; news
       streams skip discovery when the provider type is not in source_types)
    2. ANALYSIS: dedupe, score relevance/credibility, filter, rank (deterministic);
       academic-only research keeps academic domains
    3. SYNTHESIS: research -> Synthesizer draft; news -> scored alert candidates
       (breaking ones only for real-time checks)
    4. FINALIZE: one store transaction
       research -> Newsletter (report_number = last + 1, confidence) + counters
       news -> AlertFilter admission, admitted alerts + counters
    5. DELIVER: publish artifacts and progress through the DeliveryBroker,
       then best-effort external notifications

Failure Semantics:
    - Discovery, analysis and synthesis are retried in-execution up to
      stage_retry_budget extra attempts on StageFailure or collaborator errors
    - Every stage runs under stage_timeout_seconds; a timeout fails the
      execution immediately (no retry)
    - Finalize failures are terminal and roll back, leaving no partial artifact
    - Every execution that starts running ends completed or failed
"""

import asyncio
import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, TypeVar

from agents.synthesizer import Synthesizer, render_newsletter_markdown
from alerts import AlertFilter
from config import Config
from database import Database
from delivery import DeliveryBroker
from errors import StageFailure, StageTimeout
from models.artifacts import AlertCandidate, AlertType, NewsAlert, Newsletter, NewsletterDraft, Source, alert_type_for
from models.execution import ExecutionOutcome, PipelineExecution, Stage
from models.messages import AlertPayload, NewsletterPayload, ProgressPayload
from models.stream import FocusType, Stream
from notifications import notify_alerts, notify_newsletter
from observability.logging import clear_context, set_execution_context
from observability.tracing import trace_operation
from scheduling import utcnow
from scoring import ScoringWeights, analyze_sources, confidence_score, importance_score

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STAGES = (Stage.DISCOVERY, Stage.ANALYSIS, Stage.SYNTHESIS)
RESEARCH_LOOKBACK = timedelta(days=7)


@dataclass
class ExecutionStats:
    """Counts from a single execution, for logging and tracing.

    Attributes:
        discovered: Sources returned by discovery
        analyzed: Sources surviving analysis
        insights: Key insights (research) or alerts admitted (news)
        candidates: Alert candidates produced (news)
        attempts: Attempts used per stage
        duration: Wall-clock seconds
    """

    discovered: int = 0
    analyzed: int = 0
    insights: int = 0
    candidates: int = 0
    attempts: dict[str, int] = field(default_factory=dict)
    duration: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["duration"] = round(d["duration"], 2)
        return d


@dataclass
class _RunState:
    stream: Stream
    sources: list[Source] = field(default_factory=list)
    analyzed: list[Source] = field(default_factory=list)
    draft: NewsletterDraft | None = None
    candidates: list[AlertCandidate] = field(default_factory=list)
    newsletter: Newsletter | None = None
    alerts: list[NewsAlert] = field(default_factory=list)


class PipelineEngine:
    """Runs PipelineExecutions through the stage state machine.

    Components:
        - Database: executions, artifacts and counters
        - DeliveryBroker: progress and artifact messages
        - SourceProvider: discovery collaborator
        - Synthesizer: research drafting collaborator
        - AlertFilter: news admission policy
    """

    def __init__(
        self,
        db: Database,
        broker: DeliveryBroker,
        sources: Any,
        synthesizer: Synthesizer,
        alert_filter: AlertFilter,
        config: Config,
        clock: Callable[[], datetime] = utcnow,
    ):
        """Initialize the engine.

        Args:
            db: Store
            broker: Delivery broker for progress and artifacts
            sources: SourceProvider used by discovery
            synthesizer: Synthesizer used by research synthesis
            alert_filter: AlertFilter used by news finalize
            config: Timeouts, retry budget and scoring settings
            clock: UTC clock (injectable for tests)
        """
        self.db = db
        self.broker = broker
        self.sources = sources
        self.synthesizer = synthesizer
        self.alert_filter = alert_filter
        self.config = config
        self.clock = clock
        self.weights = ScoringWeights(saturation=config.confidence_saturation)

    # === Stage runner ===

    async def _run_stage(
        self,
        execution: PipelineExecution,
        stage: Stage,
        work: Callable[[], Awaitable[T]],
        stats: ExecutionStats,
    ) -> T:
        """Enter `stage` and run `work` with timeout and in-execution retries."""
        attempts = self.config.stage_retry_budget + 1 if stage in RETRYABLE_STAGES else 1
        timeout = self.config.stage_timeout_seconds
        last_error: StageFailure | None = None

        for attempt in range(1, attempts + 1):
            execution.advance(stage)
            self.db.save_execution(execution)
            stats.attempts[stage.value] = attempt
            try:
                with trace_operation(
                    f"pipeline.{stage.value}",
                    {"stream_id": execution.stream_id, "execution_id": execution.id, "attempt": attempt},
                ):
                    return await asyncio.wait_for(work(), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise StageTimeout(stage.value, f"exceeded {timeout:g}s") from e
            except StageTimeout:
                raise
            except StageFailure as e:
                last_error = e
            except Exception as e:
                if stage not in RETRYABLE_STAGES:
                    raise StageFailure(stage.value, f"{type(e).__name__}: {e}") from e
                last_error = StageFailure(stage.value, f"{type(e).__name__}: {e}")

            logger.warning(
                "Stage attempt failed | stage=%s attempt=%d/%d error=%s",
                stage.value, attempt, attempts, last_error,
            )

        assert last_error is not None
        raise last_error

    def _progress(self, execution: PipelineExecution, stage: str, sources: int, insights: int) -> None:
        self.broker.publish(
            execution.stream_id,
            ProgressPayload(
                execution_id=execution.id,
                stage=stage,
                sources_found=sources,
                insights_found=insights,
                is_automated=execution.is_automated,
            ),
            self.clock(),
        )

    # === Stages ===

    async def _discover(self, state: _RunState, execution: PipelineExecution) -> list[Source]:
        stream = state.stream
        if stream.focus_type is FocusType.NEWS and self.sources.source_type not in stream.news_config.source_types:
            logger.info(
                "Discovery skipped, provider not enabled | provider=%s source_types=%s",
                self.sources.source_type, stream.news_config.source_types,
            )
            return []
        since = execution.monitor_since
        if stream.focus_type is FocusType.RESEARCH and execution.is_automated:
            latest = self.db.latest_newsletter(stream.id)
            since = latest.generated_at if latest else self.clock() - RESEARCH_LOOKBACK
        return await self.sources.discover(stream.title, since, self.config.discovery_limit)

    async def _analyze(self, state: _RunState) -> list[Source]:
        stream = state.stream
        if stream.focus_type is FocusType.RESEARCH:
            research = stream.research_config
            return analyze_sources(
                state.sources,
                stream.title,
                min_credibility=research.min_credibility,
                max_sources=research.max_sources,
                academic_only=research.academic_only,
            )
        return analyze_sources(state.sources, stream.title)

    async def _synthesize(self, state: _RunState, execution: PipelineExecution) -> None:
        stream = state.stream
        if stream.focus_type is FocusType.RESEARCH:
            if not state.analyzed and execution.is_automated:
                state.draft = None
                return
            state.draft = await self.synthesizer.synthesize(stream.title, state.analyzed)
            return

        reference = execution.started_at or self.clock()
        candidates = [
            AlertCandidate(
                title=source.title,
                body=source.snippet,
                source_url=source.url,
                publisher=source.publisher,
                published_at=source.published_at,
                importance_score=importance_score(source, reference),
            )
            for source in state.analyzed
        ]
        if execution.monitor_since is not None:
            # Real-time checks only raise breaking news
            candidates = [c for c in candidates if alert_type_for(c.importance_score) is AlertType.BREAKING]
        state.candidates = candidates

    async def _finalize(self, state: _RunState, execution: PipelineExecution) -> None:
        stream = state.stream
        now = self.clock()
        # Applied to the execution only after commit
        done = execution.model_copy(deep=True)

        with self.db.transaction():
            if stream.focus_type is FocusType.RESEARCH:
                if state.draft is not None:
                    confidence = confidence_score(state.analyzed, self.weights)
                    report_number = self.db.next_report_number(stream.id)
                    state.newsletter = Newsletter(
                        id=uuid.uuid4().hex,
                        stream_id=stream.id,
                        execution_id=execution.id,
                        title=f"{stream.title} - Research Update #{report_number}",
                        summary=state.draft.summary,
                        body=render_newsletter_markdown(
                            stream.title, state.draft, state.analyzed, confidence,
                            report_number, execution.is_automated, now,
                        ),
                        sources=[s.url for s in state.analyzed],
                        key_insights=state.draft.key_insights,
                        confidence=confidence,
                        report_number=report_number,
                        is_automated=execution.is_automated,
                        generated_at=now,
                    )
                    self.db.save_newsletter(state.newsletter, commit=False)
                    done.confidence = confidence
                    done.insights_found = len(state.draft.key_insights)
            else:
                admission = self.alert_filter.admit(state.candidates, stream, now)
                for alert in admission.alerts:
                    self.db.save_alert(alert, commit=False)
                state.alerts = admission.alerts
                done.insights_found = len(admission.alerts)

            done.sources_analyzed = len(state.analyzed)
            if state.newsletter is not None or state.alerts:
                self.db.record_stream_update(
                    stream.id,
                    stream.sources_count + len(state.analyzed),
                    stream.insights_count + done.insights_found,
                    now,
                    commit=False,
                )
            done.advance(Stage.COMPLETED)
            done.ended_at = now
            self.db.save_execution(done, commit=False)

        for name, value in done:
            setattr(execution, name, value)

    # === Entry point ===

    async def run(self, execution: PipelineExecution) -> ExecutionOutcome:
        """Drive an execution to a terminal state.

        Never raises for pipeline errors; the outcome carries success and the
        error text. Cancellation marks the execution failed and propagates.
        """
        set_execution_context(execution.stream_id, execution.id)
        start = time.monotonic()
        stats = ExecutionStats()

        try:
            stream = self.db.require_stream(execution.stream_id)
            state = _RunState(stream=stream)
            execution.started_at = self.clock()
            logger.info(
                "Execution started | focus=%s automated=%s",
                stream.focus_type.value, execution.is_automated,
            )

            state.sources = await self._run_stage(
                execution, Stage.DISCOVERY, lambda: self._discover(state, execution), stats
            )
            stats.discovered = len(state.sources)
            self._progress(execution, Stage.DISCOVERY.value, len(state.sources), 0)

            state.analyzed = await self._run_stage(
                execution, Stage.ANALYSIS, lambda: self._analyze(state), stats
            )
            stats.analyzed = len(state.analyzed)
            self._progress(execution, Stage.ANALYSIS.value, len(state.analyzed), 0)

            await self._run_stage(execution, Stage.SYNTHESIS, lambda: self._synthesize(state, execution), stats)
            produced = len(state.draft.key_insights) if state.draft else len(state.candidates)
            stats.candidates = len(state.candidates)
            self._progress(execution, Stage.SYNTHESIS.value, len(state.analyzed), produced)

            await self._run_stage(execution, Stage.FINALIZE, lambda: self._finalize(state, execution), stats)
            stats.insights = execution.insights_found

        except asyncio.CancelledError:
            self.fail(execution, "cancelled")
            clear_context()
            raise
        except Exception as e:
            if not isinstance(e, StageFailure):
                logger.error("Execution error | type=%s error=%s", type(e).__name__, e, exc_info=True)
            self.fail(execution, str(e))
            stats.duration = time.monotonic() - start
            logger.warning("Execution failed | stage=%s error=%s stats=%s", execution.failed_stage, e, stats.to_dict())
            clear_context()
            return ExecutionOutcome(
                execution_id=execution.id,
                stream_id=execution.stream_id,
                success=False,
                is_automated=execution.is_automated,
                error=str(e),
                finished_at=execution.ended_at or self.clock(),
            )

        try:
            await self._deliver(state, execution)
        except Exception as e:
            # Artifacts are already committed
            logger.error("Delivery after finalize failed: %s", e, exc_info=True)

        stats.duration = time.monotonic() - start
        logger.info("Execution completed | stats=%s", stats.to_dict())
        clear_context()
        return ExecutionOutcome(
            execution_id=execution.id,
            stream_id=execution.stream_id,
            success=True,
            is_automated=execution.is_automated,
            finished_at=execution.ended_at or self.clock(),
        )

    def fail(self, execution: PipelineExecution, error: str) -> None:
        """Mark a non-terminal execution failed and publish the failed progress."""
        if execution.status.is_terminal:
            return
        execution.advance(Stage.FAILED)
        execution.error = error
        execution.ended_at = self.clock()
        try:
            self.db.save_execution(execution)
            self._progress(execution, Stage.FAILED.value, execution.sources_analyzed, 0)
        except Exception as e:
            logger.error("Recording failed execution failed: %s", e, exc_info=True)

    async def _deliver(self, state: _RunState, execution: PipelineExecution) -> None:
        stream = state.stream
        if state.newsletter is not None:
            self.broker.publish(stream.id, NewsletterPayload(newsletter=state.newsletter), state.newsletter.generated_at)
        for alert in state.alerts:
            self.broker.publish(stream.id, AlertPayload(alert=alert), alert.sent_at)
        self._progress(execution, Stage.COMPLETED.value, execution.sources_analyzed, execution.insights_found)

        if state.newsletter is not None or state.alerts:
            self.broker.broadcast(stream.owner, "stream-updated", {
                "id": stream.id,
                "hasNewUpdate": True,
                "lastUpdate": execution.ended_at.isoformat() if execution.ended_at else None,
            })

        if state.newsletter is not None:
            await notify_newsletter(state.newsletter, stream.title, self.config)
        if state.alerts:
            await notify_alerts(state.alerts, self.config)
