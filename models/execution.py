"""Pipeline execution model and stage state machine.

One PipelineExecution is one run of discovery -> analysis -> synthesis ->
finalize for a stream. Stage transitions only move forward; a retry re-enters
the same stage. Terminal stages are COMPLETED and FAILED, and a terminal
execution is never resurrected (a retry of the cycle is a new execution).
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)


class Stage(str, Enum):
    PENDING = "pending"
    DISCOVERY = "discovery"
    ANALYSIS = "analysis"
    SYNTHESIS = "synthesis"
    FINALIZE = "finalize"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def order(self) -> int:
        # FAILED shares the top rank so any stage may fail
        return _STAGE_ORDER[self]

    def can_enter(self, target: "Stage") -> bool:
        """Whether moving from this stage to `target` is a legal transition."""
        if self in (Stage.COMPLETED, Stage.FAILED):
            return False
        if target is Stage.FAILED:
            return True
        return target.order == self.order or target.order == self.order + 1


_STAGE_ORDER = {
    Stage.PENDING: 0,
    Stage.DISCOVERY: 1,
    Stage.ANALYSIS: 2,
    Stage.SYNTHESIS: 3,
    Stage.FINALIZE: 4,
    Stage.COMPLETED: 5,
    Stage.FAILED: 5,
}

WORK_STAGES = (Stage.DISCOVERY, Stage.ANALYSIS, Stage.SYNTHESIS, Stage.FINALIZE)


class InvalidTransition(Exception):
    """Raised when code attempts an illegal stage transition."""


class PipelineExecution(BaseModel):
    """A single pipeline run for a stream (stored as a research session).

    Attributes:
        id: Execution id
        stream_id: Stream being executed
        status: pending, running, completed or failed
        stage: Furthest stage reached
        started_at / ended_at: Wall-clock timing (UTC)
        sources_analyzed: Sources surviving analysis
        insights_found: Insights produced (research) or alerts admitted (news)
        confidence: Research confidence 0.0-1.0 (0 for news runs)
        is_automated: True for scheduled runs, False for manual triggers
        failed_stage: Stage the execution was in when it failed
        error: Failure reason for failed executions
        monitor_since: Set on real-time monitoring checks; discovery cutoff, and
            only breaking candidates are kept (not stored)
    """

    id: str
    stream_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    stage: Stage = Stage.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    sources_analyzed: int = 0
    insights_found: int = 0
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_automated: bool = True
    failed_stage: Stage | None = None
    error: str = ""
    monitor_since: datetime | None = None

    def advance(self, target: Stage) -> None:
        """Move to `target`, enforcing the forward-only state machine."""
        if not self.stage.can_enter(target):
            raise InvalidTransition(f"{self.stage.value} -> {target.value}")
        if target is Stage.FAILED:
            self.failed_stage = self.stage
        self.stage = target
        if target is Stage.COMPLETED:
            self.status = ExecutionStatus.COMPLETED
        elif target is Stage.FAILED:
            self.status = ExecutionStatus.FAILED
        else:
            self.status = ExecutionStatus.RUNNING

    def __str__(self) -> str:
        return f"Execution({self.id[:8]}, stream={self.stream_id[:8]}, {self.status.value}/{self.stage.value})"


class ExecutionOutcome(BaseModel):
    """Result handed back to the scheduler when an execution terminates.

    `deferred` marks an execution that never ran because its lease was gone
    by the time a worker picked it up.
    """

    execution_id: str
    stream_id: str
    success: bool
    is_automated: bool = True
    deferred: bool = False
    error: str = ""
    finished_at: datetime
