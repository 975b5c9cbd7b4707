"""Bounded worker pool for pipeline executions.

The scheduler never runs a pipeline itself. It admits a stream through the
ConcurrencyGuard, creates a pending execution and submits an
ExecutionRequest. max_workers tasks consume the request queue; each runs the
engine while holding (and renewing) the stream's lease, then puts an
ExecutionOutcome on the outcome queue for the scheduler to record. A request
whose lease expired while it was queued is failed without running and
reported as deferred.
"""

import asyncio
import logging
from dataclasses import dataclass

from errors import ConcurrencyConflict
from guard import ConcurrencyGuard, LeaseToken
from models.execution import ExecutionOutcome, PipelineExecution
from pipeline import PipelineEngine
from scheduling import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExecutionRequest:
    """A pending execution together with the lease that admitted it."""

    execution: PipelineExecution
    lease: LeaseToken


class WorkerPool:
    """max_workers tasks draining an asyncio.Queue of ExecutionRequests."""

    def __init__(
        self,
        engine: PipelineEngine,
        guard: ConcurrencyGuard,
        outcomes: asyncio.Queue,
        max_workers: int = 4,
    ):
        self.engine = engine
        self.guard = guard
        self.outcomes = outcomes
        self.max_workers = max_workers
        self.requests: asyncio.Queue[ExecutionRequest] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    def submit(self, request: ExecutionRequest) -> None:
        self.requests.put_nowait(request)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"pipeline-worker-{i}")
            for i in range(self.max_workers)
        ]
        logger.info("Worker pool started | workers=%d", self.max_workers)

    async def _execute(self, index: int, request: ExecutionRequest) -> ExecutionOutcome:
        execution = request.execution
        try:
            async with self.guard.hold(request.lease):
                return await self.engine.run(execution)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            deferred = isinstance(e, ConcurrencyConflict)
            if deferred:
                logger.warning("Execution dropped, lease lost | worker=%d execution=%s", index, execution.id)
            else:
                logger.error(
                    "Worker error | worker=%d execution=%s error=%s",
                    index, execution.id, e, exc_info=True,
                )
            self.engine.fail(execution, str(e))
            return ExecutionOutcome(
                execution_id=execution.id,
                stream_id=execution.stream_id,
                success=False,
                is_automated=execution.is_automated,
                deferred=deferred,
                error=str(e),
                finished_at=execution.ended_at or utcnow(),
            )

    async def _worker(self, index: int) -> None:
        while True:
            request = await self.requests.get()
            try:
                outcome = await self._execute(index, request)
                await self.outcomes.put(outcome)
            finally:
                self.requests.task_done()

    async def join(self) -> None:
        """Wait until every submitted request has finished running."""
        await self.requests.join()

    async def stop(self) -> None:
        """Cancel workers. In-flight executions are marked failed by the engine."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")
