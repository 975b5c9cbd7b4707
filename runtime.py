"""Composition root: wires the store, broker, engine, workers, scheduler and server.

Usage:
    >>> runtime = Runtime(Config.load())
    >>> asyncio.run(runtime.serve(stop_event))
"""

import asyncio
import logging
import signal

from aiohttp import web

from agents.synthesizer import Synthesizer, create_synthesizer
from alerts import AlertFilter
from auth import StaticTokenAuthenticator
from chat import ChatAgent
from config import Config
from database import Database
from delivery import DeliveryBroker
from guard import ConcurrencyGuard
from observability.tracing import setup_tracing
from pipeline import PipelineEngine
from scheduler import TaskScheduler
from server import RelayServer
from sources import GoogleNewsSource, SourceProvider
from workers import WorkerPool

logger = logging.getLogger(__name__)


class Runtime:
    """All long-lived components of one relay process."""

    def __init__(
        self,
        config: Config,
        db: Database | None = None,
        sources: SourceProvider | None = None,
        synthesizer: Synthesizer | None = None,
    ):
        self.config = config
        self.db = db or Database(config.db_path)
        self.guard = ConcurrencyGuard(lease_seconds=config.lease_seconds)
        self.broker = DeliveryBroker(self.db)
        self.alert_filter = AlertFilter(
            self.db,
            dedup_window_hours=config.dedup_window_hours,
            dedup_similarity=config.dedup_similarity,
        )
        self.engine = PipelineEngine(
            db=self.db,
            broker=self.broker,
            sources=sources or GoogleNewsSource(language=config.language),
            synthesizer=synthesizer or create_synthesizer(config),
            alert_filter=self.alert_filter,
            config=config,
        )
        self.workers = WorkerPool(self.engine, self.guard, asyncio.Queue(), max_workers=config.max_workers)
        self.scheduler = TaskScheduler(self.db, self.guard, self.broker, self.workers, config)
        self.chat = ChatAgent(self.scheduler, self.broker)
        self.server = RelayServer(
            self.db,
            self.scheduler,
            self.broker,
            self.alert_filter,
            StaticTokenAuthenticator(config.auth_tokens),
            chat=self.chat,
        )

    async def run_pending(self) -> int:
        """Wait for queued executions, then record their outcomes."""
        await self.workers.join()
        recorded = self.scheduler.drain_outcomes()
        await self.broker.flush()
        return recorded

    async def serve(self, stop: asyncio.Event | None = None) -> None:
        """Run the server and scheduler until `stop` is set (or SIGINT/SIGTERM)."""
        stop = stop or asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except (NotImplementedError, RuntimeError):
                pass

        if self.config.enable_logfire:
            setup_tracing(enabled=True, service_name="relay", token=self.config.logfire_token)

        orphaned = self.scheduler.recover()
        if orphaned:
            logger.warning("Recovered orphaned executions | count=%d", orphaned)

        self.workers.start()
        runner = web.AppRunner(self.server.build_app())
        await runner.setup()
        site = web.TCPSite(runner, self.config.host, self.config.port)
        await site.start()
        logger.info("Relay listening | host=%s port=%d", self.config.host, self.config.port)

        try:
            await self.scheduler.run(stop)
        finally:
            await self.workers.stop()
            self.scheduler.drain_outcomes()
            await self.broker.close()
            await runner.cleanup()
            self.db.close()
            logger.info("Relay stopped")
