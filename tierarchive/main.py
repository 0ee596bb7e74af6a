"""
TierArchive - Main entry point.

This module starts the archival service with all components:
- Hot and cold store connections
- Trigger loop (interval scan or change feed)
- Archival orchestrator
- Retrieval gateway with read-through cache

Usage:
    python -m tierarchive.main

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Stores are connected before the first trigger fires
    - Requeued dead letters are re-injected every requeue_poll_seconds,
      whether or not the trigger fires, and resolved only once their records
      left the hot store
    - One orchestrator run at a time
    - Shutdown stops dispatch and waits up to shutdown_grace_seconds for
      in-flight chunks; chunks still running after that are abandoned and
      their records stay in hot, eligible for the next run

How to change safely:
    - Add new components with enable/disable flags
    - Test shutdown sequence thoroughly
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import json_log_formatter

from .archive import ArchivalOrchestrator, EventSink, LoggingEventSink
from .cache import InMemoryCache
from .changefeed import ChangeFeed, create_change_feed
from .config import EngineConfig, HotBackend, TriggerMode
from .deadletter import DeadLetterSink, InMemoryDeadLetterSink, SqliteDeadLetterSink
from .retrieve import RetrievalGateway
from .scan import (
    ChangeFeedTrigger,
    CheckpointStore,
    EligibilityScanner,
    InMemoryCheckpointStore,
    IntervalTrigger,
    SqliteCheckpointStore,
    TriggerSource,
)
from .stores import ColdStore, HotStore, create_cold_store, create_hot_store

logger = logging.getLogger(__name__)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("aiobotocore").setLevel(logging.WARNING)


class ArchivalService:
    """TierArchive service orchestrator.

    Manages the lifecycle of all engine components. Any component can be
    injected (tests do this); the rest are built from configuration.

    Attributes:
        config: Engine configuration
        hot: Hot store
        cold: Cold store
        dead_letters: Dead-letter sink
        orchestrator: Archival orchestrator
        gateway: Retrieval gateway

    Example:
        >>> service = ArchivalService()
        >>> await service.start()  # Runs until request_shutdown()
        >>> await service.stop()
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        hot: HotStore | None = None,
        cold: ColdStore | None = None,
        dead_letters: DeadLetterSink | None = None,
        checkpoints: CheckpointStore | None = None,
        feed: ChangeFeed | None = None,
        events: EventSink | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Optional engine configuration (loaded from env if not provided)
        """
        self.config = config or EngineConfig.from_env()
        self.hot = hot
        self.cold = cold
        self.dead_letters = dead_letters
        self.checkpoints = checkpoints
        self.feed = feed
        self.events = events or LoggingEventSink()

        self.orchestrator: ArchivalOrchestrator | None = None
        self.gateway: RetrievalGateway | None = None
        self.trigger: TriggerSource | None = None

        self._running = False
        self._shutdown_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self._run_lock = asyncio.Lock()
        self._run_count = 0
        self._reinjected_count = 0

    async def start(self) -> None:
        """Start the service and block until shutdown is requested."""
        if self._running:
            logger.warning("Service already running")
            return

        logger.info("Starting TierArchive")
        self.config.log_config()
        self._running = True

        try:
            await self._build()

            self._tasks.append(asyncio.create_task(self._trigger_loop()))
            self._tasks.append(asyncio.create_task(self._requeue_loop()))
            logger.info("TierArchive started successfully")

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error(f"Service startup failed: {e}", exc_info=True)
            await self.stop()
            raise

    async def _build(self) -> None:
        storage = self.config.storage
        local_state = storage.hot_backend == HotBackend.MEMORY
        if not local_state:
            Path(storage.data_dir).mkdir(parents=True, exist_ok=True)

        if self.hot is None:
            self.hot = create_hot_store(self.config)
        await self.hot.connect()
        if self.cold is None:
            self.cold = create_cold_store(self.config)
        await self.cold.connect()
        logger.info("Stores connected")

        if self.dead_letters is None:
            if local_state:
                self.dead_letters = InMemoryDeadLetterSink()
            else:
                sink = SqliteDeadLetterSink(storage.state_db_path, storage.busy_timeout_ms)
                await sink.connect()
                self.dead_letters = sink

        self.orchestrator = ArchivalOrchestrator.from_config(
            self.config, self.hot, self.cold, self.dead_letters, self.events
        )

        cache = None
        if self.config.cache.enabled:
            cache = InMemoryCache(max_entries=self.config.cache.max_entries)
        self.gateway = RetrievalGateway(
            self.hot,
            self.cold,
            cache=cache,
            cache_ttl_seconds=self.config.cache.ttl_seconds,
            cold_prefix=self.config.archival.cold_prefix,
            read_retries=self.config.cache.read_retries,
        )

        self.trigger = await self._build_trigger(local_state)

    async def _build_trigger(self, local_state: bool) -> TriggerSource:
        trigger_config = self.config.trigger
        if trigger_config.mode == TriggerMode.CHANGEFEED:
            if self.feed is None:
                self.feed = create_change_feed(self.config)
            await self.feed.connect()
            logger.info("Change feed connected")
            return ChangeFeedTrigger(
                self.feed,
                self.hot,
                threshold_days=self.config.archival.threshold_days,
                batch_size=trigger_config.batch_size,
                batch_window_seconds=trigger_config.batch_window_seconds,
                max_pending=trigger_config.max_pending,
            )

        if self.checkpoints is None:
            if local_state:
                self.checkpoints = InMemoryCheckpointStore()
            else:
                checkpoints = SqliteCheckpointStore(
                    self.config.storage.state_db_path, self.config.storage.busy_timeout_ms
                )
                await checkpoints.connect()
                self.checkpoints = checkpoints
        scanner = EligibilityScanner(
            self.hot,
            threshold_days=self.config.archival.threshold_days,
            page_size=self.config.archival.scan_page_size,
            checkpoints=self.checkpoints,
        )
        return IntervalTrigger(scanner, interval_seconds=trigger_config.interval_seconds)

    async def _trigger_loop(self) -> None:
        """Run the orchestrator once per trigger firing."""
        batches = self.trigger.fire()
        try:
            async for batch in batches:
                try:
                    async with self._run_lock:
                        if self._shutdown_event.is_set():
                            return
                        await self.orchestrator.run(batch)
                    self._run_count += 1
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(f"Archival run failed: {e}", exc_info=True)
        finally:
            await batches.aclose()

    async def _requeue_loop(self) -> None:
        """Re-inject requeued dead letters on a fixed cadence."""
        poll_seconds = self.config.trigger.requeue_poll_seconds
        while not self._shutdown_event.is_set():
            try:
                await self.reinject_requeued()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Dead-letter re-injection failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=poll_seconds)
            except asyncio.TimeoutError:
                pass

    async def reinject_requeued(self) -> int:
        """Archive requeued dead letters and resolve those that succeeded.

        Entries whose record failed again are reopened by the orchestrator;
        entries left unfinished by a shutdown stay requeued.

        Returns:
            Number of entries resolved as reinjected
        """
        requeued = await self.dead_letters.pending_requeued()
        if not requeued:
            return 0

        async with self._run_lock:
            if self._shutdown_event.is_set():
                return 0
            logger.info("Re-injecting requeued dead letters", extra={"count": len(requeued)})
            report = await self.orchestrator.run(requeued, collect_outcomes=True)

        done = [outcome.key for outcome in report.outcomes if outcome.succeeded]
        resolved = await self.dead_letters.mark_reinjected(done)
        self._reinjected_count += resolved
        if resolved < len(requeued):
            logger.warning(
                "Some requeued dead letters were not re-injected",
                extra={"requeued": len(requeued), "resolved": resolved},
            )
        return resolved

    async def stop(self) -> None:
        """Stop the service, letting in-flight chunks finish within the grace period."""
        if not self._running:
            return

        logger.info("Stopping TierArchive")

        self._shutdown_event.set()
        if self.trigger:
            self.trigger.stop()
        if self.orchestrator:
            self.orchestrator.stop()

        if self._tasks:
            grace = self.config.trigger.shutdown_grace_seconds
            unfinished = {task for task in self._tasks if not task.done()}
            if unfinished and grace > 0:
                _, unfinished = await asyncio.wait(unfinished, timeout=grace)
            if unfinished:
                logger.warning(
                    "Shutdown grace period elapsed, abandoning in-flight work",
                    extra={"tasks": len(unfinished), "grace_seconds": grace},
                )
            for task in unfinished:
                task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self.feed:
            await self.feed.close()
        if self.cold:
            await self.cold.close()
        if self.hot:
            await self.hot.close()

        self._running = False
        logger.info("TierArchive stopped")

    def request_shutdown(self) -> None:
        """Request graceful shutdown."""
        self._shutdown_event.set()

    @property
    def stats(self) -> dict[str, Any]:
        """Get service statistics."""
        return {
            "running": self._running,
            "runs": self._run_count,
            "reinjected": self._reinjected_count,
            "orchestrator": self.orchestrator.stats if self.orchestrator else None,
            "gateway": self.gateway.stats if self.gateway else None,
        }


def main() -> None:
    """Main entry point."""
    # Load configuration
    try:
        config = EngineConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    # Setup logging
    setup_logging(config)

    # Create service
    service = ArchivalService(config)

    # Setup signal handlers
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, initiating shutdown")
        service.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal, sig)

    # Run service
    try:
        loop.run_until_complete(service.start())
    except KeyboardInterrupt:
        pass
    finally:
        loop.run_until_complete(service.stop())
        loop.close()


if __name__ == "__main__":
    main()
