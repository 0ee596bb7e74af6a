"""
Archival triggers.

A trigger decides when archival runs and which candidates it sees. Both
triggers expose the same contract: fire() yields batches, and each batch
is itself an async iterator of ArchivalCandidate. The service runs the
orchestrator once per batch.

    IntervalTrigger     one scanner pass per tick
    ChangeFeedTrigger   micro-batches built from change events

Invariants:
    - A batch is yielded only after the previous batch has been consumed
    - stop() makes fire() return at the next suspension point
    - The change-feed trigger holds at most max_pending events in memory
    - A (key, timestamp) pair is emitted at most once while it is in the
      dedup window

How to change safely:
    - New triggers must implement TriggerSource
    - Change events are committed only after their batch was consumed
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from abc import abstractmethod
from collections import OrderedDict
from typing import (
    AsyncIterator,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Tuple,
    runtime_checkable,
)

from ..changefeed.base import ChangeEvent, ChangeFeed, FeedError
from ..errors import TransientBackendError
from ..models import MS_PER_DAY, ArchivalCandidate, RecordKey, now_ms
from ..stores.base import HotStore
from .scanner import EligibilityScanner

logger = logging.getLogger(__name__)


async def iterate_candidates(
    candidates: Iterable[ArchivalCandidate],
) -> AsyncIterator[ArchivalCandidate]:
    """Adapt a plain iterable to the async candidate stream."""
    for candidate in candidates:
        yield candidate


@runtime_checkable
class TriggerSource(Protocol):
    """Protocol for archival triggers."""

    @abstractmethod
    def fire(self) -> AsyncIterator[AsyncIterator[ArchivalCandidate]]:
        """Yield batches of candidates until stopped."""
        ...

    @abstractmethod
    def stop(self) -> None:
        """Ask fire() to finish."""
        ...


class IntervalTrigger:
    """Runs a scanner pass every interval_seconds.

    Example:
        >>> trigger = IntervalTrigger(scanner, interval_seconds=3600)
        >>> async for batch in trigger.fire():
        ...     await orchestrator.run(batch)
    """

    def __init__(
        self,
        scanner: EligibilityScanner,
        interval_seconds: float = 3600.0,
        fire_immediately: bool = True,
    ) -> None:
        self.scanner = scanner
        self.interval_seconds = interval_seconds
        self.fire_immediately = fire_immediately
        self._stopped = asyncio.Event()
        self.fired_count = 0

    async def fire(self) -> AsyncIterator[AsyncIterator[ArchivalCandidate]]:
        self._stopped.clear()
        if not self.fire_immediately:
            await self._sleep()

        while not self._stopped.is_set():
            self.fired_count += 1
            logger.info("Interval trigger fired", extra={"tick": self.fired_count})
            yield self.scanner.scan()
            await self._sleep()

    async def _sleep(self) -> None:
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stopped.set()


class ChangeFeedTrigger:
    """Builds archival batches from record change events.

    A background pump copies events from the feed into a bounded queue.
    fire() moves them into a min-heap ordered by write timestamp, releases
    those that have aged past the threshold, drops keys that are already
    gone from the hot store or were emitted recently, and yields
    micro-batches of at most batch_size candidates, each collected within
    batch_window_seconds.

    Events still too young when the process stops are not committed and
    are redelivered by the feed.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        hot: HotStore,
        threshold_days: float = 90,
        batch_size: int = 500,
        batch_window_seconds: float = 5.0,
        max_pending: int = 100000,
        group_id: str = "tierarchive",
        dedup_size: int = 10000,
        reconnect_delay_seconds: float = 1.0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if max_pending < 1:
            raise ValueError("max_pending must be >= 1")
        self.feed = feed
        self.hot = hot
        self.threshold_days = threshold_days
        self.batch_size = batch_size
        self.batch_window_seconds = batch_window_seconds
        self.max_pending = max_pending
        self.group_id = group_id
        self.dedup_size = dedup_size
        self.reconnect_delay_seconds = reconnect_delay_seconds
        self._clock = clock

        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=batch_size)
        self._pending: List[Tuple[int, int, ChangeEvent]] = []
        self._seq = itertools.count()
        self._recent: OrderedDict[Tuple[RecordKey, int], None] = OrderedDict()
        self._stopped = asyncio.Event()
        self._pump_task: Optional[asyncio.Task] = None

        self.emitted_count = 0
        self.duplicate_count = 0
        self.gone_count = 0

    @property
    def pending_count(self) -> int:
        """Events held because they are not yet eligible."""
        return len(self._pending)

    def cutoff_ms(self) -> int:
        return self._clock() - int(self.threshold_days * MS_PER_DAY)

    async def fire(self) -> AsyncIterator[AsyncIterator[ArchivalCandidate]]:
        self._stopped.clear()
        self._pump_task = asyncio.create_task(self._pump())
        try:
            while not self._stopped.is_set():
                batch, consumed = await self._collect_batch()
                if batch:
                    self.emitted_count += len(batch)
                    logger.info(
                        "Change-feed batch ready",
                        extra={"candidates": len(batch), "pending": len(self._pending)},
                    )
                    yield iterate_candidates(batch)
                for event in self._committable(consumed):
                    await self.feed.commit(event)
        finally:
            await self._stop_pump()

    def _committable(self, consumed: List[ChangeEvent]) -> List[ChangeEvent]:
        """Consumed events whose commit cannot skip over a pending event.

        Feeds commit per partition up to an offset, so an event is held back
        while an older offset of its partition is still pending. Held-back
        events are redelivered after a restart and dropped as gone.
        """
        floors: Dict[int, int] = {}
        for _, _, event in self._pending:
            position = event.position
            if position is not None and position.offset < floors.get(
                position.partition, position.offset + 1
            ):
                floors[position.partition] = position.offset

        committable = []
        for event in consumed:
            position = event.position
            if position is None or position.offset < floors.get(
                position.partition, position.offset + 1
            ):
                committable.append(event)
        return committable

    def stop(self) -> None:
        self._stopped.set()

    async def _pump(self) -> None:
        """Copy feed events into the local queue, reconnecting on errors."""
        while not self._stopped.is_set():
            try:
                async for event in self.feed.subscribe(self.group_id):
                    await self._queue.put(event)
                    if self._stopped.is_set():
                        return
            except FeedError as e:
                logger.error(f"Change feed subscription failed: {e}")
            if not self._stopped.is_set():
                await asyncio.sleep(self.reconnect_delay_seconds)

    async def _stop_pump(self) -> None:
        if self._pump_task is None:
            return
        self._pump_task.cancel()
        try:
            await self._pump_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Change feed pump ended with error: {e}")
        self._pump_task = None

    def _absorb_queue(self) -> None:
        while len(self._pending) < self.max_pending:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            heapq.heappush(self._pending, (event.timestamp_ms, next(self._seq), event))

    async def _collect_batch(self) -> Tuple[List[ArchivalCandidate], List[ChangeEvent]]:
        """Collect one micro-batch.

        Returns:
            (candidates to archive, events that may be committed afterwards)
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.batch_window_seconds
        batch: List[ArchivalCandidate] = []
        consumed: List[ChangeEvent] = []

        while not self._stopped.is_set():
            self._absorb_queue()
            cutoff = self.cutoff_ms()
            while self._pending and self._pending[0][0] < cutoff and len(batch) < self.batch_size:
                _, _, event = heapq.heappop(self._pending)
                consumed.append(event)
                if await self._admit(event):
                    batch.append(event.candidate())

            remaining = deadline - loop.time()
            if len(batch) >= self.batch_size or remaining <= 0:
                break

            if len(self._pending) >= self.max_pending:
                await asyncio.sleep(min(remaining, 0.5))
                continue
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=min(remaining, 0.5))
            except asyncio.TimeoutError:
                continue
            heapq.heappush(self._pending, (event.timestamp_ms, next(self._seq), event))

        return batch, consumed

    async def _admit(self, event: ChangeEvent) -> bool:
        marker = (event.key, event.timestamp_ms)
        if marker in self._recent:
            self._recent.move_to_end(marker)
            self.duplicate_count += 1
            return False

        try:
            present = await self.hot.exists(event.key)
        except TransientBackendError as e:
            logger.warning(
                f"Hot existence check failed, passing candidate through: {e}",
                extra={"key": str(event.key)},
            )
            present = True
        if not present:
            self.gone_count += 1
            return False

        self._recent[marker] = None
        while len(self._recent) > self.dedup_size:
            self._recent.popitem(last=False)
        return True
