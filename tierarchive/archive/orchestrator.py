"""
Archival orchestrator.

Moves eligible records from the hot store to the cold store. A run
consumes a stream of candidates lazily, groups them into chunks, and
hands each chunk to one worker through a bounded queue. Workers process
the records of a chunk with bounded sub-concurrency.

Per-record algorithm:
    1. Read the record from hot. Absent means already archived.
    2. Write the cold document under its deterministic name.
    3. Read it back and compare checksums (or check existence only when
       content verification is off).
    4. Delete from hot. A concurrent delete counts as done.
    5. On failure nothing is deleted. Retry with jittered exponential
       backoff; after max_attempts write a dead-letter entry.

Invariants:
    - The hot delete for a record happens strictly after its cold copy
      was verified
    - Archiving the same candidate twice yields one cold object and no
      extra hot deletes
    - One record's failure never stops the rest of its chunk
    - Throttled retries do not spend the attempt budget until
      throttle_retry_limit is exceeded
    - Candidates in memory are bounded by (2 * workers + 1) * chunk_size

How to change safely:
    - Never reorder steps 2-4
    - Keep archive_record free of raised exceptions other than
      cancellation; callers rely on it returning an outcome
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterable,
    AsyncIterator,
    Awaitable,
    Dict,
    Iterable,
    List,
    Optional,
    TypeVar,
    Union,
)

from ..config import ArchivalConfig, EngineConfig, RetryConfig
from ..deadletter.sink import DeadLetterSink
from ..errors import (
    ObjectNotFoundError,
    PermanentFailure,
    RecordNotFoundError,
    ThrottledError,
    TransientBackendError,
    VerificationFailure,
)
from ..models import (
    ArchivalCandidate,
    ArchivalOutcome,
    Chunk,
    ChunkState,
    OutcomeKind,
    RecordState,
    compute_checksum,
    cold_object_name,
    decode_cold_document,
    encode_cold_document,
    now_ms,
)
from ..stores.base import ColdStore, HotStore
from .backoff import BackoffPolicy
from .events import EventSink, LoggingEventSink, OutcomeEvent
from .governor import CircuitBreaker, ThroughputGovernor

logger = logging.getLogger(__name__)

T = TypeVar("T")

CandidateStream = Union[AsyncIterable[ArchivalCandidate], Iterable[ArchivalCandidate]]


@dataclass
class ChunkResult:
    """Outcome of one chunk."""

    chunk_id: int
    state: ChunkState
    outcomes: List[ArchivalOutcome] = field(default_factory=list)

    def count(self, kind: OutcomeKind) -> int:
        return sum(1 for o in self.outcomes if o.kind is kind)

    @property
    def failed(self) -> List[ArchivalOutcome]:
        return [o for o in self.outcomes if o.kind is OutcomeKind.FAILED]


@dataclass
class RunReport:
    """Totals for one orchestrator run.

    outcomes is None unless the run was asked to collect per-record
    outcomes; a backlog run only keeps counters.
    """

    chunks: int = 0
    completed_chunks: int = 0
    partial_chunks: int = 0
    abandoned_chunks: int = 0
    archived: int = 0
    already_archived: int = 0
    failed: int = 0
    stopped: bool = False
    duration_seconds: float = 0.0
    outcomes: Optional[List[ArchivalOutcome]] = None

    def add(self, result: ChunkResult) -> None:
        if result.state == ChunkState.COMPLETED:
            self.completed_chunks += 1
        elif result.state == ChunkState.PARTIAL_FAILURE:
            self.partial_chunks += 1
        self.archived += result.count(OutcomeKind.ARCHIVED)
        self.already_archived += result.count(OutcomeKind.ALREADY_ARCHIVED)
        self.failed += result.count(OutcomeKind.FAILED)
        if self.outcomes is not None:
            self.outcomes.extend(result.outcomes)

    @property
    def processed(self) -> int:
        return self.archived + self.already_archived + self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": self.chunks,
            "completed_chunks": self.completed_chunks,
            "partial_chunks": self.partial_chunks,
            "abandoned_chunks": self.abandoned_chunks,
            "archived": self.archived,
            "already_archived": self.already_archived,
            "failed": self.failed,
            "stopped": self.stopped,
            "duration_seconds": round(self.duration_seconds, 3),
        }


async def _aiter(candidates: CandidateStream) -> AsyncIterator[ArchivalCandidate]:
    if hasattr(candidates, "__aiter__"):
        async for candidate in candidates:
            yield candidate
    else:
        for candidate in candidates:
            yield candidate


class ArchivalOrchestrator:
    """Runs archival over candidate streams.

    Example:
        >>> orchestrator = ArchivalOrchestrator(hot, cold, dead_letters)
        >>> report = await orchestrator.run(scanner.scan())
        >>> report.archived
        1200
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        dead_letters: DeadLetterSink,
        archival_config: Optional[ArchivalConfig] = None,
        retry_config: Optional[RetryConfig] = None,
        governor: Optional[ThroughputGovernor] = None,
        breaker: Optional[CircuitBreaker] = None,
        events: Optional[EventSink] = None,
        workers: Optional[int] = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            hot: Hot store (source)
            cold: Cold store (destination)
            dead_letters: Where permanently failed records are reported
            archival_config: Chunking, concurrency and verification settings
            retry_config: Per-record retry policy
            governor: Throughput governor (default: ungoverned)
            breaker: Circuit breaker (default: never opens in practice)
            events: Outcome event sink
            workers: Worker pool size (default from archival_config, else 4)
        """
        self.hot = hot
        self.cold = cold
        self.dead_letters = dead_letters
        self.archival = archival_config or ArchivalConfig()
        self.retry = retry_config or RetryConfig()
        self.governor = governor or ThroughputGovernor(max_rps=0)
        self.breaker = breaker or CircuitBreaker()
        self.events = events or LoggingEventSink()
        self.workers = workers or self.archival.max_concurrent_workers or 4
        self.backoff = BackoffPolicy.from_config(self.retry)

        self._stopping = False
        self._running = False
        self._next_chunk_id = 1
        self._stats: Dict[str, int] = {
            "archived": 0,
            "already_archived": 0,
            "failed": 0,
            "retries": 0,
            "throttled": 0,
            "chunks_completed": 0,
            "chunks_partial": 0,
            "chunks_abandoned": 0,
            "peak_queued_chunks": 0,
        }

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        hot: HotStore,
        cold: ColdStore,
        dead_letters: DeadLetterSink,
        events: Optional[EventSink] = None,
    ) -> ArchivalOrchestrator:
        return cls(
            hot,
            cold,
            dead_letters,
            archival_config=config.archival,
            retry_config=config.retry,
            governor=ThroughputGovernor.from_config(config.governor),
            breaker=CircuitBreaker.from_config(config.breaker),
            events=events,
            workers=config.worker_count,
        )

    @property
    def is_running(self) -> bool:
        return self._running

    def stop(self) -> None:
        """Stop dispatching new chunks. Chunks already dispatched finish."""
        if self._running:
            logger.info("Stopping archival run after in-flight chunks")
        self._stopping = True

    async def run(
        self, candidates: CandidateStream, collect_outcomes: bool = False
    ) -> RunReport:
        """Archive every candidate in the stream.

        The stream is consumed lazily; dispatch blocks while all workers
        are busy and the queue is full, and while the breaker is open.
        With collect_outcomes the report lists every finished record.
        """
        report = RunReport(outcomes=[] if collect_outcomes else None)
        started = time.monotonic()
        self._stopping = False
        self._running = True
        queue: asyncio.Queue[Optional[Chunk]] = asyncio.Queue(maxsize=self.workers)
        workers = [
            asyncio.create_task(self._worker(queue, report)) for _ in range(self.workers)
        ]

        try:
            buffer: List[ArchivalCandidate] = []
            async for candidate in _aiter(candidates):
                if self._stopping:
                    break
                buffer.append(candidate)
                if len(buffer) >= self.archival.chunk_size:
                    await self._dispatch(queue, buffer, report)
                    buffer = []
            if buffer and not self._stopping:
                await self._dispatch(queue, buffer, report)

            for _ in workers:
                await queue.put(None)
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        finally:
            self._running = False
            report.stopped = self._stopping
            report.duration_seconds = time.monotonic() - started

        logger.info("Archival run finished", extra=report.to_dict())
        return report

    async def _dispatch(
        self,
        queue: asyncio.Queue,
        candidates: List[ArchivalCandidate],
        report: RunReport,
    ) -> None:
        await self.breaker.wait_until_closed()
        chunk = Chunk(chunk_id=self._next_chunk_id, candidates=candidates)
        self._next_chunk_id += 1
        await queue.put(chunk)
        report.chunks += 1
        self._stats["peak_queued_chunks"] = max(self._stats["peak_queued_chunks"], queue.qsize())

    async def _worker(self, queue: asyncio.Queue, report: RunReport) -> None:
        while True:
            chunk = await queue.get()
            if chunk is None:
                return
            try:
                result = await self.archive_chunk(chunk)
            except asyncio.CancelledError:
                report.abandoned_chunks += 1
                raise
            report.add(result)

    async def archive_chunk(self, chunk: Chunk) -> ChunkResult:
        """Archive every record of a chunk.

        Records run concurrently up to record_concurrency. The chunk is
        COMPLETED only if every record ended archived or already archived.
        """
        chunk.state = ChunkState.DISPATCHED
        semaphore = asyncio.Semaphore(self.archival.record_concurrency)

        async def archive_one(candidate: ArchivalCandidate) -> ArchivalOutcome:
            async with semaphore:
                return await self.archive_record(candidate, chunk_id=chunk.chunk_id)

        try:
            outcomes = await asyncio.gather(*(archive_one(c) for c in chunk.candidates))
        except asyncio.CancelledError:
            chunk.state = ChunkState.ABANDONED
            self._stats["chunks_abandoned"] += 1
            logger.warning(
                "Chunk abandoned, unfinished records stay in hot",
                extra={"chunk_id": chunk.chunk_id, "size": len(chunk)},
            )
            raise

        if all(outcome.succeeded for outcome in outcomes):
            chunk.state = ChunkState.COMPLETED
            self._stats["chunks_completed"] += 1
        else:
            chunk.state = ChunkState.PARTIAL_FAILURE
            self._stats["chunks_partial"] += 1

        finished_ms = now_ms()
        for outcome in outcomes:
            self._emit(
                OutcomeEvent(
                    record_id=outcome.key.record_id,
                    partition_key=outcome.key.partition_key,
                    outcome=outcome.kind.value,
                    attempt_count=outcome.attempts,
                    timestamp_ms=finished_ms,
                    chunk_id=chunk.chunk_id,
                )
            )

        logger.debug(
            "Chunk finished",
            extra={"chunk_id": chunk.chunk_id, "state": chunk.state.value, "size": len(chunk)},
        )
        return ChunkResult(chunk_id=chunk.chunk_id, state=chunk.state, outcomes=list(outcomes))

    async def archive_record(
        self,
        candidate: ArchivalCandidate,
        chunk_id: Optional[int] = None,
    ) -> ArchivalOutcome:
        """Archive one record, retrying until it succeeds or is dead-lettered."""
        key = candidate.key
        name = cold_object_name(key, self.archival.cold_prefix)
        attempts = 0
        throttles = 0

        while True:
            await self.governor.acquire()
            try:
                kind = await self._attempt(candidate, name)
            except ThrottledError as e:
                self.governor.on_throttle()
                self._stats["throttled"] += 1
                throttles += 1
                if throttles <= self.retry.throttle_retry_limit:
                    await asyncio.sleep(self.backoff.delay(throttles))
                    continue
                attempts += 1
                reason = f"throttled: {e}"
            except TransientBackendError as e:
                attempts += 1
                reason = str(e)
                logger.warning(
                    f"Archival attempt failed: {e}",
                    extra={"key": str(key), "attempt": attempts, "code": e.code},
                )
            except Exception as e:
                attempts += 1
                reason = f"{type(e).__name__}: {e}"
                logger.error(
                    f"Unexpected archival error: {e}",
                    exc_info=True,
                    extra={"key": str(key), "attempt": attempts},
                )
            else:
                self.governor.on_success()
                self.breaker.record(success=True)
                self._stats[kind.value] += 1
                return ArchivalOutcome(key=key, kind=kind, attempts=attempts + 1)

            self.breaker.record(success=False)
            if attempts >= self.retry.max_attempts:
                return await self._dead_letter(candidate, reason, attempts, chunk_id)

            self._stats["retries"] += 1
            logger.debug(
                "Record queued for retry",
                extra={"key": str(key), "state": RecordState.RETRY_QUEUED.value},
            )
            await asyncio.sleep(self.backoff.delay(attempts))

    async def _attempt(self, candidate: ArchivalCandidate, name: str) -> OutcomeKind:
        key = candidate.key
        try:
            record = await self._bounded(self.hot.get(key))
        except RecordNotFoundError:
            return OutcomeKind.ALREADY_ARCHIVED

        document = encode_cold_document(record)
        expected = compute_checksum(document)
        confirmed = await self._bounded(self.cold.put(name, document))
        if confirmed != expected:
            raise VerificationFailure(
                f"Cold store confirmed a different checksum for {name}",
                object_name=name,
                expected_checksum=expected,
                actual_checksum=confirmed,
            )
        logger.debug(
            "Cold copy written",
            extra={"key": str(key), "object": name, "state": RecordState.WRITTEN_COLD.value},
        )

        await self._verify(name, expected)

        try:
            await self._bounded(self.hot.delete(key))
        except RecordNotFoundError:
            pass
        logger.debug(
            "Hot copy deleted",
            extra={"key": str(key), "state": RecordState.DELETED_HOT.value},
        )
        return OutcomeKind.ARCHIVED

    async def _verify(self, name: str, expected: str) -> None:
        if not self.archival.verify_content:
            if not await self._bounded(self.cold.exists(name)):
                raise VerificationFailure(f"Cold object not visible after write: {name}", name)
            return

        try:
            stored = await self._bounded(self.cold.get(name))
        except ObjectNotFoundError:
            raise VerificationFailure(f"Cold object not visible after write: {name}", name)
        actual = compute_checksum(stored)
        if actual != expected:
            raise VerificationFailure(
                f"Cold object content mismatch: {name}",
                object_name=name,
                expected_checksum=expected,
                actual_checksum=actual,
            )
        decode_cold_document(stored, name)

    async def _bounded(self, operation: Awaitable[T]) -> T:
        timeout = self.archival.operation_timeout_seconds
        try:
            return await asyncio.wait_for(operation, timeout=timeout)
        except asyncio.TimeoutError:
            raise TransientBackendError(f"Backend call exceeded {timeout}s")

    async def _dead_letter(
        self,
        candidate: ArchivalCandidate,
        reason: str,
        attempts: int,
        chunk_id: Optional[int],
    ) -> ArchivalOutcome:
        self._stats["failed"] += 1
        failure = PermanentFailure(candidate.key, attempts, reason)
        try:
            entry = await self.dead_letters.append(candidate, reason, attempts)
            logger.error(
                f"Record dead-lettered: {failure.message}",
                extra={
                    **failure.details,
                    "code": failure.code,
                    "entry_id": entry.entry_id,
                    "state": RecordState.DEAD_LETTERED.value,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to write dead-letter entry: {e}",
                exc_info=True,
                extra={"key": str(candidate.key), "reason": reason},
            )
        self._emit(
            OutcomeEvent(
                record_id=candidate.key.record_id,
                partition_key=candidate.key.partition_key,
                outcome="dead_lettered",
                attempt_count=attempts,
                timestamp_ms=now_ms(),
                chunk_id=chunk_id,
            )
        )
        return ArchivalOutcome(
            key=candidate.key, kind=OutcomeKind.FAILED, attempts=attempts, reason=reason
        )

    def _emit(self, event: OutcomeEvent) -> None:
        try:
            self.events.emit(event)
        except Exception as e:
            logger.warning(f"Outcome event sink failed: {e}")

    @property
    def stats(self) -> Dict[str, Any]:
        """Get orchestrator statistics."""
        return {
            "running": self._running,
            "workers": self.workers,
            "governor": self.governor.stats,
            "breaker_open_count": self.breaker.open_count,
            **self._stats,
        }
