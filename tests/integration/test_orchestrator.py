"""
Integration tests for the archival orchestrator with in-memory stores.

Tests cover:
- End-to-end archival and byte-identical retrieval
- Transient failures that recover within the retry budget
- Permanent failures and dead-letter containment
- Idempotence
- Write/verify/delete ordering
- Verification of corrupted cold writes
- Throttling and backpressure
- stop() and cancellation
- Circuit breaker pausing dispatch
"""

import asyncio

import pytest

from tierarchive.archive import (
    ArchivalOrchestrator,
    BackoffPolicy,
    CircuitBreaker,
    CollectingEventSink,
    ThroughputGovernor,
)
from tierarchive.config import ArchivalConfig, RetryConfig
from tierarchive.deadletter import InMemoryDeadLetterSink
from tierarchive.errors import ThrottledError
from tierarchive.models import (
    ArchivalCandidate,
    Chunk,
    ChunkState,
    DeadLetterStatus,
    OutcomeKind,
    Record,
    RecordKey,
    cold_object_name,
    decode_cold_document,
)
from tierarchive.retrieve import RetrievalGateway
from tierarchive.stores import InMemoryColdStore, InMemoryHotStore

FAST_RETRY = RetryConfig(
    max_attempts=3,
    backoff_base_seconds=0.001,
    backoff_factor=2.0,
    backoff_cap_seconds=0.01,
    jitter_ratio=0.0,
    throttle_retry_limit=20,
)


def payload_for(i: int) -> bytes:
    return f"payload-{i}-".encode() * 10 + bytes([i % 256])


async def seed(hot, count, partition="tenant"):
    records = []
    for i in range(count):
        record = Record(RecordKey(partition, f"r{i:05d}"), 1_000 + i, payload_for(i))
        await hot.put(record)
        records.append(record)
    return records


def candidates_of(records):
    return [r.candidate() for r in records]


class TestArchivalOrchestrator:
    """Integration tests for ArchivalOrchestrator."""

    @pytest.fixture
    def journal(self):
        return []

    @pytest.fixture
    def hot(self, journal):
        return InMemoryHotStore(journal=journal)

    @pytest.fixture
    def cold(self, journal):
        return InMemoryColdStore(journal=journal)

    @pytest.fixture
    def dead_letters(self):
        return InMemoryDeadLetterSink()

    @pytest.fixture
    def events(self):
        return CollectingEventSink()

    @pytest.fixture
    def orchestrator(self, hot, cold, dead_letters, events):
        return ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=10, record_concurrency=4),
            retry_config=FAST_RETRY,
            events=events,
            workers=2,
        )

    @pytest.mark.asyncio
    async def test_archives_everything_and_reads_back_identical_bytes(
        self, orchestrator, hot, cold
    ):
        records = await seed(hot, 25)

        report = await orchestrator.run(candidates_of(records))

        assert report.archived == 25
        assert report.failed == 0
        assert report.chunks == 3
        assert report.completed_chunks == 3
        assert len(hot) == 0
        assert len(cold) == 25

        gateway = RetrievalGateway(hot, cold)
        for record in records:
            fetched = await gateway.get(record.key.partition_key, record.key.record_id)
            assert fetched.payload == record.payload
            assert fetched.timestamp_ms == record.timestamp_ms

    @pytest.mark.asyncio
    async def test_reads_during_archival_never_miss(self, orchestrator, hot, cold):
        records = await seed(hot, 60)
        hot.latency_seconds = 0.003
        cold.latency_seconds = 0.003
        gateway = RetrievalGateway(
            hot, cold, backoff=BackoffPolicy(base=0.001, factor=2.0, cap=0.01)
        )
        archiving = asyncio.create_task(orchestrator.run(candidates_of(records)))
        reads = 0

        async def reader(offset):
            nonlocal reads
            i = offset
            while not archiving.done():
                record = records[i % len(records)]
                key = record.key
                fetched = await gateway.get(key.partition_key, key.record_id)
                assert fetched.payload == record.payload
                name = cold_object_name(key)
                assert await hot.exists(key) or await cold.exists(name)
                reads += 1
                i += 7

        await asyncio.gather(*(reader(n) for n in range(4)))
        report = await archiving

        assert report.archived == 60
        assert reads > 0
        for record in records:
            fetched = await gateway.get(record.key.partition_key, record.key.record_id)
            assert fetched.payload == record.payload
        assert gateway.stats["hot_hits"] > 0
        assert gateway.stats["cold_hits"] > 0
        assert gateway.stats["not_found"] == 0

    @pytest.mark.asyncio
    async def test_run_collects_outcomes_on_request(self, orchestrator, hot, cold):
        records = await seed(hot, 3)
        cold.fail_always("put", target=cold_object_name(records[1].key))

        plain = await orchestrator.run(candidates_of(records[:1]))
        report = await orchestrator.run(candidates_of(records), collect_outcomes=True)

        assert plain.outcomes is None
        kinds = {o.key: o.kind for o in report.outcomes}
        assert kinds == {
            records[0].key: OutcomeKind.ALREADY_ARCHIVED,
            records[1].key: OutcomeKind.FAILED,
            records[2].key: OutcomeKind.ARCHIVED,
        }

    @pytest.mark.asyncio
    async def test_record_that_fails_twice_then_succeeds(
        self, orchestrator, hot, cold, dead_letters
    ):
        a, b, c = await seed(hot, 3)
        cold.fail_next("put", times=2, target=cold_object_name(b.key))

        result = await orchestrator.archive_chunk(Chunk(1, candidates_of([a, b, c])))

        assert result.state == ChunkState.COMPLETED
        outcomes = {o.key: o for o in result.outcomes}
        assert outcomes[b.key].kind == OutcomeKind.ARCHIVED
        assert outcomes[b.key].attempts == 3
        assert outcomes[a.key].attempts == 1
        assert len(hot) == 0
        assert await dead_letters.list() == []

    @pytest.mark.asyncio
    async def test_permanently_rejected_record_is_dead_lettered(
        self, orchestrator, hot, cold, dead_letters, events
    ):
        records = await seed(hot, 5)
        x = records[2]
        cold.fail_always("put", target=cold_object_name(x.key))

        result = await orchestrator.archive_chunk(Chunk(7, candidates_of(records)))

        assert result.state == ChunkState.PARTIAL_FAILURE
        failed = result.failed
        assert [o.key for o in failed] == [x.key]
        assert failed[0].attempts == FAST_RETRY.max_attempts

        entries = await dead_letters.list(status=DeadLetterStatus.OPEN)
        assert len(entries) == 1
        assert entries[0].key == x.key
        assert entries[0].attempt_count == FAST_RETRY.max_attempts

        # X is still served from hot; the others went to cold.
        assert hot.keys() == {x.key}
        assert not await cold.exists(cold_object_name(x.key))
        assert len(cold) == 4

        dead = events.outcomes("dead_lettered")
        assert [(e.record_id, e.chunk_id) for e in dead] == [(x.key.record_id, 7)]
        assert len(events.outcomes("archived")) == 4
        assert len(events.outcomes("failed")) == 1

    @pytest.mark.asyncio
    async def test_archival_is_idempotent(self, orchestrator, hot, cold, journal):
        records = await seed(hot, 12)

        await orchestrator.run(candidates_of(records))
        puts_after_first = cold.put_count
        second = await orchestrator.run(candidates_of(records))

        assert second.already_archived == 12
        assert second.archived == 0
        assert cold.put_count == puts_after_first
        assert len(cold) == 12
        assert sum(1 for op, _ in journal if op == "hot.delete") == 12

    @pytest.mark.asyncio
    async def test_duplicate_candidates_in_one_run(self, orchestrator, hot, cold):
        records = await seed(hot, 4)

        report = await orchestrator.run(candidates_of(records) * 3)

        assert report.failed == 0
        assert report.archived + report.already_archived == 12
        assert len(cold) == 4
        assert len(hot) == 0

    @pytest.mark.asyncio
    async def test_hot_delete_follows_cold_write(self, orchestrator, hot, cold, journal):
        records = await seed(hot, 30)
        cold.fail_next("put", times=3)
        hot.fail_next("delete", times=2)

        await orchestrator.run(candidates_of(records))

        for record in records:
            name = cold_object_name(record.key)
            put_at = journal.index(("cold.put", name))
            delete_at = journal.index(("hot.delete", record.key))
            assert put_at < delete_at

    @pytest.mark.asyncio
    async def test_failed_hot_delete_is_retried_without_duplicate_objects(
        self, orchestrator, hot, cold
    ):
        (record,) = await seed(hot, 1)
        hot.fail_next("delete", target=record.key)

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.ARCHIVED
        assert outcome.attempts == 2
        assert len(cold) == 1
        assert len(hot) == 0

    @pytest.mark.asyncio
    async def test_missing_hot_record_is_already_archived(self, orchestrator, cold):
        candidate = ArchivalCandidate(RecordKey("tenant", "gone"), 1)

        outcome = await orchestrator.archive_record(candidate)

        assert outcome.kind == OutcomeKind.ALREADY_ARCHIVED
        assert cold.put_count == 0

    @pytest.mark.asyncio
    async def test_corrupted_cold_write_is_detected_and_rewritten(
        self, orchestrator, hot, cold, journal
    ):
        (record,) = await seed(hot, 1)
        name = cold_object_name(record.key)
        cold.corrupt_next_puts(1, target=name)

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.ARCHIVED
        assert outcome.attempts == 2
        stored = decode_cold_document(await cold.get(name), name)
        assert stored.payload == record.payload
        assert [op for op, _ in journal] == ["hot.put", "cold.put", "cold.put", "hot.delete"]

    @pytest.mark.asyncio
    async def test_persistent_corruption_never_deletes_hot(
        self, orchestrator, hot, cold, dead_letters
    ):
        (record,) = await seed(hot, 1)
        cold.corrupt_next_puts(10, target=cold_object_name(record.key))

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.FAILED
        assert await hot.exists(record.key)
        entries = await dead_letters.list()
        assert "mismatch" in entries[0].reason

    @pytest.mark.asyncio
    async def test_existence_only_verification(self, hot, cold, dead_letters):
        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=10, verify_content=False),
            retry_config=FAST_RETRY,
            events=CollectingEventSink(),
        )
        records = await seed(hot, 3)

        report = await orchestrator.run(candidates_of(records))

        assert report.archived == 3

    @pytest.mark.asyncio
    async def test_throttling_does_not_spend_attempts(self, orchestrator, hot, cold):
        (record,) = await seed(hot, 1)
        cold.fail_next(
            "put", times=5, error=ThrottledError("SlowDown", backend="cold")
        )

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.ARCHIVED
        assert outcome.attempts == 1
        assert orchestrator.stats["throttled"] == 5

    @pytest.mark.asyncio
    async def test_throttling_beyond_limit_counts_as_attempts(self, hot, cold, dead_letters):
        retry = RetryConfig(
            max_attempts=3,
            backoff_base_seconds=0.001,
            backoff_cap_seconds=0.01,
            jitter_ratio=0.0,
            throttle_retry_limit=2,
        )
        orchestrator = ArchivalOrchestrator(
            hot, cold, dead_letters, retry_config=retry, events=CollectingEventSink()
        )
        (record,) = await seed(hot, 1)
        cold.fail_always("put", error=ThrottledError("SlowDown", backend="cold"))

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.FAILED
        assert outcome.attempts == 3
        assert outcome.reason.startswith("throttled")
        assert orchestrator.stats["throttled"] == 5

    @pytest.mark.asyncio
    async def test_slow_backend_call_times_out(self, hot, cold, dead_letters):
        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(operation_timeout_seconds=0.02),
            retry_config=FAST_RETRY,
            events=CollectingEventSink(),
        )
        (record,) = await seed(hot, 1)
        cold.latency_seconds = 0.2

        outcome = await orchestrator.archive_record(record.candidate())

        assert outcome.kind == OutcomeKind.FAILED
        assert "exceeded" in outcome.reason
        assert await hot.exists(record.key)

    @pytest.mark.asyncio
    async def test_backlog_under_throttling_is_consumed_with_bounded_memory(
        self, hot, cold, dead_letters
    ):
        workers, chunk_size = 4, 50
        events = CollectingEventSink()
        governor = ThroughputGovernor(max_rps=5000, min_rps=500, recovery_step=5)
        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=chunk_size, record_concurrency=8),
            retry_config=RetryConfig(
                max_attempts=3,
                backoff_base_seconds=0.002,
                backoff_cap_seconds=0.05,
                jitter_ratio=0.5,
                throttle_retry_limit=10_000,
            ),
            governor=governor,
            events=events,
            workers=workers,
        )
        records = await seed(hot, 2000)
        cold.rate_limit("put", max_calls=100, window_seconds=0.1)
        in_flight = []

        async def backlog():
            for record in records:
                in_flight.append(len(in_flight) + 1 - len(events.events))
                yield record.candidate()

        report = await asyncio.wait_for(orchestrator.run(backlog()), timeout=60)

        assert report.archived == 2000
        assert report.failed == 0
        assert len(hot) == 0
        assert len(cold) == 2000
        assert await dead_letters.list() == []
        assert governor.throttle_count > 0
        assert orchestrator.stats["peak_queued_chunks"] <= workers
        assert max(in_flight) <= (2 * workers + 2) * chunk_size

    @pytest.mark.asyncio
    async def test_stop_halts_dispatch_between_chunks(self, hot, cold, dead_letters):
        records = await seed(hot, 200)

        class StopAfterFirstChunk(CollectingEventSink):
            def emit(self, event):
                super().emit(event)
                orchestrator.stop()

        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=10),
            retry_config=FAST_RETRY,
            events=StopAfterFirstChunk(),
            workers=1,
        )

        report = await orchestrator.run(candidates_of(records))

        assert report.stopped
        assert 10 <= report.processed < 200
        assert report.abandoned_chunks == 0
        for record in records:
            in_hot = await hot.exists(record.key)
            in_cold = await cold.exists(cold_object_name(record.key))
            assert in_hot or in_cold

    @pytest.mark.asyncio
    async def test_cancelled_run_loses_nothing(self, hot, cold, dead_letters):
        records = await seed(hot, 100)
        cold.latency_seconds = 0.02
        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=10, record_concurrency=2),
            retry_config=FAST_RETRY,
            events=CollectingEventSink(),
            workers=2,
        )

        task = asyncio.create_task(orchestrator.run(candidates_of(records)))
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert orchestrator.stats["chunks_abandoned"] >= 1
        assert not orchestrator.is_running
        cold.latency_seconds = 0
        for record in records:
            if await hot.exists(record.key):
                continue
            name = cold_object_name(record.key)
            stored = decode_cold_document(await cold.get(name), name)
            assert stored.payload == record.payload

        # A later run picks up whatever the abandoned chunks left behind.
        report = await orchestrator.run(candidates_of(records))
        assert report.failed == 0
        assert len(hot) == 0
        assert len(cold) == 100

    @pytest.mark.asyncio
    async def test_open_breaker_pauses_dispatch(self, hot, cold, dead_letters):
        breaker = CircuitBreaker(
            error_rate_threshold=0.5, window_size=4, min_calls=4, cooldown_seconds=0.3
        )
        orchestrator = ArchivalOrchestrator(
            hot,
            cold,
            dead_letters,
            archival_config=ArchivalConfig(chunk_size=4, record_concurrency=4),
            retry_config=RetryConfig(max_attempts=1, backoff_base_seconds=0.001),
            breaker=breaker,
            events=CollectingEventSink(),
            workers=1,
        )
        records = await seed(hot, 16)
        cold.fail_always("put")

        report = await orchestrator.run(candidates_of(records))

        assert breaker.open_count >= 1
        assert report.duration_seconds >= 0.3
        assert report.failed == 16
        assert len(hot) == 16
        assert len(await dead_letters.list()) == 16
