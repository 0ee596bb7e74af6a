"""
Unit tests for archival triggers.

Tests cover:
- Interval trigger firing and stopping
- Change-feed trigger: aging, batching, dedup, already-archived records
"""

import asyncio

import pytest

from tierarchive.changefeed import ChangeEvent, InMemoryChangeFeed
from tierarchive.models import MS_PER_DAY, Record, RecordKey
from tierarchive.scan import (
    ChangeFeedTrigger,
    EligibilityScanner,
    IntervalTrigger,
    TriggerSource,
)
from tierarchive.stores import InMemoryHotStore


class MutableClock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


NOW = 1_700_000_000_000


async def next_batch(batches, timeout=3.0):
    batch = await asyncio.wait_for(batches.__anext__(), timeout=timeout)
    return [c async for c in batch]


class TestIntervalTrigger:
    """Tests for IntervalTrigger."""

    @pytest.mark.asyncio
    async def test_fires_scanner_pass_per_tick(self):
        hot = InMemoryHotStore()
        await hot.put(Record(RecordKey("p", "old"), NOW - 100 * MS_PER_DAY, b""))
        scanner = EligibilityScanner(hot, threshold_days=90, clock=lambda: NOW)
        trigger = IntervalTrigger(scanner, interval_seconds=0.01)
        assert isinstance(trigger, TriggerSource)

        batches = trigger.fire()
        first = await next_batch(batches)
        second = await next_batch(batches)
        trigger.stop()
        await batches.aclose()

        assert [c.key.record_id for c in first] == ["old"]
        assert [c.key.record_id for c in second] == ["old"]
        assert trigger.fired_count == 2

    @pytest.mark.asyncio
    async def test_stop_ends_fire_during_sleep(self):
        scanner = EligibilityScanner(InMemoryHotStore(), clock=lambda: NOW)
        trigger = IntervalTrigger(scanner, interval_seconds=3600)

        async def run():
            count = 0
            async for batch in trigger.fire():
                _ = [c async for c in batch]
                count += 1
            return count

        task = asyncio.create_task(run())
        await asyncio.sleep(0.05)
        trigger.stop()

        assert await asyncio.wait_for(task, timeout=1.0) == 1


class TestChangeFeedTrigger:
    """Tests for ChangeFeedTrigger."""

    @pytest.fixture
    def feed(self):
        return InMemoryChangeFeed(num_partitions=2)

    @pytest.fixture
    def hot(self):
        return InMemoryHotStore()

    @pytest.fixture
    def clock(self):
        return MutableClock(NOW)

    async def write(self, hot, feed, record_id, age_days):
        record = Record(RecordKey("p", record_id), NOW - int(age_days * MS_PER_DAY), b"x")
        await hot.put(record)
        await feed.publish(ChangeEvent(record.key, record.timestamp_ms))
        return record

    def make_trigger(self, feed, hot, clock, **kwargs):
        options = dict(
            threshold_days=90,
            batch_size=10,
            batch_window_seconds=0.2,
            clock=clock,
            reconnect_delay_seconds=0.01,
        )
        options.update(kwargs)
        return ChangeFeedTrigger(feed, hot, **options)

    @pytest.mark.asyncio
    async def test_emits_only_aged_records(self, feed, hot, clock):
        await feed.connect()
        await self.write(hot, feed, "old", 100)
        await self.write(hot, feed, "young", 10)
        trigger = self.make_trigger(feed, hot, clock)

        batches = trigger.fire()
        first = await next_batch(batches)

        assert [c.key.record_id for c in first] == ["old"]
        assert trigger.pending_count == 1

        clock.now += 81 * MS_PER_DAY
        second = await next_batch(batches)
        trigger.stop()
        await batches.aclose()

        assert [c.key.record_id for c in second] == ["young"]
        assert trigger.pending_count == 0

    @pytest.mark.asyncio
    async def test_batches_respect_batch_size(self, feed, hot, clock):
        await feed.connect()
        for i in range(25):
            await self.write(hot, feed, f"r{i:02d}", 100)
        trigger = self.make_trigger(feed, hot, clock, batch_size=10, batch_window_seconds=1.0)

        batches = trigger.fire()
        sizes = []
        while sum(sizes) < 25:
            sizes.append(len(await next_batch(batches)))
        trigger.stop()
        await batches.aclose()

        assert max(sizes) <= 10
        assert sum(sizes) == 25

    @pytest.mark.asyncio
    async def test_skips_records_no_longer_in_hot(self, feed, hot, clock):
        await feed.connect()
        gone = await self.write(hot, feed, "gone", 100)
        await self.write(hot, feed, "kept", 100)
        await hot.delete(gone.key)
        trigger = self.make_trigger(feed, hot, clock)

        batches = trigger.fire()
        batch = await next_batch(batches)
        trigger.stop()
        await batches.aclose()

        assert [c.key.record_id for c in batch] == ["kept"]
        assert trigger.gone_count == 1

    @pytest.mark.asyncio
    async def test_duplicate_events_emitted_once(self, feed, hot, clock):
        await feed.connect()
        record = await self.write(hot, feed, "dup", 100)
        await feed.publish(ChangeEvent(record.key, record.timestamp_ms))
        await self.write(hot, feed, "other", 100)
        trigger = self.make_trigger(feed, hot, clock)

        batches = trigger.fire()
        batch = await next_batch(batches)
        trigger.stop()
        await batches.aclose()

        assert sorted(c.key.record_id for c in batch) == ["dup", "other"]
        assert trigger.duplicate_count == 1

    @pytest.mark.asyncio
    async def test_consumed_events_are_committed(self, feed, hot, clock):
        await feed.connect()
        await self.write(hot, feed, "old", 100)
        trigger = self.make_trigger(feed, hot, clock)

        batches = trigger.fire()
        await next_batch(batches)
        # Committing happens when the consumer asks for the next batch.
        trigger.stop()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(batches.__anext__(), timeout=2.0)

        assert sum(feed.committed_offsets().values()) == 1

    @pytest.mark.asyncio
    async def test_commit_never_skips_pending_event(self, feed, hot, clock):
        await feed.connect()
        await self.write(hot, feed, "young", 10)
        await self.write(hot, feed, "old", 100)
        trigger = self.make_trigger(feed, hot, clock)

        batches = trigger.fire()
        first = await next_batch(batches)
        clock.now += 81 * MS_PER_DAY
        second = await next_batch(batches)
        trigger.stop()
        with pytest.raises(StopAsyncIteration):
            await asyncio.wait_for(batches.__anext__(), timeout=2.0)

        assert [c.key.record_id for c in first] == ["old"]
        assert [c.key.record_id for c in second] == ["young"]
        # "old" follows "young" in the same partition.
        assert sum(feed.committed_offsets().values()) == 1
