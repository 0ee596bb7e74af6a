"""
Integration tests for the archival service.

Tests cover:
- Interval-triggered archival end to end
- Requeued dead letters re-injected on their own cadence
- Change-feed-triggered archival
- Shutdown draining in-flight work, or abandoning it after the grace period
"""

import asyncio
import tempfile

import pytest

from tierarchive.archive import CollectingEventSink
from tierarchive.changefeed import ChangeEvent, InMemoryChangeFeed
from tierarchive.config import (
    ArchivalConfig,
    ChangeFeedBackend,
    ColdBackend,
    EngineConfig,
    GovernorConfig,
    HotBackend,
    RetryConfig,
    StorageConfig,
    TriggerConfig,
    TriggerMode,
)
from tierarchive.deadletter import InMemoryDeadLetterSink
from tierarchive.errors import RecordNotFoundError
from tierarchive.main import ArchivalService
from tierarchive.models import (
    MS_PER_DAY,
    DeadLetterStatus,
    Record,
    RecordKey,
    cold_object_name,
    now_ms,
)
from tierarchive.stores import InMemoryColdStore, InMemoryHotStore


async def wait_for_condition(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.02)


async def seed(hot, count, age_days, prefix):
    records = []
    for i in range(count):
        record = Record(
            RecordKey("tenant", f"{prefix}{i:03d}"),
            now_ms() - age_days * MS_PER_DAY,
            f"{prefix}-{i}".encode(),
        )
        await hot.put(record)
        records.append(record)
    return records


class TestArchivalService:
    """Integration tests for ArchivalService."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def config(self, data_dir):
        return EngineConfig(
            archival=ArchivalConfig(threshold_days=90, chunk_size=10),
            retry=RetryConfig(backoff_base_seconds=0.001, backoff_cap_seconds=0.01),
            governor=GovernorConfig(max_requests_per_second=0),
            storage=StorageConfig(
                hot_backend=HotBackend.MEMORY,
                cold_backend=ColdBackend.MEMORY,
                data_dir=data_dir,
            ),
            trigger=TriggerConfig(interval_seconds=0.05),
        )

    @pytest.fixture
    def hot(self):
        return InMemoryHotStore()

    @pytest.fixture
    def cold(self):
        return InMemoryColdStore()

    @pytest.fixture
    def events(self):
        return CollectingEventSink()

    @pytest.mark.asyncio
    async def test_interval_mode_archives_old_records(self, config, hot, cold, events):
        old = await seed(hot, 25, age_days=120, prefix="old")
        young = await seed(hot, 3, age_days=5, prefix="young")
        service = ArchivalService(config, hot=hot, cold=cold, events=events)

        task = asyncio.create_task(service.start())
        try:
            async def only_young_left():
                return len(hot) == len(young) and len(events.outcomes("archived")) == 25

            await wait_for_condition(only_young_left)

            fetched = await service.gateway.get("tenant", old[0].key.record_id)
            assert fetched.payload == old[0].payload
            fetched = await service.gateway.get("tenant", young[0].key.record_id)
            assert fetched.payload == young[0].payload
            assert len(cold) == 25
            assert service.stats["runs"] >= 1
            assert len(events.outcomes("archived")) == 25
        finally:
            service.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await service.stop()

        assert not service.stats["running"]

    @pytest.mark.asyncio
    async def test_requeued_dead_letter_is_archived(self, config, hot, cold, events):
        (record,) = await seed(hot, 1, age_days=5, prefix="stuck")
        dead_letters = InMemoryDeadLetterSink()
        await dead_letters.append(record.candidate(), "cold store rejected", 3)
        await dead_letters.requeue([record.key])
        service = ArchivalService(
            config, hot=hot, cold=cold, dead_letters=dead_letters, events=events
        )

        task = asyncio.create_task(service.start())
        try:
            async def archived():
                return not await hot.exists(record.key)

            await wait_for_condition(archived)

            assert service.stats["reinjected"] == 1
            resolved = await dead_letters.list(status=DeadLetterStatus.RESOLVED)
            assert [e.resolution for e in resolved] == ["reinjected"]
            fetched = await service.gateway.get("tenant", record.key.record_id)
            assert fetched.payload == record.payload
        finally:
            service.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await service.stop()

    @pytest.mark.asyncio
    async def test_changefeed_mode_archives_aged_events(self, data_dir, hot, cold, events):
        config = EngineConfig(
            archival=ArchivalConfig(threshold_days=90, chunk_size=5),
            retry=RetryConfig(backoff_base_seconds=0.001, backoff_cap_seconds=0.01),
            governor=GovernorConfig(max_requests_per_second=0),
            storage=StorageConfig(
                hot_backend=HotBackend.MEMORY,
                cold_backend=ColdBackend.MEMORY,
                data_dir=data_dir,
            ),
            trigger=TriggerConfig(
                mode=TriggerMode.CHANGEFEED, batch_size=20, batch_window_seconds=0.1
            ),
            changefeed_backend=ChangeFeedBackend.MEMORY,
        )
        feed = InMemoryChangeFeed(num_partitions=2)
        await feed.connect()
        old = await seed(hot, 12, age_days=100, prefix="old")
        young = await seed(hot, 2, age_days=1, prefix="young")
        for record in old + young:
            await feed.publish(ChangeEvent(record.key, record.timestamp_ms))

        service = ArchivalService(config, hot=hot, cold=cold, feed=feed, events=events)
        task = asyncio.create_task(service.start())
        try:
            async def only_young_left():
                return len(hot) == len(young)

            await wait_for_condition(only_young_left)

            assert len(cold) == 12
            with pytest.raises(RecordNotFoundError):
                await service.gateway.get("tenant", "missing")
        finally:
            service.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await service.stop()

        assert not feed.is_connected


def idle_feed_config(data_dir, **trigger):
    return EngineConfig(
        archival=ArchivalConfig(threshold_days=90, chunk_size=5),
        retry=RetryConfig(backoff_base_seconds=0.001, backoff_cap_seconds=0.01),
        governor=GovernorConfig(max_requests_per_second=0),
        storage=StorageConfig(
            hot_backend=HotBackend.MEMORY,
            cold_backend=ColdBackend.MEMORY,
            data_dir=data_dir,
        ),
        trigger=TriggerConfig(
            mode=TriggerMode.CHANGEFEED,
            batch_window_seconds=0.1,
            requeue_poll_seconds=0.05,
            **trigger,
        ),
        changefeed_backend=ChangeFeedBackend.MEMORY,
    )


async def connected_feed():
    feed = InMemoryChangeFeed(num_partitions=2)
    await feed.connect()
    return feed


class TestDeadLetterReinjection:
    """Requeued dead letters while the trigger has nothing to do."""

    @pytest.fixture
    def data_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    def hot(self):
        return InMemoryHotStore()

    @pytest.fixture
    def cold(self):
        return InMemoryColdStore()

    @pytest.fixture
    def dead_letters(self):
        return InMemoryDeadLetterSink()

    async def statuses(self, dead_letters):
        return [(e.status, e.resolution) for e in await dead_letters.list()]

    @pytest.mark.asyncio
    async def test_requeue_with_idle_feed_is_reinjected(self, data_dir, hot, cold, dead_letters):
        (record,) = await seed(hot, 1, age_days=5, prefix="stuck")
        service = ArchivalService(
            idle_feed_config(data_dir),
            hot=hot,
            cold=cold,
            dead_letters=dead_letters,
            feed=await connected_feed(),
        )

        task = asyncio.create_task(service.start())
        try:
            await asyncio.sleep(0.1)
            await dead_letters.append(record.candidate(), "cold store rejected", 3)
            await dead_letters.requeue([record.key])

            async def archived():
                return not await hot.exists(record.key)

            await wait_for_condition(archived)

            assert await self.statuses(dead_letters) == [
                (DeadLetterStatus.RESOLVED, "reinjected")
            ]
            assert service.stats["reinjected"] == 1
            assert await cold.exists(cold_object_name(record.key))
        finally:
            service.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await service.stop()

    @pytest.mark.asyncio
    async def test_interrupted_reinjection_stays_requeued(self, data_dir, hot, cold, dead_letters):
        (record,) = await seed(hot, 1, age_days=5, prefix="stuck")
        await dead_letters.append(record.candidate(), "cold store rejected", 3)
        await dead_letters.requeue([record.key])
        hot.latency_seconds = 1.0
        service = ArchivalService(
            idle_feed_config(data_dir, shutdown_grace_seconds=0),
            hot=hot,
            cold=cold,
            dead_letters=dead_letters,
            feed=await connected_feed(),
        )

        task = asyncio.create_task(service.start())

        async def written_cold():
            return len(cold) == 1

        await wait_for_condition(written_cold)
        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        await asyncio.wait_for(service.stop(), timeout=2.0)

        hot.latency_seconds = 0.0
        assert await hot.exists(record.key)
        assert await self.statuses(dead_letters) == [(DeadLetterStatus.REQUEUED, None)]
        assert service.stats["reinjected"] == 0

        restarted = ArchivalService(
            idle_feed_config(data_dir),
            hot=hot,
            cold=cold,
            dead_letters=dead_letters,
            feed=await connected_feed(),
        )
        task = asyncio.create_task(restarted.start())
        try:
            async def archived():
                return not await hot.exists(record.key)

            await wait_for_condition(archived)
            assert await self.statuses(dead_letters) == [
                (DeadLetterStatus.RESOLVED, "reinjected")
            ]
        finally:
            restarted.request_shutdown()
            await asyncio.wait_for(task, timeout=2.0)
            await restarted.stop()

    @pytest.mark.asyncio
    async def test_shutdown_lets_inflight_reinjection_finish(self, data_dir, hot, cold, dead_letters):
        (record,) = await seed(hot, 1, age_days=5, prefix="stuck")
        await dead_letters.append(record.candidate(), "cold store rejected", 3)
        await dead_letters.requeue([record.key])
        hot.latency_seconds = 0.3
        service = ArchivalService(
            idle_feed_config(data_dir, shutdown_grace_seconds=5.0),
            hot=hot,
            cold=cold,
            dead_letters=dead_letters,
            feed=await connected_feed(),
        )

        task = asyncio.create_task(service.start())

        async def written_cold():
            return len(cold) == 1

        await wait_for_condition(written_cold)
        service.request_shutdown()
        await asyncio.wait_for(task, timeout=2.0)
        await asyncio.wait_for(service.stop(), timeout=5.0)

        hot.latency_seconds = 0.0
        assert not await hot.exists(record.key)
        assert await self.statuses(dead_letters) == [(DeadLetterStatus.RESOLVED, "reinjected")]
        assert service.stats["reinjected"] == 1
        assert not service.stats["running"]
