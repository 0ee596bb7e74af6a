"""
Unit tests for environment configuration.
"""

import pytest

from tierarchive.config import (
    ArchivalConfig,
    ChangeFeedBackend,
    ColdBackend,
    EngineConfig,
    GovernorConfig,
    HotBackend,
    RetryConfig,
    TriggerConfig,
    TriggerMode,
)


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        config = EngineConfig.from_env()

        assert config.archival.threshold_days == 90
        assert config.archival.chunk_size == 500
        assert config.retry.max_attempts == 3
        assert config.retry.backoff_base_seconds == 1.0
        assert config.retry.backoff_factor == 2.0
        assert config.retry.backoff_cap_seconds == 30.0
        assert config.cache.ttl_seconds == 3600
        assert config.storage.hot_backend == HotBackend.SQLITE
        assert config.storage.cold_backend == ColdBackend.S3
        assert config.trigger.mode == TriggerMode.INTERVAL
        assert config.trigger.requeue_poll_seconds == 60.0
        assert config.trigger.shutdown_grace_seconds == 30.0

    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("ARCHIVAL_THRESHOLD_DAYS", "30")
        monkeypatch.setenv("ARCHIVAL_CHUNK_SIZE", "100")
        monkeypatch.setenv("HOT_BACKEND", "memory")
        monkeypatch.setenv("COLD_BACKEND", "memory")
        monkeypatch.setenv("TRIGGER_MODE", "changefeed")
        monkeypatch.setenv("CHANGEFEED_BACKEND", "memory")
        monkeypatch.setenv("ARCHIVAL_VERIFY_CONTENT", "false")

        config = EngineConfig.from_env()

        assert config.archival.threshold_days == 30
        assert config.archival.chunk_size == 100
        assert config.archival.verify_content is False
        assert config.storage.hot_backend == HotBackend.MEMORY
        assert config.trigger.mode == TriggerMode.CHANGEFEED
        assert config.changefeed_backend == ChangeFeedBackend.MEMORY

    def test_invalid_backend_rejected(self, monkeypatch):
        monkeypatch.setenv("HOT_BACKEND", "postgres")
        with pytest.raises(ValueError, match="HOT_BACKEND"):
            EngineConfig.from_env()

    def test_chunk_size_bounds(self):
        with pytest.raises(ValueError, match="CHUNK_SIZE"):
            EngineConfig(archival=ArchivalConfig(chunk_size=0)).validate()
        with pytest.raises(ValueError, match="CHUNK_SIZE"):
            EngineConfig(archival=ArchivalConfig(chunk_size=1001)).validate()

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            EngineConfig(retry=RetryConfig(max_attempts=0)).validate()

    def test_worker_count_derived_from_rate(self):
        assert EngineConfig(governor=GovernorConfig(max_requests_per_second=200)).worker_count == 8
        assert EngineConfig(governor=GovernorConfig(max_requests_per_second=10)).worker_count == 1
        assert EngineConfig(governor=GovernorConfig(max_requests_per_second=10000)).worker_count == 16
        assert EngineConfig(governor=GovernorConfig(max_requests_per_second=0)).worker_count == 4

    def test_explicit_worker_count_wins(self):
        config = EngineConfig(archival=ArchivalConfig(max_concurrent_workers=3))
        assert config.worker_count == 3

    def test_state_paths(self):
        config = EngineConfig()
        assert config.storage.hot_db_path.endswith("hot.db")
        assert config.storage.state_db_path.endswith("engine_state.db")

    def test_requeue_poll_and_shutdown_grace(self, monkeypatch, tmp_path):
        monkeypatch.setenv("DATA_DIR", str(tmp_path))
        monkeypatch.setenv("COLD_BACKEND", "memory")
        monkeypatch.setenv("TRIGGER_REQUEUE_POLL_SECONDS", "5")
        monkeypatch.setenv("SHUTDOWN_GRACE_SECONDS", "0")

        config = EngineConfig.from_env()

        assert config.trigger.requeue_poll_seconds == 5.0
        assert config.trigger.shutdown_grace_seconds == 0.0
        with pytest.raises(ValueError, match="REQUEUE_POLL"):
            EngineConfig(trigger=TriggerConfig(requeue_poll_seconds=0)).validate()
        with pytest.raises(ValueError, match="SHUTDOWN_GRACE"):
            EngineConfig(trigger=TriggerConfig(shutdown_grace_seconds=-1)).validate()
