"""
Tier-transparent read path.

Callers read a record by identity without knowing which tier holds it:

    hot  --miss-->  cache  --miss-->  cold  (hit populates cache)

Invariants:
    - A record present in either tier is never reported as not found
    - Not found is raised only when every tier answered "absent"; if a
      tier could not answer, TransientBackendError is raised instead
    - The cache is never authoritative and its failures never fail a read
    - A hot hit returns without touching cache or cold

How to change safely:
    - Keep the hot-first order; during archival a record may briefly be
      in both tiers and hot is the source of truth until the delete
    - Cache keys are cold object names; changing the naming requires a
      cache flush
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from ..archive.backoff import BackoffPolicy
from ..cache.base import CacheBackend
from ..cache.safe import FailSafeCache
from ..errors import (
    ObjectNotFoundError,
    RecordNotFoundError,
    TransientBackendError,
    VerificationFailure,
)
from ..models import Record, RecordKey, cold_object_name, decode_cold_document
from ..stores.base import ColdStore, HotStore

logger = logging.getLogger(__name__)


class RetrievalGateway:
    """Reads records from whichever tier holds them.

    Example:
        >>> gateway = RetrievalGateway(hot, cold, InMemoryCache())
        >>> record = await gateway.get("tenant_1", "doc_1")
        >>> record.payload
        b'...'
    """

    def __init__(
        self,
        hot: HotStore,
        cold: ColdStore,
        cache: Optional[CacheBackend] = None,
        cache_ttl_seconds: float = 3600,
        cold_prefix: str = "archive",
        read_retries: int = 2,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        """Initialize the gateway.

        Args:
            hot: Hot store
            cold: Cold store
            cache: Cache in front of cold reads (None disables caching)
            cache_ttl_seconds: TTL for cached cold reads
            cold_prefix: Prefix used when the records were archived
            read_retries: Extra attempts per tier on transient failure
            backoff: Delay policy between read retries
        """
        self.hot = hot
        self.cold = cold
        self.cache = FailSafeCache(cache) if cache is not None else None
        self.cache_ttl_seconds = cache_ttl_seconds
        self.cold_prefix = cold_prefix
        self.read_retries = read_retries
        self.backoff = backoff or BackoffPolicy(base=0.05, factor=2.0, cap=1.0)
        self._stats: Dict[str, int] = {
            "hot_hits": 0,
            "cache_hits": 0,
            "cold_hits": 0,
            "not_found": 0,
            "unavailable": 0,
        }

    async def get(self, partition_key: str, record_id: str) -> Record:
        """Fetch a record from whichever tier holds it.

        Raises:
            RecordNotFoundError: If neither tier has the record
            TransientBackendError: If a tier could not answer
        """
        key = RecordKey(partition_key, record_id)
        hot_error: Optional[TransientBackendError] = None

        try:
            record = await self._with_retries(self._read_hot, key)
        except RecordNotFoundError:
            record = None
        except TransientBackendError as e:
            hot_error = e
            record = None
        if record is not None:
            self._stats["hot_hits"] += 1
            return record

        name = cold_object_name(key, self.cold_prefix)
        if self.cache is not None:
            cached = await self.cache.get(name)
            if cached is not None:
                try:
                    record = decode_cold_document(cached, name)
                except VerificationFailure:
                    logger.warning("Dropping corrupt cache entry", extra={"object": name})
                    await self.cache.expire(name)
                else:
                    await self.cache.touch(name, self.cache_ttl_seconds)
                    self._stats["cache_hits"] += 1
                    return record

        try:
            data = await self._with_retries(self.cold.get, name)
        except ObjectNotFoundError:
            if hot_error is not None:
                self._stats["unavailable"] += 1
                raise TransientBackendError(
                    f"Hot store unavailable and record not in cold store: {key}",
                    backend="hot",
                ) from hot_error
            # Archival may have moved it between our hot and cold reads.
            try:
                record = await self._with_retries(self._read_hot, key)
            except RecordNotFoundError:
                self._stats["not_found"] += 1
                raise RecordNotFoundError(key)
            self._stats["hot_hits"] += 1
            return record
        except TransientBackendError:
            self._stats["unavailable"] += 1
            raise

        record = decode_cold_document(data, name)
        if self.cache is not None:
            await self.cache.set(name, data, self.cache_ttl_seconds)
        self._stats["cold_hits"] += 1
        return record

    async def exists(self, partition_key: str, record_id: str) -> bool:
        """Whether either tier holds the record.

        Raises:
            TransientBackendError: If a tier could not answer
        """
        key = RecordKey(partition_key, record_id)
        if await self._with_retries(self.hot.exists, key):
            return True
        return await self._with_retries(
            self.cold.exists, cold_object_name(key, self.cold_prefix)
        )

    async def write(self, record: Record) -> None:
        """Write a record. New writes always go to the hot store."""
        await self.hot.put(record)

    async def _read_hot(self, key: RecordKey) -> Record:
        return await self.hot.get(key)

    async def _with_retries(self, operation, *args: Any) -> Any:
        attempt = 0
        while True:
            try:
                return await operation(*args)
            except TransientBackendError as e:
                attempt += 1
                if attempt > self.read_retries:
                    raise
                logger.debug(
                    f"Retrying read after transient error: {e}",
                    extra={"attempt": attempt},
                )
                await asyncio.sleep(self.backoff.delay(attempt))

    @property
    def stats(self) -> Dict[str, Any]:
        """Get gateway statistics."""
        stats: Dict[str, Any] = dict(self._stats)
        if self.cache is not None:
            stats["cache_errors"] = self.cache.error_count
        return stats
