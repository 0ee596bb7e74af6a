"""
AWS Kinesis change feed implementation.

Hot-store writers put one record per write on a Kinesis stream, keyed by the
record's partition key; the change-feed trigger reads every shard.

Invariants:
    - Events for one partition key land on one shard, in write order
    - A consumer resumes each shard after its highest committed sequence
      number; shards without a checkpoint start at config.iterator_type
    - Checkpoints only move forward

How to change safely:
    - Test with LocalStack before deploying to AWS
    - Checkpoints live in memory; a restart replays from iterator_type,
      which the trigger tolerates because archival is idempotent
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import ClientError, EndpointConnectionError

from .base import (
    ChangeEvent,
    FeedConnectionError,
    FeedError,
    FeedPosition,
    FeedSerializationError,
    FeedTimeoutError,
)

logger = logging.getLogger(__name__)

SHARD_PREFIX = "shardId-"


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def shard_number(shard_id: str) -> int:
    """Numeric part of a shard ID ("shardId-000000000003" -> 3)."""
    try:
        return int(shard_id.rsplit("-", 1)[-1])
    except ValueError:
        return 0


def shard_id_for(partition: int) -> str:
    return f"{SHARD_PREFIX}{partition:012d}"


class KinesisChangeFeed:
    """Kinesis Data Streams implementation of the ChangeFeed protocol.

    FeedPosition.partition is the shard number and FeedPosition.offset the
    record's sequence number.

    Example:
        >>> feed = KinesisChangeFeed(KinesisConfig(stream_name="record-changes"))
        >>> await feed.connect()
        >>> await feed.publish(ChangeEvent(RecordKey("tenant_1", "doc_1"), ts))
    """

    def __init__(
        self,
        config: Any,
        timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.2,
        throttle_pause_seconds: float = 1.0,
    ) -> None:
        """Initialize Kinesis change feed.

        Args:
            config: KinesisConfig instance
            timeout_seconds: Bound on each PutRecord call
            poll_interval_seconds: Pause after a round where no shard had data
            throttle_pause_seconds: Pause after a throttled read
        """
        self.config = config
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.throttle_pause_seconds = throttle_pause_seconds
        self._client_ctx = None
        self._client = None
        self._iterators: dict[str, str] = {}
        self._checkpoints: dict[str, int] = {}

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def connect(self) -> None:
        """Open the client and check the stream exists.

        Raises:
            FeedConnectionError: If the endpoint or stream is unavailable
        """
        if self._client is not None:
            return

        options: dict[str, Any] = {"region_name": self.config.region}
        if self.config.endpoint_url:
            options["endpoint_url"] = self.config.endpoint_url

        self._client_ctx = get_session().create_client("kinesis", **options)
        client = await self._client_ctx.__aenter__()
        try:
            await client.describe_stream(StreamName=self.config.stream_name)
        except (EndpointConnectionError, ClientError) as e:
            await self._client_ctx.__aexit__(None, None, None)
            self._client_ctx = None
            if isinstance(e, ClientError) and _error_code(e) == "ResourceNotFoundException":
                raise FeedConnectionError(
                    f"Kinesis stream '{self.config.stream_name}' not found"
                ) from e
            raise FeedConnectionError(f"Cannot reach Kinesis: {e}") from e

        self._client = client
        logger.info(
            "Change feed connected to Kinesis",
            extra={
                "stream": self.config.stream_name,
                "region": self.config.region,
                "endpoint": self.config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        if self._client_ctx is not None:
            try:
                await self._client_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing Kinesis client: {e}")
        self._client_ctx = None
        self._client = None
        self._iterators.clear()

    async def publish(self, event: ChangeEvent) -> FeedPosition:
        """Put one change event on the stream.

        Raises:
            FeedConnectionError: If not connected
            FeedTimeoutError: If the put times out or the shard is over capacity
            FeedError: For other Kinesis errors
        """
        client = self._require_client()
        try:
            response = await asyncio.wait_for(
                client.put_record(
                    StreamName=self.config.stream_name,
                    Data=event.encode(),
                    PartitionKey=event.key.partition_key,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            raise FeedTimeoutError(f"PutRecord exceeded {self.timeout_seconds}s")
        except ClientError as e:
            if _error_code(e) == "ProvisionedThroughputExceededException":
                raise FeedTimeoutError("Kinesis write throughput exceeded") from e
            raise FeedError(f"Kinesis PutRecord failed: {e}") from e

        return FeedPosition(
            topic=self.config.stream_name,
            partition=shard_number(response["ShardId"]),
            offset=int(response["SequenceNumber"]),
            timestamp_ms=int(time.time() * 1000),
        )

    async def subscribe(
        self,
        group_id: str,
        start_position: FeedPosition | None = None,
    ) -> AsyncIterator[ChangeEvent]:
        """Yield change events from every shard until closed.

        Kinesis has no consumer groups; group_id only labels log lines.

        Raises:
            FeedConnectionError: If not connected
            FeedError: If Kinesis rejects a read
        """
        client = self._require_client()
        try:
            shard_ids = await self._list_shard_ids()
            for shard_id in shard_ids:
                after = self._checkpoints.get(shard_id)
                if start_position is not None and shard_number(shard_id) == start_position.partition:
                    after = start_position.offset
                self._iterators[shard_id] = await self._open_iterator(shard_id, after)
            logger.info(
                "Subscribed to change feed",
                extra={"stream": self.config.stream_name, "shards": len(shard_ids), "group_id": group_id},
            )

            while self._client is not None and self._iterators:
                received = 0
                for shard_id in list(self._iterators):
                    records = await self._read_shard(client, shard_id)
                    received += len(records)
                    for record in records:
                        event = self._to_event(shard_id, record)
                        if event is not None:
                            yield event
                if not received:
                    await asyncio.sleep(self.poll_interval_seconds)
        except ClientError as e:
            raise FeedError(f"Kinesis read failed: {e}") from e

    async def commit(self, event: ChangeEvent) -> None:
        """Record the event's sequence number as its shard's checkpoint."""
        position = event.position
        if position is None:
            return
        shard_id = shard_id_for(position.partition)
        if position.offset <= self._checkpoints.get(shard_id, -1):
            return
        self._checkpoints[shard_id] = position.offset
        logger.debug("Checkpointed", extra={"shard": shard_id, "sequence": position.offset})

    def _require_client(self) -> Any:
        if self._client is None:
            raise FeedConnectionError("Not connected to Kinesis")
        return self._client

    async def _read_shard(self, client: Any, shard_id: str) -> list:
        try:
            response = await client.get_records(
                ShardIterator=self._iterators[shard_id],
                Limit=self.config.max_records_per_get,
            )
        except ClientError as e:
            code = _error_code(e)
            if code == "ExpiredIteratorException":
                self._iterators[shard_id] = await self._open_iterator(
                    shard_id, self._checkpoints.get(shard_id)
                )
                return []
            if code == "ProvisionedThroughputExceededException":
                logger.warning("Kinesis read throttled", extra={"shard": shard_id})
                await asyncio.sleep(self.throttle_pause_seconds)
                return []
            raise

        next_iterator = response.get("NextShardIterator")
        if next_iterator:
            self._iterators[shard_id] = next_iterator
        else:
            # Closed after a reshard; its children show up on the next subscribe.
            logger.info("Shard closed", extra={"shard": shard_id})
            del self._iterators[shard_id]
        return response["Records"]

    def _to_event(self, shard_id: str, record: dict) -> ChangeEvent | None:
        sequence = record["SequenceNumber"]
        position = FeedPosition(
            topic=self.config.stream_name,
            partition=shard_number(shard_id),
            offset=int(sequence),
            timestamp_ms=int(record["ApproximateArrivalTimestamp"].timestamp() * 1000),
        )
        try:
            return ChangeEvent.decode(record["Data"], position)
        except FeedSerializationError as e:
            logger.warning(
                f"Skipping malformed change event: {e}",
                extra={"shard": shard_id, "sequence": sequence},
            )
            return None

    async def _open_iterator(self, shard_id: str, after: int | None) -> str:
        params: dict[str, Any] = {"StreamName": self.config.stream_name, "ShardId": shard_id}
        if after is not None:
            params["ShardIteratorType"] = "AFTER_SEQUENCE_NUMBER"
            params["StartingSequenceNumber"] = str(after)
        elif self.config.iterator_type == "TRIM_HORIZON":
            params["ShardIteratorType"] = "TRIM_HORIZON"
        else:
            params["ShardIteratorType"] = "LATEST"
        response = await self._client.get_shard_iterator(**params)
        return response["ShardIterator"]

    async def _list_shard_ids(self) -> list[str]:
        shard_ids: list[str] = []
        params: dict[str, Any] = {"StreamName": self.config.stream_name}
        while True:
            response = await self._client.list_shards(**params)
            shard_ids.extend(shard["ShardId"] for shard in response["Shards"])
            token = response.get("NextToken")
            if not token:
                return shard_ids
            params = {"NextToken": token}
