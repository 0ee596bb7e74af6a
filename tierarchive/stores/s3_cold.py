"""
S3 cold store for TierArchive.

Archived records are stored as one object per record in an S3 bucket
(or any S3-compatible service such as MinIO). It uses aiobotocore for
async operations.

Object layout:
    s3://<bucket>/<prefix>/<partition_key>/<record_id>.json

Invariants:
    - put() returns only after S3 acknowledged the write; S3 provides
      read-after-write consistency for new objects
    - Objects carry a SHA-256 checksum in their metadata
    - Throttling responses surface as ThrottledError so the orchestrator
      can slow down instead of failing the run

How to change safely:
    - Test with MinIO before deploying to AWS
    - Keep the error-code mapping in _translate in step with S3 docs
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiobotocore.session import get_session
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from ..errors import (
    ObjectNotFoundError,
    ThrottledError,
    TierArchiveError,
    TransientBackendError,
)
from ..models import compute_checksum

logger = logging.getLogger(__name__)

THROTTLE_CODES = {
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "503",
}
NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3ColdStore:
    """S3 implementation of the ColdStore protocol.

    Attributes:
        s3_config: S3 configuration
        timeout_seconds: Upper bound on a single S3 request

    Example:
        >>> cold = S3ColdStore(S3Config(bucket="archive-bucket"))
        >>> await cold.connect()
        >>> await cold.put("archive/p1/r1.json", document)
    """

    def __init__(self, s3_config: Any, timeout_seconds: float = 30.0) -> None:
        """Initialize the S3 cold store.

        Args:
            s3_config: S3Config instance
            timeout_seconds: Per-request timeout
        """
        self.s3_config = s3_config
        self.timeout_seconds = timeout_seconds
        self._session = None
        self._s3_ctx = None
        self._s3_client = None

    @property
    def is_connected(self) -> bool:
        return self._s3_client is not None

    async def connect(self) -> None:
        """Initialize S3 client."""
        if self._s3_client:
            return

        self._session = get_session()

        client_kwargs = {
            "region_name": self.s3_config.region,
        }

        if self.s3_config.endpoint_url:
            client_kwargs["endpoint_url"] = self.s3_config.endpoint_url

        if self.s3_config.access_key_id:
            client_kwargs["aws_access_key_id"] = self.s3_config.access_key_id
            client_kwargs["aws_secret_access_key"] = self.s3_config.secret_access_key

        self._s3_ctx = self._session.create_client("s3", **client_kwargs)
        self._s3_client = await self._s3_ctx.__aenter__()
        logger.info(
            "Connected to S3",
            extra={
                "bucket": self.s3_config.bucket,
                "region": self.s3_config.region,
                "endpoint": self.s3_config.endpoint_url or "AWS",
            },
        )

    async def close(self) -> None:
        """Close S3 client."""
        if self._s3_client:
            try:
                await self._s3_ctx.__aexit__(None, None, None)
            except Exception as e:
                logger.warning(f"Error closing S3 client: {e}")
        self._s3_client = None
        self._session = None

    async def get(self, name: str) -> bytes:
        response = await self._call("get_object", name, Bucket=self.s3_config.bucket, Key=name)
        async with response["Body"] as stream:
            return await asyncio.wait_for(stream.read(), timeout=self.timeout_seconds)

    async def put(self, name: str, data: bytes) -> str:
        checksum = compute_checksum(data)
        await self._call(
            "put_object",
            name,
            Bucket=self.s3_config.bucket,
            Key=name,
            Body=data,
            ContentType="application/json",
            StorageClass=self.s3_config.storage_class,
            Metadata={"checksum": checksum},
        )
        logger.debug("Archived object", extra={"key": name, "size_bytes": len(data)})
        return checksum

    async def exists(self, name: str) -> bool:
        try:
            await self._call("head_object", name, Bucket=self.s3_config.bucket, Key=name)
            return True
        except ObjectNotFoundError:
            return False

    async def delete(self, name: str) -> None:
        if not await self.exists(name):
            raise ObjectNotFoundError(name)
        await self._call("delete_object", name, Bucket=self.s3_config.bucket, Key=name)

    async def _call(self, operation: str, name: str, **kwargs: Any) -> Any:
        """Run one S3 request with a timeout and translated errors."""
        if not self._s3_client:
            raise TransientBackendError("Not connected to S3", backend="s3")

        method = getattr(self._s3_client, operation)
        try:
            return await asyncio.wait_for(method(**kwargs), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            raise TransientBackendError(f"S3 {operation} timed out for {name}", backend="s3") from e
        except ClientError as e:
            raise self._translate(e, operation, name) from e
        except (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError) as e:
            raise TransientBackendError(f"S3 {operation} connection error: {e}", backend="s3") from e

    def _translate(self, error: ClientError, operation: str, name: str) -> TierArchiveError:
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in NOT_FOUND_CODES or status == 404:
            return ObjectNotFoundError(name)
        if code in THROTTLE_CODES or status in (429, 503):
            return ThrottledError(f"S3 {operation} throttled: {code}", backend="s3")
        return TransientBackendError(f"S3 {operation} failed: {error}", backend="s3")
