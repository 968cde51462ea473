"""
Amazon S3 object store.

S3 PUT is atomic for whole objects and ListObjectsV2 returns keys in
ascending UTF-8 order, one page of up to 1000 keys at a time. The
default key layout matches what the rrweb delivery stream writes, so
buckets filled by either path are read the same way.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from typing import Any

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from ..config import StoreConfig
from ..exceptions import ConfigurationError, ObjectNotFoundError, StoreError
from .base import ObjectStore

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}
_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


def _client_error(operation: str, key: str | None, exc: ClientError) -> StoreError:
    status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    code = exc.response.get("Error", {}).get("Code", "")
    retryable = status in _TRANSIENT_STATUS or code in ("SlowDown", "RequestTimeout")
    return StoreError(operation, key, exc, status_code=status, retryable=retryable)


class S3ObjectStore(ObjectStore):
    """Object store backed by one S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str | None = None,
        endpoint_url: str | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        """Initialize the store.

        Args:
            bucket: Bucket name
            region: AWS region (default: from the environment)
            endpoint_url: Custom endpoint, e.g. http://localhost:4566 for localstack
            session: Existing aioboto3 session to reuse
        """
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.session = session or aioboto3.Session()

    @classmethod
    def from_config(cls, config: StoreConfig) -> S3ObjectStore:
        if not config.s3_bucket:
            raise ConfigurationError("store.s3_bucket", "required for the s3 backend")
        logger.info("S3 store: bucket=%s endpoint=%s", config.s3_bucket, config.s3_endpoint_url)
        return cls(config.s3_bucket, config.s3_region, config.s3_endpoint_url)

    def _client(self) -> Any:
        return self.session.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)

    async def put_object(self, key: str, data: bytes) -> None:
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=data,
                    ContentType="application/x-ndjson",
                )
        except ClientError as e:
            raise _client_error("put_object", key, e) from e
        except BotoCoreError as e:
            raise StoreError("put_object", key, e) from e

    async def list_pages(self, prefix: str) -> AsyncIterator[list[str]]:
        try:
            async with self._client() as s3:
                paginator = s3.get_paginator("list_objects_v2")
                async for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                    yield [item["Key"] for item in page.get("Contents", [])]
        except ClientError as e:
            raise _client_error("list_objects", prefix, e) from e
        except BotoCoreError as e:
            raise StoreError("list_objects", prefix, e) from e

    async def get_object(self, key: str) -> bytes:
        try:
            async with self._client() as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                async with response["Body"] as stream:
                    return await stream.read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _NOT_FOUND_CODES:
                raise ObjectNotFoundError(key, e) from e
            raise _client_error("get_object", key, e) from e
        except BotoCoreError as e:
            raise StoreError("get_object", key, e) from e
