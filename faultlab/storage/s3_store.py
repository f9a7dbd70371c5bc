"""
S3 / MinIO ObjectStore backed by boto3.

boto3 is synchronous, so every call is pushed to a worker thread with
``asyncio.to_thread`` to keep the event loop free.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from faultlab.core.config import ObjectStoreSettings, get_settings
from faultlab.core.exceptions import ObjectNotFound, StorageFailure
from faultlab.storage.object_store import MAX_KEYS_PER_PAGE, ObjectInfo, ObjectPage

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_RETRYABLE_CODES = {"SlowDown", "RequestTimeout", "InternalError", "ServiceUnavailable", "503", "500"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    """
    ObjectStore over an S3-compatible bucket.

    Example:
        >>> store = S3ObjectStore.from_settings()
        >>> await store.put("sessions/abc/metadata.json", b"{}")
    """

    def __init__(self, config: ObjectStoreSettings, client: Any = None):
        """
        Args:
            config: Bucket/endpoint/credential settings
            client: Pre-built boto3 S3 client (tests); created lazily otherwise
        """
        self.config = config
        self._client = client

        logger.info(f"[S3ObjectStore] Configured bucket={config.bucket} endpoint={config.endpoint}")

    @classmethod
    def from_settings(cls) -> "S3ObjectStore":
        return cls(get_settings().object_store)

    def _get_client(self):
        """Get or create boto3 S3 client."""
        if self._client is None:
            boto_config = BotoConfig(
                connect_timeout=self.config.connect_timeout_seconds,
                read_timeout=self.config.read_timeout_seconds,
                retries={"max_attempts": 3, "mode": "adaptive"},
                s3={"addressing_style": "path"},  # Required for MinIO
            )

            client_kwargs: Dict[str, Any] = {
                "service_name": "s3",
                "region_name": self.config.region,
                "config": boto_config,
            }
            if self.config.endpoint:
                client_kwargs["endpoint_url"] = self.config.endpoint
            if self.config.access_key_id and self.config.secret_access_key:
                client_kwargs["aws_access_key_id"] = self.config.access_key_id
                client_kwargs["aws_secret_access_key"] = self.config.secret_access_key

            self._client = boto3.client(**client_kwargs)

        return self._client

    def _wrap(self, error: Exception, action: str) -> StorageFailure:
        if isinstance(error, ClientError):
            code = _error_code(error)
            return StorageFailure(
                f"S3 {action} failed ({code}): {error}",
                retryable=code in _RETRYABLE_CODES,
                context={"bucket": self.config.bucket, "code": code},
            )
        return StorageFailure(
            f"S3 {action} failed: {error}",
            retryable=True,
            context={"bucket": self.config.bucket},
        )

    async def list_objects(
        self,
        prefix: str = "",
        max_keys: int = MAX_KEYS_PER_PAGE,
        continuation_token: Optional[str] = None,
    ) -> ObjectPage:
        kwargs: Dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Prefix": prefix,
            "MaxKeys": max(1, min(int(max_keys), MAX_KEYS_PER_PAGE)),
        }
        if continuation_token:
            kwargs["ContinuationToken"] = continuation_token

        try:
            response = await asyncio.to_thread(self._get_client().list_objects_v2, **kwargs)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, f"list {prefix!r}") from e

        objects = [
            ObjectInfo(key=item["Key"], size=int(item.get("Size", 0)), last_modified=item.get("LastModified"))
            for item in response.get("Contents", [])
        ]
        next_token = response.get("NextContinuationToken") if response.get("IsTruncated") else None
        return ObjectPage(objects=objects, next_token=next_token)

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self._get_client().get_object(Bucket=self.config.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                raise ObjectNotFound(key) from e
            raise self._wrap(e, f"get {key}") from e
        except BotoCoreError as e:
            raise self._wrap(e, f"get {key}") from e

    async def put(self, key: str, data: bytes, content_type: str = "application/octet-stream") -> None:
        put_args: Dict[str, Any] = {
            "Bucket": self.config.bucket,
            "Key": key,
            "Body": data,
            "ContentType": content_type,
        }
        if self.config.enable_encryption:
            put_args["ServerSideEncryption"] = "AES256"

        try:
            await asyncio.to_thread(self._get_client().put_object, **put_args)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, f"put {key}") from e

    async def delete(self, key: str) -> None:
        # S3 DeleteObject succeeds for missing keys, so this is idempotent.
        try:
            await asyncio.to_thread(self._get_client().delete_object, Bucket=self.config.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, f"delete {key}") from e

    async def head(self, key: str) -> Optional[ObjectInfo]:
        try:
            response = await asyncio.to_thread(self._get_client().head_object, Bucket=self.config.bucket, Key=key)
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise self._wrap(e, f"head {key}") from e
        except BotoCoreError as e:
            raise self._wrap(e, f"head {key}") from e

        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            last_modified=response.get("LastModified"),
        )

    async def health_check(self) -> bool:
        """Check the bucket is reachable."""
        try:
            await self.list_objects("", max_keys=1)
            return True
        except StorageFailure as e:
            logger.warning(f"[S3ObjectStore] Health check failed: {e}")
            return False
