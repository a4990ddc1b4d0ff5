"""
Object storage client for encrypted intake packages.

Thin async wrapper around a boto3 S3 client (any S3-compatible endpoint).
boto3 is synchronous, so every call runs in a worker thread.

Retry policy:
- get/head/delete are idempotent and retried on transient faults
- put is never retried here; the caller decides whether to re-upload
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from urllib.parse import quote

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionError as BotoConnectionError,
    HTTPClientError,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from clinicflow.config import Settings
from clinicflow.models.base import utcnow

logger = logging.getLogger(__name__)

PACKAGE_PREFIX = "intake-packages"
PACKAGE_CONTENT_TYPE = "application/octet-stream"
PRIVATE_ACL = "private"

_PACKAGE_KEY_PATTERN = re.compile(
    rf"^{PACKAGE_PREFIX}/(?P<year>\d{{4}})/(?P<month>\d{{2}})/(?P<referral>[^/]+)/(?P<package>[^/]+)\.enc$"
)

# Error codes that indicate a transient fault worth retrying
TRANSIENT_ERROR_CODES = {
    "InternalError",
    "ServiceUnavailable",
    "SlowDown",
    "Throttling",
    "ThrottlingException",
    "RequestTimeout",
    "RequestTimeTooSkewed",
}
NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageError(Exception):
    """Object storage rejected the request."""


class StorageUnavailable(StorageError):
    """Transient storage fault (network, throttling, 5xx)."""


class ObjectNotFound(StorageError):
    """Requested object does not exist."""


@dataclass(frozen=True)
class StoredObject:
    key: str
    body: bytes
    metadata: dict[str, str]
    content_type: Optional[str] = None


def build_package_key(referral_id: Any, package_id: str, now: Optional[datetime] = None) -> str:
    """Storage key partitioned by upload year and month."""
    now = now or utcnow()
    return f"{PACKAGE_PREFIX}/{now:%Y}/{now:%m}/{referral_id}/{package_id}.enc"


def parse_package_key(key: str) -> dict[str, str]:
    match = _PACKAGE_KEY_PATTERN.match(key)
    if not match:
        raise ValueError(f"Not an intake package key: {key}")
    return match.groupdict()


def package_age_days(key: str, now: Optional[datetime] = None) -> int:
    """
    Age of a package in days, measured from the first day of the month
    encoded in its key.
    """
    parts = parse_package_key(key)
    now = now or utcnow()
    partition = datetime(int(parts["year"]), int(parts["month"]), 1, tzinfo=now.tzinfo)
    return (now - partition).days


def is_expired(key: str, retention_days: int, now: Optional[datetime] = None) -> bool:
    return package_age_days(key, now) >= retention_days


def _normalize_endpoint(endpoint_url: Optional[str]) -> Optional[str]:
    if endpoint_url:
        return endpoint_url.rstrip("/")
    return None


def _classify(error: Exception, operation: str, key: str) -> StorageError:
    if isinstance(error, ClientError):
        code = str(error.response.get("Error", {}).get("Code", ""))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        if code in NOT_FOUND_CODES:
            return ObjectNotFound(f"{operation}: object {key} not found")
        if code in TRANSIENT_ERROR_CODES or (isinstance(status, int) and status >= 500):
            return StorageUnavailable(f"{operation} failed transiently ({code or status})")
        return StorageError(f"{operation} failed ({code or status})")
    if isinstance(error, (BotoConnectionError, HTTPClientError)):
        return StorageUnavailable(f"{operation} failed: {type(error).__name__}")
    return StorageError(f"{operation} failed: {type(error).__name__}")


class ObjectStorageClient:
    """
    Async object storage operations for intake packages.

    The underlying boto3 client is created once and cached; call
    ``reset()`` after rotating storage credentials.
    """

    def __init__(
        self,
        settings: Settings,
        s3_client: Optional[BaseClient] = None,
        retry_wait: Optional[Callable] = None,
    ):
        self.settings = settings
        self.bucket = settings.storage_bucket
        self._client = s3_client
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=4)

    def _build_client(self) -> BaseClient:
        endpoint = _normalize_endpoint(self.settings.storage_endpoint)
        return boto3.client(
            "s3",
            region_name=self.settings.storage_region,
            aws_access_key_id=self.settings.storage_access_key or None,
            aws_secret_access_key=self.settings.storage_secret_key or None,
            endpoint_url=endpoint,
            config=Config(
                s3={"addressing_style": self.settings.storage_url_style},
                signature_version="s3v4",
            ),
        )

    @property
    def client(self) -> BaseClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    def reset(self) -> None:
        """Drop the cached client so the next call picks up new credentials."""
        self._client = None
        logger.info("Object storage client reset")

    async def _call(self, operation: str, key: str, fn: Callable, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(fn, **kwargs)
        except (ClientError, BotoCoreError) as e:
            error = _classify(e, operation, key)
            logger.warning(f"Storage {operation} failed for {key}: {error}")
            raise error from e

    async def _call_with_retry(self, operation: str, key: str, fn: Callable, **kwargs) -> Any:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.settings.storage_max_attempts),
            wait=self._retry_wait,
            retry=retry_if_exception_type(StorageUnavailable),
            reraise=True,
        ):
            with attempt:
                return await self._call(operation, key, fn, **kwargs)

    def object_url(self, key: str) -> str:
        """Non-signed location of an object, for records only."""
        quoted = quote(key)
        endpoint = _normalize_endpoint(self.settings.storage_endpoint)
        if endpoint and self.settings.storage_url_style == "path":
            return f"{endpoint}/{self.bucket}/{quoted}"
        if endpoint:
            scheme, _, host = endpoint.partition("://")
            return f"{scheme}://{self.bucket}.{host}/{quoted}"
        return f"https://{self.bucket}.s3.{self.settings.storage_region}.amazonaws.com/{quoted}"

    async def put_object(self, key: str, body: bytes, metadata: Optional[dict[str, str]] = None) -> str:
        """
        Upload with a private ACL. Not retried.

        Returns:
            The object's ETag
        """
        response = await self._call(
            "put_object",
            key,
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=body,
            ContentType=PACKAGE_CONTENT_TYPE,
            ACL=PRIVATE_ACL,
            Metadata={k: str(v) for k, v in (metadata or {}).items()},
        )
        logger.info(f"Uploaded {len(body)} bytes to {key}")
        return str(response.get("ETag", "")).strip('"')

    async def get_object(self, key: str) -> StoredObject:
        response = await self._call_with_retry(
            "get_object", key, self.client.get_object, Bucket=self.bucket, Key=key
        )
        body = await asyncio.to_thread(response["Body"].read)
        return StoredObject(
            key=key,
            body=body,
            metadata=dict(response.get("Metadata") or {}),
            content_type=response.get("ContentType"),
        )

    async def head_object(self, key: str) -> dict[str, Any]:
        response = await self._call_with_retry(
            "head_object", key, self.client.head_object, Bucket=self.bucket, Key=key
        )
        return {
            "content_length": response.get("ContentLength"),
            "content_type": response.get("ContentType"),
            "metadata": dict(response.get("Metadata") or {}),
            "last_modified": response.get("LastModified"),
        }

    async def object_exists(self, key: str) -> bool:
        try:
            await self.head_object(key)
        except ObjectNotFound:
            return False
        return True

    async def delete_object(self, key: str) -> None:
        """Delete an object. Deleting a missing object succeeds."""
        await self._call_with_retry(
            "delete_object", key, self.client.delete_object, Bucket=self.bucket, Key=key
        )
        logger.info(f"Deleted {key}")

    async def presign_download(self, key: str, expires_in: Optional[int] = None) -> str:
        """Time-limited GET URL. The URL itself is never logged."""
        expires_in = expires_in or self.settings.download_url_ttl_seconds
        url = await self._call(
            "presign_download",
            key,
            self.client.generate_presigned_url,
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": key},
            ExpiresIn=expires_in,
        )
        logger.info(f"Issued download URL for {key} valid {expires_in}s")
        return url

    async def presign_upload(self, key: str, expires_in: int = 3600) -> str:
        """Time-limited PUT URL that forces the private ACL."""
        url = await self._call(
            "presign_upload",
            key,
            self.client.generate_presigned_url,
            ClientMethod="put_object",
            Params={
                "Bucket": self.bucket,
                "Key": key,
                "ContentType": PACKAGE_CONTENT_TYPE,
                "ACL": PRIVATE_ACL,
            },
            ExpiresIn=expires_in,
        )
        logger.info(f"Issued upload URL for {key} valid {expires_in}s")
        return url

    async def list_package_keys(self, prefix: str = PACKAGE_PREFIX) -> list[str]:
        """All object keys under ``prefix``."""
        keys: list[str] = []
        token: Optional[str] = None
        while True:
            kwargs: dict[str, Any] = {"Bucket": self.bucket, "Prefix": prefix}
            if token:
                kwargs["ContinuationToken"] = token
            response = await self._call_with_retry(
                "list_objects", prefix, self.client.list_objects_v2, **kwargs
            )
            keys.extend(item["Key"] for item in response.get("Contents", []))
            if not response.get("IsTruncated"):
                return keys
            token = response.get("NextContinuationToken")
