"""
S3 storage adapter for feedcast.

Narrow byte transport to S3-compatible storage through the MinIO client:
store a local file under a key, fetch a key back into memory, list objects
newest first, and map public URLs back to keys.
"""

import asyncio
import itertools
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from urllib.parse import quote, unquote, urlparse

from minio import Minio
from minio.error import S3Error
from urllib3.exceptions import HTTPError as TransportError

from ..core.config import Settings, settings
from ..core.exceptions import BlobNotFoundError, StorageError
from ..core.logging import get_logger
from ..observability.metrics import metrics

logger = get_logger("adapters.storage_s3")

MISSING_OBJECT_CODES = {"NoSuchKey", "NoSuchObject", "NotFound"}
# Failures below the S3 protocol layer, such as an unreachable endpoint
TRANSPORT_ERRORS = (TransportError, OSError, ValueError)


@dataclass
class StoredBlob:
    """Bytes fetched back from the store."""
    key: str
    data: bytes
    content_type: str


@dataclass
class ObjectPage:
    """One page of a bucket listing."""
    contents: list[dict[str, Any]] = field(default_factory=list)
    next_continuation_token: str | None = None


class S3Storage:
    """S3-compatible storage adapter using MinIO."""

    def __init__(self, config: Settings | None = None, client: Minio | None = None):
        """Initialize S3 storage adapter."""
        self.config = config or settings
        self.bucket = self.config.s3.bucket_name
        self.public_base_url = self.config.get_s3_public_base_url()
        self.public_prefixes = self.config.get_s3_public_prefixes()
        self._client = client
        self._bucket_checked = False
        logger.info("S3Storage initialized", endpoint=self.config.s3.endpoint, bucket=self.bucket)

    def _get_client(self) -> Minio:
        """Get or create MinIO client."""
        if self._client is None:
            parsed = urlparse(self.config.s3.endpoint)
            self._client = Minio(
                parsed.netloc or parsed.path,
                access_key=self.config.s3.access_key or None,
                secret_key=self.config.s3.secret_key.get_secret_value() or None,
                secure=parsed.scheme == "https",
                region=self.config.s3.region,
            )

        if self.config.s3.auto_create_bucket and not self._bucket_checked:
            if not self._client.bucket_exists(bucket_name=self.bucket):
                self._client.make_bucket(bucket_name=self.bucket)
                logger.info("Created bucket", bucket=self.bucket)
            self._bucket_checked = True

        return self._client

    async def _run(self, operation: str, func):
        """Run a blocking MinIO call in the default executor and time it."""
        start_time = time.time()
        loop = asyncio.get_running_loop()
        try:
            result = await loop.run_in_executor(None, func)
        except Exception:
            metrics.track_storage_operation(operation, "error", time.time() - start_time)
            raise
        metrics.track_storage_operation(operation, "success", time.time() - start_time)
        return result

    def locator_for(self, key: str) -> str:
        """Public URL for a stored key."""
        return f"{self.public_base_url}/{quote(key)}"

    def resolve_key(self, locator: str) -> str:
        """
        Map a locator back to a storage key.

        Any known public prefix of this bucket is stripped. A locator that
        matches none of them is returned unchanged.
        """
        for prefix in self.public_prefixes:
            if locator.startswith(prefix):
                return unquote(locator[len(prefix):])
        return locator

    async def store(self, local_path: str, key: str, content_type: str) -> str:
        """
        Upload file to S3. Re-storing an existing key overwrites it.

        Args:
            local_path: Path to local file
            key: Object key
            content_type: MIME type stored with the object

        Returns:
            Public URL of the stored object

        Raises:
            StorageError: On any network, auth or service failure
        """
        try:
            await self._run(
                "put",
                lambda: self._get_client().fput_object(
                    bucket_name=self.bucket,
                    object_name=key,
                    file_path=local_path,
                    content_type=content_type,
                ),
            )
        except (S3Error, *TRANSPORT_ERRORS) as e:
            logger.error("Failed to upload object", key=key, error=str(e))
            raise StorageError(f"Failed to store {key}: {e}") from e

        url = self.locator_for(key)
        logger.info("Uploaded object", key=key, content_type=content_type, url=url)
        return url

    async def fetch(self, key: str) -> StoredBlob:
        """
        Download an object into memory.

        Raises:
            BlobNotFoundError: If the key does not exist
            StorageError: On any other failure
        """

        def _get():
            response = self._get_client().get_object(bucket_name=self.bucket, object_name=key)
            try:
                return response.read(), response.headers.get("Content-Type", "application/octet-stream")
            finally:
                response.close()
                response.release_conn()

        try:
            data, content_type = await self._run("get", _get)
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                raise BlobNotFoundError(key) from e
            raise StorageError(f"Failed to fetch {key}: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise StorageError(f"Failed to fetch {key}: {e}") from e

        logger.info("Fetched object", key=key, size=len(data), content_type=content_type)
        return StoredBlob(key=key, data=data, content_type=content_type)

    async def exists(self, key: str) -> bool:
        """Check whether an object exists."""
        try:
            await self._run("stat", lambda: self._get_client().stat_object(bucket_name=self.bucket, object_name=key))
            return True
        except S3Error as e:
            if e.code in MISSING_OBJECT_CODES:
                return False
            raise StorageError(f"Failed to stat {key}: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise StorageError(f"Failed to stat {key}: {e}") from e

    async def list_objects(self, continuation_token: str | None = None, max_keys: int | None = None) -> ObjectPage:
        """
        List one page of objects, newest first within the page.

        The continuation token is the last key of the previous page.
        """
        max_keys = max_keys or self.config.s3.list_page_size

        def _list():
            objects = self._get_client().list_objects(
                bucket_name=self.bucket,
                recursive=True,
                start_after=continuation_token,
            )
            return list(itertools.islice(objects, max_keys + 1))

        try:
            objects = await self._run("list", _list)
        except (S3Error, *TRANSPORT_ERRORS) as e:
            raise StorageError(f"Failed to list objects: {e}") from e

        page = objects[:max_keys]
        next_token = page[-1].object_name if len(objects) > max_keys else None
        contents = [self._describe(obj) for obj in page]
        contents.sort(key=lambda item: item["LastModified"] or "", reverse=True)
        return ObjectPage(contents=contents, next_continuation_token=next_token)

    @staticmethod
    def _describe(obj) -> dict[str, Any]:
        last_modified = obj.last_modified
        if isinstance(last_modified, datetime):
            last_modified = last_modified.isoformat()
        return {
            "Key": obj.object_name,
            "LastModified": last_modified,
            "Size": obj.size,
            "ETag": (obj.etag or "").strip('"'),
        }
