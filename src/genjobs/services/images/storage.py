"""S3-compatible object storage for job artifacts.

Keys are laid out by purpose and date:

    temp/2026/10/<uuid>.jpg       intermediate artifacts, released when the job ends
    results/2026/10/<uuid>.png    generated images, kept
"""

import asyncio
from typing import Any, Iterable, Optional
from uuid import uuid4

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from genjobs.core.config import Settings
from genjobs.core.timezone import utc_now
from genjobs.services.exceptions import StorageError

logger = structlog.get_logger(__name__)

TEMP_PREFIX = "temp"
RESULT_PREFIX = "results"

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


class ObjectStorage:
    """Thin async wrapper over a boto3 S3 client (calls run in a thread)."""

    def __init__(self, client: Any, bucket: str, public_base_url: str):
        """Initialize storage.

        Args:
            client: boto3 S3 client (or any object with put_object/delete_objects)
            bucket: Bucket name
            public_base_url: URL prefix under which objects are publicly served
        """
        self.client = client
        self.bucket = bucket
        self.public_base_url = public_base_url.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorage":
        """Build storage from application settings."""
        client = boto3.client(
            "s3",
            region_name=settings.s3_region,
            endpoint_url=settings.s3_endpoint_url,
            aws_access_key_id=settings.s3_access_key_id,
            aws_secret_access_key=settings.s3_secret_access_key,
        )
        public_base_url = (
            settings.s3_public_base_url
            or f"https://{settings.s3_bucket}.s3.{settings.s3_region}.amazonaws.com"
        )
        return cls(client=client, bucket=settings.s3_bucket, public_base_url=public_base_url)

    def make_key(self, prefix: str, content_type: str) -> str:
        now = utc_now()
        extension = _EXTENSIONS.get(content_type, "bin")
        return f"{prefix}/{now:%Y}/{now:%m}/{uuid4().hex}.{extension}"

    def public_url(self, key: str) -> str:
        return f"{self.public_base_url}/{key}"

    def key_for_url(self, url: str) -> Optional[str]:
        """Map a public URL back to its key, or None if it is not ours."""
        prefix = f"{self.public_base_url}/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix) :] or None

    async def put(self, data: bytes, content_type: str, prefix: str = RESULT_PREFIX) -> str:
        """Upload bytes and return their public URL.

        Raises:
            StorageError: If the upload fails
        """
        key = self.make_key(prefix, content_type)
        try:
            await asyncio.to_thread(
                self.client.put_object,
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=content_type,
                CacheControl="public, max-age=31536000, immutable",
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload of {key} failed: {e}") from e

        logger.info("storage.uploaded", key=key, size_bytes=len(data))
        return self.public_url(key)

    async def delete(self, keys: Iterable[str]) -> None:
        """Delete objects by key.

        Raises:
            StorageError: If the request fails or some keys could not be deleted
        """
        objects = [{"Key": key} for key in keys]
        if not objects:
            return
        try:
            response = await asyncio.to_thread(
                self.client.delete_objects,
                Bucket=self.bucket,
                Delete={"Objects": objects, "Quiet": True},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Delete failed: {e}") from e

        errors = (response or {}).get("Errors") or []
        if errors:
            raise StorageError(f"Delete failed for {len(errors)} object(s): {errors[0]}")
