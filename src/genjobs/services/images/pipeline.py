"""Image pipeline: fetch, size-bounded compression, store and release."""

import asyncio
from typing import Iterable, Optional

import httpx
import structlog

from genjobs.services.exceptions import FetchError, StorageError
from genjobs.services.images.compression import compress_to_limit, detect_content_type
from genjobs.services.images.storage import RESULT_PREFIX, TEMP_PREFIX, ObjectStorage

logger = structlog.get_logger(__name__)


class ImagePipeline:
    """Moves image bytes between URLs, the compressor and object storage."""

    def __init__(
        self,
        storage: ObjectStorage,
        fetch_timeout: float = 30.0,
        min_dimension: int = 512,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize pipeline.

        Args:
            storage: Object storage for temporary and result artifacts
            fetch_timeout: Download timeout in seconds (default: 30)
            min_dimension: Compression never shrinks the longest side below this
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.storage = storage
        self.fetch_timeout = fetch_timeout
        self.min_dimension = min_dimension
        self.transport = transport

    async def fetch(self, uri: str) -> bytes:
        """Download image bytes.

        Raises:
            FetchError: transient for timeouts, connection errors, 429 and 5xx;
                permanent for other 4xx responses
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.fetch_timeout, transport=self.transport, follow_redirects=True
            ) as client:
                response = await client.get(uri)
        except httpx.TimeoutException as e:
            raise FetchError(f"Timed out fetching {uri}: {e}", transient=True) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Network error fetching {uri}: {e}", transient=True) from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise FetchError(f"Fetch of {uri} failed ({status})", transient=True, status_code=status)
        if status >= 400:
            raise FetchError(f"Fetch of {uri} failed ({status})", transient=False, status_code=status)

        return response.content

    async def ensure_under_limit(self, data: bytes, limit: int) -> bytes:
        """Return `data` unchanged if it fits, otherwise a recompressed JPEG.

        Raises:
            PermanentError: If oversized bytes cannot be decoded as an image
        """
        if len(data) <= limit:
            return data

        compressed = await asyncio.to_thread(compress_to_limit, data, limit, self.min_dimension)
        logger.info(
            "image.compressed",
            original_bytes=len(data),
            compressed_bytes=len(compressed),
            limit_bytes=limit,
            under_limit=len(compressed) <= limit,
        )
        return compressed

    async def store(self, data: bytes, content_type: str, temporary: bool = False) -> str:
        """Upload bytes and return their public URI.

        Raises:
            StorageError: If the upload fails
        """
        prefix = TEMP_PREFIX if temporary else RESULT_PREFIX
        return await self.storage.put(data, content_type, prefix=prefix)

    async def release(self, uris: Iterable[str]) -> None:
        """Delete temporary artifacts. Best effort: failures are logged only."""
        keys = []
        for uri in uris:
            key = self.storage.key_for_url(uri)
            if key is None:
                logger.warning("image.release.skipped_foreign_uri", uri=uri)
                continue
            keys.append(key)

        if not keys:
            return

        try:
            await self.storage.delete(keys)
        except StorageError as e:
            logger.warning("image.release.failed", keys=keys, error=str(e))
            return

        logger.info("image.released", count=len(keys))

    async def prepare_input(self, uri: str, limit: int) -> tuple[str, Optional[str]]:
        """Make an input image usable by size-limited services.

        Returns:
            (uri to pass on, temporary uri to release or None). The original uri
            is returned untouched when the image is already under the limit.
        """
        data = await self.fetch(uri)
        if len(data) <= limit:
            return uri, None

        compressed = await self.ensure_under_limit(data, limit)
        temp_uri = await self.store(compressed, detect_content_type(compressed), temporary=True)
        return temp_uri, temp_uri
