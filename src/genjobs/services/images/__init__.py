"""Image fetch, compression and storage."""

from genjobs.services.images.compression import compress_to_limit, detect_content_type
from genjobs.services.images.pipeline import ImagePipeline
from genjobs.services.images.storage import ObjectStorage

__all__ = [
    "ImagePipeline",
    "ObjectStorage",
    "compress_to_limit",
    "detect_content_type",
]
