"""External service access: retrying client and vendor adapters."""

from genjobs.services.external.client import ExternalCallClient, classify_error
from genjobs.services.external.fal_client import ImageSynthesizer
from genjobs.services.external.replicate_client import PromptEnhancer

__all__ = [
    "ExternalCallClient",
    "classify_error",
    "ImageSynthesizer",
    "PromptEnhancer",
]
