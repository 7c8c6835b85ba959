"""fal.ai client for image synthesis (edit) requests."""

from typing import Optional, Sequence

import httpx

from genjobs.models.job import QualityTier
from genjobs.services.exceptions import PermanentExternalError, TransientExternalError

MAX_PROMPT_CHARS = 4900

# Output resolution per quality tier
TIER_RESOLUTION = {
    QualityTier.STANDARD: "2K",
    QualityTier.PREMIUM: "4K",
}

_TRANSIENT_BODY_MARKERS = ("temporarily unavailable", "rate limit", "timeout")


class ImageSynthesizer:
    """Image edit client for fal.ai synchronous endpoints."""

    def __init__(
        self,
        api_key: str,
        endpoint: str = "https://fal.run/fal-ai/nano-banana-pro/edit",
        timeout: float = 300.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize synthesizer.

        Args:
            api_key: fal.ai API key (from FAL_API_KEY env var)
            endpoint: Model endpoint URL
            timeout: HTTP timeout in seconds (default: 300)
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.transport = transport
        self.headers = {
            "Authorization": f"Key {api_key}",
            "Content-Type": "application/json",
        }

    async def synthesize(
        self,
        prompt: str,
        image_urls: Sequence[str],
        aspect_ratio: str = "9:16",
        quality_tier: QualityTier = QualityTier.STANDARD,
    ) -> str:
        """Request one edited image and return its (vendor CDN) URL.

        Args:
            prompt: Enhanced prompt (truncated to 4900 characters)
            image_urls: Source images, original first
            aspect_ratio: Output aspect ratio (e.g. "9:16")
            quality_tier: Selects output resolution

        Returns:
            URL of the generated image

        Raises:
            TransientExternalError: Timeout, 429, 5xx, or a retryable error in the body
            PermanentExternalError: Auth failure, bad request, unexpected response
        """
        if not self.api_key:
            raise PermanentExternalError("FAL_API_KEY not configured")

        resolution = TIER_RESOLUTION[quality_tier]
        payload = {
            "prompt": prompt[:MAX_PROMPT_CHARS],
            "image_urls": list(image_urls),
            "output_format": "png",
            "aspect_ratio": aspect_ratio,
            "num_images": 1,
            "resolution": resolution,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.endpoint, headers=self.headers, json=payload)
        except httpx.TimeoutException as e:
            raise TransientExternalError(f"Request timeout after {self.timeout}s: {str(e)}")
        except httpx.HTTPError as e:
            raise TransientExternalError(f"Network error: {str(e)}")

        # Error classification
        if response.status_code == 429:
            raise TransientExternalError(f"Rate limit exceeded: {response.text}")
        elif response.status_code >= 500:
            raise TransientExternalError(
                f"Service unavailable ({response.status_code}): {response.text}"
            )
        elif response.status_code in (401, 403):
            raise PermanentExternalError(
                f"Authentication failed ({response.status_code}). Check FAL_API_KEY configuration."
            )
        elif response.status_code >= 400:
            raise PermanentExternalError(f"Bad request ({response.status_code}): {response.text}")

        try:
            body = response.json()
        except ValueError as e:
            raise PermanentExternalError(f"Non-JSON response from synthesis service: {e}")

        images = body.get("images") or []
        if images and images[0].get("url"):
            return images[0]["url"]

        error_msg = body.get("detail") or body.get("error")
        if error_msg:
            if isinstance(error_msg, str) and any(
                marker in error_msg.lower() for marker in _TRANSIENT_BODY_MARKERS
            ):
                raise TransientExternalError(f"Synthesis service error: {error_msg}")
            raise PermanentExternalError(f"Synthesis service error: {error_msg}")

        raise PermanentExternalError("Synthesis service returned unexpected response format")
