"""Size-bounded image recompression with Pillow.

Images above the byte limit are re-encoded as JPEG along a decreasing quality
ladder; if the floor quality is still too large, pixel dimensions shrink step
by step (aspect ratio preserved) until the result fits or the longest side
would drop below the minimum dimension. The guarantee is best effort: when
nothing fits, the smallest encoding produced is returned.
"""

import io

from PIL import Image, ImageOps, UnidentifiedImageError

from genjobs.services.exceptions import PermanentError

QUALITY_LADDER = (85, 70, 55, 40)
RESIZE_FACTOR = 0.8


def detect_content_type(data: bytes) -> str:
    """Sniff the MIME type of encoded image bytes."""
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


def compress_to_limit(data: bytes, limit: int, min_dimension: int = 512) -> bytes:
    """Return `data` if it fits in `limit` bytes, otherwise a smaller JPEG re-encoding.

    Args:
        data: Encoded source image
        limit: Soft upper bound in bytes
        min_dimension: Longest side never shrinks below this many pixels

    Returns:
        The first encoding at or under the limit, or the smallest one produced

    Raises:
        PermanentError: If the bytes cannot be decoded as an image
    """
    if len(data) <= limit:
        return data

    image = _decode(data)
    best = data

    for quality in QUALITY_LADDER:
        encoded = _encode_jpeg(image, quality)
        if len(encoded) < len(best):
            best = encoded
        if len(encoded) <= limit:
            return encoded

    floor_quality = QUALITY_LADDER[-1]
    width, height = image.size
    while max(width, height) * RESIZE_FACTOR >= min_dimension:
        width = max(1, round(width * RESIZE_FACTOR))
        height = max(1, round(height * RESIZE_FACTOR))
        encoded = _encode_jpeg(image.resize((width, height), Image.Resampling.LANCZOS), floor_quality)
        if len(encoded) < len(best):
            best = encoded
        if len(encoded) <= limit:
            return encoded

    return best


def _decode(data: bytes) -> Image.Image:
    try:
        with Image.open(io.BytesIO(data)) as source:
            source.load()
            # Apply EXIF orientation before re-encoding drops the tag
            image = ImageOps.exif_transpose(source)
    except (UnidentifiedImageError, OSError) as e:
        raise PermanentError(f"Cannot decode image: {e}") from e

    if image.mode in ("RGBA", "LA") or (image.mode == "P" and "transparency" in image.info):
        rgba = image.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, (255, 255, 255))
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        return flattened
    return image.convert("RGB")


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality, optimize=True)
    return buffer.getvalue()
