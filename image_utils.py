# image_utils.py
from io import BytesIO
from typing import Tuple

from PIL import Image

import config


class InvalidImageError(ValueError):
    """Raised when an upload cannot be decoded into a usable raster image."""


def open_image(data: bytes) -> Image.Image:
    """
    Decode raw upload bytes into a Pillow image.

    Rejects empty buffers, undecodable data and zero-dimension images so no
    watermark or resize step ever sees them.
    """
    if not data:
        raise InvalidImageError("Invalid image buffer provided.")
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        raise InvalidImageError(f"Could not decode image: {e}") from e
    if img.width == 0 or img.height == 0:
        raise InvalidImageError("Invalid image dimensions.")
    return img


def image_metadata(data: bytes) -> Tuple[int, int, str]:
    """Return (width, height, format) of encoded image bytes."""
    img = open_image(data)
    return img.width, img.height, (img.format or "").lower()


def _save_image(img: Image.Image, fmt: str, quality: int) -> bytes:
    buffer = BytesIO()
    # JPEG has no alpha channel
    if fmt.upper() in {"JPEG", "JPG"} and img.mode != "RGB":
        img = img.convert("RGB")
    img.save(buffer, format=fmt, quality=quality)
    return buffer.getvalue()


def optimize_image(data: bytes, max_size: Tuple[int, int] = None, quality: int = None) -> bytes:
    """
    Shrink an image to fit inside `max_size` (never enlarging) and encode it as WebP.

    - max_size: (width, height) bounding box, defaults to config.OPTIMIZE_MAX_SIZE
    - quality: WebP quality, defaults to config.OUTPUT_QUALITY
    """
    max_size = max_size or config.OPTIMIZE_MAX_SIZE
    quality = quality or config.OUTPUT_QUALITY
    img = open_image(data)
    if img.mode not in {"RGB", "RGBA"}:
        has_alpha = img.mode in {"LA", "PA"} or "transparency" in img.info
        img = img.convert("RGBA" if has_alpha else "RGB")
    if img.width > max_size[0] or img.height > max_size[1]:
        img.thumbnail(max_size, Image.LANCZOS)
    return _save_image(img, "WEBP", quality)
