# watermark_engine.py
"""
Text watermark compositing for uploaded images.

Stages, run once per upload:
    parse_options -> render_glyph_layer -> recolor_glyph_layer -> apply_opacity
    -> scale_glyph_layer -> compute_anchor -> composite_glyph -> encode_jpeg

Any exception after decoding switches to `fallback_watermark`, which prints the
plain text straight onto the image. Only a failing fallback reaches the caller.
"""
import logging
import math
from enum import Enum
from functools import lru_cache
from io import BytesIO
from typing import Callable, Mapping, NamedTuple, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageDraw, ImageFont
from pydantic import BaseModel, ConfigDict, field_validator

import config
from image_utils import InvalidImageError, open_image

logger = logging.getLogger("repo_uploader.watermark")

RGB = Tuple[int, int, int]
RGBA = Tuple[int, int, int, int]

DEFAULT_COLOR = "#FFFFFF"
DEFAULT_SIZE = 24
DEFAULT_OPACITY = 0.8
DEFAULT_MARGIN = 20

MIN_SIZE, MAX_SIZE = 12, 200
MIN_OPACITY, MAX_OPACITY = 0.1, 1.0

# Pre-sized font assets; 8 is never selected by select_font_tier
FONT_TIERS = (8, 16, 32, 64, 128)
FALLBACK_TIER = 32
# Glyph layers are scaled relative to this size, whatever tier rendered them
BASELINE_SIZE = 24

GLYPH_PADDING = 20
INK_COLOR = (255, 255, 255, 255)
INK_THRESHOLD = 150
JPEG_QUALITY = 85

FALLBACK_OFFSET_X = 20
FALLBACK_OFFSET_BOTTOM = 50


class WatermarkError(Exception):
    """Base class for watermark pipeline failures."""


class RenderingError(WatermarkError):
    """The styled pipeline failed; recovered by the plain-text fallback."""


class WatermarkFallbackError(WatermarkError):
    """The plain-text fallback failed too; the caller keeps the original image."""


__all__ = [
    "InvalidImageError",
    "RenderingError",
    "WatermarkConfig",
    "WatermarkError",
    "WatermarkFallbackError",
    "WatermarkPosition",
    "WatermarkResult",
    "apply_watermark",
    "parse_options",
    "watermark_upload",
]


def _clamp_byte(value: int) -> int:
    return max(0, min(255, int(value)))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class WatermarkPosition(str, Enum):
    TOP_LEFT = "top-left"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_RIGHT = "bottom-right"
    CENTER = "center"

    @classmethod
    def parse(cls, value) -> "WatermarkPosition":
        """Map any unknown or missing value to BOTTOM_RIGHT."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value))
        except ValueError:
            return cls.BOTTOM_RIGHT


def parse_hex_color(value: str) -> RGB:
    """
    Parse '#RRGGBB' into an RGB triple without ever raising.

    Each two-digit slice that does not parse as hex becomes 0, and every channel
    is clamped to 0..255, so malformed input resolves deterministically.
    """
    digits = str(value or "").strip().replace("#", "", 1)
    channels = []
    for start in (0, 2, 4):
        chunk = digits[start:start + 2]
        try:
            channels.append(_clamp_byte(int(chunk, 16)))
        except ValueError:
            channels.append(0)
    return channels[0], channels[1], channels[2]


class WatermarkConfig(BaseModel):
    """Validated, fully defaulted watermark settings for one upload."""

    model_config = ConfigDict(frozen=True)

    text: str
    color: RGB = (255, 255, 255)
    size: int = DEFAULT_SIZE
    opacity: float = DEFAULT_OPACITY
    position: WatermarkPosition = WatermarkPosition.BOTTOM_RIGHT
    margin: int = DEFAULT_MARGIN

    @field_validator("text")
    @classmethod
    def _text_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("watermark text must not be blank")
        return v

    @field_validator("color", mode="before")
    @classmethod
    def _coerce_color(cls, v):
        if isinstance(v, str):
            return parse_hex_color(v)
        return tuple(_clamp_byte(c) for c in v)

    @field_validator("size")
    @classmethod
    def _clamp_size(cls, v: int) -> int:
        return max(MIN_SIZE, min(v, MAX_SIZE))

    @field_validator("opacity")
    @classmethod
    def _clamp_opacity(cls, v: float) -> float:
        return max(MIN_OPACITY, min(v, MAX_OPACITY))

    @field_validator("position", mode="before")
    @classmethod
    def _coerce_position(cls, v):
        return WatermarkPosition.parse(v)

    @field_validator("margin")
    @classmethod
    def _non_negative_margin(cls, v: int) -> int:
        return max(0, v)

    @property
    def alpha(self) -> int:
        return _round_half_up(self.opacity * 255)


def _field(fields: Mapping[str, str], name: str) -> str:
    value = fields.get(name)
    return value.strip() if isinstance(value, str) else ""


def parse_options(fields: Mapping[str, str]) -> Optional[WatermarkConfig]:
    """
    Build a WatermarkConfig from raw multipart form fields.

    Returns None when no watermark text was submitted. Malformed numeric fields
    silently fall back to their defaults; this function never raises.
    """
    text = _field(fields, "watermark_text")
    if not text:
        return None

    color = _field(fields, "watermark_color") or DEFAULT_COLOR

    size = DEFAULT_SIZE
    raw = _field(fields, "watermark_size")
    if raw:
        try:
            parsed = int(raw)
            if parsed > 0:
                size = parsed
        except ValueError:
            pass

    opacity = DEFAULT_OPACITY
    raw = _field(fields, "watermark_opacity")
    if raw:
        try:
            parsed = float(raw)
            if 0 <= parsed <= 1:
                opacity = parsed
        except ValueError:
            pass

    position = _field(fields, "watermark_position") or WatermarkPosition.BOTTOM_RIGHT

    margin = DEFAULT_MARGIN
    raw = _field(fields, "watermark_margin")
    if raw:
        try:
            parsed = int(raw)
            if parsed >= 0:
                margin = parsed
        except ValueError:
            pass

    options = WatermarkConfig(
        text=text, color=color, size=size, opacity=opacity, position=position, margin=margin
    )
    logger.debug("Parsed watermark options: %s", options)
    return options


# --- Glyph rendering ---

class GlyphLayer(NamedTuple):
    image: Image.Image
    tier: int


def select_font_tier(size: int) -> int:
    if size <= 16:
        return 16
    if size <= 32:
        return 32
    if size <= 64:
        return 64
    return 128


def load_font(tier: int) -> ImageFont.ImageFont:
    """Font asset for a ladder tier, read from the currently configured font file."""
    if tier not in FONT_TIERS:
        raise RenderingError(f"No font asset for tier {tier}")
    return _load_font(config.FONT_PATH, tier)


@lru_cache(maxsize=None)
def _load_font(path: str, tier: int) -> ImageFont.ImageFont:
    # Loaded once per (path, tier); later calls share it read-only
    try:
        return ImageFont.truetype(path, tier)
    except OSError:
        logger.debug("Font %s unavailable, using Pillow's bundled font at %dpx", path, tier)
        return ImageFont.load_default(size=tier)


def render_glyph_layer(text: str, size: int) -> GlyphLayer:
    """
    Rasterize `text` in white onto a transparent layer padded by 20px per side.

    The font tier comes from `select_font_tier(size)` and the layer is sized
    from that font's own metrics.
    """
    tier = select_font_tier(size)
    font = load_font(tier)

    probe = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = probe.textbbox((0, 0), text, font=font)
    text_w, text_h = right - left, bottom - top
    if text_w <= 0 or text_h <= 0:
        raise RenderingError(f"Text {text!r} has no visible glyphs at tier {tier}")

    layer = Image.new("RGBA", (text_w + 2 * GLYPH_PADDING, text_h + 2 * GLYPH_PADDING), (0, 0, 0, 0))
    draw = ImageDraw.Draw(layer)
    draw.text((GLYPH_PADDING - left, GLYPH_PADDING - top), text, font=font, fill=INK_COLOR, align="center")
    logger.debug("Rendered %dx%d glyph layer with tier %d", layer.width, layer.height, tier)
    return GlyphLayer(layer, tier)


# --- Color / alpha ---

PixelFn = Callable[[int, int, RGBA], RGBA]


def map_pixels(image: Image.Image, fn: PixelFn, box: Optional[Tuple[int, int, int, int]] = None) -> int:
    """
    Apply `fn(x, y, pixel) -> pixel` to every pixel of `box` (default: whole image).

    Only changed pixels are written back. A pixel that fails is logged and
    skipped so the scan always completes. Returns the number of failed pixels.
    """
    left, top, right, bottom = box if box is not None else (0, 0, image.width, image.height)
    pixels = image.load()
    failures = 0
    for y in range(top, bottom):
        for x in range(left, right):
            try:
                pixel = pixels[x, y]
                updated = fn(x, y, pixel)
                if updated != pixel:
                    pixels[x, y] = updated
            except (IndexError, TypeError, ValueError, OverflowError) as e:
                failures += 1
                logger.warning("Skipping pixel (%d, %d): %s", x, y, e)
    return failures


def is_ink(pixel: RGBA) -> bool:
    r, g, b, a = pixel
    return a > 0 and r > INK_THRESHOLD and g > INK_THRESHOLD and b > INK_THRESHOLD


def recolor_glyph_layer(layer: GlyphLayer, color: RGB) -> int:
    """Swap near-white ink pixels for `color` at full alpha. Edge pixels below the threshold keep their ink color."""
    target = (_clamp_byte(color[0]), _clamp_byte(color[1]), _clamp_byte(color[2]), 255)

    def _recolor(x, y, pixel):
        return target if is_ink(pixel) else pixel

    return map_pixels(layer.image, _recolor)


def apply_opacity(layer: GlyphLayer, alpha: int) -> int:
    """Give every non-transparent pixel the same alpha; transparent pixels are never written."""

    def _fade(x, y, pixel):
        r, g, b, a = pixel
        if a == 0:
            return pixel
        return _clamp_byte(r), _clamp_byte(g), _clamp_byte(b), _clamp_byte(alpha)

    return map_pixels(layer.image, _fade)


# --- Placement / blend ---

def scale_glyph_layer(layer: GlyphLayer, size: int) -> GlyphLayer:
    """Resize the layer by size / 24; size 24 is returned untouched."""
    if size == BASELINE_SIZE:
        return layer
    factor = size / BASELINE_SIZE
    width = max(1, _round_half_up(layer.image.width * factor))
    height = max(1, _round_half_up(layer.image.height * factor))
    pixels = np.asarray(layer.image)
    resized = cv2.resize(pixels, (width, height), interpolation=cv2.INTER_LINEAR)
    logger.debug("Scaled glyph layer by %.3f to %dx%d", factor, width, height)
    return layer._replace(image=Image.fromarray(resized))


def compute_anchor(
    image_size: Tuple[int, int],
    glyph_size: Tuple[int, int],
    position,
    margin: int,
) -> Tuple[int, int]:
    """Top-left corner for the glyph layer; never negative, may overflow the far edge."""
    img_w, img_h = image_size
    glyph_w, glyph_h = glyph_size
    position = WatermarkPosition.parse(position)

    if position is WatermarkPosition.TOP_LEFT:
        x, y = margin, margin
    elif position is WatermarkPosition.TOP_RIGHT:
        x, y = img_w - glyph_w - margin, margin
    elif position is WatermarkPosition.BOTTOM_LEFT:
        x, y = margin, img_h - glyph_h - margin
    elif position is WatermarkPosition.CENTER:
        x, y = (img_w - glyph_w) // 2, (img_h - glyph_h) // 2
    else:
        x, y = img_w - glyph_w - margin, img_h - glyph_h - margin
    return max(0, x), max(0, y)


def composite_glyph(image: Image.Image, layer: GlyphLayer, position: Tuple[int, int]) -> Image.Image:
    """Blend the layer over the RGBA `image` in place at `position`."""
    image.alpha_composite(layer.image, dest=position)
    return image


def encode_jpeg(image: Image.Image) -> bytes:
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=JPEG_QUALITY)
    return buffer.getvalue()


# --- Pipeline ---

def _render_styled(image: Image.Image, options: WatermarkConfig) -> bytes:
    layer = render_glyph_layer(options.text, options.size)
    recolor_glyph_layer(layer, options.color)
    apply_opacity(layer, options.alpha)
    layer = scale_glyph_layer(layer, options.size)
    anchor = compute_anchor(image.size, layer.image.size, options.position, options.margin)
    logger.debug("Placing watermark at %s (%s)", anchor, options.position.value)
    composite_glyph(image, layer, anchor)
    return encode_jpeg(image)


def fallback_watermark(image_bytes: bytes, text: str) -> bytes:
    """
    Print plain white text at (20, height - 50) using the 32px font.

    No color, opacity, position or margin handling. Raises
    WatermarkFallbackError when even this fails.
    """
    try:
        image = open_image(image_bytes).convert("RGB")
        font = load_font(FALLBACK_TIER)
        draw = ImageDraw.Draw(image)
        position = (FALLBACK_OFFSET_X, image.height - FALLBACK_OFFSET_BOTTOM)
        draw.text(position, text or "Watermark", font=font, fill=INK_COLOR[:3])
        return encode_jpeg(image)
    except Exception as e:
        logger.error("Fallback watermark failed: %s", e)
        raise WatermarkFallbackError(f"Failed to add watermark to image: {e}") from e


def apply_watermark(image_bytes: bytes, options: Optional[WatermarkConfig]) -> bytes:
    """
    Stamp `options.text` onto the encoded image and return JPEG bytes.

    - options None: `image_bytes` is returned as-is
    - undecodable input: InvalidImageError, before any rendering
    - styled pipeline failure: plain-text fallback result
    - fallback failure: WatermarkFallbackError
    """
    if options is None:
        return image_bytes

    image = open_image(image_bytes).convert("RGBA")
    logger.debug("Watermarking %dx%d image with %r", image.width, image.height, options.text)
    try:
        return _render_styled(image, options)
    except Exception as e:
        logger.warning("Styled watermark failed (%s); trying plain-text fallback", e)
        return fallback_watermark(image_bytes, options.text)


class WatermarkResult(NamedTuple):
    data: bytes
    applied: bool
    text: Optional[str]


def watermark_upload(image_bytes: bytes, fields: Mapping[str, str]) -> WatermarkResult:
    """
    Parse form fields and watermark an upload, never failing because of the watermark.

    `applied` is True whenever text was stamped, by the styled pipeline or the
    fallback. InvalidImageError still propagates.
    """
    options = parse_options(fields)
    if options is None:
        return WatermarkResult(image_bytes, False, None)
    try:
        data = apply_watermark(image_bytes, options)
    except WatermarkFallbackError:
        logger.error("Continuing without watermark")
        return WatermarkResult(image_bytes, False, None)
    return WatermarkResult(data, True, options.text)
