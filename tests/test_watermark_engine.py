import io

import cv2
import numpy as np
import pytest
from PIL import Image
from pydantic import ValidationError

import config
import watermark_engine as wm
from tests.conftest import make_image
from watermark_engine import (
    GlyphLayer,
    InvalidImageError,
    RenderingError,
    WatermarkConfig,
    WatermarkFallbackError,
    WatermarkPosition,
)


def _decode(data: bytes) -> np.ndarray:
    return np.asarray(Image.open(io.BytesIO(data)).convert("RGB")).astype(int)


# --- colors / options ---

@pytest.mark.parametrize(
    "value,expected",
    [
        ("#FF0000", (255, 0, 0)),
        ("00ff80", (0, 255, 128)),
        ("#zzzzzz", (0, 0, 0)),
        ("#12", (18, 0, 0)),
        ("", (0, 0, 0)),
        ("-1ff00", (0, 255, 0)),
        (None, (0, 0, 0)),
    ],
)
def test_parse_hex_color(value, expected):
    assert wm.parse_hex_color(value) == expected


@pytest.mark.parametrize("text", [None, "", "   ", "\t\n"])
def test_parse_options_blank_text_skips(text):
    fields = {"watermark_size": "48"}
    if text is not None:
        fields["watermark_text"] = text
    assert wm.parse_options(fields) is None


def test_parse_options_defaults():
    options = wm.parse_options({"watermark_text": "  hello  "})
    assert options.text == "hello"
    assert options.color == (255, 255, 255)
    assert options.size == 24
    assert options.opacity == 0.8
    assert options.position is WatermarkPosition.BOTTOM_RIGHT
    assert options.margin == 20


def test_parse_options_accepts_valid_fields():
    options = wm.parse_options({
        "watermark_text": "Copyright",
        "watermark_color": "#00FF00",
        "watermark_size": "48",
        "watermark_opacity": "0.5",
        "watermark_position": "top-left",
        "watermark_margin": "0",
    })
    assert options.color == (0, 255, 0)
    assert options.size == 48
    assert options.opacity == 0.5
    assert options.position is WatermarkPosition.TOP_LEFT
    assert options.margin == 0
    assert options.alpha == 128


@pytest.mark.parametrize(
    "field,value,attr,expected",
    [
        ("watermark_size", "abc", "size", 24),
        ("watermark_size", "0", "size", 24),
        ("watermark_size", "-4", "size", 24),
        ("watermark_size", "500", "size", 200),
        ("watermark_size", "5", "size", 12),
        ("watermark_opacity", "1.5", "opacity", 0.8),
        ("watermark_opacity", "half", "opacity", 0.8),
        ("watermark_opacity", "0.05", "opacity", 0.1),
        ("watermark_margin", "-5", "margin", 20),
        ("watermark_margin", "x", "margin", 20),
        ("watermark_position", "sideways", "position", WatermarkPosition.BOTTOM_RIGHT),
        ("watermark_position", "TOP-LEFT", "position", WatermarkPosition.BOTTOM_RIGHT),
        ("watermark_position", "Center", "position", WatermarkPosition.BOTTOM_RIGHT),
        ("watermark_color", "not-a-color", "color", (0, 0, 0)),
    ],
)
def test_parse_options_falls_back_on_bad_fields(field, value, attr, expected):
    options = wm.parse_options({"watermark_text": "x", field: value})
    assert getattr(options, attr) == expected


def test_config_rejects_blank_text_and_is_frozen():
    with pytest.raises(ValidationError):
        WatermarkConfig(text="   ")
    options = WatermarkConfig(text="x")
    with pytest.raises(ValidationError):
        options.size = 100


@pytest.mark.parametrize(
    "size,tier",
    [(12, 16), (16, 16), (17, 32), (24, 32), (32, 32), (33, 64), (64, 64), (65, 128), (128, 128), (200, 128)],
)
def test_select_font_tier(size, tier):
    assert wm.select_font_tier(size) == tier


def test_smallest_tier_is_never_selected():
    assert {wm.select_font_tier(s) for s in range(wm.MIN_SIZE, wm.MAX_SIZE + 1)} == {16, 32, 64, 128}


# --- rendering / compositing ---

def test_render_glyph_layer_is_padded_and_transparent_outside_ink():
    layer = wm.render_glyph_layer("Hello", 24)
    assert layer.tier == 32
    alpha = np.asarray(layer.image)[..., 3]
    assert alpha.max() > 0
    edge = wm.GLYPH_PADDING - 1
    assert alpha[:edge].max() == 0
    assert alpha[-edge:].max() == 0
    assert alpha[:, :edge].max() == 0
    assert alpha[:, -edge:].max() == 0


def test_render_glyph_layer_ink_is_white():
    layer = wm.render_glyph_layer("Hello", 24)
    pixels = np.asarray(layer.image)
    opaque = pixels[pixels[..., 3] == 255]
    assert len(opaque) > 0
    assert (opaque[:, :3] == 255).all()


@pytest.mark.parametrize("opacity", [0.1, 0.5, 0.8, 1.0])
def test_recolor_and_opacity_give_uniform_alpha(opacity):
    options = WatermarkConfig(text="Hello", color="#FF0000", opacity=opacity)
    layer = wm.render_glyph_layer(options.text, options.size)
    transparent_before = (np.asarray(layer.image)[..., 3] == 0).sum()

    assert wm.recolor_glyph_layer(layer, options.color) == 0
    assert wm.apply_opacity(layer, options.alpha) == 0

    pixels = np.asarray(layer.image)
    touched = pixels[pixels[..., 3] > 0]
    assert len(touched) > 0
    assert np.abs(touched[:, 3].astype(int) - round(opacity * 255)).max() <= 1
    assert (pixels[..., 3] == 0).sum() == transparent_before


def test_scaled_layer_keeps_opacity_inside_strokes():
    options = WatermarkConfig(text="HI", opacity=0.5, size=48)
    # Thick strokes from the 64px tier leave plenty of interior pixels
    layer = wm.render_glyph_layer(options.text, 64)
    wm.recolor_glyph_layer(layer, options.color)
    wm.apply_opacity(layer, options.alpha)

    source_mask = (np.asarray(layer.image)[..., 3] > 0).astype(np.uint8)
    interior = cv2.erode(source_mask, np.ones((3, 3), np.uint8))
    assert interior.any()

    scaled = np.asarray(wm.scale_glyph_layer(layer, options.size).image)
    interior = np.repeat(np.repeat(interior, 2, axis=0), 2, axis=1).astype(bool)
    alpha = scaled[..., 3].astype(int)

    # Interior pixels keep the requested alpha; bilinear edges only fade toward transparent
    assert np.abs(alpha[interior] - options.alpha).max() <= 1
    assert alpha.max() <= options.alpha + 1


def test_recolor_only_touches_bright_ink():
    image = Image.new("RGBA", (3, 1), (0, 0, 0, 0))
    image.putpixel((0, 0), (255, 255, 255, 255))
    image.putpixel((1, 0), (100, 100, 100, 100))
    layer = GlyphLayer(image, 32)

    wm.recolor_glyph_layer(layer, (10, 20, 30))

    assert image.getpixel((0, 0)) == (10, 20, 30, 255)
    assert image.getpixel((1, 0)) == (100, 100, 100, 100)
    assert image.getpixel((2, 0)) == (0, 0, 0, 0)


def test_map_pixels_skips_bad_pixels_and_keeps_scanning():
    image = Image.new("RGBA", (2, 2), (0, 0, 0, 0))
    failures = wm.map_pixels(image, lambda x, y, p: (1, 2, 3, 4), box=(0, 0, 3, 2))
    assert failures == 2
    assert all(image.getpixel((x, y)) == (1, 2, 3, 4) for x in range(2) for y in range(2))


def test_map_pixels_survives_function_errors():
    image = Image.new("RGBA", (3, 2), (0, 0, 0, 0))

    def fn(x, y, pixel):
        if x == 0:
            raise ValueError("bad pixel")
        return (9, 9, 9, 9)

    assert wm.map_pixels(image, fn) == 2
    assert image.getpixel((0, 0)) == (0, 0, 0, 0)
    assert image.getpixel((2, 1)) == (9, 9, 9, 9)


def test_scale_glyph_layer_uses_baseline_24():
    layer = GlyphLayer(Image.new("RGBA", (100, 50), (0, 0, 0, 0)), 32)
    assert wm.scale_glyph_layer(layer, 24) is layer
    assert wm.scale_glyph_layer(layer, 48).image.size == (200, 100)
    assert wm.scale_glyph_layer(layer, 12).image.size == (50, 25)
    assert wm.scale_glyph_layer(layer, 48).tier == 32


def test_scaling_doubles_rendered_layer_at_size_48():
    layer = wm.render_glyph_layer("Scale me", 24)
    width, height = layer.image.size
    scaled = wm.scale_glyph_layer(layer, 48)
    assert scaled.image.size == (width * 2, height * 2)


@pytest.mark.parametrize(
    "position,expected",
    [
        ("top-left", (20, 20)),
        ("top-right", (880, 20)),
        ("bottom-left", (20, 930)),
        ("bottom-right", (880, 930)),
        ("center", (450, 475)),
        ("nowhere", (880, 930)),
        (None, (880, 930)),
    ],
)
def test_compute_anchor(position, expected):
    assert wm.compute_anchor((1000, 1000), (100, 50), position, 20) == expected


def test_compute_anchor_never_negative():
    assert wm.compute_anchor((50, 40), (100, 80), "bottom-right", 20) == (0, 0)
    assert wm.compute_anchor((50, 40), (100, 80), "center", 20) == (0, 0)


@pytest.mark.parametrize("image_size,glyph_size", [((1001, 777), (100, 51)), ((640, 480), (133, 64))])
def test_center_anchor_centers_glyph(image_size, glyph_size):
    x, y = wm.compute_anchor(image_size, glyph_size, WatermarkPosition.CENTER, 50)
    assert abs((x + glyph_size[0] / 2) - image_size[0] / 2) <= 1
    assert abs((y + glyph_size[1] / 2) - image_size[1] / 2) <= 1


def test_composite_glyph_blends_over_source():
    image = Image.new("RGBA", (10, 10), (0, 0, 255, 255))
    glyph = Image.new("RGBA", (4, 4), (255, 0, 0, 128))
    wm.composite_glyph(image, GlyphLayer(glyph, 32), (8, 8))
    r, g, b, a = image.getpixel((9, 9))
    assert abs(r - 128) <= 1 and abs(b - 127) <= 1 and a == 255
    assert image.getpixel((7, 7)) == (0, 0, 255, 255)


# --- pipeline ---

def test_apply_without_options_returns_input_bytes():
    data = make_image()
    assert wm.apply_watermark(data, None) is data
    assert wm.apply_watermark(data, wm.parse_options({"watermark_text": "  "})) is data


@pytest.mark.parametrize("data", [b"", b"definitely not an image"])
def test_apply_rejects_undecodable_input(data):
    with pytest.raises(InvalidImageError):
        wm.apply_watermark(data, WatermarkConfig(text="x"))


def test_apply_stamps_bottom_right_by_default():
    data = make_image((400, 300))
    options = WatermarkConfig(text="Hello", opacity=1.0)
    out = _decode(wm.apply_watermark(data, options))

    assert out.shape == (300, 400, 3)
    assert out[150:, 200:].max() > 200
    assert out[:150, :200].max() < 50


def test_apply_honors_color_and_position():
    data = make_image((400, 300))
    options = WatermarkConfig(text="Hello", color="#FF0000", opacity=1.0, position="top-left")
    out = _decode(wm.apply_watermark(data, options))

    region = out[:150, :200]
    red = region[..., 0] - region[..., 1]
    assert red.max() > 80
    assert out[150:, 200:].max() < 50


def test_apply_twice_stamps_twice():
    data = make_image((400, 300))
    options = WatermarkConfig(text="Hello", opacity=0.5)
    once = wm.apply_watermark(data, options)
    twice = wm.apply_watermark(once, options)

    assert _decode(twice).sum() > _decode(once).sum() + 1000


def test_rendering_failure_uses_plain_text_fallback(monkeypatch):
    def broken(text, size):
        raise RenderingError("no glyphs")

    monkeypatch.setattr(wm, "render_glyph_layer", broken)
    data = make_image((300, 200))
    out = _decode(wm.apply_watermark(data, WatermarkConfig(text="Fallback", position="top-right")))

    assert out.shape == (200, 300, 3)
    assert out[140:, 10:].max() > 200
    assert out[:100].max() < 50

    result = wm.watermark_upload(data, {"watermark_text": "Fallback"})
    assert result.applied is True
    assert result.text == "Fallback"


def test_fallback_failure_propagates_and_upload_keeps_original(monkeypatch):
    def no_fonts(tier):
        raise OSError("font assets missing")

    monkeypatch.setattr(wm, "load_font", no_fonts)
    data = make_image()

    with pytest.raises(WatermarkFallbackError):
        wm.apply_watermark(data, WatermarkConfig(text="x"))

    result = wm.watermark_upload(data, {"watermark_text": "x"})
    assert result.data is data
    assert result.applied is False
    assert result.text is None


def test_watermark_upload_skip():
    data = make_image()
    result = wm.watermark_upload(data, {})
    assert result == (data, False, None)


def test_load_font_is_cached():
    assert wm.load_font(32) is wm.load_font(32)
    with pytest.raises(RenderingError):
        wm.load_font(20)


def test_load_font_follows_configured_path(monkeypatch):
    default = wm.load_font(32)
    monkeypatch.setattr(config, "FONT_PATH", "missing-font-file.ttf")
    swapped = wm.load_font(32)
    assert swapped is not default
    assert swapped is wm.load_font(32)
