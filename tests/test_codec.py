from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from conftest import image_bytes
from imagesmith_service import codec
from imagesmith_service.codec import ResampleSpec, TRANSPARENT
from imagesmith_service.errors import DecodeError


def open_bytes(data: bytes) -> Image.Image:
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


def test_decode_rejects_garbage() -> None:
    with pytest.raises(DecodeError):
        codec.decode(b"definitely not an image")


def test_decode_rejects_empty() -> None:
    with pytest.raises(DecodeError):
        codec.decode(b"")


def test_metadata_reports_alpha() -> None:
    rgba = codec.decode(image_bytes(mode="RGBA", color=(1, 2, 3, 128)))
    rgb = codec.decode(image_bytes(mode="RGB", fmt="JPEG"))

    assert codec.metadata(rgba) == codec.ImageMetadata(width=40, height=20, has_alpha=True)
    assert codec.metadata(rgb).has_alpha is False


def test_palette_transparency_counts_as_alpha() -> None:
    image = Image.new("P", (4, 4), 0)
    image.info["transparency"] = 0
    assert codec.has_alpha(image) is True


@pytest.mark.parametrize(
    "fit, allow_upscale, expected",
    [
        ("fill", False, (100, 100)),
        ("contain", False, (100, 50)),
        ("inside", False, (100, 50)),
        ("cover", False, (200, 100)),
        ("outside", False, (200, 100)),
        ("fill", True, (100, 100)),
    ],
)
def test_compute_resize_dims(fit: str, allow_upscale: bool, expected) -> None:
    assert codec.compute_resize_dims(400, 200, 100, 100, fit, allow_upscale) == expected


def test_compute_resize_dims_without_upscale_keeps_small_sources() -> None:
    assert codec.compute_resize_dims(50, 25, 400, 400, "inside", False) == (50, 25)
    assert codec.compute_resize_dims(50, 25, 400, 400, "inside", True) == (400, 200)
    assert codec.compute_resize_dims(50, 25, 400, 400, "fill", False) == (50, 25)


def test_contain_pads_to_box_with_transparent_canvas() -> None:
    image = codec.decode(image_bytes(size=(400, 200)))
    out = codec.resample(image, ResampleSpec(100, 100, fit="contain", background=TRANSPARENT))

    assert out.size == (100, 100)
    assert out.mode == "RGBA"
    assert out.getpixel((0, 0))[3] == 0
    assert out.getpixel((50, 50))[3] == 255


def test_cover_fills_the_box() -> None:
    image = codec.decode(image_bytes(size=(400, 200)))
    out = codec.resample(image, ResampleSpec(100, 100, fit="cover"))
    assert out.size == (100, 100)


def test_fill_inside_outside_sizes() -> None:
    image = codec.decode(image_bytes(size=(400, 200)))
    assert codec.resample(image, ResampleSpec(100, 100, fit="fill")).size == (100, 100)
    assert codec.resample(image, ResampleSpec(100, 100, fit="inside")).size == (100, 50)
    assert codec.resample(image, ResampleSpec(100, 100, fit="outside")).size == (200, 100)


def test_cover_without_upscale_crops_to_available_pixels() -> None:
    image = codec.decode(image_bytes(size=(60, 30)))
    out = codec.resample(image, ResampleSpec(100, 20, fit="cover", allow_upscale=False))
    assert out.size == (60, 20)


def test_attention_crop_follows_the_detail() -> None:
    # Flat grey frame with a busy, saturated patch on the far right.
    pixels = np.full((100, 300, 3), 128, dtype=np.uint8)
    rng = np.random.default_rng(7)
    pixels[:, 220:300] = rng.integers(0, 256, size=(100, 80, 3), dtype=np.uint8)
    image = Image.fromarray(pixels)

    left, top = codec.attention_offset(codec.saliency_map(image), 100, 100)

    assert top == 0
    assert left >= 190


def test_attention_crop_on_flat_image_is_centred() -> None:
    score = np.zeros((100, 300), dtype=np.float32)
    assert codec.attention_offset(score, 100, 100) == (100, 0)


def test_unknown_fit_is_rejected() -> None:
    image = codec.decode(image_bytes())
    with pytest.raises(ValueError):
        codec.resample(image, ResampleSpec(10, 10, fit="stretch"))


def test_encode_png_keeps_alpha() -> None:
    image = Image.new("RGBA", (8, 8), (10, 20, 30, 0))
    decoded = open_bytes(codec.encode(image, "png"))
    assert decoded.format == "PNG"
    assert decoded.getpixel((0, 0))[3] == 0


def test_encode_jpeg_flattens_alpha_onto_white() -> None:
    image = Image.new("RGBA", (16, 16), (0, 0, 0, 0))
    decoded = open_bytes(codec.encode(image, "jpeg", quality=90))
    assert decoded.format == "JPEG"
    assert decoded.mode == "RGB"
    assert all(channel > 245 for channel in decoded.getpixel((8, 8)))


def test_encode_is_deterministic() -> None:
    image = codec.decode(image_bytes(size=(64, 48)))
    assert codec.encode(image, "jpeg") == codec.encode(image, "jpeg")
    assert codec.encode(image, "png") == codec.encode(image, "png")


def test_encode_rejects_unknown_format() -> None:
    with pytest.raises(ValueError):
        codec.encode(Image.new("RGB", (2, 2)), "gif")
