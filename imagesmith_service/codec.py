"""
Image codec adapter: decode, inspect, resample and encode.

Pillow does the decoding, resampling and encoding. OpenCV supplies the
saliency map used for attention-weighted cropping, so that "cover" crops
keep the busiest, most colourful part of the frame instead of the centre.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from typing import Tuple

import cv2
import numpy as np
from PIL import Image, ImageFilter

from .errors import DecodeError

logger = logging.getLogger(__name__)

FIT_MODES = ("contain", "cover", "fill", "inside", "outside")
POSITIONS = ("attention", "centre", "center")

WHITE = (255, 255, 255, 255)
TRANSPARENT = (0, 0, 0, 0)

_ALPHA_MODES = {"RGBA", "LA", "PA", "RGBa", "La"}


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int
    has_alpha: bool


@dataclass(frozen=True)
class ResampleSpec:
    width: int
    height: int
    fit: str = "contain"
    position: str = "attention"
    allow_upscale: bool = False
    background: Tuple[int, int, int, int] = WHITE


def decode(data: bytes) -> Image.Image:
    """Decode image bytes and force the pixel data to load."""
    if not data:
        raise DecodeError("Empty image data")
    try:
        image = Image.open(BytesIO(data))
        image.load()
    except Exception as exc:  # noqa: BLE001
        raise DecodeError(f"Failed to decode image: {exc}") from exc
    return image


def has_alpha(image: Image.Image) -> bool:
    if image.mode in _ALPHA_MODES:
        return True
    return "transparency" in image.info


def metadata(image: Image.Image) -> ImageMetadata:
    width, height = image.size
    return ImageMetadata(width=width, height=height, has_alpha=has_alpha(image))


def _working_copy(image: Image.Image) -> Image.Image:
    """Normalize palette / CMYK / 16-bit inputs to RGB or RGBA."""
    mode = "RGBA" if has_alpha(image) else "RGB"
    if image.mode == mode:
        return image
    return image.convert(mode)


def compute_resize_dims(
    width: int, height: int, box_width: int, box_height: int, fit: str, allow_upscale: bool
) -> Tuple[int, int]:
    """Size of the scaled source before any cropping or padding."""
    if fit == "fill":
        if allow_upscale:
            return box_width, box_height
        return min(box_width, width), min(box_height, height)

    ratio_w = box_width / width
    ratio_h = box_height / height
    if fit in ("contain", "inside"):
        scale = min(ratio_w, ratio_h)
    else:
        scale = max(ratio_w, ratio_h)
    if not allow_upscale:
        scale = min(scale, 1.0)
    new_w = max(1, int(width * scale + 0.5))
    new_h = max(1, int(height * scale + 0.5))
    return new_w, new_h


def _normalize(channel: np.ndarray) -> np.ndarray:
    peak = float(channel.max())
    if peak <= 0:
        return np.zeros_like(channel, dtype=np.float32)
    return (channel / peak).astype(np.float32)


def saliency_map(image: Image.Image) -> np.ndarray:
    """Per-pixel interest score: edge energy, saturation and luminance contrast."""
    rgb = np.asarray(image.convert("RGB"), dtype=np.uint8)
    gray = cv2.cvtColor(rgb, cv2.COLOR_RGB2GRAY)
    edges = np.abs(cv2.Laplacian(gray, cv2.CV_32F, ksize=3))
    saturation = cv2.cvtColor(rgb, cv2.COLOR_RGB2HSV)[..., 1].astype(np.float32)
    contrast = np.abs(gray.astype(np.float32) - float(gray.mean()))

    score = 0.5 * _normalize(edges) + 0.3 * _normalize(saturation) + 0.2 * _normalize(contrast)
    if image.mode == "RGBA":
        score *= np.asarray(image.getchannel("A"), dtype=np.float32) / 255.0
    return score


def attention_offset(score: np.ndarray, crop_width: int, crop_height: int) -> Tuple[int, int]:
    """Top-left corner of the crop window with the highest total saliency.

    Ties resolve to the window closest to the centre, so flat images crop
    exactly like a centre crop.
    """
    height, width = score.shape
    integral = cv2.integral(score.astype(np.float32))
    ys = np.arange(height - crop_height + 1)[:, None]
    xs = np.arange(width - crop_width + 1)[None, :]
    windows = (
        integral[ys + crop_height, xs + crop_width]
        - integral[ys, xs + crop_width]
        - integral[ys + crop_height, xs]
        + integral[ys, xs]
    )
    best = float(windows.max())
    tolerance = max(abs(best) * 1e-6, 1e-9)
    candidates = np.argwhere(windows >= best - tolerance)
    centre = np.array([(height - crop_height) / 2.0, (width - crop_width) / 2.0])
    distances = np.abs(candidates - centre).sum(axis=1)
    top, left = candidates[int(np.argmin(distances))]
    return int(left), int(top)


def _crop(image: Image.Image, crop_width: int, crop_height: int, position: str) -> Image.Image:
    width, height = image.size
    if (crop_width, crop_height) == (width, height):
        return image
    if position == "attention":
        left, top = attention_offset(saliency_map(image), crop_width, crop_height)
    else:
        left = (width - crop_width) // 2
        top = (height - crop_height) // 2
    return image.crop((left, top, left + crop_width, top + crop_height))


def _sharpen(image: Image.Image) -> Image.Image:
    """Mild unsharp mask on colour channels; alpha stays untouched."""
    unsharp = ImageFilter.UnsharpMask(radius=1, percent=60, threshold=2)
    if image.mode != "RGBA":
        return image.filter(unsharp)
    r, g, b, a = image.split()
    sharpened = Image.merge("RGB", (r, g, b)).filter(unsharp)
    sharpened.putalpha(a)
    return sharpened


def resample(image: Image.Image, spec: ResampleSpec) -> Image.Image:
    """Resize `image` into the `spec` box according to its fit mode."""
    if spec.fit not in FIT_MODES:
        raise ValueError(f"Unsupported fit mode: {spec.fit}")
    if spec.position not in POSITIONS:
        raise ValueError(f"Unsupported position: {spec.position}")

    working = _working_copy(image)
    src_w, src_h = working.size
    new_w, new_h = compute_resize_dims(src_w, src_h, spec.width, spec.height, spec.fit, spec.allow_upscale)
    if (new_w, new_h) != (src_w, src_h):
        working = working.resize((new_w, new_h), Image.LANCZOS)
    working = _sharpen(working)

    if spec.fit == "cover":
        working = _crop(working, min(spec.width, new_w), min(spec.height, new_h), spec.position)
    elif spec.fit == "contain":
        working = _pad(working, spec.width, spec.height, spec.background)

    logger.debug(
        "resample fit=%s src=%dx%d scaled=%dx%d out=%dx%d",
        spec.fit,
        src_w,
        src_h,
        new_w,
        new_h,
        working.width,
        working.height,
    )
    return working


def _pad(image: Image.Image, width: int, height: int, background: Tuple[int, int, int, int]) -> Image.Image:
    """Centre `image` on a `width` x `height` canvas filled with `background`."""
    if image.size == (width, height):
        return image
    opaque = background[3] == 255 and image.mode != "RGBA"
    canvas = Image.new("RGB" if opaque else "RGBA", (width, height), background[:3] if opaque else background)
    left = (width - image.width) // 2
    top = (height - image.height) // 2
    if image.mode == "RGBA":
        canvas.alpha_composite(image, dest=(left, top))
    else:
        canvas.paste(image, (left, top))
    return canvas


def encode(image: Image.Image, fmt: str, quality: int = 90) -> bytes:
    """Encode to PNG (lossless) or JPEG (4:4:4 chroma, alpha flattened onto white)."""
    buf = BytesIO()
    if fmt == "png":
        _working_copy(image).save(buf, format="PNG")
    elif fmt == "jpeg":
        if has_alpha(image):
            rgba = image.convert("RGBA")
            flattened = Image.new("RGB", rgba.size, WHITE[:3])
            flattened.paste(rgba, mask=rgba.getchannel("A"))
            image = flattened
        elif image.mode != "RGB":
            image = image.convert("RGB")
        image.save(buf, format="JPEG", quality=quality, subsampling=0)
    else:
        raise ValueError(f"Unsupported output format: {fmt}")
    return buf.getvalue()
