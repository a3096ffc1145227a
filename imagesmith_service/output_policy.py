"""
Output policy: request normalization, encoding choice and output keys.

Everything here is pure so the decisions can be tested without pixels.
"""

from __future__ import annotations

from dataclasses import dataclass
import math
import re
from typing import Any, Optional, Tuple

from .codec import FIT_MODES, TRANSPARENT, WHITE
from .errors import InvalidRequestError

MAX_PX = 4096
DEFAULT_FIT = "contain"

_IMAGE_EXT_RE = re.compile(r"\.(png|jpe?g|webp|gif|bmp|tiff?)$", re.IGNORECASE)


@dataclass(frozen=True)
class OutputPolicy:
    transparent_canvas: bool
    format: str
    extension: str
    content_type: str
    background: Tuple[int, int, int, int]


PNG_POLICY = ("png", "png", "image/png")
JPEG_POLICY = ("jpeg", "jpg", "image/jpeg")


def clamp_dimension(value: Any, max_px: int = MAX_PX) -> int:
    """Round to the nearest pixel and clamp into [1, max_px].

    Missing, non-numeric and NaN values clamp to 1. Out-of-range sizes are
    policy, not errors: they are silently pulled into range.
    """
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 1
    if math.isnan(number):
        return 1
    if math.isinf(number):
        return max_px if number > 0 else 1
    rounded = math.floor(number + 0.5)
    return int(min(max(rounded, 1), max_px))


def parse_fit(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        return DEFAULT_FIT
    fit = str(value).strip().lower()
    if fit not in FIT_MODES:
        allowed = ", ".join(FIT_MODES)
        raise InvalidRequestError(f"Unsupported fit '{value}'. Allowed: {allowed}")
    return fit


def resolve_output_policy(has_alpha: bool, remove_background: bool, fit: str) -> OutputPolicy:
    # "contain" may letterbox; a transparent pad avoids visible bars.
    transparent_canvas = fit == "contain"
    output_is_png = has_alpha or remove_background or transparent_canvas
    fmt, extension, content_type = PNG_POLICY if output_is_png else JPEG_POLICY
    return OutputPolicy(
        transparent_canvas=transparent_canvas,
        format=fmt,
        extension=extension,
        content_type=content_type,
        background=TRANSPARENT if transparent_canvas else WHITE,
    )


def base_name(source_key: str) -> str:
    """Stem of the last path segment, with a known image extension removed."""
    last = source_key.rstrip("/").split("/")[-1]
    stem = _IMAGE_EXT_RE.sub("", last)
    return stem or "image"


def build_output_key(prefix: str, source_key: str, width: int, height: int, fit: str, extension: str) -> str:
    return f"{prefix}{width}x{height}/{fit}/{base_name(source_key)}.{extension}"
