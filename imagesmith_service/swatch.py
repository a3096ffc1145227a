"""Palette preview rendering: equal-width vertical colour bands as a PNG."""

from __future__ import annotations

from io import BytesIO
from typing import List, Sequence, Tuple

import numpy as np
from PIL import Image

DEFAULT_WIDTH = 1000
DEFAULT_HEIGHT = 200


def parse_hex_color(value: str) -> Tuple[int, int, int]:
    """Lenient `#RRGGBB` / `#RGB` parser; unparseable channels default to 255."""
    raw = (value or "#FFFFFF").strip().lstrip("#")
    if len(raw) == 3:
        raw = "".join(c * 2 for c in raw)
    channels = []
    for start in (0, 2, 4):
        part = raw[start:start + 2] or "FF"
        try:
            channels.append(int(part, 16))
        except ValueError:
            channels.append(255)
    return channels[0], channels[1], channels[2]


def band_edges(n: int, width: int) -> List[Tuple[int, int]]:
    """[start, end) columns per band; the last band absorbs the rounding remainder.

    With more bands than columns every band but the last is empty.
    """
    band = width // n
    edges = []
    for i in range(n):
        start = i * band
        end = width if i == n - 1 else min(width, start + band)
        edges.append((start, end))
    return edges


def render_swatch(colors: Sequence[str], width: int = DEFAULT_WIDTH, height: int = DEFAULT_HEIGHT) -> bytes:
    palette = list(colors) or ["#FFFFFF"]
    canvas = np.zeros((height, width, 4), dtype=np.uint8)
    for (start, end), color in zip(band_edges(len(palette), width), palette):
        canvas[:, start:end, :3] = parse_hex_color(color)
        canvas[:, start:end, 3] = 255

    buf = BytesIO()
    Image.fromarray(canvas).save(buf, format="PNG")
    return buf.getvalue()
