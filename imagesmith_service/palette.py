"""
Dominant-colour extraction with k-means in RGB space.

The image is first shrunk into a small sample box so clustering cost does
not depend on the source resolution. Near-transparent pixels are excluded
from clustering entirely (sentinel label -1). Seeding draws from an
injectable numpy Generator, so a seeded engine is fully deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import List, Optional

import numpy as np
from PIL import Image

from . import codec
from .config import Settings

logger = logging.getLogger(__name__)

EXCLUDED = -1
FALLBACK_COLOR = "#FFFFFF"
_WHITE = (255, 255, 255)


@dataclass
class KMeansResult:
    centroids: np.ndarray  # (k, 3) int64
    counts: np.ndarray  # (k,) pixels assigned per centroid
    labels: np.ndarray  # (N,) centroid index or EXCLUDED
    iterations: int

    def ordered_indices(self) -> List[int]:
        """Centroids with at least one pixel, most dominant first (stable on index)."""
        populated = [i for i in range(len(self.counts)) if self.counts[i] > 0]
        return sorted(populated, key=lambda i: -int(self.counts[i]))

    def to_hex(self) -> List[str]:
        colors = [to_hex(self.centroids[i]) for i in self.ordered_indices()]
        return colors or [FALLBACK_COLOR]


def to_hex(rgb) -> str:
    r, g, b = (int(v) for v in rgb)
    return f"#{r:02X}{g:02X}{b:02X}"


def _round_half_up(values: np.ndarray) -> np.ndarray:
    return np.floor(values + 0.5).astype(np.int64)


class PaletteEngine:
    def __init__(
        self,
        k: int = 5,
        max_iterations: int = 12,
        sample_size: int = 180,
        alpha_threshold: int = 10,
        rng: Optional[np.random.Generator] = None,
    ) -> None:
        self.k = max(1, int(k))
        self.max_iterations = max(1, int(max_iterations))
        self.sample_size = max(1, int(sample_size))
        self.alpha_threshold = alpha_threshold
        self.rng = rng if rng is not None else np.random.default_rng()

    @classmethod
    def from_settings(cls, settings: Settings, rng: Optional[np.random.Generator] = None) -> "PaletteEngine":
        return cls(
            k=settings.palette_size,
            max_iterations=settings.palette_max_iterations,
            sample_size=settings.palette_sample_size,
            alpha_threshold=settings.palette_alpha_threshold,
            rng=rng,
        )

    def extract(self, image_bytes: bytes, k: Optional[int] = None) -> List[str]:
        """Ordered `#RRGGBB` palette, most dominant first. Never empty."""
        return self.extract_from_image(codec.decode(image_bytes), k)

    def extract_from_image(self, image: Image.Image, k: Optional[int] = None) -> List[str]:
        pixels = self.sample_pixels(image)
        return self.quantize(pixels, k or self.k).to_hex()

    def sample_pixels(self, image: Image.Image) -> np.ndarray:
        """Downsample (aspect preserved, never enlarged) into the sample box; (N, 4) RGBA."""
        sample = image.convert("RGBA")
        sample.thumbnail((self.sample_size, self.sample_size), Image.BILINEAR)
        return np.asarray(sample, dtype=np.uint8).reshape(-1, 4)

    def quantize(self, pixels: np.ndarray, k: int) -> KMeansResult:
        k = max(1, int(k))
        rgb = pixels[:, :3].astype(np.int64)
        opaque = pixels[:, 3] >= self.alpha_threshold

        centroids = self._seed(rgb, opaque, k)
        labels = np.full(len(rgb), EXCLUDED, dtype=np.int64)
        iterations = 0
        converged = False
        for iterations in range(1, self.max_iterations + 1):
            labels = self._assign(rgb, opaque, centroids)
            updated = self._update(rgb, labels, centroids)
            if np.array_equal(updated, centroids):
                converged = True
                break
            centroids = updated
        if not converged:
            # Labels must describe the final centroids; equal centroids then
            # collapse onto the lowest index and the others come out empty.
            labels = self._assign(rgb, opaque, centroids)

        assigned = labels[labels != EXCLUDED]
        counts = np.bincount(assigned, minlength=len(centroids))
        logger.debug(
            "kmeans k=%d samples=%d opaque=%d iterations=%d",
            k,
            len(rgb),
            int(opaque.sum()),
            iterations,
        )
        return KMeansResult(centroids=centroids, counts=counts, labels=labels, iterations=iterations)

    def _seed(self, rgb: np.ndarray, opaque: np.ndarray, k: int) -> np.ndarray:
        candidates = np.flatnonzero(opaque)
        if candidates.size == 0:
            return np.array([_WHITE], dtype=np.int64)
        chosen = self.rng.choice(candidates, size=min(k, candidates.size), replace=False)
        seeds = [rgb[i] for i in chosen]
        while len(seeds) < k:
            seeds.append(seeds[-1])
        return np.array(seeds, dtype=np.int64)

    @staticmethod
    def _assign(rgb: np.ndarray, opaque: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        labels = np.full(len(rgb), EXCLUDED, dtype=np.int64)
        if not opaque.any():
            return labels
        diff = rgb[opaque][:, None, :] - centroids[None, :, :]
        distances = (diff * diff).sum(axis=2)
        # argmin keeps the first minimum: ties go to the lowest centroid index.
        labels[opaque] = np.argmin(distances, axis=1)
        return labels

    @staticmethod
    def _update(rgb: np.ndarray, labels: np.ndarray, centroids: np.ndarray) -> np.ndarray:
        k = len(centroids)
        mask = labels != EXCLUDED
        assigned = labels[mask]
        counts = np.bincount(assigned, minlength=k)
        updated = centroids.copy()
        populated = counts > 0
        if not populated.any():
            return updated
        for channel in range(3):
            sums = np.bincount(assigned, weights=rgb[mask, channel], minlength=k)
            means = sums[populated] / counts[populated]
            updated[populated, channel] = _round_half_up(means)
        return updated
