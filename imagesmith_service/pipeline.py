"""
Request orchestration for the two user-facing operations.

`ResizePipeline.process` is the resize entry point used by the HTTP API and
the local test script:
source key -> blob store -> (optional remote background removal) -> decode
-> output policy -> resample -> encode -> blob store + signed URL.

`PalettePipeline.extract` reads the uploaded source as-is (it never sees
background-removed pixels), clusters it into a palette and stores two
artifacts: the palette JSON and a swatch PNG.

Each request is handled sequentially and shares no mutable state with
other requests; the blob store is the only shared resource.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import re
import threading
from typing import Any, List, Optional

from . import codec
from .config import Settings
from .errors import ConfigError, DecodeError, InvalidRequestError
from .output_policy import MAX_PX, build_output_key, clamp_dimension, parse_fit, resolve_output_policy
from .palette import PaletteEngine
from .remote_job import BackgroundRemovalClient
from .storage import BlobStore
from .swatch import render_swatch

logger = logging.getLogger(__name__)

MAX_PALETTE_SIZE = 16


@dataclass(frozen=True)
class ResizeRequest:
    source_key: str
    width: int
    height: int
    fit: str = "contain"
    remove_background: bool = False
    allow_upscale: bool = False

    @classmethod
    def create(
        cls,
        source_key: Optional[str],
        width: Any,
        height: Any,
        fit: Optional[str] = None,
        remove_background: bool = False,
        allow_upscale: bool = False,
        max_px: int = MAX_PX,
    ) -> "ResizeRequest":
        """Validate the key and fit, and clamp the box into [1, max_px]."""
        if not source_key or not str(source_key).strip():
            raise InvalidRequestError("Missing required field: key")
        return cls(
            source_key=str(source_key).strip(),
            width=clamp_dimension(width, max_px),
            height=clamp_dimension(height, max_px),
            fit=parse_fit(fit),
            remove_background=bool(remove_background),
            allow_upscale=bool(allow_upscale),
        )


@dataclass
class ResizeResult:
    key: str
    url: str
    width: int
    height: int
    fit: str
    format: str
    data: bytes


@dataclass
class PaletteResult:
    colors: List[str]
    swatch_key: str
    json_key: str
    preview_url: str


class ResizePipeline:
    def __init__(
        self,
        settings: Settings,
        store: BlobStore,
        remover: Optional[BackgroundRemovalClient] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.remover = remover

    def process(self, request: ResizeRequest, cancel_event: Optional[threading.Event] = None) -> ResizeResult:
        source = self.store.get(request.source_key)
        working = source
        if request.remove_background:
            if self.remover is None:
                raise ConfigError("Background removal is not configured")
            working = self.remover.remove_background(source, cancel_event=cancel_event)

        image = codec.decode(working)
        meta = codec.metadata(image)
        policy = resolve_output_policy(meta.has_alpha, request.remove_background, request.fit)

        resized = codec.resample(
            image,
            codec.ResampleSpec(
                width=request.width,
                height=request.height,
                fit=request.fit,
                position="attention",
                allow_upscale=request.allow_upscale,
                background=policy.background,
            ),
        )
        data = codec.encode(resized, policy.format, quality=self.settings.jpeg_quality)

        key = build_output_key(
            self.settings.output_prefix,
            request.source_key,
            resized.width,
            resized.height,
            request.fit,
            policy.extension,
        )
        self.store.put(key, data, policy.content_type, cache_control=self.settings.output_cache_control)
        url = self.store.signed_url(key, self.settings.resize_url_ttl_seconds)
        logger.info(
            "resized %s -> %s (%s, %dx%d, alpha=%s, bg_removed=%s)",
            request.source_key,
            key,
            policy.format,
            resized.width,
            resized.height,
            meta.has_alpha,
            request.remove_background,
        )
        return ResizeResult(
            key=key,
            url=url,
            width=resized.width,
            height=resized.height,
            fit=request.fit,
            format=policy.format,
            data=data,
        )


_ANY_EXT_RE = re.compile(r"\.[^./]+$")


def palette_stem(key: str) -> str:
    last = key.rstrip("/").split("/")[-1]
    return _ANY_EXT_RE.sub("", last) or "image"


def clamp_palette_size(k: Optional[int], default: int) -> int:
    if k is None:
        return default
    return max(1, min(int(k), MAX_PALETTE_SIZE))


class PalettePipeline:
    def __init__(self, settings: Settings, store: BlobStore, engine: Optional[PaletteEngine] = None) -> None:
        self.settings = settings
        self.store = store
        self.engine = engine or PaletteEngine.from_settings(settings)

    def extract(self, key: Optional[str], k: Optional[int] = None) -> PaletteResult:
        if not key or not str(key).strip():
            raise InvalidRequestError("Provide { key: '<object key>' }")
        key = str(key).strip()
        size = clamp_palette_size(k, self.settings.palette_size)

        data = self.store.get(key)
        if not data:
            raise DecodeError(f"Empty file: {key}")
        try:
            colors = self.engine.extract(data, size)
        except DecodeError as exc:
            raise DecodeError(f"Failed to decode image {key}: {exc.message}") from exc

        stem = palette_stem(key)
        json_key = f"{self.settings.palette_prefix}{stem}.json"
        swatch_key = f"{self.settings.palette_prefix}{stem}-palette.png"

        self.store.put(json_key, json.dumps({"key": key, "colors": colors}, indent=2).encode("utf-8"), "application/json")
        swatch = render_swatch(colors, self.settings.swatch_width, self.settings.swatch_height)
        self.store.put(swatch_key, swatch, "image/png")
        preview_url = self.store.signed_url(swatch_key, self.settings.signed_url_ttl_seconds)

        logger.info("palette for %s: %s -> %s", key, ",".join(colors), swatch_key)
        return PaletteResult(colors=colors, swatch_key=swatch_key, json_key=json_key, preview_url=preview_url)
