"""Raster buffers and pixel helpers shared by the dispatcher and stitcher.

A raster is a row-major ``uint8`` buffer of ``height x width x channels``
(stride = width * channels). Inputs to the worker are always RGBA; pipeline
outputs may carry fewer channels and are promoted with :func:`to_rgba`.

Callers that hold PIL images (files, HTTP uploads) build run inputs with
:func:`raster_from_pil` and turn results back into images with
:func:`raster_to_pil`.
"""
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

RGBA_CHANNELS = 4


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves rounded up (4.5 -> 5, 12.5 -> 13)."""
    return int(math.floor(value + 0.5))


@dataclass
class Raster:
    """An image buffer with explicit dimensions.

    ``data`` is an ndarray shaped ``(height, width, channels)``. Flat buffers
    are reshaped on construction; a size mismatch raises ``ValueError``.
    """
    width: int
    height: int
    channels: int
    data: np.ndarray

    def __post_init__(self):
        if self.width < 0 or self.height < 0 or self.channels <= 0:
            raise ValueError(
                "Invalid raster shape: %dx%dx%d" % (self.width, self.height, self.channels)
            )
        expected = self.width * self.height * self.channels
        if self.data.size != expected:
            raise ValueError(
                "Raster buffer size mismatch: expected %d values "
                "(%d x %d x %d) but got %d"
                % (expected, self.width, self.height, self.channels, self.data.size)
            )
        if self.data.shape != (self.height, self.width, self.channels):
            self.data = self.data.reshape(self.height, self.width, self.channels)

    @classmethod
    def from_bytes(cls, data: bytes, width: int, height: int, channels: int = RGBA_CHANNELS) -> "Raster":
        """Wrap a raw byte buffer without copying it."""
        return cls(width, height, channels, np.frombuffer(data, dtype=np.uint8))

    @property
    def stride(self) -> int:
        return self.width * self.channels

    def to_bytes(self) -> bytes:
        return np.ascontiguousarray(self.data, dtype=np.uint8).tobytes()


def extract_region(source: Raster, left: int, top: int, width: int, height: int) -> Raster:
    """Copy a rectangle out of ``source`` into a standalone contiguous raster.

    Args:
        source: Raster to read from
        left: Left edge of the rectangle in source pixels
        top: Top edge of the rectangle in source pixels
        width: Rectangle width
        height: Rectangle height

    Returns:
        New raster owning a copy of the pixels
    """
    if (left < 0 or top < 0 or width <= 0 or height <= 0
            or left + width > source.width or top + height > source.height):
        raise ValueError(
            "Region (%d, %d, %d x %d) is outside a %d x %d raster"
            % (left, top, width, height, source.width, source.height)
        )
    region = np.ascontiguousarray(source.data[top:top + height, left:left + width])
    return Raster(width, height, source.channels, region)


def _as_uint8(data: np.ndarray) -> np.ndarray:
    if data.dtype == np.uint8:
        return data
    if np.issubdtype(data.dtype, np.floating):
        return np.clip(np.rint(data * 255.0), 0, 255).astype(np.uint8)
    return np.clip(data, 0, 255).astype(np.uint8)


def to_rgba(raster: Raster) -> Raster:
    """Promote a raster to 4-channel RGBA.

    Missing color channels replicate the first channel and alpha is forced
    fully opaque. Rasters with more than four channels keep their first
    three channels. Four-channel uint8 rasters are returned as-is.
    """
    data = _as_uint8(raster.data)
    if raster.channels == RGBA_CHANNELS:
        if data is raster.data:
            return raster
        return Raster(raster.width, raster.height, RGBA_CHANNELS, data)

    logger.debug("Promoting %d-channel raster to RGBA", raster.channels)
    rgba = np.empty((raster.height, raster.width, RGBA_CHANNELS), dtype=np.uint8)
    red = data[..., 0]
    rgba[..., 0] = red
    rgba[..., 1] = data[..., 1] if raster.channels > 1 else red
    rgba[..., 2] = data[..., 2] if raster.channels > 2 else red
    rgba[..., 3] = 255
    return Raster(raster.width, raster.height, RGBA_CHANNELS, rgba)


def raster_from_pil(image: Image.Image) -> Raster:
    """Convert a PIL image to an RGBA raster."""
    rgba = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    return Raster(image.width, image.height, RGBA_CHANNELS, rgba.copy())


def raster_to_pil(raster: Raster) -> Image.Image:
    """Convert a raster to a PIL image (RGBA, RGB or L)."""
    rgba = to_rgba(raster) if raster.channels not in (1, 3, 4) else raster
    data = np.ascontiguousarray(rgba.data)
    if rgba.channels == 1:
        return Image.fromarray(data[..., 0])
    return Image.fromarray(data)


def normalize_progress(event: Dict[str, Any]) -> Optional[int]:
    """Normalize a model loading progress event to a percentage.

    A ``progress`` value of at most 1 is treated as a fraction, larger values
    as a percentage. Otherwise ``loaded``/``total`` is used when both are
    present. Returns None when no progress can be derived.
    """
    progress = event.get("progress")
    if isinstance(progress, (int, float)) and not isinstance(progress, bool):
        value = progress * 100 if progress <= 1 else progress
    else:
        loaded = event.get("loaded")
        total = event.get("total")
        if not isinstance(loaded, (int, float)) or not isinstance(total, (int, float)) or total <= 0:
            return None
        value = loaded / total * 100
    return min(100, max(0, round_half_up(value)))


__all__ = [
    "RGBA_CHANNELS",
    "Raster",
    "extract_region",
    "to_rgba",
    "raster_from_pil",
    "raster_to_pil",
    "normalize_progress",
    "round_half_up",
]
