"""Inference dispatch over tiles (or the whole image).

Two policies are fixed here and applied on purpose:

- When a pipeline returns several candidate outputs, the first one is used.
- When the caller gives no scale, the first tile's output width divided by
  its crop width (rounded, at least 1) is the scale for every tile and for
  the output buffer. Tiles are never re-measured, so per-tile scale
  differences are not supported.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

import numpy as np

from .pipeline_cache import PipelineHandle
from .stitcher import TileStitcher, scale_coordinate
from .tile_layout import TileConfig, TileLayoutPlanner
from ..config import DEFAULT_MAX_OUTPUT_PIXELS
from ..errors import OutputAllocationError, TileInferenceError
from ..utils.raster import RGBA_CHANNELS, Raster, extract_region, to_rgba

logger = logging.getLogger(__name__)

# (tile index, total tiles)
TileProgressCallback = Callable[[int, int], None]


@dataclass
class DispatchResult:
    """Assembled output of one run."""
    output: Raster
    scale: float
    tiles: int


def pick_output(result: Union[Raster, List[Raster], None]) -> Raster:
    """Return the canonical output of a pipeline call (the first candidate)."""
    if isinstance(result, (list, tuple)):
        output = result[0] if result else None
    else:
        output = result
    if output is None:
        raise TileInferenceError("No output was produced.")
    return output


def resolve_scale(scale: Optional[float]) -> Optional[float]:
    """Return the caller's scale if it is a positive finite number, else None."""
    if scale is None or isinstance(scale, bool):
        return None
    try:
        value = float(scale)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def derive_scale(output_width: int, crop_width: int) -> int:
    """Scale implied by one tile: output/crop width, rounded, at least 1."""
    if crop_width <= 0:
        raise OutputAllocationError("Cannot derive scale from an empty tile.")
    return max(1, int(math.floor(output_width / crop_width + 0.5)))


class InferenceDispatcher:
    """Feeds an image through a pipeline and assembles the upscaled result."""

    def __init__(
        self,
        planner: Optional[TileLayoutPlanner] = None,
        stitcher: Optional[TileStitcher] = None,
        max_output_pixels: int = DEFAULT_MAX_OUTPUT_PIXELS,
    ):
        self.planner = planner or TileLayoutPlanner()
        self.stitcher = stitcher or TileStitcher()
        self.max_output_pixels = max_output_pixels

    async def run(
        self,
        pipeline: PipelineHandle,
        image: Raster,
        scale: Optional[float] = None,
        tile: Optional[TileConfig] = None,
        on_tile_progress: Optional[TileProgressCallback] = None,
    ) -> DispatchResult:
        """Upscale ``image``, tiled when ``tile`` is given.

        Args:
            pipeline: Loaded pipeline handle
            image: RGBA input raster
            scale: Caller-supplied output scale (tiled path only)
            tile: Tile configuration; None runs the whole image at once
            on_tile_progress: Called after each tile is stitched

        Returns:
            DispatchResult with the assembled RGBA output

        Raises:
            TileInferenceError: Any inference call failed; no partial output
            OutputAllocationError: The output buffer could not be sized
        """
        start = time.time()
        if tile is None:
            result = await self._run_whole(pipeline, image)
        else:
            result = await self._run_tiled(pipeline, image, scale, tile, on_tile_progress)
        logger.info(
            "Upscaled %dx%d -> %dx%d (%d tiles, scale %g) in %.2fs",
            image.width, image.height, result.output.width, result.output.height,
            result.tiles, result.scale, time.time() - start,
        )
        return result

    async def _infer(self, pipeline: PipelineHandle, raster: Raster, label: str) -> Raster:
        try:
            result = await pipeline.run(raster)
        except TileInferenceError:
            raise
        except Exception as e:
            raise TileInferenceError("Inference failed on %s: %s" % (label, e)) from e
        return to_rgba(pick_output(result))

    async def _run_whole(self, pipeline: PipelineHandle, image: Raster) -> DispatchResult:
        output = await self._infer(pipeline, image, "image")
        scale = output.width / image.width if image.width else 1.0
        return DispatchResult(output=output, scale=scale, tiles=1)

    async def _run_tiled(
        self,
        pipeline: PipelineHandle,
        image: Raster,
        scale: Optional[float],
        tile: TileConfig,
        on_tile_progress: Optional[TileProgressCallback],
    ) -> DispatchResult:
        layout = self.planner.plan(image.width, image.height, tile)
        total = len(layout)

        scale = resolve_scale(scale)
        output: Optional[np.ndarray] = None
        if scale is not None:
            output = self.allocate(image.width, image.height, scale)

        for index, region in enumerate(layout):
            crop = region.crop
            tile_input = extract_region(image, crop.left, crop.top, crop.width, crop.height)
            tile_output = await self._infer(
                pipeline, tile_input, "tile %d/%d" % (index + 1, total)
            )

            if scale is None:
                scale = derive_scale(tile_output.width, crop.width)
                logger.debug("Derived scale %d from first tile", scale)
                output = self.allocate(image.width, image.height, scale)

            if output is None:
                raise OutputAllocationError("Output buffer could not be allocated.")

            self.stitcher.blit(output, tile_output, region, scale)
            logger.debug("Stitched tile %d/%d (row %d, column %d)",
                         index + 1, total, region.row, region.column)
            if on_tile_progress is not None:
                on_tile_progress(index, total)

        if output is None or scale is None:
            raise OutputAllocationError("No output was produced.")

        height, width = output.shape[0], output.shape[1]
        return DispatchResult(
            output=Raster(width, height, RGBA_CHANNELS, output),
            scale=scale,
            tiles=total,
        )

    def allocate(self, width: int, height: int, scale: float) -> np.ndarray:
        """Allocate the zeroed RGBA output buffer for ``width x height`` at ``scale``."""
        out_width = scale_coordinate(width, scale)
        out_height = scale_coordinate(height, scale)
        if out_width <= 0 or out_height <= 0:
            raise OutputAllocationError(
                "Output size %dx%d is invalid (scale %g)" % (out_width, out_height, scale)
            )
        if out_width * out_height > self.max_output_pixels:
            raise OutputAllocationError(
                "Output size %dx%d exceeds the limit of %d pixels"
                % (out_width, out_height, self.max_output_pixels)
            )
        try:
            return np.zeros((out_height, out_width, RGBA_CHANNELS), dtype=np.uint8)
        except MemoryError as e:
            raise OutputAllocationError(
                "Could not allocate %dx%d output buffer" % (out_width, out_height)
            ) from e


__all__ = ["InferenceDispatcher", "DispatchResult", "pick_output", "resolve_scale", "derive_scale"]
