"""Stitching of per-tile inference output into one output buffer.

Each tile output covers the tile's crop rectangle at output scale. Only the
scaled core rectangle is copied, so every output pixel has exactly one
contributor and the result does not depend on the order tiles arrive in.
"""
import logging
import math

import numpy as np

from .tile_layout import TileRegion
from ..utils.raster import Raster

logger = logging.getLogger(__name__)


def scale_coordinate(value: int, scale: float) -> int:
    """Map a source-pixel coordinate to output pixels (round half up)."""
    return int(math.floor(value * scale + 0.5))


class TileStitcher:
    """Copies trimmed tile outputs into a shared destination buffer."""

    def blit(
        self,
        dest: np.ndarray,
        tile_output: Raster,
        region: TileRegion,
        scale: float,
    ) -> None:
        """Copy the scaled core of ``tile_output`` into ``dest``.

        Args:
            dest: Output buffer shaped (dest_height, dest_width, 4)
            tile_output: RGBA inference output for ``region.crop``
            region: Tile region the output was produced from
            scale: Output pixels per source pixel
        """
        dest_height, dest_width = dest.shape[0], dest.shape[1]
        core, crop = region.core, region.crop

        trim_left = scale_coordinate(core.left, scale) - scale_coordinate(crop.left, scale)
        trim_top = scale_coordinate(core.top, scale) - scale_coordinate(crop.top, scale)
        trim_right = scale_coordinate(crop.right, scale) - scale_coordinate(core.right, scale)
        trim_bottom = scale_coordinate(crop.bottom, scale) - scale_coordinate(core.bottom, scale)

        dest_x = scale_coordinate(core.left, scale)
        dest_y = scale_coordinate(core.top, scale)
        core_width = scale_coordinate(core.right, scale) - dest_x
        core_height = scale_coordinate(core.bottom, scale) - dest_y

        # Clamp against rounding in the model output and the destination edge
        copy_width = min(
            tile_output.width - trim_left - trim_right,
            tile_output.width - trim_left,
            core_width,
            dest_width - dest_x,
        )
        copy_height = min(
            tile_output.height - trim_top - trim_bottom,
            tile_output.height - trim_top,
            core_height,
            dest_height - dest_y,
        )
        if copy_width <= 0 or copy_height <= 0:
            logger.debug(
                "Nothing to copy for tile (%d, %d): %dx%d",
                region.row, region.column, copy_width, copy_height,
            )
            return

        dest[dest_y:dest_y + copy_height, dest_x:dest_x + copy_width] = (
            tile_output.data[trim_top:trim_top + copy_height,
                             trim_left:trim_left + copy_width, :dest.shape[2]]
        )


__all__ = ["TileStitcher", "scale_coordinate"]
