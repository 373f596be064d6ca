"""Tile layout planning for tiled upscaling.

The image is cut into a grid of ``size x size`` core rectangles (the last
row and column are shrunk to the image boundary, never padded). Each core is
expanded by ``overlap`` pixels on every side, clamped to the image, to form
the crop rectangle that is actually sent through the model. Cores tile the
image exactly: no gaps and no overlaps.
"""
import logging
import math
from dataclasses import dataclass
from typing import Iterator, List, Tuple

from ..utils.raster import round_half_up

logger = logging.getLogger(__name__)

MIN_TILE_SIZE = 64


@dataclass(frozen=True)
class Rect:
    """Half-open rectangle ``[left, right) x [top, bottom)`` in pixels."""
    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    def contains(self, other: "Rect") -> bool:
        return (self.left <= other.left and self.top <= other.top
                and other.right <= self.right and other.bottom <= self.bottom)

    def expand(self, margin: int, width: int, height: int) -> "Rect":
        """Grow by ``margin`` on every side, clamped to ``[0,width) x [0,height)``."""
        return Rect(
            max(0, self.left - margin),
            max(0, self.top - margin),
            min(width, self.right + margin),
            min(height, self.bottom + margin),
        )


@dataclass(frozen=True)
class TileConfig:
    """Requested tile size and overlap, in source pixels."""
    size: int
    overlap: int = 0

    def normalized(self) -> "TileConfig":
        """Clamp to ``size >= 64`` and ``0 <= overlap <= size // 2``."""
        size = max(MIN_TILE_SIZE, round_half_up(self.size))
        overlap = max(0, min(round_half_up(self.overlap), size // 2))
        return TileConfig(size=size, overlap=overlap)


@dataclass(frozen=True)
class TileRegion:
    """One planned tile.

    ``core`` is the rectangle this tile is responsible for in the output;
    ``crop`` is the core plus overlap context, fed to inference.
    """
    row: int
    column: int
    core: Rect
    crop: Rect

    @property
    def trim(self) -> Tuple[int, int, int, int]:
        """Source-pixel margins (left, top, right, bottom) of crop around core."""
        return (
            self.core.left - self.crop.left,
            self.core.top - self.crop.top,
            self.crop.right - self.core.right,
            self.crop.bottom - self.core.bottom,
        )


@dataclass(frozen=True)
class TileLayout:
    """Planned grid; ``tiles`` are ordered row-major, left to right."""
    tiles: List[TileRegion]
    rows: int
    columns: int
    config: TileConfig

    def __len__(self) -> int:
        return len(self.tiles)

    def __iter__(self) -> Iterator[TileRegion]:
        return iter(self.tiles)


class TileLayoutPlanner:
    """Computes overlapping tile regions covering an image."""

    def plan(self, width: int, height: int, config: TileConfig) -> TileLayout:
        """Plan the tile grid for an image.

        Args:
            width: Image width in pixels (> 0)
            height: Image height in pixels (> 0)
            config: Requested tile configuration (normalized here)

        Returns:
            TileLayout with ``ceil(height/size)`` rows and
            ``ceil(width/size)`` columns
        """
        if width <= 0 or height <= 0:
            raise ValueError("Image dimensions must be positive, got %dx%d" % (width, height))

        config = config.normalized()
        size, overlap = config.size, config.overlap
        columns = max(1, math.ceil(width / size))
        rows = max(1, math.ceil(height / size))

        tiles: List[TileRegion] = []
        for row in range(rows):
            top = row * size
            bottom = min(top + size, height)
            for column in range(columns):
                left = column * size
                right = min(left + size, width)
                core = Rect(left, top, right, bottom)
                tiles.append(TileRegion(
                    row=row,
                    column=column,
                    core=core,
                    crop=core.expand(overlap, width, height),
                ))

        logger.debug(
            "Planned %d tiles (%d rows x %d columns, size=%d, overlap=%d) for %dx%d image",
            len(tiles), rows, columns, size, overlap, width, height,
        )
        return TileLayout(tiles=tiles, rows=rows, columns=columns, config=config)


__all__ = ["Rect", "TileConfig", "TileRegion", "TileLayout", "TileLayoutPlanner", "MIN_TILE_SIZE"]
