"""Tests for tile stitching.

Tests cover:
- Coordinate scaling
- Order independence of the assembled output
- Clamping when the model output is short
"""

import random

import numpy as np
import pytest

from conftest import make_gradient, upscale_nearest


def _tile_outputs(image, layout, factor):
    from upscale_server.utils.raster import Raster, extract_region

    outputs = []
    for region in layout:
        crop = region.crop
        tile = extract_region(image, crop.left, crop.top, crop.width, crop.height)
        data = upscale_nearest(tile, factor)
        outputs.append((region, Raster(tile.width * factor, tile.height * factor, 4, data)))
    return outputs


class TestScaleCoordinate:
    """Test source to output coordinate mapping."""

    @pytest.mark.parametrize("value,scale,expected", [
        (0, 2, 0),
        (64, 2, 128),
        (130, 4, 520),
        (3, 1.5, 5),   # 4.5 rounds up
        (5, 1.5, 8),   # 7.5 rounds up
        (7, 0.5, 4),
    ])
    def test_round_half_up(self, value, scale, expected):
        from upscale_server.services.stitcher import scale_coordinate

        assert scale_coordinate(value, scale) == expected


class TestTileStitcher:
    """Test assembling tile outputs into one buffer."""

    def test_matches_whole_image_upscale(self):
        from upscale_server.services.stitcher import TileStitcher
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        image = make_gradient(130, 90)
        layout = TileLayoutPlanner().plan(130, 90, TileConfig(size=64, overlap=8))
        dest = np.zeros((180, 260, 4), dtype=np.uint8)

        stitcher = TileStitcher()
        for region, output in _tile_outputs(image, layout, 2):
            stitcher.blit(dest, output, region, 2)

        np.testing.assert_array_equal(dest, upscale_nearest(image, 2))

    def test_order_does_not_matter(self):
        """Shuffled and reversed tile order produce byte-identical output."""
        from upscale_server.services.stitcher import TileStitcher
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        image = make_gradient(200, 150)
        layout = TileLayoutPlanner().plan(200, 150, TileConfig(size=64, overlap=20))
        outputs = _tile_outputs(image, layout, 3)
        stitcher = TileStitcher()

        def assemble(ordered):
            dest = np.zeros((450, 600, 4), dtype=np.uint8)
            for region, output in ordered:
                stitcher.blit(dest, output, region, 3)
            return dest

        forward = assemble(outputs)
        backward = assemble(list(reversed(outputs)))
        shuffled_outputs = list(outputs)
        random.Random(7).shuffle(shuffled_outputs)
        shuffled = assemble(shuffled_outputs)

        np.testing.assert_array_equal(forward, backward)
        np.testing.assert_array_equal(forward, shuffled)
        np.testing.assert_array_equal(forward, upscale_nearest(image, 3))

    def test_short_output_is_clamped(self):
        """A model output smaller than expected is copied without error."""
        from upscale_server.services.stitcher import TileStitcher
        from upscale_server.services.tile_layout import Rect, TileRegion
        from upscale_server.utils.raster import Raster

        region = TileRegion(row=0, column=1, core=Rect(64, 0, 128, 64),
                            crop=Rect(56, 0, 128, 72))
        short = Raster(100, 100, 4, np.full((100, 100, 4), 9, dtype=np.uint8))
        dest = np.zeros((144, 256, 4), dtype=np.uint8)

        TileStitcher().blit(dest, short, region, 2)

        # 16 output pixels of overlap are trimmed on each cropped side
        assert (dest[:84, 128:212] == 9).all()
        assert (dest[84:] == 0).all()
        assert (dest[:, 212:] == 0).all()
        assert (dest[:, :128] == 0).all()
