"""Tests for tile layout planning.

Tests cover:
- Tile configuration clamping
- Grid shape and row-major ordering
- Core coverage (no gaps, no overlaps) and crop containment
- Edge tiles shrinking to the image boundary
"""

import pytest


class TestTileConfig:
    """Test tile configuration normalization."""

    def test_small_size_clamped_to_minimum(self):
        from upscale_server.services.tile_layout import TileConfig

        config = TileConfig(size=10, overlap=2).normalized()
        assert config.size == 64
        assert config.overlap == 2

    def test_overlap_clamped_to_half_size(self):
        from upscale_server.services.tile_layout import TileConfig

        config = TileConfig(size=100, overlap=80).normalized()
        assert config.size == 100
        assert config.overlap == 50

    def test_negative_overlap_clamped_to_zero(self):
        from upscale_server.services.tile_layout import TileConfig

        assert TileConfig(size=128, overlap=-4).normalized().overlap == 0

    def test_fractional_values_rounded(self):
        from upscale_server.services.tile_layout import TileConfig

        config = TileConfig(size=100.5, overlap=7.5).normalized()
        assert config.size == 101
        assert config.overlap == 8


class TestTileLayoutPlanner:
    """Test tile grid planning."""

    def test_reference_grid(self):
        """130x90 with size 64 and overlap 8 gives 2 rows of 3 tiles."""
        from upscale_server.services.tile_layout import Rect, TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(130, 90, TileConfig(size=64, overlap=8))

        assert layout.rows == 2
        assert layout.columns == 3
        assert len(layout) == 6

        first = layout.tiles[0]
        assert first.core == Rect(0, 0, 64, 64)
        assert first.crop == Rect(0, 0, 72, 72)

        last_in_row = layout.tiles[2]
        assert (last_in_row.row, last_in_row.column) == (0, 2)
        assert last_in_row.core == Rect(128, 0, 130, 64)
        assert last_in_row.crop == Rect(120, 0, 130, 72)

        bottom_right = layout.tiles[5]
        assert bottom_right.core == Rect(128, 64, 130, 90)
        assert bottom_right.crop == Rect(120, 56, 130, 90)

    def test_row_major_order(self):
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(200, 150, TileConfig(size=64))
        order = [(t.row, t.column) for t in layout]

        assert order == sorted(order)
        assert order[0] == (0, 0)
        assert order[-1] == (layout.rows - 1, layout.columns - 1)

    @pytest.mark.parametrize("width,height,size,overlap", [
        (130, 90, 64, 8),
        (64, 64, 64, 0),
        (65, 63, 64, 32),
        (1, 1, 64, 16),
        (300, 77, 100, 10),
        (513, 257, 128, 64),
    ])
    def test_cores_cover_image_exactly(self, width, height, size, overlap):
        """Every pixel belongs to exactly one core; cores sit inside crops."""
        import numpy as np
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(width, height, TileConfig(size=size, overlap=overlap))
        hits = np.zeros((height, width), dtype=np.int32)

        for tile in layout:
            core, crop = tile.core, tile.crop
            assert core.width > 0 and core.height > 0
            assert crop.contains(core)
            assert crop.left >= 0 and crop.top >= 0
            assert crop.right <= width and crop.bottom <= height
            hits[core.top:core.bottom, core.left:core.right] += 1

        assert (hits == 1).all()

    def test_crop_extends_by_overlap_inside_image(self):
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(300, 300, TileConfig(size=100, overlap=10))
        center = layout.tiles[4]

        assert (center.row, center.column) == (1, 1)
        assert center.trim == (10, 10, 10, 10)

    def test_image_smaller_than_tile(self):
        from upscale_server.services.tile_layout import Rect, TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(40, 30, TileConfig(size=256, overlap=32))

        assert len(layout) == 1
        assert layout.tiles[0].core == Rect(0, 0, 40, 30)
        assert layout.tiles[0].crop == Rect(0, 0, 40, 30)

    def test_layout_keeps_normalized_config(self):
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        layout = TileLayoutPlanner().plan(100, 100, TileConfig(size=8, overlap=100))
        assert layout.config == TileConfig(size=64, overlap=32)

    @pytest.mark.parametrize("width,height", [(0, 10), (10, 0), (-1, 5)])
    def test_empty_image_rejected(self, width, height):
        from upscale_server.services.tile_layout import TileConfig, TileLayoutPlanner

        with pytest.raises(ValueError):
            TileLayoutPlanner().plan(width, height, TileConfig(size=64))
