"""
Tests for chronological accumulation and final compositing.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image

from activities import Activity, ScreenActivity, project_activity
from heatmap import GridBoundsError, PixelHeatmap
from pipeline import accumulate, render_final

T1 = datetime(2020, 1, 1, tzinfo=timezone.utc)
T2 = T1 + timedelta(days=1)


class CellLookup:
    """Projection stub mapping a point's longitude to a predefined cell."""

    def __init__(self, cells):
        self.cells = cells

    def __call__(self, lon, lat):
        return self.cells.get(lon)


def screen(name, date, cells):
    return ScreenActivity(name=name, date=date, track_points=cells)


# ============================================================================
# Accumulation
# ============================================================================

class TestAccumulate:
    """Tests for feeding activities into the grid."""

    def test_two_activities_end_to_end(self, small_map, render_style):
        """Repeats within one activity count once; activities add up."""
        projection = CellLookup({1.0: (5, 5), 2.0: (6, 6)})
        a = Activity(name="A", date=T1, track_points=[(1.0, 0.0), (1.0, 0.0), (2.0, 0.0)])
        b = Activity(name="B", date=T2, track_points=[(1.0, 0.0)])
        heatmap = PixelHeatmap(small_map, render_style)

        added = accumulate(heatmap, [project_activity(b, projection), project_activity(a, projection)])

        assert added == 3
        assert heatmap.counts[5, 5] == 2
        assert heatmap.counts[6, 6] == 1
        assert heatmap.max_value == 2
        assert heatmap.counts.sum() == 3

    def test_chronological_order(self, small_map, render_style):
        """Frames show the older activity first, whatever the input order."""
        heatmap = PixelHeatmap(small_map, render_style)
        titles = []

        with patch.object(heatmap, "render_with_overlay", wraps=heatmap.render_with_overlay) as spy:
            accumulate(
                heatmap,
                [screen("new", T2, [(1, 1)]), screen("old", T1, [(2, 2)])],
                frame_rate=1,
                on_frame=lambda frame: None,
            )
            titles = [call.args[0] for call in spy.call_args_list]

        assert titles == ["old", "new"]

    def test_equal_dates_keep_input_order(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        with patch.object(heatmap, "render_with_overlay", wraps=heatmap.render_with_overlay) as spy:
            accumulate(
                heatmap,
                [screen("first", T1, [(1, 1)]), screen("second", T1, [(2, 2)])],
                frame_rate=1,
                on_frame=lambda frame: None,
            )
            assert [call.args for call in spy.call_args_list] == [("first", T1), ("second", T1)]

    def test_frame_cadence_restarts_per_activity(self, small_map, render_style):
        """A frame every frame_rate points of the current activity."""
        heatmap = PixelHeatmap(small_map, render_style)
        frames = []

        accumulate(
            heatmap,
            [
                screen("five", T1, [(x, 0) for x in range(5)]),
                screen("three", T2, [(x, 1) for x in range(3)]),
            ],
            frame_rate=2,
            on_frame=frames.append,
        )

        assert len(frames) == 3
        assert all(f.size == small_map.pixel_size() for f in frames)

    def test_frame_reflects_points_so_far(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        frames = []
        accumulate(heatmap, [screen("a", T1, [(0, 0), (1, 0), (2, 0)])], frame_rate=2, on_frame=frames.append)

        alpha = frames[0].getchannel("A")
        assert alpha.getpixel((0, 0)) > 0
        assert alpha.getpixel((1, 0)) > 0
        assert alpha.getpixel((2, 0)) == 0

    def test_no_frames_without_callback(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        with patch.object(heatmap, "render_with_overlay") as spy:
            accumulate(heatmap, [screen("a", T1, [(0, 0), (1, 0)])], frame_rate=1)
        spy.assert_not_called()

    def test_invalid_frame_rate(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        with pytest.raises(ValueError):
            accumulate(heatmap, [], frame_rate=0, on_frame=lambda frame: None)

    def test_progress_callback_per_activity(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        ticks = []
        accumulate(
            heatmap,
            [screen("a", T1, [(0, 0)]), screen("b", T2, [(1, 1)])],
            progress_callback=lambda: ticks.append(1),
        )
        assert len(ticks) == 2

    def test_bounds_error_propagates(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        with pytest.raises(GridBoundsError):
            accumulate(heatmap, [screen("a", T1, [(500, 500)])])


# ============================================================================
# Final Composite
# ============================================================================

class TestRenderFinal:
    """Tests for basemap + tint + heat compositing."""

    def test_layers(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        heatmap.add_point((3, 3))
        base = Image.new("RGBA", small_map.pixel_size(), (200, 200, 200, 255))

        result = render_final(heatmap, base, 0.5)

        assert result.size == small_map.pixel_size()
        assert result.getpixel((3, 3)) == (255, 64, 64, 255)
        r, g, b, a = result.getpixel((0, 0))
        assert 95 <= r <= 105
        assert a == 255

    def test_no_tint_keeps_basemap(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        base = Image.new("RGBA", small_map.pixel_size(), (200, 200, 200, 255))
        assert render_final(heatmap, base, 0.0).getpixel((10, 10)) == (200, 200, 200, 255)

    def test_size_mismatch(self, small_map, render_style):
        heatmap = PixelHeatmap(small_map, render_style)
        with pytest.raises(ValueError, match="does not match"):
            render_final(heatmap, Image.new("RGBA", (10, 10)), 0.8)
