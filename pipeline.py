"""
Accumulation and final compositing.

Feeds projected activities into a heatmap in chronological order, optionally
emitting progress frames along the way, and composites the finished heatmap
over the basemap.
"""

import logging
from typing import Callable, Iterable, Optional

from PIL import Image

from activities.models import ScreenActivity
from basemap import composite, create_tint
from heatmap import Heatmap

logger = logging.getLogger(__name__)

FrameCallback = Callable[[Image.Image], None]


def accumulate(
    heatmap: Heatmap,
    activities: Iterable[ScreenActivity],
    frame_rate: Optional[int] = None,
    on_frame: Optional[FrameCallback] = None,
    progress_callback: Optional[Callable[[], None]] = None,
) -> int:
    """
    Add every screen point of every activity to the heatmap.

    Activities are processed oldest first (stable for equal dates). When
    `on_frame` is given, a frame is rendered with the activity's title/date
    overlay after every `frame_rate` points of the current activity; the
    point counter restarts for each activity.

    Args:
        heatmap: Grid to accumulate into
        activities: Projected activities
        frame_rate: Points between progress frames (>= 1)
        on_frame: Receives each rendered frame
        progress_callback: Optional callable invoked once per activity

    Returns:
        Total number of points added
    """
    if on_frame is not None and (frame_rate is None or frame_rate < 1):
        raise ValueError(f"frame_rate must be >= 1 when emitting frames, got {frame_rate}")

    total = 0
    frames = 0
    for activity in sorted(activities, key=lambda a: a.date):
        for i, cell in enumerate(activity.track_points, start=1):
            heatmap.add_point(cell)
            if on_frame is not None and i % frame_rate == 0:
                on_frame(heatmap.render_with_overlay(activity.name, activity.date))
                frames += 1
        total += len(activity.track_points)
        if progress_callback:
            progress_callback()

    logger.debug(f"Accumulated {total} points, max value {heatmap.max_value}, {frames} frames")
    return total


def render_final(heatmap: Heatmap, basemap_image: Image.Image, tint: float) -> Image.Image:
    """
    Composite basemap, darkening tint and heatmap, in that order.

    Args:
        heatmap: Accumulated grid
        basemap_image: Assembled tile mosaic, same size as the viewport
        tint: Black overlay opacity in [0, 1]
    """
    if basemap_image.size != heatmap.map.pixel_size():
        raise ValueError(
            f"Basemap size {basemap_image.size} does not match viewport {heatmap.map.pixel_size()}"
        )
    return composite(basemap_image, create_tint(heatmap.map, tint), heatmap.render())
