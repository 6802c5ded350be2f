"""
Heatmap accumulation grids.

A heatmap owns a dense counter array covering the viewport. Projected screen
points are added one at a time (in chronological order, by a single writer),
and the counters are rendered to an RGBA raster through a log-scale color
ramp.

Two resolutions share the same interface:
- PixelHeatmap: one counter per output pixel
- TileHeatmap: one counter per slippy map tile at a fixed zoom level
  (the "squadrat" style grid)

Pick one with create_heatmap() and a HeatmapKind.
"""

import colorsys
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from functools import lru_cache
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from constants import (
    GRADIENT,
    HEAT_ALPHA_MIN,
    HEAT_ALPHA_MAX,
    HEAT_LUT_SIZE,
    OVERLAY_TEXT_X,
    OVERLAY_FONT_DIVISOR,
    OVERLAY_TEXT_COLOR,
    OVERLAY_DATE_FORMAT,
    OVERLAY_FONT_CANDIDATES,
    SQUADRAT_ZOOM,
    SQUADRATINO_ZOOM,
    TILE_SIZE,
)
from slippy import Map

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]


class GridBoundsError(IndexError):
    """A screen cell outside the grid reached add_point().

    Projection filters every point against the grid bounds, so this always
    means a projection/grid mismatch and must not be swallowed.
    """


class HeatmapKind(str, Enum):
    """Heatmap resolution, selected on the command line."""
    PIXEL = "pixel"
    SQUADRAT = "squadrat"
    SQUADRATINO = "squadratino"


# =============================================================================
# Render Style
# =============================================================================

def build_gradient_lut(cold: Tuple[float, float, float],
                       hot: Tuple[float, float, float],
                       size: int = HEAT_LUT_SIZE) -> np.ndarray:
    """Precompute an RGB lookup table for a two-stop HSV gradient.

    Args:
        cold: (hue degrees, saturation, value) at heat 0.0
        hot: (hue degrees, saturation, value) at heat 1.0
        size: Number of entries in the table

    Returns:
        uint8 array of shape (size, 3)
    """
    lut = np.zeros((size, 3), dtype=np.uint8)
    for i, t in enumerate(np.linspace(0.0, 1.0, size)):
        h = cold[0] + (hot[0] - cold[0]) * t
        s = cold[1] + (hot[1] - cold[1]) * t
        v = cold[2] + (hot[2] - cold[2]) * t
        r, g, b = colorsys.hsv_to_rgb((h % 360.0) / 360.0, s, v)
        lut[i] = (round(r * 255), round(g * 255), round(b * 255))
    return lut


def find_font_path(candidates=OVERLAY_FONT_CANDIDATES) -> Optional[str]:
    """Return the first TrueType font Pillow can open, or None."""
    for font_name in candidates:
        try:
            ImageFont.truetype(font_name, 12)
            return font_name
        except OSError:
            continue
    logger.debug("No TrueType font found, overlay text uses Pillow's default font")
    return None


@lru_cache(maxsize=16)
def _load_font(font_path: Optional[str], size: int):
    if font_path:
        return ImageFont.truetype(font_path, size)
    return ImageFont.load_default(size=size)


@dataclass(frozen=True)
class RenderStyle:
    """Immutable rendering configuration shared by all heatmaps of a run.

    Build it once with load_render_style() and pass it to the grids.
    """
    lut: np.ndarray = field(compare=False, repr=False)
    font_path: Optional[str] = None
    alpha_min: int = HEAT_ALPHA_MIN
    alpha_max: int = HEAT_ALPHA_MAX

    def font(self, size: int):
        return _load_font(self.font_path, max(int(size), 1))


def load_render_style(font_path: Optional[str] = None) -> RenderStyle:
    """Build the default red gradient style and resolve the overlay font."""
    return RenderStyle(
        lut=build_gradient_lut(GRADIENT.COLD, GRADIENT.HOT),
        font_path=font_path or find_font_path(),
    )


def colorize(counts: np.ndarray, max_value: int, style: RenderStyle) -> np.ndarray:
    """Map counters to RGBA samples using log-scale normalization.

    Zero counters are fully transparent. A non-zero counter c gets
    heat = log(c + 1) / log(max_value + 1), picks its color from the style's
    lookup table and an alpha between alpha_min and alpha_max (clamped to 255).

    Returns:
        uint8 array of shape counts.shape + (4,)
    """
    rgba = np.zeros(counts.shape + (4,), dtype=np.uint8)
    if max_value <= 0:
        return rgba

    nonzero = counts > 0
    heat = np.log1p(counts[nonzero].astype(np.float64)) / math.log1p(max_value)
    heat = np.clip(heat, 0.0, 1.0)

    lut_index = np.rint(heat * (len(style.lut) - 1)).astype(np.intp)
    alpha = style.alpha_min + heat * (style.alpha_max - style.alpha_min)

    rgba[nonzero, :3] = style.lut[lut_index]
    rgba[nonzero, 3] = np.clip(alpha, 0, 255).astype(np.uint8)
    return rgba


# =============================================================================
# Projections (picklable, safe to ship to worker processes)
# =============================================================================

@dataclass(frozen=True)
class PixelProjection:
    """Geographic point -> pixel cell of the viewport."""
    map: Map

    def __call__(self, lon: float, lat: float) -> Optional[Cell]:
        return self.map.to_pixels(lon, lat)


@dataclass(frozen=True)
class TileProjection:
    """Geographic point -> tile cell, relative to the grid's top-left tile.

    Bounds are half-open: min_x <= tile_x < max_x (same for y).
    """
    map: Map
    zoom: int
    min_x: int
    min_y: int
    max_x: int
    max_y: int

    def __call__(self, lon: float, lat: float) -> Optional[Cell]:
        tile = self.map.to_tile(lon, lat, self.zoom)
        if tile is None:
            return None
        tile_x = math.floor(tile[0])
        tile_y = math.floor(tile[1])
        if not (self.min_x <= tile_x < self.max_x and self.min_y <= tile_y < self.max_y):
            return None
        return tile_x - self.min_x, tile_y - self.min_y


# =============================================================================
# Heatmaps
# =============================================================================

class Heatmap(ABC):
    """
    Abstract base class for heatmap accumulation grids.

    Subclasses allocate the counter array and implement:
        - projection: callable mapping (lon, lat) to a grid cell or None
        - _to_image(rgba): turn per-cell RGBA samples into a viewport-sized image
    """

    def __init__(self, map: Map, style: Optional[RenderStyle] = None,
                 render_title: bool = False, render_date: bool = False):
        self.map = map
        self.style = style if style is not None else load_render_style()
        self.render_title = render_title
        self.render_date = render_date
        self._counts = np.zeros(self._grid_shape(), dtype=np.uint32)
        self._max_value = 0

    @abstractmethod
    def _grid_shape(self) -> Tuple[int, int]:
        """Return (rows, columns) of the counter array."""

    @property
    @abstractmethod
    def projection(self):
        """Picklable callable (lon, lat) -> Optional[cell]."""

    @abstractmethod
    def _to_image(self, rgba: np.ndarray) -> Image.Image:
        """Turn per-cell RGBA samples into an image of the viewport's size."""

    @property
    def counts(self) -> np.ndarray:
        """Read-only view of the counter array, indexed [y, x]."""
        view = self._counts.view()
        view.flags.writeable = False
        return view

    @property
    def max_value(self) -> int:
        """Largest counter value observed (drives log normalization)."""
        return self._max_value

    def project_to_screen(self, lon: float, lat: float) -> Optional[Cell]:
        """Project a geographic point to a grid cell; None when off screen."""
        return self.projection(lon, lat)

    def add_point(self, cell: Cell) -> None:
        """Increment the counter at `cell` (x, y).

        Raises:
            GridBoundsError: if the cell lies outside the grid
        """
        x, y = cell
        rows, cols = self._counts.shape
        if not (0 <= x < cols and 0 <= y < rows):
            raise GridBoundsError(f"cell ({x}, {y}) outside {cols}x{rows} grid")

        self._counts[y, x] += 1
        value = int(self._counts[y, x])
        if value > self._max_value:
            self._max_value = value

    def decay(self, amount: int) -> None:
        """Reduce every counter above `amount` by `amount`.

        Counters at or below `amount` keep their value so relative order is
        preserved. max_value is recomputed from the counters afterwards.
        """
        if amount < 0:
            raise ValueError(f"decay amount must be non-negative, got {amount}")
        above = self._counts > amount
        self._counts[above] -= np.uint32(amount)
        self._max_value = int(self._counts.max()) if self._counts.size else 0

    def render(self) -> Image.Image:
        """Render counters to an RGBA image the size of the viewport."""
        return self._to_image(colorize(self._counts, self._max_value, self.style))

    def render_with_overlay(self, title: str, date: datetime) -> Image.Image:
        """Render, then draw the activity date and/or title bottom-left.

        The date sits on the bottom line and the title directly above it.
        Text height is 1/15 of the image height.
        """
        image = self.render()
        if not (self.render_title or self.render_date):
            return image

        draw = ImageDraw.Draw(image)
        font_size = max(image.height // OVERLAY_FONT_DIVISOR, 1)
        font = self.style.font(font_size)

        x = OVERLAY_TEXT_X
        y = image.height - font_size
        if self.render_date:
            draw.text((x, y), date.strftime(OVERLAY_DATE_FORMAT), fill=OVERLAY_TEXT_COLOR, font=font)
            y -= font_size
        if self.render_title:
            draw.text((x, y), title, fill=OVERLAY_TEXT_COLOR, font=font)

        return image


class PixelHeatmap(Heatmap):
    """One counter per output pixel."""

    def __init__(self, map: Map, style: Optional[RenderStyle] = None,
                 render_title: bool = False, render_date: bool = False):
        self._projection = PixelProjection(map)
        super().__init__(map, style, render_title, render_date)

    def _grid_shape(self) -> Tuple[int, int]:
        return self.map.height, self.map.width

    @property
    def projection(self) -> PixelProjection:
        return self._projection

    def _to_image(self, rgba: np.ndarray) -> Image.Image:
        return Image.fromarray(rgba)


class TileHeatmap(Heatmap):
    """One counter per slippy map tile at `zoom`.

    The grid covers the viewport's tile-space extents scaled to `zoom`, with
    the minimum edge floored and the maximum edge ceiled on each axis.
    """

    def __init__(self, map: Map, zoom: int, style: Optional[RenderStyle] = None,
                 render_title: bool = False, render_date: bool = False):
        self.zoom = zoom
        scale = 2.0 ** (zoom - map.zoom)
        extents = map.extents_tiled
        self._projection = TileProjection(
            map=map,
            zoom=zoom,
            min_x=math.floor(extents.min_x * scale),
            min_y=math.floor(extents.min_y * scale),
            max_x=math.ceil(extents.max_x * scale),
            max_y=math.ceil(extents.max_y * scale),
        )
        super().__init__(map, style, render_title, render_date)

    def _grid_shape(self) -> Tuple[int, int]:
        p = self._projection
        return p.max_y - p.min_y, p.max_x - p.min_x

    @property
    def projection(self) -> TileProjection:
        return self._projection

    @property
    def tile_bounds(self) -> Tuple[int, int, int, int]:
        """Absolute (min_x, min_y, max_x, max_y) tile indices, max exclusive."""
        p = self._projection
        return p.min_x, p.min_y, p.max_x, p.max_y

    def _to_image(self, rgba: np.ndarray) -> Image.Image:
        # Paint every viewport pixel with the sample of the tile under its center
        scale = 2.0 ** (self.zoom - self.map.zoom)
        extents = self.map.extents_tiled
        rows, cols = self._counts.shape

        px = (np.arange(self.map.width) + 0.5) / TILE_SIZE + extents.min_x
        py = (np.arange(self.map.height) + 0.5) / TILE_SIZE + extents.min_y
        cell_x = np.clip(np.floor(px * scale).astype(np.intp) - self._projection.min_x, 0, cols - 1)
        cell_y = np.clip(np.floor(py * scale).astype(np.intp) - self._projection.min_y, 0, rows - 1)

        pixels = rgba[cell_y[:, None], cell_x[None, :]]
        return Image.fromarray(np.ascontiguousarray(pixels))


def create_heatmap(kind: HeatmapKind, map: Map, style: Optional[RenderStyle] = None,
                   render_title: bool = False, render_date: bool = False) -> Heatmap:
    """Build the heatmap variant selected by `kind`."""
    kind = HeatmapKind(kind)
    if kind == HeatmapKind.PIXEL:
        return PixelHeatmap(map, style, render_title, render_date)
    if kind == HeatmapKind.SQUADRAT:
        return TileHeatmap(map, SQUADRAT_ZOOM, style, render_title, render_date)
    if kind == HeatmapKind.SQUADRATINO:
        return TileHeatmap(map, SQUADRATINO_ZOOM, style, render_title, render_date)
    raise ValueError(f"Unknown heatmap kind: {kind}")
