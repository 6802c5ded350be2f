"""
Slippy map projection for the heatmap viewport.

Converts between geographic coordinates (lon/lat in degrees), fractional
tile-space at a zoom level, and pixel offsets inside a fixed viewport.

All math is float64; integer pixel and tile indices are produced by
truncation (floor) only at the very last step.
"""

import math
from dataclasses import dataclass
from typing import Optional, Tuple

from constants import TILE_SIZE


def geo_to_tile(lon: float, lat: float, zoom: int) -> Tuple[float, float]:
    """Convert lon/lat to fractional tile coordinates at given zoom level.

    Latitudes beyond the Mercator limit yield inf/nan instead of raising;
    callers are expected to filter those out.
    """
    n = 2.0 ** zoom
    tile_x = n * (lon + 180.0) / 360.0
    lat_rad = math.radians(lat)
    try:
        tile_y = n * (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0
    except (OverflowError, ValueError):
        tile_y = math.nan
    return tile_x, tile_y


def tile_to_geo(tile_x: float, tile_y: float, zoom: int) -> Tuple[float, float]:
    """Convert fractional tile coordinates back to (lon, lat)."""
    n = 2.0 ** zoom
    lon = tile_x / n * 360.0 - 180.0
    lat = math.degrees(math.atan(math.sinh(math.pi * (1.0 - 2.0 * tile_y / n))))
    return lon, lat


@dataclass(frozen=True)
class Rect:
    """Axis-aligned rectangle, always normalized so min <= max on both axes."""
    min_x: float
    min_y: float
    max_x: float
    max_y: float

    @classmethod
    def from_corners(cls, a: Tuple[float, float], b: Tuple[float, float]) -> "Rect":
        return cls(
            min_x=min(a[0], b[0]),
            min_y=min(a[1], b[1]),
            max_x=max(a[0], b[0]),
            max_y=max(a[1], b[1]),
        )

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y

    def contains(self, x: float, y: float) -> bool:
        """Inclusive containment test (boundary points are inside)."""
        return self.min_x <= x <= self.max_x and self.min_y <= y <= self.max_y


@dataclass(frozen=True)
class Map:
    """Fixed viewport: center, pixel size and zoom level.

    Build with Map.from_center(); instances are immutable and cheap to copy
    (they are also picklable, so worker processes can project points).

    Attributes:
        extents_tiled: Viewport rectangle in fractional tile-space at `zoom`
        extents_coord: Same rectangle in geographic coordinates (lon, lat)
        width: Viewport width in pixels
        height: Viewport height in pixels
        zoom: Slippy map zoom level
    """
    extents_tiled: Rect
    extents_coord: Rect
    width: int
    height: int
    zoom: int

    @classmethod
    def from_center(cls, center_lon: float, center_lat: float,
                    width: int, height: int, zoom: int) -> "Map":
        """Build the viewport centered on (center_lon, center_lat).

        The tile-space extents are exactly width/TILE_SIZE by
        height/TILE_SIZE tiles, centered on the projected center.
        """
        center_x, center_y = geo_to_tile(center_lon, center_lat, zoom)
        half_w = width / TILE_SIZE / 2.0
        half_h = height / TILE_SIZE / 2.0

        extents_tiled = Rect.from_corners(
            (center_x - half_w, center_y - half_h),
            (center_x + half_w, center_y + half_h),
        )
        extents_coord = Rect.from_corners(
            tile_to_geo(extents_tiled.min_x, extents_tiled.min_y, zoom),
            tile_to_geo(extents_tiled.max_x, extents_tiled.max_y, zoom),
        )
        return cls(
            extents_tiled=extents_tiled,
            extents_coord=extents_coord,
            width=width,
            height=height,
            zoom=zoom,
        )

    def pixel_size(self) -> Tuple[int, int]:
        """Return (width, height) in pixels."""
        return self.width, self.height

    def contains(self, lon: float, lat: float) -> bool:
        """Whether the geographic point falls inside the viewport."""
        return self.extents_coord.contains(lon, lat)

    def to_tile(self, lon: float, lat: float, zoom: int) -> Optional[Tuple[float, float]]:
        """Fractional tile coordinate at `zoom`, or None outside the viewport."""
        if not self.contains(lon, lat):
            return None
        return geo_to_tile(lon, lat, zoom)

    def to_pixels(self, lon: float, lat: float) -> Optional[Tuple[int, int]]:
        """Project a geographic point to a pixel offset inside the viewport.

        Returns None when the point lies outside the geographic extents.
        Points on the far (inclusive) edge are clamped onto the last pixel
        row/column.
        """
        if not self.contains(lon, lat):
            return None
        tile_x, tile_y = geo_to_tile(lon, lat, self.zoom)
        x = math.floor((tile_x - self.extents_tiled.min_x) * TILE_SIZE)
        y = math.floor((tile_y - self.extents_tiled.min_y) * TILE_SIZE)
        x = min(max(x, 0), self.width - 1)
        y = min(max(y, 0), self.height - 1)
        return x, y

    def pixel_offsets(self) -> Tuple[int, int]:
        """Pixel offset of the viewport's top-left corner inside its first tile."""
        min_x = self.extents_tiled.min_x
        min_y = self.extents_tiled.min_y
        offset_x = int((min_x - math.floor(min_x)) * TILE_SIZE)
        offset_y = int((min_y - math.floor(min_y)) * TILE_SIZE)
        return offset_x, offset_y

    def tile_offsets(self) -> Tuple[int, int]:
        """Integer index of the tile containing the viewport's top-left corner."""
        return (
            math.floor(self.extents_tiled.min_x),
            math.floor(self.extents_tiled.min_y),
        )

    def tile_range_x(self) -> range:
        """Inclusive range of tile columns covered, clamped to the world."""
        return self._tile_range(self.extents_tiled.min_x, self.extents_tiled.max_x)

    def tile_range_y(self) -> range:
        """Inclusive range of tile rows covered, clamped to the world."""
        return self._tile_range(self.extents_tiled.min_y, self.extents_tiled.max_y)

    def _tile_range(self, lo: float, hi: float) -> range:
        last_tile = 2 ** self.zoom - 1
        first = max(math.floor(lo), 0)
        # An edge exactly on a tile boundary does not reach into the next tile
        last = max(min(math.ceil(hi) - 1, last_tile), first)
        return range(first, last + 1)
