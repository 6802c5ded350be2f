"""
Constants for the track heatmap renderer.

Centralized definitions for map geometry, rendering defaults, tile fetching,
and heatmap color settings.
"""

from typing import Tuple
from dataclasses import dataclass


# =============================================================================
# Slippy Map Geometry
# =============================================================================

TILE_SIZE = 256  # Standard web map tile size in pixels

MIN_ZOOM = 0
MAX_ZOOM = 20

# Spherical Mercator is only defined up to this latitude
MAX_MERCATOR_LAT = 85.05112878


# =============================================================================
# Output Defaults
# =============================================================================

DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080
DEFAULT_ZOOM = 10
DEFAULT_OUTPUT = "heatmap.png"
DEFAULT_TINT = 0.8          # 0.0 = basemap untouched, 1.0 = fully black
DEFAULT_FRAME_RATE = 1500   # Emit a frame every N accumulated points
DEFAULT_VIDEO_FPS = 30.0


# =============================================================================
# Tile Provider & Cache
# =============================================================================

DEFAULT_TILE_URL = "https://tile.openstreetmap.org/{z}/{x}/{y}.png"
TILE_USER_AGENT = "trackheat/0.1 (activity heatmap renderer)"
TILE_REQUEST_TIMEOUT = 60   # Seconds; generous, this is a batch tool
TILE_FETCH_WORKERS = 8
TILE_DEFAULT_EXTENSION = ".png"

# Cache layout: <cache_root>/derive.rs/tiles/<SHA256>.<ext>
CACHE_APP_DIR = "derive.rs"
CACHE_TILES_DIR = "tiles"


# =============================================================================
# Heatmap Resolutions
# =============================================================================

SQUADRAT_ZOOM = 14      # One cell per zoom-14 tile (~1.5 km at mid latitudes)
SQUADRATINO_ZOOM = 17   # One cell per zoom-17 tile (~200 m at mid latitudes)


# =============================================================================
# Heatmap Colors
# =============================================================================

@dataclass(frozen=True)
class GradientStops:
    """Two-stop HSV gradient for heat colors (h in degrees, s/v in 0-1)."""
    COLD: Tuple[float, float, float] = (0.0, 0.75, 0.45)  # Dim red
    HOT: Tuple[float, float, float] = (0.0, 0.75, 1.00)   # Bright red


GRADIENT = GradientStops()

# Alpha ramp for non-zero cells: faintest visible cell sits at HEAT_ALPHA_MIN,
# the hottest cell reaches HEAT_ALPHA_MAX (clamped to 255)
HEAT_ALPHA_MIN = 6
HEAT_ALPHA_MAX = 256

HEAT_LUT_SIZE = 256


# =============================================================================
# Text Overlay
# =============================================================================

OVERLAY_TEXT_X = 20
OVERLAY_FONT_DIVISOR = 15   # Font height = image height / 15
OVERLAY_TEXT_COLOR = (255, 255, 255, 255)
OVERLAY_DATE_FORMAT = "%B %d, %Y"
OVERLAY_FONT_CANDIDATES = (
    "Roboto-Light.ttf",
    "DejaVuSans.ttf",
    "Arial.ttf",
    "Helvetica.ttf",
    "/System/Library/Fonts/Helvetica.ttc",
)


# =============================================================================
# Activity Input
# =============================================================================

DEFAULT_ACTIVITY_NAME = "Untitled"
STRAVA_INDEX_FILE = "activities.csv"
STRAVA_DATE_FORMAT = "%b %d, %Y, %I:%M:%S %p"  # e.g. "Jan 5, 2020, 8:03:12 AM"
TRACK_FILE_SUFFIXES = (".gpx", ".fit", ".gpx.gz", ".fit.gz")  # matched case-insensitively
