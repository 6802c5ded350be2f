"""
Pytest configuration and fixtures for the heatmap renderer tests.

Provides a small viewport, a render style that needs no system fonts,
sample track files and tile image bytes.
"""

import pytest
from datetime import datetime, timezone
from io import BytesIO
from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image

from constants import GRADIENT, TILE_SIZE
from heatmap import RenderStyle, build_gradient_lut
from slippy import Map


SAMPLE_GPX = """<?xml version="1.0" encoding="UTF-8"?>
<gpx version="1.1" creator="test" xmlns="http://www.topografix.com/GPX/1/1">
  <metadata>
    <time>2021-06-01T07:30:00Z</time>
  </metadata>
  <trk>
    <name>Morning Ride</name>
    <trkseg>
      <trkpt lat="52.5200" lon="13.4050"><ele>34.0</ele></trkpt>
      <trkpt lat="52.5205" lon="13.4060"><ele>34.5</ele></trkpt>
      <trkpt lat="52.5210" lon="13.4070"><ele>35.0</ele></trkpt>
    </trkseg>
  </trk>
</gpx>
"""


@pytest.fixture
def render_style():
    """Fixture providing the default gradient with Pillow's built-in font."""
    return RenderStyle(lut=build_gradient_lut(GRADIENT.COLD, GRADIENT.HOT), font_path=None)


@pytest.fixture
def small_map():
    """Fixture providing a 64x48 viewport centered on Berlin at zoom 12."""
    return Map.from_center(13.405, 52.52, 64, 48, 12)


@pytest.fixture
def tile_map():
    """Fixture providing a 512x512 viewport centered on Berlin at zoom 10."""
    return Map.from_center(13.405, 52.52, 512, 512, 10)


@pytest.fixture
def sample_gpx():
    """Fixture providing GPX 1.1 content with one three-point track."""
    return SAMPLE_GPX


@pytest.fixture
def sample_date():
    """Fixture providing a fixed UTC timestamp."""
    return datetime(2021, 6, 1, 7, 30, tzinfo=timezone.utc)


def make_tile_bytes(color=(200, 200, 200, 255), size=TILE_SIZE) -> bytes:
    """Encode a solid-color PNG tile."""
    buf = BytesIO()
    Image.new("RGBA", (size, size), color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def tile_png():
    """Fixture providing PNG bytes of a solid gray 256x256 tile."""
    return make_tile_bytes()


@pytest.fixture
def mock_session(tile_png):
    """Fixture providing a requests.Session mock that always serves tile_png."""
    session = MagicMock()
    response = MagicMock()
    response.content = tile_png
    response.raise_for_status.return_value = None
    session.get.return_value = response
    return session
