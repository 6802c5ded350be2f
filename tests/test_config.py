"""
Tests for HeatmapConfig validation and the command line entry point.

Tests configuration defaults and limits, argument parsing, and full runs of
main() with the tile server mocked out.
"""

import pytest
from io import BytesIO
from unittest.mock import patch

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from PIL import Image
from pydantic import ValidationError

from constants import DEFAULT_TILE_URL
from heatmap import HeatmapKind
from main import HeatmapConfig, main, parse_args

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class FakeStdout:
    """Stand-in for sys.stdout with a binary buffer."""

    def __init__(self, tty=False):
        self.buffer = BytesIO()
        self._tty = tty

    def isatty(self):
        return self._tty

    def write(self, text):
        return len(text)

    def flush(self):
        pass


@pytest.fixture
def track_dir(tmp_path, sample_gpx):
    directory = tmp_path / "tracks"
    directory.mkdir()
    (directory / "ride.gpx").write_text(sample_gpx)
    return directory


def base_args(directory, tmp_path):
    return [
        str(directory),
        "--lat", "52.52", "--lon", "13.405",
        "-w", "64", "-H", "48", "-z", "12",
        "-o", str(tmp_path / "heatmap.png"),
        "--cache-dir", str(tmp_path / "cache"),
        "-j", "1",
    ]


# ============================================================================
# HeatmapConfig
# ============================================================================

class TestHeatmapConfig:
    """Tests for configuration validation."""

    def test_defaults(self, tmp_path):
        config = HeatmapConfig(directory=str(tmp_path), lat=52.52, lon=13.405)
        assert config.width == 1920
        assert config.height == 1080
        assert config.zoom == 10
        assert config.tint == 0.8
        assert config.frame_rate == 1500
        assert config.url == DEFAULT_TILE_URL
        assert config.heatmap == HeatmapKind.PIXEL
        assert config.output == "heatmap.png"
        assert config.jobs >= 1
        assert not config.stream

    def test_heatmap_kind_from_string(self, tmp_path):
        config = HeatmapConfig(directory=str(tmp_path), lat=0, lon=0, heatmap="squadratino")
        assert config.heatmap == HeatmapKind.SQUADRATINO

    @pytest.mark.parametrize("field,value", [
        ("zoom", 21),
        ("zoom", -1),
        ("lat", 86.0),
        ("lat", -90.0),
        ("lon", 180.5),
        ("width", 0),
        ("height", -5),
        ("tint", 1.5),
        ("tint", -0.1),
        ("frame_rate", 0),
        ("fps", 0),
        ("jobs", 0),
        ("heatmap", "hexagon"),
        ("url", "https://tiles.test/{z}/{x}.png"),
        ("url", "file:///tiles/{z}/{x}/{y}.png"),
    ])
    def test_invalid_values(self, tmp_path, field, value):
        values = {"directory": str(tmp_path), "lat": 52.52, "lon": 13.405, field: value}
        with pytest.raises(ValidationError):
            HeatmapConfig(**values)

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ValidationError, match="not found"):
            HeatmapConfig(directory=str(tmp_path / "missing"), lat=0, lon=0)

    def test_video_needs_even_size(self, tmp_path):
        with pytest.raises(ValidationError, match="even"):
            HeatmapConfig(directory=str(tmp_path), lat=0, lon=0, width=641, video="out.mp4")

    def test_odd_size_without_video(self, tmp_path):
        config = HeatmapConfig(directory=str(tmp_path), lat=0, lon=0, width=641)
        assert config.width == 641

    def test_zoom_limits_inclusive(self, tmp_path):
        assert HeatmapConfig(directory=str(tmp_path), lat=0, lon=0, zoom=0).zoom == 0
        assert HeatmapConfig(directory=str(tmp_path), lat=0, lon=0, zoom=20).zoom == 20


# ============================================================================
# Argument Parsing
# ============================================================================

class TestParseArgs:
    """Tests for argparse to HeatmapConfig mapping."""

    def test_all_flags(self, tmp_path):
        config = parse_args([
            str(tmp_path), "--lat", "52.5", "--lon", "13.4",
            "-o", "out.png", "-w", "640", "-H", "480", "-z", "12",
            "--url", "https://tiles.test/{z}/{x}/{y}.png", "--tint", "0.5",
            "--heatmap", "squadrat", "-r", "10", "-s", "-t", "-d",
            "--video", "out.mp4", "--fps", "24", "--cache-dir", "cache", "-j", "2", "-v",
        ])
        assert config.output == "out.png"
        assert (config.width, config.height, config.zoom) == (640, 480, 12)
        assert config.tint == 0.5
        assert config.heatmap == HeatmapKind.SQUADRAT
        assert config.frame_rate == 10
        assert config.stream and config.title and config.date and config.verbose
        assert config.video == "out.mp4"
        assert config.fps == 24.0
        assert config.cache_dir == "cache"
        assert config.jobs == 2

    def test_unset_jobs_uses_default(self, tmp_path):
        config = parse_args([str(tmp_path), "--lat", "0", "--lon", "0"])
        assert config.jobs >= 1
        assert config.video is None
        assert config.cache_dir is None

    def test_invalid_value_exits_1(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            parse_args([str(tmp_path), "--lat", "0", "--lon", "0", "-z", "25"])
        assert exc.value.code == 1

    def test_missing_directory_exits_1(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            parse_args([str(tmp_path / "missing"), "--lat", "0", "--lon", "0"])
        assert exc.value.code == 1

    def test_unknown_heatmap_rejected_by_argparse(self, tmp_path):
        with pytest.raises(SystemExit) as exc:
            parse_args([str(tmp_path), "--lat", "0", "--lon", "0", "--heatmap", "hexagon"])
        assert exc.value.code == 2


# ============================================================================
# main()
# ============================================================================

class TestMain:
    """End-to-end runs with a mocked tile server."""

    def test_writes_final_image(self, track_dir, tmp_path, mock_session):
        with patch("basemap.requests.Session", return_value=mock_session):
            main(base_args(track_dir, tmp_path))

        with Image.open(tmp_path / "heatmap.png") as img:
            assert img.size == (64, 48)
            pixels = img.convert("RGBA")
            # Track pixels are red on a darkened gray basemap
            assert any(p[0] > p[1] + 100 for p in pixels.getdata())
        assert mock_session.get.called
        assert list((tmp_path / "cache").iterdir())

    def test_stream_writes_frames_and_final(self, track_dir, tmp_path, mock_session, monkeypatch):
        fake = FakeStdout(tty=False)
        monkeypatch.setattr(sys, "stdout", fake)

        with patch("basemap.requests.Session", return_value=mock_session):
            main(base_args(track_dir, tmp_path) + ["-s", "-r", "1", "-d"])

        # Three visible points, one frame each, plus the final frame
        assert fake.buffer.getvalue().count(PNG_SIGNATURE) == 4
        assert (tmp_path / "heatmap.png").exists()

    def test_stream_refuses_tty(self, track_dir, tmp_path, monkeypatch):
        monkeypatch.setattr(sys, "stdout", FakeStdout(tty=True))
        with pytest.raises(SystemExit) as exc:
            main(base_args(track_dir, tmp_path) + ["-s"])
        assert exc.value.code == 1
        assert not (tmp_path / "heatmap.png").exists()

    def test_tile_failure_exits_without_output(self, track_dir, tmp_path):
        import requests
        from unittest.mock import MagicMock

        session = MagicMock()
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError("404 Client Error")
        with patch("basemap.requests.Session", return_value=session):
            with pytest.raises(SystemExit) as exc:
                main(base_args(track_dir, tmp_path))

        assert exc.value.code == 1
        assert not (tmp_path / "heatmap.png").exists()
        assert not list((tmp_path / "cache").glob("*.png"))

    def test_fatal_error_removes_video(self, track_dir, tmp_path, mock_session):
        """A failure during accumulation leaves neither the video nor the image."""
        from unittest.mock import MagicMock
        from heatmap import GridBoundsError

        video = tmp_path / "progress.mp4"
        process = MagicMock()

        def start_ffmpeg(*args, **kwargs):
            video.write_bytes(b"partial")
            return process

        with patch("basemap.requests.Session", return_value=mock_session), \
                patch("frames.subprocess.Popen", side_effect=start_ffmpeg), \
                patch("main.accumulate", side_effect=GridBoundsError("cell (99, 99) outside 64x48 grid")):
            with pytest.raises(SystemExit) as exc:
                main(base_args(track_dir, tmp_path) + ["--video", str(video)])

        assert exc.value.code == 1
        assert not video.exists()
        assert not (tmp_path / "heatmap.png").exists()
        process.kill.assert_called_once()

    def test_squadrat_run(self, track_dir, tmp_path, mock_session):
        with patch("basemap.requests.Session", return_value=mock_session):
            main(base_args(track_dir, tmp_path) + ["--heatmap", "squadrat"])
        assert (tmp_path / "heatmap.png").exists()
