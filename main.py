#!/usr/bin/env python3
import argparse
import logging
import os
import sys
from contextlib import ExitStack
from typing import Callable, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from activities import discover_activities, load_screen_activities
from basemap import Basemap, TileCache, TileFetchError, validate_url_template
from constants import (
    DEFAULT_FRAME_RATE,
    DEFAULT_HEIGHT,
    DEFAULT_OUTPUT,
    DEFAULT_TILE_URL,
    DEFAULT_TINT,
    DEFAULT_VIDEO_FPS,
    DEFAULT_WIDTH,
    DEFAULT_ZOOM,
    MAX_MERCATOR_LAT,
    MAX_ZOOM,
    MIN_ZOOM,
    TILE_FETCH_WORKERS,
)
from frames import FFmpegWriter, PngFrameStream, save_image
from heatmap import GridBoundsError, HeatmapKind, create_heatmap, load_render_style
from pipeline import accumulate, render_final
from rich_console import (
    console,
    setup_rich_logging,
    create_progress,
    create_tile_progress,
    print_config_summary,
    print_phase,
    print_completion_summary,
    print_error,
)
from slippy import Map

logger = logging.getLogger(__name__)

TOTAL_PHASES = 4


class HeatmapConfig(BaseModel):
    directory: str
    lat: float = Field(ge=-MAX_MERCATOR_LAT, le=MAX_MERCATOR_LAT)
    lon: float = Field(ge=-180.0, le=180.0)
    output: str = DEFAULT_OUTPUT
    width: int = Field(default=DEFAULT_WIDTH, gt=0)
    height: int = Field(default=DEFAULT_HEIGHT, gt=0)
    zoom: int = Field(default=DEFAULT_ZOOM, ge=MIN_ZOOM, le=MAX_ZOOM)
    url: str = DEFAULT_TILE_URL
    tint: float = Field(default=DEFAULT_TINT, ge=0.0, le=1.0)
    heatmap: HeatmapKind = HeatmapKind.PIXEL
    frame_rate: int = Field(default=DEFAULT_FRAME_RATE, ge=1)
    stream: bool = False
    title: bool = False
    date: bool = False
    video: Optional[str] = None
    fps: float = Field(default=DEFAULT_VIDEO_FPS, gt=0)
    cache_dir: Optional[str] = None
    jobs: int = Field(default_factory=lambda: os.cpu_count() or 1, ge=1)
    verbose: bool = False

    @field_validator("url")
    @classmethod
    def check_url(cls, v: str) -> str:
        return validate_url_template(v)

    @field_validator("directory")
    @classmethod
    def check_directory(cls, v: str) -> str:
        if not os.path.isdir(v):
            raise ValueError(f"Input path {v} not found.")
        return v

    @model_validator(mode="after")
    def check_video_size(self) -> 'HeatmapConfig':
        # yuv420p needs even dimensions
        if self.video and (self.width % 2 or self.height % 2):
            raise ValueError("--video requires an even width and height")
        return self


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trackheat",
        description="Render GPS activity tracks as a heatmap over a slippy map basemap.",
    )
    parser.add_argument("directory", help="Strava bulk export or directory of GPX/FIT files")
    parser.add_argument("--lat", type=float, required=True, help="Latitude of the map center")
    parser.add_argument("--lon", type=float, required=True, help="Longitude of the map center")
    parser.add_argument("-o", "--output", default=DEFAULT_OUTPUT, help="Output PNG path")
    parser.add_argument("-w", "--width", type=int, default=DEFAULT_WIDTH, help="Image width in pixels")
    parser.add_argument("-H", "--height", type=int, default=DEFAULT_HEIGHT, help="Image height in pixels")
    parser.add_argument("-z", "--zoom", type=int, default=DEFAULT_ZOOM, help="Basemap zoom level (0-20)")
    parser.add_argument("--url", default=DEFAULT_TILE_URL,
                        help="Tile URL template with {z}, {x} and {y} placeholders")
    parser.add_argument("--tint", type=float, default=DEFAULT_TINT,
                        help="Basemap darkening, 0.0 (none) to 1.0 (black)")
    parser.add_argument("--heatmap", choices=[k.value for k in HeatmapKind], default=HeatmapKind.PIXEL.value,
                        help="Heatmap resolution: per pixel, or per z14/z17 tile")
    parser.add_argument("-r", "--frame-rate", type=int, default=DEFAULT_FRAME_RATE,
                        help="Track points between progress frames")
    parser.add_argument("-s", "--stream", action="store_true",
                        help="Write PNG frames to stdout, e.g. for ffmpeg -f image2pipe")
    parser.add_argument("-t", "--title", action="store_true", help="Draw the activity title on frames")
    parser.add_argument("-d", "--date", action="store_true", help="Draw the activity date on frames")
    parser.add_argument("--video", default=None, help="Encode progress frames to this MP4 file")
    parser.add_argument("--fps", type=float, default=DEFAULT_VIDEO_FPS, help="Video frame rate")
    parser.add_argument("--cache-dir", default=None, help="Tile cache directory")
    parser.add_argument("-j", "--jobs", type=int, default=None,
                        help="Worker processes for parsing (default: CPU count)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


def parse_args(argv: Optional[List[str]] = None) -> HeatmapConfig:
    args = build_parser().parse_args(argv)
    values = {k: v for k, v in vars(args).items() if v is not None}

    try:
        return HeatmapConfig(**values)
    except ValidationError as e:
        for err in e.errors():
            field = ".".join(str(p) for p in err["loc"]) or "config"
            print_error(f"Invalid {field}: {err['msg']}")
        sys.exit(1)


def stdout_is_tty() -> bool:
    return sys.stdout.isatty()


def run(config: HeatmapConfig) -> None:
    """Render the heatmap described by `config`."""
    map = Map.from_center(config.lon, config.lat, config.width, config.height, config.zoom)
    heatmap = create_heatmap(
        config.heatmap, map, load_render_style(),
        render_title=config.title, render_date=config.date,
    )

    print_config_summary(
        input_dir=config.directory,
        output_file=config.output,
        center=(config.lat, config.lon),
        size=map.pixel_size(),
        zoom=config.zoom,
        heatmap_kind=config.heatmap.value,
        tint=config.tint,
        video_file=config.video,
        stream=config.stream,
        frame_rate=config.frame_rate,
    )

    # 1. Discover and parse
    print_phase(1, TOTAL_PHASES, "Reading activities...")
    raw_activities, _ = discover_activities(config.directory)
    with create_progress() as progress:
        task = progress.add_task("Parsing", total=len(raw_activities))
        activities, load_stats = load_screen_activities(
            raw_activities,
            heatmap.projection,
            jobs=config.jobs,
            progress_callback=lambda: progress.advance(task),
        )
    console.print(f"[info]Loaded {load_stats.loaded} of {load_stats.total} activities[/]")

    # 2. Basemap, before any frame goes out
    print_phase(2, TOTAL_PHASES, "Fetching basemap tiles...")
    basemap = Basemap(map, TileCache(config.url, cache_dir=config.cache_dir), workers=TILE_FETCH_WORKERS)
    with create_tile_progress() as progress:
        task = progress.add_task("Tiles", total=len(basemap.tiles()))
        basemap_image = basemap.assemble(progress_callback=lambda: progress.advance(task))

    # 3. Accumulate
    print_phase(3, TOTAL_PHASES, "Accumulating tracks...")
    with ExitStack() as stack:
        sinks: List[Callable] = []
        stream = None
        if config.stream:
            stream = stack.enter_context(PngFrameStream(sys.stdout.buffer))
            sinks.append(stream.write)
        if config.video:
            writer = stack.enter_context(FFmpegWriter(config.video, config.fps, map.pixel_size()))
            sinks.append(writer.write)

        frame_count = 0

        def on_frame(frame):
            nonlocal frame_count
            for sink in sinks:
                sink(frame)
            frame_count += 1

        with create_progress() as progress:
            task = progress.add_task("Accumulating", total=len(activities))
            points = accumulate(
                heatmap,
                activities,
                frame_rate=config.frame_rate,
                on_frame=on_frame if sinks else None,
                progress_callback=lambda: progress.advance(task),
            )

        if stream is not None:
            stream.write(heatmap.render())

    # 4. Composite
    print_phase(4, TOTAL_PHASES, "Compositing...")
    save_image(render_final(heatmap, basemap_image, config.tint), config.output)

    print_completion_summary(
        output_file=config.output,
        activity_count=len(activities),
        track_points=points,
        skipped=load_stats.skipped,
        frames=frame_count,
    )


def main(argv: Optional[List[str]] = None) -> None:
    config = parse_args(argv)
    setup_rich_logging(config.verbose)

    if config.stream and stdout_is_tty():
        print_error(
            "Refusing to write frame data to TTY.",
            hint="Pipe output to a file or program, e.g. | ffmpeg -f image2pipe -i - out.mp4",
        )
        sys.exit(1)

    try:
        run(config)
    except TileFetchError as e:
        print_error(str(e), hint="Check the --url template and your network connection")
        sys.exit(1)
    except GridBoundsError as e:
        logger.exception("Projection and grid disagree")
        print_error(str(e))
        sys.exit(1)
    except (ValueError, OSError, RuntimeError, ImportError) as e:
        print_error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        print_error("Interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
