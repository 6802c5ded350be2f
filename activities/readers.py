"""
Track file readers for GPX and FIT activities.

Both formats may be gzip-compressed (activity.gpx.gz, activity.fit.gz), which
is how Strava bulk exports ship most of their files.
"""

import gzip
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, List, Tuple, Union

import gpxpy
import gpxpy.gpx

from activities.models import Activity
from constants import DEFAULT_ACTIVITY_NAME

logger = logging.getLogger(__name__)


class ActivityParseError(ValueError):
    """A track file could not be turned into a usable activity."""


def parse_gpx(stream: BinaryIO) -> Activity:
    """
    Parse the first track of a GPX 1.0/1.1 document.

    Args:
        stream: Binary file-like object with GPX XML

    Returns:
        Activity named after the track, dated from the GPX metadata time

    Raises:
        ActivityParseError: invalid GPX, no tracks, or no track points
    """
    try:
        gpx = gpxpy.parse(stream)
    except gpxpy.gpx.GPXException as e:
        raise ActivityParseError(f"Invalid GPX document: {e}") from e

    if not gpx.tracks:
        raise ActivityParseError("file has no tracks")
    if len(gpx.tracks) > 1:
        logger.warning("More than 1 track, just taking first")
    track = gpx.tracks[0]

    points: List[Tuple[float, float]] = [
        (point.longitude, point.latitude)
        for segment in track.segments
        for point in segment.points
    ]
    if not points:
        raise ActivityParseError("No track points")

    activity = Activity(
        name=track.name or DEFAULT_ACTIVITY_NAME,
        track_points=points,
    )
    # gpxpy reads <metadata><time> (1.1) and the root <time> (1.0) into gpx.time
    if gpx.time is not None:
        date = gpx.time
        if date.tzinfo is None:
            date = date.replace(tzinfo=timezone.utc)
        activity.date = date.astimezone(timezone.utc)
    return activity


def parse_fit(stream: BinaryIO) -> Activity:
    """
    Parse GPS positions from a FIT activity file.

    Uses fit-tool; RecordMessage positions are already converted from
    semicircles to degrees. Records without a position are skipped.

    Raises:
        ActivityParseError: unreadable FIT data or no positions
    """
    try:
        from fit_tool.fit_file import FitFile
        from fit_tool.profile.messages.file_id_message import FileIdMessage
        from fit_tool.profile.messages.record_message import RecordMessage
    except ImportError as e:
        raise ImportError(
            "fit-tool library required for FIT import. Install with: pip install fit-tool"
        ) from e

    try:
        fit_file = FitFile.from_bytes(stream.read())
    except Exception as e:
        raise ActivityParseError(f"Invalid FIT file: {e}") from e

    activity = Activity()
    points: List[Tuple[float, float]] = []
    for record in fit_file.records:
        message = record.message
        if isinstance(message, RecordMessage):
            lat = message.position_lat
            lon = message.position_long
            if lat is not None and lon is not None:
                points.append((lon, lat))
        elif isinstance(message, FileIdMessage) and message.time_created:
            # fit-tool reports timestamps in milliseconds since the Unix epoch
            activity.date = datetime.fromtimestamp(message.time_created / 1000, tz=timezone.utc)

    if not points:
        raise ActivityParseError("No track points")

    activity.track_points = points
    return activity


def read_activity(path: Union[str, Path]) -> Activity:
    """
    Read a .gpx, .fit, .gpx.gz or .fit.gz track file.

    Raises:
        ActivityParseError: unknown file type or unparseable content
        OSError: file missing or unreadable
    """
    path = Path(path)
    compressed = path.suffix.lower() == ".gz"
    kind = Path(path.stem).suffix.lower() if compressed else path.suffix.lower()

    if kind == ".gpx":
        parser = parse_gpx
    elif kind == ".fit":
        parser = parse_fit
    else:
        raise ActivityParseError(f"Unknown file type: {path.name}")

    opener = gzip.open if compressed else open
    with opener(path, "rb") as f:
        return parser(f)
