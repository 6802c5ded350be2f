"""
Activity discovery, parsing and projection for the heatmap.

Finds track files (Strava bulk export or a plain directory), parses them in
parallel, projects them onto the heatmap grid and returns them sorted by
date, ready for in-order accumulation.
"""

import csv
import logging
import multiprocessing
import zlib
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple, Union

from activities.models import Activity, RawActivity, ScreenActivity
from activities.readers import ActivityParseError
from constants import STRAVA_DATE_FORMAT, STRAVA_INDEX_FILE, TRACK_FILE_SUFFIXES

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class DiscoveryStats:
    """Index rows that could not be turned into a RawActivity."""
    no_files: int = 0
    read_errors: int = 0
    parse_errors: int = 0  # Bad timestamps; the activity is kept, dated at the epoch


@dataclass
class LoadStats:
    """Outcome of parsing and projecting a batch of activities."""
    total: int = 0
    loaded: int = 0
    unreadable: int = 0
    not_visible: int = 0

    @property
    def skipped(self) -> int:
        return self.unreadable + self.not_visible


def parse_strava_date(text: str) -> Optional[datetime]:
    """
    Parse a Strava export timestamp to UTC.

    Args:
        text: Format like 'Jan 5, 2020, 8:03:12 AM' (day and hour may be unpadded)

    Returns:
        datetime in UTC, or None if parsing fails
    """
    try:
        return datetime.strptime(text.strip(), STRAVA_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except (ValueError, AttributeError):
        return None


def read_strava_export(directory: Union[str, Path]) -> Tuple[List[RawActivity], DiscoveryStats]:
    """
    Read the activities.csv index of a Strava bulk export.

    Rows without a file are counted and skipped. Rows with an unparseable
    date are kept, dated at the Unix epoch, and counted.
    """
    directory = Path(directory)
    stats = DiscoveryStats()
    activities: List[RawActivity] = []

    with open(directory / STRAVA_INDEX_FILE, newline="", encoding="utf-8") as f:
        reader = csv.DictReader(f)
        while True:
            try:
                row = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                logger.debug(f"Unreadable activity record: {e}")
                stats.read_errors += 1
                continue

            name = row.get("Activity Name")
            raw_date = row.get("Activity Date")
            filename = row.get("Filename")
            if None in row or name is None or raw_date is None or filename is None:
                stats.read_errors += 1
                continue

            if not filename.strip():
                stats.no_files += 1
                continue

            date = parse_strava_date(raw_date)
            if date is None:
                logger.debug(f"Failed to parse {raw_date!r}")
                stats.parse_errors += 1
                date = EPOCH

            activities.append(RawActivity(path=directory / filename.strip(), name=name, date=date))

    if stats.no_files:
        logger.warning(f"Found {stats.no_files} activities without files")
    if stats.read_errors:
        logger.warning(f"Could not read {stats.read_errors} activity records")
    if stats.parse_errors:
        logger.warning(f"Could not parse {stats.parse_errors} timestamps")

    return activities, stats


def scan_directory(directory: Union[str, Path]) -> List[RawActivity]:
    """Find every GPX/FIT track file (optionally gzipped) below `directory`."""
    directory = Path(directory)
    paths = [
        p for p in directory.rglob("*")
        if p.name.lower().endswith(TRACK_FILE_SUFFIXES) and p.is_file()
    ]
    return [RawActivity(path=p) for p in sorted(paths)]


def discover_activities(directory: Union[str, Path]) -> Tuple[List[RawActivity], DiscoveryStats]:
    """
    Discover activities from a Strava export, or any directory of tracks.

    Raises:
        ValueError: if the directory does not exist
    """
    directory = Path(directory)
    if not directory.is_dir():
        raise ValueError(f"Input path {directory} not found.")

    if (directory / STRAVA_INDEX_FILE).is_file():
        logger.info(f"Reading Strava export index {directory / STRAVA_INDEX_FILE}")
        return read_strava_export(directory)

    logger.info(f"No {STRAVA_INDEX_FILE}, scanning {directory} for track files")
    return scan_directory(directory), DiscoveryStats()


def project_activity(activity: Activity, projection: Callable) -> ScreenActivity:
    """
    Project an activity onto the grid and drop repeated cells.

    Points outside the viewport are discarded, then every screen cell is kept
    once (first visit order), so one activity counts at most once per cell.

    Raises:
        ActivityParseError: if no point is visible
    """
    cells = (projection(lon, lat) for lon, lat in activity.track_points)
    unique = list(dict.fromkeys(cell for cell in cells if cell is not None))
    if not unique:
        raise ActivityParseError("No visible track points")
    return ScreenActivity(name=activity.name, date=activity.date, track_points=unique)


# Worker function must be at module level for multiprocessing
def _parse_and_project(raw: RawActivity, projection: Callable) -> Tuple[str, Optional[ScreenActivity]]:
    try:
        activity = raw.parse()
    except (ActivityParseError, OSError, EOFError, zlib.error) as e:
        logger.debug(f"Skipping {raw.path.name}: {e}")
        return "unreadable", None

    try:
        return "loaded", project_activity(activity, projection)
    except ActivityParseError:
        logger.debug(f"Skipping {raw.path.name}: no visible track points")
        return "not_visible", None


def load_screen_activities(
    raw_activities: List[RawActivity],
    projection: Callable,
    jobs: int = 1,
    progress_callback: Optional[Callable[[], None]] = None,
) -> Tuple[List[ScreenActivity], LoadStats]:
    """
    Parse and project activities, skipping the ones that fail.

    Args:
        raw_activities: Discovered activities
        projection: Picklable callable (lon, lat) -> Optional[cell]
        jobs: Worker processes; 1 parses in-process
        progress_callback: Optional callable invoked once per activity

    Returns:
        Screen activities sorted by date, and a LoadStats summary
    """
    worker = partial(_parse_and_project, projection=projection)
    stats = LoadStats(total=len(raw_activities))

    if jobs > 1 and len(raw_activities) > 1:
        processes = min(jobs, len(raw_activities))
        with multiprocessing.Pool(processes=processes) as pool:
            screens = _collect(pool.imap(worker, raw_activities, chunksize=4), stats, progress_callback)
    else:
        screens = _collect(map(worker, raw_activities), stats, progress_callback)

    screens.sort(key=lambda a: a.date)

    if stats.skipped:
        logger.warning(
            f"Skipped {stats.skipped} of {stats.total} activities "
            f"({stats.unreadable} unreadable, {stats.not_visible} outside the map)"
        )
    return screens, stats


def _collect(results: Iterable[Tuple[str, Optional[ScreenActivity]]], stats: LoadStats,
             progress_callback: Optional[Callable[[], None]]) -> List[ScreenActivity]:
    screens: List[ScreenActivity] = []
    for status, screen in results:
        if status == "loaded":
            screens.append(screen)
            stats.loaded += 1
        elif status == "unreadable":
            stats.unreadable += 1
        else:
            stats.not_visible += 1
        if progress_callback:
            progress_callback()
    return screens
