"""
Data models for activities fed into the heatmap.

Pydantic models for the three stages an activity goes through:
discovered (RawActivity), parsed (Activity) and projected (ScreenActivity).
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from constants import DEFAULT_ACTIVITY_NAME


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Activity(BaseModel):
    """
    A parsed track: name, start date and ordered geographic points.

    Points are (longitude, latitude) pairs in degrees.
    """
    name: str = Field(default=DEFAULT_ACTIVITY_NAME, description="Activity title")
    date: datetime = Field(default_factory=_utc_now, description="Activity start (UTC)")
    track_points: List[Tuple[float, float]] = Field(default_factory=list)

    @property
    def point_count(self) -> int:
        return len(self.track_points)


class ScreenActivity(BaseModel):
    """
    An activity projected onto the heatmap grid.

    track_points holds each visible screen cell once, in order of first visit.
    """
    name: str = DEFAULT_ACTIVITY_NAME
    date: datetime = Field(default_factory=_utc_now)
    track_points: List[Tuple[int, int]] = Field(default_factory=list)


class RawActivity(BaseModel):
    """
    A discovered track file, not parsed yet.

    name/date come from an index (e.g. a Strava activities.csv) and override
    whatever the file itself says; None keeps the file's own metadata.
    """
    path: Path
    name: Optional[str] = None
    date: Optional[datetime] = None

    def parse(self) -> Activity:
        """Read the track file and apply the index metadata.

        Raises:
            ActivityParseError: if the file cannot be parsed or has no points
            OSError: if the file cannot be read
        """
        from activities.readers import read_activity

        activity = read_activity(self.path)
        updates = {}
        if self.name is not None:
            updates["name"] = self.name
        if self.date is not None:
            updates["date"] = self.date
        return activity.model_copy(update=updates) if updates else activity
