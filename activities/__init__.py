"""
Activity input for the heatmap renderer.

Discovers GPX/FIT tracks (plain or gzipped, optionally indexed by a Strava
bulk export's activities.csv), parses them and projects them onto the
heatmap grid.
"""

from activities.models import Activity, RawActivity, ScreenActivity
from activities.readers import ActivityParseError, read_activity
from activities.export import (
    DiscoveryStats,
    LoadStats,
    discover_activities,
    load_screen_activities,
    project_activity,
)

__all__ = [
    "Activity",
    "RawActivity",
    "ScreenActivity",
    "ActivityParseError",
    "read_activity",
    "DiscoveryStats",
    "LoadStats",
    "discover_activities",
    "load_screen_activities",
    "project_activity",
]
