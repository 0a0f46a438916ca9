"""Runtime configuration for the ferry departure engine."""

import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, Optional, Tuple, Union

from .utils import day_type

# NYC Ferry GTFS endpoints
GTFS_STATIC_URL = "http://nycferry.connexionz.net/rtt/public/utility/gtfs.aspx"
GTFS_TRIP_UPDATES_URL = "http://nycferry.connexionz.net/rtt/public/utility/gtfsrealtime.aspx/tripupdate"
GTFS_ALERTS_URL = "http://nycferry.connexionz.net/rtt/public/utility/gtfsrealtime.aspx/alert"

# Red Hook/Atlantic Basin on the South Brooklyn route
DEFAULT_STOP_ID = "24"
DEFAULT_ROUTE_ID = "SB"
DEFAULT_STOP_NAME_FRAGMENTS = ("red hook", "atlantic basin")

DEFAULT_TIMEZONE = "America/New_York"
USER_AGENT = "FerryTrack/0.1"


def _env_str(name: str, default: str) -> str:
    value = os.environ.get(name)
    return value.strip() if value and value.strip() else default


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


@dataclass(frozen=True)
class ServiceHours:
    """Hour window used when no schedule data can describe service hours."""
    start: int  # first hour of service, inclusive
    end: int  # hour service stops, exclusive

    def contains(self, hour: int) -> bool:
        return self.start <= hour < self.end


@dataclass(frozen=True)
class FerryConfig:
    """Settings for one route/stop pairing."""
    static_url: str = GTFS_STATIC_URL
    trip_updates_url: str = GTFS_TRIP_UPDATES_URL
    alerts_url: str = GTFS_ALERTS_URL

    stop_id: str = DEFAULT_STOP_ID
    route_id: str = DEFAULT_ROUTE_ID
    stop_name_fragments: Tuple[str, ...] = DEFAULT_STOP_NAME_FRAGMENTS
    timezone: str = DEFAULT_TIMEZONE

    max_departures: int = 3
    max_destinations: int = 3
    horizon_hours: float = 24.0
    fallback_interval_minutes: int = 30
    dedup_by_direction: bool = False
    fallback_route_name: str = "Ferry Route"

    weekday_hours: ServiceHours = ServiceHours(6, 22)
    weekend_hours: ServiceHours = ServiceHours(7, 21)

    # Direction names are agency specific; NYC Ferry uses 0 for southbound
    direction_names: Dict[int, str] = field(
        default_factory=lambda: {0: "southbound", 1: "northbound"}
    )

    request_timeout: float = 10.0
    static_ttl_seconds: float = 24 * 60 * 60
    realtime_ttl_seconds: float = 30.0
    realtime_max_stale_seconds: Optional[float] = 4 * 60 * 60
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 6.0

    @classmethod
    def from_env(cls) -> "FerryConfig":
        """Build a config, overriding defaults from environment variables."""
        defaults = cls()
        return cls(
            static_url=_env_str("GTFS_STATIC_URL", defaults.static_url),
            trip_updates_url=_env_str("GTFS_TRIP_UPDATES_URL", defaults.trip_updates_url),
            alerts_url=_env_str("GTFS_ALERTS_URL", defaults.alerts_url),
            stop_id=_env_str("FERRY_STOP_ID", defaults.stop_id),
            route_id=_env_str("FERRY_ROUTE_ID", defaults.route_id),
            timezone=_env_str("FERRY_TIMEZONE", defaults.timezone),
            max_departures=max(1, _env_int("FERRY_MAX_DEPARTURES", defaults.max_departures)),
            request_timeout=max(1.0, _env_float("FERRY_REQUEST_TIMEOUT", defaults.request_timeout)),
            horizon_hours=max(1.0, _env_float("FERRY_HORIZON_HOURS", defaults.horizon_hours)),
        )

    def service_hours_for(self, day: Union[date, datetime]) -> ServiceHours:
        """Configured window for the day's type (weekday or weekend)."""
        return self.weekend_hours if day_type(day) == "weekend" else self.weekday_hours

    def direction_name(self, direction_id: Optional[int]) -> str:
        if direction_id is None:
            return "next stops"
        return self.direction_names.get(direction_id, f"direction {direction_id}")
