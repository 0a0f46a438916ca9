"""Data models for the ferry departure engine."""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum, IntEnum
from typing import Dict, List, Optional, Tuple


@dataclass(frozen=True)
class Stop:
    """Represents a stop (ferry landing) from stops.txt."""
    stop_id: str
    name: str
    latitude: float
    longitude: float


@dataclass(frozen=True)
class Route:
    """Represents a route from routes.txt."""
    route_id: str
    short_name: str = ""
    long_name: str = ""
    route_type: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.long_name or self.short_name or self.route_id


@dataclass(frozen=True)
class Trip:
    """Represents a scheduled trip from trips.txt."""
    trip_id: str
    route_id: str
    service_id: str
    direction_id: Optional[int] = None  # 0 or 1, None when the feed omits it
    headsign: Optional[str] = None
    shape_id: Optional[str] = None
    block_id: Optional[str] = None


@dataclass(frozen=True)
class StopTime:
    """One scheduled call of a trip at a stop."""
    trip_id: str
    stop_id: str
    arrival_time: str  # GTFS clock time, may run past 24:00:00
    departure_time: str
    stop_sequence: int
    departure_seconds: int  # Seconds after service-day midnight


@dataclass(frozen=True)
class CalendarService:
    """Weekly service pattern from calendar.txt."""
    service_id: str
    weekdays: Tuple[bool, bool, bool, bool, bool, bool, bool]  # Monday first
    start_date: date
    end_date: date

    def runs_on(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date and self.weekdays[day.weekday()]


class ExceptionType(IntEnum):
    """calendar_dates.txt exception_type values."""
    ADDED = 1
    REMOVED = 2


@dataclass(frozen=True)
class CalendarException:
    """Single-date override from calendar_dates.txt."""
    service_id: str
    date: date
    exception_type: ExceptionType


@dataclass(frozen=True)
class RoutePattern:
    """Trips of a route that share the same ordered stop sequence."""
    route_id: str
    stop_ids: Tuple[str, ...]
    stop_names: Tuple[str, ...]
    trip_count: int
    sample_trip_id: str
    direction_id: Optional[int] = None
    headsign: Optional[str] = None

    def index_of(self, stop_id: str) -> int:
        """Position of a stop in the pattern, or -1."""
        try:
            return self.stop_ids.index(stop_id)
        except ValueError:
            return -1


@dataclass(frozen=True)
class DirectionInfo:
    """Where a route goes from the target stop in one direction."""
    direction_id: int
    label: str  # e.g. "towards Bay Ridge"
    destinations: Tuple[str, ...]


@dataclass(frozen=True)
class RouteInfo:
    """Display information for a route as seen from one stop."""
    route_id: str
    name: str
    all_stops: Tuple[str, ...]
    patterns: Tuple[RoutePattern, ...]
    directions: Dict[int, DirectionInfo]

    def direction(self, direction_id: Optional[int]) -> Optional[DirectionInfo]:
        if direction_id is None:
            return None
        return self.directions.get(direction_id)


class Provenance(IntEnum):
    """Source of a departure. Higher values win during merge."""
    FALLBACK = 0
    STATIC = 1
    REALTIME = 2


class Direction(IntEnum):
    """GTFS direction_id values, named the way NYC Ferry uses them."""
    SOUTHBOUND = 0
    NORTHBOUND = 1


@dataclass(frozen=True)
class Departure:
    """A merged departure from the target stop."""
    departs_at: datetime  # Timezone aware
    display_time: str  # e.g. "11:20 AM"
    route_name: str
    direction_id: Optional[int]
    direction_label: str
    destinations: Tuple[str, ...]
    trip_id: Optional[str] = None
    delay_seconds: int = 0
    provenance: Provenance = Provenance.STATIC

    @property
    def minute_key(self) -> str:
        """Clock time at minute resolution, used for deduplication."""
        return self.departs_at.strftime("%H:%M")

    @property
    def is_realtime(self) -> bool:
        return self.provenance is Provenance.REALTIME

    @property
    def is_static(self) -> bool:
        return self.provenance is Provenance.STATIC

    @property
    def is_fallback(self) -> bool:
        return self.provenance is Provenance.FALLBACK


class AlertSeverity(IntEnum):
    """GTFS-Realtime Alert.SeverityLevel."""
    UNKNOWN_SEVERITY = 1
    INFO = 2
    WARNING = 3
    SEVERE = 4


class AlertScopePolicy(Enum):
    """How to treat alerts that carry no informed entities."""
    IGNORE_UNSCOPED = "ignore_unscoped"
    UNSCOPED_IS_SYSTEM_WIDE = "unscoped_is_system_wide"


@dataclass(frozen=True)
class InformedEntity:
    """A route/stop/trip reference attached to an alert."""
    route_id: Optional[str] = None
    stop_id: Optional[str] = None
    trip_id: Optional[str] = None
    agency_id: Optional[str] = None
    direction_id: Optional[int] = None


@dataclass(frozen=True)
class Alert:
    """Represents a service alert."""
    alert_id: str
    header: str
    description: str = ""
    severity: AlertSeverity = AlertSeverity.UNKNOWN_SEVERITY
    informed_entities: Tuple[InformedEntity, ...] = ()

    @property
    def message(self) -> str:
        return f"{self.header} {self.description}".strip()


@dataclass(frozen=True)
class TripUpdateRecord:
    """Live departure prediction for one trip at one stop."""
    trip_id: str
    stop_id: str
    departs_at: datetime  # Timezone aware
    delay_seconds: int = 0
    route_id: Optional[str] = None
    direction_id: Optional[int] = None


@dataclass(frozen=True)
class FeedSnapshot:
    """Decoded trip-updates feed."""
    records: Tuple[TripUpdateRecord, ...] = ()
    feed_timestamp: Optional[datetime] = None
    skipped_entities: int = 0

    @classmethod
    def empty(cls) -> "FeedSnapshot":
        return cls()

    def __len__(self) -> int:
        return len(self.records)


@dataclass
class StopBoard:
    """Complete data for a stop with departures and alerts."""
    stop: Stop
    departures: List[Departure]
    alerts: List[Alert]
    last_updated: datetime
    route_info: Optional[RouteInfo] = None
