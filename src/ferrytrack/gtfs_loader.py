"""GTFS static schedule loader for NYC Ferry data."""

import io
import logging
import math
import zipfile
import zlib
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo

import pandas as pd
import requests

from .config import USER_AGENT, FerryConfig
from .errors import FeedMalformed, FeedUnavailable
from .feed_cache import FeedCache
from .models import (
    CalendarException,
    CalendarService,
    DirectionInfo,
    ExceptionType,
    Route,
    RouteInfo,
    Stop,
    StopTime,
    Trip,
)
from .service_calendar import ServiceCalendarResolver
from .topology import RouteTopologyAnalyzer
from .utils import parse_gtfs_time

logger = logging.getLogger(__name__)

# table name -> columns that must be present
REQUIRED_TABLES: Dict[str, Tuple[str, ...]] = {
    "stops": ("stop_id", "stop_name"),
    "routes": ("route_id",),
    "trips": ("route_id", "service_id", "trip_id"),
    "stop_times": ("trip_id", "stop_id", "stop_sequence"),
}
OPTIONAL_TABLES: Dict[str, Tuple[str, ...]] = {
    "calendar": (
        "service_id", "monday", "tuesday", "wednesday", "thursday",
        "friday", "saturday", "sunday", "start_date", "end_date",
    ),
    "calendar_dates": ("service_id", "date", "exception_type"),
}
WEEKDAY_COLUMNS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")

Row = Dict[str, str]


@dataclass(frozen=True)
class FeedTables:
    """One complete, parsed copy of the static feed."""
    stops: Dict[str, Stop] = field(default_factory=dict)
    routes: Dict[str, Route] = field(default_factory=dict)
    trips: Dict[str, Trip] = field(default_factory=dict)
    stop_times: Dict[str, List[StopTime]] = field(default_factory=dict)  # trip_id -> ordered calls
    calendar: Dict[str, CalendarService] = field(default_factory=dict)
    calendar_exceptions: Dict[Tuple[str, date], CalendarException] = field(default_factory=dict)
    trips_by_route: Dict[str, List[str]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        stops: Iterable[Stop] = (),
        routes: Iterable[Route] = (),
        trips: Iterable[Trip] = (),
        stop_times: Iterable[StopTime] = (),
        calendar: Iterable[CalendarService] = (),
        calendar_exceptions: Iterable[CalendarException] = (),
    ) -> "FeedTables":
        """Index entity lists into lookup tables. Stop times of unknown trips are dropped."""
        trips_by_id = {trip.trip_id: trip for trip in trips}

        by_trip: Dict[str, List[StopTime]] = {}
        orphans = 0
        for stop_time in stop_times:
            if stop_time.trip_id not in trips_by_id:
                orphans += 1
                continue
            by_trip.setdefault(stop_time.trip_id, []).append(stop_time)
        for times in by_trip.values():
            times.sort(key=lambda st: st.stop_sequence)
        if orphans:
            logger.warning(f"Dropped {orphans} stop times referencing unknown trips")

        trips_by_route: Dict[str, List[str]] = {}
        for trip in trips_by_id.values():
            trips_by_route.setdefault(trip.route_id, []).append(trip.trip_id)

        return cls(
            stops={stop.stop_id: stop for stop in stops},
            routes={route.route_id: route for route in routes},
            trips=trips_by_id,
            stop_times=by_trip,
            calendar={service.service_id: service for service in calendar},
            calendar_exceptions={(e.service_id, e.date): e for e in calendar_exceptions},
            trips_by_route=trips_by_route,
        )

    @property
    def is_empty(self) -> bool:
        return not self.trips


def _read_table(name: str, raw: bytes, required_columns: Tuple[str, ...]) -> List[Row]:
    """Parse one CSV table into string rows. Tolerates a UTF-8 byte-order mark."""
    try:
        frame = pd.read_csv(
            io.BytesIO(raw),
            dtype=str,
            keep_default_na=False,
            encoding="utf-8-sig",
            skipinitialspace=True,
        )
    except pd.errors.EmptyDataError:
        frame = pd.DataFrame(columns=list(required_columns))
    except (pd.errors.ParserError, UnicodeDecodeError) as e:
        raise FeedMalformed(f"Could not parse {name}.txt: {e}", source=f"{name}.txt") from e

    frame.columns = [str(column).strip() for column in frame.columns]
    missing = [column for column in required_columns if column not in frame.columns]
    if missing:
        raise FeedMalformed(f"{name}.txt is missing columns {missing}", source=f"{name}.txt")

    # Short rows come back as NaN even with keep_default_na=False
    return [
        {k: v.strip() if isinstance(v, str) else "" for k, v in row.items()}
        for row in frame.to_dict("records")
    ]


def _to_float(value: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


def _to_direction(value: str) -> Optional[int]:
    if value in ("0", "1"):
        return int(value)
    return None


def _to_date(value: str) -> date:
    return datetime.strptime(value, "%Y%m%d").date()


def _parse_stops(rows: List[Row]) -> List[Stop]:
    stops = []
    for row in rows:
        if not row["stop_id"]:
            continue
        stops.append(Stop(
            stop_id=row["stop_id"],
            name=row["stop_name"],
            latitude=_to_float(row.get("stop_lat", "")),
            longitude=_to_float(row.get("stop_lon", "")),
        ))
    logger.info(f"Loaded {len(stops)} stops")
    return stops


def _parse_routes(rows: List[Row]) -> List[Route]:
    routes = [
        Route(
            route_id=row["route_id"],
            short_name=row.get("route_short_name", ""),
            long_name=row.get("route_long_name", ""),
            route_type=row.get("route_type") or None,
        )
        for row in rows
        if row["route_id"]
    ]
    logger.info(f"Loaded {len(routes)} routes")
    return routes


def _parse_trips(rows: List[Row]) -> List[Trip]:
    trips = []
    for row in rows:
        if not row["trip_id"]:
            continue
        trips.append(Trip(
            trip_id=row["trip_id"],
            route_id=row["route_id"],
            service_id=row["service_id"],
            direction_id=_to_direction(row.get("direction_id", "")),
            headsign=row.get("trip_headsign") or None,
            shape_id=row.get("shape_id") or None,
            block_id=row.get("block_id") or None,
        ))
    logger.info(f"Loaded {len(trips)} trips")
    return trips


def _parse_stop_times(rows: List[Row]) -> List[StopTime]:
    stop_times = []
    skipped = 0
    for row in rows:
        arrival = row.get("arrival_time", "")
        departure = row.get("departure_time", "") or arrival
        try:
            stop_times.append(StopTime(
                trip_id=row["trip_id"],
                stop_id=row["stop_id"],
                arrival_time=arrival or departure,
                departure_time=departure,
                stop_sequence=int(row["stop_sequence"]),
                departure_seconds=parse_gtfs_time(departure),
            ))
        except ValueError:
            # Untimed stops and broken rows cannot be scheduled
            skipped += 1
    if skipped:
        logger.debug(f"Skipped {skipped} stop_times rows without a usable time")
    logger.info(f"Loaded {len(stop_times)} stop times")
    return stop_times


def _parse_calendar(rows: List[Row]) -> List[CalendarService]:
    services = []
    for row in rows:
        try:
            services.append(CalendarService(
                service_id=row["service_id"],
                weekdays=tuple(row[day] == "1" for day in WEEKDAY_COLUMNS),
                start_date=_to_date(row["start_date"]),
                end_date=_to_date(row["end_date"]),
            ))
        except ValueError:
            logger.debug(f"Skipping calendar row for service {row.get('service_id')}")
    return services


def _parse_calendar_dates(rows: List[Row]) -> List[CalendarException]:
    exceptions = []
    for row in rows:
        try:
            exceptions.append(CalendarException(
                service_id=row["service_id"],
                date=_to_date(row["date"]),
                exception_type=ExceptionType(int(row["exception_type"])),
            ))
        except ValueError:
            logger.debug(f"Skipping calendar_dates row for service {row.get('service_id')}")
    return exceptions


def parse_feed(read: Callable[[str], Optional[bytes]]) -> FeedTables:
    """
    Parse a full static feed.

    Args:
        read: Returns the raw bytes of "<name>.txt", or None if the file is absent.

    Optional tables that cannot be read or lack a column are treated as empty.

    Raises:
        FeedMalformed: If a mandatory table or column is missing or unreadable.
    """
    raw: Dict[str, List[Row]] = {}
    for name, columns in REQUIRED_TABLES.items():
        data = read(f"{name}.txt")
        if data is None:
            raise FeedMalformed(f"{name}.txt not found in GTFS feed", source=f"{name}.txt")
        raw[name] = _read_table(name, data, columns)
    for name, columns in OPTIONAL_TABLES.items():
        try:
            data = read(f"{name}.txt")
            raw[name] = _read_table(name, data, columns) if data is not None else []
        except FeedMalformed as e:
            logger.warning(f"Ignoring unusable optional table: {e}")
            raw[name] = []

    return FeedTables.build(
        stops=_parse_stops(raw["stops"]),
        routes=_parse_routes(raw["routes"]),
        trips=_parse_trips(raw["trips"]),
        stop_times=_parse_stop_times(raw["stop_times"]),
        calendar=_parse_calendar(raw["calendar"]),
        calendar_exceptions=_parse_calendar_dates(raw["calendar_dates"]),
    )


def parse_archive(data: bytes) -> FeedTables:
    """Parse a GTFS ZIP archive. Tables may sit in a sub-folder of the archive."""
    try:
        with zipfile.ZipFile(io.BytesIO(data)) as zip_file:
            members = {Path(name).name: name for name in zip_file.namelist() if not name.endswith("/")}

            def read(filename: str) -> Optional[bytes]:
                member = members.get(filename)
                if not member:
                    return None
                try:
                    return zip_file.read(member)
                except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError) as e:
                    raise FeedMalformed(f"Could not extract {filename}: {e}", source=filename) from e

            return parse_feed(read)
    except zipfile.BadZipFile as e:
        raise FeedMalformed(f"GTFS archive is not a valid ZIP file: {e}") from e


class StaticFeedStore:
    """Loads and indexes GTFS static data, refreshing it once per cache window."""

    def __init__(
        self,
        config: Optional[FerryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or FerryConfig()
        self.url = self.config.static_url
        self.tz = ZoneInfo(self.config.timezone)
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)
        self._cache: FeedCache[FeedTables] = FeedCache(
            self._fetch_tables,
            ttl=self.config.static_ttl_seconds,
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base_seconds,
            backoff_max=self.config.backoff_max_seconds,
            name="GTFS static",
        )
        self._state = self._derive(FeedTables())

    @classmethod
    def from_tables(cls, tables: FeedTables, config: Optional[FerryConfig] = None, **kwargs) -> "StaticFeedStore":
        """Build a store around already-parsed tables, treated as freshly fetched."""
        store = cls(config=config, **kwargs)
        store._install(tables)
        return store

    def _derive(self, tables: FeedTables):
        topology = RouteTopologyAnalyzer(tables.stops, tables.trips, tables.stop_times)
        calendar = ServiceCalendarResolver(tables.calendar, tables.calendar_exceptions, self.tz)
        return tables, topology, calendar

    def _swap(self, tables: FeedTables) -> None:
        # Single assignment so readers never see a half-replaced set of tables
        self._state = self._derive(tables)
        logger.info(
            f"Static feed ready: {len(tables.stops)} stops, {len(tables.routes)} routes, "
            f"{len(tables.trips)} trips"
        )

    def _install(self, tables: FeedTables) -> None:
        self._cache.put(self.url, tables)
        self._swap(tables)

    def _fetch_tables(self, url: str) -> FeedTables:
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = self._session.get(url, timeout=self.config.request_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedUnavailable(f"Failed to download GTFS static feed: {e}", source=url) from e
        return parse_archive(response.content)

    def load(self) -> None:
        """
        Fetch and parse the static feed unless the cached copy is still fresh.

        Raises:
            FeedUnavailable: If the download failed and nothing was loaded before.
            FeedMalformed: If the archive lacks a mandatory table.
        """
        tables = self._cache.get(self.url)
        if tables is None:
            raise FeedUnavailable("GTFS static feed unavailable and no cached copy", source=self.url)
        if tables is not self.tables:
            self._swap(tables)

    def load_from_bytes(self, data: bytes) -> None:
        """Load a GTFS ZIP archive that is already in memory."""
        self._install(parse_archive(data))

    def load_from_directory(self, path: Union[str, Path]) -> None:
        """Load GTFS data from an unpacked feed directory."""
        directory = Path(path)
        logger.info(f"Loading GTFS data from {directory}")

        def read(filename: str) -> Optional[bytes]:
            file_path = directory / filename
            return file_path.read_bytes() if file_path.exists() else None

        self._install(parse_feed(read))

    @property
    def tables(self) -> FeedTables:
        return self._state[0]

    @property
    def topology(self) -> RouteTopologyAnalyzer:
        return self._state[1]

    @property
    def calendar(self) -> ServiceCalendarResolver:
        return self._state[2]

    @property
    def is_loaded(self) -> bool:
        return not self.tables.is_empty

    @property
    def last_updated(self) -> Optional[datetime]:
        entry = self._cache.peek(self.url)
        if entry is None:
            return None
        return datetime.fromtimestamp(entry.fetched_at, tz=timezone.utc)

    def get_stop(self, stop_id: str) -> Stop:
        """Get stop by stop_id."""
        if stop_id not in self.tables.stops:
            raise ValueError(f"Stop {stop_id} not found")
        return self.tables.stops[stop_id]

    def get_trip(self, trip_id: str) -> Optional[Trip]:
        return self.tables.trips.get(trip_id)

    def get_route(self, route_id: str) -> Optional[Route]:
        return self.tables.routes.get(route_id)

    def find_stops_by_name(self, name: str) -> List[Stop]:
        """Find stops by name (partial match)."""
        name_lower = name.lower()
        return [stop for stop in self.tables.stops.values() if name_lower in stop.name.lower()]

    def find_stop_by_name_fragment(self, *fragments: str) -> Optional[Stop]:
        """First stop whose name contains any of the fragments, case-insensitively."""
        lowered = [fragment.lower() for fragment in fragments if fragment]
        for stop in self.tables.stops.values():
            name = stop.name.lower()
            if any(fragment in name for fragment in lowered):
                return stop
        return None

    def trips_for_route(self, route_id: str) -> List[Trip]:
        tables = self.tables
        return [tables.trips[trip_id] for trip_id in tables.trips_by_route.get(route_id, [])]

    def stop_times_for_trip(self, trip_id: str) -> List[StopTime]:
        return self.tables.stop_times.get(trip_id, [])

    def stop_time_at(self, trip_id: str, stop_id: str) -> Optional[StopTime]:
        """The trip's first call at the stop, if it serves it."""
        for stop_time in self.stop_times_for_trip(trip_id):
            if stop_time.stop_id == stop_id:
                return stop_time
        return None

    def route_info(self, route_id: str, stop_id: str) -> Optional[RouteInfo]:
        """
        Describe a route as seen from one stop.

        Args:
            route_id: Route to describe.
            stop_id: Stop the destinations are computed from.

        Returns:
            RouteInfo with per-direction destinations, or None for unknown routes.
        """
        route = self.get_route(route_id)
        if route is None:
            return None

        topology = self.topology
        directions: Dict[int, DirectionInfo] = {}
        for direction_id in (0, 1):
            destinations = topology.destinations_after_stop(route_id, stop_id, direction_id)
            if destinations:
                label = f"towards {destinations[-1]}"
            else:
                label = self.config.direction_name(direction_id)
            directions[direction_id] = DirectionInfo(direction_id, label, tuple(destinations))

        return RouteInfo(
            route_id=route_id,
            name=route.display_name,
            all_stops=tuple(topology.all_stop_names(route_id)),
            patterns=tuple(topology.patterns_through_stop(route_id, stop_id)),
            directions=directions,
        )

    def clear(self) -> None:
        """Drop all loaded data to free memory."""
        self._cache.invalidate()
        self._swap(FeedTables())
        logger.info("Cleared GTFS data from memory")
