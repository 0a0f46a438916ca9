"""Merges the static schedule with real-time predictions into one departure list."""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, Hashable, List, Optional, Tuple, Union

from .config import FerryConfig
from .fallback import FallbackGenerator
from .gtfs_loader import StaticFeedStore
from .models import (
    Departure,
    Direction,
    FeedSnapshot,
    Provenance,
    RouteInfo,
    Trip,
    TripUpdateRecord,
)
from .realtime_client import is_target_departure
from .utils import at_service_time, format_display_time, parse_direction, to_local

logger = logging.getLogger(__name__)


class DepartureReconciler:
    """
    Builds the departure list for a stop.

    Scheduled departures come from the static feed, filtered by the service
    calendar. A real-time prediction for the same trip replaces its scheduled
    departure; predictions for trips the schedule does not list are added.
    The merged list is sorted and de-duplicated, and the fallback generator
    fills in when nothing is left.
    """

    def __init__(
        self,
        store: StaticFeedStore,
        fallback: Optional[FallbackGenerator] = None,
        config: Optional[FerryConfig] = None,
    ):
        self.store = store
        self.config = config or store.config
        self.fallback = fallback or FallbackGenerator(store, self.config)

    @property
    def horizon(self) -> timedelta:
        return timedelta(hours=self.config.horizon_hours)

    def get_departures(
        self,
        stop_id: str,
        from_time: datetime,
        direction: Union[None, int, str, Direction] = None,
        realtime: Optional[FeedSnapshot] = None,
    ) -> List[Departure]:
        """
        Get the next departures from a stop.

        Args:
            stop_id: Stop to depart from.
            from_time: Only departures after this instant are returned.
            direction: Optional direction filter (0/1 or a direction name).
            realtime: Decoded trip updates. None means static-only.

        Returns:
            At most ``max_departures`` departures, time ordered. Fallback
            departures when neither feed has anything, possibly empty outside
            service hours.
        """
        now = to_local(from_time, self.store.tz)
        direction_id = parse_direction(direction)
        route = self.store.route_info(self.config.route_id, stop_id)

        pending = self._index_realtime(realtime, stop_id, now, direction_id)

        merged: List[Departure] = []
        for departure in self.static_departures(stop_id, now, direction_id, route):
            record = pending.pop(departure.trip_id, None)
            if record is not None:
                merged.append(self._realtime_departure(record, stop_id, route))
            else:
                merged.append(departure)

        # Live-only trips, e.g. added service
        for record in pending.values():
            merged.append(self._realtime_departure(record, stop_id, route))

        departures = self.deduplicate(merged)
        if not departures:
            logger.info(f"No scheduled or live departures from stop {stop_id}, using fallback")
            departures = self.fallback.generate(now, direction_id, stop_id)

        return departures[: self.config.max_departures]

    def _index_realtime(
        self,
        snapshot: Optional[FeedSnapshot],
        stop_id: str,
        now: datetime,
        direction_id: Optional[int],
    ) -> Dict[str, TripUpdateRecord]:
        """Predictions for the stop after ``now``, first one per trip."""
        pending: Dict[str, TripUpdateRecord] = {}
        if snapshot is None:
            return pending

        for record in snapshot.records:
            if record.trip_id in pending or not is_target_departure(record, stop_id, now):
                continue
            if record.departs_at - now > self.horizon:
                continue

            trip = self.store.get_trip(record.trip_id)
            route_id = trip.route_id if trip else record.route_id
            if route_id is not None and route_id != self.config.route_id:
                continue

            known_direction = self._direction_of(trip, record)
            if direction_id is not None and known_direction is not None and known_direction != direction_id:
                continue

            pending[record.trip_id] = record

        logger.debug(f"{len(pending)} real-time predictions for stop {stop_id}")
        return pending

    def static_departures(
        self,
        stop_id: str,
        from_time: datetime,
        direction_id: Optional[int] = None,
        route: Optional[RouteInfo] = None,
    ) -> List[Departure]:
        """
        Scheduled departures from a stop within the horizon.

        Uses today's services first. Tomorrow's are added when today has
        nothing left or ``from_time`` is outside service hours.
        """
        now = to_local(from_time, self.store.tz)
        if route is None:
            route = self.store.route_info(self.config.route_id, stop_id)

        today = now.date()
        departures = self._static_for_day(today, now, stop_id, direction_id, route)
        if not departures or not self.fallback.is_within_service_hours(now, stop_id):
            # Candidates rolled forward from today may already cover tomorrow's calls
            seen = {(d.trip_id, d.departs_at) for d in departures}
            for departure in self._static_for_day(today + timedelta(days=1), now, stop_id, direction_id, route):
                if (departure.trip_id, departure.departs_at) not in seen:
                    departures.append(departure)

        departures.sort(key=lambda d: d.departs_at)
        return departures

    def _static_for_day(
        self,
        service_day: date,
        now: datetime,
        stop_id: str,
        direction_id: Optional[int],
        route: Optional[RouteInfo],
    ) -> List[Departure]:
        calendar = self.store.calendar
        departures = []

        for trip in self.store.trips_for_route(self.config.route_id):
            if direction_id is not None and trip.direction_id != direction_id:
                continue
            if not calendar.is_active(trip.service_id, service_day):
                continue
            stop_time = self.store.stop_time_at(trip.trip_id, stop_id)
            if stop_time is None:
                continue

            departs_at = at_service_time(service_day, stop_time.departure_seconds, self.store.tz)
            if departs_at < now:
                departs_at = at_service_time(
                    service_day + timedelta(days=1), stop_time.departure_seconds, self.store.tz
                )
            if departs_at - now > self.horizon:
                continue

            departures.append(self._build(
                trip.trip_id, trip.direction_id, departs_at, stop_id, route, Provenance.STATIC
            ))

        return departures

    @staticmethod
    def _direction_of(trip: Optional[Trip], record: TripUpdateRecord) -> Optional[int]:
        if trip is not None and trip.direction_id is not None:
            return trip.direction_id
        return record.direction_id

    def _realtime_departure(
        self,
        record: TripUpdateRecord,
        stop_id: str,
        route: Optional[RouteInfo],
    ) -> Departure:
        trip = self.store.get_trip(record.trip_id)
        return self._build(
            record.trip_id,
            self._direction_of(trip, record),
            to_local(record.departs_at, self.store.tz),
            stop_id,
            route,
            Provenance.REALTIME,
            delay_seconds=record.delay_seconds,
        )

    def _build(
        self,
        trip_id: Optional[str],
        direction_id: Optional[int],
        departs_at: datetime,
        stop_id: str,
        route: Optional[RouteInfo],
        provenance: Provenance,
        delay_seconds: int = 0,
    ) -> Departure:
        destinations: Tuple[str, ...] = ()
        if trip_id:
            destinations = tuple(self.store.topology.trip_destinations(trip_id, stop_id))

        info = route.direction(direction_id) if route else None
        if not destinations and info is not None:
            destinations = info.destinations
        if not destinations:
            destinations = ("next stops",)
        destinations = destinations[: self.config.max_destinations]

        if info is not None and info.destinations:
            direction_label = info.label
        else:
            direction_label = f"towards {destinations[-1]}"

        return Departure(
            departs_at=departs_at,
            display_time=format_display_time(departs_at),
            route_name=route.name if route else self.config.fallback_route_name,
            direction_id=direction_id,
            direction_label=direction_label,
            destinations=destinations,
            trip_id=trip_id,
            delay_seconds=delay_seconds,
            provenance=provenance,
        )

    def _time_key(self, departure: Departure) -> Hashable:
        if self.config.dedup_by_direction:
            return departure.minute_key, departure.direction_id
        return departure.minute_key

    def deduplicate(self, departures: List[Departure]) -> List[Departure]:
        """
        Sort by departure time and drop duplicates.

        Two departures are duplicates when they share a trip id or a minute
        clock time. The first one kept stays in place, but a later duplicate
        with higher provenance replaces it.
        """
        kept: List[Departure] = []
        by_trip: Dict[str, int] = {}
        by_time: Dict[Hashable, int] = {}

        for departure in sorted(departures, key=lambda d: d.departs_at):
            time_key = self._time_key(departure)
            if departure.trip_id and departure.trip_id in by_trip:
                index = by_trip[departure.trip_id]
            elif time_key in by_time:
                index = by_time[time_key]
            else:
                if departure.trip_id:
                    by_trip[departure.trip_id] = len(kept)
                by_time[time_key] = len(kept)
                kept.append(departure)
                continue

            if departure.provenance > kept[index].provenance:
                kept[index] = departure
                if departure.trip_id:
                    by_trip[departure.trip_id] = index
                by_time[time_key] = index

        return kept
