"""Synthetic departures and service-hour checks for when no feed data is usable."""

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple

from .config import FerryConfig
from .errors import NoActiveService
from .gtfs_loader import StaticFeedStore
from .models import Departure, Provenance
from .utils import format_display_time, to_local

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60


class FallbackGenerator:
    """
    Produces evenly spaced placeholder departures inside service hours.

    Service hours come from the earliest and latest scheduled departure at the
    stop on the services running that day. When the schedule cannot say, the
    configured weekday/weekend hour window is used.
    """

    def __init__(self, store: StaticFeedStore, config: Optional[FerryConfig] = None):
        self.store = store
        self.config = config or store.config

    def service_window(self, day: date, stop_id: Optional[str] = None) -> Tuple[int, int]:
        """
        First and last scheduled departure at the stop, in minutes after midnight.

        The last value exceeds 1440 when service runs past midnight.

        Raises:
            NoActiveService: If no active trip of the route serves the stop that day.
        """
        stop_id = stop_id or self.config.stop_id
        calendar = self.store.calendar
        earliest = latest = None

        for trip in self.store.trips_for_route(self.config.route_id):
            if not calendar.is_active(trip.service_id, day):
                continue
            stop_time = self.store.stop_time_at(trip.trip_id, stop_id)
            if stop_time is None:
                continue
            minutes = stop_time.departure_seconds // 60
            earliest = minutes if earliest is None else min(earliest, minutes)
            latest = minutes if latest is None else max(latest, minutes)

        if earliest is None:
            raise NoActiveService(f"No active service at stop {stop_id} on {day}")
        return earliest, latest

    def is_within_service_hours(self, moment: datetime, stop_id: Optional[str] = None) -> bool:
        """Check whether ``moment`` falls inside the day's service hours."""
        local = to_local(moment, self.store.tz)
        minutes = local.hour * 60 + local.minute

        # Yesterday's trips running past midnight
        try:
            start, end = self.service_window(local.date() - timedelta(days=1), stop_id)
            if end >= MINUTES_PER_DAY and start <= minutes + MINUTES_PER_DAY <= end:
                return True
        except NoActiveService:
            pass

        try:
            start, end = self.service_window(local.date(), stop_id)
        except NoActiveService:
            hours = self.config.service_hours_for(local)
            return hours.contains(local.hour)
        return start <= minutes <= end

    def generate(
        self,
        from_time: datetime,
        direction: Optional[int] = None,
        stop_id: Optional[str] = None,
    ) -> List[Departure]:
        """
        Build placeholder departures after ``from_time``.

        Args:
            from_time: Time to start from.
            direction: Direction to label the departures with, when known.
            stop_id: Stop to check service hours for. Defaults to the configured stop.

        Returns:
            ``max_departures`` FALLBACK departures at the configured interval, or
            an empty list outside service hours.
        """
        now = to_local(from_time, self.store.tz)
        if not self.is_within_service_hours(now, stop_id):
            logger.info(f"No fallback departures: {now:%H:%M} is outside service hours")
            return []

        route_name = self.config.fallback_route_name
        destinations: Tuple[str, ...] = ("next stops",)
        direction_label = "towards next stops"

        route = self.store.route_info(self.config.route_id, stop_id or self.config.stop_id)
        if route is not None:
            route_name = route.name
            info = route.direction(0 if direction is None else direction)
            if info is not None and info.destinations:
                destinations = info.destinations[: self.config.max_destinations]
                direction_label = info.label

        interval = timedelta(minutes=self.config.fallback_interval_minutes)
        departures = []
        for i in range(1, self.config.max_departures + 1):
            departs_at = now + i * interval
            departures.append(Departure(
                departs_at=departs_at,
                display_time=format_display_time(departs_at),
                route_name=route_name,
                direction_id=direction,
                direction_label=direction_label,
                destinations=destinations,
                trip_id=None,
                delay_seconds=0,
                provenance=Provenance.FALLBACK,
            ))

        logger.warning(f"Serving {len(departures)} fallback departures")
        return departures
