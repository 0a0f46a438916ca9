"""Derives stopping patterns and downstream destinations from stop_times."""

import logging
from typing import Dict, List, Optional, Tuple

from .models import RoutePattern, Stop, StopTime, Trip

logger = logging.getLogger(__name__)


class RouteTopologyAnalyzer:
    """
    Groups the trips of a route by their ordered stop sequence.

    One analyzer is bound to one set of loaded tables. Patterns are computed
    lazily per route and kept for the analyzer's lifetime, so a feed reload
    (which creates a new analyzer) re-derives them.
    """

    def __init__(
        self,
        stops: Dict[str, Stop],
        trips: Dict[str, Trip],
        stop_times: Dict[str, List[StopTime]],
    ):
        self.stops = stops
        self.trips = trips
        self.stop_times = stop_times
        self._patterns: Dict[str, List[RoutePattern]] = {}

    def stop_name(self, stop_id: str) -> str:
        stop = self.stops.get(stop_id)
        return stop.name if stop else f"Stop {stop_id}"

    def compute_patterns(self, route_id: str) -> List[RoutePattern]:
        """
        Get the distinct stopping patterns of a route.

        Args:
            route_id: Route to analyse.

        Returns:
            One RoutePattern per distinct stop sequence, in the order each was
            first seen. Trips without stop times are ignored.
        """
        if route_id in self._patterns:
            return self._patterns[route_id]

        # sequence -> [sample trip, trip count]
        grouped: Dict[Tuple[str, ...], List] = {}
        for trip in self.trips.values():
            if trip.route_id != route_id:
                continue
            times = self.stop_times.get(trip.trip_id)
            if not times:
                continue

            sequence = tuple(st.stop_id for st in times)
            if sequence not in grouped:
                grouped[sequence] = [trip, 0]
            grouped[sequence][1] += 1

        patterns = [
            RoutePattern(
                route_id=route_id,
                stop_ids=sequence,
                stop_names=tuple(self.stop_name(stop_id) for stop_id in sequence),
                trip_count=count,
                sample_trip_id=sample.trip_id,
                direction_id=sample.direction_id,
                headsign=sample.headsign,
            )
            for sequence, (sample, count) in grouped.items()
        ]

        logger.info(f"Found {len(patterns)} stopping patterns for route {route_id}")
        for pattern in patterns:
            logger.debug(f"  Pattern: {' -> '.join(pattern.stop_names)} ({pattern.trip_count} trips)")

        self._patterns[route_id] = patterns
        return patterns

    def patterns_through_stop(self, route_id: str, stop_id: str) -> List[RoutePattern]:
        return [p for p in self.compute_patterns(route_id) if stop_id in p.stop_ids]

    def _names_after(self, stop_ids: Tuple[str, ...], stop_id: str, seen: Dict[str, None]) -> None:
        if stop_id not in stop_ids:
            return
        own_name = self.stop_name(stop_id)
        for downstream_id in stop_ids[stop_ids.index(stop_id) + 1:]:
            name = self.stop_name(downstream_id)
            if name != own_name:
                seen.setdefault(name, None)

    def destinations_after_stop(
        self,
        route_id: str,
        stop_id: str,
        direction: Optional[int] = None,
    ) -> List[str]:
        """
        Names of stops served after ``stop_id`` across the route's patterns.

        Args:
            route_id: Route to analyse.
            stop_id: The stop riders board at.
            direction: Only use patterns with this direction_id, when given.

        Returns:
            De-duplicated stop names in first-seen order, without the stop's own name.
        """
        seen: Dict[str, None] = {}
        for pattern in self.patterns_through_stop(route_id, stop_id):
            if direction is not None and pattern.direction_id != direction:
                continue
            self._names_after(pattern.stop_ids, stop_id, seen)
        return list(seen)

    def trip_destinations(self, trip_id: str, stop_id: str) -> List[str]:
        """Names of the stops a single trip serves after ``stop_id``."""
        times = self.stop_times.get(trip_id) or []
        seen: Dict[str, None] = {}
        self._names_after(tuple(st.stop_id for st in times), stop_id, seen)
        return list(seen)

    def all_stop_names(self, route_id: str) -> List[str]:
        """Every stop name the route serves, in first-seen pattern order."""
        seen: Dict[str, None] = {}
        for pattern in self.compute_patterns(route_id):
            for name in pattern.stop_names:
                seen.setdefault(name, None)
        return list(seen)
