"""Main ferry departure service used by the voice front-end."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import List, Optional, Union

import requests

from .config import FerryConfig
from .errors import FeedError, FeedMalformed, FeedUnavailable
from .fallback import FallbackGenerator
from .gtfs_loader import StaticFeedStore
from .models import (
    Alert,
    AlertScopePolicy,
    Departure,
    Direction,
    FeedSnapshot,
    RouteInfo,
    Stop,
    StopBoard,
)
from .realtime_client import RealTimeFeedDecoder, alert_relevant_to
from .reconciler import DepartureReconciler

logger = logging.getLogger(__name__)


class FerryDepartureService:
    """
    Answers "when is the next ferry" for one stop on one route.

    This class provides methods to:
    - Load the static schedule and discover the target stop
    - Get the next departures, merged with live predictions
    - Get service alerts and check service hours
    """

    def __init__(
        self,
        config: Optional[FerryConfig] = None,
        store: Optional[StaticFeedStore] = None,
        decoder: Optional[RealTimeFeedDecoder] = None,
        alert_policy: AlertScopePolicy = AlertScopePolicy.IGNORE_UNSCOPED,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the service. Nothing is fetched until initialize() or a query.

        Args:
            config: Feed URLs, stop/route ids and tuning. Defaults to FerryConfig().
            store: Static schedule store, e.g. one built from fixture tables.
            decoder: Real-time feed decoder.
            alert_policy: How alerts without informed entities are treated.
            session: HTTP session shared by the default store and decoder.
        """
        self.config = config or FerryConfig()
        self.store = store or StaticFeedStore(self.config, session=session)
        self.decoder = decoder or RealTimeFeedDecoder(self.config, session=session)
        self.alert_policy = alert_policy
        self.fallback = FallbackGenerator(self.store, self.config)
        self.reconciler = DepartureReconciler(self.store, self.fallback, self.config)
        self.stop: Optional[Stop] = None
        self._initialized = False
        self._stop_discovered = False

    @property
    def stop_id(self) -> str:
        return self.stop.stop_id if self.stop else self.config.stop_id

    def initialize(self) -> None:
        """
        Load the static schedule once and find the target stop.

        The stop is discovered by name; the configured stop id is used when
        discovery fails. If the feed is unreachable, discovery runs again once
        a later refresh loads the schedule.

        Raises:
            FeedMalformed: If the static feed lacks a mandatory table.
        """
        if self._initialized:
            return

        try:
            self.store.load()
        except FeedMalformed:
            logger.error("Static GTFS feed is malformed, cannot initialize")
            raise
        except FeedUnavailable as e:
            logger.error(f"Failed to initialize GTFS static data: {e}")

        self._discover_stop()
        self._initialized = True

    def _discover_stop(self) -> None:
        self._stop_discovered = self.store.is_loaded
        self.stop = self.store.find_stop_by_name_fragment(*self.config.stop_name_fragments)
        if self.stop is not None:
            logger.info(f"Using stop {self.stop.name} ({self.stop.stop_id})")
            return

        logger.warning(
            f"Target stop not found in GTFS data, falling back to configured stop ID {self.config.stop_id}"
        )
        try:
            self.stop = self.store.get_stop(self.config.stop_id)
        except ValueError:
            self.stop = Stop(self.config.stop_id, self.config.stop_id, float("nan"), float("nan"))

    def _refresh_static(self) -> None:
        try:
            self.store.load()
        except FeedError as e:
            logger.warning(f"Static feed refresh failed, keeping current schedule: {e}")
            return
        if not self._stop_discovered and self.store.is_loaded:
            logger.info("Static feed available again, retrying stop discovery")
            self._discover_stop()

    def _fetch_realtime(self) -> Optional[FeedSnapshot]:
        try:
            return self.decoder.fetch_trip_updates()
        except FeedError as e:
            logger.warning(f"Real-time feed unavailable, using schedule only: {e}")
            return None

    def get_departures(
        self,
        stop_id: Optional[str] = None,
        from_time: Optional[datetime] = None,
        direction: Union[None, int, str, Direction] = None,
    ) -> List[Departure]:
        """
        Get the next departures from a stop.

        Args:
            stop_id: Stop to depart from. Defaults to the discovered target stop.
            from_time: Time to search from. Defaults to now.
            direction: Optional direction filter: 0/1, a Direction, or "northbound"/"southbound".

        Returns:
            List of Departure objects, possibly fallback or empty. Feed outages never raise.
        """
        self.initialize()
        from_time = from_time or datetime.now(self.store.tz)

        # Static refresh check and live fetch touch different cache slots
        with ThreadPoolExecutor(max_workers=2) as executor:
            static_future = executor.submit(self._refresh_static)
            realtime_future = executor.submit(self._fetch_realtime)
            static_future.result()
            snapshot = realtime_future.result()

        # A refresh may have just discovered the stop
        stop_id = stop_id or self.stop_id
        return self.reconciler.get_departures(stop_id, from_time, direction, realtime=snapshot)

    def get_service_alerts(self, relevant_only: bool = False) -> List[Alert]:
        """
        Get current service alerts.

        Args:
            relevant_only: Keep only alerts concerning the configured route or target stop.

        Returns:
            List of Alert objects, empty when the alert feed is unavailable.
        """
        try:
            alerts = self.decoder.fetch_alerts()
        except FeedError as e:
            logger.warning(f"Failed to fetch alerts: {e}")
            return []

        if relevant_only:
            alerts = [
                alert for alert in alerts
                if alert_relevant_to(
                    alert, self.config.route_id, self.stop_id, self.alert_policy, self._route_of_trip
                )
            ]
        return alerts

    def alert_relevant_to(self, alert: Alert, route_id: Optional[str] = None) -> bool:
        """Check an alert against a route using this service's alert policy."""
        return alert_relevant_to(
            alert, route_id or self.config.route_id, policy=self.alert_policy, route_of_trip=self._route_of_trip
        )

    def _route_of_trip(self, trip_id: str) -> Optional[str]:
        trip = self.store.get_trip(trip_id)
        return trip.route_id if trip else None

    def is_within_service_hours(self, time: Optional[datetime] = None) -> bool:
        """Check whether ferries are scheduled to run at ``time`` (default now)."""
        return self.fallback.is_within_service_hours(time or datetime.now(self.store.tz), self.stop_id)

    def get_route_info(self) -> Optional[RouteInfo]:
        """Route name and destinations as seen from the target stop."""
        self.initialize()
        return self.store.route_info(self.config.route_id, self.stop_id)

    def get_stop_board(
        self,
        from_time: Optional[datetime] = None,
        direction: Union[None, int, str, Direction] = None,
    ) -> StopBoard:
        """
        Get complete data for the target stop.

        Returns:
            StopBoard with departures, relevant alerts and route info.
        """
        departures = self.get_departures(from_time=from_time, direction=direction)
        return StopBoard(
            stop=self.stop,
            departures=departures,
            alerts=self.get_service_alerts(relevant_only=True),
            last_updated=datetime.now(self.store.tz),
            route_info=self.store.route_info(self.config.route_id, self.stop_id),
        )

    def cleanup(self) -> None:
        """Release resources and clear the real-time cache."""
        self.decoder.clear_cache()
        self.decoder.close()
        logger.info("Cleaned up departure service resources")
