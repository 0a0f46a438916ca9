"""Tests for FerryDepartureService."""

import math
import unittest
from unittest.mock import MagicMock, patch

import requests

from feed_fixtures import at, build_zip, gtfs_files, make_config, make_store, mock_response

from ferrytrack.departure_service import FerryDepartureService
from ferrytrack.errors import FeedMalformed, FeedUnavailable
from ferrytrack.gtfs_loader import StaticFeedStore
from ferrytrack.models import (
    Alert,
    AlertScopePolicy,
    FeedSnapshot,
    InformedEntity,
    Provenance,
    TripUpdateRecord,
)
from ferrytrack.realtime_client import RealTimeFeedDecoder

ROUTE_ALERT = Alert("1", "Delays", informed_entities=(InformedEntity(route_id="SB"),))
UNSCOPED_ALERT = Alert("2", "Holiday schedule")
OTHER_ALERT = Alert("3", "Delays", informed_entities=(InformedEntity(route_id="ER"),))
TRIP_ALERT = Alert("4", "Trip cancelled", informed_entities=(InformedEntity(trip_id="A"),))
UNKNOWN_TRIP_ALERT = Alert("5", "Trip cancelled", informed_entities=(InformedEntity(trip_id="Z"),))


class TestFerryDepartureService(unittest.TestCase):
    """Test the service facade over the static and real-time feeds."""

    def make_service(self, store=None, **kwargs) -> FerryDepartureService:
        store = store or make_store()
        self.decoder = MagicMock(spec=RealTimeFeedDecoder)
        self.decoder.fetch_trip_updates.return_value = FeedSnapshot.empty()
        self.decoder.fetch_alerts.return_value = [ROUTE_ALERT, UNSCOPED_ALERT, OTHER_ALERT]
        return FerryDepartureService(config=store.config, store=store, decoder=self.decoder, **kwargs)

    def test_initialize_discovers_stop(self):
        """Test that the target stop is found by name."""
        service = self.make_service()
        service.initialize()

        self.assertEqual(service.stop.stop_id, "24")
        self.assertEqual(service.stop_id, "24")

    def test_initialize_falls_back_to_configured_stop(self):
        """Test that the configured stop id is used when discovery fails."""
        service = self.make_service(make_store(stop_name_fragments=("governors island",), stop_id="87"))
        service.initialize()
        self.assertEqual(service.stop.name, "Wall St/Pier 11")

    def test_initialize_placeholder_stop(self):
        """Test that an unknown configured stop still gives a usable stop."""
        service = self.make_service(make_store(stop_name_fragments=(), stop_id="999"))
        service.initialize()

        self.assertEqual(service.stop_id, "999")
        self.assertTrue(math.isnan(service.stop.latitude))

    def test_initialize_malformed_feed(self):
        """Test that a malformed static feed stops initialization."""
        store = make_store()
        service = self.make_service(store)

        with patch.object(store, "load", side_effect=FeedMalformed("no trips.txt")):
            with self.assertRaises(FeedMalformed):
                service.initialize()

    def test_initialize_unavailable_feed(self):
        """Test that an unreachable static feed does not stop initialization."""
        store = make_store()
        service = self.make_service(store)

        with patch.object(store, "load", side_effect=FeedUnavailable("offline")) as load:
            service.initialize()
            service.initialize()

        load.assert_called_once()
        self.assertEqual(service.stop_id, "24")

    def test_stop_discovered_after_outage(self):
        """Test that stop discovery runs again once the static feed comes back."""
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("down")] * 3 + [mock_response(build_zip(gtfs_files()))]
        store = StaticFeedStore(make_config(stop_id="999"), session=session)
        service = self.make_service(store)

        service.initialize()
        self.assertEqual(service.stop_id, "999")

        departures = service.get_departures(from_time=at(11, 0))

        self.assertEqual(service.stop_id, "24")
        self.assertEqual([d.trip_id for d in departures], ["A", "B"])

    def test_get_departures_merges_realtime(self):
        """Test that live predictions are merged into the schedule."""
        service = self.make_service()
        self.decoder.fetch_trip_updates.return_value = FeedSnapshot(
            records=(TripUpdateRecord("A", "24", at(11, 25), delay_seconds=300, route_id="SB"),)
        )

        departures = service.get_departures(from_time=at(11, 0))

        self.assertEqual([d.trip_id for d in departures], ["A", "B"])
        self.assertIs(departures[0].provenance, Provenance.REALTIME)

    def test_realtime_outage_serves_schedule(self):
        """Test that a real-time outage gives schedule-only departures."""
        service = self.make_service()
        self.decoder.fetch_trip_updates.side_effect = FeedUnavailable("timeout")

        departures = service.get_departures(from_time=at(11, 0))

        self.assertEqual([d.trip_id for d in departures], ["A", "B"])
        self.assertTrue(all(d.is_static for d in departures))

    def test_realtime_malformed_serves_schedule(self):
        """Test that an undecodable real-time payload gives schedule-only departures."""
        service = self.make_service()
        self.decoder.fetch_trip_updates.side_effect = FeedMalformed("garbage")

        departures = service.get_departures(from_time=at(11, 0))
        self.assertEqual(len(departures), 2)

    def test_direction_filter(self):
        """Test the direction filter passed through the service."""
        service = self.make_service()
        departures = service.get_departures(from_time=at(11, 0), direction="southbound")
        self.assertEqual([d.trip_id for d in departures], ["A"])

    def test_service_alerts(self):
        """Test fetching all alerts and only relevant ones."""
        service = self.make_service()
        service.initialize()

        self.assertEqual(len(service.get_service_alerts()), 3)
        self.assertEqual(service.get_service_alerts(relevant_only=True), [ROUTE_ALERT])

    def test_service_alerts_by_trip(self):
        """Test that alerts naming only a trip are kept when the trip runs on the route."""
        service = self.make_service()
        self.decoder.fetch_alerts.return_value = [TRIP_ALERT, UNKNOWN_TRIP_ALERT, OTHER_ALERT]

        self.assertEqual(service.get_service_alerts(relevant_only=True), [TRIP_ALERT])
        self.assertTrue(service.alert_relevant_to(TRIP_ALERT))
        self.assertFalse(service.alert_relevant_to(UNKNOWN_TRIP_ALERT))

    def test_service_alerts_system_wide_policy(self):
        """Test that unscoped alerts are kept under the system-wide policy."""
        service = self.make_service(alert_policy=AlertScopePolicy.UNSCOPED_IS_SYSTEM_WIDE)
        service.initialize()

        self.assertEqual(service.get_service_alerts(relevant_only=True), [ROUTE_ALERT, UNSCOPED_ALERT])
        self.assertTrue(service.alert_relevant_to(UNSCOPED_ALERT))

    def test_service_alerts_unavailable(self):
        """Test that an alert feed outage gives an empty list."""
        service = self.make_service()
        self.decoder.fetch_alerts.side_effect = FeedUnavailable("down")
        self.assertEqual(service.get_service_alerts(), [])

    def test_is_within_service_hours(self):
        """Test service hours for the target stop."""
        service = self.make_service()
        service.initialize()

        self.assertTrue(service.is_within_service_hours(at(11, 25)))
        self.assertFalse(service.is_within_service_hours(at(3, 0)))

    def test_get_stop_board(self):
        """Test the combined stop data."""
        service = self.make_service()
        board = service.get_stop_board(from_time=at(11, 0))

        self.assertEqual(board.stop.stop_id, "24")
        self.assertEqual(len(board.departures), 2)
        self.assertEqual(board.alerts, [ROUTE_ALERT])
        self.assertEqual(board.route_info.name, "South Brooklyn")
        self.assertIsNotNone(board.last_updated.tzinfo)

    def test_get_route_info(self):
        """Test route info as seen from the discovered stop."""
        info = self.make_service().get_route_info()
        self.assertEqual(info.direction(1).destinations, ("Wall St/Pier 11",))

    def test_cleanup(self):
        """Test that cleanup clears the cache and closes the decoder."""
        service = self.make_service()
        service.cleanup()

        self.decoder.clear_cache.assert_called_once()
        self.decoder.close.assert_called_once()


if __name__ == "__main__":
    unittest.main()
