"""Tests for GTFS static loading and StaticFeedStore."""

import tempfile
import unittest
import warnings
from datetime import date
from pathlib import Path
from unittest.mock import MagicMock

import requests

from feed_fixtures import at, build_zip, corrupt_member, gtfs_files, make_config, make_store, mock_response

from ferrytrack.departure_service import FerryDepartureService
from ferrytrack.errors import FeedMalformed, FeedUnavailable, StaleDataServed
from ferrytrack.gtfs_loader import StaticFeedStore, parse_archive
from ferrytrack.models import ExceptionType, FeedSnapshot
from ferrytrack.realtime_client import RealTimeFeedDecoder


class TestParseArchive(unittest.TestCase):
    """Test parsing of GTFS ZIP archives."""

    def test_parse_with_bom(self):
        """Test that files starting with a UTF-8 BOM parse normally."""
        tables = parse_archive(build_zip(gtfs_files(), bom=True))

        self.assertIn("24", tables.stops)
        self.assertEqual(tables.stops["24"].name, "Red Hook/Atlantic Basin")
        self.assertAlmostEqual(tables.stops["24"].latitude, 40.6782, places=3)
        self.assertEqual(tables.routes["SB"].display_name, "South Brooklyn")
        self.assertEqual(tables.trips["A"].direction_id, 0)
        self.assertEqual(tables.trips["B"].headsign, "Wall St")

    def test_stop_times_sorted(self):
        """Test that stop times are ordered by stop_sequence per trip."""
        tables = parse_archive(build_zip(gtfs_files()))

        self.assertEqual([st.stop_id for st in tables.stop_times["A"]], ["87", "24", "20"])
        self.assertEqual(tables.stop_times["A"][1].departure_seconds, 11 * 3600 + 20 * 60)

    def test_orphan_stop_times_dropped(self):
        """Test that stop times of unknown trips are discarded."""
        tables = parse_archive(build_zip(gtfs_files()))
        self.assertNotIn("GHOST", tables.stop_times)

    def test_missing_required_table(self):
        """Test that a feed without trips.txt is rejected."""
        with self.assertRaises(FeedMalformed) as context:
            parse_archive(build_zip(gtfs_files(trips=None)))
        self.assertEqual(context.exception.source, "trips.txt")

    def test_missing_required_column(self):
        """Test that a table without a mandatory column is rejected."""
        with self.assertRaises(FeedMalformed):
            parse_archive(build_zip(gtfs_files(stops="stop_id,stop_lat\n24,40.6\n")))

    def test_calendar_optional(self):
        """Test that calendar files may be absent."""
        tables = parse_archive(build_zip(gtfs_files(calendar=None, calendar_dates=None)))
        self.assertEqual(tables.calendar, {})
        self.assertEqual(tables.calendar_exceptions, {})
        self.assertEqual(len(tables.trips), 2)

    def test_calendar_parsed(self):
        """Test weekly flags and date exceptions."""
        tables = parse_archive(build_zip(gtfs_files()))

        service = tables.calendar["1"]
        self.assertEqual(service.weekdays, (True, True, True, True, True, False, False))
        self.assertEqual(service.start_date, date(2024, 1, 1))
        removed = tables.calendar_exceptions[("1", date(2025, 7, 4))]
        self.assertEqual(removed.exception_type, ExceptionType.REMOVED)

    def test_untimed_stop_skipped(self):
        """Test that stop_times rows without a time are skipped."""
        stop_times = (
            "trip_id,arrival_time,departure_time,stop_id,stop_sequence\n"
            "A,11:00:00,11:00:00,87,1\n"
            "A,,,24,2\n"
        )
        tables = parse_archive(build_zip(gtfs_files(stop_times=stop_times)))
        self.assertEqual([st.stop_id for st in tables.stop_times["A"]], ["87"])

    def test_optional_table_missing_columns(self):
        """Test that an unusable calendar.txt is ignored rather than failing the feed."""
        calendar = "service_id,monday,start_date,end_date\n1,1,20240101,20301231\n"
        tables = parse_archive(build_zip(gtfs_files(calendar=calendar)))

        self.assertEqual(tables.calendar, {})
        self.assertEqual(len(tables.calendar_exceptions), 2)
        self.assertEqual(len(tables.trips), 2)

    def test_corrupt_member(self):
        """Test that a member whose compressed data is damaged is reported as malformed."""
        archive = corrupt_member(build_zip(gtfs_files()), "stop_times.txt")
        with self.assertRaises(FeedMalformed):
            parse_archive(archive)

    def test_corrupt_optional_member(self):
        """Test that a damaged optional member is skipped."""
        archive = corrupt_member(build_zip(gtfs_files()), "calendar_dates.txt")
        tables = parse_archive(archive)

        self.assertEqual(tables.calendar_exceptions, {})
        self.assertIn("1", tables.calendar)

    def test_not_a_zip(self):
        """Test that a payload which is not a ZIP archive is rejected."""
        with self.assertRaises(FeedMalformed):
            parse_archive(b"<html>maintenance</html>")

    def test_nested_folder(self):
        """Test that tables inside a sub-folder of the archive are found."""
        files = {f"gtfs/{name}": content for name, content in gtfs_files().items()}
        tables = parse_archive(build_zip(files))
        self.assertIn("A", tables.trips)


class TestStaticFeedStore(unittest.TestCase):
    """Test downloading, caching and lookups."""

    def make_session(self, *responses) -> MagicMock:
        session = MagicMock()
        session.get.side_effect = list(responses)
        return session

    def test_load_fetches_once(self):
        """Test that a fresh cached feed is not downloaded again."""
        session = self.make_session(mock_response(build_zip(gtfs_files())))
        store = StaticFeedStore(make_config(), session=session)

        store.load()
        store.load()

        session.get.assert_called_once()
        self.assertTrue(store.is_loaded)
        self.assertIsNotNone(store.last_updated)

    def test_network_failure(self):
        """Test that a failed download with nothing cached raises FeedUnavailable."""
        error = requests.ConnectionError("no route to host")
        session = self.make_session(error, error, error)
        store = StaticFeedStore(make_config(), session=session)

        with self.assertRaises(FeedUnavailable):
            store.load()
        self.assertEqual(session.get.call_count, 3)
        self.assertFalse(store.is_loaded)

    def test_stale_feed_kept_on_failure(self):
        """Test that the previous schedule is kept when a refresh fails."""
        error = requests.Timeout("timed out")
        session = self.make_session(mock_response(build_zip(gtfs_files())), error, error, error)
        store = StaticFeedStore(make_config(max_attempts=3), session=session)
        store.load()
        tables = store.tables

        store._cache.ttl = 0
        with self.assertWarns(StaleDataServed):
            store.load()

        self.assertIs(store.tables, tables)

    def test_malformed_refresh_keeps_schedule(self):
        """Test that a malformed refresh raises but leaves the loaded schedule in place."""
        bad = build_zip(gtfs_files(trips=None))
        session = self.make_session(mock_response(build_zip(gtfs_files())), mock_response(bad))
        store = StaticFeedStore(make_config(), session=session)
        store.load()
        tables = store.tables

        store._cache.ttl = 0
        with self.assertRaises(FeedMalformed):
            store.load()
        self.assertIs(store.tables, tables)

    def test_load_with_unusable_calendar(self):
        """Test that loading succeeds when calendar.txt lacks columns."""
        calendar = "service_id,monday,start_date,end_date\n1,1,20240101,20301231\n"
        session = self.make_session(mock_response(build_zip(gtfs_files(calendar=calendar))))
        store = StaticFeedStore(make_config(), session=session)

        store.load()

        self.assertTrue(store.is_loaded)
        self.assertEqual(store.tables.calendar, {})

    def test_corrupt_refresh_keeps_departures(self):
        """Test that a corrupt archive on refresh leaves departures served from the current schedule."""
        store = make_store()
        store._session.get.return_value = mock_response(corrupt_member(build_zip(gtfs_files()), "stop_times.txt"))
        store._cache.invalidate()
        decoder = MagicMock(spec=RealTimeFeedDecoder)
        decoder.fetch_trip_updates.return_value = FeedSnapshot.empty()
        service = FerryDepartureService(config=store.config, store=store, decoder=decoder)

        departures = service.get_departures(from_time=at(11, 0))

        self.assertEqual([d.trip_id for d in departures], ["A", "B"])
        store._session.get.assert_called()

    def test_load_from_directory(self):
        """Test loading an unpacked feed."""
        with tempfile.TemporaryDirectory() as tmp:
            for name, content in gtfs_files().items():
                Path(tmp, name).write_text(content, encoding="utf-8")
            store = StaticFeedStore(make_config(), session=MagicMock())
            store.load_from_directory(tmp)

        self.assertEqual(len(store.tables.trips), 2)
        # A directory load counts as fresh
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            store.load()

    def test_get_stop_not_found(self):
        """Test error handling for non-existent stop."""
        store = make_store()
        with self.assertRaises(ValueError):
            store.get_stop("NONEXISTENT")

    def test_find_stop_by_name_fragment(self):
        """Test stop discovery by case-insensitive name fragments."""
        store = make_store()

        self.assertEqual(store.find_stop_by_name_fragment("RED HOOK").stop_id, "24")
        self.assertEqual(store.find_stop_by_name_fragment("nowhere", "atlantic basin").stop_id, "24")
        self.assertIsNone(store.find_stop_by_name_fragment("governors island"))
        self.assertEqual(len(store.find_stops_by_name("Pier")), 1)

    def test_route_info(self):
        """Test route description as seen from Red Hook."""
        info = make_store().route_info("SB", "24")

        self.assertEqual(info.name, "South Brooklyn")
        self.assertEqual(info.direction(0).destinations, ("Sunset Park/BAT", "Bay Ridge"))
        self.assertEqual(info.direction(0).label, "towards Bay Ridge")
        self.assertEqual(info.direction(1).label, "towards Wall St/Pier 11")
        self.assertEqual(len(info.patterns), 2)
        self.assertIsNone(make_store().route_info("NOPE", "24"))

    def test_route_info_without_destinations(self):
        """Test that directions with no downstream stops use the configured name."""
        info = make_store().route_info("ER", "24")
        self.assertEqual(info.direction(1).label, "northbound")
        self.assertEqual(info.direction(1).destinations, ())

    def test_clear(self):
        """Test that clearing drops the loaded schedule."""
        store = make_store()
        store.clear()
        self.assertFalse(store.is_loaded)
        self.assertIsNone(store.last_updated)


if __name__ == "__main__":
    unittest.main()
