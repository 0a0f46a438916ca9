"""GTFS-Realtime trip update and alert fetcher and decoder."""

import logging
from datetime import datetime, timezone, tzinfo
from typing import Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

import requests
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .config import USER_AGENT, FerryConfig
from .errors import FeedMalformed, FeedUnavailable
from .feed_cache import FeedCache
from .models import (
    Alert,
    AlertScopePolicy,
    AlertSeverity,
    FeedSnapshot,
    InformedEntity,
    TripUpdateRecord,
)

logger = logging.getLogger(__name__)

SKIPPED = gtfs_realtime_pb2.TripUpdate.StopTimeUpdate.SKIPPED


def _parse_message(data: bytes) -> gtfs_realtime_pb2.FeedMessage:
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(data)
    except DecodeError as e:
        raise FeedMalformed(f"Could not decode GTFS-Realtime message: {e}") from e
    return feed


def _records_from_trip_update(trip_update, tz: tzinfo) -> List[TripUpdateRecord]:
    trip = trip_update.trip
    if not trip.trip_id:
        return []
    route_id = trip.route_id or None
    direction_id = trip.direction_id if trip.HasField("direction_id") else None

    records = []
    for stop_time_update in trip_update.stop_time_update:
        if stop_time_update.schedule_relationship == SKIPPED:
            continue

        # Prefer the departure prediction, arrival is the best we have otherwise
        if stop_time_update.HasField("departure") and stop_time_update.departure.time:
            event = stop_time_update.departure
        elif stop_time_update.HasField("arrival") and stop_time_update.arrival.time:
            event = stop_time_update.arrival
        else:
            continue

        records.append(TripUpdateRecord(
            trip_id=trip.trip_id,
            stop_id=stop_time_update.stop_id,
            departs_at=datetime.fromtimestamp(event.time, tz=tz),
            delay_seconds=event.delay if event.HasField("delay") else 0,
            route_id=route_id,
            direction_id=direction_id,
        ))
    return records


def decode_trip_updates(data: bytes, tz: tzinfo = timezone.utc) -> FeedSnapshot:
    """
    Decode a GTFS-Realtime trip updates message.

    Args:
        data: Raw protobuf bytes.
        tz: Timezone the departure instants are expressed in.

    Returns:
        FeedSnapshot with one record per stop-level prediction. Entities that
        fail to convert are skipped and counted.

    Raises:
        FeedMalformed: If the payload is not a FeedMessage.
    """
    feed = _parse_message(data)

    records: List[TripUpdateRecord] = []
    skipped = 0
    for entity in feed.entity:
        if not entity.HasField("trip_update"):
            continue
        try:
            records.extend(_records_from_trip_update(entity.trip_update, tz))
        except (ValueError, OverflowError, OSError) as e:
            skipped += 1
            logger.debug(f"Skipping trip update entity {entity.id}: {e}")

    feed_timestamp = None
    if feed.header.HasField("timestamp") and feed.header.timestamp:
        feed_timestamp = datetime.fromtimestamp(feed.header.timestamp, tz=tz)

    logger.debug(f"Decoded {len(records)} stop predictions ({skipped} entities skipped)")
    return FeedSnapshot(records=tuple(records), feed_timestamp=feed_timestamp, skipped_entities=skipped)


def _translated_text(translated_string, default: str = "") -> str:
    """English translation if there is one, else the first."""
    translations = list(translated_string.translation)
    if not translations:
        return default
    for translation in translations:
        if translation.language.lower().startswith("en"):
            return translation.text
    return translations[0].text


def _informed_entity(selector) -> InformedEntity:
    trip_id = None
    route_id = selector.route_id or None
    if selector.HasField("trip"):
        trip_id = selector.trip.trip_id or None
        # Route can be given directly or through the trip descriptor
        route_id = route_id or selector.trip.route_id or None
    return InformedEntity(
        route_id=route_id,
        stop_id=selector.stop_id or None,
        trip_id=trip_id,
        agency_id=selector.agency_id or None,
        direction_id=selector.direction_id if selector.HasField("direction_id") else None,
    )


def decode_alerts(data: bytes) -> List[Alert]:
    """
    Decode service alerts from a GTFS-Realtime message.

    Raises:
        FeedMalformed: If the payload is not a FeedMessage.
    """
    feed = _parse_message(data)

    alerts: List[Alert] = []
    for entity in feed.entity:
        if not entity.HasField("alert"):
            continue
        alert = entity.alert
        try:
            severity = AlertSeverity(alert.severity_level) if alert.HasField("severity_level") \
                else AlertSeverity.UNKNOWN_SEVERITY
        except ValueError:
            severity = AlertSeverity.UNKNOWN_SEVERITY

        alerts.append(Alert(
            alert_id=entity.id,
            header=_translated_text(alert.header_text, "Service Alert"),
            description=_translated_text(alert.description_text),
            severity=severity,
            informed_entities=tuple(_informed_entity(s) for s in alert.informed_entity),
        ))

    logger.debug(f"Parsed {len(alerts)} alerts")
    return alerts


def is_target_departure(update: TripUpdateRecord, stop_id: str, not_before: datetime) -> bool:
    """True if the prediction is for ``stop_id`` and departs strictly after ``not_before``."""
    return update.stop_id == stop_id and update.departs_at > not_before


def alert_relevant_to(
    alert: Alert,
    route_id: str,
    stop_id: Optional[str] = None,
    policy: AlertScopePolicy = AlertScopePolicy.IGNORE_UNSCOPED,
    route_of_trip: Optional[Callable[[str], Optional[str]]] = None,
) -> bool:
    """
    Decide whether an alert concerns a route (or, when given, a stop).

    Alerts with no informed entities are not relevant unless ``policy`` is
    UNSCOPED_IS_SYSTEM_WIDE. An entity naming only a trip is matched through
    ``route_of_trip``, which maps a trip id to its route id.
    """
    if not alert.informed_entities:
        return policy is AlertScopePolicy.UNSCOPED_IS_SYSTEM_WIDE

    for entity in alert.informed_entities:
        if entity.route_id == route_id:
            return True
        if stop_id is not None and entity.stop_id == stop_id:
            return True
        if entity.route_id is None and entity.trip_id and route_of_trip is not None:
            if route_of_trip(entity.trip_id) == route_id:
                return True
    return False


class RealTimeFeedDecoder:
    """Fetches and decodes GTFS-Realtime trip updates and alerts."""

    def __init__(
        self,
        config: Optional[FerryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or FerryConfig()
        self.tz = ZoneInfo(self.config.timezone)
        self._session = session or requests.Session()
        self._session.headers.setdefault("User-Agent", USER_AGENT)

        self._decoders: Dict[str, Callable[[bytes], object]] = {
            self.config.trip_updates_url: lambda data: decode_trip_updates(data, self.tz),
            self.config.alerts_url: decode_alerts,
        }
        self._cache: FeedCache = FeedCache(
            self._fetch_and_decode,
            ttl=self.config.realtime_ttl_seconds,
            max_stale=self.config.realtime_max_stale_seconds,
            stale_on=(FeedMalformed,),
            max_attempts=self.config.max_attempts,
            backoff_base=self.config.backoff_base_seconds,
            backoff_max=self.config.backoff_max_seconds,
            name="GTFS-Realtime",
        )

    def _fetch_feed(self, feed_url: str) -> bytes:
        """
        Download a GTFS-Realtime feed.

        Args:
            feed_url: Full URL to the feed.

        Returns:
            Raw protobuf bytes.
        """
        logger.debug(f"Fetching {feed_url}")
        try:
            response = self._session.get(feed_url, timeout=self.config.request_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise FeedUnavailable(f"Failed to fetch real-time feed: {e}", source=feed_url) from e
        return response.content

    def _fetch_and_decode(self, feed_url: str):
        return self._decoders[feed_url](self._fetch_feed(feed_url))

    def fetch_trip_updates(self) -> FeedSnapshot:
        """
        Get the current trip updates, from cache while fresh.

        Raises:
            FeedUnavailable: If the feed cannot be fetched and nothing is cached.
            FeedMalformed: If the payload cannot be decoded and nothing usable is cached.
        """
        url = self.config.trip_updates_url
        snapshot = self._cache.get(url)
        if snapshot is None:
            raise FeedUnavailable("Trip updates unavailable", source=url)
        return snapshot

    def fetch_alerts(self) -> List[Alert]:
        """
        Get the current service alerts, from cache while fresh.

        Raises:
            FeedUnavailable: If the feed cannot be fetched and nothing is cached.
            FeedMalformed: If the payload cannot be decoded and nothing usable is cached.
        """
        url = self.config.alerts_url
        alerts = self._cache.get(url)
        if alerts is None:
            raise FeedUnavailable("Service alerts unavailable", source=url)
        return alerts

    @staticmethod
    def is_target_departure(update: TripUpdateRecord, stop_id: str, not_before: datetime) -> bool:
        return is_target_departure(update, stop_id, not_before)

    @staticmethod
    def alert_relevant_to(
        alert: Alert,
        route_id: str,
        stop_id: Optional[str] = None,
        policy: AlertScopePolicy = AlertScopePolicy.IGNORE_UNSCOPED,
        route_of_trip: Optional[Callable[[str], Optional[str]]] = None,
    ) -> bool:
        return alert_relevant_to(alert, route_id, stop_id, policy, route_of_trip)

    def clear_cache(self) -> None:
        """Manually clear the cache."""
        self._cache.invalidate()

    def close(self) -> None:
        self._session.close()
