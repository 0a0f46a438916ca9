"""FerryTrack - Next ferry departures from a stop, merging schedule and live data."""

__version__ = "0.1.0"

from .config import FerryConfig, ServiceHours
from .errors import FeedError, FeedMalformed, FeedUnavailable, NoActiveService, StaleDataServed
from .models import (
    Alert,
    AlertScopePolicy,
    AlertSeverity,
    Departure,
    Direction,
    FeedSnapshot,
    Provenance,
    RouteInfo,
    RoutePattern,
    Stop,
    StopBoard,
    TripUpdateRecord,
)
from .feed_cache import FeedCache
from .gtfs_loader import FeedTables, StaticFeedStore
from .service_calendar import ServiceCalendarResolver
from .topology import RouteTopologyAnalyzer
from .realtime_client import RealTimeFeedDecoder
from .fallback import FallbackGenerator
from .reconciler import DepartureReconciler
from .departure_service import FerryDepartureService

__all__ = [
    "FerryDepartureService",
    "DepartureReconciler",
    "FallbackGenerator",
    "RealTimeFeedDecoder",
    "RouteTopologyAnalyzer",
    "ServiceCalendarResolver",
    "StaticFeedStore",
    "FeedTables",
    "FeedCache",
    "FerryConfig",
    "ServiceHours",
    "FeedError",
    "FeedMalformed",
    "FeedUnavailable",
    "NoActiveService",
    "StaleDataServed",
    "Alert",
    "AlertScopePolicy",
    "AlertSeverity",
    "Departure",
    "Direction",
    "FeedSnapshot",
    "Provenance",
    "RouteInfo",
    "RoutePattern",
    "Stop",
    "StopBoard",
    "TripUpdateRecord",
]
