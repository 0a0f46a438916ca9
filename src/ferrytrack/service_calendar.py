"""Resolves whether a GTFS service runs on a given day."""

import logging
from datetime import date, datetime
from typing import Dict, Iterable, Optional, Set, Tuple, Union
from zoneinfo import ZoneInfo

from .models import CalendarException, CalendarService, ExceptionType
from .utils import local_day

logger = logging.getLogger(__name__)


class ServiceCalendarResolver:
    """
    Answers "does service X run on day D" from calendar.txt and calendar_dates.txt.

    A calendar_dates.txt entry for the exact (service, date) always decides
    the answer; the weekly calendar is only consulted when there is none.
    """

    def __init__(
        self,
        calendar: Dict[str, CalendarService],
        exceptions: Dict[Tuple[str, date], CalendarException],
        tz: ZoneInfo,
    ):
        self.calendar = calendar
        self.exceptions = exceptions
        self.tz = tz

    def is_active(self, service_id: str, day: Union[date, datetime]) -> bool:
        """
        Check whether a service runs on a day.

        Args:
            service_id: service_id from trips.txt.
            day: A date, or a datetime which is first converted to the feed timezone.

        Returns:
            True if trips of this service operate on that calendar day.
        """
        service_day = local_day(day, self.tz)

        exception = self.exceptions.get((service_id, service_day))
        if exception is not None:
            return exception.exception_type == ExceptionType.ADDED

        service = self.calendar.get(service_id)
        if service is None:
            return False
        return service.runs_on(service_day)

    def active_services(self, day: Union[date, datetime], service_ids: Optional[Iterable[str]] = None) -> Set[str]:
        """Service ids running on a day, optionally restricted to ``service_ids``."""
        if service_ids is None:
            service_ids = set(self.calendar) | {service_id for service_id, _ in self.exceptions}
        active = {service_id for service_id in service_ids if self.is_active(service_id, day)}
        logger.debug(f"{len(active)} services active on {local_day(day, self.tz)}")
        return active
