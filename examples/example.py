"""Example usage of FerryDepartureService."""

import logging
import sys
from datetime import datetime
from pathlib import Path

# Add src to path so we can import ferrytrack
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from ferrytrack import FerryConfig, FerryDepartureService, FeedMalformed
from ferrytrack.utils import group_by_direction, relative_time

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


def print_stop_board(direction: str = None):
    """
    Fetch and display the next departures and alerts for the configured stop.

    Args:
        direction: Optional "northbound" or "southbound" filter.
    """
    service = FerryDepartureService(FerryConfig.from_env())
    try:
        board = service.get_stop_board(direction=direction)
    except FeedMalformed as e:
        print(f"Error: the GTFS feed could not be used: {e}")
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}")
        print("Try 'northbound' or 'southbound'")
        sys.exit(1)

    now = datetime.now(service.store.tz)

    print(f"\n{'=' * 70}")
    print(f"Stop: {board.stop.name} (ID: {board.stop.stop_id})")
    if board.route_info:
        print(f"Route: {board.route_info.name}")
    print(f"Last updated: {board.last_updated.strftime('%H:%M:%S')}")
    print(f"{'=' * 70}\n")

    print("NEXT DEPARTURES:")
    print("-" * 70)
    if board.departures:
        for direction_id, departures in group_by_direction(board.departures).items():
            print(f"\n{service.config.direction_name(direction_id)}:")
            for departure in departures:
                print(
                    f"  {departure.display_time:>8} ({relative_time(departure.departs_at, now)}) "
                    f"{departure.direction_label} [{departure.provenance.name.lower()}]"
                )
    else:
        print("  No departures - outside service hours")

    print("\n" + "=" * 70)
    print("SERVICE ALERTS:")
    print("-" * 70)
    if board.alerts:
        for alert in board.alerts:
            print(f"\n[{alert.severity.name}] {alert.header}")
            if alert.description:
                print(f"  {alert.description}")
    else:
        print("  No service alerts")

    print("\n" + "=" * 70 + "\n")
    service.cleanup()


if __name__ == "__main__":
    print_stop_board(sys.argv[1] if len(sys.argv) > 1 else None)
