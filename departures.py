import logging
import math
from dataclasses import dataclass, field
from datetime import timedelta

from simClock import minutes_of_day, service_date

logger = logging.getLogger(__name__)


@dataclass
class SpawnLedger:
    """Per line-direction record of which departure slots were already handled."""
    next_index: int = 0
    spawned: set = field(default_factory=set)
    service_date: object = None  # service day the indices belong to

    def record(self, index):
        self.spawned.add(index)
        self.next_index = max(self.next_index, index + 1)

    def reset(self):
        self.next_index = 0
        self.spawned.clear()


@dataclass(frozen=True)
class DueSlot:
    index: int
    departure_minute: float
    initial_progress: float


def estimate_trip_minutes(path_length_m, average_speed_kmh):
    """One-way trip duration in simulated minutes at an assumed average speed."""
    if not average_speed_kmh or average_speed_kmh <= 0:
        return 0.0
    return (path_length_m / 1000.0) / average_speed_kmh * 60.0


def due_slots(schedule, ledger, now, trip_minutes):
    """Slots that became due by now and were never handled before.

    Slots whose trip would already be over are recorded in the ledger
    without being returned, so a client starting mid-day does not get a
    burst of finished trips.
    """
    if schedule is None or not schedule.is_valid():
        return []
    if not trip_minutes or trip_minutes <= 0:
        return []

    # slot indices count from the service day's first departure
    day = service_date(now)
    if ledger.service_date != day:
        if ledger.service_date is not None:
            ledger.reset()
        ledger.service_date = day

    now_min = minutes_of_day(now)
    first, last = schedule.first_minute, schedule.last_minute
    headway = schedule.headway_minutes

    if now_min < first or now_min > last:
        # out of service, next service day counts slots from zero again
        if ledger.next_index or ledger.spawned:
            ledger.reset()
        return []

    expected = int((now_min - first) // headway) + 1
    due = []
    for i in range(ledger.next_index, expected):
        departure = first + i * headway
        elapsed = now_min - departure
        if elapsed < 0:
            break
        if i in ledger.spawned:
            continue
        ledger.record(i)
        if elapsed > trip_minutes:
            logger.debug("[departures] slot %d already finished, skipping", i)
            continue
        due.append(DueSlot(index=i, departure_minute=departure,
                           initial_progress=elapsed / trip_minutes))
    return due


class DepartureScheduler:
    """Holds one spawn ledger per (line id, direction)."""

    def __init__(self):
        self.ledgers = {}

    def ledger_for(self, line_id, direction):
        return self.ledgers.setdefault((line_id, direction), SpawnLedger())

    def due_slots(self, line, direction, now, trip_minutes):
        return due_slots(line.schedule, self.ledger_for(line.id, direction), now, trip_minutes)

    def forget(self, line_id, direction=None):
        for key in [k for k in self.ledgers if k[0] == line_id and direction in (None, k[1])]:
            del self.ledgers[key]


def upcoming_departures(schedule, now, count=3):
    """Next scheduled departures at or after now, within today's service window."""
    if schedule is None or not schedule.is_valid() or count <= 0:
        return []
    now_min = minutes_of_day(now)
    first, last = schedule.first_minute, schedule.last_minute
    headway = schedule.headway_minutes

    start = max(0, math.ceil((now_min - first) / headway))
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    departures = []
    i = start
    while len(departures) < count:
        minute = first + i * headway
        if minute > last:
            break
        departures.append(midnight + timedelta(minutes=minute))
        i += 1
    return departures
