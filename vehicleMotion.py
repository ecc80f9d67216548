import logging
import random
from dataclasses import dataclass, field
from enum import Enum

from pathGeometry import haversine_m
from simConfig import (
    DWELL_SECONDS,
    STOP_RADIUS_M,
    TRAFFIC_CHECK_INTERVAL_S,
    TRAFFIC_HOLD_PROBABILITY,
    TRAFFIC_HOLD_RANGE_S,
)

logger = logging.getLogger(__name__)


class MotionStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PathStop:
    stop_id: str
    name: str
    lat: float
    lon: float
    progress: float  # normalized position along the path

    @property
    def coordinate(self):
        return (self.lat, self.lon)


def stops_on_path(path, stops, direction=None):
    """Place stops on the path, in travel order, keeping those serving direction."""
    placed = []
    for stop in stops:
        if direction is not None and not stop.serves(direction):
            continue
        placed.append(PathStop(stop.id, stop.name, stop.lat, stop.lon, path.progress_of(stop.coordinate)))
    return placed


@dataclass
class VehicleMotionState:
    vehicle_id: str
    line_id: str
    direction: object
    path: object
    stops: list
    speed_mps: float
    progress: float = 0.0
    pause_until: float = 0.0
    visited: set = field(default_factory=set)
    completed: bool = False
    position: tuple = None
    departure: object = None    # virtual departure time
    expires_at: object = None   # virtual time after which the trip is retired
    stop_radius_m: float = STOP_RADIUS_M
    traffic_hold_probability: float = TRAFFIC_HOLD_PROBABILITY
    traffic_check_interval_s: float = TRAFFIC_CHECK_INTERVAL_S
    traffic_hold_range_s: tuple = TRAFFIC_HOLD_RANGE_S
    last_traffic_check: float = None

    def __post_init__(self):
        self.progress = min(max(float(self.progress), 0.0), 1.0)
        # stops already behind a vehicle that starts mid-route never trigger
        if self.progress > 0.0:
            for stop in self.stops:
                if stop.progress < self.progress:
                    self.visited.add(stop.stop_id)
        if self.position is None:
            self.position = self.path.point_at_progress(self.progress)
        if self.progress >= 1.0:
            self._complete()

    def status(self, now):
        if self.completed:
            return MotionStatus.COMPLETED
        if now < self.pause_until:
            return MotionStatus.PAUSED
        return MotionStatus.RUNNING

    def next_stop(self):
        for stop in self.stops:
            if stop.stop_id not in self.visited:
                return stop
        return None

    def _complete(self):
        self.completed = True
        self.progress = 1.0
        if len(self.path) >= 2:
            self.position = self.path.points[-1]

    def advance(self, now, dt, dwell_seconds=DWELL_SECONDS, rng=None):
        """Move one animation tick. Returns the PathStop arrived at, if any.

        now and dt are real (wall-clock) seconds; the virtual clock only
        drives the schedule. dwell_seconds may be a number or a callable
        sampled on arrival.
        """
        if self.completed:
            return None
        if now < self.pause_until:
            return None
        if len(self.path) < 2 or self.path.length <= 0.0:
            self._complete()
            return None

        self.progress += self.speed_mps * max(dt, 0.0) / self.path.length
        if self.progress >= 1.0:
            self._complete()
            return None
        self.position = self.path.point_at_progress(self.progress)

        # only the next unvisited stop is checked, so stops trigger in order
        stop = self.next_stop()
        if stop is not None:
            near = haversine_m(self.position, stop.coordinate) < self.stop_radius_m
            if near or self.progress >= stop.progress:
                dwell = dwell_seconds() if callable(dwell_seconds) else dwell_seconds
                self.position = stop.coordinate
                self.pause_until = now + dwell
                self.visited.add(stop.stop_id)
                return stop

        self._maybe_hold_for_traffic(now, rng)
        return None

    def _maybe_hold_for_traffic(self, now, rng):
        if self.traffic_hold_probability <= 0.0:
            return
        if self.last_traffic_check is not None and now - self.last_traffic_check <= self.traffic_check_interval_s:
            return
        self.last_traffic_check = now
        rng = rng or random
        if rng.random() < self.traffic_hold_probability:
            low, high = self.traffic_hold_range_s
            self.pause_until = now + rng.uniform(low, high)
            logger.debug("[motion] %s held in traffic", self.vehicle_id)

    def to_dict(self, now):
        lat, lon = self.position if self.position else (None, None)
        return {
            "id": self.vehicle_id,
            "line_id": self.line_id,
            "direction": getattr(self.direction, "value", self.direction),
            "lat": lat,
            "lon": lon,
            "progress": round(self.progress, 5),
            "status": self.status(now).value,
            "visited": sorted(self.visited),
        }
