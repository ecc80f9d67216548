import logging
import random
import time
import uuid
from datetime import timedelta

import numpy as np

from departures import DepartureScheduler, estimate_trip_minutes, upcoming_departures
from dwellModels import DwellModel
from pathGeometry import build_path
from simClock import VirtualClock
from simConfig import SimConfig
from transitData import Direction, StaticSnapshot
from vehicleMotion import VehicleMotionState, stops_on_path

logger = logging.getLogger(__name__)


class SimulationSession:
    """Simulation state for one observed line-direction.

    Owns the active vehicles; spawn bookkeeping lives in the simulator's
    DepartureScheduler under the same (line id, direction) key.
    """

    def __init__(self, line, direction, path, stops, trip_minutes, scheduler):
        self.line = line
        self.direction = direction
        self.path = path
        self.stops = stops
        self.trip_minutes = trip_minutes
        self.scheduler = scheduler
        self.vehicles = {}

    @property
    def key(self):
        return (self.line.id, self.direction)

    @property
    def ledger(self):
        return self.scheduler.ledger_for(self.line.id, self.direction)

    @property
    def stop_ids(self):
        return tuple(s.stop_id for s in self.stops)

    def due_slots(self, now):
        if len(self.path) < 2:
            return []
        return self.scheduler.due_slots(self.line, self.direction, now, self.trip_minutes)


class Simulator:
    """Per-frame driver: virtual clock, departures, vehicle motion, retirement."""

    def __init__(self, snapshot=None, clock=None, config=None, route_provider=None,
                 seed=None, dwell_model=None, real_time=time.monotonic):
        self.config = config or SimConfig()
        self.snapshot = snapshot or StaticSnapshot()
        self.clock = clock or VirtualClock(speed=self.config.clock_speed)
        self.route_provider = route_provider
        self.rng = random.Random(seed)
        self.np_rng = np.random.default_rng(seed)
        self.dwell_model = dwell_model or DwellModel.from_config(self.config)
        self.real_time = real_time

        self.sessions = {}
        self.scheduler = DepartureScheduler()
        self._paths = {}
        self.event_log = []
        self.published = {}
        self.last_tick = None
        self.last_now = None  # virtual time of the latest tick
        self.tick_count = 0

    # --- observation -------------------------------------------------------

    def observe(self, line_id, direction=None):
        """Start simulating a line; both travel directions unless one is given."""
        line = self.snapshot.lines.get(line_id)
        if line is None:
            raise KeyError(f"Unknown line '{line_id}'")
        if direction is None:
            directions = line.travel_directions()
        else:
            parsed = Direction.parse(direction)
            if parsed not in line.travel_directions():
                raise ValueError(f"Line '{line_id}' does not run {direction}")
            directions = [parsed]

        sessions = []
        for d in directions:
            session = self.sessions.get((line.id, d))
            if session is None:
                session = self._build_session(line, d)
                self.sessions[session.key] = session
                logger.info("[sim] observing line %s %s, %d stops, trip ~%.1f min",
                            line.number or line.id, d.value, len(session.stops), session.trip_minutes)
            sessions.append(session)
        return sessions

    def forget(self, line_id, direction=None):
        """Stop observing; in-memory state for the line is discarded."""
        if direction is None:
            directions = None
        else:
            parsed = Direction.parse(direction)
            directions = [parsed] if parsed is not None else []
        for key in list(self.sessions):
            if key[0] == line_id and (directions is None or key[1] in directions):
                del self.sessions[key]
                self.scheduler.forget(*key)
        if directions is None:
            self.scheduler.forget(line_id)
        self._publish()

    def _build_session(self, line, direction):
        stops = line.ordered_stops(self.snapshot, direction)
        cache_key = (line.id, direction, line.mode, tuple(s.id for s in stops))
        path = self._paths.get(cache_key)
        if path is None:
            path = build_path([s.coordinate for s in stops], line.mode, self.route_provider)
            self._paths[cache_key] = path
        placed = stops_on_path(path, stops, direction)
        trip = estimate_trip_minutes(path.length, self.config.average_speed_kmh)
        return SimulationSession(line, direction, path, placed, trip, self.scheduler)

    def update_snapshot(self, snapshot):
        """Swap in freshly fetched static data, between ticks."""
        self.snapshot = snapshot
        for key, session in list(self.sessions.items()):
            line = snapshot.lines.get(key[0])
            if line is None:
                logger.info("[sim] line %s vanished, dropping %d vehicles", key[0], len(session.vehicles))
                del self.sessions[key]
                self.scheduler.forget(*key)
                continue
            if key[1] not in line.travel_directions():
                del self.sessions[key]
                self.scheduler.forget(*key)
                continue
            stop_ids = tuple(s.id for s in line.ordered_stops(snapshot, key[1]) if s.serves(key[1]))
            if stop_ids != session.stop_ids or line.mode != session.line.mode:
                # path changed under the vehicles, they go; the ledger stays
                self.sessions[key] = self._build_session(line, key[1])
            else:
                session.line = line

    # --- tick ----------------------------------------------------------------

    def tick(self, real_now=None):
        """Advance the simulation one animation frame and publish positions."""
        real_now = self.real_time() if real_now is None else real_now
        dt = 0.0 if self.last_tick is None else max(0.0, real_now - self.last_tick)
        self.last_tick = real_now
        self.tick_count += 1

        now = self.clock.now()
        self.last_now = now

        for key, session in list(self.sessions.items()):
            if session.line.id not in self.snapshot.lines:
                del self.sessions[key]
                self.scheduler.forget(*key)

        # spawning always happens before motion
        for session in self.sessions.values():
            for slot in session.due_slots(now):
                self._spawn(session, slot, now)

        for session in self.sessions.values():
            for vehicle in session.vehicles.values():
                stop = vehicle.advance(real_now, dt, dwell_seconds=self._sample_dwell, rng=self.rng)
                if stop is not None:
                    self._log_arrival(vehicle, stop, vehicle.pause_until - real_now, now)

        for session in self.sessions.values():
            for vid in list(session.vehicles):
                vehicle = session.vehicles[vid]
                expired = vehicle.expires_at is not None and now > vehicle.expires_at
                if vehicle.completed or expired:
                    del session.vehicles[vid]

        return self._publish()

    def _publish(self):
        self.published = {
            vid: vehicle.position
            for session in self.sessions.values()
            for vid, vehicle in session.vehicles.items()
            if vehicle.position is not None
        }
        return self.published

    def _sample_dwell(self):
        return self.dwell_model.sample(self.np_rng)

    def _spawn(self, session, slot, now):
        line = session.line
        low, high = self.config.vehicle_speed_kmh
        speed_mps = self.rng.uniform(low, high) / 3.6 * self.config.motion_time_scale
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        departure = midnight + timedelta(minutes=slot.departure_minute)
        vehicle_id = f"{line.mode.value}-{session.direction.value.lower()}-{slot.index}-{uuid.uuid4().hex[:8]}"

        vehicle = VehicleMotionState(
            vehicle_id=vehicle_id,
            line_id=line.id,
            direction=session.direction,
            path=session.path,
            stops=list(session.stops),
            speed_mps=speed_mps,
            progress=slot.initial_progress,
            departure=departure,
            expires_at=departure + timedelta(minutes=session.trip_minutes * self.config.expiry_factor),
            stop_radius_m=self.config.stop_radius_m,
            traffic_hold_probability=self.config.traffic_hold_probability,
            traffic_check_interval_s=self.config.traffic_check_interval_s,
            traffic_hold_range_s=self.config.traffic_hold_range_s,
        )
        session.vehicles[vehicle_id] = vehicle
        logger.debug("[sim] spawned %s at %s (progress %.3f)", vehicle_id, now.strftime("%H:%M"), slot.initial_progress)
        return vehicle

    def _log_arrival(self, vehicle, stop, dwell, now):
        self.event_log.append({
            "timestamp": now.strftime("%H:%M:%S"),
            "vehicle_id": vehicle.vehicle_id,
            "line_id": vehicle.line_id,
            "direction": vehicle.direction.value,
            "stop_id": stop.stop_id,
            "stop_name": stop.name,
            "dwell": round(float(dwell), 2),
        })
        if len(self.event_log) > self.config.max_events:
            self.event_log = self.event_log[-self.config.max_events:]

    # --- read side for the UI --------------------------------------------------

    def now(self):
        return self.clock.now()

    def position_of(self, vehicle_id):
        return self.published.get(vehicle_id)

    def active_vehicles_for(self, line_id, direction):
        session = self.sessions.get((line_id, Direction.parse(direction)))
        if session is None:
            return set()
        return set(session.vehicles)

    def positions(self):
        real_now = self.last_tick if self.last_tick is not None else self.real_time()
        return [
            vehicle.to_dict(real_now)
            for session in self.sessions.values()
            for vehicle in session.vehicles.values()
        ]

    def events(self, limit=20):
        return self.event_log[-limit:]

    def departures_for(self, line_id, count=3):
        line = self.snapshot.lines.get(line_id)
        if line is None:
            raise KeyError(f"Unknown line '{line_id}'")
        return upcoming_departures(line.schedule, self.now(), count=count)
