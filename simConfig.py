import json
from dataclasses import dataclass, field, fields, asdict

# defaults for the simulation. one real second = one simulated minute.
CLOCK_SPEED = 60.0
CLOCK_STORE_KEY = "sim_clock_anchors"
SERVICE_DAY_START_HOUR = 6

# vehicles are drawn at 40-60 km/h of service speed. the motion loop runs on
# real animation time, so the visible speed is scaled up by MOTION_TIME_SCALE.
VEHICLE_SPEED_KMH = (40.0, 60.0)
MOTION_TIME_SCALE = 50.0
AVERAGE_SPEED_KMH = 50.0  # used only for the trip-duration estimate

STOP_RADIUS_M = 50.0
DWELL_SECONDS = 0.5
DWELL_KIND = "constant"

# random traffic holds, off unless configured
TRAFFIC_HOLD_PROBABILITY = 0.0
TRAFFIC_CHECK_INTERVAL_S = 2.0
TRAFFIC_HOLD_RANGE_S = (0.5, 1.5)

EXPIRY_FACTOR = 2.0  # a trip is retired after this many estimated durations
MAX_EVENTS = 100     # cap log size to avoid memory bloat

OSRM_URL = "https://router.project-osrm.org/route/v1"
ROUTING_TIMEOUT_S = 2.0
API_TIMEOUT_S = 5.0


@dataclass
class SimConfig:
    clock_speed: float = CLOCK_SPEED
    clock_store_key: str = CLOCK_STORE_KEY
    vehicle_speed_kmh: tuple = VEHICLE_SPEED_KMH
    motion_time_scale: float = MOTION_TIME_SCALE
    average_speed_kmh: float = AVERAGE_SPEED_KMH
    stop_radius_m: float = STOP_RADIUS_M
    dwell_seconds: float = DWELL_SECONDS
    dwell_kind: str = DWELL_KIND
    dwell_samples: list = field(default_factory=list)
    traffic_hold_probability: float = TRAFFIC_HOLD_PROBABILITY
    traffic_check_interval_s: float = TRAFFIC_CHECK_INTERVAL_S
    traffic_hold_range_s: tuple = TRAFFIC_HOLD_RANGE_S
    expiry_factor: float = EXPIRY_FACTOR
    max_events: int = MAX_EVENTS
    osrm_url: str = OSRM_URL
    routing_timeout_s: float = ROUTING_TIMEOUT_S
    api_timeout_s: float = API_TIMEOUT_S

    def to_dict(self):
        return asdict(self)


def load_config(path=None, **overrides):
    """Build a SimConfig from an optional JSON file plus keyword overrides."""
    values = {}
    if path:
        with open(path, encoding="utf-8") as f:
            values.update(json.load(f))
    values.update(overrides)

    known = {f.name for f in fields(SimConfig)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")

    # json has no tuples
    for key in ("vehicle_speed_kmh", "traffic_hold_range_s"):
        if key in values:
            low, high = values[key]
            values[key] = (float(low), float(high))
    return SimConfig(**values)
