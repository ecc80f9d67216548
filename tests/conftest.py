from datetime import datetime

import pytest

from pathGeometry import RouteProvider, RoutingError
from simClock import MemoryAnchorStore, VirtualClock
from transitData import StaticSnapshot

SERVICE_DAY = datetime(2026, 6, 10)


class FakeTime:
    """Settable stand-in for time.time / time.monotonic."""

    def __init__(self, start=1_000_000.0):
        self.t = start

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += seconds


class FailingProvider(RouteProvider):
    def __init__(self):
        self.calls = 0

    def route(self, points):
        self.calls += 1
        raise RoutingError("routing unavailable")


def sim_time(hour, minute=0, second=0):
    return SERVICE_DAY.replace(hour=hour, minute=minute, second=second)


def make_clock(fake, hour=6, minute=0, speed=60.0, store=None):
    anchors = {"anchorReal": fake(), "anchorSim": sim_time(hour, minute).timestamp()}
    return VirtualClock(speed=speed, store=store or MemoryAnchorStore(), real_time=fake, anchors=anchors)


def scenario_records(mode="road", direction="Outbound", first="06:00", last="07:00", headway=20):
    stops = [
        {"id": "A", "name": "Alpha", "coordinate": [0.0, 0.0]},
        {"id": "B", "name": "Bravo", "coordinate": [1.0, 0.0]},
        {"id": "C", "name": "Charlie", "coordinate": [2.0, 0.0]},
    ]
    lines = [{
        "id": "L1",
        "number": "1",
        "longName": "Alpha - Charlie",
        "mode": mode,
        "direction": direction,
        "orderedStopIds": ["A", "B", "C"],
        "schedule": {"firstDeparture": first, "lastDeparture": last, "headwayMinutes": headway},
    }]
    return lines, stops


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def failing_provider():
    return FailingProvider()


@pytest.fixture
def scenario_snapshot():
    lines, stops = scenario_records()
    return StaticSnapshot.from_records(lines, stops)
