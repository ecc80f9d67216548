import pytest

from conftest import FakeTime, make_clock, scenario_records
from simConfig import load_config
from simEngine import Simulator
from transitData import Direction, StaticSnapshot


def make_sim(fake, snapshot=None, provider=None, **config):
    if snapshot is None:
        snapshot = StaticSnapshot.from_records(*scenario_records())
    return Simulator(snapshot, clock=make_clock(fake), config=load_config(**config),
                     route_provider=provider, seed=7, real_time=fake)


def only_session(sim):
    (session,) = sim.sessions.values()
    return session


def test_schedule_drives_spawning(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")

    sim.tick()
    session = only_session(sim)
    assert len(session.vehicles) == 1
    (first_id,) = session.vehicles
    assert first_id.startswith("road-outbound-0-")
    assert sim.position_of(first_id) == (0.0, 0.0)

    fake_time.advance(20)
    sim.tick()
    assert sim.now().strftime("%H:%M") == "06:20"
    assert len(session.vehicles) == 2
    first = session.vehicles[first_id]
    assert first.progress > 0.0
    assert sim.position_of(first_id) == first.position

    fake_time.advance(41)
    sim.tick()
    assert sim.now().strftime("%H:%M") == "07:01"
    assert len(session.vehicles) == 2
    assert session.ledger.next_index == 0


def test_tick_publishes_positions_for_active_vehicles(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")
    published = sim.tick()
    assert set(published) == sim.active_vehicles_for("L1", "Outbound")
    positions = sim.positions()
    assert positions[0]["line_id"] == "L1"
    assert positions[0]["status"] == "paused"


def test_completed_vehicles_are_removed(fake_time):
    sim = make_sim(fake_time, motion_time_scale=1e6)
    sim.observe("L1")
    sim.tick()
    (vid,) = only_session(sim).vehicles

    fake_time.advance(1)
    sim.tick()
    assert only_session(sim).vehicles == {}
    assert sim.position_of(vid) is None


def test_expired_vehicles_are_removed(fake_time):
    sim = make_sim(fake_time, expiry_factor=0.01)
    sim.observe("L1")
    sim.tick()
    assert len(only_session(sim).vehicles) == 1

    fake_time.advance(3)
    sim.tick()
    assert only_session(sim).vehicles == {}


def test_unknown_line_and_direction():
    sim = make_sim(FakeTime())
    with pytest.raises(KeyError):
        sim.observe("nope")
    with pytest.raises(ValueError):
        sim.observe("L1", "Inbound")


def test_bidirectional_guideway_runs_both_ways(fake_time):
    snapshot = StaticSnapshot.from_records(*scenario_records(mode="guideway-bidirectional", direction="Both"))
    sim = make_sim(fake_time, snapshot=snapshot)
    sessions = sim.observe("L1")
    assert [s.direction for s in sessions] == [Direction.OUTBOUND, Direction.INBOUND]

    inbound = sim.sessions[("L1", Direction.INBOUND)]
    assert inbound.path.points == [(0.0, 2.0), (0.0, 1.0), (0.0, 0.0)]
    assert [s.stop_id for s in inbound.stops] == ["C", "B", "A"]

    sim.tick()
    assert len(sim.active_vehicles_for("L1", "Inbound")) == 1
    assert len(sim.active_vehicles_for("L1", "Outbound")) == 1


def test_routing_failure_falls_back_and_is_cached(fake_time, failing_provider):
    sim = make_sim(fake_time, provider=failing_provider)
    (session,) = sim.observe("L1")
    assert session.path.points == [(0.0, 0.0), (0.0, 1.0), (0.0, 2.0)]
    assert session.trip_minutes == pytest.approx(222.39 / 50 * 60, rel=1e-3)

    sim.forget("L1")
    assert sim.sessions == {}
    sim.observe("L1")
    assert failing_provider.calls == 1


def test_forget_drops_vehicles(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")
    sim.tick()
    sim.forget("L1", "Outbound")
    assert sim.positions() == []
    assert sim.published == {}


def test_vanished_line_is_dropped(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")
    sim.tick()
    sim.update_snapshot(StaticSnapshot(stops=sim.snapshot.stops))
    assert sim.sessions == {}
    assert sim.tick() == {}


def test_changed_stops_rebuild_the_path_but_keep_the_ledger(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")
    sim.tick()
    ledger = only_session(sim).ledger

    lines, stops = scenario_records()
    lines[0]["orderedStopIds"] = ["A", "B"]
    sim.update_snapshot(StaticSnapshot.from_records(lines, stops))
    session = only_session(sim)
    assert session.ledger is ledger
    assert session.stop_ids == ("A", "B")
    assert session.vehicles == {}

    # slot 0 was already handled
    sim.tick()
    assert session.vehicles == {}


def test_arrivals_are_logged_and_capped(fake_time):
    snapshot = StaticSnapshot.from_records(*scenario_records(headway=1))
    sim = make_sim(fake_time, snapshot=snapshot, max_events=2)
    sim.observe("L1")
    sim.tick()
    event = sim.events()[0]
    assert event["stop_id"] == "A"
    assert event["stop_name"] == "Alpha"
    assert event["timestamp"] == "06:00:00"
    assert event["dwell"] == 0.5

    for _ in range(4):
        fake_time.advance(1)
        sim.tick()
    assert len(sim.event_log) == 2
    assert len(sim.events(limit=1)) == 1


def test_departures_for(fake_time):
    sim = make_sim(fake_time)
    fake_time.advance(5)
    assert [t.strftime("%H:%M") for t in sim.departures_for("L1")] == ["06:20", "06:40", "07:00"]
    with pytest.raises(KeyError):
        sim.departures_for("nope")


def test_next_service_day_spawns_from_slot_zero(fake_time):
    snapshot = StaticSnapshot.from_records(*scenario_records(first="05:30", last="00:30", headway=30))
    sim = Simulator(snapshot, clock=make_clock(fake_time, hour=23, minute=50), seed=7, real_time=fake_time)
    (session,) = sim.observe("L1")
    sim.tick()
    assert session.ledger.next_index == 37
    assert not any(vid.startswith("road-outbound-0-") for vid in session.vehicles)

    # 00:01 wraps to 06:00 of the next day
    fake_time.advance(11)
    sim.tick()
    assert sim.last_now.strftime("%d %H:%M") == "11 06:00"
    assert any(vid.startswith("road-outbound-0-") for vid in session.vehicles)
    assert any(vid.startswith("road-outbound-1-") for vid in session.vehicles)

    fake_time.advance(120)
    sim.tick()
    assert sim.last_now.strftime("%H:%M") == "08:00"
    assert session.ledger.next_index == 6


def test_forget_drops_the_spawn_ledger(fake_time):
    sim = make_sim(fake_time)
    sim.observe("L1")
    sim.tick()
    assert ("L1", Direction.OUTBOUND) in sim.scheduler.ledgers
    sim.forget("L1")
    assert sim.scheduler.ledgers == {}

    # observing again starts a fresh ledger, so slot 0 spawns again
    sim.observe("L1")
    sim.tick()
    assert len(only_session(sim).vehicles) == 1
