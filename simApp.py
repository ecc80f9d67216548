import argparse
import functools
import logging
import sys
import threading

from flask import Flask, jsonify, request

import simPlots
from pathGeometry import OsrmRouteProvider
from simClock import JsonFileAnchorStore, VirtualClock
from simConfig import load_config
from simEngine import Simulator
from transitData import (
    DataUnavailableError,
    fetch_snapshot,
    load_snapshot_json,
    load_stops_csv,
)

logger = logging.getLogger(__name__)

app = Flask(__name__)

SIM = None        # the Simulator served by this app
API_URL = None    # transit api to re-fetch static data from, if any
RESULTS_DIR = "results"
SIM_LOCK = threading.Lock()  # one request at a time touches SIM


def init_sim(simulator, api_url=None, results_dir="results"):
    """Install the simulator the endpoints read from."""
    global SIM, API_URL, RESULTS_DIR
    SIM = simulator
    API_URL = api_url
    RESULTS_DIR = results_dir
    return SIM


def _require_sim():
    if SIM is None:
        raise DataUnavailableError("Simulation not initialized")
    return SIM


def locked(view):
    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        with SIM_LOCK:
            return view(*args, **kwargs)
    return wrapper


@app.errorhandler(DataUnavailableError)
def data_unavailable(exc):
    return jsonify({"error": str(exc)}), 503


@app.route("/clock")
@locked
def clock():
    sim = _require_sim()
    now = sim.now()
    return jsonify({"now": now.isoformat(timespec="seconds"), "speed": sim.clock.speed})


@app.route("/meta")
@locked
def meta():
    sim = _require_sim()
    observed = [
        {"line_id": line_id, "direction": direction.value,
         "active": len(session.vehicles), "trip_minutes": round(session.trip_minutes, 2)}
        for (line_id, direction), session in sim.sessions.items()
    ]
    return jsonify({
        "lines": len(sim.snapshot.lines),
        "stops": len(sim.snapshot.stops),
        "observed": observed,
        "tick_count": sim.tick_count,
        "config": sim.config.to_dict(),
    })


# every poll advances the simulation by the real time since the previous one
@app.route("/positions")
@locked
def positions():
    sim = _require_sim()
    sim.tick()
    return jsonify({
        "now": sim.last_now.isoformat(timespec="seconds"),
        "vehicles": sim.positions(),
    })


@app.route("/observe", methods=["POST"])
@locked
def observe():
    sim = _require_sim()
    data = request.get_json(silent=True) or {}
    line_id = data.get("line_id")
    if not line_id:
        return jsonify({"error": "Missing line_id"}), 400
    try:
        sessions = sim.observe(line_id, data.get("direction"))
    except KeyError:
        return jsonify({"error": f"Invalid line '{line_id}'"}), 404
    except ValueError as exc:
        return jsonify({"error": str(exc)}), 400
    return jsonify({"ok": True, "observing": [s.direction.value for s in sessions]})


@app.route("/forget", methods=["POST"])
@locked
def forget():
    sim = _require_sim()
    data = request.get_json(silent=True) or {}
    line_id = data.get("line_id")
    if not line_id:
        return jsonify({"error": "Missing line_id"}), 400
    sim.forget(line_id, data.get("direction"))
    return jsonify({"ok": True})


@app.route("/lines/<line_id>/vehicles")
@locked
def line_vehicles(line_id):
    sim = _require_sim()
    line = sim.snapshot.lines.get(line_id)
    if line is None:
        return jsonify({"error": f"Invalid line '{line_id}'"}), 404
    direction = request.args.get("direction")
    directions = [direction] if direction else [d.value for d in line.travel_directions()]
    vehicles = {d: sorted(sim.active_vehicles_for(line_id, d)) for d in directions}
    return jsonify({"line_id": line_id, "vehicles": vehicles})


@app.route("/vehicles/<vehicle_id>")
@locked
def vehicle_position(vehicle_id):
    sim = _require_sim()
    position = sim.position_of(vehicle_id)
    if position is None:
        return jsonify({"error": f"No active vehicle '{vehicle_id}'"}), 404
    return jsonify({"id": vehicle_id, "lat": position[0], "lon": position[1]})


@app.route("/departures/<line_id>")
@locked
def departures(line_id):
    sim = _require_sim()
    try:
        count = int(request.args.get("count", 3))
    except ValueError:
        return jsonify({"error": "Invalid count"}), 400
    try:
        times = sim.departures_for(line_id, count=count)
    except KeyError:
        return jsonify({"error": f"Invalid line '{line_id}'"}), 404
    return jsonify({"line_id": line_id, "departures": [t.strftime("%H:%M") for t in times]})


@app.route("/events")
@locked
def events():
    return jsonify(_require_sim().events(20))  # send last 20 arrivals


@app.route("/refresh", methods=["POST"])
@locked
def refresh():
    sim = _require_sim()
    if not API_URL:
        return jsonify({"error": "No api url configured"}), 400
    snapshot = fetch_snapshot(API_URL, timeout=sim.config.api_timeout_s)
    sim.update_snapshot(snapshot)
    return jsonify({"ok": True, "lines": len(snapshot.lines), "stops": len(snapshot.stops)})


@app.route("/snapshot", methods=["POST"])
@locked
def snapshot_image():
    sim = _require_sim()
    data = request.get_json(silent=True) or {}
    line_id = data.get("line_id")
    if not line_id:
        return jsonify({"error": "Missing line_id"}), 400
    try:
        path = simPlots.save_session_snapshot(sim, line_id, RESULTS_DIR)
    except KeyError as exc:
        return jsonify({"error": str(exc)}), 404
    return jsonify({"ok": True, "path": path})


def build_argparser():
    p = argparse.ArgumentParser(description="Serve a schedule-driven transit vehicle simulation.")
    p.add_argument("--config", type=str, default=None, help="json file with config overrides")
    p.add_argument("--data-json", type=str, default=None, help='{"lines": [...], "stops": [...]} file')
    p.add_argument("--api-url", type=str, default=None, help="transit api serving /lines and /stops")
    p.add_argument("--stops-csv", type=str, default=None, help="extra stops as csv")
    p.add_argument("--clock-file", type=str, default="sim_clock.json")
    p.add_argument("--no-routing", action="store_true", help="straight segments for every mode")
    p.add_argument("--observe", action="append", default=[], help="line id to observe at startup")
    p.add_argument("--seed", type=int, default=None)
    p.add_argument("--results-dir", type=str, default="results", help="where png snapshots are written")
    p.add_argument("--dwell-plot", action="store_true", help="save the dwell profile image at startup")
    p.add_argument("--host", type=str, default="127.0.0.1")
    p.add_argument("--port", type=int, default=5000)
    return p


def main(argv=None):
    logging.basicConfig(stream=sys.stderr, level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = build_argparser().parse_args(argv)
    config = load_config(args.config)

    if args.api_url:
        snapshot = fetch_snapshot(args.api_url, timeout=config.api_timeout_s)
    elif args.data_json:
        snapshot = load_snapshot_json(args.data_json)
    else:
        raise SystemExit("Need --api-url or --data-json")
    if args.stops_csv:
        snapshot = snapshot.with_stops(load_stops_csv(args.stops_csv))

    provider = None if args.no_routing else OsrmRouteProvider(config.osrm_url, timeout=config.routing_timeout_s)
    clock = VirtualClock(speed=config.clock_speed, store=JsonFileAnchorStore(args.clock_file),
                         store_key=config.clock_store_key)
    sim = Simulator(snapshot, clock=clock, config=config, route_provider=provider, seed=args.seed)
    for line_id in args.observe:
        sim.observe(line_id)
    if args.dwell_plot:
        simPlots.save_dwell_profile_image(sim.dwell_model, args.results_dir)
    init_sim(sim, api_url=args.api_url, results_dir=args.results_dir)
    app.run(host=args.host, port=args.port)


if __name__ == "__main__":
    main()
