import logging
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np

logger = logging.getLogger(__name__)


def save_session_snapshot(simulator, line_id, output_dir="results"):
    """Draw the path, stops and current vehicles of an observed line to a png."""
    sessions = [s for key, s in simulator.sessions.items() if key[0] == line_id]
    if not sessions:
        raise KeyError(f"Line '{line_id}' is not observed")

    plt.figure(figsize=(6, 6))
    colors = {"Outbound": "tab:green", "Inbound": "tab:blue"}
    for session in sessions:
        color = colors.get(session.direction.value, "tab:gray")
        if len(session.path) >= 2:
            pts = np.array(session.path.points)
            plt.plot(pts[:, 1], pts[:, 0], "-", color=color, lw=2, alpha=0.8,
                     label=f"{session.direction.value} path")
        for stop in session.stops:
            plt.plot(stop.lon, stop.lat, "s", color="black", ms=5)
        for vehicle in session.vehicles.values():
            if vehicle.position is None:
                continue
            lat, lon = vehicle.position
            plt.plot(lon, lat, "o", color=color, ms=8, markeredgecolor="black")

    line = sessions[0].line
    plt.legend()
    plt.grid(True, linestyle="--", alpha=0.6)
    plt.xlabel("Longitude")
    plt.ylabel("Latitude")
    plt.title(f"Line {line.number or line.id} at {simulator.now().strftime('%H:%M')}")

    os.makedirs(output_dir, exist_ok=True)
    save_path = os.path.join(output_dir, f"snapshot_{line.id}.png")
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close()
    logger.info("[SAVED] snapshot -> %s", save_path)
    return save_path


def save_dwell_profile_image(model, output_dir="results"):
    """Plot the dwell distribution in use (a vertical line for constant dwell)."""
    plt.figure(figsize=(6, 4))
    if model.kind == "constant" or model.x is None:
        plt.axvline(model.seconds, color="red", lw=2, label=f"Constant ({model.seconds:g}s)")
    else:
        plt.plot(model.x, model.pdf, "r-", lw=2, label=f"{model.kind} dwell")
    plt.axvline(model.mean, color="k", linestyle="--", label=f"Mean = {model.mean:.2f}s")
    plt.legend()
    plt.grid(True, linestyle="--", alpha=0.6)
    plt.xlabel("Dwell Duration (seconds)")
    plt.ylabel("Probability")
    plt.title(f"Dwell profile ({model.kind})")

    os.makedirs(output_dir, exist_ok=True)
    save_path = os.path.join(output_dir, f"dwell_{model.kind}.png")
    plt.savefig(save_path, dpi=150, bbox_inches="tight")
    plt.close()
    logger.info("[SAVED] dwell profile -> %s", save_path)
    return save_path
