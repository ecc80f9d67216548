import json
import logging
import os
import time
from datetime import datetime, timedelta

from simConfig import CLOCK_SPEED, CLOCK_STORE_KEY, SERVICE_DAY_START_HOUR

logger = logging.getLogger(__name__)


def minutes_of_day(dt):
    """Minutes since local midnight, with seconds as a fraction."""
    return dt.hour * 60 + dt.minute + dt.second / 60.0 + dt.microsecond / 60e6


class MemoryAnchorStore:
    def __init__(self):
        self._data = {}

    def get(self, key):
        return self._data.get(key)

    def set(self, key, value):
        self._data[key] = value


class JsonFileAnchorStore:
    """Tiny key/value store kept in one json file, so anchors survive restarts."""

    def __init__(self, path):
        self.path = path

    def _read(self):
        if not os.path.exists(self.path):
            return {}
        with open(self.path, encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def get(self, key):
        return self._read().get(key)

    def set(self, key, value):
        data = self._read()
        data[key] = value
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(data, f)


def service_day_start(dt):
    return dt.replace(hour=SERVICE_DAY_START_HOUR, minute=0, second=0, microsecond=0)


def service_date(dt):
    """Calendar date of the service day dt belongs to (days start at 06:00)."""
    if dt.hour < SERVICE_DAY_START_HOUR:
        return (dt - timedelta(days=1)).date()
    return dt.date()


def initial_anchors(real_now):
    """Map real now onto 06:00 today, or yesterday 06:00 before 06:00."""
    real_dt = datetime.fromtimestamp(real_now)
    sim_base = service_day_start(real_dt)
    if real_dt < sim_base:
        sim_base -= timedelta(days=1)
    return {"anchorReal": real_now, "anchorSim": sim_base.timestamp()}


class VirtualClock:
    """Accelerated clock anchored on a (real, simulated) pair of epoch seconds.

    The simulated day runs 06:00 -> 06:00: any time computed inside
    [00:00, 06:00) re-anchors to 06:00 of that same calendar day.
    """

    def __init__(self, speed=CLOCK_SPEED, store=None, real_time=time.time,
                 store_key=CLOCK_STORE_KEY, anchors=None):
        self.speed = float(speed)
        self.store = store
        self.store_key = store_key
        self.real_time = real_time
        self._anchors = dict(anchors) if anchors else None

    @property
    def anchors(self):
        if self._anchors is None:
            self._anchors = self._load_anchors()
        return self._anchors

    def _load_anchors(self):
        if self.store is not None:
            try:
                saved = self.store.get(self.store_key)
                if saved:
                    return {"anchorReal": float(saved["anchorReal"]),
                            "anchorSim": float(saved["anchorSim"])}
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("[clock] could not load anchors: %s", exc)
        anchors = initial_anchors(self.real_time())
        self._save(anchors)
        return anchors

    def _save(self, anchors):
        if self.store is None:
            return
        try:
            self.store.set(self.store_key, anchors)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("[clock] could not save anchors: %s", exc)

    def now(self):
        real_now = self.real_time()
        anchors = self.anchors
        sim = anchors["anchorSim"] + (real_now - anchors["anchorReal"]) * self.speed
        sim_dt = datetime.fromtimestamp(sim)

        if sim_dt.hour < SERVICE_DAY_START_HOUR:
            # day reset, back to 06:00 of the same calendar day
            sim_dt = service_day_start(sim_dt)
            self._anchors = {"anchorReal": real_now, "anchorSim": sim_dt.timestamp()}
            self._save(self._anchors)
            logger.info("[clock] day reset: simulated time cycled back to %s", sim_dt.strftime("%H:%M"))
        return sim_dt
