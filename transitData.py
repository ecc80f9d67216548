import json
import logging
from dataclasses import dataclass, field
from enum import Enum

import pandas as pd
import requests

logger = logging.getLogger(__name__)


class TransitSimError(Exception):
    """Base class for simulation errors."""


class DataUnavailableError(TransitSimError):
    """The static line/stop data could not be loaded."""


class Direction(str, Enum):
    OUTBOUND = "Outbound"
    INBOUND = "Inbound"
    BOTH = "Both"

    @classmethod
    def parse(cls, value, default=None):
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == text:
                return member
        return default


class TransportMode(str, Enum):
    ROAD = "road"
    GUIDEWAY = "guideway"
    GUIDEWAY_BIDIRECTIONAL = "guideway-bidirectional"

    @property
    def is_guideway(self):
        return self is not TransportMode.ROAD


def normalize_id(value):
    """Turn a record id ({"$oid": ...}, int, str) into a plain string."""
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        value = value.get("$oid") or value.get("_id")
        if value is None:
            return None
    return str(value)


def parse_hhmm(text):
    """Return minutes-of-day for an "HH:mm" string, or None if malformed."""
    try:
        hours, minutes = str(text).strip().split(":")
        hours, minutes = int(hours), int(minutes)
    except (AttributeError, ValueError):
        return None
    if not (0 <= hours <= 24 and 0 <= minutes < 60) or hours * 60 + minutes > 24 * 60:
        return None
    return hours * 60 + minutes


@dataclass(frozen=True)
class Stop:
    id: str
    name: str
    lat: float
    lon: float
    direction: Direction = Direction.BOTH

    @property
    def coordinate(self):
        return (self.lat, self.lon)

    def serves(self, direction):
        return self.direction is Direction.BOTH or self.direction is direction

    @classmethod
    def from_record(cls, record):
        stop_id = normalize_id(record.get("id", record.get("_id")))
        coords = record.get("coordinate")
        if coords is None:
            coords = (record.get("location") or {}).get("coordinates")
        if stop_id is None or coords is None or len(coords) != 2:
            raise ValueError(f"Bad stop record: {record!r}")
        lon, lat = float(coords[0]), float(coords[1])
        return cls(
            id=stop_id,
            name=str(record.get("name", stop_id)),
            lat=lat,
            lon=lon,
            direction=Direction.parse(record.get("direction"), Direction.BOTH),
        )


@dataclass(frozen=True)
class Schedule:
    first_departure: str = None
    last_departure: str = None
    headway_minutes: float = None

    @property
    def first_minute(self):
        return parse_hhmm(self.first_departure)

    @property
    def last_minute(self):
        first, last = parse_hhmm(self.first_departure), parse_hhmm(self.last_departure)
        if first is None or last is None:
            return None
        # service past midnight: the sim clock never shows 00:00-06:00,
        # so the day simply ends at 24:00
        if last < first:
            return 24 * 60
        return last

    def is_valid(self):
        return (
            self.first_minute is not None
            and self.last_minute is not None
            and self.headway_minutes is not None
            and self.headway_minutes > 0
        )

    @classmethod
    def from_record(cls, record):
        record = record or {}
        headway = record.get("headwayMinutes", record.get("frequency"))
        try:
            headway = float(headway) if headway is not None else None
        except (TypeError, ValueError):
            headway = None
        return cls(
            first_departure=record.get("firstDeparture"),
            last_departure=record.get("lastDeparture"),
            headway_minutes=headway,
        )


def parse_mode(record, direction):
    mode = str(record.get("mode") or "").strip().lower()
    for member in TransportMode:
        if member.value == mode:
            return member

    # backend records carry a vehicle type instead
    vehicle_type = str(record.get("type") or "Bus").strip().lower()
    if vehicle_type in ("tram", "metro"):
        if direction is Direction.BOTH:
            return TransportMode.GUIDEWAY_BIDIRECTIONAL
        return TransportMode.GUIDEWAY
    return TransportMode.ROAD


@dataclass(frozen=True)
class Line:
    id: str
    number: str
    long_name: str
    mode: TransportMode
    direction: Direction
    stop_ids: tuple = ()
    schedule: Schedule = field(default_factory=Schedule)

    def travel_directions(self):
        if self.direction is Direction.BOTH:
            return [Direction.OUTBOUND, Direction.INBOUND]
        return [self.direction]

    def ordered_stops(self, snapshot, direction):
        """Stops in travel order for one direction; unknown ids are skipped."""
        stops = [snapshot.stops[s] for s in self.stop_ids if s in snapshot.stops]
        if self.direction is Direction.BOTH and direction is Direction.INBOUND:
            stops.reverse()
        return stops

    @classmethod
    def from_record(cls, record):
        line_id = normalize_id(record.get("id", record.get("_id")))
        if line_id is None:
            raise ValueError(f"Bad line record: {record!r}")
        stop_ids = record.get("orderedStopIds", record.get("stopIds")) or []
        ordered = []
        for raw in stop_ids:
            stop_id = normalize_id(raw)
            # unique per line-direction
            if stop_id is not None and stop_id not in ordered:
                ordered.append(stop_id)
        direction = Direction.parse(record.get("direction"), Direction.OUTBOUND)
        return cls(
            id=line_id,
            number=str(record.get("number", "")),
            long_name=str(record.get("longName", "")),
            mode=parse_mode(record, direction),
            direction=direction,
            stop_ids=tuple(ordered),
            schedule=Schedule.from_record(record.get("schedule")),
        )


@dataclass
class StaticSnapshot:
    lines: dict = field(default_factory=dict)
    stops: dict = field(default_factory=dict)

    @classmethod
    def from_records(cls, line_records, stop_records):
        snapshot = cls()
        for record in stop_records or []:
            try:
                stop = Stop.from_record(record)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("[data] skipping stop: %s", exc)
                continue
            snapshot.stops[stop.id] = stop
        for record in line_records or []:
            try:
                line = Line.from_record(record)
            except (TypeError, ValueError, AttributeError) as exc:
                logger.warning("[data] skipping line: %s", exc)
                continue
            snapshot.lines[line.id] = line
        return snapshot

    def with_stops(self, stops):
        merged = dict(self.stops)
        merged.update({s.id: s for s in stops})
        return StaticSnapshot(lines=dict(self.lines), stops=merged)


def fetch_snapshot(base_url, timeout=5.0, session=None):
    """Fetch /lines and /stops from the transit API."""
    http = session or requests
    base = base_url.rstrip("/")
    payloads = {}
    for name in ("lines", "stops"):
        try:
            resp = http.get(f"{base}/{name}", timeout=timeout)
            resp.raise_for_status()
            payloads[name] = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise DataUnavailableError(f"Could not fetch {name}: {exc}") from exc
        if not isinstance(payloads[name], list):
            raise DataUnavailableError(f"Unexpected {name} payload")
    snapshot = StaticSnapshot.from_records(payloads["lines"], payloads["stops"])
    logger.info("[data] fetched %d lines, %d stops", len(snapshot.lines), len(snapshot.stops))
    return snapshot


def load_snapshot_json(path):
    # === Load {"lines": [...], "stops": [...]} ===
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise DataUnavailableError(f"Could not load {path}: {exc}") from exc
    return StaticSnapshot.from_records(data.get("lines"), data.get("stops"))


def load_stops_csv(path):
    """Read stops from a csv with stop_id, stop_name, stop_lat, stop_lon columns."""
    try:
        frame = pd.read_csv(path, dtype={"stop_id": str})
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise DataUnavailableError(f"Could not load {path}: {exc}") from exc

    # filtering step to prevent data-type mismatching
    frame["stop_id"] = frame["stop_id"].astype(str).str.strip()
    frame["stop_lat"] = pd.to_numeric(frame["stop_lat"], errors="coerce")
    frame["stop_lon"] = pd.to_numeric(frame["stop_lon"], errors="coerce")
    dropped = frame[["stop_lat", "stop_lon"]].isna().any(axis=1)
    if dropped.any():
        logger.warning("[data] dropping %d stops without coordinates", int(dropped.sum()))
    frame = frame[~dropped]

    stops = []
    for _, row in frame.iterrows():
        direction = row["direction"] if "direction" in frame.columns else None
        stops.append(Stop(
            id=row["stop_id"],
            name=str(row.get("stop_name", row["stop_id"])),
            lat=float(row["stop_lat"]),
            lon=float(row["stop_lon"]),
            direction=Direction.parse(direction, Direction.BOTH),
        ))
    return stops
