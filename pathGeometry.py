import logging

import numpy as np
import requests

from simConfig import OSRM_URL, ROUTING_TIMEOUT_S
from transitData import TransitSimError

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6371000.0


class RoutingError(TransitSimError):
    """The street-routing collaborator could not produce a path."""


def haversine_m(a, b):
    """Great-circle distance in metres between two (lat, lon) points."""
    lat1, lon1, lat2, lon2 = map(np.radians, (a[0], a[1], b[0], b[1]))
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return float(2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1 - h)))


def distances_to(point, points):
    """Haversine distance in metres from one point to each of points."""
    pts = np.radians(np.asarray(points, dtype=float))
    lat1, lon1 = np.radians(point[0]), np.radians(point[1])
    lat2, lon2 = pts[:, 0], pts[:, 1]
    h = np.sin((lat2 - lat1) / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1 - h))


def segment_lengths(points):
    """Vectorised haversine over consecutive points of an (n, 2) array."""
    pts = np.radians(np.asarray(points, dtype=float))
    if len(pts) < 2:
        return np.zeros(0)
    lat1, lon1 = pts[:-1, 0], pts[:-1, 1]
    lat2, lon2 = pts[1:, 0], pts[1:, 1]
    h = np.sin((lat2 - lat1) / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(h), np.sqrt(1 - h))


class Path:
    """Ordered (lat, lon) polyline with cached cumulative distances."""

    def __init__(self, points):
        self.points = [(float(lat), float(lon)) for lat, lon in points]
        d = segment_lengths(self.points)
        self.cumulative = np.concatenate([[0.0], np.cumsum(d)])
        self.length = float(self.cumulative[-1])

    def __len__(self):
        return len(self.points)

    def point_at_progress(self, progress):
        if len(self.points) < 2:
            return None
        progress = min(max(float(progress), 0.0), 1.0)
        if progress <= 0.0 or self.length <= 0.0:
            return self.points[0]
        if progress >= 1.0:
            return self.points[-1]

        target = progress * self.length
        i = int(np.searchsorted(self.cumulative, target, side="left"))
        i = min(max(i, 1), len(self.points) - 1)
        seg = self.cumulative[i] - self.cumulative[i - 1]
        if seg <= 0.0:
            return self.points[i]
        ratio = (target - self.cumulative[i - 1]) / seg
        (lat1, lon1), (lat2, lon2) = self.points[i - 1], self.points[i]
        return (lat1 + (lat2 - lat1) * ratio, lon1 + (lon2 - lon1) * ratio)

    def progress_of(self, point):
        """Normalised position of the path vertex nearest to point."""
        if len(self.points) < 2 or self.length <= 0.0:
            return 0.0
        dists = distances_to(point, self.points)
        idx = int(np.argmin(dists))
        return float(self.cumulative[idx] / self.length)


def point_at_progress(path, progress):
    return path.point_at_progress(progress)


def path_length(path):
    return path.length


class RouteProvider:
    def route(self, points):
        """Return a street-following list of (lat, lon) through points."""
        raise NotImplementedError


class StraightLineProvider(RouteProvider):
    def route(self, points):
        return [tuple(p) for p in points]


class OsrmRouteProvider(RouteProvider):
    def __init__(self, base_url=OSRM_URL, timeout=ROUTING_TIMEOUT_S, profile="driving", session=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.profile = profile
        self.session = session or requests.Session()

    def route(self, points):
        # OSRM expects lon,lat;lon,lat;...
        coords = ";".join(f"{lon},{lat}" for lat, lon in points)
        url = f"{self.base_url}/{self.profile}/{coords}"
        try:
            resp = self.session.get(url, params={"overview": "full", "geometries": "geojson"},
                                    timeout=self.timeout)
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            raise RoutingError(f"routing request failed: {exc}") from exc

        if not isinstance(data, dict) or data.get("code") != "Ok":
            raise RoutingError(f"routing status {data.get('code') if isinstance(data, dict) else data!r}")
        try:
            geometry = data["routes"][0]["geometry"]["coordinates"]
            path = [(float(lat), float(lon)) for lon, lat in geometry]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise RoutingError(f"malformed routing response: {exc}") from exc
        if len(path) < 2:
            raise RoutingError("routing returned fewer than two points")
        return path


def provider_for_mode(mode, provider=None):
    """Guideway modes always run straight between stops."""
    if mode.is_guideway or provider is None:
        return StraightLineProvider()
    return provider


def build_path(coords, mode, provider=None):
    coords = [tuple(c) for c in coords]
    chosen = provider_for_mode(mode, provider)
    if len(coords) < 2:
        return Path(coords)
    try:
        return Path(chosen.route(coords))
    except (RoutingError, requests.RequestException, TypeError, ValueError) as exc:
        logger.warning("[osrm] %s, falling back to straight segments", exc)
        return Path(coords)
