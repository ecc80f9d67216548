import pytest
import requests

from pathGeometry import (
    OsrmRouteProvider,
    Path,
    RouteProvider,
    RoutingError,
    build_path,
    haversine_m,
    path_length,
    point_at_progress,
)
from transitData import TransportMode

COORDS = [(0.0, 0.0), (0.0, 1.0), (0.0, 2.0)]
ONE_DEGREE_M = 111194.9


class FakeResponse:
    def __init__(self, payload):
        self.payload = payload

    def json(self):
        if isinstance(self.payload, Exception):
            raise self.payload
        return self.payload


class FakeSession:
    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params, timeout))
        if self.error:
            raise self.error
        return FakeResponse(self.payload)


def test_endpoints_are_exact():
    path = Path([(38.67, 39.22), (38.68, 39.23), (38.69, 39.21)])
    assert point_at_progress(path, 0) == (38.67, 39.22)
    assert point_at_progress(path, 1) == (38.69, 39.21)


def test_midpoint_interpolates():
    path = Path(COORDS)
    lat, lon = path.point_at_progress(0.5)
    assert lat == pytest.approx(0.0)
    assert lon == pytest.approx(1.0)
    lat, lon = path.point_at_progress(0.25)
    assert lon == pytest.approx(0.5)


def test_progress_is_clamped():
    path = Path(COORDS)
    assert path.point_at_progress(1.7) == (0.0, 2.0)
    assert path.point_at_progress(-0.3) == (0.0, 0.0)


def test_degenerate_paths_have_no_position():
    assert Path([]).point_at_progress(0.5) is None
    assert Path([(1.0, 1.0)]).point_at_progress(0.0) is None


def test_path_length_is_great_circle_sum():
    path = Path(COORDS)
    assert path_length(path) == pytest.approx(2 * ONE_DEGREE_M, rel=1e-4)
    assert haversine_m((0.0, 0.0), (0.0, 1.0)) == pytest.approx(ONE_DEGREE_M, rel=1e-4)


def test_progress_of_nearest_vertex():
    path = Path(COORDS)
    assert path.progress_of((0.001, 1.0)) == pytest.approx(0.5)
    assert path.progress_of((0.0, 2.0)) == pytest.approx(1.0)


def test_guideway_never_asks_the_router():
    class Exploding(RouteProvider):
        def route(self, points):
            raise AssertionError("should not be called")

    path = build_path(COORDS, TransportMode.GUIDEWAY, Exploding())
    assert path.points == COORDS


def test_road_falls_back_to_stop_coordinates(failing_provider, caplog):
    path = build_path(COORDS, TransportMode.ROAD, failing_provider)
    assert path.points == COORDS
    assert failing_provider.calls == 1
    assert "falling back" in caplog.text


def test_road_uses_routed_geometry():
    class Detour(RouteProvider):
        def route(self, points):
            return [points[0], (0.5, 0.5), points[-1]]

    path = build_path(COORDS, TransportMode.ROAD, Detour())
    assert path.points == [(0.0, 0.0), (0.5, 0.5), (0.0, 2.0)]


def test_osrm_swaps_lon_lat():
    payload = {"code": "Ok", "routes": [{"geometry": {"coordinates": [[39.22, 38.67], [39.23, 38.68]]}}]}
    session = FakeSession(payload)
    provider = OsrmRouteProvider("http://osrm.test/route/v1", session=session)
    assert provider.route([(38.67, 39.22), (38.68, 39.23)]) == [(38.67, 39.22), (38.68, 39.23)]
    url, params, timeout = session.calls[0]
    assert url == "http://osrm.test/route/v1/driving/39.22,38.67;39.23,38.68"
    assert params["geometries"] == "geojson"
    assert timeout == provider.timeout


@pytest.mark.parametrize("session", [
    FakeSession({"code": "NoRoute"}),
    FakeSession({"code": "Ok", "routes": []}),
    FakeSession(ValueError("bad json")),
    FakeSession(error=requests.ConnectionError("offline")),
])
def test_osrm_failures_raise_routing_error(session):
    provider = OsrmRouteProvider("http://osrm.test/route/v1", session=session)
    with pytest.raises(RoutingError):
        provider.route(COORDS)


def test_osrm_failure_still_builds_a_path():
    provider = OsrmRouteProvider("http://osrm.test/route/v1",
                                 session=FakeSession(error=requests.Timeout("slow")))
    assert build_path(COORDS, TransportMode.ROAD, provider).points == COORDS
