import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from fakes import (
    FakeResponse,
    FakeRouteClient,
    FakeSession,
    StallingSession,
    feature_collection,
    line_points,
    make_route,
)
from safepath.core import safest_path
from safepath.core.config import Settings
from safepath.core.errors import InvalidInputError, NoRouteFoundError, RouteTimeoutError
from safepath.core.incidents import IncidentSource, StaticIncidentSource, normalize_incidents
from safepath.core.routing import RouteProviderClient
from safepath.core.safest_path import (
    SafePathService,
    SafestPathPlanner,
    build_route_client,
    build_safe_path_service,
)
from safepath.core.scoring import high_risk_points, score_route
from safepath.models.schemas import Incident, Location, RoutingStrategy

START = (33.6, 73.0)
END = (33.62, 73.02)
MIDPOINT = (33.61, 73.01)
DIRECT = line_points(START, END)
# dog-leg through the south-east corner, well away from the midpoint
DETOUR = line_points(START, (33.6, 73.02), 6) + line_points((33.6, 73.02), END, 6)[1:]


def _robberies_near_midpoint(n=20):
    # spread over a few tens of meters around the midpoint
    return [
        Incident(
            position=Location(lat=MIDPOINT[0] + (i % 5 - 2) * 0.0001, lng=MIDPOINT[1] + (i // 5 - 2) * 0.0001),
            category="robbery",
        )
        for i in range(n)
    ]


def test_clean_direct_route_is_accepted_without_avoidance_call():
    client = FakeRouteClient(direct=make_route(DIRECT))
    route = SafestPathPlanner(client).compute_safest_route(START, END, [])

    assert route.source == "geojson_post"
    assert route.risk == 0.0
    assert len(client.calls) == 1
    assert client.calls[0]["exclusions"] == []


def test_far_away_incidents_do_not_trigger_avoidance():
    far = [Incident(position=Location(lat=33.75, lng=73.15), category="murder")] * 10
    client = FakeRouteClient(direct=make_route(DIRECT))
    SafestPathPlanner(client).compute_safest_route(START, END, far)
    assert len(client.calls) == 1


def test_risky_direct_route_is_replaced_by_safer_avoidance():
    incidents = _robberies_near_midpoint()
    client = FakeRouteClient(direct=make_route(DIRECT), avoidance=make_route(DETOUR, source="json_post"))
    planner = SafestPathPlanner(client)

    route = planner.compute_safest_route(START, END, incidents)

    direct_risk = score_route(make_route(DIRECT).points, incidents)
    avoidance_risk = score_route(make_route(DETOUR).points, incidents)
    assert direct_risk > planner.low_risk_threshold
    assert avoidance_risk < direct_risk

    assert len(client.calls) == 2
    assert client.calls[1]["exclusions"]
    assert client.calls[1]["require_road"] is True
    assert route.source == "json_post"
    assert route.risk == pytest.approx(avoidance_risk)


def test_worse_avoidance_route_keeps_direct():
    incidents = _robberies_near_midpoint()
    # avoidance that loiters at the hotspot
    worse = make_route([START, MIDPOINT, MIDPOINT, MIDPOINT, END], source="json_post")
    client = FakeRouteClient(direct=make_route(DIRECT), avoidance=worse)

    route = SafestPathPlanner(client).compute_safest_route(START, END, incidents)

    assert route.source == "geojson_post"
    assert route.risk == pytest.approx(score_route(make_route(DIRECT).points, incidents))


def test_avoidance_failure_falls_back_to_direct():
    incidents = _robberies_near_midpoint()
    client = FakeRouteClient(direct=make_route(DIRECT), avoidance_error=RuntimeError("provider exploded"))
    route = SafestPathPlanner(client).compute_safest_route(START, END, incidents)
    assert route.source == "geojson_post"

    client = FakeRouteClient(direct=make_route(DIRECT), avoidance=None)
    route = SafestPathPlanner(client).compute_safest_route(START, END, incidents)
    assert route.source == "geojson_post"


def test_no_qualifying_hotspot_returns_direct():
    # a single theft on the route is risky enough but forms no hotspot
    incidents = [Incident(position=Location(lat=MIDPOINT[0], lng=MIDPOINT[1]), category="theft")]
    client = FakeRouteClient(direct=make_route(DIRECT))
    route = SafestPathPlanner(client, low_risk_threshold=0.1).compute_safest_route(START, END, incidents)
    assert route.source == "geojson_post"
    assert len(client.calls) == 1


def test_missing_direct_route_is_not_found():
    client = FakeRouteClient(direct=None)
    assert SafestPathPlanner(client).compute_safest_route(START, END, []) is None


def test_provider_outage_yields_straight_line(sleeps):
    session = FakeSession(default=FakeResponse(502, text="bad gateway"))
    client = RouteProviderClient(api_key="k", session=session, sleep=sleeps)
    planner = SafestPathPlanner(client)

    route = planner.compute_safest_route(START, END, _robberies_near_midpoint())

    assert route.source == "straight_line"
    assert [(p.lat, p.lng) for p in route.points] == [START, END]
    assert route.duration_s == 0.0


def test_provider_avoidance_call_uses_exclusion_polygons(sleeps):
    session = FakeSession(
        FakeResponse(200, feature_collection(DIRECT)),
        FakeResponse(200, feature_collection(DETOUR)),
    )
    client = RouteProviderClient(api_key="k", session=session, sleep=sleeps)
    route = SafestPathPlanner(client).compute_safest_route(START, END, _robberies_near_midpoint())

    assert len(session.calls) == 2
    assert "options" not in session.calls[0][2]["json"]
    assert session.calls[1][2]["json"]["options"]["avoid_polygons"]["coordinates"]
    assert [(p.lat, p.lng) for p in route.points] == DETOUR


def _service(client, records=(), **kwargs):
    kwargs.setdefault("timeout", None)
    return SafePathService(StaticIncidentSource(records), SafestPathPlanner(client), **kwargs)


def test_service_result_shape():
    records = [
        {"crime_type": "theft", "crime_locations": {"latitude": 33.75, "longitude": 73.15}},
        {"crime_type": "theft"},
    ]
    service = _service(FakeRouteClient(direct=make_route(DIRECT)), records)
    result = service.compute_safest_path(START, END, 30)

    assert result.success is True
    assert result.path[0].latitude == 33.6 and result.path[0].longitude == 73.0
    assert result.metadata["incidentCount"] == 1
    assert result.metadata["crimeDataPoints"] == 2
    assert result.metadata["pointCount"] == len(DIRECT)
    assert result.metadata["timeframe"] == "30 days"
    assert result.metadata["routing"] == "road-based"


def test_service_rejects_bad_input():
    service = _service(FakeRouteClient(direct=make_route(DIRECT)))
    with pytest.raises(InvalidInputError):
        service.compute_safest_path((None, 73.0), END, 30)
    with pytest.raises(InvalidInputError):
        service.compute_safest_path(START, END, 0)


def test_service_raises_not_found():
    with pytest.raises(NoRouteFoundError):
        _service(FakeRouteClient(direct=None)).compute_safest_path(START, END, 30)


def test_grid_strategy_needs_no_provider():
    client = FakeRouteClient()
    result = _service(client, [{"crime_type": "robbery", "lat": 33.61, "lng": 73.01}]).compute_safest_path(
        START, END, 30, RoutingStrategy.GRID)

    assert client.calls == []
    assert result.metadata["routing"] == "grid"
    assert result.metadata["pointCount"] == len(result.path) > 1


def test_grid_strategy_outside_box_is_not_found():
    service = _service(FakeRouteClient())
    with pytest.raises(NoRouteFoundError):
        service.compute_safest_path((40.0, 70.0), END, 30, "grid")


class _BlockingSource(IncidentSource):
    def __init__(self):
        self.release = threading.Event()

    def fetch_incidents(self, lookback_days):
        self.release.wait(5)
        return []


def test_service_times_out_as_a_whole():
    source = _BlockingSource()
    service = SafePathService(source, SafestPathPlanner(FakeRouteClient(direct=make_route(DIRECT))), timeout=0.05)
    try:
        with pytest.raises(RouteTimeoutError):
            service.compute_safest_path(START, END, 30)
    finally:
        source.release.set()
        service.close()


def test_build_from_settings_wires_configuration():
    settings = Settings(ORS_API_KEY="abc", ORS_MAX_ATTEMPTS=5, LOW_RISK_THRESHOLD=3.5, GRID_WIDTH=50)
    service = build_safe_path_service(settings, StaticIncidentSource())
    try:
        assert service.planner.client.api_key == "abc"
        assert service.planner.client.max_attempts == 5
        assert service.planner.low_risk_threshold == 3.5
        assert service.grid.width == 50
    finally:
        service.close()


def test_planner_passes_deadline_to_every_provider_call():
    client = FakeRouteClient(direct=make_route(DIRECT), avoidance=make_route(DETOUR, source="json_post"))
    SafestPathPlanner(client).compute_safest_route(START, END, _robberies_near_midpoint(), deadline=123.0)
    assert [call["deadline"] for call in client.calls] == [123.0, 123.0]


def test_hung_provider_degrades_to_straight_line_within_the_timeout():
    client = RouteProviderClient(api_key="k", timeout=0.2, max_attempts=3, backoff_base=0.01,
                                 initial_delay=0.0, session=StallingSession())
    service = SafePathService(StaticIncidentSource(), SafestPathPlanner(client), timeout=0.6)
    try:
        result = service.compute_safest_path(START, END, 30)
    finally:
        service.close()

    assert result.metadata["source"] == "straight_line"
    assert result.metadata["pointCount"] == 2
    # later strategies were skipped once the deadline was reached
    assert all(url.endswith("/geojson") for _m, url, _kw in client.session.calls)


def test_busy_workers_do_not_turn_queued_requests_into_timeouts():
    client = RouteProviderClient(api_key="k", timeout=1.0, max_attempts=1, initial_delay=0.0,
                                 session=StallingSession())
    service = SafePathService(StaticIncidentSource(), SafestPathPlanner(client), timeout=1.5, max_workers=2)
    try:
        with ThreadPoolExecutor(max_workers=5) as callers:
            results = list(callers.map(lambda _: service.compute_safest_path(START, END, 30), range(5)))
    finally:
        service.close()

    assert [r.metadata["source"] for r in results] == ["straight_line"] * 5


def test_route_is_scored_once_and_metadata_reuses_it(monkeypatch):
    calls = []
    real = safest_path.point_contributions

    def counting(*args, **kwargs):
        calls.append(args)
        return real(*args, **kwargs)

    monkeypatch.setattr(safest_path, "point_contributions", counting)
    # three robberies on the route, too far apart to form a hotspot
    records = [{"crime_type": "robbery", "lat": lat, "lng": lng} for lat, lng in DIRECT[2:9:3]]
    result = _service(FakeRouteClient(direct=make_route(DIRECT)), records).compute_safest_path(START, END, 30)

    assert len(calls) == 1
    expected = high_risk_points(make_route(DIRECT).points, normalize_incidents(records))
    assert expected
    assert result.metadata["highRiskPoints"] == len(expected)


def test_planner_score_records_high_risk_points():
    route = SafestPathPlanner(FakeRouteClient()).score(make_route(DIRECT), _robberies_near_midpoint())
    assert route.high_risk_points == len(high_risk_points(route.points, _robberies_near_midpoint()))
    assert route.high_risk_points > 0


def test_build_rejects_provider_timeout_longer_than_request_timeout():
    settings = Settings(ORS_TIMEOUT_SECONDS=60.0, SAFE_PATH_TIMEOUT_SECONDS=45.0)
    with pytest.raises(ValueError):
        build_safe_path_service(settings, StaticIncidentSource())


def test_default_retry_budget_fits_the_request_timeout():
    settings = Settings()
    client = build_route_client(settings)
    assert client.retry_budget() <= settings.SAFE_PATH_TIMEOUT_SECONDS
