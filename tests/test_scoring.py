import math

import numpy as np
import pytest

from safepath.core.analysis import haversine_m
from safepath.core.scoring import high_risk_points, point_contributions, risk_from_contributions, score_route
from safepath.core.severity import severity_weight
from safepath.models.schemas import Incident, Location

ORIGIN = Location(lat=33.6, lng=73.0)


def _incident_north_of(point, meters, category="robbery"):
    return Incident(position=Location(lat=point.lat + meters / 111195.0, lng=point.lng), category=category)


def test_empty_incident_set_scores_zero():
    route = [ORIGIN, Location(lat=33.62, lng=73.02)]
    assert score_route(route, []) == 0.0


def test_empty_route_scores_zero():
    assert score_route([], [_incident_north_of(ORIGIN, 10)]) == 0.0


def test_contribution_grows_as_incident_moves_closer():
    previous = 0.0
    for meters in (1100, 900, 600, 300, 100, 10):
        value = point_contributions([ORIGIN], [_incident_north_of(ORIGIN, meters)])[0]
        assert value > previous
        previous = value


def test_incident_beyond_cutoff_contributes_nothing():
    far = _incident_north_of(ORIGIN, 1500)
    assert point_contributions([ORIGIN], [far])[0] == 0.0
    assert score_route([ORIGIN], [far]) == 0.0


def test_contribution_uses_exponential_decay():
    value = point_contributions([ORIGIN], [_incident_north_of(ORIGIN, 400)], decay_m=400.0)[0]
    assert value == pytest.approx(10.0 * math.exp(-1), rel=1e-3)


def test_high_risk_points_amplify_score():
    # one point sitting on a robbery: contribution 10 > 5 so every point is high risk
    score = score_route([ORIGIN], [_incident_north_of(ORIGIN, 0)], amplification=2.0)
    assert score == pytest.approx(10.0 * (1 + 1.0 * 2.0))


def test_many_dangerous_points_rank_worse_than_one():
    clean = Location(lat=34.0, lng=73.0)
    spread = [_incident_north_of(ORIGIN, 0, "theft"), _incident_north_of(clean, 0, "theft")]
    # same average contribution: (5 + 5) / 2 vs (10 + 0) / 2
    two_moderate = score_route([ORIGIN, clean], spread, high_risk_threshold=4.0)
    one_severe = score_route([ORIGIN, clean], [_incident_north_of(ORIGIN, 0)], high_risk_threshold=4.0)
    assert two_moderate > one_severe


def test_high_risk_point_indices():
    route = [ORIGIN, Location(lat=34.0, lng=73.0)]
    assert high_risk_points(route, [_incident_north_of(ORIGIN, 0)]) == [0]


def _dense_contributions(points, incidents, decay_m=400.0, cutoff_m=1200.0):
    lat = np.array([p.lat for p in points])[:, None]
    lng = np.array([p.lng for p in points])[:, None]
    inc_lat = np.array([i.position.lat for i in incidents])[None, :]
    inc_lng = np.array([i.position.lng for i in incidents])[None, :]
    weights = np.array([severity_weight(i.category) for i in incidents])[None, :]
    d = haversine_m(lat, lng, inc_lat, inc_lng)
    return np.where(d <= cutoff_m, weights * np.exp(-d / decay_m), 0.0).sum(axis=1)


def test_blocked_contributions_match_the_dense_matrix():
    rng = np.random.default_rng(7)
    points = [Location(lat=float(lat), lng=float(lng))
              for lat, lng in zip(rng.uniform(33.60, 33.65, 300), rng.uniform(73.00, 73.05, 300))]
    # most incidents lie well outside the route box and are filtered out
    incidents = [Incident(position=Location(lat=float(lat), lng=float(lng)), category=str(cat))
                 for lat, lng, cat in zip(rng.uniform(33.4, 33.9, 2000), rng.uniform(72.8, 73.3, 2000),
                                          rng.choice(["robbery", "theft", "fraud"], 2000))]

    blocked = point_contributions(points, incidents, max_cells=5000)

    np.testing.assert_allclose(blocked, _dense_contributions(points, incidents))
    assert blocked.max() > 0


def test_incidents_far_from_the_route_are_skipped():
    route = [ORIGIN, Location(lat=33.61, lng=73.01)]
    far = [Incident(position=Location(lat=-33.6, lng=-73.0), category="murder")] * 50
    assert point_contributions(route, far).tolist() == [0.0, 0.0]


def test_risk_from_contributions_counts_high_risk_points():
    risk, high = risk_from_contributions(np.array([10.0, 0.0]), high_risk_threshold=5.0, amplification=2.0)
    assert high == 1
    assert risk == pytest.approx(5.0 * (1 + 0.5 * 2.0))
    assert risk_from_contributions(np.zeros(0)) == (0.0, 0)
