"""Risk scoring of a candidate route against nearby incidents."""
import math
from typing import List, Sequence, Tuple
import numpy as np

from ..models.schemas import Incident, Location
from .analysis import haversine_m
from .severity import severity_weight

# upper bound on points x incidents cells held in memory at once
MAX_MATRIX_CELLS = 1_000_000

# shortest length of one degree of latitude, in meters
_MIN_M_PER_DEG_LAT = 110_574.0


def _nearby_mask(route_lat: np.ndarray, route_lng: np.ndarray,
                 inc_lat: np.ndarray, inc_lng: np.ndarray, cutoff_m: float) -> np.ndarray:
    """Incidents inside the route's bounding box widened by ``cutoff_m``."""
    pad_lat = cutoff_m / _MIN_M_PER_DEG_LAT
    lat_lo, lat_hi = route_lat.min() - pad_lat, route_lat.max() + pad_lat
    mask = (inc_lat >= lat_lo) & (inc_lat <= lat_hi)

    widest = max(abs(lat_lo), abs(lat_hi))
    if widest >= 89.0:
        return mask
    pad_lng = pad_lat / math.cos(math.radians(widest))
    lng_lo, lng_hi = route_lng.min() - pad_lng, route_lng.max() + pad_lng
    if lng_lo < -180.0 or lng_hi > 180.0:
        # box wraps the antimeridian
        return mask
    return mask & (inc_lng >= lng_lo) & (inc_lng <= lng_hi)


def point_contributions(points: Sequence[Location],
                        incidents: Sequence[Incident],
                        decay_m: float = 400.0,
                        cutoff_m: float = 1200.0,
                        max_cells: int = MAX_MATRIX_CELLS) -> np.ndarray:
    """Per-point sum of ``weight * exp(-d / decay)`` over incidents within ``cutoff_m``.

    Incidents that cannot be within ``cutoff_m`` of any point are dropped
    first, and the distance matrix is built in blocks of at most
    ``max_cells`` entries so memory stays bounded for long routes.
    """
    if not points:
        return np.zeros(0)
    if not incidents:
        return np.zeros(len(points))

    route_lat = np.array([p.lat for p in points])
    route_lng = np.array([p.lng for p in points])
    inc_lat = np.array([i.position.lat for i in incidents])
    inc_lng = np.array([i.position.lng for i in incidents])
    weights = np.array([severity_weight(i.category) for i in incidents])

    nearby = _nearby_mask(route_lat, route_lng, inc_lat, inc_lng, cutoff_m)
    inc_lat, inc_lng, weights = inc_lat[nearby], inc_lng[nearby], weights[nearby]
    totals = np.zeros(len(points))
    if not len(weights):
        return totals

    block = max(1, max_cells // len(weights))
    for lo in range(0, len(points), block):
        hi = lo + block
        # (block x incidents) distance matrix
        distances = haversine_m(route_lat[lo:hi, None], route_lng[lo:hi, None],
                                inc_lat[None, :], inc_lng[None, :])
        contrib = np.where(distances <= cutoff_m, weights[None, :] * np.exp(-distances / decay_m), 0.0)
        totals[lo:hi] = contrib.sum(axis=1)
    return totals


def risk_from_contributions(per_point: np.ndarray,
                            high_risk_threshold: float = 5.0,
                            amplification: float = 2.0) -> Tuple[float, int]:
    """(risk, high-risk point count) for precomputed per-point contributions."""
    n = len(per_point)
    if not n:
        return 0.0, 0
    total = float(per_point.sum())
    high_risk = int(np.count_nonzero(per_point > high_risk_threshold))
    return (total / n) * (1 + (high_risk / n) * amplification), high_risk


def score_route(points: Sequence[Location],
                incidents: Sequence[Incident],
                decay_m: float = 400.0,
                cutoff_m: float = 1200.0,
                high_risk_threshold: float = 5.0,
                amplification: float = 2.0) -> float:
    """Single non-negative risk value for a route.

    The average per-point contribution is multiplied by
    ``1 + high_risk_ratio * amplification`` so routes with many dangerous
    points rank worse than routes with one bad spot and the same average.
    """
    if not points or not incidents:
        return 0.0

    per_point = point_contributions(points, incidents, decay_m, cutoff_m)
    risk, _high_risk = risk_from_contributions(per_point, high_risk_threshold, amplification)
    return risk


def high_risk_points(points: Sequence[Location],
                     incidents: Sequence[Incident],
                     threshold: float = 5.0,
                     **kwargs) -> List[int]:
    per_point = point_contributions(points, incidents, **kwargs)
    return [int(i) for i in np.flatnonzero(per_point > threshold)]
