from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple
import math
import numpy as np
from ..models.schemas import Location, Incident, ExclusionRegion
from .severity import severity_weight

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEG_LAT = 111320.0

CellKey = Tuple[int, int]


def haversine_m(lat1, lng1, lat2, lng2):
    """Great-circle distance in meters. Accepts scalars or numpy arrays."""
    lat1, lng1, lat2, lng2 = map(np.radians, (lat1, lng1, lat2, lng2))

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    a = np.sin(dlat/2)**2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlng/2)**2
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))

    return EARTH_RADIUS_M * c


def calculate_distance(loc1: Location, loc2: Location) -> float:
    """Calculate distance between two locations in meters"""
    return float(haversine_m(loc1.lat, loc1.lng, loc2.lat, loc2.lng))


def path_length_m(points: List[Location]) -> float:
    if len(points) < 2:
        return 0.0
    lats = np.array([p.lat for p in points])
    lngs = np.array([p.lng for p in points])
    return float(np.sum(haversine_m(lats[:-1], lngs[:-1], lats[1:], lngs[1:])))


def create_circle_polygon(lat: float, lng: float, radius_m: float, num_points: int = 16) -> List[Location]:
    """Create a closed circular polygon around a point"""
    cos_lat = math.cos(math.radians(lat))
    # guard against division by zero near poles
    lng_scale = METERS_PER_DEG_LAT * cos_lat if abs(cos_lat) > 1e-6 else METERS_PER_DEG_LAT
    polygon = []
    for i in range(num_points):
        angle = 2 * math.pi * i / num_points
        dlat = radius_m * math.sin(angle) / METERS_PER_DEG_LAT
        dlng = radius_m * math.cos(angle) / lng_scale
        polygon.append(Location(
            lat=max(-90.0, min(90.0, lat + dlat)),
            lng=max(-180.0, min(180.0, lng + dlng)),
        ))
    polygon.append(polygon[0])
    return polygon


@dataclass
class GridCell:
    x: int
    y: int
    count: int = 0
    severity_sum: float = 0.0
    lat_weighted_sum: float = 0.0
    lng_weighted_sum: float = 0.0

    def add(self, lat: float, lng: float, weight: float) -> None:
        self.count += 1
        self.severity_sum += weight
        self.lat_weighted_sum += lat * weight
        self.lng_weighted_sum += lng * weight

    @property
    def centroid(self) -> Location:
        return Location(
            lat=self.lat_weighted_sum / self.severity_sum,
            lng=self.lng_weighted_sum / self.severity_sum,
        )

    @property
    def priority(self) -> float:
        return self.severity_sum + 2 * self.count


def cell_key(lat: float, lng: float, cell_size_deg: float) -> CellKey:
    return math.floor(lng / cell_size_deg), math.floor(lat / cell_size_deg)


def cluster_incidents(incidents: Iterable[Incident], cell_size_deg: float = 0.0015) -> Dict[CellKey, GridCell]:
    """Bucket incidents into a uniform lat/lng lattice.

    Each cell keeps running sums (count, severity, position × severity); the
    severity-weighted centroid is only divided out on read, so the result does
    not depend on the order incidents arrive in.
    """
    if cell_size_deg <= 0:
        raise ValueError("cell_size_deg must be positive")

    cells: Dict[CellKey, GridCell] = {}
    for incident in incidents:
        position = getattr(incident, "position", None)
        if position is None:
            continue
        key = cell_key(position.lat, position.lng, cell_size_deg)
        cell = cells.get(key)
        if cell is None:
            cell = cells[key] = GridCell(x=key[0], y=key[1])
        cell.add(position.lat, position.lng, severity_weight(incident.category))
    return cells


def region_radius_m(count: int, severity_sum: float,
                    base_m: float = 150.0,
                    density_m_per_incident: float = 40.0,
                    density_cap_m: float = 250.0,
                    severity_m_per_point: float = 4.0,
                    severity_cap_m: float = 250.0,
                    max_radius_m: float = 600.0) -> float:
    density = min(count * density_m_per_incident, density_cap_m)
    severity = min(severity_sum * severity_m_per_point, severity_cap_m)
    return min(base_m + density + severity, max_radius_m)


def build_exclusion_regions(cells: Dict[CellKey, GridCell],
                            min_count: int = 3,
                            min_severity: float = 15.0,
                            num_vertices: int = 16,
                            limit: Optional[int] = None,
                            **radius_options) -> List[ExclusionRegion]:
    """Turn high-risk cells into circular avoid polygons, highest priority first.

    A cell qualifies when it has at least ``min_count`` incidents or at least
    ``min_severity`` accumulated severity.
    """
    regions = []
    for key in sorted(cells):
        cell = cells[key]
        if cell.count < min_count and cell.severity_sum < min_severity:
            continue
        center = cell.centroid
        radius = region_radius_m(cell.count, cell.severity_sum, **radius_options)
        regions.append(ExclusionRegion(
            center=center,
            radius_m=radius,
            crime_count=cell.count,
            severity_sum=cell.severity_sum,
            priority=cell.priority,
            polygon=create_circle_polygon(center.lat, center.lng, radius, num_vertices),
        ))

    # stable sort keeps the cell-key order among equal priorities
    regions.sort(key=lambda r: r.priority, reverse=True)
    if limit is not None:
        regions = regions[:limit]
    return regions
