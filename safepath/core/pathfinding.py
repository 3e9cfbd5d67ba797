"""Offline safest-path search: A* over a crime-weighted grid of a fixed bounding box."""
import heapq
import itertools
import logging
import math
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from ..models.schemas import Incident, Location
from .severity import severity_weight

logger = logging.getLogger(__name__)

Cell = Tuple[int, int]  # (x, y)

# up, right, down, left
NEIGHBOR_OFFSETS = ((0, -1), (1, 0), (0, 1), (-1, 0))


def manhattan_distance(a: Cell, b: Cell) -> int:
    return abs(a[0] - b[0]) + abs(a[1] - b[1])


class GridSearch:
    """Rasterized city grid with radial crime costs and a 4-connected A* search.

    Open-set ties on f-score are broken by push order: among equal f-scores
    the entry pushed first is expanded first.
    """

    def __init__(self,
                 lat_min: float = 33.5, lat_max: float = 33.8,
                 lng_min: float = 72.9, lng_max: float = 73.2,
                 width: int = 100, height: int = 100,
                 impact_radius: int = 3):
        if lat_max <= lat_min or lng_max <= lng_min:
            raise ValueError("bounding box must have positive extent")
        if width <= 0 or height <= 0:
            raise ValueError("grid dimensions must be positive")
        self.lat_min, self.lat_max = lat_min, lat_max
        self.lng_min, self.lng_max = lng_min, lng_max
        self.width, self.height = width, height
        self.impact_radius = impact_radius

    @classmethod
    def from_settings(cls, settings) -> "GridSearch":
        return cls(
            lat_min=settings.GRID_LAT_MIN, lat_max=settings.GRID_LAT_MAX,
            lng_min=settings.GRID_LNG_MIN, lng_max=settings.GRID_LNG_MAX,
            width=settings.GRID_WIDTH, height=settings.GRID_HEIGHT,
            impact_radius=settings.GRID_IMPACT_RADIUS,
        )

    # --- coordinates ------------------------------------------------------

    def to_cell(self, lat: float, lng: float) -> Optional[Cell]:
        """Grid cell for a coordinate, or None outside the closed box."""
        if not (self.lat_min <= lat <= self.lat_max and self.lng_min <= lng <= self.lng_max):
            return None
        x = math.floor((lng - self.lng_min) / (self.lng_max - self.lng_min) * self.width)
        y = math.floor((lat - self.lat_min) / (self.lat_max - self.lat_min) * self.height)
        # the max edge belongs to the last cell
        return min(x, self.width - 1), min(y, self.height - 1)

    def to_location(self, cell: Cell) -> Location:
        x, y = cell
        return Location(
            lat=self.lat_min + (self.lat_max - self.lat_min) * (y / self.height),
            lng=self.lng_min + (self.lng_max - self.lng_min) * (x / self.width),
        )

    # --- cost grid --------------------------------------------------------

    def build_costs(self, incidents: Iterable[Incident]) -> np.ndarray:
        """(height, width) traversal costs: 1 everywhere plus a linear falloff stamp per incident."""
        costs = np.ones((self.height, self.width), dtype=float)
        r = self.impact_radius
        for incident in incidents:
            cell = self.to_cell(incident.position.lat, incident.position.lng)
            if cell is None:
                continue
            cx, cy = cell
            weight = severity_weight(incident.category)

            y0, y1 = max(0, cy - r), min(self.height - 1, cy + r)
            x0, x1 = max(0, cx - r), min(self.width - 1, cx + r)
            ys, xs = np.mgrid[y0:y1 + 1, x0:x1 + 1]
            dist = np.sqrt((ys - cy) ** 2 + (xs - cx) ** 2)
            impact = np.where(dist <= r, weight * (1 - dist / (r + 1)), 0.0)
            costs[y0:y1 + 1, x0:x1 + 1] += impact
        return costs

    # --- search -----------------------------------------------------------

    def search(self, costs: np.ndarray, start: Cell, goal: Cell) -> List[Cell]:
        """A* from start to goal; [] when the open set is exhausted."""
        counter = itertools.count()
        g_score: Dict[Cell, float] = {start: 0.0}
        came_from: Dict[Cell, Cell] = {}
        closed = set()
        open_heap = [(float(manhattan_distance(start, goal)), next(counter), start)]

        while open_heap:
            _, _, current = heapq.heappop(open_heap)
            if current in closed:
                continue  # stale entry
            if current == goal:
                return self._reconstruct(came_from, current)
            closed.add(current)

            cx, cy = current
            for dx, dy in NEIGHBOR_OFFSETS:
                nx, ny = cx + dx, cy + dy
                if not (0 <= nx < self.width and 0 <= ny < self.height):
                    continue
                neighbor = (nx, ny)
                if neighbor in closed:
                    continue
                tentative = g_score[current] + float(costs[ny, nx])
                if tentative >= g_score.get(neighbor, math.inf):
                    continue
                came_from[neighbor] = current
                g_score[neighbor] = tentative
                f = tentative + manhattan_distance(neighbor, goal)
                heapq.heappush(open_heap, (f, next(counter), neighbor))

        return []

    @staticmethod
    def _reconstruct(came_from: Dict[Cell, Cell], current: Cell) -> List[Cell]:
        path = [current]
        while current in came_from:
            current = came_from[current]
            path.append(current)
        path.reverse()
        return path

    def find_cells(self, start: Location, end: Location, incidents: Iterable[Incident]) -> List[Cell]:
        start_cell = self.to_cell(start.lat, start.lng)
        end_cell = self.to_cell(end.lat, end.lng)
        if start_cell is None or end_cell is None:
            logger.warning("Start or end point outside grid boundaries")
            return []
        cells = self.search(self.build_costs(incidents), start_cell, end_cell)
        if not cells:
            logger.warning("No grid path found between %s and %s", start_cell, end_cell)
        return cells

    def find_path(self, start: Location, end: Location, incidents: Iterable[Incident]) -> List[Location]:
        """Safest grid path as coordinates; empty when no path exists."""
        return [self.to_location(c) for c in self.find_cells(start, end, incidents)]
