"""
Safest-path orchestration.

SafestPathPlanner picks between a direct provider route and an avoidance
route built from crime hotspots. SafePathService is the public entry point:
it fetches incidents for a lookback window, runs the chosen strategy under an
end-to-end timeout and shapes the result for the API.
"""
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from typing import Any, Dict, List, Optional, Sequence

from ..models.schemas import (
    ExclusionRegion,
    Incident,
    Location,
    PathPoint,
    Route,
    RoutingStrategy,
    SafestPathResult,
)
from .analysis import build_exclusion_regions, cluster_incidents, path_length_m
from .errors import InvalidInputError, NoRouteFoundError, RouteTimeoutError
from .incidents import IncidentSource, normalize_incidents
from .pathfinding import GridSearch
from .routing import RouteProviderClient, coerce_point
from .scoring import point_contributions, risk_from_contributions

logger = logging.getLogger(__name__)


class SafestPathPlanner:
    def __init__(self,
                 client: RouteProviderClient,
                 low_risk_threshold: float = 2.0,
                 cell_size_deg: float = 0.0015,
                 max_regions: Optional[int] = 20,
                 require_road: bool = False,
                 region_options: Optional[Dict[str, Any]] = None,
                 scoring_options: Optional[Dict[str, Any]] = None):
        self.client = client
        self.low_risk_threshold = low_risk_threshold
        self.cell_size_deg = cell_size_deg
        self.max_regions = max_regions
        self.require_road = require_road
        self.region_options = region_options or {}
        self.scoring_options = scoring_options or {}

    @classmethod
    def from_settings(cls, client: RouteProviderClient, settings) -> "SafestPathPlanner":
        return cls(
            client,
            low_risk_threshold=settings.LOW_RISK_THRESHOLD,
            cell_size_deg=settings.CLUSTER_CELL_SIZE_DEG,
            max_regions=settings.MAX_EXCLUSION_REGIONS,
            require_road=settings.REQUIRE_ROAD_ROUTE,
            region_options={
                "min_count": settings.REGION_MIN_COUNT,
                "min_severity": settings.REGION_MIN_SEVERITY,
                "num_vertices": settings.REGION_VERTICES,
                "base_m": settings.REGION_BASE_RADIUS_M,
                "density_m_per_incident": settings.REGION_DENSITY_M_PER_INCIDENT,
                "density_cap_m": settings.REGION_DENSITY_CAP_M,
                "severity_m_per_point": settings.REGION_SEVERITY_M_PER_POINT,
                "severity_cap_m": settings.REGION_SEVERITY_CAP_M,
                "max_radius_m": settings.REGION_MAX_RADIUS_M,
            },
            scoring_options={
                "decay_m": settings.SCORE_DECAY_M,
                "cutoff_m": settings.SCORE_CUTOFF_M,
                "high_risk_threshold": settings.SCORE_HIGH_RISK_POINT,
                "amplification": settings.SCORE_AMPLIFICATION,
            },
        )

    def score(self, route: Route, incidents: Sequence[Incident]) -> Route:
        options = self.scoring_options
        per_point = point_contributions(
            route.points, incidents,
            decay_m=options.get("decay_m", 400.0),
            cutoff_m=options.get("cutoff_m", 1200.0),
        )
        risk, high_risk = risk_from_contributions(
            per_point,
            high_risk_threshold=options.get("high_risk_threshold", 5.0),
            amplification=options.get("amplification", 2.0),
        )
        return route.model_copy(update={"risk": risk, "high_risk_points": high_risk})

    def exclusion_regions(self, incidents: Sequence[Incident]) -> List[ExclusionRegion]:
        cells = cluster_incidents(incidents, self.cell_size_deg)
        return build_exclusion_regions(cells, limit=self.max_regions, **self.region_options)

    def compute_safest_route(self, start: Any, end: Any,
                             incidents: Sequence[Incident],
                             deadline: Optional[float] = None) -> Optional[Route]:
        """Direct route when it is low risk, otherwise the lower-risk of direct and avoidance."""
        direct = self.client.get_route(start, end, require_road=self.require_road, deadline=deadline)
        if direct is None:
            return None
        direct = self.score(direct, incidents)
        if direct.risk <= self.low_risk_threshold:
            logger.info("Direct route accepted (risk %.3f)", direct.risk)
            return direct

        regions = self.exclusion_regions(incidents)
        if not regions:
            logger.info("Direct route risk %.3f but no hotspots qualify", direct.risk)
            return direct

        try:
            avoidance = self.client.get_route(start, end, regions, require_road=True, deadline=deadline)
            if avoidance is None:
                logger.warning("Avoidance route unavailable; keeping direct route")
                return direct
            avoidance = self.score(avoidance, incidents)
        except InvalidInputError:
            raise
        except Exception as e:
            logger.warning("Avoidance route failed (%s); keeping direct route", e, exc_info=True)
            return direct

        logger.info("Direct risk %.3f vs avoidance risk %.3f around %d regions",
                    direct.risk, avoidance.risk, len(regions))
        return avoidance if avoidance.risk < direct.risk else direct


class SafePathService:
    """Public safest-path operation: incidents in, coordinates out.

    With a ``timeout`` the provider work is bounded by a deadline set when the
    request arrives, less ``reserve_seconds`` for scoring and shaping the
    result, so a slow provider degrades to the straight line rather than a
    timeout and workers never outlive their request for long.
    """

    def __init__(self,
                 incident_source: IncidentSource,
                 planner: SafestPathPlanner,
                 grid: Optional[GridSearch] = None,
                 timeout: Optional[float] = 45.0,
                 max_workers: int = 40,
                 reserve_seconds: float = 2.0):
        self.incident_source = incident_source
        self.planner = planner
        self.grid = grid or GridSearch()
        self.timeout = timeout
        self.reserve_seconds = reserve_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="safepath")

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def provider_deadline(self) -> Optional[float]:
        """Absolute ``time.monotonic()`` by which provider calls must stop."""
        if self.timeout is None:
            return None
        reserve = min(self.reserve_seconds, self.timeout / 4)
        return time.monotonic() + self.timeout - reserve

    def compute_safest_path(self, start: Any, end: Any, lookback_days: int,
                            strategy: RoutingStrategy = RoutingStrategy.PROVIDER) -> SafestPathResult:
        start = coerce_point(start, "start")
        end = coerce_point(end, "end")
        if isinstance(lookback_days, bool) or not isinstance(lookback_days, int) or lookback_days < 1:
            raise InvalidInputError("lookback_days must be a positive integer")
        strategy = RoutingStrategy(strategy)

        if self.timeout is None:
            return self._compute(start, end, lookback_days, strategy, None)

        # the deadline starts now so time spent queued for a worker counts
        deadline = self.provider_deadline()
        future = self._executor.submit(self._compute, start, end, lookback_days, strategy, deadline)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.error("Safest path computation exceeded %.1fs", self.timeout)
            raise RouteTimeoutError(f"no route computed within {self.timeout:g} seconds") from None

    def _compute(self, start: Location, end: Location, lookback_days: int,
                 strategy: RoutingStrategy, deadline: Optional[float]) -> SafestPathResult:
        records = self.incident_source.fetch_incidents(lookback_days)
        incidents = normalize_incidents(records)
        logger.info("Using %d of %d crime records for path calculation", len(incidents), len(records))

        if strategy == RoutingStrategy.GRID:
            points = self.grid.find_path(start, end, incidents)
            if not points:
                raise NoRouteFoundError("no grid path between the given points")
            route = self.planner.score(
                Route(points=points, distance_m=path_length_m(points), source="grid"),
                incidents,
            )
        else:
            route = self.planner.compute_safest_route(start, end, incidents, deadline=deadline)
            if route is None:
                raise NoRouteFoundError("no route obtainable from any routing strategy")

        return SafestPathResult(
            path=[PathPoint(latitude=p.lat, longitude=p.lng) for p in route.points],
            metadata={
                "incidentCount": len(incidents),
                "crimeDataPoints": len(records),
                "pointCount": len(route.points),
                "timeframe": f"{lookback_days} days",
                "routing": "grid" if strategy == RoutingStrategy.GRID else "road-based",
                "source": route.source,
                "risk": route.risk,
                "highRiskPoints": route.high_risk_points,
                "distanceMeters": route.distance_m,
                "durationSeconds": route.duration_s,
            },
        )


def build_route_client(settings, session=None) -> RouteProviderClient:
    if not settings.ORS_API_KEY:
        logger.warning("ORS_API_KEY is not set; provider calls will likely be rejected")
    return RouteProviderClient(
        api_key=settings.ORS_API_KEY,
        base_url=settings.ORS_BASE_URL,
        profile=settings.ORS_PROFILE,
        timeout=settings.ORS_TIMEOUT_SECONDS,
        max_attempts=settings.ORS_MAX_ATTEMPTS,
        backoff_base=settings.ORS_BACKOFF_SECONDS,
        initial_delay=settings.ORS_INITIAL_DELAY_SECONDS,
        session=session,
    )


def build_safe_path_service(settings, incident_source: IncidentSource,
                            client: Optional[RouteProviderClient] = None) -> SafePathService:
    client = client or build_route_client(settings)
    if settings.ORS_TIMEOUT_SECONDS >= settings.SAFE_PATH_TIMEOUT_SECONDS:
        raise ValueError("ORS_TIMEOUT_SECONDS must be shorter than SAFE_PATH_TIMEOUT_SECONDS")
    budget = client.retry_budget()
    if budget > settings.SAFE_PATH_TIMEOUT_SECONDS:
        logger.warning("Worst-case provider retries take %.1fs, beyond the %.1fs request timeout; "
                       "late attempts will be skipped in favour of the fallback route",
                       budget, settings.SAFE_PATH_TIMEOUT_SECONDS)
    return SafePathService(
        incident_source=incident_source,
        planner=SafestPathPlanner.from_settings(client, settings),
        grid=GridSearch.from_settings(settings),
        timeout=settings.SAFE_PATH_TIMEOUT_SECONDS,
        max_workers=settings.SAFE_PATH_MAX_WORKERS,
        reserve_seconds=settings.SAFE_PATH_RESERVE_SECONDS,
    )
