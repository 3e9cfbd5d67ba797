"""
Road routing through OpenRouteService with ordered fallback strategies.

Strategies are tried in order until one yields a route:

    geojson_post   POST /v2/directions/{profile}/geojson  (FeatureCollection)
    json_post      POST /v2/directions/{profile}/json     (flat "routes" shape)
    query_get      GET  /v2/directions/{profile}?start=..&end=..  (no exclusions)
    straight_line  synthetic two-point route, skipped when a road route is required

Networked strategies are retried with exponential backoff on transient
failures (timeouts, connection errors, 429, 5xx, malformed bodies). Any other
4xx rejects the request shape and moves on to the next strategy. An optional
deadline bounds the whole run.
"""
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import polyline
import requests

from ..models.schemas import ExclusionRegion, Location, Route
from .analysis import calculate_distance, path_length_m
from .errors import InvalidInputError, ProviderRejectedError, ProviderUnavailableError

logger = logging.getLogger(__name__)

StrategyFn = Callable[[Location, Location, Sequence[ExclusionRegion], Optional[float]], Route]

# below this many seconds to the deadline no new provider request is started
MIN_REQUEST_SECONDS = 0.05


@dataclass
class StrategyOutcome:
    name: str
    route: Optional[Route] = None
    error: Optional[str] = None
    rejected: bool = False
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.route is not None


def coerce_point(value: Any, label: str = "point") -> Location:
    """Validate a Location, (lat, lng) pair or {lat, lng} mapping."""
    if isinstance(value, Location):
        lat, lng = value.lat, value.lng
    elif isinstance(value, dict):
        lat = value.get("lat", value.get("latitude"))
        lng = value.get("lng", value.get("longitude"))
    elif isinstance(value, (tuple, list)) and len(value) == 2:
        lat, lng = value
    else:
        raise InvalidInputError(f"{label} must provide latitude and longitude")

    try:
        lat, lng = float(lat), float(lng)
    except (TypeError, ValueError):
        raise InvalidInputError(f"{label} has non-numeric coordinates") from None
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidInputError(f"{label} has non-finite coordinates")
    if not (-90.0 <= lat <= 90.0) or not (-180.0 <= lng <= 180.0):
        raise InvalidInputError(f"{label} is out of range: ({lat}, {lng})")
    return Location(lat=lat, lng=lng)


def _mapping(value: Any, what: str) -> Dict[str, Any]:
    """Treat a missing member as empty; anything but a JSON object is malformed."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ProviderUnavailableError(f"malformed {what}: expected an object, got {type(value).__name__}")
    return value


def _coords_to_points(coords: Any) -> List[Location]:
    """[[lng, lat(, elevation)], ...] -> Locations."""
    if not isinstance(coords, list) or not coords:
        raise ProviderUnavailableError("route geometry is empty")
    try:
        return [Location(lat=float(c[1]), lng=float(c[0])) for c in coords]
    except (TypeError, ValueError, IndexError, KeyError) as e:
        raise ProviderUnavailableError(f"malformed route geometry: {e}") from e


def _summary_values(summary: Dict[str, Any], points: List[Location]) -> Tuple[float, float]:
    distance = summary.get("distance")
    duration = summary.get("duration")
    try:
        distance = float(distance) if distance is not None else path_length_m(points)
        duration = float(duration) if duration is not None else 0.0
    except (TypeError, ValueError) as e:
        raise ProviderUnavailableError(f"malformed route summary: {e}") from e
    if not (math.isfinite(distance) and math.isfinite(duration)):
        raise ProviderUnavailableError("route summary is not finite")
    return distance, duration


def parse_feature_collection(data: Dict[str, Any], source: str) -> Route:
    """Parse the GeoJSON ``FeatureCollection`` response shape."""
    features = data.get("features")
    if not isinstance(features, list) or not features:
        raise ProviderUnavailableError("response contains no features")
    feature = _mapping(features[0], "feature")
    points = _coords_to_points(_mapping(feature.get("geometry"), "geometry").get("coordinates"))
    properties = _mapping(feature.get("properties"), "feature properties")
    summary = _mapping(properties.get("summary"), "route summary")
    distance, duration = _summary_values(summary, points)
    return Route(points=points, distance_m=distance, duration_s=duration, source=source)


def parse_routes(data: Dict[str, Any], source: str) -> Route:
    """Parse the flat ``{"routes": [...]}`` response shape.

    Geometry may be an encoded polyline, a GeoJSON LineString or a raw
    coordinate list.
    """
    routes = data.get("routes")
    if not isinstance(routes, list) or not routes:
        raise ProviderUnavailableError("response contains no routes")
    first = _mapping(routes[0], "route")
    geometry = first.get("geometry")
    if isinstance(geometry, str):
        try:
            points = [Location(lat=lat, lng=lng) for lat, lng in polyline.decode(geometry)]
        except (ValueError, IndexError, TypeError) as e:
            raise ProviderUnavailableError(f"undecodable polyline: {e}") from e
        if not points:
            raise ProviderUnavailableError("route geometry is empty")
    elif isinstance(geometry, dict):
        points = _coords_to_points(geometry.get("coordinates"))
    else:
        points = _coords_to_points(geometry)
    distance, duration = _summary_values(_mapping(first.get("summary"), "route summary"), points)
    return Route(points=points, distance_m=distance, duration_s=duration, source=source)


def straight_line_route(start: Location, end: Location) -> Route:
    return Route(
        points=[start, end],
        distance_m=calculate_distance(start, end),
        duration_s=0.0,
        source="straight_line",
    )


class RouteProviderClient:
    """OpenRouteService directions client owning its own retry policy.

    ``deadline`` arguments are absolute times on ``clock``. Once a deadline
    is reached no further networked attempt is started, each request timeout
    is clipped to what is left, and the run falls through to the straight
    line when that is permitted.
    """

    def __init__(self,
                 api_key: str = "",
                 base_url: str = "https://api.openrouteservice.org",
                 profile: str = "driving-car",
                 timeout: float = 4.0,
                 max_attempts: int = 3,
                 backoff_base: float = 0.5,
                 initial_delay: float = 0.25,
                 session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.profile = profile
        self.timeout = timeout
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.initial_delay = initial_delay
        self.session = session or requests.Session()
        self._sleep = sleep
        self.clock = clock

    @property
    def directions_url(self) -> str:
        return f"{self.base_url}/v2/directions/{self.profile}"

    def retry_budget(self, networked_strategies: int = 3) -> float:
        """Worst-case seconds for one run when every networked attempt times out."""
        backoff = sum(self.backoff_base * 2 ** (n - 1) for n in range(1, self.max_attempts))
        per_strategy = self.max_attempts * self.timeout + backoff
        return self.initial_delay + networked_strategies * per_strategy

    # --- deadline ---------------------------------------------------------

    def _remaining(self, deadline: Optional[float]) -> Optional[float]:
        if deadline is None:
            return None
        return deadline - self.clock()

    def _expired(self, deadline: Optional[float]) -> bool:
        remaining = self._remaining(deadline)
        return remaining is not None and remaining < MIN_REQUEST_SECONDS

    def _request_timeout(self, deadline: Optional[float]) -> float:
        remaining = self._remaining(deadline)
        if remaining is None:
            return self.timeout
        return max(MIN_REQUEST_SECONDS, min(self.timeout, remaining))

    # --- request building -------------------------------------------------

    def build_request_body(self, start: Location, end: Location,
                           exclusions: Sequence[ExclusionRegion] = ()) -> Dict[str, Any]:
        # ORS wants [lng, lat]
        body: Dict[str, Any] = {
            "coordinates": [[start.lng, start.lat], [end.lng, end.lat]],
            "instructions": False,
        }
        if exclusions:
            body["options"] = {
                "avoid_polygons": {
                    "type": "MultiPolygon",
                    "coordinates": [[region.ring()] for region in exclusions],
                }
            }
        return body

    def _headers(self, accept: str) -> Dict[str, str]:
        headers = {"Accept": accept, "Content-Type": "application/json; charset=utf-8"}
        if self.api_key:
            headers["Authorization"] = self.api_key
        return headers

    def _send(self, method: str, url: str, timeout: Optional[float] = None, **kwargs) -> Dict[str, Any]:
        try:
            response = self.session.request(method, url, timeout=timeout or self.timeout, **kwargs)
        except requests.Timeout as e:
            raise ProviderUnavailableError(f"timeout calling {url}") from e
        except requests.RequestException as e:
            raise ProviderUnavailableError(f"connection error calling {url}: {e}") from e

        status = response.status_code
        body = (response.text or "")[:500]
        if status == 429 or status >= 500:
            raise ProviderUnavailableError(f"{url} returned {status}", status, body)
        if status >= 400:
            raise ProviderRejectedError(f"{url} returned {status}", status, body)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderUnavailableError(f"malformed body from {url}", status, body) from e
        if not isinstance(data, dict):
            raise ProviderUnavailableError(f"unexpected body from {url}", status, body)
        if data.get("error"):
            raise ProviderRejectedError(f"{url} reported error {data['error']}", status, body)
        return data

    # --- strategies -------------------------------------------------------

    def _geojson_post(self, start, end, exclusions, timeout=None) -> Route:
        data = self._send(
            "POST", f"{self.directions_url}/geojson", timeout,
            json=self.build_request_body(start, end, exclusions),
            headers=self._headers("application/geo+json, application/json"),
        )
        return parse_feature_collection(data, "geojson_post")

    def _json_post(self, start, end, exclusions, timeout=None) -> Route:
        data = self._send(
            "POST", f"{self.directions_url}/json", timeout,
            json=self.build_request_body(start, end, exclusions),
            headers=self._headers("application/json"),
        )
        return parse_routes(data, "json_post")

    def _query_get(self, start, end, exclusions, timeout=None) -> Route:
        params = {
            "start": f"{start.lng},{start.lat}",
            "end": f"{end.lng},{end.lat}",
        }
        if self.api_key:
            params["api_key"] = self.api_key
        data = self._send(
            "GET", self.directions_url, timeout, params=params,
            headers=self._headers("application/geo+json, application/json"),
        )
        # some deployments answer this form with the flat shape
        if "routes" in data and "features" not in data:
            return parse_routes(data, "query_get")
        return parse_feature_collection(data, "query_get")

    def strategies(self, exclusions: Sequence[ExclusionRegion] = (),
                   require_road: bool = False) -> List[Tuple[str, StrategyFn, bool]]:
        """Ordered (name, callable, networked) triples for one request."""
        plan = [
            ("geojson_post", self._geojson_post, True),
            ("json_post", self._json_post, True),
        ]
        if not exclusions:
            plan.append(("query_get", self._query_get, True))
        if not require_road:
            plan.append(("straight_line", lambda s, e, _x, _t=None: straight_line_route(s, e), False))
        return plan

    def run_strategy(self, name: str, fn: StrategyFn, start: Location, end: Location,
                     exclusions: Sequence[ExclusionRegion] = (), networked: bool = True,
                     deadline: Optional[float] = None) -> StrategyOutcome:
        if not networked:
            return StrategyOutcome(name=name, route=fn(start, end, exclusions, None), attempts=1)

        last_error: Optional[Exception] = None
        attempt = 0
        while attempt < self.max_attempts:
            if self._expired(deadline):
                logger.warning("Routing strategy %s stopped after %d attempt(s): deadline reached",
                               name, attempt)
                return StrategyOutcome(name=name, error=str(last_error or "deadline reached"),
                                       attempts=attempt)
            attempt += 1
            try:
                route = fn(start, end, exclusions, self._request_timeout(deadline))
                return StrategyOutcome(name=name, route=route, attempts=attempt)
            except ProviderRejectedError as e:
                logger.warning("Routing strategy %s rejected: %s status=%s body=%s",
                               name, e, e.status_code, e.body)
                return StrategyOutcome(name=name, error=str(e), rejected=True, attempts=attempt)
            except ProviderUnavailableError as e:
                last_error = e
                logger.warning("Routing strategy %s attempt %d/%d failed: %s status=%s body=%s",
                               name, attempt, self.max_attempts, e, e.status_code, e.body)
            if attempt < self.max_attempts:
                delay = self.backoff_base * 2 ** (attempt - 1)
                remaining = self._remaining(deadline)
                if remaining is not None and remaining - delay < MIN_REQUEST_SECONDS:
                    # no time left for another attempt
                    break
                self._sleep(delay)
        return StrategyOutcome(name=name, error=str(last_error), attempts=attempt)

    def run_strategies(self, start: Any, end: Any,
                       exclusions: Optional[Sequence[ExclusionRegion]] = None,
                       require_road: bool = False,
                       deadline: Optional[float] = None) -> List[StrategyOutcome]:
        """Run strategies in order and return every outcome up to the first success."""
        start = coerce_point(start, "start")
        end = coerce_point(end, "end")
        exclusions = list(exclusions or [])

        outcomes = []
        delayed = False
        for name, fn, networked in self.strategies(exclusions, require_road):
            if networked and self._expired(deadline):
                outcomes.append(StrategyOutcome(name=name, error="deadline reached"))
                continue
            if networked and not delayed and self.initial_delay > 0:
                # provider rate limit
                self._sleep(self.initial_delay)
                delayed = True
            outcome = self.run_strategy(name, fn, start, end, exclusions, networked, deadline)
            outcomes.append(outcome)
            if outcome.ok:
                break
        return outcomes

    def get_route(self, start: Any, end: Any,
                  exclusions: Optional[Sequence[ExclusionRegion]] = None,
                  require_road: bool = False,
                  deadline: Optional[float] = None) -> Optional[Route]:
        """Best available route, or None when no permitted strategy produced one."""
        outcomes = self.run_strategies(start, end, exclusions, require_road, deadline)
        final = outcomes[-1] if outcomes else None
        if final is not None and final.ok:
            if len(outcomes) > 1:
                logger.info("Route obtained via fallback strategy %s after %s",
                            final.name, [o.name for o in outcomes[:-1]])
            return final.route
        logger.error("All routing strategies failed: %s",
                     "; ".join(f"{o.name}: {o.error}" for o in outcomes))
        return None
