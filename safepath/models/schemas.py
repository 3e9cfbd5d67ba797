from typing import List, Optional, Dict, Any, Union
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class CrimeType(str, Enum):
    HOMICIDE = "homicide"
    MURDER = "murder"
    ASSAULT = "assault"
    ROBBERY = "robbery"
    RAPE = "rape"
    THEFT = "theft"
    BURGLARY = "burglary"
    AUTO_THEFT = "auto theft"
    VANDALISM = "vandalism"
    FRAUD = "fraud"


class Location(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)


class Incident(BaseModel):
    """A single reported crime as seen by the routing core."""
    model_config = ConfigDict(frozen=True)

    position: Location
    category: str = ""


class CrimeIncident(BaseModel):
    id: Optional[str] = None
    # allow either a known CrimeType enum or a free-form string
    crime_type: Union[CrimeType, str]
    location: Optional[Location] = None
    timestamp: datetime
    description: Optional[str] = None
    severity: int = Field(default=1, ge=1, le=5)
    area_name: Optional[str] = None


class ExclusionRegion(BaseModel):
    center: Location
    radius_m: float
    crime_count: int
    severity_sum: float
    priority: float
    polygon: List[Location]

    def ring(self) -> List[List[float]]:
        """Polygon ring in provider order, [lng, lat]."""
        return [[p.lng, p.lat] for p in self.polygon]


class Route(BaseModel):
    points: List[Location] = Field(..., min_length=1)
    distance_m: float = 0.0
    duration_s: float = 0.0
    source: str
    risk: Optional[float] = None
    high_risk_points: int = 0
    high_risk_points: int = 0


class PathPoint(BaseModel):
    # left unvalidated here so bad coordinates surface as InvalidInputError
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class RoutingStrategy(str, Enum):
    PROVIDER = "provider"
    GRID = "grid"


class SafestPathRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start: PathPoint = Field(..., alias="from")
    end: PathPoint = Field(..., alias="to")
    timeframe: Optional[int] = Field(default=None, ge=1, le=3650)
    strategy: RoutingStrategy = RoutingStrategy.PROVIDER


class SafestPathResult(BaseModel):
    success: bool = True
    path: List[PathPoint]
    metadata: Dict[str, Any]
