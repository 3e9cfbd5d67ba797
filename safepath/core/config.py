from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
import os


class Settings(BaseSettings):
    PROJECT_NAME: str = "SafePath API"
    VERSION: str = "1.0.0"
    API_V1_STR: str = "/api/v1"

    # Paths
    DATA_DIR: str = os.path.join(os.getcwd(), 'data')
    DATABASE_URL: Optional[str] = None

    # CORS settings
    BACKEND_CORS_ORIGINS: list = ["*"]

    LOG_LEVEL: str = "INFO"

    # Routing provider (OpenRouteService)
    ORS_API_KEY: str = ""
    ORS_BASE_URL: str = "https://api.openrouteservice.org"
    ORS_PROFILE: str = "driving-car"
    ORS_TIMEOUT_SECONDS: float = 4.0
    ORS_MAX_ATTEMPTS: int = 3
    ORS_BACKOFF_SECONDS: float = 0.5
    ORS_INITIAL_DELAY_SECONDS: float = 0.25
    REQUIRE_ROAD_ROUTE: bool = False

    # Hotspot clustering (~167m of latitude per cell)
    CLUSTER_CELL_SIZE_DEG: float = 0.0015

    # Exclusion regions
    REGION_MIN_COUNT: int = 3
    REGION_MIN_SEVERITY: float = 15.0
    REGION_BASE_RADIUS_M: float = 150.0
    REGION_DENSITY_M_PER_INCIDENT: float = 40.0
    REGION_DENSITY_CAP_M: float = 250.0
    REGION_SEVERITY_M_PER_POINT: float = 4.0
    REGION_SEVERITY_CAP_M: float = 250.0
    REGION_MAX_RADIUS_M: float = 600.0
    REGION_VERTICES: int = 16
    MAX_EXCLUSION_REGIONS: int = 20

    # Route scoring
    SCORE_DECAY_M: float = 400.0
    SCORE_CUTOFF_M: float = 1200.0
    SCORE_HIGH_RISK_POINT: float = 5.0
    SCORE_AMPLIFICATION: float = 2.0
    LOW_RISK_THRESHOLD: float = 2.0

    # Offline grid search (Islamabad / Rawalpindi box)
    GRID_LAT_MIN: float = 33.5
    GRID_LAT_MAX: float = 33.8
    GRID_LNG_MIN: float = 72.9
    GRID_LNG_MAX: float = 73.2
    GRID_WIDTH: int = 100
    GRID_HEIGHT: int = 100
    GRID_IMPACT_RADIUS: int = 3

    DEFAULT_DAYS_BACK: int = 90
    SAFE_PATH_TIMEOUT_SECONDS: float = 45.0
    # held back from the provider deadline for scoring and the response
    SAFE_PATH_RESERVE_SECONDS: float = 2.0
    SAFE_PATH_MAX_WORKERS: int = 40

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"sqlite:///{os.path.join(self.DATA_DIR, 'safepath.db')}"


settings = Settings()
