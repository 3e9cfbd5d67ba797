from datetime import datetime, timezone, timedelta, date, time as dtime
from typing import List, Optional, Dict, Any, Tuple, cast
from fastapi import FastAPI, HTTPException, Query, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from collections import Counter
from uuid import uuid4
import logging

from .core.config import settings
from .core.analysis import build_exclusion_regions, cluster_incidents
from .core.errors import InvalidInputError, NoRouteFoundError, RouteTimeoutError
from .core.incidents import DatabaseIncidentSource, normalize_incidents
from .core.logging_config import configure_logging
from .core.safest_path import SafePathService, build_safe_path_service
from .core.severity import severity_tier
from .models.schemas import (
    CrimeIncident,
    CrimeType,
    Location,
    ExclusionRegion,
    SafestPathRequest,
    SafestPathResult,
)
from .models.orm import CrimeORM
from .db import SessionLocal, engine, Base

logger = logging.getLogger("safepath.api")

MONTHS = ['Jan', 'Feb', 'Mar', 'Apr', 'May', 'Jun', 'Jul', 'Aug', 'Sep', 'Oct', 'Nov', 'Dec']

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_STR}/openapi.json"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def on_startup():
    """Create DB tables and the routing service on startup"""
    configure_logging()
    Base.metadata.create_all(bind=engine)
    app.state.safe_path_service = build_safe_path_service(settings, DatabaseIncidentSource(SessionLocal))


@app.on_event("shutdown")
def on_shutdown():
    service = getattr(app.state, "safe_path_service", None)
    if service is not None:
        service.close()


# TestClient without a context manager skips startup events.
try:
    Base.metadata.create_all(bind=engine)
except SQLAlchemyError as e:
    logger.warning(f"Could not create tables at import time: {e}")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info(f"Incoming request {request.method} {request.url}")
    response = await call_next(request)
    logger.info(f"Completed {request.method} {request.url} -> {response.status_code}")
    return response


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError):
    return JSONResponse(status_code=400, content={
        "error": "Invalid coordinates provided. Both starting and destination points must include latitude and longitude.",
        "message": str(exc),
    })


@app.exception_handler(NoRouteFoundError)
async def no_route_handler(request: Request, exc: NoRouteFoundError):
    return JSONResponse(status_code=404, content={
        "error": "No path found between the given points. They may be too far apart or unreachable.",
        "message": str(exc),
    })


@app.exception_handler(RouteTimeoutError)
async def route_timeout_handler(request: Request, exc: RouteTimeoutError):
    return JSONResponse(status_code=504, content={
        "error": "Safest path calculation timed out",
        "message": str(exc),
    })


def _to_aware_utc(dt: datetime) -> Optional[datetime]:
    """Convert datetime to UTC timezone-aware"""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _date_window(start: Optional[date], end: Optional[date], days_back: int = None) -> Tuple[datetime, datetime]:
    """Inclusive UTC window; defaults to the last DEFAULT_DAYS_BACK days."""
    end_dt = datetime.combine(end, dtime.max, tzinfo=timezone.utc) if end else datetime.now(timezone.utc)
    if start:
        start_dt = datetime.combine(start, dtime.min, tzinfo=timezone.utc)
    else:
        start_dt = end_dt - timedelta(days=days_back or settings.DEFAULT_DAYS_BACK)
    if start_dt > end_dt:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return start_dt, end_dt


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_safe_path_service(request: Request) -> SafePathService:
    service = getattr(request.app.state, "safe_path_service", None)
    if service is None:
        service = build_safe_path_service(settings, DatabaseIncidentSource(SessionLocal))
        request.app.state.safe_path_service = service
    return service


def orm_to_pydantic(r) -> CrimeIncident:
    """Convert a SQLAlchemy ORM CrimeORM instance into a CrimeIncident Pydantic model."""
    try:
        ct = CrimeType(r.crime_type)
    except ValueError:
        ct = str(r.crime_type)

    location = None
    if r.lat is not None and r.lng is not None:
        location = Location(lat=float(cast(Any, r.lat)), lng=float(cast(Any, r.lng)))
    timestamp = _to_aware_utc(cast(Any, r.timestamp)) if r.timestamp else datetime.now(timezone.utc)

    return CrimeIncident(
        id=str(r.id),
        crime_type=ct,
        location=location,
        timestamp=timestamp,
        description=str(r.description) if r.description is not None else None,
        severity=int(cast(Any, r.severity)) if r.severity is not None else 1,
        area_name=str(r.area_name) if r.area_name is not None else None,
    )


def _rows_in_window(db: Session, start_dt: datetime, end_dt: datetime) -> List[CrimeORM]:
    return (
        db.query(CrimeORM)
        .filter(CrimeORM.timestamp >= start_dt)
        .filter(CrimeORM.timestamp <= end_dt)
        .all()
    )

# === SAFEST PATH ===

@app.post("/api/calculate-safest-path", response_model=SafestPathResult)
def calculate_safest_path(
    payload: SafestPathRequest,
    service: SafePathService = Depends(get_safe_path_service),
):
    """Calculate the safest path between two points considering recent crime data"""
    lookback = payload.timeframe or settings.DEFAULT_DAYS_BACK
    logger.info(
        f"Calculating safest path from [{payload.start.latitude}, {payload.start.longitude}] "
        f"to [{payload.end.latitude}, {payload.end.longitude}] ({payload.strategy.value}, {lookback} days)"
    )
    result = service.compute_safest_path(
        (payload.start.latitude, payload.start.longitude),
        (payload.end.latitude, payload.end.longitude),
        lookback,
        payload.strategy,
    )
    logger.info(f"Found path with {result.metadata['pointCount']} points")
    return result

# === CRIME INCIDENT ENDPOINTS (DB-backed) ===

@app.post("/api/crimes", response_model=CrimeIncident)
def add_crime_incident(crime: CrimeIncident, db: Session = Depends(get_db)):
    """Add a new crime incident to the database"""
    cid = crime.id or f"CRIME_{uuid4().hex[:8]}"

    crime_orm = CrimeORM(
        id=cid,
        crime_type=crime.crime_type.value if isinstance(crime.crime_type, CrimeType) else str(crime.crime_type).strip().lower(),
        lat=crime.location.lat if crime.location else None,
        lng=crime.location.lng if crime.location else None,
        timestamp=_to_aware_utc(crime.timestamp),
        description=crime.description,
        severity=crime.severity,
        area_name=crime.area_name,
    )

    db.add(crime_orm)
    db.commit()
    db.refresh(crime_orm)

    return orm_to_pydantic(crime_orm)


@app.get("/api/crimes", response_model=List[CrimeIncident])
def get_crimes(
    crime_type: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=1000, le=10000),
    db: Session = Depends(get_db),
):
    """Retrieve crime incidents with filters from the DB"""
    query = db.query(CrimeORM)

    if crime_type:
        query = query.filter(CrimeORM.crime_type == crime_type.strip().lower())

    if start_date:
        query = query.filter(CrimeORM.timestamp >= _to_aware_utc(start_date))

    if end_date:
        query = query.filter(CrimeORM.timestamp <= _to_aware_utc(end_date))

    rows = query.order_by(CrimeORM.timestamp.desc()).limit(limit).all()
    return [orm_to_pydantic(r) for r in rows]


@app.delete("/api/crimes/{crime_id}")
def delete_crime(crime_id: str, db: Session = Depends(get_db)):
    """Delete a crime incident from DB"""
    row = db.query(CrimeORM).filter(CrimeORM.id == crime_id).first()
    if not row:
        raise HTTPException(status_code=404, detail="Crime not found")
    db.delete(row)
    db.commit()
    return {"message": "Crime deleted successfully"}


@app.get("/api/crime-locations")
def get_crime_locations(
    start: Optional[date] = None,
    end: Optional[date] = None,
    db: Session = Depends(get_db),
):
    """Crimes with coordinates in a date window, as used by the path calculation"""
    start_dt, end_dt = _date_window(start, end)
    rows = _rows_in_window(db, start_dt, end_dt)
    return [
        {
            "id": r.id,
            "crime_type": r.crime_type,
            "latitude": r.lat,
            "longitude": r.lng,
            "area_name": r.area_name,
            "timestamp": _to_aware_utc(r.timestamp).isoformat() if r.timestamp else None,
        }
        for r in rows
        if r.lat is not None and r.lng is not None
    ]

# === HOTSPOTS ===

@app.get("/api/hotspots", response_model=List[ExclusionRegion])
def get_hotspots(
    days_back: int = Query(default=settings.DEFAULT_DAYS_BACK, ge=1, le=365),
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Crime hotspots as the exclusion regions the router would avoid"""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days_back)
    rows = db.query(CrimeORM).filter(CrimeORM.timestamp >= cutoff).all()
    incidents = normalize_incidents(
        {"crime_type": r.crime_type, "lat": r.lat, "lng": r.lng} for r in rows
    )
    cells = cluster_incidents(incidents, settings.CLUSTER_CELL_SIZE_DEG)
    return build_exclusion_regions(
        cells,
        min_count=settings.REGION_MIN_COUNT,
        min_severity=settings.REGION_MIN_SEVERITY,
        num_vertices=settings.REGION_VERTICES,
        limit=limit,
        base_m=settings.REGION_BASE_RADIUS_M,
        density_m_per_incident=settings.REGION_DENSITY_M_PER_INCIDENT,
        density_cap_m=settings.REGION_DENSITY_CAP_M,
        severity_m_per_point=settings.REGION_SEVERITY_M_PER_POINT,
        severity_cap_m=settings.REGION_SEVERITY_CAP_M,
        max_radius_m=settings.REGION_MAX_RADIUS_M,
    )

# === ANALYTICS ===

@app.get("/api/analytics/crimes-by-type")
def crimes_by_type(start: Optional[date] = None, end: Optional[date] = None, db: Session = Depends(get_db)):
    """Crime counts per type, most frequent first"""
    start_dt, end_dt = _date_window(start, end)
    counts = Counter(str(r.crime_type) for r in _rows_in_window(db, start_dt, end_dt) if r.crime_type)
    return [{"crime_type": k, "value": v} for k, v in counts.most_common()]


@app.get("/api/analytics/crimes-by-area")
def crimes_by_area(start: Optional[date] = None, end: Optional[date] = None, db: Session = Depends(get_db)):
    """Crime counts per area, most affected first"""
    start_dt, end_dt = _date_window(start, end)
    counts = Counter(str(r.area_name) for r in _rows_in_window(db, start_dt, end_dt) if r.area_name)
    return [{"name": k, "crimes": v} for k, v in counts.most_common()]


@app.get("/api/analytics/crimes-trend")
def crimes_trend(start: Optional[date] = None, end: Optional[date] = None, db: Session = Depends(get_db)):
    """Monthly crime counts split by severity tier"""
    start_dt, end_dt = _date_window(start, end)
    months: Dict[str, Dict[str, Any]] = {}
    for r in _rows_in_window(db, start_dt, end_dt):
        if not r.timestamp:
            continue
        name = MONTHS[r.timestamp.month - 1]
        bucket = months.setdefault(name, {"name": name, "violent": 0, "property": 0, "other": 0})
        bucket[severity_tier(r.crime_type)] += 1
    return sorted(months.values(), key=lambda m: MONTHS.index(m["name"]))


@app.get("/api/analytics/crime-time-distribution")
def crime_time_distribution(start: Optional[date] = None, end: Optional[date] = None,
                            db: Session = Depends(get_db)):
    """Crime counts per hour of day (UTC)"""
    start_dt, end_dt = _date_window(start, end)
    hour_counts = [0] * 24
    for r in _rows_in_window(db, start_dt, end_dt):
        if r.timestamp is not None:
            hour_counts[_to_aware_utc(r.timestamp).hour] += 1
    return [{"hour": f"{hour:02d}:00", "crimes": count} for hour, count in enumerate(hour_counts)]

# === STATUS AND HEALTH ENDPOINTS ===

@app.get("/api/status")
def get_status(db: Session = Depends(get_db)):
    """Return system status for frontend"""
    total_rows = db.query(CrimeORM).count()
    located_rows = db.query(CrimeORM).filter(CrimeORM.lat.isnot(None), CrimeORM.lng.isnot(None)).count()
    cutoff = datetime.now(timezone.utc) - timedelta(hours=24)
    new_count = db.query(CrimeORM).filter(CrimeORM.timestamp >= cutoff).count()

    return {
        'api': 'running',
        'historical_data': {
            'total_crimes': total_rows,
            'located_crimes': located_rows,
        },
        'realtime_status': {
            'new_crimes_reported': new_count,
            'last_update': datetime.now(timezone.utc).isoformat()
        },
        'routing': {
            'provider': settings.ORS_BASE_URL,
            'profile': settings.ORS_PROFILE,
            'api_key_configured': bool(settings.ORS_API_KEY),
        }
    }


@app.get("/api/health")
def health_check(db: Session = Depends(get_db)):
    """Basic health endpoint for monitoring"""
    try:
        db.execute(text("SELECT 1")).first()
        db_ok = True
    except SQLAlchemyError as e:
        logger.warning(f"Health check DB query failed: {e}")
        db_ok = False

    return {"status": "ok", "db_ok": db_ok}
