"""Incident normalization and the incident source used by the safest-path service."""
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models.orm import CrimeORM
from ..models.schemas import Incident, Location

logger = logging.getLogger(__name__)


def _as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if math.isfinite(result) else None


def _pick(mapping: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if mapping.get(key) is not None:
            return mapping[key]
    return None


def _extract_coordinates(record: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    # nested shapes first, then flat fields
    for nested_key in ("crime_locations", "location"):
        nested = record.get(nested_key)
        if isinstance(nested, dict):
            lat = _as_float(_pick(nested, "latitude", "lat"))
            lng = _as_float(_pick(nested, "longitude", "lng", "lon"))
            if lat is not None and lng is not None:
                return lat, lng
    lat = _as_float(_pick(record, "latitude", "lat"))
    lng = _as_float(_pick(record, "longitude", "lng", "lon"))
    return lat, lng


def normalize_incident(record: Any) -> Optional[Incident]:
    """Turn a raw crime record into an Incident, or None when it has no usable position.

    Accepted position shapes: ``crime_locations`` or ``location`` sub-objects
    (``latitude``/``longitude`` or ``lat``/``lng``), or the same keys flat on
    the record.
    """
    if not isinstance(record, dict):
        return None
    lat, lng = _extract_coordinates(record)
    if lat is None or lng is None:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0):
        return None
    category = _pick(record, "crime_type", "category", "type")
    return Incident(position=Location(lat=lat, lng=lng), category=str(category or ""))


def normalize_incidents(records: Iterable[Any]) -> List[Incident]:
    incidents = []
    skipped = 0
    for record in records or []:
        incident = normalize_incident(record)
        if incident is None:
            skipped += 1
            continue
        incidents.append(incident)
    if skipped:
        logger.debug("Skipped %d incident records without usable coordinates", skipped)
    return incidents


class IncidentSource:
    """Anything that can return raw crime records for a lookback window."""

    def fetch_incidents(self, lookback_days: int) -> List[Dict[str, Any]]:
        raise NotImplementedError


class StaticIncidentSource(IncidentSource):
    def __init__(self, records: Iterable[Dict[str, Any]] = ()):
        self.records = list(records)

    def fetch_incidents(self, lookback_days: int) -> List[Dict[str, Any]]:
        return list(self.records)


class DatabaseIncidentSource(IncidentSource):
    """Reads recent crimes from the relational store."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def fetch_incidents(self, lookback_days: int) -> List[Dict[str, Any]]:
        cutoff = datetime.now(timezone.utc) - timedelta(days=lookback_days)
        db = self.session_factory()
        try:
            rows = db.query(CrimeORM).filter(CrimeORM.timestamp >= cutoff).all()
            return [
                {"id": r.id, "crime_type": r.crime_type, "latitude": r.lat, "longitude": r.lng}
                for r in rows
            ]
        finally:
            db.close()
