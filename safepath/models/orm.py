from sqlalchemy import Column, Integer, String, Float, DateTime, Text
from sqlalchemy.sql import func
from ..db import Base


class CrimeORM(Base):
    __tablename__ = 'crimes'

    id = Column(String(64), primary_key=True, index=True)
    crime_type = Column(String(50), nullable=False)
    # partial records are kept; the router skips them
    lat = Column(Float, nullable=True)
    lng = Column(Float, nullable=True)
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    description = Column(Text, nullable=True)
    severity = Column(Integer, default=1)
    area_name = Column(String(128), nullable=True)
