"""
SQLAlchemy ORM models for the challenge pipeline.
Tables: regions, aq_observations, alert_events, challenge_scores

The pipeline itself writes through raw SQL (pipeline/store.py); these models
carry the uniqueness constraints that SQL relies on and are used for
create_all() in development and tests.
"""

from sqlalchemy import (
    Boolean, Column, Date, DateTime, Float, Index, Integer, JSON, String,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import func


Base = declarative_base()


class Region(Base):
    __tablename__ = "regions"

    code = Column(String(16), primary_key=True)
    name = Column(String(200), nullable=False)
    enabled = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        Index("ix_regions_enabled", "enabled"),
    )


class AqObservation(Base):
    __tablename__ = "aq_observations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    station_id = Column(String(100), nullable=False)
    pollutant = Column(String(10), nullable=False)
    value = Column(Float, nullable=False)
    unit = Column(String(20), nullable=True)
    aqi_band = Column(String(20), nullable=True)
    observed_at = Column(DateTime(timezone=True), nullable=False)
    lat = Column(Float, nullable=True)
    lon = Column(Float, nullable=True)
    country_code = Column(String(16), nullable=True)
    region_code = Column(String(16), nullable=False)
    source = Column(String(20), nullable=False)
    raw = Column(JSON, nullable=True)
    ingested_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        UniqueConstraint("station_id", "pollutant", "observed_at", name="uq_aq_observations_dedup"),
        Index("ix_aq_observations_region_pollutant_time", "region_code", "pollutant", "observed_at"),
    )


class AlertEvent(Base):
    __tablename__ = "alert_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False)          # heat | floods | wildfire
    region_code = Column(String(16), nullable=False)
    severity = Column(String(20), nullable=False)      # minor | moderate | severe | extreme
    headline = Column(String(500), nullable=True)
    issued_at = Column(DateTime(timezone=True), nullable=False)
    source = Column(String(50), nullable=True)

    __table_args__ = (
        Index("ix_alert_events_type_region_time", "type", "region_code", "issued_at"),
    )


class ChallengeScore(Base):
    __tablename__ = "challenge_scores"

    id = Column(Integer, primary_key=True, autoincrement=True)
    type = Column(String(20), nullable=False)
    region_code = Column(String(16), nullable=False)
    date = Column(Date, nullable=False)
    window_hours = Column(Integer, nullable=False)
    intensity = Column(Float, nullable=False)
    exposure = Column(Float, nullable=False)
    persistence = Column(Float, nullable=False)
    score = Column(Integer, nullable=False)
    freshness = Column(String(10), nullable=False)
    inputs_json = Column(JSON, nullable=True)
    as_of = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("type", "region_code", "date", name="uq_challenge_scores_type_region_date"),
        Index("ix_challenge_scores_date", "date"),
    )
