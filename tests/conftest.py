"""Shared test fixtures and configuration for the challenge pipeline test suite."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from api.models.db_models import Base
from pipeline.errors import FetchError
from pipeline.ingestion.base import SourceAdapter, classify_aqi_band
from pipeline.models import Observation
from pipeline.store import ObservationStore

BASE_TIME = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def db_engine():
    """In-memory SQLite engine with the ORM tables created."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def store(db_engine):
    return ObservationStore(db_engine)


def make_observation(
    station_id: str = "DE0001A",
    pollutant: str = "pm25",
    value=12.5,
    observed_at=BASE_TIME,
    country_code: str = "DE",
    source: str = "EEA",
    **kwargs,
) -> Observation:
    return Observation(
        station_id=station_id,
        pollutant=pollutant,
        value=value,
        unit=kwargs.pop("unit", "µg/m3"),
        aqi_band=kwargs.pop(
            "aqi_band",
            classify_aqi_band(pollutant, value if isinstance(value, (int, float)) else None),
        ),
        observed_at=observed_at,
        country_code=country_code,
        region_code=kwargs.pop("region_code", country_code),
        source=source,
        **kwargs,
    )


@pytest.fixture()
def make():
    return make_observation


class StaticAdapter(SourceAdapter):
    """Adapter serving pre-built Observations (or a FetchError) without any I/O."""

    def __init__(self, source: str, observations: Optional[List[Observation]] = None,
                 error: Optional[Exception] = None):
        super().__init__()
        self.source = source
        self.observations = list(observations or [])
        self.error = error
        self.calls = 0
        self.invalidated = 0

    async def fetch_recent(self, window: timedelta):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [{"obs": obs} for obs in self.observations]

    def convert_to_observation(self, record):
        return record["obs"]

    def invalidate_cache(self) -> None:
        self.invalidated += 1


@pytest.fixture()
def static_adapter():
    return StaticAdapter


@pytest.fixture()
def failing_adapter():
    def _make(source: str, kind: str = "network"):
        return StaticAdapter(source, error=FetchError(f"{source} down", source=source, kind=kind))
    return _make
