"""
Persistent store contract: raw SQL over a SQLAlchemy engine.

Observations are append-only (insert-or-ignore on the dedup key).
Challenge scores are whole-row upserts keyed by (type, region_code, date).
The SQL is portable between PostgreSQL and SQLite (>= 3.24).
"""

import logging
from datetime import datetime, timezone
from typing import List, Sequence

from sqlalchemy import JSON, Date, DateTime, Float, bindparam, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pipeline.errors import PersistenceFailure
from pipeline.models import ChallengeScore, Observation

logger = logging.getLogger(__name__)

SEVERE_ALERT_LEVELS = ("severe", "extreme")

_INSERT_OBSERVATION = text("""
    INSERT INTO aq_observations (
        station_id, pollutant, value, unit, aqi_band, observed_at,
        lat, lon, country_code, region_code, source, raw, ingested_at
    ) VALUES (
        :station_id, :pollutant, :value, :unit, :aqi_band, :observed_at,
        :lat, :lon, :country_code, :region_code, :source, :raw, :ingested_at
    )
    ON CONFLICT (station_id, pollutant, observed_at) DO NOTHING
""").bindparams(
    bindparam("value", type_=Float),
    bindparam("observed_at", type_=DateTime(timezone=True)),
    bindparam("ingested_at", type_=DateTime(timezone=True)),
    bindparam("raw", type_=JSON),
)

_UPSERT_SCORE = text("""
    INSERT INTO challenge_scores (
        type, region_code, date, window_hours,
        intensity, exposure, persistence, score, freshness,
        inputs_json, as_of
    ) VALUES (
        :type, :region_code, :date, :window_hours,
        :intensity, :exposure, :persistence, :score, :freshness,
        :inputs_json, :as_of
    )
    ON CONFLICT (type, region_code, date) DO UPDATE SET
        window_hours = excluded.window_hours,
        intensity    = excluded.intensity,
        exposure     = excluded.exposure,
        persistence  = excluded.persistence,
        score        = excluded.score,
        freshness    = excluded.freshness,
        inputs_json  = excluded.inputs_json,
        as_of        = excluded.as_of
""").bindparams(
    bindparam("date", type_=Date),
    bindparam("as_of", type_=DateTime(timezone=True)),
    bindparam("inputs_json", type_=JSON),
)

_ENABLED_REGIONS = text(
    "SELECT code FROM regions WHERE enabled = :enabled ORDER BY code"
)

_AIR_QUALITY_AGGREGATE = text("""
    SELECT AVG(value) AS avg_value, COUNT(*) AS sample_count
    FROM aq_observations
    WHERE region_code = :region_code
      AND pollutant   = :pollutant
      AND observed_at >= :since
""").bindparams(bindparam("since", type_=DateTime(timezone=True)))

_ALERT_AGGREGATE = text("""
    SELECT
        COUNT(*) AS alert_count,
        COALESCE(SUM(CASE WHEN LOWER(severity) IN :severe THEN 1 ELSE 0 END), 0) AS severe_count
    FROM alert_events
    WHERE type        = :type
      AND region_code = :region_code
      AND issued_at  >= :since
""").bindparams(
    bindparam("since", type_=DateTime(timezone=True)),
    bindparam("severe", expanding=True),
)


def _observation_params(obs: Observation, ingested_at: datetime) -> dict:
    return {
        "station_id":   obs.station_id,
        "pollutant":    obs.pollutant,
        "value":        obs.value,
        "unit":         obs.unit,
        "aqi_band":     obs.aqi_band,
        "observed_at":  obs.observed_at,
        "lat":          obs.lat,
        "lon":          obs.lon,
        "country_code": obs.country_code,
        "region_code":  obs.region_code,
        "source":       obs.source,
        "raw":          obs.raw,
        "ingested_at":  ingested_at,
    }


class ObservationStore:
    """Write and aggregate-read operations used by the ingestion and scoring core."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def insert_observations(self, batch: Sequence[Observation]) -> int:
        """
        Insert one batch in a single transaction, ignoring rows whose
        (station_id, pollutant, observed_at) already exists.

        Returns:
            Number of rows actually inserted.

        Raises:
            PersistenceFailure: if the store rejects the batch.
        """
        if not batch:
            return 0
        now = datetime.now(timezone.utc)
        inserted = 0
        try:
            with self.engine.begin() as conn:
                for obs in batch:
                    result = conn.execute(_INSERT_OBSERVATION, _observation_params(obs, now))
                    inserted += max(result.rowcount or 0, 0)
        except SQLAlchemyError as exc:
            logger.error("Failed to persist batch of %d observations: %s", len(batch), exc)
            raise PersistenceFailure(f"Observation insert failed: {exc}") from exc
        return inserted

    def upsert_challenge_score(self, score: ChallengeScore) -> None:
        """Replace the whole row for (type, region_code, date)."""
        try:
            with self.engine.begin() as conn:
                conn.execute(_UPSERT_SCORE, {
                    "type":         score.type,
                    "region_code":  score.region_code,
                    "date":         score.date,
                    "window_hours": score.window_hours,
                    "intensity":    score.intensity,
                    "exposure":     score.exposure,
                    "persistence":  score.persistence,
                    "score":        score.score,
                    "freshness":    score.freshness,
                    "inputs_json":  score.inputs_json,
                    "as_of":        score.as_of,
                })
        except SQLAlchemyError as exc:
            logger.error("Failed to upsert score %s/%s: %s", score.type, score.region_code, exc)
            raise PersistenceFailure(f"Score upsert failed: {exc}") from exc

    def enabled_regions(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(_ENABLED_REGIONS, {"enabled": True}).fetchall()
        return [row.code for row in rows]

    def air_quality_aggregate(self, region_code: str, pollutant: str, since: datetime) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(_AIR_QUALITY_AGGREGATE, {
                "region_code": region_code,
                "pollutant":   pollutant,
                "since":       since,
            }).fetchone()
        return {
            "avg_value":    float(row.avg_value) if row and row.avg_value is not None else 0.0,
            "sample_count": int(row.sample_count) if row else 0,
        }

    def alert_aggregate(self, challenge_type: str, region_code: str, since: datetime) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(_ALERT_AGGREGATE, {
                "type":        challenge_type,
                "region_code": region_code,
                "since":       since,
                "severe":      list(SEVERE_ALERT_LEVELS),
            }).fetchone()
        return {
            "alert_count":  int(row.alert_count) if row else 0,
            "severe_count": int(row.severe_count or 0) if row else 0,
        }
