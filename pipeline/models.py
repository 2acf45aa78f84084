"""
Typed containers shared by the adapters, orchestrator, store and scoring engine.
"""

import enum
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Tuple


class Pollutant(str, enum.Enum):
    pm25 = "pm25"
    pm10 = "pm10"
    no2 = "no2"
    o3 = "o3"
    so2 = "so2"
    co = "co"


class AqiBand(str, enum.Enum):
    good = "good"
    moderate = "moderate"
    unhealthy = "unhealthy"


class ChallengeType(str, enum.Enum):
    air_quality = "air-quality"
    heat = "heat"
    floods = "floods"
    wildfire = "wildfire"

    @classmethod
    def parse(cls, value: str) -> "ChallengeType":
        """Accept both 'air-quality' and the legacy 'air_quality' spelling."""
        return cls(str(value).strip().lower().replace("_", "-"))


class Freshness(str, enum.Enum):
    live = "live"    # reserved for external real-time signals, never produced here
    today = "today"
    week = "week"
    stale = "stale"


# A provider's raw JSON record, exactly as fetched.
ProviderRecord = Dict[str, Any]

DedupKey = Tuple[str, str, datetime]


@dataclass
class Observation:
    """A single canonical sensor reading."""
    station_id: str
    pollutant: str
    value: Any
    unit: str
    aqi_band: str
    observed_at: datetime
    country_code: str
    region_code: str
    source: str
    lat: Optional[float] = None
    lon: Optional[float] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def dedup_key(self) -> DedupKey:
        return (self.station_id, self.pollutant, self.observed_at)


@dataclass
class ChallengeScore:
    """One day's composite severity record for a (type, region) pair."""
    type: str
    region_code: str
    date: date
    window_hours: int
    intensity: float
    exposure: float
    persistence: float
    score: int
    freshness: str
    inputs_json: Dict[str, Any]
    as_of: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        data["as_of"] = self.as_of.isoformat()
        return data


@dataclass
class CycleReport:
    """Structured summary of one ingestion cycle."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    state: str = "IDLE"
    states: List[str] = field(default_factory=list)
    fetched: Dict[str, int] = field(default_factory=dict)
    converted: Dict[str, int] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    raw_count: int = 0
    deduped_count: int = 0
    normalized_count: int = 0
    inserted_count: int = 0
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.state == "DONE"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


@dataclass
class ScoringSummary:
    """Structured summary of one scoring pass."""
    scored: int = 0
    failed: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)
    scores: List[ChallengeScore] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scored": self.scored,
            "failed": self.failed,
            "failures": list(self.failures),
            "scores": [s.to_dict() for s in self.scores],
            "elapsed_seconds": self.elapsed_seconds,
        }
