"""
Scoring Engine for ChallengeScores.

For every (challenge type, region) pair, aggregates the type's lookback
window from the store, normalises the aggregates into three [0, 1]
sub-scores (intensity, exposure, persistence), combines them into a 0-100
composite and upserts one row per UTC day. A failing pair is logged and
skipped; a failing upsert aborts the pass.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pipeline.config import ScoringConfig, ScoringProfile, ScoringWeights
from pipeline.errors import ScoringPairFailure
from pipeline.ingestion.validator import round_half_up
from pipeline.models import ChallengeScore, ChallengeType, Freshness, ScoringSummary

logger = logging.getLogger(__name__)

SUBSCORE_DECIMAL_PLACES = 3


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _ratio(numerator: float, divisor: float) -> float:
    if not divisor or divisor <= 0:
        return 0.0
    return round_half_up(_clamp(numerator / divisor), SUBSCORE_DECIMAL_PLACES)


def compute_subscores(
    challenge_type: str,
    inputs: Dict,
    profile: ScoringProfile,
) -> Tuple[float, float, float]:
    """
    Normalise raw aggregates into (intensity, exposure, persistence).

    air-quality reads avg_value and sample_count; alert-driven types read
    alert_count, and heat additionally severe_count for intensity.
    """
    if challenge_type == ChallengeType.air_quality.value:
        avg = float(inputs.get("avg_value") or 0.0)
        count = float(inputs.get("sample_count") or 0)
        return (
            _ratio(avg, profile.intensity_divisor),
            _ratio(avg, profile.exposure_divisor),
            _ratio(count, profile.persistence_divisor),
        )

    alerts = float(inputs.get("alert_count") or 0)
    if challenge_type == ChallengeType.heat.value:
        intensity_input = float(inputs.get("severe_count") or 0)
    else:
        intensity_input = alerts
    return (
        _ratio(intensity_input, profile.intensity_divisor),
        _ratio(alerts, profile.exposure_divisor),
        _ratio(alerts, profile.persistence_divisor),
    )


def composite_score(
    intensity: float,
    exposure: float,
    persistence: float,
    weights: Optional[ScoringWeights] = None,
) -> int:
    """round(100 × (w_i·intensity + w_e·exposure + w_p·persistence)), clamped to [0, 100]."""
    w = weights or ScoringWeights()
    raw = 100.0 * (w.intensity * intensity + w.exposure * exposure + w.persistence * persistence)
    return int(_clamp(round_half_up(raw, 0), 0.0, 100.0))


def classify_freshness(window_hours: float, today_max_hours: float = 24, week_max_hours: float = 168) -> str:
    if window_hours <= today_max_hours:
        return Freshness.today.value
    if window_hours <= week_max_hours:
        return Freshness.week.value
    return Freshness.stale.value


class ScoringEngine:
    """Computes and persists ChallengeScores for (type, region) pairs."""

    def __init__(
        self,
        store,
        config: Optional[ScoringConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.config = config or ScoringConfig()
        self._clock = clock

    def _aggregate(self, challenge_type: str, region_code: str, since: datetime) -> Dict:
        try:
            if challenge_type == ChallengeType.air_quality.value:
                pollutant = self.config.air_quality_pollutant
                inputs = self.store.air_quality_aggregate(region_code, pollutant, since)
                inputs["pollutant"] = pollutant
            else:
                inputs = self.store.alert_aggregate(challenge_type, region_code, since)
        except Exception as exc:
            raise ScoringPairFailure(
                f"Aggregation failed for {challenge_type}/{region_code}: {exc}",
                challenge_type=challenge_type, region_code=region_code,
            ) from exc
        return inputs

    def score_pair(self, challenge_type: str, region_code: str) -> ChallengeScore:
        """
        Score one (type, region) pair and upsert the result for today (UTC).

        Raises:
            ScoringPairFailure: if the type has no profile or aggregation fails.
            PersistenceFailure: if the upsert fails.
        """
        profile = self.config.profile_for(challenge_type)
        if profile is None:
            raise ScoringPairFailure(
                f"No scoring profile for {challenge_type}",
                challenge_type=challenge_type, region_code=region_code,
            )

        as_of = self._clock()
        since = as_of - timedelta(hours=profile.window_hours)
        inputs = self._aggregate(challenge_type, region_code, since)
        intensity, exposure, persistence = compute_subscores(challenge_type, inputs, profile)

        inputs_json = dict(inputs)
        inputs_json["since"] = since.isoformat()
        inputs_json["divisors"] = {
            "intensity": profile.intensity_divisor,
            "exposure": profile.exposure_divisor,
            "persistence": profile.persistence_divisor,
        }

        score = ChallengeScore(
            type=challenge_type,
            region_code=region_code,
            date=as_of.astimezone(timezone.utc).date(),
            window_hours=profile.window_hours,
            intensity=intensity,
            exposure=exposure,
            persistence=persistence,
            score=composite_score(intensity, exposure, persistence, self.config.weights),
            freshness=classify_freshness(
                profile.window_hours, self.config.today_max_hours, self.config.week_max_hours,
            ),
            inputs_json=inputs_json,
            as_of=as_of,
        )
        self.store.upsert_challenge_score(score)
        logger.debug(
            "Scored %s/%s: I=%.3f E=%.3f P=%.3f → %d (%s)",
            challenge_type, region_code, intensity, exposure, persistence,
            score.score, score.freshness,
        )
        return score

    def run(
        self,
        types: Optional[Iterable[str]] = None,
        regions: Optional[Iterable[str]] = None,
    ) -> ScoringSummary:
        """
        Score every requested type against every requested region.

        types defaults to all challenge types; regions to the store's enabled
        regions. Unknown type names raise ValueError before anything is scored.
        """
        started = time.monotonic()
        if types is None:
            type_names = [t.value for t in ChallengeType]
        else:
            type_names = [ChallengeType.parse(t).value for t in types]
        region_codes: List[str] = (
            [r.strip().upper() for r in regions] if regions is not None
            else self.store.enabled_regions()
        )

        logger.info("── Scoring pass: %d types × %d regions ──", len(type_names), len(region_codes))
        summary = ScoringSummary()
        for challenge_type in type_names:
            for region_code in region_codes:
                try:
                    score = self.score_pair(challenge_type, region_code)
                except ScoringPairFailure as exc:
                    logger.error("Skipping %s/%s: %s", challenge_type, region_code, exc)
                    summary.failed += 1
                    summary.failures.append({
                        "type": challenge_type,
                        "region_code": region_code,
                        "error": str(exc),
                    })
                    continue
                summary.scored += 1
                summary.scores.append(score)

        summary.elapsed_seconds = round(time.monotonic() - started, 3)
        logger.info("── Scoring pass complete: %d scored, %d failed (%.2fs) ──",
                    summary.scored, summary.failed, summary.elapsed_seconds)
        return summary
