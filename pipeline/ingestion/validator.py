"""
Validation and normalisation for canonical Observations.

Validates:
- station_id and pollutant are present
- value is a finite number
- observed_at is a real instant (strings are parsed, never defaulted)

Normalises:
- value rounded half-up to 3 decimal places
- observed_at converted to UTC
- region_code resolved from the country code (country-level regions only)
"""

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, List, Optional

from pipeline.errors import ValidationError
from pipeline.ingestion.base import parse_utc_timestamp
from pipeline.models import Observation

logger = logging.getLogger(__name__)

VALUE_DECIMAL_PLACES = 3
UNKNOWN_REGION = "UNKNOWN"


@dataclass
class ValidationResult:
    """Result of validating a single Observation."""
    is_valid: bool
    errors: List[ValidationError] = field(default_factory=list)
    observed_at: Optional[datetime] = None

    def add_error(self, msg: str, field_name: Optional[str] = None):
        self.errors.append(ValidationError(msg, field=field_name))
        self.is_valid = False

    @property
    def reasons(self) -> List[str]:
        return [str(e) for e in self.errors]

    def __str__(self) -> str:
        if self.is_valid:
            return "Valid"
        return "Invalid: " + "; ".join(self.reasons)


def round_half_up(value: float, places: int = VALUE_DECIMAL_PLACES) -> float:
    """
    Round with ties away from zero on the decimal representation.

    12.34567 -> 12.346 and 12.3444 -> 12.344; 2.0005 -> 2.001.
    """
    quantum = Decimal(1).scaleb(-places)
    try:
        return float(Decimal(repr(value)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return round(value, places)


def map_region(country_code: Optional[str]) -> str:
    """Country code is the region code."""
    code = (country_code or "").strip().upper()
    return code or UNKNOWN_REGION


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not (math.isnan(value) or math.isinf(value))


def validate_observation(obs: Observation) -> ValidationResult:
    """
    Validate an Observation.

    Returns:
        ValidationResult with is_valid flag, failure reasons and, when valid,
        the parsed UTC observed_at.
    """
    result = ValidationResult(is_valid=True)

    if not getattr(obs, "station_id", None):
        result.add_error("Missing required field: station_id", "station_id")
    if not getattr(obs, "pollutant", None):
        result.add_error("Missing required field: pollutant", "pollutant")

    value = getattr(obs, "value", None)
    if not _is_number(value):
        result.add_error(f"value must be numeric, got {value!r}", "value")

    observed_at = parse_utc_timestamp(getattr(obs, "observed_at", None))
    if observed_at is None:
        result.add_error(f"Invalid observed_at: {getattr(obs, 'observed_at', None)!r}", "observed_at")
    else:
        result.observed_at = observed_at

    return result


def normalize_observation(obs: Observation) -> Observation:
    """
    Return a normalised copy of one observation.

    Raises:
        ValidationError: the first failed check, if the observation is invalid.
    """
    result = validate_observation(obs)
    if not result.is_valid:
        raise result.errors[0]
    return replace(
        obs,
        value=round_half_up(float(obs.value)),
        observed_at=result.observed_at,
        region_code=map_region(obs.country_code),
    )


def normalize_observations(observations: Iterable[Observation]) -> List[Observation]:
    """Drop invalid observations and return normalised copies of the rest."""
    normalized: List[Observation] = []
    dropped = 0

    for obs in observations:
        try:
            normalized.append(normalize_observation(obs))
        except ValidationError as exc:
            dropped += 1
            logger.warning(
                "Dropping observation station=%s pollutant=%s source=%s: %s (field=%s)",
                getattr(obs, "station_id", None), getattr(obs, "pollutant", None),
                getattr(obs, "source", None), exc, exc.field,
            )

    if dropped:
        logger.info("Normalisation dropped %d of %d observations", dropped, dropped + len(normalized))
    return normalized
