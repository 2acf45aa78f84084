"""
Provider adapter interface and the helpers shared by every adapter.

Each provider is one SourceAdapter subclass with its own canonicalisation
function. Downstream code only ever sees Observation objects, so adding a
provider means adding a subclass, not a branch in the orchestrator.
"""

import abc
import logging
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Dict, List, Optional

import httpx

from pipeline.errors import FetchError
from pipeline.models import AqiBand, Observation, Pollutant, ProviderRecord

logger = logging.getLogger(__name__)

# Raised by dict/list access on a payload that does not have the documented shape.
PAYLOAD_SHAPE_ERRORS = (KeyError, TypeError, AttributeError, ValueError)

# WHO-style (moderate, unhealthy) lower bounds; strictly-greater comparisons.
AQI_THRESHOLDS: Dict[str, tuple] = {
    Pollutant.pm25.value: (15.0, 25.0),
    Pollutant.no2.value:  (25.0, 40.0),
}

POLLUTANT_ALIASES = {
    "pm25": Pollutant.pm25.value,
    "pm2.5": Pollutant.pm25.value,
    "pm2_5": Pollutant.pm25.value,
    "no2": Pollutant.no2.value,
}


def classify_aqi_band(pollutant: str, value: Optional[float]) -> str:
    """
    Classify a concentration into good / moderate / unhealthy.

    Pollutants without thresholds, and missing values, classify as good.
    """
    bounds = AQI_THRESHOLDS.get(pollutant)
    if bounds is None or value is None:
        return AqiBand.good.value
    moderate, unhealthy = bounds
    if value > unhealthy:
        return AqiBand.unhealthy.value
    if value > moderate:
        return AqiBand.moderate.value
    return AqiBand.good.value


def normalize_pollutant(name) -> Optional[str]:
    """Map a provider's pollutant label onto our enumeration, or None."""
    if name is None:
        return None
    return POLLUTANT_ALIASES.get(str(name).strip().lower())


def _safe_float(val) -> Optional[float]:
    """Safely convert a value to a finite float, returning None on failure."""
    if val is None or val == "-" or val == "":
        return None
    try:
        result = float(val)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def parse_utc_timestamp(value) -> Optional[datetime]:
    """
    Parse a provider timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (with 'Z', an offset, or naive meaning UTC),
    space-separated offsets such as '2024-01-15 10:00:00 +01:00', and
    datetime objects. Returns None when the value cannot be parsed.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        if len(text) > 6 and text[-6] in "+-" and text[-7] == " ":
            text = text[:-7] + text[-6:]
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class SourceAdapter(abc.ABC):
    """
    One provider of raw air-quality records.

    Subclasses set `source` and implement fetch_recent / convert_to_observation.
    An httpx.AsyncClient may be injected; otherwise one is opened per fetch.
    """

    source: str = "unknown"

    def __init__(self, timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.timeout = timeout
        self._client = client

    @asynccontextmanager
    async def _open_client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    @abc.abstractmethod
    async def fetch_recent(self, window: timedelta) -> List[ProviderRecord]:
        """
        Fetch raw records observed within `window` of now.

        Raises:
            FetchError: on network, auth or provider-schema failures.
        """

    @abc.abstractmethod
    def convert_to_observation(self, record: ProviderRecord) -> Optional[Observation]:
        """Canonicalise one record, or None if it has no mappable pollutant or timestamp."""

    def convert_all(self, records: List[ProviderRecord]) -> List[Observation]:
        observations = []
        for record in records:
            try:
                obs = self.convert_to_observation(record)
            except (KeyError, TypeError, AttributeError) as exc:
                logger.warning("%s record could not be converted: %s", self.source, exc)
                continue
            if obs is not None:
                observations.append(obs)
        skipped = len(records) - len(observations)
        if skipped:
            logger.info("%s: %d of %d records not convertible", self.source, skipped, len(records))
        return observations

    def invalidate_cache(self) -> None:
        """Drop any cached reference data. Adapters without caches ignore this."""

    def _raise_for_response(self, exc: Exception, what: str) -> None:
        """Translate an httpx failure into a FetchError for this source."""
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            kind = "auth" if status in (401, 403) else "http"
            raise FetchError(
                f"{self.source} {what} HTTP {status}",
                source=self.source, kind=kind, status_code=status,
            ) from exc
        if isinstance(exc, httpx.TimeoutException):
            raise FetchError(
                f"{self.source} {what} timed out", source=self.source, kind="network",
            ) from exc
        if isinstance(exc, httpx.RequestError):
            raise FetchError(
                f"{self.source} {what} network error: {exc}", source=self.source, kind="network",
            ) from exc
        raise exc
