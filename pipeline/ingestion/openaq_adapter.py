"""
OpenAQ v3 API connector.

Fallback source. Requires an X-API-Key and is quota-limited (60/min, 2000/h),
so every outbound call goes through a RateLimiter. Data is collected in three
steps: European country ids (cached per instance), monitoring locations
(paged), then recent hourly values per PM2.5/NO2 sensor, fetched concurrently
in bounded batches.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

import httpx

from pipeline.errors import FetchError
from pipeline.ingestion.base import (
    PAYLOAD_SHAPE_ERRORS,
    SourceAdapter,
    _safe_float,
    classify_aqi_band,
    normalize_pollutant,
    parse_utc_timestamp,
)
from pipeline.ingestion.ratelimit import RateLimiter
from pipeline.models import Observation, ProviderRecord

logger = logging.getLogger(__name__)

OPENAQ_BASE_URL = "https://api.openaq.org/v3"

EUROPEAN_COUNTRY_CODES = (
    "AT", "BE", "BG", "HR", "CY", "CZ", "DK", "EE", "FI", "FR",
    "DE", "GR", "HU", "IE", "IT", "LV", "LT", "LU", "MT", "NL",
    "PL", "PT", "RO", "SK", "SI", "ES", "SE", "GB", "NO", "CH",
)

# OpenAQ parameter ids: 2 = PM2.5, 7 = NO2
PARAMETER_IDS = "2,7"
TARGET_POLLUTANTS = ("pm25", "no2")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OpenAQAdapter(SourceAdapter):
    """Fetches recent hourly sensor values from OpenAQ v3."""

    source = "OpenAQ"

    def __init__(
        self,
        api_key: str = "",
        base_url: str = OPENAQ_BASE_URL,
        rate_limiter: Optional[RateLimiter] = None,
        countries: Sequence[str] = EUROPEAN_COUNTRY_CODES,
        page_size: int = 1000,
        max_pages: int = 10,
        sensor_batch_size: int = 10,
        batch_pause_seconds: float = 1.0,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "Environmental-Monitoring-System/1.0",
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(timeout=timeout, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or RateLimiter(name=self.source)
        self.countries = tuple(c.upper() for c in countries)
        self.page_size = page_size
        self.max_pages = max_pages
        self.sensor_batch_size = max(1, sensor_batch_size)
        self.batch_pause_seconds = batch_pause_seconds
        self.user_agent = user_agent
        self._clock = clock
        self._sleep = sleep
        # Lazily populated on first fetch; cleared by invalidate_cache().
        self._country_ids: Optional[List[int]] = None

        if not self.api_key:
            logger.warning("OPENAQ_API_KEY not set, OpenAQ requests will fail")

    def invalidate_cache(self) -> None:
        self._country_ids = None
        logger.info("OpenAQ country id cache invalidated")

    @property
    def cached_country_ids(self) -> Optional[List[int]]:
        return self._country_ids

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    async def _get(self, client: httpx.AsyncClient, path: str, params: dict) -> dict:
        url = f"{self.base_url}{path}"
        headers = {"X-API-Key": self.api_key, "User-Agent": self.user_agent}

        try:
            resp = await self.rate_limiter.send(
                lambda: client.get(url, params=params, headers=headers)
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self._raise_for_response(exc, path)

        try:
            payload = resp.json()
        except ValueError as exc:
            raise FetchError(
                f"OpenAQ {path} returned malformed JSON", source=self.source, kind="schema",
            ) from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            raise FetchError(
                f"OpenAQ {path} response missing results", source=self.source, kind="schema",
            )
        return payload

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _load_country_ids(self, client: httpx.AsyncClient) -> List[int]:
        payload = await self._get(client, "/countries", {"limit": 300})
        ids = [
            c["id"] for c in payload["results"]
            if isinstance(c, dict) and c.get("code") in self.countries and c.get("id") is not None
        ]
        logger.info("Loaded %d European country ids from OpenAQ", len(ids))
        return ids

    async def _fetch_locations(self, client: httpx.AsyncClient, country_ids: List[int]) -> List[dict]:
        locations: List[dict] = []
        for page in range(1, self.max_pages + 1):
            payload = await self._get(client, "/locations", {
                "countries_id": ",".join(str(i) for i in country_ids),
                "parameters_id": PARAMETER_IDS,
                "limit": self.page_size,
                "page": page,
                "monitor": "true",   # reference monitors only
                "mobile": "false",
            })
            results = payload["results"]
            locations.extend(results)

            found = (payload.get("meta") or {}).get("found")
            if len(results) < self.page_size:
                break
            if isinstance(found, int) and len(locations) >= found:
                break

        usable = [loc for loc in locations if self._is_usable_location(loc)]
        logger.info("OpenAQ: %d of %d locations have coordinates and PM2.5/NO2 sensors",
                    len(usable), len(locations))
        return usable

    @staticmethod
    def _relevant_sensors(location: dict) -> List[dict]:
        sensors = location.get("sensors") or []
        return [
            s for s in sensors
            if isinstance(s, dict) and s.get("id") is not None
            and normalize_pollutant((s.get("parameter") or {}).get("name")) in TARGET_POLLUTANTS
        ]

    def _is_usable_location(self, location) -> bool:
        if not isinstance(location, dict):
            return False
        coords = location.get("coordinates") or {}
        if coords.get("latitude") is None or coords.get("longitude") is None:
            return False
        return bool(self._relevant_sensors(location))

    async def _fetch_sensor(
        self,
        client: httpx.AsyncClient,
        location: dict,
        sensor: dict,
        since: datetime,
        until: datetime,
    ) -> List[ProviderRecord]:
        try:
            payload = await self._get(client, f"/sensors/{sensor.get('id')}/hours", {
                "datetime_from": since.isoformat(),
                "datetime_to": until.isoformat(),
                "limit": 100,
            })
        except FetchError as exc:
            logger.warning("OpenAQ sensor %s skipped: %s", sensor.get("id"), exc)
            return []

        country = (location.get("country") or {}).get("code")
        records = []
        for m in payload["results"]:
            if not isinstance(m, dict):
                continue
            value = _safe_float(m.get("value"))
            if value is None or value < 0:
                continue
            record = dict(m)
            record.setdefault("parameter", sensor.get("parameter"))
            record["locationId"] = location.get("id")
            record["countryCode"] = country
            record["coordinates"] = location.get("coordinates")
            records.append(record)
        return records

    async def _fetch_measurements(
        self,
        client: httpx.AsyncClient,
        locations: List[dict],
        window: timedelta,
    ) -> List[ProviderRecord]:
        until = self._clock()
        since = until - window
        pairs = [(loc, sensor) for loc in locations for sensor in self._relevant_sensors(loc)]

        measurements: List[ProviderRecord] = []
        for start in range(0, len(pairs), self.sensor_batch_size):
            batch = pairs[start:start + self.sensor_batch_size]
            results = await asyncio.gather(*(
                self._fetch_sensor(client, loc, sensor, since, until) for loc, sensor in batch
            ))
            for chunk in results:
                measurements.extend(chunk)

            if start + self.sensor_batch_size < len(pairs) and self.batch_pause_seconds > 0:
                await self._sleep(self.batch_pause_seconds)

        return measurements

    async def fetch_recent(self, window: timedelta) -> List[ProviderRecord]:
        if not self.api_key:
            raise FetchError("OpenAQ API key not configured", source=self.source, kind="auth")

        try:
            return await self._collect(window)
        except PAYLOAD_SHAPE_ERRORS as exc:
            raise FetchError(
                f"OpenAQ payload has an unexpected shape: {exc!r}", source=self.source, kind="schema",
            ) from exc

    async def _collect(self, window: timedelta) -> List[ProviderRecord]:
        logger.info("Fetching hourly air quality data from OpenAQ v3")
        async with self._open_client() as client:
            if self._country_ids is None:
                self._country_ids = await self._load_country_ids(client)
            if not self._country_ids:
                logger.warning("OpenAQ returned no European country ids")
                return []

            locations = await self._fetch_locations(client, self._country_ids)
            if not locations:
                logger.warning("No European OpenAQ locations with PM2.5/NO2 sensors")
                return []

            measurements = await self._fetch_measurements(client, locations, window)

        logger.info("OpenAQ v3: retrieved %d hourly values from %d locations",
                    len(measurements), len(locations))
        return measurements

    # ------------------------------------------------------------------
    # Canonicalisation
    # ------------------------------------------------------------------

    def convert_to_observation(self, record: ProviderRecord) -> Optional[Observation]:
        parameter = record.get("parameter") or {}
        pollutant = normalize_pollutant(parameter.get("name"))
        if pollutant is None:
            return None

        period = record.get("period") or {}
        begin = period.get("datetimeFrom") or period.get("datetime_from") or {}
        observed_at = parse_utc_timestamp(begin.get("utc") if isinstance(begin, dict) else begin)
        if observed_at is None:
            return None

        value = _safe_float(record.get("value"))
        coords: Dict = record.get("coordinates") or {}
        location_id = record.get("locationId")
        country = str(record.get("countryCode") or "").strip().upper() or "UNKNOWN"
        return Observation(
            station_id=f"openaq-{location_id}" if location_id is not None else "",
            pollutant=pollutant,
            value=value,
            unit=parameter.get("units") or "µg/m³",
            aqi_band=classify_aqi_band(pollutant, value),
            observed_at=observed_at,
            country_code=country,
            region_code=country,
            source=self.source,
            lat=_safe_float(coords.get("latitude")),
            lon=_safe_float(coords.get("longitude")),
            raw=record,
        )
