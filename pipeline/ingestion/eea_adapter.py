"""
European Environment Agency (EEA) air-quality export connector.

Primary source. Open endpoint (no key), paged, filtered to hourly verified
PM2.5 and NO2 data. Timestamps carry local offsets and are normalised to UTC.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

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
from pipeline.models import Observation, ProviderRecord

logger = logging.getLogger(__name__)

EEA_BASE_URL = "https://discomap.eea.europa.eu/map/fme/AirQualityExport.fmw"

# EEA pollutant vocabulary codes we ingest.
POLLUTANT_CODES = {
    "6001": "pm25",
    "8":    "no2",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EEAAdapter(SourceAdapter):
    """Fetches recent hourly observations from the EEA export service."""

    source = "EEA"

    def __init__(
        self,
        base_url: str = EEA_BASE_URL,
        page_size: int = 1000,
        max_pages: int = 20,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        user_agent: str = "Environmental-Monitoring-System/1.0",
        clock: Callable[[], datetime] = _utcnow,
    ):
        super().__init__(timeout=timeout, client=client)
        self.base_url = base_url
        self.page_size = page_size
        self.max_pages = max_pages
        self.user_agent = user_agent
        self._clock = clock

    def _params(self, now: datetime, page: int) -> dict:
        return {
            "CountryCode": "",      # empty = all reporting countries
            "CityName": "",
            "Pollutant": ",".join(POLLUTANT_CODES),
            "Year_from": now.year,
            "Year_to": now.year,
            "Station": "",
            "Samplingpoint": "",
            "Source": "E1a",        # up-to-date, verified hourly stream
            "Output": "JSON",
            "UpdateDate": "",
            "TimeCoverage": "Hour",
            "Page": page,
            "PageSize": self.page_size,
        }

    async def _fetch_page(self, client: httpx.AsyncClient, now: datetime, page: int) -> dict:
        try:
            resp = await client.get(
                self.base_url,
                params=self._params(now, page),
                headers={"User-Agent": self.user_agent},
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            self._raise_for_response(exc, f"page {page}")

        try:
            payload = resp.json()
        except ValueError as exc:
            raise FetchError("EEA returned malformed JSON", source=self.source, kind="schema") from exc

        if not isinstance(payload, dict) or not isinstance(payload.get("results"), list):
            raise FetchError("EEA response missing results array", source=self.source, kind="schema")
        return payload

    async def fetch_recent(self, window: timedelta) -> List[ProviderRecord]:
        try:
            return await self._collect(window)
        except PAYLOAD_SHAPE_ERRORS as exc:
            raise FetchError(
                f"EEA payload has an unexpected shape: {exc!r}", source=self.source, kind="schema",
            ) from exc

    async def _collect(self, window: timedelta) -> List[ProviderRecord]:
        now = self._clock()
        since = now - window
        records: List[ProviderRecord] = []

        logger.info("Fetching EEA hourly data from %s to %s", since.isoformat(), now.isoformat())
        async with self._open_client() as client:
            for page in range(1, self.max_pages + 1):
                payload = await self._fetch_page(client, now, page)
                results = payload["results"]
                records.extend(results)

                total = payload.get("count")
                if len(results) < self.page_size:
                    break
                if isinstance(total, int) and len(records) >= total:
                    break
            else:
                logger.warning("EEA pagination stopped at max_pages=%d", self.max_pages)

        recent = [r for r in records if self._is_wanted(r, since)]
        logger.info("EEA: %d of %d records are recent, valid PM2.5/NO2", len(recent), len(records))
        return recent

    def _pollutant(self, code) -> Optional[str]:
        if code is None:
            return None
        return POLLUTANT_CODES.get(str(code).strip()) or normalize_pollutant(code)

    def _is_wanted(self, record: ProviderRecord, since: datetime) -> bool:
        if not isinstance(record, dict):
            return False
        if self._pollutant(record.get("Pollutant")) is None:
            return False
        if (_safe_float(record.get("Validity")) or 0) <= 0:
            return False
        observed = parse_utc_timestamp(record.get("DatetimeBegin"))
        return observed is not None and observed >= since

    def convert_to_observation(self, record: ProviderRecord) -> Optional[Observation]:
        pollutant = self._pollutant(record.get("Pollutant"))
        if pollutant is None:
            return None
        observed_at = parse_utc_timestamp(record.get("DatetimeBegin"))
        if observed_at is None:
            return None

        value = _safe_float(record.get("Concentration"))
        country = str(record.get("CountryCode") or "").strip().upper() or "UNKNOWN"
        return Observation(
            station_id=str(record.get("AirQualityStationEoICode") or "").strip(),
            pollutant=pollutant,
            value=value,
            unit=record.get("UnitOfMeasurement") or "µg/m3",
            aqi_band=classify_aqi_band(pollutant, value),
            observed_at=observed_at,
            country_code=country,
            region_code=country,
            source=self.source,
            raw=record,
        )
