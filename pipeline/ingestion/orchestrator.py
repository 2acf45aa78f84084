"""
Ingestion Orchestrator: one primary/fallback ingestion cycle.

    IDLE → FETCH_PRIMARY → [FETCH_FALLBACK] → MERGE → NORMALIZE → PERSIST → DONE
                                                                     └──→ FAILED

Every step before PERSIST degrades to "fewer records processed". Only a
store failure during PERSIST fails the cycle.
"""

import asyncio
import enum
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional

from pipeline.config import IngestionConfig
from pipeline.errors import PersistenceFailure, SourceUnavailable
from pipeline.ingestion.base import SourceAdapter
from pipeline.ingestion.validator import normalize_observations
from pipeline.models import CycleReport, Observation

logger = logging.getLogger(__name__)


class CycleState(str, enum.Enum):
    IDLE = "IDLE"
    FETCH_PRIMARY = "FETCH_PRIMARY"
    FETCH_FALLBACK = "FETCH_FALLBACK"
    MERGE = "MERGE"
    NORMALIZE = "NORMALIZE"
    PERSIST = "PERSIST"
    DONE = "DONE"
    FAILED = "FAILED"


def deduplicate(observations: Iterable[Observation]) -> List[Observation]:
    """Keep the first observation per (station_id, pollutant, observed_at)."""
    seen = set()
    unique = []
    for obs in observations:
        key = obs.dedup_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(obs)
    return unique


def _batches(items: List[Observation], size: int):
    size = max(1, size)
    for start in range(0, len(items), size):
        yield items[start:start + size]


class IngestionOrchestrator:
    """
    Runs ingestion cycles against one primary and one optional fallback adapter.

    The instance is long-lived so adapter caches and the fallback's rate
    limiter survive between cycles.
    """

    def __init__(
        self,
        primary: SourceAdapter,
        fallback: Optional[SourceAdapter],
        store,
        config: Optional[IngestionConfig] = None,
    ):
        self.primary = primary
        self.fallback = fallback
        self.store = store
        self.config = config or IngestionConfig()
        self.state = CycleState.IDLE
        self.last_report: Optional[CycleReport] = None

    def _enter(self, report: CycleReport, state: CycleState) -> None:
        self.state = state
        report.state = state.value
        report.states.append(state.value)
        logger.debug("Ingestion cycle → %s", state.value)

    @staticmethod
    def _record_failure(report: CycleReport, source: str, message: str) -> List[Observation]:
        report.failures[source] = message
        report.fetched[source] = 0
        report.converted[source] = 0
        return []

    async def _fetch(
        self, adapter: SourceAdapter, report: CycleReport, window: timedelta,
    ) -> List[Observation]:
        """Fetch and convert one source; failures are recorded, never raised."""
        try:
            records = await adapter.fetch_recent(window)
            observations = adapter.convert_all(records)
        except SourceUnavailable as exc:
            logger.error("Source %s unavailable: %s", adapter.source, exc)
            return self._record_failure(report, adapter.source, str(exc))
        except Exception as exc:
            logger.exception("Unexpected error fetching from %s", adapter.source)
            return self._record_failure(report, adapter.source, f"{type(exc).__name__}: {exc}")

        report.fetched[adapter.source] = len(records)
        report.converted[adapter.source] = len(observations)
        logger.info("%s: fetched %d records, %d converted",
                    adapter.source, len(records), len(observations))
        return observations

    async def _persist(self, observations: List[Observation]) -> int:
        inserted = 0
        for batch in _batches(observations, self.config.batch_size):
            inserted += await asyncio.to_thread(self.store.insert_observations, batch)
        return inserted

    async def run_cycle(self) -> CycleReport:
        """
        Execute one full ingestion cycle.

        Returns:
            CycleReport with per-source counts and failures.

        Raises:
            PersistenceFailure: if the store rejects a batch. The partially
                filled report (state FAILED) is attached as ``exc.report``.
        """
        started = time.monotonic()
        report = CycleReport(started_at=datetime.now(timezone.utc))
        report.states.append(CycleState.IDLE.value)
        window = timedelta(hours=self.config.lookback_hours)
        logger.info("── Ingestion cycle starting ──")

        self._enter(report, CycleState.FETCH_PRIMARY)
        primary_obs = await self._fetch(self.primary, report, window)

        fallback_obs: List[Observation] = []
        if self.fallback is not None and len(primary_obs) < self.config.sufficiency_threshold:
            logger.info(
                "Primary returned %d observations (< %d), querying fallback %s",
                len(primary_obs), self.config.sufficiency_threshold, self.fallback.source,
            )
            self._enter(report, CycleState.FETCH_FALLBACK)
            fallback_obs = await self._fetch(self.fallback, report, window)

        self._enter(report, CycleState.MERGE)
        merged = primary_obs + fallback_obs
        unique = deduplicate(merged)
        report.raw_count = len(merged)
        report.deduped_count = len(unique)

        self._enter(report, CycleState.NORMALIZE)
        normalized = normalize_observations(unique)
        report.normalized_count = len(normalized)

        self._enter(report, CycleState.PERSIST)
        try:
            report.inserted_count = await self._persist(normalized)
        except PersistenceFailure as exc:
            self._enter(report, CycleState.FAILED)
            report.error = str(exc)
            self._finish(report, started)
            logger.error("Ingestion cycle failed during persistence: %s", exc)
            raise PersistenceFailure(str(exc), report=report) from exc

        self._enter(report, CycleState.DONE)
        self._finish(report, started)
        logger.info(
            "── Ingestion cycle complete: raw=%d deduped=%d normalized=%d inserted=%d (%.2fs) ──",
            report.raw_count, report.deduped_count, report.normalized_count,
            report.inserted_count, report.elapsed_seconds,
        )
        return report

    def _finish(self, report: CycleReport, started: float) -> None:
        report.finished_at = datetime.now(timezone.utc)
        report.elapsed_seconds = round(time.monotonic() - started, 3)
        self.last_report = report

    def invalidate_caches(self) -> List[str]:
        """Drop adapter reference caches. Returns the sources touched."""
        touched = []
        for adapter in (self.primary, self.fallback):
            if adapter is None:
                continue
            adapter.invalidate_cache()
            touched.append(adapter.source)
        return touched

    def rate_limit_status(self) -> dict:
        """Limiter snapshot for every adapter that carries one."""
        status = {}
        for adapter in (self.primary, self.fallback):
            limiter = getattr(adapter, "rate_limiter", None)
            if limiter is not None:
                status[adapter.source] = limiter.get_status()
        return status
