"""
Challenge Pipeline — Scheduler Entry Point

One APScheduler BackgroundScheduler drives two UTC cron jobs:

  ingestion (hourly, at INGESTION_CRON_MINUTE):
      1. Fetch recent PM2.5/NO2 observations from EEA (primary)
      2. Fall back to OpenAQ v3 when EEA yields too little
      3. Merge, deduplicate, normalise, persist insert-or-ignore

  scoring (hourly, at SCORING_CRON_MINUTE):
      Score every challenge type × enabled region and upsert today's row.

Each job runs one asynchronous flow to completion (asyncio.run) in the
scheduler thread. The orchestrator is built once so the OpenAQ rate limiter
and country cache are process-local singletons shared across cycles.
"""

import asyncio
import logging
import signal
import sys
import time
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from pipeline import config
from pipeline.errors import PersistenceFailure
from pipeline.ingestion.eea_adapter import EEAAdapter
from pipeline.ingestion.openaq_adapter import OpenAQAdapter
from pipeline.ingestion.orchestrator import IngestionOrchestrator
from pipeline.ingestion.ratelimit import RateLimiter
from pipeline.models import CycleReport, ScoringSummary
from pipeline.scoring.engine import ScoringEngine
from pipeline.store import ObservationStore

LOG_FORMAT = "%(asctime)s [PIPELINE] %(levelname)s %(name)s — %(message)s"

logger = logging.getLogger("pipeline.main")

# ── Graceful shutdown flag ─────────────────────────────────────────────────────
_running = True


def _shutdown(sig, frame):
    global _running
    logger.info("Shutdown signal (%s) — stopping scheduler.", sig)
    _running = False


def configure_logging(level: str = config.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout,
    )


# ── Builders ──────────────────────────────────────────────────────────────────

def build_orchestrator(
    store: ObservationStore,
    providers: Optional[config.ProviderConfig] = None,
    ingestion: Optional[config.IngestionConfig] = None,
    rate_limits: Optional[config.RateLimitConfig] = None,
) -> IngestionOrchestrator:
    """EEA primary, OpenAQ fallback behind its own rate limiter."""
    providers = providers or config.ProviderConfig.from_env()
    ingestion = ingestion or config.IngestionConfig.from_env()
    rate_limits = rate_limits or config.RateLimitConfig.from_env()

    primary = EEAAdapter(
        base_url=providers.eea_base_url,
        page_size=providers.eea_page_size,
        max_pages=providers.eea_max_pages,
        timeout=providers.timeout_seconds,
        user_agent=providers.user_agent,
    )
    fallback = OpenAQAdapter(
        api_key=providers.openaq_api_key,
        base_url=providers.openaq_base_url,
        rate_limiter=RateLimiter.from_config(rate_limits, name="OpenAQ"),
        page_size=providers.openaq_page_size,
        max_pages=providers.openaq_max_pages,
        sensor_batch_size=providers.openaq_sensor_batch_size,
        batch_pause_seconds=providers.openaq_batch_pause_seconds,
        timeout=providers.timeout_seconds,
        user_agent=providers.user_agent,
    )
    return IngestionOrchestrator(primary, fallback, store, ingestion)


def build_scoring_engine(
    store: ObservationStore,
    scoring: Optional[config.ScoringConfig] = None,
) -> ScoringEngine:
    return ScoringEngine(store, scoring or config.ScoringConfig.from_env())


# ── APScheduler jobs ──────────────────────────────────────────────────────────

def run_ingestion_cycle(orchestrator: IngestionOrchestrator) -> Optional[CycleReport]:
    """Run one ingestion cycle to completion. A failed cycle is logged, not raised."""
    try:
        return asyncio.run(orchestrator.run_cycle())
    except PersistenceFailure as exc:
        logger.error("Ingestion cycle aborted: %s", exc)
        return exc.report


def run_scoring_pass(engine: ScoringEngine) -> Optional[ScoringSummary]:
    """Run one scoring pass over all types and enabled regions."""
    try:
        return engine.run()
    except PersistenceFailure as exc:
        logger.error("Scoring pass aborted: %s", exc)
        return None


# ── Main entry point ──────────────────────────────────────────────────────────

def main(sql_engine: Optional[Engine] = None) -> None:
    from apscheduler.schedulers.background import BackgroundScheduler

    configure_logging()
    signal.signal(signal.SIGINT,  _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    sql_engine = sql_engine or create_engine(config.DATABASE_URL, pool_pre_ping=True, pool_recycle=300)
    store = ObservationStore(sql_engine)
    orchestrator = build_orchestrator(store)
    scoring_engine = build_scoring_engine(store)

    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        func=run_ingestion_cycle,
        args=[orchestrator],
        trigger="cron",
        minute=config.INGESTION_CRON_MINUTE,
        id="ingestion",
        name="Hourly ingestion",
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        func=run_scoring_pass,
        args=[scoring_engine],
        trigger="cron",
        minute=config.SCORING_CRON_MINUTE,
        id="scoring",
        name="Hourly scoring",
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    logger.info(
        "Scheduler started — ingestion at :%02d, scoring at :%02d (UTC)",
        config.INGESTION_CRON_MINUTE, config.SCORING_CRON_MINUTE,
    )

    # ── Block main thread — wait for SIGINT/SIGTERM ──────────────────────────
    try:
        while _running:
            time.sleep(1)
    finally:
        logger.info("Stopping scheduler…")
        scheduler.shutdown(wait=False)
        sql_engine.dispose()
        logger.info("Pipeline stopped cleanly.")


if __name__ == "__main__":
    main()
