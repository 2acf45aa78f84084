"""
Challenge Pipeline — FastAPI Application Entry Point

Inbound trigger surface: on-demand ingestion cycles and scoring passes,
plus provider quota monitoring. The orchestrator and scoring engine are
built once per process in the lifespan handler.
"""
import logging
import sys
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.models.db_models import Base, Region
from api.routes import ingestion, scores
from pipeline.ingestion.openaq_adapter import EUROPEAN_COUNTRY_CODES
from pipeline.ingestion.orchestrator import IngestionOrchestrator
from pipeline.main import LOG_FORMAT, build_orchestrator, build_scoring_engine
from pipeline.scoring.engine import ScoringEngine
from pipeline.store import ObservationStore

logging.basicConfig(level=logging.INFO, format=LOG_FORMAT, stream=sys.stdout)
logger = logging.getLogger(__name__)


def _seed_regions(sql_engine: Engine) -> None:
    """Enable one country-level region per European country on first startup."""
    with Session(sql_engine) as db:
        try:
            if db.query(Region).first() is not None:
                logger.info("Regions already exist — skipping region seed")
                return
            for code in EUROPEAN_COUNTRY_CODES:
                db.add(Region(code=code, name=code, enabled=True))
            db.commit()
            logger.info("Seeded %d regions", len(EUROPEAN_COUNTRY_CODES))
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Region seed failed: %s", e)


def create_app(
    sql_engine: Optional[Engine] = None,
    orchestrator: Optional[IngestionOrchestrator] = None,
    scoring_engine: Optional[ScoringEngine] = None,
    seed_regions: bool = True,
) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal sql_engine
        if sql_engine is None:
            from api.database import engine
            sql_engine = engine

        # ── Step 0: Ensure tables exist (migrations are managed externally) ──
        Base.metadata.create_all(bind=sql_engine)
        if seed_regions:
            _seed_regions(sql_engine)

        # ── Step 1: Long-lived pipeline components ───────────────────────────
        store = ObservationStore(sql_engine)
        app.state.store = store
        app.state.orchestrator = orchestrator or build_orchestrator(store)
        app.state.scoring_engine = scoring_engine or build_scoring_engine(store)
        logger.info("Challenge pipeline API started")
        yield
        logger.info("Challenge pipeline API shutting down")

    app = FastAPI(
        title="Challenge Pipeline API",
        description="Environmental challenge ingestion and scoring",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routers
    app.include_router(ingestion.router, prefix="/api/ingestion", tags=["Ingestion"])
    app.include_router(scores.router,    prefix="/api/scores",    tags=["Scores"])

    @app.get("/api/health", tags=["Health"])
    def health(request: Request):
        try:
            with request.app.state.store.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise HTTPException(status_code=503, detail=f"database unavailable: {exc}")
        return {"status": "ok", "service": "challenge-pipeline-api", "version": "1.0.0"}

    return app


app = create_app()
