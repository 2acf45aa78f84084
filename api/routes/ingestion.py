"""
Ingestion routes — on-demand cycle trigger and provider monitoring.
"""
from fastapi import APIRouter, HTTPException, Request

from pipeline.errors import PersistenceFailure

router = APIRouter()


@router.post("/run")
async def run_ingestion(request: Request):
    """
    Run one ingestion cycle now and return its report.
    Returns 503 with the partial report when the store rejects a batch.
    """
    orchestrator = request.app.state.orchestrator
    try:
        report = await orchestrator.run_cycle()
    except PersistenceFailure as exc:
        detail = {"error": str(exc)}
        if exc.report is not None:
            detail["report"] = exc.report.to_dict()
        raise HTTPException(status_code=503, detail=detail)
    return report.to_dict()


@router.get("/rate-limit")
def rate_limit_status(request: Request):
    """Current minute/hour quota usage per rate-limited provider."""
    return request.app.state.orchestrator.rate_limit_status()


@router.get("/last")
def last_report(request: Request):
    """Report of the most recent cycle run by this process."""
    report = request.app.state.orchestrator.last_report
    if report is None:
        raise HTTPException(status_code=404, detail="No ingestion cycle has run yet")
    return report.to_dict()


@router.post("/cache/invalidate")
def invalidate_cache(request: Request):
    """Drop cached provider reference data (e.g. OpenAQ country ids)."""
    sources = request.app.state.orchestrator.invalidate_caches()
    return {"invalidated": sources}
