"""
Scores routes — on-demand scoring pass.
"""
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel

from pipeline.errors import PersistenceFailure

router = APIRouter()


class ComputeRequest(BaseModel):
    types: Optional[List[str]] = None     # air-quality | heat | floods | wildfire
    regions: Optional[List[str]] = None   # country codes; default = enabled regions


@router.post("/compute")
def compute_scores(body: ComputeRequest, request: Request):
    """
    Score the requested challenge types × regions and upsert today's rows.
    Pairs that fail to aggregate are skipped and listed under `failures`.
    """
    engine = request.app.state.scoring_engine
    try:
        summary = engine.run(types=body.types, regions=body.regions)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Unknown challenge type: {exc}")
    except PersistenceFailure as exc:
        raise HTTPException(status_code=503, detail={"error": str(exc)})
    return summary.to_dict()
