"""
Analysis Router — externally triggered velocity analysis runs.
"""

from typing import Any

from fastapi import APIRouter, Depends

from api.deps import verify_cron_secret
from db.session import AsyncSessionLocal
from workers.analysis import run_analysis

router = APIRouter(prefix="/api/v1/analysis", tags=["analysis"])


def get_session_factory():
    return AsyncSessionLocal


@router.post("/{shop_id}", dependencies=[Depends(verify_cron_secret)])
async def trigger_analysis(shop_id: str, session_factory=Depends(get_session_factory)) -> dict[str, Any]:
    """
    Run the velocity analysis for one shop and return the batch summary.

    Shop-level failures come back as `success: false` with an `error`, not
    as an HTTP error.
    """
    result = await run_analysis(shop_id, session_factory=session_factory)
    return result.to_dict()
