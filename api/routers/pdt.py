from fastapi import APIRouter, Depends, Query
from typing import Optional

from api.dependencies import get_pdt_tracker
from api.schemas.responses import PDTAction, PDTActionRequest, success_response
from services.pdt_compliance.tracker import PDTComplianceTracker

router = APIRouter(prefix="/pdt-status", tags=["PDT"])


@router.get("")
async def get_pdt_status(
    equity: Optional[float] = Query(default=None, ge=0),
    tracker: PDTComplianceTracker = Depends(get_pdt_tracker)
):
    """Current Pattern Day Trader status, optionally evaluated at the given equity."""
    return success_response(pdtStatus=tracker.get_pdt_status(equity))


@router.post("")
async def manage_pdt_protection(
    request: PDTActionRequest,
    tracker: PDTComplianceTracker = Depends(get_pdt_tracker)
):
    """Enable, disable or reset PDT protection."""
    if request.action == PDTAction.DISABLE:
        tracker.disable_pdt_protection()
    elif request.action == PDTAction.ENABLE:
        tracker.enable_pdt_protection()
    else:
        tracker.reset_day_trade_count()

    return success_response(
        action=request.action.value,
        pdtStatus=tracker.get_pdt_status(request.account_equity),
    )
