from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from typing import Optional
from pydantic import ValidationError as PydanticValidationError

from api.dependencies import get_autonomous_trading_service
from api.schemas.responses import DecisionRequest, ResetPortfolioRequest, error_response, success_response
from core.utils.exceptions import ValidationError
from services.autonomous_trading.models import AIDecision, DecisionOutcome
from services.autonomous_trading.service import AutonomousTradingService
from services.trading_engine.models import RejectionKind

router = APIRouter(tags=["Trading"])

# HTTP status and error label per rejection kind
_REJECTION_STATUS = {
    RejectionKind.BROKER_INACTIVE: (409, "Broker inactive"),
    RejectionKind.RULE_VIOLATION: (400, "Validation failed"),
    RejectionKind.LIMIT_EXCEEDED: (400, "Limit exceeded"),
    RejectionKind.COMPLIANCE_VIOLATION: (403, "PDT compliance violation"),
    RejectionKind.BROKER_REJECTED: (400, "Order rejected by broker"),
}


@router.post("/trading/decisions")
async def submit_decision(
    request: DecisionRequest,
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    """Route one AI decision to its broker and report the trade or the rejection reason."""
    try:
        decision = AIDecision(**request.model_dump())
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first["loc"])
        raise ValidationError(f"Invalid decision: {first['msg']}", field=field,
                              reason=f"{field}: {first['msg']}") from e

    outcome = await service.submit_decision(decision)

    if outcome.outcome == DecisionOutcome.REJECTED:
        rejection = outcome.result.rejection
        status_code, label = _REJECTION_STATUS[rejection.kind]
        return JSONResponse(status_code=status_code,
                            content=error_response(label, reason=rejection.reason,
                                                   kind=rejection.kind.value,
                                                   proposalId=outcome.proposal_id))
    if outcome.outcome == DecisionOutcome.FAILED:
        return JSONResponse(status_code=502,
                            content=error_response("Broker unavailable", reason=outcome.reason,
                                                   retryable=True, proposalId=outcome.proposal_id))

    return success_response(
        outcome=outcome.outcome.value,
        reason=outcome.reason,
        proposalId=outcome.proposal_id,
        trade=outcome.result.trade if outcome.result else None,
        duplicate=outcome.result.duplicate if outcome.result else False,
    )


@router.post("/portfolio/reset")
async def reset_portfolio(
    request: Optional[ResetPortfolioRequest] = Body(default=None),
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    """Stop trading and zero portfolio state for one broker or all brokers."""
    broker_id = request.broker_id if request is not None else None
    projection = await service.reset_all(broker_id)
    return success_response(
        message="Portfolio reset" if broker_id is None else f"Portfolio reset for {broker_id}",
        brokerState=projection,
    )
