from fastapi import APIRouter, Body, Depends, Query
from typing import Optional

from api.dependencies import (
    get_autonomous_trading_service,
    get_trading_engine,
    get_trading_limit_validator,
)
from api.schemas.responses import ClearLimitRequest, SetLimitRequest, success_response
from core.utils.exceptions import ValidationError
from services.autonomous_trading.service import AutonomousTradingService
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_limits.validator import TradingLimitValidator

router = APIRouter(prefix="/broker", tags=["Broker"])


@router.api_route("/refresh", methods=["GET", "POST"])
async def refresh_broker_data(
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    """Probe broker connectivity, re-sync remote accounts and return the reconciled state."""
    projection = await service.refresh()
    return success_response(
        message="Broker data refreshed",
        brokerState=projection,
        connected=projection.connected,
    )


@router.get("/state")
async def get_broker_state(
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    return success_response(brokerState=await service.get_state())


@router.post("/{broker_id}/start")
async def start_broker(
    broker_id: str,
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    projection = await service.start_broker(broker_id)
    return success_response(brokerId=broker_id, broker=projection.brokers[broker_id],
                            brokerState=projection)


@router.post("/{broker_id}/stop")
async def stop_broker(
    broker_id: str,
    service: AutonomousTradingService = Depends(get_autonomous_trading_service)
):
    projection = await service.stop_broker(broker_id)
    return success_response(brokerId=broker_id, broker=projection.brokers[broker_id],
                            brokerState=projection)


@router.get("/trades")
async def get_trades(
    broker_id: Optional[str] = Query(default=None, alias="brokerId"),
    engine: BrokerTradingEngine = Depends(get_trading_engine)
):
    trades = engine.get_trades(broker_id)
    return success_response(trades=trades, count=len(trades))


# Trading limits
@router.get("/limits")
async def get_trading_limits(
    validator: TradingLimitValidator = Depends(get_trading_limit_validator)
):
    return success_response(limits=validator.limit_summary())


@router.post("/limits")
async def set_trading_limit(
    request: SetLimitRequest,
    validator: TradingLimitValidator = Depends(get_trading_limit_validator)
):
    """Set a user trading limit; rejected when above the broker maximum or the account balance."""
    effective = validator.set_user_trading_limit(request.broker_id, request.limit, request.actual_balance)
    config = validator.registry.get(request.broker_id)
    return success_response(
        message=f"Trading limit for {config.display_name} set to {config.currency} {request.limit:.2f}",
        brokerId=request.broker_id,
        limit=request.limit,
        effectiveLimit=effective,
    )


@router.delete("/limits")
async def clear_trading_limit(
    request: Optional[ClearLimitRequest] = Body(default=None),
    broker_id: Optional[str] = Query(default=None, alias="brokerId"),
    validator: TradingLimitValidator = Depends(get_trading_limit_validator)
):
    """Clear a user trading limit; the broker reverts to trading the full account balance."""
    target = request.broker_id if request is not None else broker_id
    if not target:
        raise ValidationError("brokerId is required", field="brokerId", reason="brokerId is required")
    validator.clear_user_trading_limit(target)
    config = validator.registry.get(target)
    return success_response(
        message=f"Trading limit for {config.display_name} cleared - using full account balance",
        brokerId=target,
    )
