from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Optional
from datetime import datetime, timezone
from enum import Enum


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    return value


def success_response(**payload: Any) -> Dict[str, Any]:
    """Standard success envelope: {success: true, ...payload, timestamp}"""
    body = {"success": True}
    body.update({key: _jsonable(value) for key, value in payload.items()})
    body["timestamp"] = _now_iso()
    return body


def error_response(error: str, reason: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    """Standard failure envelope: {success: false, error, reason?}"""
    body: Dict[str, Any] = {"success": False, "error": error}
    if reason:
        body["reason"] = reason
    body.update({key: _jsonable(value) for key, value in extra.items() if value is not None})
    body["timestamp"] = _now_iso()
    return body


class CamelModel(BaseModel):
    """Request bodies accept the dashboard's camelCase keys (snake_case also works)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Request bodies
class PDTAction(str, Enum):
    DISABLE = "disable"
    ENABLE = "enable"
    RESET = "reset"


class PDTActionRequest(CamelModel):
    action: PDTAction
    account_equity: Optional[float] = Field(default=None, ge=0, allow_inf_nan=False)


class SetLimitRequest(CamelModel):
    broker_id: str
    limit: float = Field(allow_inf_nan=False)
    actual_balance: float = Field(ge=0, allow_inf_nan=False)


class ClearLimitRequest(CamelModel):
    broker_id: str


class ResetPortfolioRequest(CamelModel):
    broker_id: Optional[str] = None


class CreateDepositRequest(CamelModel):
    amount: Any
    transaction_id: Optional[str] = None


class DecisionRequest(CamelModel):
    decision_id: Optional[str] = None
    broker_id: str
    symbol: str
    recommendation: str
    confidence: float = Field(allow_inf_nan=False)
    price: float = Field(allow_inf_nan=False)
    reasoning: str = ""
    position_size: Optional[float] = Field(default=None, allow_inf_nan=False)


# Health
class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class HealthResponse(BaseModel):
    success: bool = True
    status: HealthStatus
    service: str
    version: str
    database: bool
    brokers: Dict[str, Dict[str, bool]]
    timestamp: str = Field(default_factory=_now_iso)
