# Trading limit models
from pydantic import BaseModel
from typing import Optional


class LimitValidationResult(BaseModel):
    """Outcome of a limit validation; `reason` is always set when invalid"""
    valid: bool
    reason: Optional[str] = None
    # "ValidationError" for malformed values, "LimitExceeded" for cap breaches
    error_kind: Optional[str] = None
    broker_max: Optional[float] = None


class BrokerLimitSummary(BaseModel):
    broker_id: str
    display_name: str
    currency: str
    user_defined_limit: Optional[float] = None
    broker_max_limit: Optional[float] = None
    has_user_limit: bool = False
