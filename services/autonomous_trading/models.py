# AI decision models
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

from services.trading_engine.models import TradeResult, TradeSide


class Recommendation(str, Enum):
    STRONG_BUY = "strong_buy"
    BUY = "buy"
    HOLD = "hold"
    SELL = "sell"
    STRONG_SELL = "strong_sell"

    @property
    def side(self) -> Optional[TradeSide]:
        if self in (Recommendation.STRONG_BUY, Recommendation.BUY):
            return TradeSide.BUY
        if self in (Recommendation.STRONG_SELL, Recommendation.SELL):
            return TradeSide.SELL
        return None


class AIDecision(BaseModel):
    """A trade idea from the external decision source."""
    model_config = ConfigDict(frozen=True)

    decision_id: Optional[str] = None
    broker_id: str
    symbol: str
    recommendation: Recommendation
    # Percentage, 0-100
    confidence: float = Field(ge=0, le=100)
    price: float = Field(gt=0, allow_inf_nan=False)
    reasoning: str = ""
    # Explicit quantity; sized from the broker config when omitted
    position_size: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("Symbol cannot be empty")
        return v


class DecisionOutcome(str, Enum):
    EXECUTED = "executed"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    FAILED = "failed"


class DecisionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker_id: str
    symbol: str
    outcome: DecisionOutcome
    proposal_id: Optional[str] = None
    reason: Optional[str] = None
    attempts: int = 0
    result: Optional[TradeResult] = None
