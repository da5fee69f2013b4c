# Trading engine models
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, Optional
from datetime import datetime, timezone
from enum import Enum

from core.utils.ids import generate_proposal_id
from services.broker_registry.models import BrokerMode


class TradeSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradeStatus(str, Enum):
    FILLED = "filled"


class RejectionKind(str, Enum):
    BROKER_INACTIVE = "BrokerInactive"
    RULE_VIOLATION = "ValidationError"
    LIMIT_EXCEEDED = "LimitExceeded"
    COMPLIANCE_VIOLATION = "ComplianceViolation"
    BROKER_REJECTED = "BrokerRejected"


class TradeProposal(BaseModel):
    """A request to trade. The proposal_id makes resubmission safe."""
    model_config = ConfigDict(frozen=True)

    proposal_id: str = Field(default_factory=generate_proposal_id)
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    reasoning: str = ""
    confidence: Optional[float] = None

    @property
    def notional(self) -> float:
        return self.quantity * self.price


class Fill(BaseModel):
    """Execution report returned by a broker adapter."""
    order_id: str
    fill_price: float
    quantity: float
    fees: float = 0.0
    filled_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BrokerPortfolio(BaseModel):
    """Account values as reported by a broker."""
    value: float
    day_change: float = 0.0
    buying_power: Optional[float] = None


class Trade(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    proposal_id: str
    broker_id: str
    order_id: str
    timestamp: datetime
    symbol: str
    side: TradeSide
    quantity: float
    price: float
    fees: float = 0.0
    # Realized profit, only known once a position is (partly) closed
    profit: Optional[float] = None
    day_trade: bool = False
    reasoning: str = ""
    status: TradeStatus = TradeStatus.FILLED


class Rejection(BaseModel):
    model_config = ConfigDict(frozen=True)

    proposal_id: str
    broker_id: str
    kind: RejectionKind
    reason: str


class TradeResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    accepted: bool
    trade: Optional[Trade] = None
    rejection: Optional[Rejection] = None
    # True when the proposal had already been executed and the stored result is replayed
    duplicate: bool = False


class Position(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    quantity: float
    average_price: float


class PortfolioState(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float
    trade_count: int
    profit: float


class BrokerRuntimeState(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker_id: str
    display_name: str
    currency: str
    mode: BrokerMode
    active: bool
    connected: bool
    portfolio: PortfolioState
    effective_limit: float
    started_at: Optional[datetime] = None
    positions: Dict[str, Position] = Field(default_factory=dict)


class EngineSnapshot(BaseModel):
    """Point-in-time copy of every broker's state, tagged with the engine version."""
    model_config = ConfigDict(frozen=True)

    version: int
    taken_at: datetime
    brokers: Dict[str, BrokerRuntimeState]

    @property
    def connected(self) -> bool:
        """True when any active broker is reachable."""
        return any(b.connected for b in self.brokers.values() if b.active)
