# Broker registry models
from pydantic import BaseModel, ConfigDict
from typing import Optional
from enum import Enum


class BrokerMode(str, Enum):
    LIVE = "live"
    PAPER = "paper"


class PositionSizing(str, Enum):
    FIXED = "fixed"
    PERCENTAGE = "percentage"
    VOLATILITY_ADJUSTED = "volatility_adjusted"


class BrokerConfig(BaseModel):
    """Static per-broker configuration. Immutable once registered."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    market: str
    currency: str
    mode: BrokerMode
    # None means the broker imposes no portfolio cap
    max_portfolio_value: Optional[float] = None
    initial_balance: float = 0.0
    min_trade_value: float = 0.0
    max_trade_value: Optional[float] = None
    pdt_applicable: bool = False
    confidence_threshold: float = 50.0
    position_sizing: PositionSizing = PositionSizing.FIXED
    default_position_size: float = 1.0

    @property
    def is_live(self) -> bool:
        return self.mode == BrokerMode.LIVE

    def cap(self, value: float) -> float:
        """Clamp a value to the broker maximum (no-op for uncapped brokers)."""
        if self.max_portfolio_value is None:
            return value
        return min(value, self.max_portfolio_value)
