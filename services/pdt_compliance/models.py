# PDT compliance models
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import date, datetime
from enum import Enum


class WarningLevel(str, Enum):
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"


class OpenLot(BaseModel):
    """Same-session buy that a later sell can close into a day trade"""
    symbol: str
    trade_id: str
    bought_at: datetime
    session_date: date


class DayTradeRecord(BaseModel):
    symbol: str
    buy_trade_id: str
    sell_trade_id: str
    bought_at: datetime
    sold_at: datetime
    session_date: date

    @property
    def hours_held(self) -> float:
        return (self.sold_at - self.bought_at).total_seconds() / 3600


class PDTCheckResult(BaseModel):
    allowed: bool
    day_trade_count: int
    # None when no limit applies (exempt account or protection disabled)
    day_trade_limit: Optional[int] = None
    reason: Optional[str] = None
    warning: Optional[str] = None


class RecentDayTrade(BaseModel):
    symbol: str
    session_date: date
    hours_held: float


class PDTStatus(BaseModel):
    """Point-in-time PDT report; always computed, even with protection disabled"""
    protected: bool
    enabled: bool
    account_exempt: bool
    equity: Optional[float] = None
    threshold: float
    day_trade_count: int
    day_trade_limit: int
    # None means unbounded
    remaining: Optional[int] = None
    window_start: date
    window_reset_at: Optional[date] = None
    warning_level: WarningLevel = WarningLevel.SAFE
    recent_day_trades: List[RecentDayTrade] = Field(default_factory=list)
