from .models import BrokerLimitSummary, LimitValidationResult
from .rules import DEFAULT_TRADE_RULES, TradeRule
from .validator import TradingLimitValidator

__all__ = [
    "BrokerLimitSummary",
    "LimitValidationResult",
    "DEFAULT_TRADE_RULES",
    "TradeRule",
    "TradingLimitValidator",
]
