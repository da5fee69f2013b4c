# Per-broker trade rules
import math
from typing import Any, Dict, Tuple

from services.broker_registry.models import BrokerConfig


class TradeRule:
    """Base class for trade rules"""

    def __init__(self, name: str):
        self.name = name

    def check(self, proposal: Any, config: BrokerConfig, state: Dict[str, Any]) -> Tuple[bool, str]:
        """
        Check if a trade proposal passes this rule

        Returns:
            Tuple[bool, str]: (passes, reason)
        """
        raise NotImplementedError


class PositiveOrderRule(TradeRule):
    """Quantity and price must both be finite and positive"""

    def __init__(self):
        super().__init__("PositiveOrder")

    def check(self, proposal, config, state):
        if not (math.isfinite(proposal.quantity) and math.isfinite(proposal.price)):
            return False, f"Quantity and price must be finite (got {proposal.quantity} @ {proposal.price})"
        if proposal.quantity <= 0:
            return False, f"Quantity must be greater than 0 (got {proposal.quantity})"
        if proposal.price <= 0:
            return False, f"Price must be greater than 0 (got {proposal.price})"
        return True, "Order values positive"


class MinTradeValueRule(TradeRule):
    def __init__(self):
        super().__init__("MinTradeValue")

    def check(self, proposal, config, state):
        notional = proposal.quantity * proposal.price
        if notional < config.min_trade_value:
            return False, (
                f"Trade value {config.currency} {notional:.2f} below {config.display_name} "
                f"minimum of {config.currency} {config.min_trade_value:.2f}"
            )
        return True, "Trade value above minimum"


class MaxTradeValueRule(TradeRule):
    def __init__(self):
        super().__init__("MaxTradeValue")

    def check(self, proposal, config, state):
        if config.max_trade_value is None:
            return True, "No maximum trade value"
        notional = proposal.quantity * proposal.price
        if notional > config.max_trade_value:
            return False, (
                f"Trade value {config.currency} {notional:.2f} exceeds {config.display_name} "
                f"maximum of {config.currency} {config.max_trade_value:.2f}"
            )
        return True, "Trade value within maximum"


class HeldQuantityRule(TradeRule):
    """Sells may not exceed the quantity currently held (no short selling)"""

    def __init__(self):
        super().__init__("HeldQuantity")

    def check(self, proposal, config, state):
        if proposal.side != "sell":
            return True, "Not a sell"
        held = state.get("positions", {}).get(proposal.symbol, 0.0)
        if proposal.quantity > held:
            return False, f"Cannot sell {proposal.quantity} {proposal.symbol}: only {held} held"
        return True, "Sufficient quantity held"


DEFAULT_TRADE_RULES = (
    PositiveOrderRule(),
    MinTradeValueRule(),
    MaxTradeValueRule(),
    HeldQuantityRule(),
)
