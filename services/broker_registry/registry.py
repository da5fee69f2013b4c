from typing import Dict, Iterable, List, Optional

from core.config.settings import Settings
from core.logging import get_audit_logger_safe
from core.utils.exceptions import NotFound
from .models import BrokerConfig, BrokerMode, PositionSizing

audit_logger = get_audit_logger_safe("broker_registry")


def default_broker_configs(settings: Settings) -> List[BrokerConfig]:
    """Built-in broker configurations."""
    return [
        BrokerConfig(
            id="moomoo",
            display_name="MooMoo (Hong Kong)",
            market="HKEX",
            currency="HKD",
            mode=BrokerMode.PAPER,
            max_portfolio_value=300.0,
            initial_balance=300.0,
            min_trade_value=10.0,
            max_trade_value=75.0,
            confidence_threshold=65.0,
            position_sizing=PositionSizing.FIXED,
            default_position_size=2,
        ),
        BrokerConfig(
            id="alpaca",
            display_name="Alpaca (US Market)",
            market="NYSE/NASDAQ",
            currency="USD",
            mode=BrokerMode.PAPER if settings.alpaca.paper else BrokerMode.LIVE,
            max_portfolio_value=None,
            initial_balance=1_000.0,
            min_trade_value=1.0,
            pdt_applicable=True,
            confidence_threshold=25.0,
            position_sizing=PositionSizing.PERCENTAGE,
            default_position_size=5,
        ),
        BrokerConfig(
            id="binance-testnet",
            display_name="Binance Testnet (Crypto)",
            market="CRYPTO",
            currency="USDT",
            mode=BrokerMode.PAPER,
            max_portfolio_value=2_000.0,
            initial_balance=2_000.0,
            min_trade_value=10.0,
            max_trade_value=400.0,
            confidence_threshold=75.0,
            position_sizing=PositionSizing.VOLATILITY_ADJUSTED,
            default_position_size=8,
        ),
        BrokerConfig(
            id="binance-us",
            display_name="Binance.US (Live Crypto)",
            market="CRYPTO",
            currency="USD",
            mode=BrokerMode.LIVE,
            max_portfolio_value=2_000.0,
            initial_balance=0.0,
            min_trade_value=10.0,
            max_trade_value=400.0,
            confidence_threshold=75.0,
            position_sizing=PositionSizing.VOLATILITY_ADJUSTED,
            default_position_size=8,
        ),
    ]


class BrokerRegistry:
    """
    Static broker configuration plus the mutable per-broker user limit map.

    Configs are immutable; the only mutable state is the user-defined limit
    override, which must only be written through TradingLimitValidator so the
    limit invariant is always checked first.
    """

    def __init__(self, configs: Iterable[BrokerConfig], active_brokers: Optional[Iterable[str]] = None):
        self._configs: Dict[str, BrokerConfig] = {config.id: config for config in configs}
        if active_brokers is None:
            self._active = list(self._configs)
        else:
            self._active = [broker_id for broker_id in active_brokers if broker_id in self._configs]
        self._user_limits: Dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "BrokerRegistry":
        return cls(default_broker_configs(settings), settings.active_brokers)

    def get(self, broker_id: str) -> BrokerConfig:
        config = self._configs.get(broker_id)
        if config is None:
            raise NotFound(
                f"Broker configuration not found for: {broker_id}",
                resource="broker",
                resource_id=broker_id,
                reason=f"Unknown broker '{broker_id}'",
            )
        return config

    def ids(self) -> List[str]:
        return list(self._active)

    def active(self) -> List[BrokerConfig]:
        return [self._configs[broker_id] for broker_id in self._active]

    def __contains__(self, broker_id: str) -> bool:
        return broker_id in self._active

    # User-defined limit overrides
    def get_user_limit(self, broker_id: str) -> Optional[float]:
        self.get(broker_id)
        return self._user_limits.get(broker_id)

    def set_user_limit(self, broker_id: str, limit: float) -> None:
        config = self.get(broker_id)
        self._user_limits[broker_id] = limit
        audit_logger.info("User trading limit set", broker=broker_id,
                          display_name=config.display_name, limit=limit)

    def clear_user_limit(self, broker_id: str) -> None:
        config = self.get(broker_id)
        if self._user_limits.pop(broker_id, None) is not None:
            audit_logger.info("User trading limit cleared - using account balance",
                              broker=broker_id, display_name=config.display_name)
