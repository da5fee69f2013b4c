"""
Broker Trading Engine

Executes validated trade proposals per broker through pluggable adapters
(simulated paper fills or a remote broker API) and publishes versioned
snapshots of every broker's runtime state.
"""

from .engine import BrokerTradingEngine
from .interfaces.broker_adapter import BrokerAdapter
from .adapters.adapter_factory import BrokerAdapterFactory
from .adapters.paper_adapter import PaperBrokerAdapter
from .adapters.live_adapter import LiveBrokerAdapter
from .models import (
    BrokerRuntimeState,
    EngineSnapshot,
    PortfolioState,
    Rejection,
    RejectionKind,
    Trade,
    TradeProposal,
    TradeResult,
    TradeSide,
)

__all__ = [
    "BrokerTradingEngine",
    "BrokerAdapter",
    "BrokerAdapterFactory",
    "PaperBrokerAdapter",
    "LiveBrokerAdapter",
    "BrokerRuntimeState",
    "EngineSnapshot",
    "PortfolioState",
    "Rejection",
    "RejectionKind",
    "Trade",
    "TradeProposal",
    "TradeResult",
    "TradeSide",
]
