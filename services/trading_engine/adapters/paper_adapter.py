import random
from typing import Optional

from core.config.settings import PaperTradingSettings
from core.logging import get_trading_logger_safe
from core.utils.ids import generate_trade_id
from services.broker_registry.models import BrokerConfig
from ..interfaces.broker_adapter import BrokerAdapter
from ..models import BrokerPortfolio, Fill, TradeProposal, TradeSide


class PaperBrokerAdapter(BrokerAdapter):
    """
    Simulated execution for paper brokers.

    Stateless apart from its started flag: it applies slippage and
    commission to produce a realistic fill and leaves all portfolio
    bookkeeping to the engine.
    """

    def __init__(self, config: BrokerConfig, settings: PaperTradingSettings,
                 rng: Optional[random.Random] = None):
        self.config = config
        self.settings = settings
        self._rng = rng or random.Random()
        self._started = False
        self.logger = get_trading_logger_safe(f"paper_adapter.{config.id}")

    async def start(self) -> None:
        if not self._started:
            self._started = True
            self.logger.info("Paper adapter started", broker=self.config.id)

    async def stop(self) -> None:
        if self._started:
            self._started = False
            self.logger.info("Paper adapter stopped", broker=self.config.id)

    def get_execution_mode(self) -> str:
        return "paper"

    async def get_portfolio(self) -> BrokerPortfolio:
        return BrokerPortfolio(value=self.config.initial_balance, day_change=0.0)

    async def execute_trade(self, proposal: TradeProposal) -> Fill:
        # 1. Slippage moves the fill against the trader
        slippage_pct = self.settings.slippage_percent / 100
        price_direction = 1 if proposal.side == TradeSide.BUY else -1
        slippage_amount = proposal.price * slippage_pct * self._rng.uniform(0.5, 1.5)
        fill_price = proposal.price + (price_direction * slippage_amount)

        # 2. Commission on the filled value
        order_value = proposal.quantity * fill_price
        commission = order_value * (self.settings.commission_percent / 100)

        fill = Fill(
            order_id=f"paper_{self.config.id}_{generate_trade_id()[4:]}",
            fill_price=fill_price,
            quantity=proposal.quantity,
            fees=commission,
        )
        self.logger.info("PAPER TRADE (SIMULATED)",
                         broker=self.config.id,
                         side=proposal.side.value,
                         symbol=proposal.symbol,
                         quantity=proposal.quantity,
                         fill_price=fill_price,
                         slippage=slippage_amount,
                         commission=commission)
        return fill
