from abc import ABC, abstractmethod

from ..models import BrokerPortfolio, Fill, TradeProposal


class BrokerAdapter(ABC):
    """Abstract base class for broker execution back-ends."""

    # Remote adapters report authoritative account values that the engine syncs on start
    syncs_portfolio: bool = False

    @abstractmethod
    async def start(self) -> None:
        """Open the broker session. Raises ConnectivityError when unreachable."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Release broker resources."""
        pass

    @abstractmethod
    async def execute_trade(self, proposal: TradeProposal) -> Fill:
        """Place the order and return its fill.

        Raises ConnectivityError when the broker cannot be reached and
        ValidationError when the broker refuses the order.
        """
        pass

    @abstractmethod
    async def get_portfolio(self) -> BrokerPortfolio:
        """Return account value and day change as the broker reports them."""
        pass

    @abstractmethod
    def get_execution_mode(self) -> str:
        """Return the execution mode identifier ('paper' or 'live')."""
        pass

    async def check_connection(self) -> bool:
        """Probe the broker. Adapters without a remote end are always reachable."""
        return True
