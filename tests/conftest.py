"""
Pytest configuration and shared fixtures for Neural Core tests.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Optional

from core.config.settings import (
    DatabaseSettings,
    DepositSettings,
    PaperTradingSettings,
    PDTSettings,
    Settings,
)
from core.database.connection import DatabaseManager
from core.market_hours import MarketHoursConfig, TradingCalendar
from core.utils.exceptions import ConnectivityError, ValidationError
from services.broker_registry.registry import BrokerRegistry
from services.deposit_ledger.ledger import DepositProtectionLedger
from services.pdt_compliance.tracker import PDTComplianceTracker
from services.portfolio_reconciler.reconciler import PortfolioStateReconciler
from services.trading_engine.adapters.adapter_factory import BrokerAdapterFactory
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_engine.interfaces.broker_adapter import BrokerAdapter
from services.trading_engine.models import BrokerPortfolio, Fill
from services.trading_limits.validator import TradingLimitValidator


class FakeClock:
    """Settable UTC clock shared by the engine and the PDT tracker."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # Wednesday 2025-03-12, 11:00 in New York (market open)
    return FakeClock(datetime(2025, 3, 12, 15, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings(tmp_path):
    """Test settings: sqlite ledger, frictionless paper fills, US holidays off."""
    return Settings(
        environment="testing",
        active_brokers="moomoo,alpaca,binance-testnet",
        database=DatabaseSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}"),
        paper_trading=PaperTradingSettings(slippage_percent=0.0, commission_percent=0.0),
        pdt=PDTSettings(),
        deposits=DepositSettings(),
    )


@pytest.fixture
def calendar(test_settings):
    return TradingCalendar(MarketHoursConfig(holidays=test_settings.pdt.holidays))


@pytest.fixture
def registry(test_settings):
    return BrokerRegistry.from_settings(test_settings)


@pytest.fixture
def validator(registry):
    return TradingLimitValidator(registry)


@pytest.fixture
def pdt_tracker(test_settings, calendar, clock):
    return PDTComplianceTracker(test_settings.pdt, calendar=calendar, clock=clock)


@pytest.fixture
def adapter_factory(test_settings):
    return BrokerAdapterFactory(test_settings)


@pytest.fixture
def engine(registry, validator, pdt_tracker, adapter_factory, clock):
    return BrokerTradingEngine(registry, validator, pdt_tracker, adapter_factory, clock=clock)


@pytest.fixture
def reconciler(engine):
    return PortfolioStateReconciler(engine)


@pytest.fixture
async def db_manager(test_settings):
    manager = DatabaseManager(test_settings.database.url, environment="testing")
    await manager.init()
    yield manager
    await manager.shutdown()


@pytest.fixture
async def ledger(db_manager, test_settings):
    return DepositProtectionLedger(db_manager, test_settings.deposits)


@pytest.fixture
async def funded_user(ledger):
    """A registered user with an active paper account."""
    await ledger.ensure_user("user-1", email="user1@example.com")
    await ledger.open_trading_account("user-1")
    return "user-1"


class StubAdapter(BrokerAdapter):
    """Scriptable adapter: fills at the proposal price unless told otherwise."""

    def __init__(self, config, fees=0.0, portfolio=None, syncs_portfolio=False):
        self.config = config
        self.fees = fees
        self.portfolio = portfolio or BrokerPortfolio(value=config.initial_balance)
        self.syncs_portfolio = syncs_portfolio
        self.start_errors = 0
        self.fail_next = 0
        self.reject_next = None
        self.gate: Optional[asyncio.Event] = None
        self.entered = asyncio.Event()
        self.executed = []

    async def start(self):
        if self.start_errors:
            self.start_errors -= 1
            raise ConnectivityError("stub broker unreachable", broker=self.config.id)

    async def stop(self):
        pass

    def get_execution_mode(self):
        return "live" if self.syncs_portfolio else "paper"

    async def get_portfolio(self):
        return self.portfolio

    async def execute_trade(self, proposal):
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_next:
            self.fail_next -= 1
            raise ConnectivityError("stub broker unreachable", broker=self.config.id)
        if self.reject_next:
            reason, self.reject_next = self.reject_next, None
            raise ValidationError(reason)
        self.executed.append(proposal.proposal_id)
        return Fill(order_id=f"stub-{len(self.executed)}", fill_price=proposal.price,
                    quantity=proposal.quantity, fees=self.fees)


@pytest.fixture
def stub_engine(test_settings, registry, validator, pdt_tracker, clock):
    """Build an engine whose adapters are StubAdapters. Returns (engine, adapters)."""

    def build(**stub_kwargs):
        factory = BrokerAdapterFactory(test_settings)
        adapters = {}
        for config in registry.active():
            kwargs = stub_kwargs.get(config.id, {})

            def builder(cfg, kwargs=kwargs):
                adapters[cfg.id] = StubAdapter(cfg, **kwargs)
                return adapters[cfg.id]

            factory.register(config.id, builder)
        engine = BrokerTradingEngine(registry, validator, pdt_tracker, factory, clock=clock)
        return engine, adapters

    return build
