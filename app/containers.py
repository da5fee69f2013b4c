# Application DI container
from dependency_injector import containers, providers

from core.config.settings import Settings
from core.database.connection import DatabaseManager
from core.market_hours import MarketHoursConfig, TradingCalendar
from services.autonomous_trading.service import AutonomousTradingService
from services.broker_registry.registry import BrokerRegistry
from services.deposit_ledger.ledger import DepositProtectionLedger
from services.pdt_compliance.tracker import PDTComplianceTracker
from services.portfolio_reconciler.reconciler import PortfolioStateReconciler
from services.trading_engine.adapters.adapter_factory import BrokerAdapterFactory
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_limits.validator import TradingLimitValidator


class AppContainer(containers.DeclarativeContainer):
    """Application dependency injection container"""

    # Configuration
    settings = providers.Singleton(Settings)

    # Database
    db_manager = providers.Singleton(
        DatabaseManager,
        db_url=settings.provided.database.url,
        echo=settings.provided.database.echo,
        environment=settings.provided.environment,
    )

    # Broker configuration and user limits
    broker_registry = providers.Singleton(BrokerRegistry.from_settings, settings)
    trading_limit_validator = providers.Singleton(TradingLimitValidator, registry=broker_registry)

    # PDT rule on the US trading calendar
    market_hours_config = providers.Singleton(
        MarketHoursConfig,
        holidays=settings.provided.pdt.holidays,
        timezone=settings.provided.pdt.timezone,
    )
    trading_calendar = providers.Singleton(TradingCalendar, config=market_hours_config)
    pdt_tracker = providers.Singleton(
        PDTComplianceTracker,
        settings=settings.provided.pdt,
        calendar=trading_calendar,
    )

    # Execution
    adapter_factory = providers.Singleton(BrokerAdapterFactory, settings=settings)
    trading_engine = providers.Singleton(
        BrokerTradingEngine,
        registry=broker_registry,
        validator=trading_limit_validator,
        pdt_tracker=pdt_tracker,
        adapter_factory=adapter_factory,
    )
    portfolio_reconciler = providers.Singleton(PortfolioStateReconciler, engine=trading_engine)
    autonomous_trading_service = providers.Singleton(
        AutonomousTradingService,
        registry=broker_registry,
        engine=trading_engine,
        reconciler=portfolio_reconciler,
        settings=settings.provided.autonomous,
    )

    # Deposits
    deposit_ledger = providers.Singleton(
        DepositProtectionLedger,
        db_manager=db_manager,
        settings=settings.provided.deposits,
    )

    # Services with a start/stop lifecycle, started in order and stopped in reverse
    lifespan_services = providers.List(
        autonomous_trading_service,
    )
