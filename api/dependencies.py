from fastapi import Depends, Header, HTTPException, status
from dependency_injector.wiring import inject, Provide
from typing import Optional

from app.containers import AppContainer
from core.config.settings import Settings
from core.database.connection import DatabaseManager
from services.autonomous_trading.service import AutonomousTradingService
from services.broker_registry.registry import BrokerRegistry
from services.deposit_ledger.ledger import DepositProtectionLedger
from services.pdt_compliance.tracker import PDTComplianceTracker
from services.portfolio_reconciler.reconciler import PortfolioStateReconciler
from services.trading_engine.engine import BrokerTradingEngine
from services.trading_limits.validator import TradingLimitValidator


async def get_current_user_id(
    x_user_id: Optional[str] = Header(default=None, alias="X-User-Id")
) -> str:
    """Caller identity as supplied by the upstream auth collaborator"""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    return x_user_id.strip()


@inject
def get_settings(
    settings: Settings = Depends(Provide[AppContainer.settings])
) -> Settings:
    return settings


@inject
def get_db_manager(
    db_manager: DatabaseManager = Depends(Provide[AppContainer.db_manager])
) -> DatabaseManager:
    return db_manager


@inject
def get_broker_registry(
    registry: BrokerRegistry = Depends(Provide[AppContainer.broker_registry])
) -> BrokerRegistry:
    return registry


@inject
def get_trading_limit_validator(
    validator: TradingLimitValidator = Depends(Provide[AppContainer.trading_limit_validator])
) -> TradingLimitValidator:
    return validator


@inject
def get_pdt_tracker(
    tracker: PDTComplianceTracker = Depends(Provide[AppContainer.pdt_tracker])
) -> PDTComplianceTracker:
    return tracker


@inject
def get_trading_engine(
    engine: BrokerTradingEngine = Depends(Provide[AppContainer.trading_engine])
) -> BrokerTradingEngine:
    return engine


@inject
def get_portfolio_reconciler(
    reconciler: PortfolioStateReconciler = Depends(Provide[AppContainer.portfolio_reconciler])
) -> PortfolioStateReconciler:
    return reconciler


@inject
def get_autonomous_trading_service(
    service: AutonomousTradingService = Depends(Provide[AppContainer.autonomous_trading_service])
) -> AutonomousTradingService:
    return service


@inject
def get_deposit_ledger(
    ledger: DepositProtectionLedger = Depends(Provide[AppContainer.deposit_ledger])
) -> DepositProtectionLedger:
    return ledger
