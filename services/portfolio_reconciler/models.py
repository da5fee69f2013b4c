# Reconciled portfolio projection
from pydantic import BaseModel, ConfigDict, Field
from typing import Dict, List, Optional
from datetime import datetime

from services.broker_registry.models import BrokerMode


class Correction(BaseModel):
    """One value the reconciler had to override in the projection."""
    model_config = ConfigDict(frozen=True)

    broker_id: str
    field: str
    observed: float
    corrected: float
    reason: str


class ReconciledBroker(BaseModel):
    model_config = ConfigDict(frozen=True)

    broker_id: str
    display_name: str
    currency: str
    mode: BrokerMode
    active: bool
    connected: bool
    value: float
    trade_count: int
    profit: float
    # profit was overridden to 0 because the broker has no trades
    profit_corrected: bool = False
    effective_limit: float
    started_at: Optional[datetime] = None


class PortfolioProjection(BaseModel):
    """Read-only view of engine state for dashboard consumers. Never a source of truth."""
    model_config = ConfigDict(frozen=True)

    version: int
    synced_at: datetime
    connected: bool
    brokers: Dict[str, ReconciledBroker]
    corrections: List[Correction] = Field(default_factory=list)

