# Deposit ledger views
from pydantic import BaseModel, ConfigDict
from typing import Optional
from datetime import datetime
from enum import Enum


class DepositStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class AccountType(str, Enum):
    PAPER = "paper"
    LIVE = "live"


class DepositView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    amount: float
    status: DepositStatus
    transaction_id: str
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None


class TradingAccountView(BaseModel):
    id: int
    user_id: str
    account_type: AccountType
    balance: float
    buying_power: float
    total_deposited: float
    max_deposit_limit: float
    is_active: bool


class SettlementResult(BaseModel):
    deposit: DepositView
    # False when the deposit had already been settled by an earlier call
    credited: bool
    account: Optional[TradingAccountView] = None


class DepositLimits(BaseModel):
    max_single_deposit: float
    max_total_deposit: float
    current_total: float
    remaining_limit: float
    min_deposit: float
