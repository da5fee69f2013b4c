from .ledger import DepositProtectionLedger
from .schemas import (
    AccountType,
    DepositLimits,
    DepositStatus,
    DepositView,
    SettlementResult,
    TradingAccountView,
)

__all__ = [
    "DepositProtectionLedger",
    "AccountType",
    "DepositLimits",
    "DepositStatus",
    "DepositView",
    "SettlementResult",
    "TradingAccountView",
]
