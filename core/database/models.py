# Database models for the deposit ledger
from sqlalchemy import Column, Integer, String, Boolean, DateTime, Numeric, ForeignKey, Index
from sqlalchemy.sql import func
from .connection import Base


MONEY = Numeric(14, 2)


class User(Base):
    """Account holder with a lifetime deposit cap"""
    __tablename__ = "users"

    id = Column(String, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=True)
    max_deposit_limit = Column(MONEY, nullable=False)
    total_deposited = Column(MONEY, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())


class TradingAccount(Base):
    """Paper or live trading account credited by settled deposits"""
    __tablename__ = "trading_accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    account_type = Column(String, nullable=False)  # paper | live
    balance = Column(MONEY, nullable=False, default=0)
    buying_power = Column(MONEY, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index('idx_trading_accounts_active_user', 'user_id', 'is_active'),
    )


class Deposit(Base):
    """Deposit request; settles from pending to completed exactly once"""
    __tablename__ = "deposits"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(MONEY, nullable=False)
    status = Column(String, nullable=False, default="pending")  # pending | completed
    transaction_id = Column(String, unique=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('idx_deposits_user_status', 'user_id', 'status'),
    )
