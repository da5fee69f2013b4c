import asyncio
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config.settings import DepositSettings
from core.database.connection import DatabaseManager
from core.database.models import Deposit, TradingAccount, User
from core.logging import ServiceLogger
from core.utils.exceptions import (
    DepositFailureKind,
    LimitExceeded,
    NotFound,
    TransactionFailure,
    ValidationError,
)
from core.utils.ids import generate_deposit_id, generate_transaction_id
from .schemas import (
    AccountType,
    DepositLimits,
    DepositStatus,
    DepositView,
    SettlementResult,
    TradingAccountView,
)

CENT = Decimal("0.01")

Amount = Union[Decimal, float, int, str]


def _to_decimal(amount: Amount) -> Decimal:
    """Parse an amount into an exact Decimal; non-numeric and non-finite values are invalid."""
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError):
        value = None
    if value is None or not value.is_finite():
        raise ValidationError(
            f"Invalid deposit amount: {amount}",
            field="amount",
            value=str(amount),
            kind=DepositFailureKind.INVALID_AMOUNT,
            reason="Deposit amount must be a number",
        )
    return value


def _to_money(amount: Amount) -> Decimal:
    """Amount rounded half-up to whole cents."""
    value = _to_decimal(amount)
    try:
        return value.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(
            f"Invalid deposit amount: {amount}",
            field="amount",
            value=str(amount),
            kind=DepositFailureKind.INVALID_AMOUNT,
            reason="Deposit amount is out of range",
        ) from None


class DepositProtectionLedger:
    """
    Deposit caps and atomic settlement.

    Validation and settlement are separate steps: `validate_and_create_deposit`
    only records a pending deposit, `complete_deposit` credits the account in a
    single transaction. Both are serialized per user so concurrent requests
    cannot settle past the cumulative cap.
    """

    def __init__(self, db_manager: DatabaseManager, settings: DepositSettings):
        self.db_manager = db_manager
        self.settings = settings
        self.logger = ServiceLogger("deposit_ledger")
        self._user_locks: Dict[str, asyncio.Lock] = {}
        self._user_locks_lock = asyncio.Lock()

    async def _get_user_lock(self, user_id: str) -> asyncio.Lock:
        async with self._user_locks_lock:
            if user_id not in self._user_locks:
                self._user_locks[user_id] = asyncio.Lock()
            return self._user_locks[user_id]

    # Users and accounts
    async def ensure_user(self, user_id: str, email: Optional[str] = None,
                          max_deposit_limit: Optional[Amount] = None) -> None:
        limit = _to_money(max_deposit_limit) if max_deposit_limit is not None else \
            _to_money(self.settings.max_total_deposit)
        try:
            async with self.db_manager.get_session() as session:
                async with session.begin():
                    if await session.get(User, user_id) is None:
                        session.add(User(id=user_id, email=email, max_deposit_limit=limit,
                                         total_deposited=Decimal("0")))
                        self.logger.main.info("User registered", user_id=user_id,
                                              max_deposit_limit=float(limit))
        except SQLAlchemyError as e:
            raise TransactionFailure(f"Failed to register user {user_id}: {e}",
                                     operation="ensure_user") from e

    async def open_trading_account(self, user_id: str,
                                   account_type: AccountType = AccountType.PAPER) -> TradingAccountView:
        """Open a new active account; paper accounts start funded, live accounts start at zero."""
        account_type = AccountType(account_type)
        starting = _to_money(self.settings.paper_starting_balance) \
            if account_type == AccountType.PAPER else Decimal("0")
        lock = await self._get_user_lock(user_id)
        async with lock:
            try:
                async with self.db_manager.get_session() as session:
                    async with session.begin():
                        user = await self._require_user(session, user_id)
                        existing = await session.execute(
                            select(TradingAccount).where(TradingAccount.user_id == user_id,
                                                         TradingAccount.is_active.is_(True))
                        )
                        for account in existing.scalars():
                            account.is_active = False
                        account = TradingAccount(user_id=user_id, account_type=account_type.value,
                                                 balance=starting, buying_power=starting, is_active=True)
                        session.add(account)
                        await session.flush()
                        view = self._account_view(account, user)
            except SQLAlchemyError as e:
                raise TransactionFailure(f"Failed to open trading account for {user_id}: {e}",
                                         operation="open_trading_account") from e

        self.logger.audit.info("Trading account opened", user_id=user_id,
                               account_type=account_type.value, balance=float(starting))
        return view

    async def get_account(self, user_id: str) -> TradingAccountView:
        async with self.db_manager.get_session() as session:
            user = await self._require_user(session, user_id)
            account = await self._active_account(session, user_id)
            if account is None:
                raise NotFound(f"No active trading account for user {user_id}",
                               resource="trading_account", resource_id=user_id,
                               reason="No active trading account")
            return self._account_view(account, user)

    # Deposits
    async def validate_and_create_deposit(self, user_id: str, amount: Amount,
                                          transaction_id: Optional[str] = None) -> DepositView:
        lock = await self._get_user_lock(user_id)
        async with lock:
            try:
                async with self.db_manager.get_session() as session:
                    async with session.begin():
                        user = await self._require_user(session, user_id)

                        if transaction_id is not None:
                            existing = await self._deposit_by_transaction(session, transaction_id)
                            if existing is not None:
                                return self._replay(existing, user_id, amount)

                        exact = self._validate_amount(amount)
                        completed_total = await self._completed_total(session, user_id)
                        self._check_caps(user, exact, completed_total)
                        value = _to_money(exact)

                        deposit = Deposit(
                            id=generate_deposit_id(),
                            user_id=user_id,
                            amount=value,
                            status=DepositStatus.PENDING.value,
                            transaction_id=transaction_id or generate_transaction_id(),
                            created_at=datetime.now(timezone.utc),
                        )
                        session.add(deposit)
                        await session.flush()
                        view = DepositView.model_validate(deposit)
            except IntegrityError as e:
                # Concurrent create with the same transaction id from another process
                raise TransactionFailure(f"Deposit creation conflicted: {e}",
                                         operation="create_deposit") from e
            except SQLAlchemyError as e:
                raise TransactionFailure(f"Deposit creation failed: {e}",
                                         operation="create_deposit") from e

        self.logger.main.info("Deposit created", user_id=user_id, deposit_id=view.id,
                              amount=view.amount, transaction_id=view.transaction_id)
        return view

    async def complete_deposit(self, deposit_id: str) -> SettlementResult:
        """
        Settle a pending deposit exactly once.

        Marks the deposit completed, increments the user's total and credits
        the active account's balance and buying power in one transaction. A
        failure at any step rolls everything back.
        """
        async with self.db_manager.get_session() as session:
            deposit = await session.get(Deposit, deposit_id)
            if deposit is None:
                raise NotFound(f"Deposit not found: {deposit_id}", resource="deposit",
                               resource_id=deposit_id, reason="Deposit not found")
            user_id = deposit.user_id

        lock = await self._get_user_lock(user_id)
        async with lock:
            try:
                async with self.db_manager.get_session() as session:
                    async with session.begin():
                        deposit = (await session.execute(
                            select(Deposit).where(Deposit.id == deposit_id).with_for_update()
                        )).scalar_one()

                        if deposit.status == DepositStatus.COMPLETED.value:
                            self.logger.main.info("Deposit already processed", deposit_id=deposit_id)
                            return SettlementResult(deposit=DepositView.model_validate(deposit),
                                                    credited=False)

                        user = (await session.execute(
                            select(User).where(User.id == user_id).with_for_update()
                        )).scalar_one()
                        amount = Decimal(deposit.amount)
                        completed_total = await self._completed_total(session, user_id)
                        if completed_total + amount > Decimal(user.max_deposit_limit):
                            raise self._total_limit_error(user, amount, completed_total)

                        account = await self._active_account(session, user_id, for_update=True)
                        if account is None:
                            raise NotFound(f"No active trading account for user {user_id}",
                                           resource="trading_account", resource_id=user_id,
                                           reason="No active trading account to credit")

                        deposit.status = DepositStatus.COMPLETED.value
                        deposit.processed_at = datetime.now(timezone.utc)
                        user.total_deposited = Decimal(user.total_deposited) + amount
                        account.balance = Decimal(account.balance) + amount
                        account.buying_power = Decimal(account.buying_power) + amount
                        await session.flush()

                        result = SettlementResult(
                            deposit=DepositView.model_validate(deposit),
                            credited=True,
                            account=self._account_view(account, user),
                        )
            except SQLAlchemyError as e:
                self.logger.error.error("Deposit settlement rolled back", deposit_id=deposit_id,
                                        error=str(e))
                raise TransactionFailure(f"Deposit settlement failed: {e}",
                                         operation="complete_deposit") from e

        self.logger.audit.info("Deposit completed", deposit_id=deposit_id, user_id=user_id,
                               amount=result.deposit.amount,
                               balance=result.account.balance if result.account else None)
        return result

    async def get_deposit(self, deposit_id: str) -> DepositView:
        async with self.db_manager.get_session() as session:
            deposit = await session.get(Deposit, deposit_id)
            if deposit is None:
                raise NotFound(f"Deposit not found: {deposit_id}", resource="deposit",
                               resource_id=deposit_id, reason="Deposit not found")
            return DepositView.model_validate(deposit)

    async def list_deposits(self, user_id: str) -> List[DepositView]:
        async with self.db_manager.get_session() as session:
            result = await session.execute(
                select(Deposit).where(Deposit.user_id == user_id).order_by(Deposit.created_at, Deposit.id)
            )
            return [DepositView.model_validate(d) for d in result.scalars()]

    async def get_deposit_limits(self, user_id: str) -> DepositLimits:
        async with self.db_manager.get_session() as session:
            user = await self._require_user(session, user_id)
            current_total = await self._completed_total(session, user_id)
        max_total = Decimal(user.max_deposit_limit)
        return DepositLimits(
            max_single_deposit=float(self._single_cap(user)),
            max_total_deposit=float(max_total),
            current_total=float(current_total),
            remaining_limit=float(max(Decimal("0"), max_total - current_total)),
            min_deposit=self.settings.min_deposit,
        )

    # Validation helpers
    def _validate_amount(self, amount: Amount) -> Decimal:
        """Positive and at least the minimum, checked on the exact amount before any rounding."""
        value = _to_decimal(amount)
        if value <= 0:
            raise ValidationError(
                f"Deposit amount must be positive: {value}",
                field="amount", value=str(value), kind=DepositFailureKind.INVALID_AMOUNT,
                reason="Deposit amount must be positive",
            )
        minimum = _to_money(self.settings.min_deposit)
        if value < minimum:
            raise ValidationError(
                f"Deposit {value} below minimum {minimum}",
                field="amount", value=str(value), kind=DepositFailureKind.TOO_SMALL,
                reason=f"Minimum deposit is ${minimum}",
            )
        return value

    def _single_cap(self, user: User) -> Decimal:
        return min(_to_money(self.settings.max_single_deposit), Decimal(user.max_deposit_limit))

    def _check_caps(self, user: User, value: Decimal, completed_total: Decimal) -> None:
        single_cap = self._single_cap(user)
        if value > single_cap:
            raise LimitExceeded(
                f"Deposit {value} exceeds single deposit cap {single_cap}",
                limit=float(single_cap), attempted=float(value),
                kind=DepositFailureKind.SINGLE_LIMIT_EXCEEDED,
                reason=f"Single deposit cannot exceed ${single_cap}",
            )
        if completed_total + value > Decimal(user.max_deposit_limit):
            raise self._total_limit_error(user, value, completed_total)

    def _total_limit_error(self, user: User, value: Decimal, completed_total: Decimal) -> LimitExceeded:
        max_total = Decimal(user.max_deposit_limit)
        remaining = max(Decimal("0"), max_total - completed_total)
        return LimitExceeded(
            f"Deposit {value} would take total deposits past {max_total}",
            limit=float(max_total), attempted=float(completed_total + value),
            kind=DepositFailureKind.TOTAL_LIMIT_EXCEEDED,
            reason=f"Total deposits cannot exceed ${max_total} (remaining: ${remaining})",
        )

    def _replay(self, existing: Deposit, user_id: str, amount: Amount) -> DepositView:
        if existing.user_id != user_id or Decimal(existing.amount) != _to_money(amount):
            raise ValidationError(
                f"Transaction id {existing.transaction_id} already used for a different deposit",
                field="transaction_id", value=existing.transaction_id,
                reason="Transaction id already used for a different deposit",
            )
        return DepositView.model_validate(existing)

    # Query helpers
    async def _require_user(self, session: AsyncSession, user_id: str) -> User:
        user = await session.get(User, user_id)
        if user is None:
            raise NotFound(f"User not found: {user_id}", resource="user", resource_id=user_id,
                           reason="User not found")
        return user

    async def _completed_total(self, session: AsyncSession, user_id: str) -> Decimal:
        total = (await session.execute(
            select(func.coalesce(func.sum(Deposit.amount), 0)).where(
                Deposit.user_id == user_id,
                Deposit.status == DepositStatus.COMPLETED.value,
            )
        )).scalar_one()
        return Decimal(str(total))

    async def _deposit_by_transaction(self, session: AsyncSession, transaction_id: str) -> Optional[Deposit]:
        result = await session.execute(select(Deposit).where(Deposit.transaction_id == transaction_id))
        return result.scalar_one_or_none()

    async def _active_account(self, session: AsyncSession, user_id: str,
                              for_update: bool = False) -> Optional[TradingAccount]:
        stmt = select(TradingAccount).where(
            TradingAccount.user_id == user_id,
            TradingAccount.is_active.is_(True),
        ).order_by(TradingAccount.id.desc()).limit(1)
        if for_update:
            stmt = stmt.with_for_update()
        return (await session.execute(stmt)).scalar_one_or_none()

    @staticmethod
    def _account_view(account: TradingAccount, user: User) -> TradingAccountView:
        return TradingAccountView(
            id=account.id,
            user_id=account.user_id,
            account_type=AccountType(account.account_type),
            balance=float(account.balance),
            buying_power=float(account.buying_power),
            total_deposited=float(user.total_deposited),
            max_deposit_limit=float(user.max_deposit_limit),
            is_active=account.is_active,
        )
