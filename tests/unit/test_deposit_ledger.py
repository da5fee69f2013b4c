import asyncio
import pytest
from decimal import Decimal

from core.utils.exceptions import DepositFailureKind, LimitExceeded, NotFound, ValidationError
from services.deposit_ledger.schemas import AccountType, DepositStatus


async def _deposit(ledger, user_id, amount):
    deposit = await ledger.validate_and_create_deposit(user_id, amount)
    return await ledger.complete_deposit(deposit.id)


class TestDepositValidation:
    @pytest.mark.asyncio
    async def test_minimum_deposit_accepted(self, ledger, funded_user):
        deposit = await ledger.validate_and_create_deposit(funded_user, "10.00")

        assert deposit.amount == 10.0
        assert deposit.status == DepositStatus.PENDING
        assert deposit.transaction_id.startswith("txn_")
        assert deposit.processed_at is None

    @pytest.mark.asyncio
    async def test_below_minimum_is_too_small(self, ledger, funded_user):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, 9.99)
        assert exc_info.value.kind == DepositFailureKind.TOO_SMALL
        assert exc_info.value.reason == "Minimum deposit is $10.00"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [9.999, "0.001", Decimal("9.995")])
    async def test_sub_cent_amounts_below_minimum_are_too_small(self, ledger, funded_user, amount):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, amount)
        assert exc_info.value.kind == DepositFailureKind.TOO_SMALL

    @pytest.mark.asyncio
    async def test_sub_cent_amount_is_rounded_after_validation(self, ledger, funded_user):
        deposit = await ledger.validate_and_create_deposit(funded_user, 10.005)
        assert deposit.amount == 10.01

        result = await ledger.complete_deposit(deposit.id)
        assert result.account.balance == pytest.approx(1_010.01)

    @pytest.mark.asyncio
    async def test_sub_cent_overage_exceeds_single_cap(self, ledger, funded_user):
        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, "300.004")
        assert exc_info.value.kind == DepositFailureKind.SINGLE_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -5, "-0.001", "abc", "NaN", "Infinity", None])
    async def test_invalid_amounts(self, ledger, funded_user, amount):
        with pytest.raises(ValidationError) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, amount)
        assert exc_info.value.kind == DepositFailureKind.INVALID_AMOUNT

    @pytest.mark.asyncio
    async def test_single_deposit_cap(self, ledger, funded_user):
        await ledger.validate_and_create_deposit(funded_user, Decimal("300.00"))

        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, "300.01")
        assert exc_info.value.kind == DepositFailureKind.SINGLE_LIMIT_EXCEEDED
        assert exc_info.value.limit == 300.0

    @pytest.mark.asyncio
    async def test_total_cap_counts_completed_deposits(self, ledger, funded_user):
        await _deposit(ledger, funded_user, 200)

        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, 150)
        assert exc_info.value.kind == DepositFailureKind.TOTAL_LIMIT_EXCEEDED
        assert "remaining: $100" in exc_info.value.reason

        deposit = await ledger.validate_and_create_deposit(funded_user, 100)
        assert deposit.status == DepositStatus.PENDING

    @pytest.mark.asyncio
    async def test_failed_validation_writes_nothing(self, ledger, funded_user):
        with pytest.raises(ValidationError):
            await ledger.validate_and_create_deposit(funded_user, 5)
        assert await ledger.list_deposits(funded_user) == []

    @pytest.mark.asyncio
    async def test_unknown_user(self, ledger):
        with pytest.raises(NotFound):
            await ledger.validate_and_create_deposit("ghost", 50)


class TestSettlement:
    @pytest.mark.asyncio
    async def test_complete_credits_account(self, ledger, funded_user):
        result = await _deposit(ledger, funded_user, 50)

        assert result.credited is True
        assert result.deposit.status == DepositStatus.COMPLETED
        assert result.deposit.processed_at is not None
        assert result.account.balance == 1_050.0
        assert result.account.buying_power == 1_050.0
        assert result.account.total_deposited == 50.0

    @pytest.mark.asyncio
    async def test_complete_twice_credits_once(self, ledger, funded_user):
        deposit = await ledger.validate_and_create_deposit(funded_user, 50)

        first = await ledger.complete_deposit(deposit.id)
        second = await ledger.complete_deposit(deposit.id)

        assert first.credited is True
        assert second.credited is False
        assert second.deposit.status == DepositStatus.COMPLETED
        account = await ledger.get_account(funded_user)
        assert account.balance == 1_050.0
        assert account.total_deposited == 50.0

    @pytest.mark.asyncio
    async def test_pending_deposits_rechecked_at_completion(self, ledger, funded_user):
        first = await ledger.validate_and_create_deposit(funded_user, 200)
        second = await ledger.validate_and_create_deposit(funded_user, 200)

        await ledger.complete_deposit(first.id)
        with pytest.raises(LimitExceeded) as exc_info:
            await ledger.complete_deposit(second.id)

        assert exc_info.value.kind == DepositFailureKind.TOTAL_LIMIT_EXCEEDED
        assert (await ledger.get_deposit(second.id)).status == DepositStatus.PENDING
        assert (await ledger.get_account(funded_user)).balance == 1_200.0

    @pytest.mark.asyncio
    async def test_concurrent_deposits_stay_within_cap(self, ledger, funded_user):
        results = await asyncio.gather(
            *[_deposit(ledger, funded_user, 100) for _ in range(5)],
            return_exceptions=True,
        )

        credited = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(credited) == 3
        assert all(isinstance(f, LimitExceeded) for f in failures)

        limits = await ledger.get_deposit_limits(funded_user)
        assert limits.current_total == 300.0
        assert limits.remaining_limit == 0.0
        assert (await ledger.get_account(funded_user)).balance == 1_300.0

    @pytest.mark.asyncio
    async def test_settlement_requires_active_account(self, ledger):
        await ledger.ensure_user("user-2")
        deposit = await ledger.validate_and_create_deposit("user-2", 50)

        with pytest.raises(NotFound):
            await ledger.complete_deposit(deposit.id)

        assert (await ledger.get_deposit(deposit.id)).status == DepositStatus.PENDING
        limits = await ledger.get_deposit_limits("user-2")
        assert limits.current_total == 0.0

    @pytest.mark.asyncio
    async def test_unknown_deposit(self, ledger):
        with pytest.raises(NotFound):
            await ledger.complete_deposit("dep_missing")
        with pytest.raises(NotFound):
            await ledger.get_deposit("dep_missing")


class TestTransactionIds:
    @pytest.mark.asyncio
    async def test_replay_returns_original_deposit(self, ledger, funded_user):
        first = await ledger.validate_and_create_deposit(funded_user, 25, transaction_id="bank-123")
        replay = await ledger.validate_and_create_deposit(funded_user, "25.00", transaction_id="bank-123")

        assert replay.id == first.id
        assert len(await ledger.list_deposits(funded_user)) == 1

    @pytest.mark.asyncio
    async def test_reuse_with_different_amount_rejected(self, ledger, funded_user):
        await ledger.validate_and_create_deposit(funded_user, 25, transaction_id="bank-123")

        with pytest.raises(ValidationError) as exc_info:
            await ledger.validate_and_create_deposit(funded_user, 30, transaction_id="bank-123")
        assert exc_info.value.field == "transaction_id"


class TestAccounts:
    @pytest.mark.asyncio
    async def test_limits_for_new_user(self, ledger, funded_user):
        limits = await ledger.get_deposit_limits(funded_user)

        assert limits.max_single_deposit == 300.0
        assert limits.max_total_deposit == 300.0
        assert limits.current_total == 0.0
        assert limits.remaining_limit == 300.0
        assert limits.min_deposit == 10.0

    @pytest.mark.asyncio
    async def test_user_specific_cap(self, ledger):
        await ledger.ensure_user("small", max_deposit_limit=100)
        await ledger.open_trading_account("small")

        limits = await ledger.get_deposit_limits("small")
        assert limits.max_single_deposit == 100.0

        with pytest.raises(LimitExceeded):
            await ledger.validate_and_create_deposit("small", 150)

    @pytest.mark.asyncio
    async def test_ensure_user_is_idempotent(self, ledger, funded_user):
        await ledger.ensure_user(funded_user, email="user1@example.com")
        account = await ledger.get_account(funded_user)
        assert account.balance == 1_000.0

    @pytest.mark.asyncio
    async def test_new_account_replaces_active_one(self, ledger, funded_user):
        first = await ledger.get_account(funded_user)

        live = await ledger.open_trading_account(funded_user, AccountType.LIVE)

        assert live.id != first.id
        assert live.account_type == AccountType.LIVE
        assert live.balance == 0.0
        assert (await ledger.get_account(funded_user)).id == live.id

    @pytest.mark.asyncio
    async def test_missing_account(self, ledger):
        await ledger.ensure_user("user-3")
        with pytest.raises(NotFound) as exc_info:
            await ledger.get_account("user-3")
        assert exc_info.value.resource == "trading_account"
