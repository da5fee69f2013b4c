from fastapi import APIRouter, Depends

from api.dependencies import get_current_user_id, get_deposit_ledger
from api.schemas.responses import CreateDepositRequest, success_response
from core.utils.exceptions import NotFound
from services.deposit_ledger.ledger import DepositProtectionLedger
from services.deposit_ledger.schemas import AccountType

router = APIRouter(prefix="/deposit", tags=["Deposits"])


async def _ensure_account(ledger: DepositProtectionLedger, user_id: str) -> None:
    """Users arriving from the auth layer get a paper account on first use."""
    await ledger.ensure_user(user_id)
    try:
        await ledger.get_account(user_id)
    except NotFound:
        await ledger.open_trading_account(user_id, AccountType.PAPER)


@router.get("")
async def get_deposit_limits(
    user_id: str = Depends(get_current_user_id),
    ledger: DepositProtectionLedger = Depends(get_deposit_ledger)
):
    """Deposit caps, what has been deposited so far and the deposit history."""
    await _ensure_account(ledger, user_id)
    limits = await ledger.get_deposit_limits(user_id)
    deposits = await ledger.list_deposits(user_id)
    return success_response(limits=limits, deposits=deposits)


@router.post("")
async def create_deposit(
    request: CreateDepositRequest,
    user_id: str = Depends(get_current_user_id),
    ledger: DepositProtectionLedger = Depends(get_deposit_ledger)
):
    """Validate a deposit and record it as pending. Nothing is credited yet."""
    await _ensure_account(ledger, user_id)
    deposit = await ledger.validate_and_create_deposit(user_id, request.amount, request.transaction_id)
    limits = await ledger.get_deposit_limits(user_id)
    return success_response(
        message=f"Deposit of ${deposit.amount:.2f} created - awaiting settlement",
        deposit=deposit,
        limits=limits,
    )


@router.post("/{deposit_id}/complete")
async def complete_deposit(
    deposit_id: str,
    user_id: str = Depends(get_current_user_id),
    ledger: DepositProtectionLedger = Depends(get_deposit_ledger)
):
    """Settle a pending deposit. Settling twice credits the account once."""
    deposit = await ledger.get_deposit(deposit_id)
    if deposit.user_id != user_id:
        raise NotFound(f"Deposit not found: {deposit_id}", resource="deposit",
                       resource_id=deposit_id, reason="Deposit not found")

    result = await ledger.complete_deposit(deposit_id)
    return success_response(
        message="Deposit completed" if result.credited else "Deposit already completed",
        credited=result.credited,
        deposit=result.deposit,
        account=result.account,
    )
