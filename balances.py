from sqlalchemy import update
from sqlalchemy.orm import Session

from errors import NotFound
from models import Account, TransactionType


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    return amount_cents if txn_type == TransactionType.income else -amount_cents


def apply_balance_delta(session: Session, account_id: int, delta_cents: int) -> None:
    """Move an account balance by ``delta_cents`` inside the caller's unit of work.

    The increment happens in SQL so concurrent writers never overwrite each
    other's changes with an absolute value.
    """
    result = session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance_cents=Account.balance_cents + delta_cents)
    )
    if result.rowcount != 1:
        raise NotFound("Account not found")
