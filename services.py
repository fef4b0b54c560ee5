from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional, Union

from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session

from balances import apply_balance_delta, signed_amount
from database import run_atomic
from errors import DuplicateTransaction, NotFound, ValidationError
from models import Account, Budget, Transaction, TransactionType, User
from periods import Period, day_bounds, local_now, month_to_date
from recurrence import next_occurrence
from schemas import BudgetIn, MonthlyStats, TransactionIn, parse_transaction_draft

logger = logging.getLogger(__name__)

Draft = Union[TransactionIn, dict[str, Any]]


def expenses_for_period(session: Session, account_id: int, period: Period) -> int:
    stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
        Transaction.account_id == account_id,
        Transaction.type == TransactionType.expense,
        Transaction.deleted_at.is_(None),
        Transaction.date >= period.start,
        Transaction.date < period.end,
    )
    return int(session.execute(stmt).scalar_one() or 0)


def monthly_stats(session: Session, user_id: int, period: Period) -> MonthlyStats:
    stmt = (
        select(
            Transaction.type,
            Transaction.category,
            func.sum(Transaction.amount_cents),
            func.count(Transaction.id),
        )
        .where(
            Transaction.user_id == user_id,
            Transaction.deleted_at.is_(None),
            Transaction.date >= period.start,
            Transaction.date < period.end,
        )
        .group_by(Transaction.type, Transaction.category)
    )
    stats = MonthlyStats()
    for txn_type, category, total, count in session.execute(stmt):
        total = int(total or 0)
        stats.transaction_count += int(count)
        if txn_type == TransactionType.expense:
            stats.total_expense_cents += total
            stats.by_category[category] = stats.by_category.get(category, 0) + total
        else:
            stats.total_income_cents += total
    return stats


@dataclass(frozen=True)
class Reconciliation:
    account_id: int
    expected_cents: int
    actual_cents: int

    @property
    def drift_cents(self) -> int:
        return self.actual_cents - self.expected_cents

    @property
    def balanced(self) -> bool:
        return self.drift_cents == 0


@dataclass(frozen=True)
class BudgetProgress:
    budget_id: int
    account_id: Optional[int]
    amount_cents: int
    spent_cents: int

    @property
    def percentage_used(self) -> float:
        return self.spent_cents / self.amount_cents * 100

    @property
    def remaining_cents(self) -> int:
        return self.amount_cents - self.spent_cents


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, email: str, name: Optional[str] = None) -> User:
        email = email.strip()
        if not email:
            raise ValidationError("Email cannot be empty", {"email": ["required"]})
        user = User(email=email, name=name)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    def list_all(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def create(self, name: str, is_default: bool = False) -> Account:
        name = name.strip()
        if not name:
            raise ValidationError("Account name cannot be empty", {"name": ["required"]})
        UserService(self.session).get(self.user_id)
        if self.default_account() is None:
            is_default = True
        if is_default:
            self._clear_default()
        account = Account(
            user_id=self.user_id, name=name, balance_cents=0, is_default=is_default
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def list_all(self) -> list[Account]:
        stmt = select(Account).where(Account.user_id == self.user_id).order_by(Account.id)
        return list(self.session.scalars(stmt).all())

    def default_account(self) -> Optional[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .order_by(Account.id)
            .limit(1)
        )
        return self.session.scalar(stmt)

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        self._clear_default()
        account.is_default = True
        self.session.commit()
        return account

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )

    def reconcile(self, account_id: int) -> Reconciliation:
        account = self.get(account_id)
        self.session.refresh(account)
        signed = case(
            (Transaction.type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        expected = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                Transaction.account_id == account_id,
                Transaction.deleted_at.is_(None),
            )
        ).scalar_one()
        result = Reconciliation(
            account_id=account_id,
            expected_cents=int(expected or 0),
            actual_cents=account.balance_cents,
        )
        if not result.balanced:
            logger.error(
                f"reconcile: account_id={account_id} expected={result.expected_cents}"
                f" actual={result.actual_cents} drift={result.drift_cents}"
            )
        return result


class DuplicateGuard:
    def __init__(self, session: Session) -> None:
        self.session = session

    def exists(
        self,
        user_id: int,
        account_id: int,
        txn_type: TransactionType,
        amount_cents: int,
        description: str,
        day: date,
    ) -> bool:
        start, end = day_bounds(day)
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.user_id == user_id,
                Transaction.account_id == account_id,
                Transaction.type == txn_type,
                Transaction.amount_cents == amount_cents,
                Transaction.description == description,
                Transaction.deleted_at.is_(None),
                Transaction.date >= start,
                Transaction.date < end,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.guard = DuplicateGuard(session)

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")
        if txn.deleted_at is not None and not include_deleted:
            raise NotFound("Transaction not found")
        return txn

    def post(self, draft: Draft) -> Transaction:
        data = parse_transaction_draft(draft)
        txn = run_atomic(self.session, lambda: self._post_once(data))
        logger.info(
            f"ledger_post: transaction_id={txn.id} account_id={txn.account_id}"
            f" delta={signed_amount(txn.type, txn.amount_cents)}"
        )
        return txn

    def repost(self, transaction_id: int, draft: Draft) -> Transaction:
        data = parse_transaction_draft(draft)
        txn = run_atomic(self.session, lambda: self._repost_once(transaction_id, data))
        logger.info(f"ledger_repost: transaction_id={txn.id} account_id={txn.account_id}")
        return txn

    def soft_delete(self, transaction_id: int) -> Transaction:
        def unit() -> Transaction:
            txn = self._locked(transaction_id)
            if txn.deleted_at is not None:
                raise NotFound("Transaction not found")
            txn.deleted_at = local_now()
            self.session.flush()
            apply_balance_delta(
                self.session, txn.account_id, -signed_amount(txn.type, txn.amount_cents)
            )
            return txn

        txn = run_atomic(self.session, unit)
        logger.info(f"ledger_delete: transaction_id={txn.id} account_id={txn.account_id}")
        return txn

    def restore(self, transaction_id: int) -> Transaction:
        def unit() -> Transaction:
            txn = self._locked(transaction_id)
            if txn.deleted_at is None:
                raise ValidationError(
                    "Transaction is not deleted", {"id": ["not deleted"]}
                )
            txn.deleted_at = None
            self.session.flush()
            apply_balance_delta(
                self.session, txn.account_id, signed_amount(txn.type, txn.amount_cents)
            )
            return txn

        txn = run_atomic(self.session, unit)
        logger.info(f"ledger_restore: transaction_id={txn.id} account_id={txn.account_id}")
        return txn

    def _account(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def _locked(self, transaction_id: int) -> Transaction:
        txn = self.session.get(
            Transaction, transaction_id, populate_existing=True, with_for_update=True
        )
        if not txn or txn.user_id != self.user_id:
            raise NotFound("Transaction not found")
        return txn

    def _post_once(self, data: TransactionIn) -> Transaction:
        self._account(data.account_id)
        if self.guard.exists(
            self.user_id,
            data.account_id,
            data.type,
            data.amount_cents,
            data.description,
            data.date.date(),
        ):
            raise DuplicateTransaction(
                "An identical transaction was already recorded on this day"
            )
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            type=data.type,
            amount_cents=data.amount_cents,
            date=data.date,
            description=data.description,
            category=data.category,
            status=data.status,
            is_recurring=data.is_recurring,
            recurring_interval=data.recurring_interval,
            # The first occurrence follows the economic date, not wall-clock time.
            next_recurring_date=(
                next_occurrence(data.date, data.recurring_interval)
                if data.is_recurring
                else None
            ),
        )
        self.session.add(txn)
        self.session.flush()
        apply_balance_delta(
            self.session, data.account_id, signed_amount(data.type, data.amount_cents)
        )
        return txn

    def _repost_once(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self._locked(transaction_id)
        if txn.deleted_at is not None:
            raise NotFound("Transaction not found")
        self._account(data.account_id)

        # Read before the edit, inside the same unit that writes the delta.
        old_account_id = txn.account_id
        old_signed = signed_amount(txn.type, txn.amount_cents)
        new_signed = signed_amount(data.type, data.amount_cents)

        txn.next_recurring_date = self._rescheduled(txn, data)
        txn.account_id = data.account_id
        txn.type = data.type
        txn.amount_cents = data.amount_cents
        txn.date = data.date
        txn.description = data.description
        txn.category = data.category
        txn.status = data.status
        txn.is_recurring = data.is_recurring
        txn.recurring_interval = data.recurring_interval
        self.session.flush()

        if old_account_id == data.account_id:
            apply_balance_delta(self.session, data.account_id, new_signed - old_signed)
        else:
            apply_balance_delta(self.session, old_account_id, -old_signed)
            apply_balance_delta(self.session, data.account_id, new_signed)
        return txn

    @staticmethod
    def _rescheduled(txn: Transaction, data: TransactionIn) -> Optional[datetime]:
        if not data.is_recurring:
            return None
        unchanged = (
            txn.is_recurring
            and txn.recurring_interval == data.recurring_interval
            and txn.date == data.date
        )
        if unchanged:
            return txn.next_recurring_date
        next_date = next_occurrence(data.date, data.recurring_interval)
        last = txn.last_processed_date
        if last is not None and next_date <= last:
            next_date = next_occurrence(last, data.recurring_interval)
        return next_date


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Budget:
        budget = self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))
        if not budget:
            raise NotFound("Budget not found")
        return budget

    def upsert(self, data: BudgetIn) -> Budget:
        UserService(self.session).get(self.user_id)
        budget = self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))
        if budget:
            budget.amount_cents = data.amount_cents
        else:
            budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
            self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def progress(self, now: Optional[datetime] = None) -> BudgetProgress:
        now = now or local_now()
        budget = self.get()
        account = AccountService(self.session, self.user_id).default_account()
        spent = (
            expenses_for_period(self.session, account.id, month_to_date(now))
            if account
            else 0
        )
        return BudgetProgress(
            budget_id=budget.id,
            account_id=account.id if account else None,
            amount_cents=budget.amount_cents,
            spent_cents=spent,
        )
