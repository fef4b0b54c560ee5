import logging
from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Optional, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from balances import apply_balance_delta, signed_amount
from database import run_atomic
from models import (
    DERIVED_MARKER,
    RecurringInterval,
    Transaction,
    TransactionStatus,
)
from periods import local_now
from schemas import RecurringTrigger

logger = logging.getLogger(__name__)

D = TypeVar("D", bound=date)


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def add_months(value: D, months: int) -> D:
    """Shift by whole calendar months, clamping the day to the target month's end.

    Works for both ``date`` and ``datetime``; the time of day is kept.
    """
    total_months = value.month - 1 + months
    year = value.year + total_months // 12
    month = total_months % 12 + 1
    day = min(value.day, days_in_month(year, month))
    return value.replace(year=year, month=month, day=day)


def next_occurrence(value: D, interval: RecurringInterval) -> D:
    if interval == RecurringInterval.daily:
        return value + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return value + timedelta(days=7)
    if interval == RecurringInterval.monthly:
        return add_months(value, 1)
    if interval == RecurringInterval.yearly:
        return add_months(value, 12)
    raise ValueError(f"Unknown recurring interval: {interval!r}")


class ScheduleState(str, Enum):
    scheduled = "SCHEDULED"
    due = "DUE"


def is_due(template: Transaction, now) -> bool:
    if template.last_processed_date is None:
        return True
    return template.next_recurring_date is not None and template.next_recurring_date <= now


def schedule_state(template: Transaction, now) -> ScheduleState:
    return ScheduleState.due if is_due(template, now) else ScheduleState.scheduled


def find_due_templates(session: Session, now=None) -> list[RecurringTrigger]:
    """Enumerate templates whose next occurrence has arrived. Read-only."""
    now = now or local_now()
    stmt = (
        select(Transaction.id, Transaction.user_id)
        .where(
            Transaction.is_recurring.is_(True),
            Transaction.status == TransactionStatus.completed,
            Transaction.deleted_at.is_(None),
            ~Transaction.description.contains(DERIVED_MARKER, autoescape=True),
            or_(
                Transaction.last_processed_date.is_(None),
                Transaction.next_recurring_date <= now,
            ),
        )
        .order_by(Transaction.id)
    )
    return [
        RecurringTrigger(template_id=row.id, user_id=row.user_id)
        for row in session.execute(stmt)
    ]


class MaterializeOutcome(str, Enum):
    posted = "posted"
    not_found = "not_found"
    inactive = "inactive"
    not_due = "not_due"
    duplicate = "duplicate"


@dataclass(frozen=True)
class MaterializeResult:
    outcome: MaterializeOutcome
    template_id: int
    derived_id: Optional[int] = None


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def materialize(
        self, template_id: int, user_id: int, now=None
    ) -> MaterializeResult:
        now = now or local_now()
        try:
            result = run_atomic(
                self.session,
                lambda: self._materialize_once(template_id, user_id, now),
            )
        except IntegrityError as exc:
            if "occurrence_due_at" not in str(exc.orig):
                raise
            # Another delivery already posted this (template, due date) pair.
            result = MaterializeResult(MaterializeOutcome.duplicate, template_id)
        logger.info(
            f"materialize: template_id={template_id} outcome={result.outcome.value}"
            f" derived_id={result.derived_id}"
        )
        return result

    def _materialize_once(
        self, template_id: int, user_id: int, now
    ) -> MaterializeResult:
        # Re-validated inside the unit that writes, so a repeated trigger sees
        # the schedule already advanced.
        template = self.session.get(
            Transaction, template_id, populate_existing=True, with_for_update=True
        )
        if (
            template is None
            or template.user_id != user_id
            or template.deleted_at is not None
        ):
            return MaterializeResult(MaterializeOutcome.not_found, template_id)
        if not template.is_recurring or template.status != TransactionStatus.completed:
            return MaterializeResult(MaterializeOutcome.inactive, template_id)
        if schedule_state(template, now) is not ScheduleState.due:
            return MaterializeResult(MaterializeOutcome.not_due, template_id)

        derived = Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            type=template.type,
            amount_cents=template.amount_cents,
            date=now,
            description=f"{template.description} {DERIVED_MARKER}".strip(),
            category=template.category,
            status=TransactionStatus.completed,
            is_recurring=False,
            origin_template_id=template.id,
            occurrence_due_at=template.next_recurring_date,
        )
        self.session.add(derived)
        apply_balance_delta(
            self.session,
            template.account_id,
            signed_amount(template.type, template.amount_cents),
        )
        template.last_processed_date = now
        template.next_recurring_date = next_occurrence(now, template.recurring_interval)
        self.session.flush()
        return MaterializeResult(MaterializeOutcome.posted, template_id, derived.id)
