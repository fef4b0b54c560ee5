import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timedelta

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

import recurrence
from database import Base, build_engine
from models import (
    Account,
    RecurringInterval,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from recurrence import (
    MaterializeOutcome,
    RecurringEngine,
    ScheduleState,
    find_due_templates,
    is_due,
    next_occurrence,
    schedule_state,
)
from schemas import TransactionIn
from services import AccountService, TransactionService, UserService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _seed(session):
    user = UserService(session).create("ada@example.com", "Ada")
    account = AccountService(session, user.id).create("Checking")
    return user, account


def _template(
    session,
    user_id: int,
    account_id: int,
    *,
    when: datetime = datetime(2024, 1, 31, 9, 0),
    interval: RecurringInterval = RecurringInterval.monthly,
    amount_cents: int = 120_000,
    description: str = "Rent",
) -> Transaction:
    return TransactionService(session, user_id).post(
        TransactionIn(
            account_id=account_id,
            type=TransactionType.expense,
            amount_cents=amount_cents,
            date=when,
            description=description,
            category="housing",
            is_recurring=True,
            recurring_interval=interval,
        )
    )


def _balance(session, account_id: int) -> int:
    return session.execute(
        select(Account.balance_cents).where(Account.id == account_id)
    ).scalar_one()


def _derived_count(session, template_id: int) -> int:
    return session.execute(
        select(func.count(Transaction.id)).where(
            Transaction.origin_template_id == template_id
        )
    ).scalar_one()


def test_next_occurrence_clamps_month_end_in_leap_year():
    assert next_occurrence(date(2024, 1, 31), RecurringInterval.monthly) == date(
        2024, 2, 29
    )


def test_next_occurrence_yearly_from_leap_day():
    assert next_occurrence(date(2024, 2, 29), RecurringInterval.yearly) == date(
        2025, 2, 28
    )


def test_next_occurrence_weekly_and_daily():
    assert next_occurrence(date(2024, 5, 15), RecurringInterval.weekly) == date(
        2024, 5, 22
    )
    assert next_occurrence(date(2024, 12, 31), RecurringInterval.daily) == date(
        2025, 1, 1
    )


def test_next_occurrence_keeps_time_and_rolls_year():
    start = datetime(2024, 12, 15, 18, 30)
    assert next_occurrence(start, RecurringInterval.monthly) == datetime(
        2025, 1, 15, 18, 30
    )


def test_due_boundary_is_inclusive():
    due_at = datetime(2024, 6, 1, 0, 0)
    template = Transaction(
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
        last_processed_date=datetime(2024, 5, 1, 0, 0),
        next_recurring_date=due_at,
    )
    assert is_due(template, due_at)
    assert not is_due(template, due_at - timedelta(microseconds=1))
    assert schedule_state(template, due_at) is ScheduleState.due
    assert (
        schedule_state(template, due_at - timedelta(microseconds=1))
        is ScheduleState.scheduled
    )


def test_never_processed_template_is_due():
    template = Transaction(
        is_recurring=True,
        recurring_interval=RecurringInterval.weekly,
        last_processed_date=None,
        next_recurring_date=datetime(2030, 1, 1),
    )
    assert is_due(template, datetime(2024, 1, 1))


def test_post_initializes_schedule_from_economic_date():
    session = make_session()
    user, account = _seed(session)
    template = _template(session, user.id, account.id)

    assert template.next_recurring_date == datetime(2024, 2, 29, 9, 0)
    assert template.last_processed_date is None
    assert _balance(session, account.id) == -120_000


def test_materialize_posts_once_and_advances_from_processing_time():
    session = make_session()
    user, account = _seed(session)
    template = _template(session, user.id, account.id)
    now = datetime(2024, 3, 10, 3, 0)

    engine = RecurringEngine(session)
    first = engine.materialize(template.id, user.id, now)
    second = engine.materialize(template.id, user.id, now)

    assert first.outcome == MaterializeOutcome.posted
    assert second.outcome == MaterializeOutcome.not_due
    assert _derived_count(session, template.id) == 1
    assert _balance(session, account.id) == -240_000

    derived = session.get(Transaction, first.derived_id)
    assert derived.description == "Rent (Recurring)"
    assert derived.is_recurring is False
    assert derived.date == now
    assert derived.occurrence_due_at == datetime(2024, 2, 29, 9, 0)

    session.refresh(template)
    assert template.last_processed_date == now
    # Missed occurrences are not backfilled; the next one follows processing time.
    assert template.next_recurring_date == datetime(2024, 4, 10, 3, 0)


def test_materialize_ignores_unknown_foreign_and_inactive_templates():
    session = make_session()
    user, account = _seed(session)
    other = UserService(session).create("bob@example.com", "Bob")
    template = _template(session, user.id, account.id)
    now = datetime(2024, 3, 1)
    engine = RecurringEngine(session)

    assert engine.materialize(9999, user.id, now).outcome == MaterializeOutcome.not_found
    assert (
        engine.materialize(template.id, other.id, now).outcome
        == MaterializeOutcome.not_found
    )

    template.status = TransactionStatus.pending
    session.commit()
    assert engine.materialize(template.id, user.id, now).outcome == MaterializeOutcome.inactive
    assert _derived_count(session, template.id) == 0
    assert _balance(session, account.id) == -120_000


def test_materialize_rolls_back_every_write_on_failure(monkeypatch):
    session = make_session()
    user, account = _seed(session)
    template = _template(session, user.id, account.id)

    def broken(value, interval):
        raise RuntimeError("calendar service down")

    monkeypatch.setattr("recurrence.next_occurrence", broken)
    with pytest.raises(RuntimeError):
        RecurringEngine(session).materialize(template.id, user.id, datetime(2024, 3, 1))

    assert _derived_count(session, template.id) == 0
    assert _balance(session, account.id) == -120_000
    session.refresh(template)
    assert template.last_processed_date is None
    assert template.next_recurring_date == datetime(2024, 2, 29, 9, 0)


def test_materialize_treats_existing_occurrence_as_duplicate():
    session = make_session()
    user, account = _seed(session)
    template = _template(session, user.id, account.id)
    session.add(
        Transaction(
            user_id=user.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=120_000,
            date=datetime(2024, 2, 29, 9, 0),
            description="Rent (Recurring)",
            category="housing",
            origin_template_id=template.id,
            occurrence_due_at=template.next_recurring_date,
        )
    )
    session.commit()

    result = RecurringEngine(session).materialize(
        template.id, user.id, datetime(2024, 3, 1)
    )

    assert result.outcome == MaterializeOutcome.duplicate
    assert _derived_count(session, template.id) == 1
    assert _balance(session, account.id) == -120_000


def test_scanner_selects_only_due_completed_templates():
    session = make_session()
    user, account = _seed(session)
    now = datetime(2024, 3, 1, 0, 0)

    fresh = _template(session, user.id, account.id, description="Gym")
    processed = _template(session, user.id, account.id, description="Phone")
    RecurringEngine(session).materialize(processed.id, user.id, now)
    pending = _template(session, user.id, account.id, description="Insurance")
    pending.status = TransactionStatus.pending
    marked = _template(
        session, user.id, account.id, description="Legacy (Recurring) import"
    )
    deleted = _template(session, user.id, account.id, description="Old lease")
    session.commit()
    TransactionService(session, user.id).soft_delete(deleted.id)
    TransactionService(session, user.id).post(
        TransactionIn(
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=500,
            date=datetime(2024, 2, 1),
            description="Coffee",
            category="food",
        )
    )

    due = find_due_templates(session, now)

    assert [t.template_id for t in due] == [fresh.id]
    assert due[0].user_id == user.id
    assert marked.id not in {t.template_id for t in due}

    later = find_due_templates(session, datetime(2024, 4, 1, 0, 0))
    assert [t.template_id for t in later] == [fresh.id, processed.id]


def test_concurrent_deliveries_post_one_occurrence(tmp_path, monkeypatch):
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    with factory() as session:
        user, account = _seed(session)
        template = _template(session, user.id, account.id, amount_cents=200)
        user_id, account_id, template_id = user.id, account.id, template.id

    # Both deliveries see the template as due before either one writes.
    barrier = threading.Barrier(2, timeout=5)
    gated = threading.local()
    real_schedule_state = recurrence.schedule_state

    def schedule_state_after_both_checked(template, now):
        state = real_schedule_state(template, now)
        if not getattr(gated, "passed", False):
            gated.passed = True
            barrier.wait()
        return state

    monkeypatch.setattr(recurrence, "schedule_state", schedule_state_after_both_checked)
    now = datetime(2024, 3, 1, 6, 0)

    def deliver():
        with factory() as session:
            return RecurringEngine(session).materialize(template_id, user_id, now)

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = [f.result() for f in [pool.submit(deliver), pool.submit(deliver)]]

    kinds = sorted(result.outcome.value for result in outcomes)
    assert kinds.count(MaterializeOutcome.posted.value) == 1
    assert set(kinds) - {MaterializeOutcome.posted.value} <= {
        MaterializeOutcome.not_due.value,
        MaterializeOutcome.duplicate.value,
    }
    with factory() as session:
        assert _derived_count(session, template_id) == 1
        assert _balance(session, account_id) == -400
        stored = session.get(Transaction, template_id)
        assert stored.last_processed_date == now
        assert stored.next_recurring_date == datetime(2024, 4, 1, 6, 0)
    engine.dispose()
