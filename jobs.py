"""Periodic jobs. Each one keeps store work in short sessions and talks to
external services (email, insights) only after those sessions are closed."""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import get_settings
from database import session_scope
from dispatcher import DispatchReport, Dispatcher
from errors import ExternalServiceError, NotFound
from insights import InsightService
from models import Budget
from notifications import EmailMessage, EmailRenderer, Mailer, send_with_retry
from periods import Period, is_new_month, local_now, month_to_date, previous_month
from recurrence import MaterializeResult, RecurringEngine, find_due_templates
from schemas import InsightRequest, RecurringTrigger
from services import AccountService, UserService, expenses_for_period, monthly_stats

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class RecurringSweep:
    def __init__(
        self,
        session_factory: Optional[SessionFactory] = None,
        dispatcher: Optional[Dispatcher] = None,
    ) -> None:
        self.session_factory = session_factory
        self.dispatcher = dispatcher or Dispatcher()

    def run(self, now: Optional[datetime] = None) -> DispatchReport:
        with session_scope(self.session_factory) as session:
            triggers = find_due_templates(session, now or local_now())
        logger.info(f"recurring_sweep: due_templates={len(triggers)}")
        return self.dispatcher.dispatch(triggers, lambda trigger: self.process(trigger, now))

    def process(
        self, trigger: RecurringTrigger, now: Optional[datetime] = None
    ) -> MaterializeResult:
        with session_scope(self.session_factory) as session:
            return RecurringEngine(session).materialize(
                trigger.template_id, trigger.user_id, now
            )


@dataclass
class BudgetEvaluation:
    budget_id: int
    user_id: Optional[int] = None
    percentage_used: Optional[float] = None
    alert_sent: bool = False
    skipped_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class _BudgetSnapshot:
    budget_id: int
    user_id: int
    email: str
    user_name: str
    account_name: str
    amount_cents: int
    spent_cents: int
    last_alert_sent: Optional[datetime]


class BudgetMonitor:
    def __init__(
        self,
        mailer: Mailer,
        *,
        session_factory: Optional[SessionFactory] = None,
        renderer: Optional[EmailRenderer] = None,
        threshold_pct: Optional[float] = None,
        email_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        settings = get_settings()
        self.mailer = mailer
        self.session_factory = session_factory
        self.renderer = renderer or EmailRenderer()
        self.threshold_pct = (
            settings.budget_alert_threshold_pct if threshold_pct is None else threshold_pct
        )
        self.email_attempts = email_attempts
        self._sleep = sleep

    def run(self, now: Optional[datetime] = None) -> list[BudgetEvaluation]:
        now = now or local_now()
        with session_scope(self.session_factory) as session:
            budget_ids = list(session.scalars(select(Budget.id).order_by(Budget.id)))
        results: list[BudgetEvaluation] = []
        for budget_id in budget_ids:
            try:
                results.append(self.evaluate(budget_id, now))
            except Exception as exc:
                logger.error(f"budget_check_failed: budget_id={budget_id} error={exc!r}")
                results.append(BudgetEvaluation(budget_id=budget_id, error=repr(exc)))
        alerts = sum(1 for r in results if r.alert_sent)
        logger.info(f"budget_check: budgets={len(results)} alerts_sent={alerts}")
        return results

    def evaluate(self, budget_id: int, now: datetime) -> BudgetEvaluation:
        snapshot = self._snapshot(budget_id, now)
        if isinstance(snapshot, BudgetEvaluation):
            return snapshot

        percentage_used = snapshot.spent_cents / snapshot.amount_cents * 100
        evaluation = BudgetEvaluation(
            budget_id=budget_id,
            user_id=snapshot.user_id,
            percentage_used=percentage_used,
        )
        if percentage_used < self.threshold_pct:
            return evaluation
        if not is_new_month(snapshot.last_alert_sent, now):
            evaluation.skipped_reason = "already_alerted_this_month"
            return evaluation

        message = EmailMessage(
            to=snapshot.email,
            subject=f"Budget Alert for {snapshot.account_name}",
            body=self.renderer.render(
                "emails/budget_alert.html",
                user_name=snapshot.user_name,
                percentage_used=percentage_used,
                budget_cents=snapshot.amount_cents,
                spent_cents=snapshot.spent_cents,
                account_name=snapshot.account_name,
            ),
        )
        try:
            send_with_retry(
                self.mailer, message, max_attempts=self.email_attempts, sleep=self._sleep
            )
        except ExternalServiceError as exc:
            evaluation.error = str(exc)
            return evaluation

        # Two overlapping runs may both reach this point; at most one extra
        # alert per month is tolerated.
        with session_scope(self.session_factory) as session:
            session.execute(
                update(Budget).where(Budget.id == budget_id).values(last_alert_sent=now)
            )
        evaluation.alert_sent = True
        logger.info(
            f"budget_alert_sent: budget_id={budget_id} user_id={snapshot.user_id}"
            f" percentage_used={percentage_used:.1f}"
        )
        return evaluation

    def _snapshot(self, budget_id: int, now: datetime):
        with session_scope(self.session_factory) as session:
            budget = session.get(Budget, budget_id)
            if budget is None:
                raise NotFound("Budget not found")
            account = AccountService(session, budget.user_id).default_account()
            if account is None:
                return BudgetEvaluation(
                    budget_id=budget_id,
                    user_id=budget.user_id,
                    skipped_reason="no_default_account",
                )
            return _BudgetSnapshot(
                budget_id=budget.id,
                user_id=budget.user_id,
                email=budget.user.email,
                user_name=budget.user.name or budget.user.email,
                account_name=account.name,
                amount_cents=budget.amount_cents,
                spent_cents=expenses_for_period(session, account.id, month_to_date(now)),
                last_alert_sent=budget.last_alert_sent,
            )


@dataclass
class ReportRunSummary:
    month: str
    sent: list[int] = field(default_factory=list)
    failed: dict[int, str] = field(default_factory=dict)


class MonthlyReportGenerator:
    def __init__(
        self,
        mailer: Mailer,
        insight_service: InsightService,
        *,
        session_factory: Optional[SessionFactory] = None,
        renderer: Optional[EmailRenderer] = None,
        email_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.mailer = mailer
        self.insight_service = insight_service
        self.session_factory = session_factory
        self.renderer = renderer or EmailRenderer()
        self.email_attempts = email_attempts
        self._sleep = sleep

    def run(self, now: Optional[datetime] = None) -> ReportRunSummary:
        period = previous_month(now or local_now())
        with session_scope(self.session_factory) as session:
            recipients = [
                (user.id, user.email, user.name or user.email)
                for user in UserService(session).list_all()
            ]
        summary = ReportRunSummary(month=period.label)
        for user_id, email, name in recipients:
            try:
                self.report_for(user_id, email, name, period)
            except Exception as exc:
                logger.error(
                    f"monthly_report_failed: user_id={user_id} month={period.label!r}"
                    f" error={exc!r}"
                )
                summary.failed[user_id] = repr(exc)
            else:
                summary.sent.append(user_id)
        logger.info(
            f"monthly_reports: month={period.label!r} sent={len(summary.sent)}"
            f" failed={len(summary.failed)}"
        )
        return summary

    def report_for(
        self, user_id: int, email: str, name: str, period: Period
    ) -> EmailMessage:
        with session_scope(self.session_factory) as session:
            stats = monthly_stats(session, user_id, period)
        insights = self.insight_service.insights_for(
            InsightRequest.from_stats(period.label, stats)
        )
        message = EmailMessage(
            to=email,
            subject=f"Your Monthly Financial Report - {period.label}",
            body=self.renderer.render(
                "emails/monthly_report.html",
                user_name=name,
                month=period.label,
                stats=stats,
                insights=insights,
            ),
        )
        send_with_retry(
            self.mailer, message, max_attempts=self.email_attempts, sleep=self._sleep
        )
        return message
