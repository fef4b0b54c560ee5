from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from config import get_settings
from errors import ValidationError
from models import RecurringInterval, TransactionStatus, TransactionType


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    date: datetime
    description: str = Field(default="", max_length=200)
    category: str = Field(..., min_length=1, max_length=100)
    status: TransactionStatus = TransactionStatus.completed
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @field_validator("date")
    @classmethod
    def _to_local_naive(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value
        tz = ZoneInfo(get_settings().timezone)
        return value.astimezone(tz).replace(tzinfo=None)

    @model_validator(mode="after")
    def _check_schedule(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError("Recurring transactions require a recurring_interval")
        if not self.is_recurring and self.recurring_interval is not None:
            raise ValueError("recurring_interval is only allowed on recurring transactions")
        return self


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount_cents: int
    date: datetime
    description: str
    category: str
    status: TransactionStatus
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[datetime]
    last_processed_date: Optional[datetime]
    origin_template_id: Optional[int]
    deleted_at: Optional[datetime]


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class RecurringTrigger(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    template_id: int
    user_id: int


class MonthlyStats(BaseModel):
    total_income_cents: int = 0
    total_expense_cents: int = 0
    transaction_count: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)

    @property
    def net_cents(self) -> int:
        return self.total_income_cents - self.total_expense_cents


class InsightRequest(BaseModel):
    month: str
    total_income: float
    total_expenses: float
    net: float
    by_category: dict[str, float] = Field(default_factory=dict)

    @classmethod
    def from_stats(cls, month: str, stats: MonthlyStats) -> "InsightRequest":
        return cls(
            month=month,
            total_income=stats.total_income_cents / 100,
            total_expenses=stats.total_expense_cents / 100,
            net=stats.net_cents / 100,
            by_category={
                name: cents / 100 for name, cents in stats.by_category.items()
            },
        )


def _field_errors(exc: PydanticValidationError) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = defaultdict(list)
    for err in exc.errors():
        field = ".".join(str(part) for part in err["loc"]) or "__root__"
        errors[field].append(err["msg"])
    return dict(errors)


def parse_transaction_draft(
    raw: Union[TransactionIn, dict[str, Any]],
) -> TransactionIn:
    if isinstance(raw, TransactionIn):
        return raw
    try:
        return TransactionIn.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid transaction", _field_errors(exc)) from exc
