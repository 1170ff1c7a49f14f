from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AlertType, Frequency, TransactionType


class RecurringTemplateIn(BaseModel):
    account_id: int
    category_id: int
    type: TransactionType
    amount_cents: int = Field(..., ge=0)
    description: Optional[str] = Field(default=None, max_length=200)
    notes: Optional[str] = None
    date: date
    occurred_at: Optional[datetime] = None
    frequency: Frequency


class AlertRuleIn(BaseModel):
    type: AlertType
    budget_id: Optional[int] = None
    category_id: Optional[int] = None
    threshold: Optional[Decimal] = Field(
        default=None, ge=0, le=999, max_digits=5, decimal_places=2
    )
    enabled: bool = True

    @model_validator(mode="after")
    def _budget_rules_need_threshold(self) -> "AlertRuleIn":
        if self.type == AlertType.budget_threshold and self.threshold is None:
            raise ValueError("Budget threshold rules require a threshold")
        return self


class BudgetAlertMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    budget_id: int
    budget_name: str
    spent_cents: int
    budget_amount_cents: int
    percentage: Decimal
    threshold: Decimal


class UnusualSpendingMetadata(BaseModel):
    model_config = ConfigDict(extra="forbid")

    today_spending_cents: int
    avg_daily_spending_cents: Decimal
    ratio: Decimal
    transaction_count: int
