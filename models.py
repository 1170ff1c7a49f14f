from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"


class Frequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    yearly = "yearly"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    investment = "investment"
    cash = "cash"
    other = "other"


class BudgetPeriod(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    yearly = "yearly"


class AlertType(str, Enum):
    budget_threshold = "budget_threshold"
    unusual_spending = "unusual_spending"
    goal_milestone = "goal_milestone"
    recurring_due = "recurring_due"


class AlertSeverity(str, Enum):
    info = "info"
    warning = "warning"
    critical = "critical"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    color: Mapped[Optional[str]] = mapped_column(String(7))

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    """A ledger entry.

    Rows with ``is_recurring`` set are templates: the recurring scheduler reads
    them and materialises one concrete row per due cycle, linked back through
    ``parent_template_id``. ``recurring_frequency`` is kept as plain text so a
    bad value shows up as a failed sweep item instead of a load error.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    date: Mapped[date] = mapped_column(Date, nullable=False)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    recurring_frequency: Mapped[Optional[str]] = mapped_column(String(16))
    recurring_paused: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    last_generated_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    next_due_date: Mapped[Optional[datetime]] = mapped_column(DateTime)

    parent_template_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id")
    )
    occurrence_due_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_projected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    account: Mapped["Account"] = relationship("Account", back_populates="transactions")
    category: Mapped["Category"] = relationship(
        "Category", back_populates="transactions"
    )
    parent_template: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", remote_side=[id], back_populates="generated_instances"
    )
    generated_instances: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="parent_template"
    )

    __table_args__ = (
        UniqueConstraint(
            "parent_template_id",
            "occurrence_due_at",
            name="uq_txn_template_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_user_type_date", "user_id", "type", "date"),
        Index("ix_transactions_recurring_due", "is_recurring", "next_due_date"),
        CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        CheckConstraint(
            "NOT is_recurring OR recurring_frequency IS NOT NULL",
            name="ck_transactions_recurring_frequency",
        ),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[Optional[str]] = mapped_column(String(120))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[BudgetPeriod] = mapped_column(
        SAEnum(BudgetPeriod), nullable=False, default=BudgetPeriod.monthly
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        return self.category.name if self.category else f"Budget #{self.id}"

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        Index("ix_budget_user_category", "user_id", "category_id"),
    )


class SpendingAlertRule(Base):
    __tablename__ = "spending_alert_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[AlertType] = mapped_column(SAEnum(AlertType), nullable=False)
    budget_id: Mapped[Optional[int]] = mapped_column(ForeignKey("budgets.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_triggered_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    budget: Mapped[Optional["Budget"]] = relationship("Budget")

    __table_args__ = (Index("ix_alert_rules_user_enabled", "user_id", "enabled"),)


class AlertHistoryEntry(Base):
    __tablename__ = "alert_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_alert_rules.id")
    )
    type: Mapped[AlertType] = mapped_column(SAEnum(AlertType), nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        SAEnum(AlertSeverity), nullable=False, default=AlertSeverity.info
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # "metadata" is reserved on declarative classes.
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_alert_history_user_created", "user_id", "created_at"),
        Index("ix_alert_history_user_read", "user_id", "is_read"),
    )
