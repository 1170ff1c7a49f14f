from __future__ import annotations

from datetime import datetime, time
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from alerts import AlertCheckResult, AlertEngine
from models import (
    Account,
    AlertHistoryEntry,
    AlertType,
    Budget,
    Category,
    SpendingAlertRule,
    Transaction,
)
from recurrence import (
    RecurringScheduler,
    SweepResult,
    compute_next_occurrence,
    local_now,
    template_anchor,
)
from repository import SqlLedgerStore
from schemas import AlertRuleIn, RecurringTemplateIn


def get_current_user_id() -> int:
    return 1


class RecurringTemplateService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, template_id: int) -> Transaction:
        template = self.session.get(Transaction, template_id)
        if (
            not template
            or template.user_id != self.user_id
            or not template.is_recurring
        ):
            raise ValueError("Recurring transaction not found")
        return template

    def list(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.account))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.is_recurring.is_(True),
            )
            .order_by(Transaction.next_due_date, Transaction.id)
        )
        return self.session.scalars(stmt).all()

    def create(self, data: RecurringTemplateIn) -> Transaction:
        category = self.session.get(Category, data.category_id)
        if not category or category.user_id != self.user_id:
            raise ValueError("Category not found")
        if category.type != data.type:
            raise ValueError("Category type mismatch")
        account = self.session.get(Account, data.account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")

        occurred_at = data.occurred_at or datetime.combine(data.date, time.min)
        template = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            category_id=data.category_id,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            notes=data.notes,
            date=data.date,
            occurred_at=occurred_at,
            is_recurring=True,
            recurring_frequency=data.frequency.value,
            next_due_date=compute_next_occurrence(occurred_at, data.frequency),
        )
        self.session.add(template)
        self.session.commit()
        self.session.refresh(template)
        return template

    def skip_next(self, template_id: int) -> datetime:
        template = self.get(template_id)
        if template.next_due_date is None:
            raise ValueError("Recurring transaction has no scheduled occurrence")
        template.next_due_date = compute_next_occurrence(
            template.next_due_date, template.recurring_frequency
        )
        self.session.commit()
        return template.next_due_date

    def pause(self, template_id: int) -> None:
        template = self.get(template_id)
        template.recurring_paused = True
        self.session.commit()

    def resume(
        self, template_id: int, now: Optional[datetime] = None
    ) -> datetime:
        """Unpause a template without generating the cycles it missed.

        A stored due date is kept, including one moved by ``skip_next``; only a
        due date that already lies in the past is stepped forward, keeping its
        time of day, until it is after ``now``.
        """
        now = now or local_now()
        template = self.get(template_id)
        next_due = template.next_due_date
        if next_due is None:
            next_due = compute_next_occurrence(
                template_anchor(template), template.recurring_frequency
            )
        while next_due <= now:
            next_due = compute_next_occurrence(next_due, template.recurring_frequency)
        template.next_due_date = next_due
        template.recurring_paused = False
        self.session.commit()
        return template.next_due_date

    def delete(self, template_id: int) -> None:
        template = self.get(template_id)
        # Generated instances stay in the ledger as plain entries.
        self.session.execute(
            update(Transaction)
            .where(Transaction.parent_template_id == template.id)
            .values(parent_template_id=None)
        )
        self.session.delete(template)
        self.session.commit()

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        scheduler = RecurringScheduler(SqlLedgerStore(self.session))
        return scheduler.run_sweep(now)


class AlertService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_rules(self) -> list[SpendingAlertRule]:
        stmt = (
            select(SpendingAlertRule)
            .where(SpendingAlertRule.user_id == self.user_id)
            .order_by(SpendingAlertRule.id)
        )
        return self.session.scalars(stmt).all()

    def create_rule(self, data: AlertRuleIn) -> SpendingAlertRule:
        if data.budget_id is not None:
            budget = self.session.get(Budget, data.budget_id)
            if not budget or budget.user_id != self.user_id:
                raise ValueError("Budget not found")
        if data.category_id is not None:
            category = self.session.get(Category, data.category_id)
            if not category or category.user_id != self.user_id:
                raise ValueError("Category not found")
        rule = SpendingAlertRule(
            user_id=self.user_id,
            type=data.type,
            budget_id=data.budget_id,
            category_id=data.category_id,
            threshold=data.threshold,
            enabled=data.enabled,
        )
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def toggle(self, rule_id: int, enabled: bool) -> None:
        rule = self.session.get(SpendingAlertRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Alert rule not found")
        rule.enabled = enabled
        self.session.commit()

    def history(self, limit: int = 20) -> list[AlertHistoryEntry]:
        stmt = (
            select(AlertHistoryEntry)
            .where(AlertHistoryEntry.user_id == self.user_id)
            .order_by(AlertHistoryEntry.created_at.desc(), AlertHistoryEntry.id.desc())
            .limit(limit)
        )
        return self.session.scalars(stmt).all()

    def unread_count(self) -> int:
        stmt = select(func.count(AlertHistoryEntry.id)).where(
            AlertHistoryEntry.user_id == self.user_id,
            AlertHistoryEntry.is_read.is_(False),
        )
        return int(self.session.scalar(stmt) or 0)

    def mark_read(self, entry_id: int) -> None:
        entry = self.session.get(AlertHistoryEntry, entry_id)
        if not entry or entry.user_id != self.user_id:
            raise ValueError("Alert not found")
        entry.is_read = True
        self.session.commit()

    def bind_budget(self, rule_id: int, budget_id: int) -> SpendingAlertRule:
        rule = self.session.get(SpendingAlertRule, rule_id)
        if not rule or rule.user_id != self.user_id:
            raise ValueError("Alert rule not found")
        if rule.type != AlertType.budget_threshold:
            raise ValueError("Only budget threshold rules can be bound to a budget")
        budget = self.session.get(Budget, budget_id)
        if not budget or budget.user_id != self.user_id:
            raise ValueError("Budget not found")
        rule.budget_id = budget.id
        self.session.commit()
        return rule

    def initialize_defaults(self) -> list[SpendingAlertRule]:
        return AlertEngine(SqlLedgerStore(self.session)).initialize_default_alerts(
            self.user_id
        )

    def check(self, now: Optional[datetime] = None) -> AlertCheckResult:
        return AlertEngine(SqlLedgerStore(self.session)).run_sweep(self.user_id, now)
