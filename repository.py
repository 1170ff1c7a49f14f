"""Ledger store contract used by the recurring scheduler and the alert engine.

The engines only talk to a :class:`LedgerStore`; :class:`SqlLedgerStore` is the
SQLAlchemy implementation over a single session. Each call to :meth:`atomic`
is one database transaction, so a sweep item either fully lands or leaves no
trace.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import date, datetime
from typing import ContextManager, Iterator, Optional, Protocol, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from models import (
    AlertHistoryEntry,
    Budget,
    SpendingAlertRule,
    Transaction,
    TransactionType,
)


class LedgerUnavailableError(RuntimeError):
    """The ledger store could not be queried at all.

    ``result`` holds the zero-count result of the sweep that was aborted.
    """

    def __init__(self, message: str, result: object = None) -> None:
        super().__init__(message)
        self.result = result


class LedgerStore(Protocol):
    def atomic(self) -> ContextManager["LedgerStore"]: ...

    def list_due_recurring_templates(self, now: datetime) -> list[Transaction]: ...

    def list_uninitialized_templates(self) -> list[Transaction]: ...

    def lock_template(self, template_id: int) -> Optional[Transaction]: ...

    def insert_transaction(self, instance: Transaction) -> int: ...

    def update_template(
        self,
        template_id: int,
        *,
        expected_next_due: Optional[datetime],
        last_generated_date: datetime,
        next_due_date: datetime,
    ) -> bool: ...

    def set_next_due_date(self, template_id: int, next_due_date: datetime) -> bool: ...

    def list_enabled_alert_rules(self, user_id: int) -> list[SpendingAlertRule]: ...

    def list_users_with_enabled_rules(self) -> list[int]: ...

    def get_budget(self, user_id: int, budget_id: int) -> Optional[Budget]: ...

    def sum_expenses(
        self, user_id: int, category_id: int, start: date, end: date
    ) -> int: ...

    def list_recent_expenses(self, user_id: int, since: date) -> list[Transaction]: ...

    def insert_alert_history(self, entry: AlertHistoryEntry) -> int: ...

    def insert_alert_rules(self, rules: Sequence[SpendingAlertRule]) -> None: ...

    def update_alert_rule(self, rule_id: int, last_triggered_at: datetime) -> None: ...


class SqlLedgerStore:
    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def atomic(self) -> Iterator["SqlLedgerStore"]:
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def list_due_recurring_templates(self, now: datetime) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.recurring_frequency.is_not(None),
                Transaction.recurring_paused.is_(False),
                (
                    Transaction.next_due_date.is_(None)
                    | (Transaction.next_due_date <= now)
                ),
            )
            .order_by(Transaction.next_due_date, Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_uninitialized_templates(self) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.recurring_frequency.is_not(None),
                Transaction.next_due_date.is_(None),
            )
            .order_by(Transaction.id)
        )
        return list(self.session.scalars(stmt).all())

    def lock_template(self, template_id: int) -> Optional[Transaction]:
        # FOR UPDATE is dropped by backends without row locks (SQLite); the
        # compare-and-swap in update_template still guards those.
        stmt = (
            select(Transaction)
            .where(Transaction.id == template_id, Transaction.is_recurring.is_(True))
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return self.session.scalar(stmt)

    def insert_transaction(self, instance: Transaction) -> int:
        self.session.add(instance)
        self.session.flush()
        return instance.id

    def update_template(
        self,
        template_id: int,
        *,
        expected_next_due: Optional[datetime],
        last_generated_date: datetime,
        next_due_date: datetime,
    ) -> bool:
        if expected_next_due is None:
            guard = Transaction.next_due_date.is_(None)
        else:
            guard = Transaction.next_due_date == expected_next_due
        stmt = (
            update(Transaction)
            .where(Transaction.id == template_id, guard)
            .values(
                last_generated_date=last_generated_date,
                next_due_date=next_due_date,
            )
        )
        result = self.session.execute(stmt)
        return result.rowcount == 1

    def set_next_due_date(self, template_id: int, next_due_date: datetime) -> bool:
        stmt = (
            update(Transaction)
            .where(Transaction.id == template_id, Transaction.next_due_date.is_(None))
            .values(next_due_date=next_due_date)
        )
        return self.session.execute(stmt).rowcount == 1

    def list_enabled_alert_rules(self, user_id: int) -> list[SpendingAlertRule]:
        stmt = (
            select(SpendingAlertRule)
            .where(
                SpendingAlertRule.user_id == user_id,
                SpendingAlertRule.enabled.is_(True),
            )
            .order_by(SpendingAlertRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def list_users_with_enabled_rules(self) -> list[int]:
        stmt = (
            select(SpendingAlertRule.user_id)
            .where(SpendingAlertRule.enabled.is_(True))
            .distinct()
            .order_by(SpendingAlertRule.user_id)
        )
        return list(self.session.scalars(stmt).all())

    def get_budget(self, user_id: int, budget_id: int) -> Optional[Budget]:
        stmt = (
            select(Budget)
            .options(joinedload(Budget.category))
            .where(Budget.id == budget_id, Budget.user_id == user_id)
        )
        return self.session.scalar(stmt)

    def sum_expenses(
        self, user_id: int, category_id: int, start: date, end: date
    ) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == user_id,
            Transaction.category_id == category_id,
            Transaction.type == TransactionType.expense,
            Transaction.date.between(start, end),
        )
        return int(self.session.scalar(stmt) or 0)

    def list_recent_expenses(self, user_id: int, since: date) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.user_id == user_id,
                Transaction.type == TransactionType.expense,
                Transaction.date >= since,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def insert_alert_history(self, entry: AlertHistoryEntry) -> int:
        self.session.add(entry)
        self.session.flush()
        return entry.id

    def insert_alert_rules(self, rules: Sequence[SpendingAlertRule]) -> None:
        self.session.add_all(list(rules))
        self.session.flush()

    def update_alert_rule(self, rule_id: int, last_triggered_at: datetime) -> None:
        self.session.execute(
            update(SpendingAlertRule)
            .where(SpendingAlertRule.id == rule_id)
            .values(last_triggered_at=last_triggered_at)
        )
