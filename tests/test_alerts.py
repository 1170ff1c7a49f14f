import json
import logging
from datetime import date, datetime, time, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, delete, select
from sqlalchemy.orm import Session

from alerts import AlertEngine
from config import get_settings
from database import Base
from models import (
    Account,
    AccountType,
    AlertHistoryEntry,
    AlertSeverity,
    AlertType,
    Budget,
    Category,
    SpendingAlertRule,
    Transaction,
    TransactionType,
)
from repository import SqlLedgerStore


NOW = datetime(2024, 3, 20, 18, 30)
TODAY = NOW.date()


def _engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return engine


def _seed(session: Session) -> tuple[Account, Category]:
    account = Account(user_id=1, name="Checking", type=AccountType.checking)
    groceries = Category(user_id=1, name="Groceries", type=TransactionType.expense)
    session.add_all([account, groceries])
    session.flush()
    return account, groceries


def _expense(
    account: Account,
    category: Category,
    cents: int,
    on: date,
    type: TransactionType = TransactionType.expense,
) -> Transaction:
    return Transaction(
        user_id=1,
        account_id=account.id,
        category_id=category.id,
        date=on,
        occurred_at=datetime.combine(on, time(12, 0)),
        type=type,
        amount_cents=cents,
        description="Supermarket",
    )


def _budget_rule(session: Session, category: Category):
    budget = Budget(
        user_id=1,
        category_id=category.id,
        name="Groceries March",
        amount_cents=100_000,
        start_date=date(2024, 3, 1),
        end_date=date(2024, 3, 31),
    )
    session.add(budget)
    session.flush()
    rule = SpendingAlertRule(
        user_id=1,
        type=AlertType.budget_threshold,
        budget_id=budget.id,
        threshold=Decimal("80.00"),
        enabled=True,
    )
    session.add(rule)
    session.commit()
    return budget, rule


def _history(session: Session) -> list[AlertHistoryEntry]:
    return session.scalars(select(AlertHistoryEntry).order_by(AlertHistoryEntry.id)).all()


@pytest.mark.parametrize(
    "spent_cents, expected",
    [
        (79_999, None),
        (80_000, AlertSeverity.info),
        (89_999, AlertSeverity.info),
        (90_000, AlertSeverity.warning),
        (100_000, AlertSeverity.critical),
        (130_000, AlertSeverity.critical),
    ],
)
def test_budget_threshold_boundaries(spent_cents, expected):
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        session.add(_expense(account, groceries, spent_cents, date(2024, 3, 10)))
        _budget, rule = _budget_rule(session, groceries)

        alert = AlertEngine(SqlLedgerStore(session)).check_budget_threshold(rule, NOW)

        if expected is None:
            assert alert is None
            assert _history(session) == []
            assert session.get(SpendingAlertRule, rule.id).last_triggered_at is None
        else:
            assert alert.severity == expected
            entries = _history(session)
            assert len(entries) == 1
            assert entries[0].severity == expected
            assert session.get(SpendingAlertRule, rule.id).last_triggered_at == NOW


def test_budget_threshold_alert_content():
    engine = _engine()
    symbol = get_settings().currency_symbol
    with Session(engine) as session:
        account, groceries = _seed(session)
        session.add(_expense(account, groceries, 50_000, date(2024, 3, 2)))
        session.add(_expense(account, groceries, 30_000, date(2024, 3, 31)))
        budget, rule = _budget_rule(session, groceries)

        alert = AlertEngine(SqlLedgerStore(session)).check_budget_threshold(rule, NOW)

        assert alert.type == AlertType.budget_threshold
        assert alert.title == "Budget Alert: Groceries March"
        assert alert.message == (
            f"You've spent {symbol}800.00 (80%) of your {symbol}1,000.00 "
            "budget for Groceries March."
        )

        entry = _history(session)[0]
        assert entry.user_id == 1
        assert entry.rule_id == rule.id
        assert entry.is_read is False
        assert entry.created_at == NOW
        metadata = json.loads(entry.metadata_json)
        assert metadata["budget_id"] == budget.id
        assert metadata["budget_name"] == "Groceries March"
        assert metadata["spent_cents"] == 80_000
        assert metadata["budget_amount_cents"] == 100_000
        assert Decimal(metadata["percentage"]) == Decimal("80")


def test_budget_threshold_only_counts_matching_expenses():
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        dining = Category(user_id=1, name="Dining", type=TransactionType.expense)
        salary = Category(user_id=1, name="Salary", type=TransactionType.income)
        session.add_all([dining, salary])
        session.flush()
        session.add_all(
            [
                _expense(account, groceries, 70_000, date(2024, 3, 5)),
                _expense(account, dining, 50_000, date(2024, 3, 5)),
                _expense(
                    account, groceries, 50_000, date(2024, 3, 6), TransactionType.income
                ),
                _expense(account, groceries, 50_000, date(2024, 2, 29)),
                _expense(account, groceries, 50_000, date(2024, 4, 1)),
            ]
        )
        _budget, rule = _budget_rule(session, groceries)

        assert AlertEngine(SqlLedgerStore(session)).check_budget_threshold(rule, NOW) is None


def test_budget_threshold_without_end_date_runs_to_today():
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        session.add(_expense(account, groceries, 85_000, TODAY))
        session.add(_expense(account, groceries, 85_000, TODAY + timedelta(days=1)))
        budget, rule = _budget_rule(session, groceries)
        budget.end_date = None
        session.commit()

        alert = AlertEngine(SqlLedgerStore(session)).check_budget_threshold(rule, NOW)
        assert alert.severity == AlertSeverity.info


def test_budget_threshold_fires_again_on_every_sweep():
    # No deduplication window: an unchanged overspend is reported each time.
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        session.add(_expense(account, groceries, 95_000, date(2024, 3, 3)))
        _budget, rule = _budget_rule(session, groceries)

        alert_engine = AlertEngine(SqlLedgerStore(session))
        alert_engine.check_budget_threshold(rule, NOW)
        alert_engine.check_budget_threshold(rule, NOW + timedelta(minutes=5))

        entries = _history(session)
        assert len(entries) == 2
        assert {e.severity for e in entries} == {AlertSeverity.warning}


def test_budget_rule_without_budget_is_a_logged_noop(caplog):
    engine = _engine()
    with Session(engine) as session:
        rule = SpendingAlertRule(
            user_id=1,
            type=AlertType.budget_threshold,
            threshold=Decimal("80.00"),
            enabled=True,
        )
        session.add(rule)
        session.commit()

        with caplog.at_level(logging.WARNING, logger="alerts"):
            alert = AlertEngine(SqlLedgerStore(session)).check_budget_threshold(
                rule, NOW
            )

        assert alert is None
        assert _history(session) == []
        assert "alert_rule_misconfigured" in caplog.text


def test_budget_rule_pointing_at_missing_budget_is_a_noop(caplog):
    engine = _engine()
    with Session(engine) as session:
        rule = SpendingAlertRule(
            user_id=1,
            type=AlertType.budget_threshold,
            budget_id=999,
            threshold=Decimal("50.00"),
            enabled=True,
        )
        session.add(rule)
        session.commit()

        with caplog.at_level(logging.WARNING, logger="alerts"):
            assert (
                AlertEngine(SqlLedgerStore(session)).check_budget_threshold(rule, NOW)
                is None
            )
        assert "budget 999 not found" in caplog.text


def _spending_history(session: Session, today_cents: int, *, past_count: int = 9):
    account, groceries = _seed(session)
    # Nine earlier expenses totalling 2800.00; with today's 200.00 the 30 day
    # total is 3000.00, an average of 100.00 a day.
    past = [30_000] * (past_count - 1) + [280_000 - 30_000 * (past_count - 1)]
    for offset, cents in enumerate(past, start=1):
        session.add(_expense(account, groceries, cents, TODAY - timedelta(days=offset)))
    session.add(_expense(account, groceries, today_cents, TODAY))
    rule = SpendingAlertRule(user_id=1, type=AlertType.unusual_spending, enabled=True)
    session.add(rule)
    session.commit()
    return rule


def test_unusual_spending_at_exactly_twice_the_average_does_not_fire():
    engine = _engine()
    with Session(engine) as session:
        rule = _spending_history(session, 20_000)
        assert AlertEngine(SqlLedgerStore(session)).check_unusual_spending(rule, NOW) is None
        assert _history(session) == []


def test_unusual_spending_above_twice_the_average_fires():
    engine = _engine()
    with Session(engine) as session:
        rule = _spending_history(session, 20_001)

        alert = AlertEngine(SqlLedgerStore(session)).check_unusual_spending(rule, NOW)

        assert alert.severity == AlertSeverity.warning
        assert alert.title == "Unusual Spending Detected"
        entry = _history(session)[0]
        assert entry.type == AlertType.unusual_spending
        metadata = json.loads(entry.metadata_json)
        assert metadata["today_spending_cents"] == 20_001
        assert Decimal(metadata["avg_daily_spending_cents"]) == Decimal("10000.03")
        assert Decimal(metadata["ratio"]) == Decimal("2.00")
        assert metadata["transaction_count"] == 10
        assert session.get(SpendingAlertRule, rule.id).last_triggered_at == NOW


def test_unusual_spending_needs_ten_transactions():
    engine = _engine()
    with Session(engine) as session:
        rule = _spending_history(session, 500_000, past_count=8)
        assert AlertEngine(SqlLedgerStore(session)).check_unusual_spending(rule, NOW) is None


def test_unusual_spending_ignores_expenses_outside_the_window():
    engine = _engine()
    with Session(engine) as session:
        rule = _spending_history(session, 20_001)
        account = session.scalars(select(Account)).first()
        category = session.scalars(select(Category)).first()
        session.add(_expense(account, category, 900_000, TODAY - timedelta(days=31)))
        session.commit()

        assert AlertEngine(SqlLedgerStore(session)).check_unusual_spending(rule, NOW) is not None


@pytest.mark.parametrize("days_ago, fires", [(29, True), (30, False)])
def test_unusual_spending_window_is_thirty_days_including_today(days_ago, fires):
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        for offset in range(1, 9):
            session.add(
                _expense(account, groceries, 1_000, TODAY - timedelta(days=offset))
            )
        session.add(_expense(account, groceries, 500_000, TODAY))
        session.add(
            _expense(account, groceries, 1_000, TODAY - timedelta(days=days_ago))
        )
        rule = SpendingAlertRule(user_id=1, type=AlertType.unusual_spending)
        session.add(rule)
        session.commit()

        alert = AlertEngine(SqlLedgerStore(session)).check_unusual_spending(rule, NOW)

        assert (alert is not None) is fires


def test_unusual_spending_fires_again_on_the_same_day():
    engine = _engine()
    with Session(engine) as session:
        rule = _spending_history(session, 50_000)
        alert_engine = AlertEngine(SqlLedgerStore(session))
        alert_engine.check_unusual_spending(rule, NOW)
        alert_engine.check_unusual_spending(rule, NOW + timedelta(hours=1))
        assert len(_history(session)) == 2


def test_run_sweep_dispatches_and_isolates_rules(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        account, groceries = _seed(session)
        session.add(_expense(account, groceries, 100_000, date(2024, 3, 3)))
        _budget, budget_rule = _budget_rule(session, groceries)
        session.add_all(
            [
                SpendingAlertRule(user_id=1, type=AlertType.unusual_spending),
                SpendingAlertRule(user_id=1, type=AlertType.goal_milestone),
                SpendingAlertRule(user_id=1, type=AlertType.recurring_due),
                SpendingAlertRule(
                    user_id=1,
                    type=AlertType.budget_threshold,
                    budget_id=budget_rule.budget_id,
                    threshold=Decimal("10"),
                    enabled=False,
                ),
                SpendingAlertRule(
                    user_id=2,
                    type=AlertType.budget_threshold,
                    budget_id=budget_rule.budget_id,
                    threshold=Decimal("10"),
                ),
            ]
        )
        session.commit()

        def broken_check(self, rule, now=None):
            raise RuntimeError("boom")

        monkeypatch.setattr(AlertEngine, "check_unusual_spending", broken_check)

        result = AlertEngine(SqlLedgerStore(session)).run_sweep(1, NOW)

        assert result.user_id == 1
        assert result.triggered == 1
        assert result.errors == 1
        assert [a.severity for a in result.alerts] == [AlertSeverity.critical]
        entries = _history(session)
        assert len(entries) == 1
        assert entries[0].rule_id == budget_rule.id


def test_run_sweep_survives_a_rule_deleted_mid_sweep(monkeypatch):
    engine = _engine()
    with Session(engine) as session:
        first = SpendingAlertRule(user_id=1, type=AlertType.unusual_spending)
        second = SpendingAlertRule(user_id=1, type=AlertType.unusual_spending)
        session.add_all([first, second])
        session.commit()
        second_id = second.id
        alert_engine = AlertEngine(SqlLedgerStore(session))
        check_rule = alert_engine.check_rule
        calls = []

        def delete_second_then_fail(rule, now=None):
            if calls:
                return check_rule(rule, now)
            calls.append(rule)
            session.execute(
                delete(SpendingAlertRule).where(SpendingAlertRule.id == second_id),
                execution_options={"synchronize_session": False},
            )
            # Committing expires the loaded rules, as a rolled back rule would.
            session.commit()
            raise RuntimeError("boom")

        monkeypatch.setattr(alert_engine, "check_rule", delete_second_then_fail)

        result = alert_engine.run_sweep(1, NOW)

        assert (result.triggered, result.errors) == (0, 2)


def test_initialize_default_alerts_creates_two_rules_each_call():
    engine = _engine()
    with Session(engine) as session:
        alert_engine = AlertEngine(SqlLedgerStore(session))
        alert_engine.initialize_default_alerts(7)

        rules = session.scalars(
            select(SpendingAlertRule).where(SpendingAlertRule.user_id == 7)
        ).all()
        assert {r.type for r in rules} == {
            AlertType.budget_threshold,
            AlertType.unusual_spending,
        }
        threshold_rule = next(r for r in rules if r.type == AlertType.budget_threshold)
        assert threshold_rule.threshold == Decimal("80.00")
        assert threshold_rule.budget_id is None
        assert all(r.enabled for r in rules)

        alert_engine.initialize_default_alerts(7)
        count = session.query(SpendingAlertRule).filter_by(user_id=7).count()
        assert count == 4


def test_default_rules_stay_quiet_without_budget_or_history():
    engine = _engine()
    with Session(engine) as session:
        alert_engine = AlertEngine(SqlLedgerStore(session))
        alert_engine.initialize_default_alerts(1)

        result = alert_engine.run_sweep(1, NOW)
        assert (result.triggered, result.errors) == (0, 0)
        assert _history(session) == []
