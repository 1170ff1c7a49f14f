import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from config import get_settings
from models import (
    AlertHistoryEntry,
    AlertSeverity,
    AlertType,
    SpendingAlertRule,
)
from recurrence import local_now
from repository import LedgerStore, LedgerUnavailableError
from schemas import BudgetAlertMetadata, UnusualSpendingMetadata


logger = logging.getLogger(__name__)

WARNING_PERCENT = Decimal("90")
CRITICAL_PERCENT = Decimal("100")
DEFAULT_BUDGET_THRESHOLD = Decimal("80.00")

ANOMALY_LOOKBACK_DAYS = 30
ANOMALY_MIN_TRANSACTIONS = 10
ANOMALY_MULTIPLIER = Decimal("2")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class Alert:
    type: AlertType
    title: str
    message: str
    severity: AlertSeverity


@dataclass
class AlertCheckResult:
    user_id: int
    triggered: int = 0
    alerts: list[Alert] = field(default_factory=list)
    errors: int = 0


def format_money(cents: Union[int, Decimal]) -> str:
    symbol = get_settings().currency_symbol
    return f"{symbol}{Decimal(cents) / 100:,.2f}"


def budget_severity(percentage: Decimal) -> AlertSeverity:
    # Fixed tiers; the rule's own threshold only decides whether to fire.
    if percentage >= CRITICAL_PERCENT:
        return AlertSeverity.critical
    if percentage >= WARNING_PERCENT:
        return AlertSeverity.warning
    return AlertSeverity.info


class AlertEngine:
    """Evaluates a user's spending alert rules and appends alert history.

    Every rule is checked in its own unit of work, so a failing rule neither
    blocks nor rolls back the others. There is no deduplication window: a rule
    whose condition still holds fires again on every sweep.
    """

    def __init__(self, store: LedgerStore) -> None:
        self.store = store

    def run_sweep(
        self, user_id: int, now: Optional[datetime] = None
    ) -> AlertCheckResult:
        now = now or local_now()
        result = AlertCheckResult(user_id=user_id)
        try:
            with self.store.atomic():
                rules = self.store.list_enabled_alert_rules(user_id)
                rule_ids = [rule.id for rule in rules]
        except Exception as exc:
            logger.error(
                f"alert_sweep: user_id={user_id} ledger unavailable error={exc!r}"
            )
            raise LedgerUnavailableError("Ledger store unavailable", result) from exc

        for rule_id, rule in zip(rule_ids, rules):
            try:
                alert = self.check_rule(rule, now)
            except Exception:
                result.errors += 1
                logger.exception(
                    f"alert_sweep: user_id={user_id} rule_id={rule_id} failed"
                )
                continue
            if alert is not None:
                result.alerts.append(alert)
                result.triggered += 1

        logger.info(
            f"alert_sweep: user_id={user_id} rules={len(rules)} "
            f"triggered={result.triggered} errors={result.errors}"
        )
        return result

    def check_rule(
        self, rule: SpendingAlertRule, now: Optional[datetime] = None
    ) -> Optional[Alert]:
        if rule.type == AlertType.budget_threshold:
            return self.check_budget_threshold(rule, now)
        if rule.type == AlertType.unusual_spending:
            return self.check_unusual_spending(rule, now)
        # goal_milestone and recurring_due have no evaluator yet.
        logger.debug(f"alert_sweep: rule_id={rule.id} type={rule.type.value} inert")
        return None

    def check_budget_threshold(
        self, rule: SpendingAlertRule, now: Optional[datetime] = None
    ) -> Optional[Alert]:
        now = now or local_now()
        with self.store.atomic():
            if rule.budget_id is None or rule.threshold is None:
                self._misconfigured(rule, "missing budget_id or threshold")
                return None
            budget = self.store.get_budget(rule.user_id, rule.budget_id)
            if budget is None:
                self._misconfigured(rule, f"budget {rule.budget_id} not found")
                return None
            if budget.amount_cents <= 0:
                self._misconfigured(rule, f"budget {budget.id} has no amount")
                return None

            end = budget.end_date or now.date()
            spent = self.store.sum_expenses(
                rule.user_id, budget.category_id, budget.start_date, end
            )
            percentage = Decimal(spent) * 100 / Decimal(budget.amount_cents)
            threshold = Decimal(rule.threshold)
            if percentage < threshold:
                logger.debug(
                    f"budget_threshold: rule_id={rule.id} percentage={percentage:.2f} "
                    f"threshold={threshold} not_fired"
                )
                return None

            name = budget.label
            alert = Alert(
                type=AlertType.budget_threshold,
                title=f"Budget Alert: {name}",
                message=(
                    f"You've spent {format_money(spent)} ({percentage:.0f}%) of your "
                    f"{format_money(budget.amount_cents)} budget for {name}."
                ),
                severity=budget_severity(percentage),
            )
            metadata = BudgetAlertMetadata(
                budget_id=budget.id,
                budget_name=name,
                spent_cents=spent,
                budget_amount_cents=budget.amount_cents,
                percentage=percentage.quantize(_CENT),
                threshold=threshold,
            )
            self._record(rule, alert, metadata.model_dump_json(), now)
            return alert

    def check_unusual_spending(
        self, rule: SpendingAlertRule, now: Optional[datetime] = None
    ) -> Optional[Alert]:
        now = now or local_now()
        today = now.date()
        with self.store.atomic():
            # Trailing window of 30 calendar days, today included.
            since = today - timedelta(days=ANOMALY_LOOKBACK_DAYS - 1)
            expenses = self.store.list_recent_expenses(rule.user_id, since)
            if len(expenses) < ANOMALY_MIN_TRANSACTIONS:
                logger.debug(
                    f"unusual_spending: rule_id={rule.id} transactions={len(expenses)} "
                    "insufficient data"
                )
                return None

            total = sum(t.amount_cents for t in expenses)
            avg_daily = Decimal(total) / ANOMALY_LOOKBACK_DAYS
            today_spending = sum(t.amount_cents for t in expenses if t.date == today)
            if Decimal(today_spending) <= avg_daily * ANOMALY_MULTIPLIER:
                return None

            alert = Alert(
                type=AlertType.unusual_spending,
                title="Unusual Spending Detected",
                message=(
                    f"Today's spending ({format_money(today_spending)}) is significantly "
                    f"higher than your daily average ({format_money(avg_daily)})."
                ),
                severity=AlertSeverity.warning,
            )
            metadata = UnusualSpendingMetadata(
                today_spending_cents=today_spending,
                avg_daily_spending_cents=avg_daily.quantize(_CENT),
                ratio=(Decimal(today_spending) / avg_daily).quantize(_CENT),
                transaction_count=len(expenses),
            )
            self._record(rule, alert, metadata.model_dump_json(), now)
            return alert

    def initialize_default_alerts(self, user_id: int) -> list[SpendingAlertRule]:
        rules = [
            SpendingAlertRule(
                user_id=user_id,
                type=AlertType.budget_threshold,
                threshold=DEFAULT_BUDGET_THRESHOLD,
                enabled=True,
            ),
            SpendingAlertRule(
                user_id=user_id,
                type=AlertType.unusual_spending,
                enabled=True,
            ),
        ]
        with self.store.atomic():
            self.store.insert_alert_rules(rules)
        logger.info(f"alert_defaults: user_id={user_id} rules={len(rules)}")
        return rules

    def _record(
        self,
        rule: SpendingAlertRule,
        alert: Alert,
        metadata_json: str,
        now: datetime,
    ) -> None:
        self.store.insert_alert_history(
            AlertHistoryEntry(
                user_id=rule.user_id,
                rule_id=rule.id,
                type=alert.type,
                title=alert.title,
                message=alert.message,
                severity=alert.severity,
                is_read=False,
                metadata_json=metadata_json,
                created_at=now,
            )
        )
        self.store.update_alert_rule(rule.id, now)
        logger.info(
            f"alert_fired: user_id={rule.user_id} rule_id={rule.id} "
            f"type={alert.type.value} severity={alert.severity.value}"
        )

    @staticmethod
    def _misconfigured(rule: SpendingAlertRule, reason: str) -> None:
        logger.warning(f"alert_rule_misconfigured: rule_id={rule.id} reason={reason}")
