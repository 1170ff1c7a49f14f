import logging
import time as _time
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, TypeVar, Union
from zoneinfo import ZoneInfo

from config import get_settings
from models import Frequency, Transaction
from repository import LedgerStore, LedgerUnavailableError


logger = logging.getLogger(__name__)

AUTO_GENERATED_SUFFIX = " (Auto-generated)"

D = TypeVar("D", date, datetime)


class UnknownFrequencyError(ValueError):
    pass


class TemplateAlreadyAdvanced(RuntimeError):
    """Another sweep moved the template's due date first."""


def local_now() -> datetime:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).replace(tzinfo=None)


def local_today() -> date:
    return local_now().date()


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: D, months: int) -> D:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return base.replace(year=year, month=month, day=day)


def parse_frequency(frequency: Union[Frequency, str, None]) -> Frequency:
    try:
        return Frequency(frequency)
    except ValueError:
        raise UnknownFrequencyError(f"Unknown recurring frequency: {frequency!r}")


def compute_next_occurrence(current: D, frequency: Union[Frequency, str]) -> D:
    """Step ``current`` forward by one period of ``frequency``.

    Works on dates and datetimes alike; the time of day is carried over.
    Month and year steps keep the day of month and clamp to the last day of a
    shorter target month, so 2024-01-31 monthly gives 2024-02-29.
    """
    freq = parse_frequency(frequency)
    if freq == Frequency.daily:
        return current + timedelta(days=1)
    if freq == Frequency.weekly:
        return current + timedelta(weeks=1)
    if freq == Frequency.biweekly:
        return current + timedelta(weeks=2)
    if freq == Frequency.monthly:
        return _add_months(current, 1)
    return _add_months(current, 12)


def _as_datetime(value: Union[date, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def template_anchor(template: Transaction) -> datetime:
    if template.occurred_at is not None:
        return template.occurred_at
    return _as_datetime(template.date)


@dataclass
class SweepResult:
    processed: int = 0
    created: int = 0
    errors: int = 0
    skipped: int = 0
    timed_out: bool = False


class RecurringScheduler:
    def __init__(
        self, store: LedgerStore, *, max_duration_secs: Optional[float] = None
    ) -> None:
        self.store = store
        if max_duration_secs is None:
            max_duration_secs = get_settings().sweep_max_seconds
        self.max_duration_secs = max_duration_secs

    def run_sweep(self, now: Optional[datetime] = None) -> SweepResult:
        now = now or local_now()
        result = SweepResult()
        try:
            with self.store.atomic():
                due = [
                    (t.id, t.next_due_date)
                    for t in self.store.list_due_recurring_templates(now)
                ]
        except Exception as exc:
            logger.error(f"recurring_sweep: ledger unavailable error={exc!r}")
            raise LedgerUnavailableError("Ledger store unavailable", result) from exc

        logger.info(f"recurring_sweep: due={len(due)} now={now.isoformat()}")
        deadline = _time.monotonic() + self.max_duration_secs
        for template_id, observed_due in due:
            if _time.monotonic() > deadline:
                result.timed_out = True
                remaining = len(due) - result.processed
                logger.warning(
                    f"recurring_sweep: time budget exhausted remaining={remaining}"
                )
                break
            result.processed += 1
            try:
                with self.store.atomic():
                    self._generate(template_id, observed_due, now)
                result.created += 1
            except TemplateAlreadyAdvanced:
                result.skipped += 1
                logger.info(f"recurring_sweep: template_id={template_id} already advanced")
            except Exception:
                result.errors += 1
                logger.exception(f"recurring_sweep: template_id={template_id} failed")

        logger.info(
            f"recurring_sweep: processed={result.processed} created={result.created} "
            f"errors={result.errors} skipped={result.skipped}"
        )
        return result

    def _generate(
        self, template_id: int, observed_due: Optional[datetime], now: datetime
    ) -> None:
        template = self.store.lock_template(template_id)
        if (
            template is None
            or template.recurring_paused
            or template.next_due_date != observed_due
        ):
            raise TemplateAlreadyAdvanced(template_id)

        due_at = template.next_due_date or template_anchor(template)
        next_due = compute_next_occurrence(due_at, template.recurring_frequency)

        self.store.insert_transaction(self._instance_from(template, due_at, now))
        advanced = self.store.update_template(
            template.id,
            expected_next_due=template.next_due_date,
            last_generated_date=now,
            next_due_date=next_due,
        )
        if not advanced:
            raise TemplateAlreadyAdvanced(template_id)
        logger.debug(
            f"recurring_sweep: template_id={template_id} next_due={next_due.isoformat()}"
        )

    @staticmethod
    def _instance_from(
        template: Transaction, due_at: datetime, now: datetime
    ) -> Transaction:
        description = f"{template.description or ''}{AUTO_GENERATED_SUFFIX}".strip()
        return Transaction(
            user_id=template.user_id,
            account_id=template.account_id,
            category_id=template.category_id,
            amount_cents=template.amount_cents,
            type=template.type,
            description=description,
            notes=template.notes,
            date=now.date(),
            occurred_at=now,
            is_recurring=False,
            parent_template_id=template.id,
            occurrence_due_at=due_at,
            is_pending=False,
            is_projected=False,
        )

    def initialize_due_dates(self) -> int:
        """Backfill ``next_due_date`` on templates that never had one.

        Only null values are written, so running this again changes nothing.
        """
        with self.store.atomic():
            pending = [
                (t.id, template_anchor(t), t.recurring_frequency)
                for t in self.store.list_uninitialized_templates()
            ]

        initialized = 0
        for template_id, anchor, frequency in pending:
            try:
                with self.store.atomic():
                    next_due = compute_next_occurrence(anchor, frequency)
                    if self.store.set_next_due_date(template_id, next_due):
                        initialized += 1
            except UnknownFrequencyError:
                logger.warning(
                    f"recurring_init: template_id={template_id} "
                    f"unknown frequency={frequency!r}"
                )
        logger.info(
            f"recurring_init: initialized={initialized} candidates={len(pending)}"
        )
        return initialized
