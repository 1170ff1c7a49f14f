import logging
from typing import Callable, ContextManager, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from alerts import AlertEngine
from config import get_settings
from database import session_scope
from recurrence import RecurringScheduler, SweepResult
from repository import LedgerUnavailableError, SqlLedgerStore


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def run_sweeps(
    scope: Callable[[], ContextManager[Session]] = session_scope,
    source: str = "manual",
) -> Optional[SweepResult]:
    """Run the recurring sweep, then the alert sweep for every user with rules.

    The two sweeps are independent: a ledger outage during one is logged and
    does not prevent the other from being attempted.
    """
    logger.info(f"scheduler_run: source={source}")
    result: Optional[SweepResult] = None
    with scope() as session:
        store = SqlLedgerStore(session)
        try:
            result = RecurringScheduler(store).run_sweep()
            logger.info(
                f"scheduler_run: source={source} processed={result.processed} "
                f"created={result.created} errors={result.errors}"
            )
        except LedgerUnavailableError:
            logger.error(
                f"scheduler_run: source={source} processed=0 created=0 "
                "recurring sweep aborted, ledger unavailable"
            )

        try:
            with store.atomic():
                user_ids = store.list_users_with_enabled_rules()
        except Exception:
            logger.exception(f"scheduler_run: source={source} alert users unavailable")
            return result

        engine = AlertEngine(store)
        triggered = 0
        for user_id in user_ids:
            try:
                triggered += engine.run_sweep(user_id).triggered
            except LedgerUnavailableError:
                logger.error(f"scheduler_run: source={source} user_id={user_id} skipped")
        logger.info(
            f"scheduler_run: source={source} users={len(user_ids)} alerts={triggered}"
        )
    return result


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual") -> None:
        run_sweeps(session_scope, source)

    def start(self) -> None:
        self._run_job("startup")

        trigger = CronTrigger(
            hour=self.settings.sweep_hour, minute=self.settings.sweep_minute
        )
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="ledger_daily",
            replace_existing=True,
            misfire_grace_time=3600,
            max_instances=1,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_safety_net"],
            id="ledger_hourly_safety",
            replace_existing=True,
            misfire_grace_time=300,
            max_instances=1,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily {self.settings.sweep_hour:02d}:"
            f"{self.settings.sweep_minute:02d} and hourly safety net"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
