import argparse
import logging
import signal
import threading
from typing import Optional, Sequence

from alerts import AlertEngine
from database import session_scope
from recurrence import RecurringScheduler
from repository import SqlLedgerStore
from scheduler import SchedulerManager, run_sweeps


logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ledger-sweeps",
        description="Recurring transaction and spending alert sweeps",
    )
    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("sweep", help="run the recurring and alert sweeps once")
    commands.add_parser(
        "init-due-dates", help="backfill next due dates on recurring templates"
    )
    init_alerts = commands.add_parser(
        "init-alerts", help="provision the default alert rules for a user"
    )
    init_alerts.add_argument("user_id", type=int)
    commands.add_parser("serve", help="run the sweeps on a schedule until stopped")
    return parser


def _serve() -> None:
    manager = SchedulerManager()
    stop = threading.Event()

    def _handle_signal(signum, _frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    manager.start()
    try:
        stop.wait()
    finally:
        manager.stop()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    if args.command == "sweep":
        run_sweeps(session_scope, "cli")
    elif args.command == "init-due-dates":
        with session_scope() as session:
            count = RecurringScheduler(SqlLedgerStore(session)).initialize_due_dates()
        print(f"Initialized {count} recurring transactions")
    elif args.command == "init-alerts":
        with session_scope() as session:
            rules = AlertEngine(SqlLedgerStore(session)).initialize_default_alerts(
                args.user_id
            )
        print(f"Created {len(rules)} alert rules for user {args.user_id}")
    elif args.command == "serve":
        _serve()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
