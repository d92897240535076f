import logging
from datetime import datetime
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import get_settings
from database import SessionFactory, session_scope
from push import PushClient, PushSender
from services import (
    process_pending_notification_jobs,
    reconcile_all_account_balances,
    schedule_bill_reminder_notifications,
    update_past_item_statuses,
)


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Bill reminders queue jobs before notifications sends whatever is due.
CRON_JOBS = (
    "bill-reminders",
    "notifications",
    "balance-reconciliation",
    "status-updates",
)


def _run_bill_reminders(
    factory: Optional[SessionFactory],
    client: Optional[PushClient],
    now: Optional[datetime],
) -> dict:
    with session_scope(factory) as session:
        return schedule_bill_reminder_notifications(session, now)


def _run_notifications(
    factory: Optional[SessionFactory],
    client: Optional[PushClient],
    now: Optional[datetime],
) -> dict:
    with session_scope(factory) as session:
        sender = PushSender(session, client)
        return process_pending_notification_jobs(session, sender, now)


def _run_balance_reconciliation(
    factory: Optional[SessionFactory],
    client: Optional[PushClient],
    now: Optional[datetime],
) -> dict:
    return reconcile_all_account_balances(factory)


def _run_status_updates(
    factory: Optional[SessionFactory],
    client: Optional[PushClient],
    now: Optional[datetime],
) -> dict:
    with session_scope(factory) as session:
        return update_past_item_statuses(session, now)


_RUNNERS: dict[str, tuple[str, Callable[..., dict]]] = {
    "bill-reminders": ("bill_reminders", _run_bill_reminders),
    "notifications": ("notifications", _run_notifications),
    "balance-reconciliation": ("balance_reconciliation", _run_balance_reconciliation),
    "status-updates": ("status_updates", _run_status_updates),
}


def selected_jobs(job: Optional[str]) -> tuple[str, ...]:
    if not job or job == "all":
        return CRON_JOBS
    if job not in _RUNNERS:
        raise ValueError(f"Unknown cron job: {job}")
    return (job,)


def run_cron_jobs(
    job: Optional[str] = None,
    factory: Optional[SessionFactory] = None,
    client: Optional[PushClient] = None,
    now: Optional[datetime] = None,
) -> dict[str, Optional[dict]]:
    """Run the selected batch jobs one after another.

    Jobs run sequentially in a single worker rather than concurrently, so two
    jobs never write to the SQLite file at the same time. Each job owns its
    transaction; a failing job is logged and reported as ``{"error": ...}``
    without stopping the others. Jobs that were not selected are reported as
    ``None``.
    """
    jobs = selected_jobs(job)
    results: dict[str, Optional[dict]] = {key: None for key, _ in _RUNNERS.values()}
    for name in jobs:
        key, runner = _RUNNERS[name]
        try:
            results[key] = runner(factory, client, now)
        except Exception as exc:
            logger.exception(f"cron_job_failed: job={name}")
            results[key] = {"error": str(exc) or exc.__class__.__name__}
        else:
            logger.info(f"cron_job_done: job={name} result={results[key]}")
    return results


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _run_job(self, source: str = "manual", job: Optional[str] = None) -> None:
        logger.info(f"scheduler_run: source={source} job={job or 'all'}")
        results = run_cron_jobs(job)
        logger.info(f"scheduler_run: source={source} results={results}")

    def start(self) -> None:
        trigger = CronTrigger(hour=3, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily_03:15", "all"],
            id="ledger_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        trigger = IntervalTrigger(hours=1)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["hourly_notifications", "notifications"],
            id="ledger_hourly_notifications",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily 03:15 batch and hourly notifications")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
